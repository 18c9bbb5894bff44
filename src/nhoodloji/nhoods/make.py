"""
make.py - Neighbourhood construction on a KNN graph

Randomly samples graph vertices, optionally refines them to anchors
representative of local density, and expands each anchor into the set
of its graph neighbours. The result is a sparse cell x neighbourhood
incidence matrix.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nhoodloji.data.core import nhoodloji

from dataclasses import dataclass
from typing import Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..data.config import (
    InvalidParameterError,
    InvalidInputTypeError,
    DimensionMismatchError,
)
from ..graph.graph import KNNGraph
from .sampling import sample_vertices
from .refine import refine_vertices


@dataclass(frozen=True)
class DatasetInput:
    """A nhoodloji object carrying its own graph and embeddings."""
    sj: 'nhoodloji'
    reduced_dims: str | None = None
    d: int | None = None


@dataclass(frozen=True)
class GraphInput:
    """A bare graph plus an optional embedding matrix."""
    graph: KNNGraph
    embedding: np.ndarray | pd.DataFrame | None = None


NhoodInput = Union[DatasetInput, GraphInput]


@dataclass(frozen=True)
class NhoodContext:
    """Everything neighbourhood construction reads, resolved once."""
    graph: KNNGraph
    embedding: np.ndarray | pd.DataFrame | None
    n_cells: int


@dataclass
class NhoodResult:
    """
    Output of neighbourhood construction.

    Attributes
    ----------
    index : np.ndarray
        Anchor cell position for each neighbourhood.
    nhoods : sparse.csr_matrix
        (n_cells x n_nhoods) binary incidence matrix.
    nhood_names : pd.Index
        Column labels (anchor positions as strings).
    random_vertices : np.ndarray
        The raw sample the anchors were derived from.
    """
    index: np.ndarray
    nhoods: sparse.csr_matrix
    nhood_names: pd.Index
    random_vertices: np.ndarray

    @property
    def n_nhoods(self) -> int:
        return len(self.index)

    def nhood_sizes(self) -> pd.Series:
        sizes = np.asarray(self.nhoods.sum(axis=0)).ravel().astype(int)
        return pd.Series(sizes, index=self.nhood_names, name='nhood_size')


def resolve_input(source: NhoodInput, refined: bool) -> NhoodContext:
    """Turn either input variant into a single NhoodContext."""
    if isinstance(source, DatasetInput):
        graph = source.sj.require_graph()
        embedding = None
        if refined:
            key = source.reduced_dims or source.sj.config.reduced_dims_key
            if key not in source.sj.embeddings:
                raise InvalidParameterError(
                    f"No reduced dimensions '{key}' found - required for refined sampling. "
                    "Add it with add_embedding() first."
                )
            coords = source.sj.get_embedding(source.reduced_dims, d=source.d)
            embedding = pd.DataFrame(coords, index=source.sj.cell_index)
        return NhoodContext(graph=graph, embedding=embedding, n_cells=source.sj.n_cells)

    if isinstance(source, GraphInput):
        graph = source.graph
        if not graph.is_valid():
            raise InvalidParameterError("Not a valid graph - please run build_knn_graph() first")
        embedding = source.embedding
        if refined:
            if embedding is None:
                raise InvalidParameterError(
                    "No reduced dimensions matrix provided - required for refined sampling"
                )
            if np.ndim(embedding) != 2:
                raise InvalidParameterError(
                    "Reduced dimensions must be a 2D matrix or DataFrame for a KNNGraph input, "
                    f"got {type(embedding).__name__}"
                )
            if np.shape(embedding)[0] != graph.vertex_count():
                raise DimensionMismatchError(
                    f"Reduced dimensions have {np.shape(embedding)[0]} rows, "
                    f"graph has {graph.vertex_count()} vertices"
                )
        return NhoodContext(graph=graph, embedding=embedding, n_cells=graph.vertex_count())

    raise InvalidInputTypeError(f"Unresolvable neighbourhood input: {type(source).__name__}")


def build_nhood_matrix(graph: KNNGraph, anchors: np.ndarray) -> sparse.csr_matrix:
    """
    Cell x neighbourhood incidence matrix.

    Column j is 1 at the graph neighbours of anchors[j] and 0 elsewhere.

    Parameters
    ----------
    graph : KNNGraph
        Neighbour graph.
    anchors : np.ndarray
        Deduplicated anchor positions.

    Returns
    -------
    sparse.csr_matrix
        (n_cells x len(anchors)) float32 binary matrix.
    """
    anchors = np.asarray(anchors, dtype=int)
    n_cells = graph.vertex_count()
    if anchors.size and (anchors.min() < 0 or anchors.max() >= n_cells):
        raise InvalidParameterError("Anchor positions outside the graph")

    # Rows of a symmetric adjacency are the neighbour sets
    nh_mat = graph.adjacency[anchors].T
    return (nh_mat != 0).astype(np.float32).tocsr()


def make_nhoods(
    x,
    prop: float | None = None,
    k: int | None = None,
    d: int | None = None,
    refined: bool = True,
    reduced_dims: str | np.ndarray | pd.DataFrame | None = None,
    random_state: int | None = 42,
    inplace: bool = True,
) -> NhoodResult:
    """
    Define neighbourhoods on a graph.

    Randomly samples vertices on the graph, then refines them by computing
    the median profile of each sample's neighbourhood in reduced
    dimensional space and selecting the nearest cell to that position.
    Multiple samples may thus collapse onto one anchor, preventing
    over-sampling of the graph space.

    Parameters
    ----------
    x : nhoodloji or KNNGraph
        nhoodloji object with a graph, or a bare KNNGraph.
    prop : float, optional
        Proportion of vertices to sample, 0 < prop < 1.
        Defaults to config.default_prop (0.1).
    k : int, optional
        The k used to build the graph. Defaults to the object's k.
    d : int, optional
        Number of embedding dimensions (nhoodloji input only).
    refined : bool
        Use refined sampling. Without it neighbourhoods carry a lot of
        redundancy and an unnecessarily large multiple-testing burden.
    reduced_dims : str or array-like, optional
        Embedding key for a nhoodloji object; for a KNNGraph, the
        (n_cells x d) embedding matrix itself.
    random_state : int, optional
        Random seed for vertex sampling.
    inplace : bool
        Store the neighbourhoods on the nhoodloji object.

    Returns
    -------
    NhoodResult

    Examples
    --------
    >>> graph = nl.graph.build_knn_graph(sj, k=20, d=10)
    >>> res = nl.nhoods.make_nhoods(sj, prop=0.1, k=20, d=10)
    >>> sj.nhoods.shape
    """
    from ..data.core import nhoodloji

    if isinstance(x, nhoodloji):
        config = x.config
        prop = config.default_prop if prop is None else prop
        k = (x.k or config.default_k) if k is None else k
        d = config.default_d if d is None else d
        if reduced_dims is None:
            reduced_dims = config.reduced_dims_key
        if not isinstance(reduced_dims, str):
            raise InvalidParameterError(
                "reduced_dims must be an embedding key for a nhoodloji object"
            )
        source = DatasetInput(sj=x, reduced_dims=reduced_dims, d=d)
    elif isinstance(x, KNNGraph):
        prop = 0.1 if prop is None else prop
        k = 21 if k is None else k
        source = GraphInput(graph=x, embedding=reduced_dims)
    else:
        raise InvalidInputTypeError(
            f"Data format: {type(x).__name__} not recognised. Should be nhoodloji or KNNGraph"
        )

    print(f"\nMaking neighbourhoods (prop={prop}, k={k}, refined={refined})")
    ctx = resolve_input(source, refined=refined)

    random_vertices = sample_vertices(ctx.graph, prop, random_state=random_state)
    if refined:
        sampled = refine_vertices(random_vertices, ctx.embedding, k)
    else:
        sampled = random_vertices

    anchors = pd.unique(np.asarray(sampled, dtype=int))
    nh_mat = build_nhood_matrix(ctx.graph, anchors)

    result = NhoodResult(
        index=anchors,
        nhoods=nh_mat,
        nhood_names=pd.Index([str(a) for a in anchors], name='nhood'),
        random_vertices=np.asarray(random_vertices, dtype=int),
    )

    print(f"  ✓ {len(random_vertices)} sampled vertices → {result.n_nhoods} neighbourhoods, "
          f"mean size={result.nhood_sizes().mean() if result.n_nhoods else 0:.1f}")

    if isinstance(x, nhoodloji) and inplace:
        x.set_nhoods(
            nh_mat,
            anchors,
            params={
                'prop': prop, 'k': k, 'd': d, 'refined': refined,
                'reduced_dims': reduced_dims, 'random_state': random_state,
            },
        )

    return result
