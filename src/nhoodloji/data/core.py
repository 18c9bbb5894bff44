"""
core.py - Main nhoodloji class for neighbourhood-level abundance analysis

The nhoodloji class holds the cell-level inputs (metadata, embeddings,
neighbour graph) and the neighbourhood artifacts derived from them, with
guaranteed alignment to a single master cell index.
"""
from __future__ import annotations
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import anndata
from typing import Dict, List, Optional, Union
import copy as copy_module
import dataclasses
import warnings

import pandas as pd
import numpy as np
from scipy import sparse

from .config import (
    NhoodConfig,
    ConsistencyError,
    DimensionMismatchError,
    InvalidInputTypeError,
    InvalidParameterError,
    MissingPrecomputationError,
)
from ..graph.graph import KNNGraph, graph_from_adjacency


class nhoodloji:
    """
    Neighbourhood analysis data structure.

    Core Principles:
    - Master Index: Cell IDs stored once as primary index
    - Read-only inputs: graph and embeddings are never modified by analysis
    - Derived artifacts (nhoods, counts, distances) are invalidated when
      the inputs they were computed from change

    Attributes
    ----------
    _cell_index : pd.Index
        Master cell index (single source of truth)
    _cell_meta : pd.DataFrame
        Cell metadata (aligned to _cell_index)
    _embeddings : Dict
        Low-dimensional embeddings (n_cells x n_dims)
    _graph : KNNGraph
        Neighbour graph over cells
    _nhoods : sparse.csr_matrix
        Cell x neighbourhood incidence matrix
    _nhood_index : np.ndarray
        Anchor cell position for each neighbourhood
    _nhood_counts : pd.DataFrame
        Neighbourhood x sample cell counts
    _nhood_distances : pd.DataFrame
        Per-neighbourhood distance summaries
    """

    def __init__(self,
                 cell_ids: Union[List[str], pd.Index],
                 cell_metadata: Optional[pd.DataFrame] = None,
                 embeddings: Optional[Dict[str, np.ndarray]] = None,
                 graph: Optional[KNNGraph] = None,
                 k: Optional[int] = None,
                 config: Optional[NhoodConfig] = None):
        """
        Initialize nhoodloji object.

        Parameters
        ----------
        cell_ids : list or Index
            Cell identifiers
        cell_metadata : DataFrame, optional
            Cell annotations. Will be aligned to cell_ids.
        embeddings : dict, optional
            Embedding name -> (n_cells x n_dims) array or DataFrame
        graph : KNNGraph, optional
            Pre-built neighbour graph
        k : int, optional
            The k used to build the graph
        config : NhoodConfig, optional
            Configuration object
        """
        self.config = config or NhoodConfig()

        print("\n" + "=" * 70)
        print("Initializing nhoodloji")
        print("=" * 70)

        # STEP 1: Establish master index
        self._cell_index = pd.Index([str(c) for c in cell_ids], name=self.config.cell_id_col)
        self._n_cells = len(self._cell_index)
        if not self._cell_index.is_unique:
            raise ConsistencyError("Cell IDs must be unique")
        print(f"[1/4] Master index: {self._n_cells:,} cells")

        # STEP 2: Store and align cell metadata
        self._cell_meta = self._prepare_cell_metadata(cell_metadata)
        print(f"[2/4] Cell metadata: {len(self._cell_meta.columns)} columns")

        # STEP 3: Embeddings
        self._embeddings = {}
        for name, coords in (embeddings or {}).items():
            self._embeddings[name] = self._prepare_embedding(name, coords)
        print(f"[3/4] Embeddings: {list(self._embeddings) or 'None'}")

        # STEP 4: Graph and derived artifacts
        self._graph = None
        self.k = k
        self._clear_nhoods()
        if graph is not None:
            self.graph = graph
        print(f"[4/4] Graph: {repr(self._graph) if self._graph is not None else 'None'}")

        print("=" * 70)

    # ========== Data Preparation Methods ==========

    def _prepare_cell_metadata(self, cell_metadata: Optional[pd.DataFrame]) -> pd.DataFrame:
        """Prepare and align cell metadata to master index."""
        if cell_metadata is None:
            return pd.DataFrame(index=self._cell_index)

        cell_id_col = self.config.cell_id_col

        # Set cell ID as index if it's a column
        if cell_id_col in cell_metadata.columns:
            cell_metadata = cell_metadata.set_index(cell_id_col)
        cell_metadata = cell_metadata.copy()
        cell_metadata.index = cell_metadata.index.astype(str)

        # Reindex to master (handles missing and extra cells)
        aligned = cell_metadata.reindex(self._cell_index)

        n_matched = self._cell_index.isin(cell_metadata.index).sum()
        n_missing = self._n_cells - n_matched
        n_extra = len(cell_metadata) - n_matched

        if n_missing > 0:
            print(f"    ⚠ {n_missing} cells missing metadata (filled with NaN)")
        if n_extra > 0:
            print(f"    ⚠ {n_extra} metadata rows not in master index (dropped)")

        return aligned

    def _prepare_embedding(self, name: str, coords) -> np.ndarray:
        """Validate an embedding and align it to the master index."""
        if isinstance(coords, pd.DataFrame):
            index = coords.index.astype(str)
            if index.isin(self._cell_index).all() and len(index) == self._n_cells:
                coords = coords.set_axis(index, axis=0).reindex(self._cell_index)
            arr = coords.to_numpy(dtype=float)
        else:
            arr = np.asarray(coords, dtype=float)

        if arr.ndim != 2:
            raise DimensionMismatchError(f"Embedding '{name}' must be 2D, got shape {arr.shape}")
        if arr.shape[0] != self._n_cells:
            raise DimensionMismatchError(
                f"Embedding '{name}' has {arr.shape[0]} rows, expected {self._n_cells}"
            )
        return arr

    def _clear_nhoods(self) -> None:
        """Drop all neighbourhood artifacts."""
        self._nhoods = None
        self._nhood_index = None
        self._nhood_params = {}
        self._nhood_counts = None
        self._nhood_distances = None

    # ========== Properties ==========

    @property
    def cell_index(self) -> pd.Index:
        """Get master cell index."""
        return self._cell_index

    @property
    def n_cells(self) -> int:
        """Get number of cells."""
        return self._n_cells

    @property
    def cell_meta(self) -> pd.DataFrame:
        """Get cell metadata (aligned to master index)."""
        return self._cell_meta

    @property
    def embeddings(self) -> Dict[str, np.ndarray]:
        """Get dictionary of low-dimensional embeddings (PCA, UMAP, etc.)."""
        return self._embeddings

    @property
    def graph(self) -> Optional[KNNGraph]:
        return self._graph

    @graph.setter
    def graph(self, graph: KNNGraph) -> None:
        if not isinstance(graph, KNNGraph):
            raise InvalidInputTypeError(
                f"graph must be a KNNGraph, got {type(graph).__name__}"
            )
        if graph.vertex_count() != self._n_cells:
            raise DimensionMismatchError(
                f"Graph has {graph.vertex_count()} vertices, expected {self._n_cells}"
            )
        graph = dataclasses.replace(graph, cell_ids=self._cell_index)
        if self._nhoods is not None:
            print("  ⚠ Graph replaced - neighbourhoods cleared, re-run make_nhoods()")
        self._clear_nhoods()
        self._graph = graph

    @property
    def nhoods(self) -> Optional[sparse.csr_matrix]:
        """Cell x neighbourhood incidence matrix."""
        return self._nhoods

    @property
    def nhood_index(self) -> Optional[np.ndarray]:
        """Anchor cell position of each neighbourhood."""
        return self._nhood_index

    @property
    def nhood_names(self) -> Optional[pd.Index]:
        """Neighbourhood labels (anchor positions as strings)."""
        if self._nhood_index is None:
            return None
        return pd.Index([str(i) for i in self._nhood_index], name='nhood')

    @property
    def n_nhoods(self) -> int:
        return 0 if self._nhood_index is None else len(self._nhood_index)

    @property
    def nhood_params(self) -> dict:
        """Parameters the current neighbourhoods were built with."""
        return self._nhood_params

    @property
    def nhood_counts(self) -> Optional[pd.DataFrame]:
        return self._nhood_counts

    @nhood_counts.setter
    def nhood_counts(self, counts: pd.DataFrame) -> None:
        self._require_nhoods("store neighbourhood counts")
        if counts.shape[0] != self.n_nhoods:
            raise DimensionMismatchError(
                f"Counts have {counts.shape[0]} rows, expected {self.n_nhoods} neighbourhoods"
            )
        self._nhood_counts = counts

    @property
    def nhood_distances(self) -> Optional[pd.DataFrame]:
        return self._nhood_distances

    @nhood_distances.setter
    def nhood_distances(self, distances: pd.DataFrame) -> None:
        self._require_nhoods("store neighbourhood distances")
        if len(distances) != self.n_nhoods:
            raise DimensionMismatchError(
                f"Distances have {len(distances)} rows, expected {self.n_nhoods} neighbourhoods"
            )
        self._nhood_distances = distances

    # ========== Embeddings ==========

    def add_embedding(self, name: str, coords) -> None:
        """
        Add or replace an embedding.

        Replacing the embedding the current neighbourhoods were refined
        on clears them.
        """
        self._embeddings[name] = self._prepare_embedding(name, coords)
        if self._nhoods is not None and self._nhood_params.get('reduced_dims') == name:
            print(f"  ⚠ Embedding '{name}' replaced - neighbourhoods cleared, re-run make_nhoods()")
            self._clear_nhoods()

    def get_embedding(self, name: Optional[str] = None, d: Optional[int] = None) -> np.ndarray:
        """
        Get an embedding, optionally truncated to its first ``d`` dimensions.

        Parameters
        ----------
        name : str, optional
            Embedding key. Defaults to config.reduced_dims_key.
        d : int, optional
            Number of dimensions. If larger than available, a warning is
            raised and all dimensions are used.

        Returns
        -------
        np.ndarray
        """
        name = name or self.config.reduced_dims_key
        if name not in self._embeddings:
            raise MissingPrecomputationError(
                f"Embedding '{name}' not found. Available: {list(self._embeddings)}. "
                f"Add it with add_embedding() first."
            )
        coords = self._embeddings[name]
        if d is not None:
            if d > coords.shape[1]:
                warnings.warn(
                    f"Specified d={d} is higher than the {coords.shape[1]} dimensions in "
                    f"embedding '{name}'. Falling back to using {coords.shape[1]} dimensions",
                    stacklevel=2,
                )
                d = coords.shape[1]
            coords = coords[:, :d]
        return coords

    # ========== Neighbourhood Artifacts ==========

    def set_nhoods(self,
                   nhoods: sparse.spmatrix,
                   nhood_index: np.ndarray,
                   params: Optional[dict] = None) -> None:
        """
        Store a freshly built set of neighbourhoods.

        Counts and distances from earlier neighbourhoods are dropped.
        """
        nhoods = sparse.csr_matrix(nhoods)
        nhood_index = np.asarray(nhood_index, dtype=int)
        if nhoods.shape != (self._n_cells, len(nhood_index)):
            raise DimensionMismatchError(
                f"Incidence matrix shape {nhoods.shape} does not match "
                f"({self._n_cells}, {len(nhood_index)})"
            )
        self._clear_nhoods()
        self._nhoods = nhoods
        self._nhood_index = nhood_index
        self._nhood_params = dict(params or {})

    def _require_nhoods(self, action: str) -> None:
        if self._nhoods is None:
            raise MissingPrecomputationError(
                f"Neighbourhoods missing - cannot {action}. Please run make_nhoods() first."
            )

    def require_graph(self) -> KNNGraph:
        if self._graph is None or not self._graph.is_valid():
            raise InvalidParameterError(
                "Not a valid nhoodloji object - graph is missing. Please run build_knn_graph() first."
            )
        return self._graph

    # ========== Consistency Validation ==========

    def validate_consistency(self, raise_error: bool = False) -> Dict[str, bool]:
        """
        Validate all components are consistent.

        Parameters
        ----------
        raise_error : bool
            If True, raise error on inconsistency

        Returns
        -------
        dict
            Status of each component
        """
        status = {}
        issues = []

        status['cell_metadata'] = len(self._cell_meta) == self._n_cells
        if not status['cell_metadata']:
            issues.append(f"Cell metadata has {len(self._cell_meta)} rows, expected {self._n_cells}")

        bad_emb = [n for n, e in self._embeddings.items() if e.shape[0] != self._n_cells]
        status['embeddings'] = len(bad_emb) == 0
        if bad_emb:
            issues.append(f"Embeddings with wrong row count: {bad_emb}")

        if self._graph is not None:
            status['graph'] = self._graph.is_valid() and self._graph.vertex_count() == self._n_cells
            if not status['graph']:
                issues.append("Graph is invalid or not aligned to the master index")
        else:
            status['graph'] = True

        if self._nhoods is not None:
            status['nhoods'] = (
                self._nhoods.shape == (self._n_cells, len(self._nhood_index))
                and bool(np.all((self._nhood_index >= 0) & (self._nhood_index < self._n_cells)))
            )
            if not status['nhoods']:
                issues.append("Neighbourhood matrix and index do not line up")
        else:
            status['nhoods'] = True

        status['nhood_counts'] = self._nhood_counts is None or len(self._nhood_counts) == self.n_nhoods
        if not status['nhood_counts']:
            issues.append("Neighbourhood counts do not match the current neighbourhoods")

        status['overall'] = all(status.values())

        if issues and raise_error:
            raise ConsistencyError("\n".join(issues))

        return status

    # ========== Copy, Summary & Info ==========

    def copy(self) -> 'nhoodloji':
        """Deep copy, so derived artifacts are never shared between analyses."""
        return copy_module.deepcopy(self)

    def summary(self) -> Dict[str, object]:
        """
        Get summary of the object.

        Returns
        -------
        dict
            Summary statistics
        """
        sizes = np.asarray(self._nhoods.sum(axis=0)).ravel() if self._nhoods is not None else np.array([])
        return {
            'n_cells': self._n_cells,
            'embeddings': {n: e.shape[1] for n, e in self._embeddings.items()},
            'has_graph': self._graph is not None,
            'k': self.k,
            'n_nhoods': self.n_nhoods,
            'mean_nhood_size': sizes.mean() if sizes.size else 0,
            'has_counts': self._nhood_counts is not None,
            'has_distances': self._nhood_distances is not None,
            'nhood_params': dict(self._nhood_params),
            'cell_meta_columns': list(self._cell_meta.columns),
        }

    def __repr__(self) -> str:
        """String representation."""
        return (f"nhoodloji object\n"
                f"  Cells:       {self._n_cells:,}\n"
                f"  Embeddings:  {list(self._embeddings)}\n"
                f"  Graph:       {'yes' if self._graph is not None else 'no'}\n"
                f"  Nhoods:      {self.n_nhoods}")

    def __str__(self) -> str:
        return self.__repr__()

    # ========== AnnData Interop ==========

    @staticmethod
    def from_anndata(adata,
                     neighbors_key: Optional[str] = None,
                     k: Optional[int] = None,
                     config: Optional[NhoodConfig] = None) -> 'nhoodloji':
        """
        Create nhoodloji from AnnData object.

        Extracts:
        - Cell metadata: adata.obs
        - Embeddings: every 2D entry of adata.obsm
        - Graph: adata.obsp connectivities/distances (scanpy layout)

        Parameters
        ----------
        adata : anndata.AnnData
            AnnData object
        neighbors_key : str, optional
            scanpy neighbors key. Uses obsp['connectivities'] if None,
            otherwise obsp[f'{neighbors_key}_connectivities'].
        k : int, optional
            k used for the graph; read from adata.uns if possible.
        config : NhoodConfig, optional
            Configuration

        Returns
        -------
        nhoodloji
        """
        import anndata

        if not isinstance(adata, anndata.AnnData):
            raise InvalidInputTypeError("Input must be AnnData object")

        print(f"\nConverting AnnData to nhoodloji...")
        print(f"  AnnData: {adata.shape[0]} cells × {adata.shape[1]} genes")

        embeddings = {
            key: np.asarray(val) for key, val in adata.obsm.items()
            if not sparse.issparse(val) and np.asarray(val).ndim == 2
        }

        conn_key = 'connectivities' if neighbors_key is None else f'{neighbors_key}_connectivities'
        dist_key = 'distances' if neighbors_key is None else f'{neighbors_key}_distances'
        uns_key = 'neighbors' if neighbors_key is None else neighbors_key

        graph = None
        if conn_key in adata.obsp:
            graph = graph_from_adjacency(
                adata.obsp[conn_key],
                distances=adata.obsp[dist_key] if dist_key in adata.obsp else None,
                cell_ids=adata.obs_names,
            )
        else:
            print(f"  ⚠ No graph found in obsp['{conn_key}']")

        if k is None:
            k = adata.uns.get(uns_key, {}).get('params', {}).get('n_neighbors')

        return nhoodloji(
            cell_ids=adata.obs_names,
            cell_metadata=adata.obs.copy(),
            embeddings=embeddings,
            graph=graph,
            k=k,
            config=config,
        )

    def to_anndata(self) -> 'anndata.AnnData':
        """
        Convert to AnnData object.

        Creates AnnData with:
        - obs: cell metadata
        - obsm: embeddings, plus 'nhoods' when built
        - obsp: 'connectivities' / 'distances' from the graph
        - uns['nhood_index']: anchor positions

        Returns
        -------
        anndata.AnnData
        """
        import anndata

        print(f"\nConverting nhoodloji to AnnData...")

        adata = anndata.AnnData(obs=self._cell_meta.copy())
        for name, coords in self._embeddings.items():
            adata.obsm[name] = coords.copy()
        if self._graph is not None:
            adata.obsp['connectivities'] = self._graph.adjacency.copy()
            if self._graph.distances is not None:
                adata.obsp['distances'] = self._graph.distances.copy()
        if self._nhoods is not None:
            adata.obsm['nhoods'] = self._nhoods.copy()
            adata.uns['nhood_index'] = self._nhood_index.copy()

        print(f"✓ Created AnnData: {adata.n_obs} cells")
        return adata
