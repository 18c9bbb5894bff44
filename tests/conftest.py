"""
conftest.py - Shared test fixtures for nhoodloji

pytest reads this file before running any test. Every fixture defined here
is available to all test files by name, without importing it.

Two kinds of data are provided:
  - a tiny 10-vertex path graph with a 1D "line" embedding, where every
    median and nearest neighbour can be worked out by hand
  - a small clustered dataset (3 clusters, 6 samples, 2 conditions)
    for end-to-end runs
"""

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from nhoodloji import nhoodloji, NhoodConfig
from nhoodloji.graph import build_knn_graph, graph_from_adjacency

# ===========================================================================
# Constants — the size of our fake dataset
# ===========================================================================

N_PATH = 10      # vertices in the path graph
N_CELLS = 150    # cells in the clustered dataset (50 per cluster)
N_DIMS = 5       # embedding dimensions
N_SAMPLES = 6    # samples S0..S5; S0-S2 condition A, S3-S5 condition B
K = 10           # neighbours used for the clustered graph


# ===========================================================================
# Fixture 1: path graph 0-1-2-...-9 and a line embedding (x = vertex)
# ===========================================================================


@pytest.fixture
def path_graph():
    """
    Path graph over 10 vertices: i is adjacent to i-1 and i+1.

    End vertices have degree 1, all others degree 2.
    """
    rows = np.arange(N_PATH - 1)
    adjacency = sparse.csr_matrix(
        (np.ones(N_PATH - 1), (rows, rows + 1)), shape=(N_PATH, N_PATH)
    )
    # graph_from_adjacency symmetrises, so one direction is enough
    return graph_from_adjacency(adjacency)


@pytest.fixture
def line_embedding():
    """
    Vertex i sits at (i, 0). Row identifiers are set, so no warning.

    With k=3, vertex 0's neighbours are 1, 2, 3 (median x=2) and
    vertex 9's are 8, 7, 6 (median x=7).
    """
    coords = np.column_stack([np.arange(N_PATH, dtype=float), np.zeros(N_PATH)])
    return pd.DataFrame(coords, index=[str(i) for i in range(N_PATH)])


# ===========================================================================
# Fixture 2: clustered nhoodloji object with a KNN graph
# ===========================================================================


def _clustered_data():
    rng = np.random.default_rng(0)

    # Three well separated clusters in 5 dimensions
    centers = rng.normal(0, 10, (3, N_DIMS))
    labels = np.repeat([0, 1, 2], N_CELLS // 3)
    X = centers[labels] + rng.normal(0, 1, (N_CELLS, N_DIMS))

    # Cluster 0 is enriched in condition B samples (S3-S5)
    samples = np.empty(N_CELLS, dtype=object)
    enriched = np.array([0.2, 0.2, 0.2, 0.8, 0.8, 0.8])
    for i, lab in enumerate(labels):
        p = enriched / enriched.sum() if lab == 0 else np.full(N_SAMPLES, 1 / N_SAMPLES)
        samples[i] = f"S{rng.choice(N_SAMPLES, p=p)}"

    cell_ids = [f"cell_{i}" for i in range(N_CELLS)]
    cell_meta = pd.DataFrame(
        {"sample": samples, "cluster": labels},
        index=cell_ids,
    )
    return cell_ids, cell_meta, X


@pytest.fixture
def sj_basic():
    """
    150 cells in 3 clusters, X_pca embedding (5 dims), KNN graph with k=10.

    Config defaults are set to match so no fallback warnings fire.
    """
    cell_ids, cell_meta, X = _clustered_data()
    config = NhoodConfig(default_k=K, default_d=N_DIMS, default_prop=0.2)
    sj = nhoodloji(
        cell_ids=cell_ids,
        cell_metadata=cell_meta,
        embeddings={"X_pca": X},
        config=config,
    )
    build_knn_graph(sj, k=K, d=N_DIMS)
    return sj


@pytest.fixture
def sj_nhoods(sj_basic):
    """sj_basic with neighbourhoods, counts and distances computed."""
    from nhoodloji.nhoods import make_nhoods, count_cells, calc_nhood_distance

    make_nhoods(sj_basic, prop=0.2, random_state=1)
    count_cells(sj_basic, sample_col="sample")
    calc_nhood_distance(sj_basic)
    return sj_basic


@pytest.fixture
def design_df():
    """Sample-level metadata for the 6 samples."""
    samples = [f"S{i}" for i in range(N_SAMPLES)]
    return pd.DataFrame(
        {"condition": ["A", "A", "A", "B", "B", "B"]},
        index=pd.Index(samples, name="sample"),
    )
