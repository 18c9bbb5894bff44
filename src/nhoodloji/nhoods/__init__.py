"""
nhoods - Neighbourhood construction and per-neighbourhood summaries

Modules
-------
- sampling: Random vertex sampling
- refine: Refined anchor selection in the embedding
- make: Neighbourhood construction entry point and incidence matrix
- counts: Cell counts per neighbourhood per sample
- distances: Distance summaries used for spatial FDR weighting
"""

from .sampling import sample_vertices
from .refine import refine_vertices
from .make import (
    DatasetInput,
    GraphInput,
    NhoodContext,
    NhoodResult,
    build_nhood_matrix,
    make_nhoods,
    resolve_input,
)
from .counts import count_cells, nhood_size
from .distances import calc_nhood_distance

__all__ = [
    'sample_vertices',
    'refine_vertices',
    'DatasetInput',
    'GraphInput',
    'NhoodContext',
    'NhoodResult',
    'build_nhood_matrix',
    'make_nhoods',
    'resolve_input',
    'count_cells',
    'nhood_size',
    'calc_nhood_distance',
]
