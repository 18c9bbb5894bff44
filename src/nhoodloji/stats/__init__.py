"""
stats - Neighbourhood-level testing and spatial FDR correction

Modules
-------
- spatial_fdr: Weighted BH correction for overlapping neighbourhoods
- glm: Normalisation factors and negative binomial GLM adapter
- da: Differential abundance testing across neighbourhoods
"""

from .spatial_fdr import graph_spatial_fdr, weighted_bh
from .glm import calc_norm_factors, fit_nb_glm
from .da import da_nhoods

__all__ = [
    'graph_spatial_fdr',
    'weighted_bh',
    'calc_norm_factors',
    'fit_nb_glm',
    'da_nhoods',
]
