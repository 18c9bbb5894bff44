# src/nhoodloji/__init__.py

"""
nhoodloji - Neighbourhood-level differential abundance on KNN graphs
"""

# Core data structures
from .data.core import nhoodloji
from .data.config import NhoodConfig

# Import submodules
from . import data
from . import graph
from . import nhoods
from . import stats

__version__ = '0.1.0'

__all__ = [
    # Core classes
    'nhoodloji',
    'NhoodConfig',

    # Submodules
    'data',
    'graph',
    'nhoods',
    'stats',
]
