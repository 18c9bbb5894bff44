"""
data - Core data structure and configuration

This module contains the main nhoodloji data structure,
its configuration class, and the exception hierarchy.
"""

from .config import (
    NhoodConfig,
    NhoodlojiError,
    InvalidParameterError,
    InvalidInputTypeError,
    DimensionMismatchError,
    MissingPrecomputationError,
    ConsistencyError,
)

from .core import nhoodloji

__all__ = [
    # Core class
    'nhoodloji',

    # Configuration
    'NhoodConfig',

    # Exceptions
    'NhoodlojiError',
    'InvalidParameterError',
    'InvalidInputTypeError',
    'DimensionMismatchError',
    'MissingPrecomputationError',
    'ConsistencyError',
]
