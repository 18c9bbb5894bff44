"""
config.py - Configuration and exceptions for nhoodloji

Contains:
- NhoodConfig: Key names and pipeline defaults
- NhoodlojiError and its subclasses
"""

from dataclasses import dataclass


VALID_FDR_WEIGHTING = ("k-distance", "neighbour-distance", "max", "none")


@dataclass
class NhoodConfig:
    """Configuration for nhoodloji key names and default parameters."""

    # Key names
    cell_id_col: str = "cell"
    reduced_dims_key: str = "X_pca"
    sample_col: str = "sample"

    # Neighbourhood construction defaults
    default_k: int = 21
    default_d: int = 30
    default_prop: float = 0.1

    # Testing defaults
    fdr_weighting: str = "k-distance"

    def __post_init__(self):
        if self.fdr_weighting not in VALID_FDR_WEIGHTING:
            raise InvalidParameterError(
                f"Invalid fdr_weighting '{self.fdr_weighting}'. "
                f"Choose from {VALID_FDR_WEIGHTING}"
            )
        if not 0 < self.default_prop < 1:
            raise InvalidParameterError(f"default_prop must be in (0, 1), got {self.default_prop}")


class NhoodlojiError(Exception):
    """Base exception for nhoodloji errors."""

    pass


class InvalidParameterError(NhoodlojiError, ValueError):
    """Raised when a parameter is out of range or not recognised."""

    pass


class InvalidInputTypeError(NhoodlojiError, TypeError):
    """Raised when an input is neither a nhoodloji object nor a KNNGraph."""

    pass


class DimensionMismatchError(NhoodlojiError, ValueError):
    """Raised when matrix/vector shapes do not line up."""

    pass


class MissingPrecomputationError(NhoodlojiError):
    """Raised when a derived artifact needed by a step has not been computed."""

    pass


class ConsistencyError(NhoodlojiError):
    """Raised when data consistency checks fail."""

    pass
