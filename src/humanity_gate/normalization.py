"""
Feature vector normalization for the HUMANITY GATE engine.

This module provides the deterministic, sample-free transforms used to put
modality vectors on a common footing: fixed-dimension padding/truncation,
per-block z-scoring and unit-length scaling.
"""

import numpy as np
import structlog

from .exceptions import NormalizationError

# Initialize structured logger
logger = structlog.get_logger(__name__)


def _check_vector(vector: np.ndarray, target_dim: int) -> None:
    if not isinstance(vector, np.ndarray):
        raise NormalizationError(
            f"Input must be numpy array, got {type(vector)}",
            vector_shape=getattr(vector, "shape", (0,)),
            target_dimension=target_dim,
        )

    if vector.ndim != 1:
        raise NormalizationError(
            f"Input must be 1D array, got {vector.ndim}D",
            vector_shape=vector.shape,
            target_dimension=target_dim,
        )

    if not np.isfinite(vector).all():
        raise NormalizationError(
            "Input contains non-finite values",
            vector_shape=vector.shape,
            target_dimension=target_dim,
        )


def normalize_vector(vector: np.ndarray, target_dim: int) -> np.ndarray:
    """
    Normalize a feature vector to a target dimension by padding/truncation.

    Parameters
    ----------
    vector : np.ndarray
        Input feature vector to normalize.
    target_dim : int
        Target dimension for the normalized vector.

    Returns
    -------
    np.ndarray
        float64 vector of length `target_dim`.

    Raises
    ------
    NormalizationError
        If the input is not a finite, non-empty 1D array.

    Examples
    --------
    >>> normalized = normalize_vector(np.arange(40.0), 32)
    >>> assert normalized.shape == (32,)
    """
    _check_vector(vector, target_dim)

    if len(vector) == 0:
        raise NormalizationError(
            "Cannot normalize empty vector",
            vector_shape=vector.shape,
            target_dimension=target_dim,
        )

    if target_dim <= 0:
        raise NormalizationError(
            f"Target dimension must be positive, got {target_dim}",
            vector_shape=vector.shape,
            target_dimension=target_dim,
        )

    if len(vector) >= target_dim:
        normalized = vector[:target_dim]
    else:
        normalized = np.zeros(target_dim, dtype=np.float64)
        normalized[: len(vector)] = vector

    return normalized.astype(np.float64)


def signed_log(vector: np.ndarray) -> np.ndarray:
    """Compress magnitudes with sign(x) * log1p(|x|)."""
    _check_vector(vector, len(vector))
    return np.sign(vector) * np.log1p(np.abs(vector))


def zscore(vector: np.ndarray) -> np.ndarray:
    """
    Standardize a vector to zero mean and unit variance.

    A constant vector carries no shape information and maps to zeros.
    """
    _check_vector(vector, len(vector))
    std = float(np.std(vector))
    if std < 1e-12:
        return np.zeros_like(vector, dtype=np.float64)
    return (vector - float(np.mean(vector))) / std


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Scale a vector to unit length; the zero vector is returned unchanged."""
    _check_vector(vector, len(vector))
    norm = float(np.linalg.norm(vector))
    if norm < 1e-12:
        logger.debug("Zero-norm vector left unnormalized", dim=len(vector))
        return vector.astype(np.float64)
    return (vector / norm).astype(np.float64)
