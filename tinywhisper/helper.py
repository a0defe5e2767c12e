"""Element-wise array helpers shared by the audio front end and the model."""

from __future__ import annotations

import math

import numpy as np

_LN10 = math.log(10.0)


def tensor_max_scalar(x, max_value: float) -> np.ndarray:
    """Element-wise maximum of ``x`` and a scalar."""
    return np.maximum(np.asarray(x, dtype=np.float64), max_value)


def tensor_min_scalar(x, min_value: float) -> np.ndarray:
    """Element-wise minimum of ``x`` and a scalar."""
    return np.minimum(np.asarray(x, dtype=np.float64), min_value)


def tensor_max(x, max_values) -> np.ndarray:
    """Element-wise maximum of two arrays of the same shape."""
    return np.maximum(np.asarray(x, dtype=np.float64), np.asarray(max_values, dtype=np.float64))


def tensor_min(x, min_values) -> np.ndarray:
    """Element-wise minimum of two arrays of the same shape."""
    return np.minimum(np.asarray(x, dtype=np.float64), np.asarray(min_values, dtype=np.float64))


def tensor_log10(x) -> np.ndarray:
    """Base-10 logarithm computed from the natural logarithm."""
    return np.log(np.asarray(x, dtype=np.float64)) / _LN10


def all_zeros(x) -> bool:
    """True when every element of ``x`` is exactly zero."""
    return not np.any(np.asarray(x))


def pow10(x) -> np.ndarray:
    """Ten raised to the power of each element of ``x``."""
    return np.exp(np.asarray(x, dtype=np.float64) * _LN10)


def reverse(x, dim: int) -> np.ndarray:
    """Reverse ``x`` along axis ``dim``."""
    return np.flip(np.asarray(x), axis=dim)