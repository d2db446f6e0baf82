"""Dense linear-algebra kernels over flat row-major float32 buffers.

Every kernel allocates its result; inputs are never written. Callers are
responsible for passing consistent shapes (the adapter invariants guarantee
them), so beyond numpy's own checks nothing is validated here.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

DTYPE = np.float32


def as_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    """Coerce a float sequence to a contiguous 1-D float32 array."""
    return np.ascontiguousarray(values, dtype=DTYPE).reshape(-1)


def matmul(a: np.ndarray, b: np.ndarray, m: int, k: int, n: int) -> np.ndarray:
    """C = A @ B for A (m x k) and B (k x n); returns C flattened (m x n)."""
    c = np.matmul(a.reshape(m, k), b.reshape(k, n))
    return c.astype(DTYPE, copy=False).reshape(-1)


def matvec(a: np.ndarray, x: np.ndarray, m: int, n: int) -> np.ndarray:
    """y = A @ x for A (m x n)."""
    return np.matmul(a.reshape(m, n), x).astype(DTYPE, copy=False)


def matvec_transposed(a: np.ndarray, x: np.ndarray, m: int, n: int) -> np.ndarray:
    """y = A^T @ x for A (m x n); y has length n."""
    return np.matmul(x, a.reshape(m, n)).astype(DTYPE, copy=False)


def outer(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """C = x @ y^T, flattened (|x| x |y|)."""
    return np.outer(x, y).astype(DTYPE, copy=False).reshape(-1)


def add(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.add(a, b, dtype=DTYPE)


def sub(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.subtract(a, b, dtype=DTYPE)


def scale(v: np.ndarray, factor: float) -> np.ndarray:
    return np.multiply(v, DTYPE(factor), dtype=DTYPE)


def l2_norm(v: np.ndarray) -> float:
    wide = np.asarray(v, dtype=np.float64)
    return math.sqrt(float(np.dot(wide, wide)))


def clip_by_norm(v: np.ndarray, threshold: float) -> np.ndarray:
    """Rescale v to L2 norm == threshold when its norm exceeds it.

    Vectors already within the threshold are returned as-is (same object).
    """
    norm = l2_norm(v)
    if norm > threshold:
        return (np.asarray(v, dtype=np.float64) * (threshold / norm)).astype(DTYPE)
    return v


def mean_squared(v: np.ndarray) -> float:
    if v.size == 0:
        return 0.0
    wide = np.asarray(v, dtype=np.float64)
    return float(np.dot(wide, wide)) / v.size
