"""
Linear Algebra Helpers
======================

Matrix decompositions used by the copula, importance-sampling and
anomaly modules.

Every decomposition validates its input and raises
MatrixDecompositionError / SingularMatrixError on failure, so no NaN
ever leaves this module.
"""

from __future__ import annotations

import logging

import numpy as np

from quantcore.exceptions import MatrixDecompositionError, SingularMatrixError

logger = logging.getLogger(__name__)

SYMMETRY_TOLERANCE = 1e-8
EIGENVALUE_TOLERANCE = 1e-10
PIVOT_TOLERANCE = 1e-10


def _as_square(matrix, name: str = "matrix") -> np.ndarray:
    arr = np.asarray(matrix, dtype=float)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
        raise MatrixDecompositionError(f"{name} must be square, got shape {arr.shape}", arr.shape)
    if not np.all(np.isfinite(arr)):
        raise MatrixDecompositionError(f"{name} contains non-finite entries", arr.shape)
    return arr


def cholesky(matrix) -> np.ndarray:
    """
    Lower-triangular factor L with L @ L.T == matrix.

    Positive semi-definite matrices that are singular (e.g. perfect
    correlation) fall back to an eigenvalue square root, which is still a
    valid factor. Indefinite or asymmetric matrices raise.
    """
    arr = _as_square(matrix)
    if not np.allclose(arr, arr.T, atol=SYMMETRY_TOLERANCE):
        raise MatrixDecompositionError("Matrix is not symmetric", arr.shape)

    try:
        return np.linalg.cholesky(arr)
    except np.linalg.LinAlgError:
        eigenvalues, eigenvectors = np.linalg.eigh(arr)
        scale = max(1.0, float(np.max(np.abs(eigenvalues))))
        if eigenvalues.min() < -EIGENVALUE_TOLERANCE * scale:
            raise MatrixDecompositionError(
                f"Matrix is not positive semi-definite (min eigenvalue {eigenvalues.min():.3e})",
                arr.shape,
            ) from None
        logger.debug("Cholesky failed on singular PSD matrix, using eigen factor")
        eigenvalues = np.maximum(eigenvalues, 0.0)
        return eigenvectors @ np.diag(np.sqrt(eigenvalues))


def invert_matrix(matrix) -> np.ndarray:
    """
    Invert a square matrix by Gauss-Jordan elimination with partial pivoting.

    Raises:
        SingularMatrixError: if a column has no pivot above PIVOT_TOLERANCE
    """
    arr = _as_square(matrix)
    n = arr.shape[0]
    augmented = np.hstack([arr.copy(), np.eye(n)])

    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(augmented[col:, col])))
        if abs(augmented[pivot_row, col]) < PIVOT_TOLERANCE:
            raise SingularMatrixError(col, arr.shape)

        if pivot_row != col:
            augmented[[col, pivot_row]] = augmented[[pivot_row, col]]

        augmented[col] /= augmented[col, col]
        for row in range(n):
            if row != col:
                augmented[row] -= augmented[row, col] * augmented[col]

    return augmented[:, n:]


def validate_correlation_matrix(matrix) -> np.ndarray:
    """Check unit diagonal, entries in [-1, 1], symmetry and PSD; return as array."""
    arr = _as_square(matrix, "correlation matrix")
    if not np.allclose(np.diag(arr), 1.0, atol=SYMMETRY_TOLERANCE):
        raise MatrixDecompositionError("Correlation matrix must have unit diagonal", arr.shape)
    if np.any(np.abs(arr) > 1.0 + SYMMETRY_TOLERANCE):
        raise MatrixDecompositionError("Correlation entries must lie in [-1, 1]", arr.shape)
    cholesky(arr)
    return arr


def equicorrelation_matrix(dimension: int, rho: float) -> np.ndarray:
    """d x d matrix with unit diagonal and rho everywhere else."""
    if dimension < 1:
        raise ValueError("Dimension must be at least 1")
    matrix = np.full((dimension, dimension), float(rho))
    np.fill_diagonal(matrix, 1.0)
    return matrix


def nearest_correlation(matrix, floor: float = 1e-8) -> np.ndarray:
    """Project a symmetric matrix onto the PSD cone and rescale to unit diagonal."""
    arr = _as_square(matrix)
    arr = (arr + arr.T) / 2
    eigenvalues, eigenvectors = np.linalg.eigh(arr)
    eigenvalues = np.maximum(eigenvalues, floor)
    psd = eigenvectors @ np.diag(eigenvalues) @ eigenvectors.T

    d = np.sqrt(np.diag(psd))
    psd = psd / np.outer(d, d)
    np.fill_diagonal(psd, 1.0)
    return psd
