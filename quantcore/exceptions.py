"""
QuantCore Exceptions
====================

Exception hierarchy for the simulation engine.

Structural numeric failures (non-PSD correlation, singular covariance)
raise explicitly instead of propagating NaNs. Expected edge cases such as
short histories or zero variance are handled by degenerate results in the
individual modules and never reach this hierarchy.
"""

from __future__ import annotations

from typing import Any


class QuantCoreError(Exception):
    """Base exception for engine errors."""
    pass


class MatrixDecompositionError(QuantCoreError, ValueError):
    """Raised when a matrix is not symmetric positive semi-definite."""

    def __init__(self, message: str, matrix_shape: tuple[int, ...] | None = None):
        self.matrix_shape = matrix_shape
        super().__init__(message)


class SingularMatrixError(MatrixDecompositionError):
    """Raised when Gauss-Jordan elimination finds no usable pivot."""

    def __init__(self, column: int, matrix_shape: tuple[int, ...] | None = None):
        self.column = column
        super().__init__(
            f"Matrix is singular: no pivot above tolerance in column {column}",
            matrix_shape,
        )


class SimulationCancelledError(QuantCoreError):
    """Raised when a partitioned simulation hits its deadline or is cancelled."""

    def __init__(self, operation: str, completed_chunks: int, total_chunks: int, reason: str):
        self.operation = operation
        self.completed_chunks = completed_chunks
        self.total_chunks = total_chunks
        self.reason = reason
        super().__init__(
            f"{operation} {reason} after {completed_chunks}/{total_chunks} chunks"
        )


class ConfigValidationError(QuantCoreError, ValueError):
    """Exception raised when engine configuration fails validation.

    Inherits from ValueError so callers that already catch ValueError on
    bad parameters keep working.
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        return {"message": str(self), "errors": list(self.errors)}
