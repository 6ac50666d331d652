"""Custom exception types for the ARAP deformation engine."""

from __future__ import annotations


class ARAPError(Exception):
    """Base class for domain-specific errors."""


class InvalidTopologyError(ARAPError):
    """Raised when the triangle list does not describe a valid mesh."""

    def __init__(self, message: str, triangle: int | None = None) -> None:
        if triangle is not None:
            message = f"Triangle {triangle}: {message}"
        super().__init__(message)
        self.triangle = triangle


class EmptyConstraintSetError(ARAPError):
    """Raised when a session is created without any handle vertex."""

    def __init__(self, message: str | None = None) -> None:
        if message is None:
            message = (
                "At least one constrained vertex is required; "
                "without handles the system is rigid-body indeterminate."
            )
        super().__init__(message)


class InvalidConstraintIndexError(ARAPError):
    """Raised for constraint indices that are out of range or repeated."""

    def __init__(self, index: int, message: str | None = None) -> None:
        if message is None:
            message = f"Constraint index {index} is invalid."
        super().__init__(message)
        self.index = index


class SingularSystemError(ARAPError):
    """Raised when the reduced Laplacian cannot be factorized."""


class UseAfterDisposeError(ARAPError):
    """Raised when a disposed session (or released handle) is used."""


class BufferSizeError(ARAPError, ValueError):
    """Raised when a flat numeric buffer has the wrong length."""

    def __init__(self, name: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Buffer '{name}' has {actual} values, expected {expected}."
        )
        self.name = name
        self.expected = expected
        self.actual = actual


__all__ = [
    "ARAPError",
    "InvalidTopologyError",
    "EmptyConstraintSetError",
    "InvalidConstraintIndexError",
    "SingularSystemError",
    "UseAfterDisposeError",
    "BufferSizeError",
]
