"""
Exception hierarchy for the optimizer.

``ConfigurationError`` is raised at construction / initialisation time and is
never recovered. ``NumericalError`` is raised by the distribution update and
is caught by the protocol, which reports it through ``status()``.
``ProtocolError`` signals that the caller broke the task contract.
"""

__all__ = [
    "BoundCMAError",
    "ConfigurationError",
    "NumericalError",
    "ProtocolError",
]


class BoundCMAError(Exception):
    """Base class for all optimizer errors."""


class ConfigurationError(BoundCMAError, ValueError):
    """Invalid dimension, population, concurrency, bounds or factor shape."""


class NumericalError(BoundCMAError, ArithmeticError):
    """Singular or near-singular Cholesky factor during an update."""


class ProtocolError(BoundCMAError, RuntimeError):
    """Unexpected message kind, unknown task id, or call in the wrong phase."""
