"""Scalar root finders.

Both functions require a sign change on ``[a, b]`` and return a point
within ``tol`` of a root.  They are independent of the CMA engine.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import scipy.optimize

__all__ = ["brent", "bisection"]

logger = logging.getLogger(__name__)


def _validate(f: Callable[[float], float], a: float, b: float, tol: float) -> None:
    """Require ``tol > 0`` and a strict sign change of ``f`` on ``[a, b]``."""
    if tol <= 0:
        raise ValueError("tol must be positive.")
    if f(a) * f(b) >= 0:
        raise ValueError("f(a) and f(b) must have strictly opposite signs.")


def brent(
    f: Callable[[float], float],
    a: float,
    b: float,
    tol: float = 1e-9,
    max_iter: int = 1000,
) -> float:
    """Root of ``f`` in ``[a, b]`` by Brent's method.

    Raises ``ValueError`` without a sign change and ``RuntimeError`` if
    ``max_iter`` iterations are not enough.
    """
    _validate(f, a, b, tol)
    root, info = scipy.optimize.brentq(
        f, a, b, xtol=tol, maxiter=max_iter, full_output=True, disp=True
    )
    logger.debug(
        "brent: root %.5g after %d iterations (%d calls)",
        root,
        info.iterations,
        info.function_calls,
    )
    return float(root)


def bisection(
    f: Callable[[float], float],
    a: float,
    b: float,
    tol: float = 1e-9,
    max_iter: int = 1000,
) -> float:
    """Root of ``f`` in ``[a, b]`` by bisection."""
    _validate(f, a, b, tol)
    root, info = scipy.optimize.bisect(
        f, a, b, xtol=tol, maxiter=max_iter, full_output=True, disp=True
    )
    logger.debug(
        "bisection: root %.5g after %d iterations (%d calls)",
        root,
        info.iterations,
        info.function_calls,
    )
    return float(root)
