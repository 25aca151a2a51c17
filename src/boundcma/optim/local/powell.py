"""
Modified Powell direction-set minimizer with its bracketing and line search.

Thin adapters over :mod:`scipy.optimize`; they exist so callers of the CMA
protocol have a deterministic, single-threaded local method with the same
defaults as the rest of the package.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import numpy as np
import scipy.optimize

from boundcma.core._types import Float64Array

__all__ = ["Bracket", "bracket", "line_search", "PowellResult", "PowellMinimizer"]

logger = logging.getLogger(__name__)

_STATUS = {0: "success", 1: "maxfev", 2: "maxiter"}


@dataclass(frozen=True, slots=True)
class Bracket:
    """Points with ``fa > fb < fc`` enclosing a local minimum."""

    xa: float
    xb: float
    xc: float
    fa: float
    fb: float
    fc: float
    funcalls: int


def bracket(
    f: Callable[[float], float],
    xa: float = 0.0,
    xb: float = 1.0,
    grow_limit: float = 110.0,
    max_iter: int = 1000,
) -> Bracket:
    """
    Search downhill from ``xa``/``xb`` for a bracketing triple.

    The triple is not guaranteed to be ordered.

    Raises
    ------
    RuntimeError
        If no bracket is found within ``max_iter`` steps.
    """
    xa_, xb_, xc_, fa, fb, fc, calls = scipy.optimize.bracket(
        f, xa=xa, xb=xb, grow_limit=grow_limit, maxiter=max_iter
    )
    return Bracket(
        float(xa_), float(xb_), float(xc_), float(fa), float(fb), float(fc), int(calls)
    )


def line_search(
    f: Callable[[Float64Array], float],
    p: Float64Array,
    direction: Float64Array,
    tol: float = 1e-2,
    max_iter: int = 500,
) -> tuple[float, Float64Array, Float64Array]:
    """
    Minimise ``f(p + α·direction)`` over α with Brent's method.

    Returns
    -------
    tuple[float, Float64Array, Float64Array]
        ``(f_min, p + α*·direction, α*·direction)``.
    """
    p = np.asarray(p, dtype=np.float64)
    d = np.asarray(direction, dtype=np.float64)

    res = scipy.optimize.minimize_scalar(
        lambda alpha: f(p + alpha * d),
        method="brent",
        options={"xtol": tol, "maxiter": max_iter},
    )
    step = float(res.x) * d
    return float(res.fun), p + step, step


@dataclass(frozen=True, slots=True)
class PowellResult:
    x: Float64Array
    f: float
    n_iter: int
    n_fev: int
    status: str

    @property
    def success(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True, slots=True)
class PowellMinimizer:
    """
    Modified Powell minimizer.

    Attributes
    ----------
    xtol, ftol : float
        Relative tolerances on the solution and on the objective.
    max_iter, max_fev : int
        Iteration and evaluation caps.  Non-positive means unset; when both
        are unset each defaults to ``1000·N``.
    callback : Callable | None
        Called with a copy of the current point after every iteration.
    """

    xtol: float = 1e-4
    ftol: float = 1e-4
    max_iter: int = 0
    max_fev: int = 0
    callback: Callable[[Float64Array], None] | None = None

    def minimize(
        self,
        f: Callable[[Float64Array], float],
        x0: Sequence[float] | Float64Array,
        direc: Float64Array | None = None,
    ) -> PowellResult:
        """
        Minimise ``f`` starting at ``x0``.

        Parameters
        ----------
        f :
            Objective on ℝᴺ.
        x0 :
            Starting point.
        direc :
            Optional (N × N) initial direction set (rows); identity if None.

        Raises
        ------
        ValueError
            If ``x0`` is empty or ``direc`` has the wrong shape.
        """
        x = np.asarray(x0, dtype=np.float64).ravel()
        n = x.size
        if n == 0:
            raise ValueError("x0 must be non-empty.")
        if direc is not None and np.shape(direc) != (n, n):
            raise ValueError(f"direc must have shape ({n}, {n})")

        options: dict[str, object] = {"xtol": self.xtol, "ftol": self.ftol}
        if self.max_iter > 0:
            options["maxiter"] = self.max_iter
        if self.max_fev > 0:
            options["maxfev"] = self.max_fev
        if self.max_iter <= 0 and self.max_fev <= 0:
            options["maxiter"] = options["maxfev"] = 1000 * n
        if direc is not None:
            options["direc"] = np.asarray(direc, dtype=np.float64)

        callback = None
        if self.callback is not None:
            user_cb = self.callback

            def callback(xk: Float64Array) -> None:
                user_cb(np.array(xk, copy=True))

        res = scipy.optimize.minimize(
            f, x, method="Powell", callback=callback, options=options
        )
        status = _STATUS.get(int(res.status), "error")
        if status == "success":
            logger.info(
                "Powell success: f=%.7g iterations=%d evaluations=%d",
                float(res.fun),
                int(res.nit),
                int(res.nfev),
            )
        else:
            logger.warning("Powell stopped early (%s): %s", status, res.message)
        return PowellResult(
            x=np.asarray(res.x, dtype=np.float64),
            f=float(res.fun),
            n_iter=int(res.nit),
            n_fev=int(res.nfev),
            status=status,
        )
