"""Log-determinant collapse test for the search distribution."""

from __future__ import annotations

import math

from boundcma.core.cholesky import CholeskyFactor
from boundcma.optim.cma.params import LOG_1E_16

__all__ = ["resolve_threshold", "has_converged"]


def resolve_threshold(stop_log_det: float, dim: int) -> float:
    """Map the configured threshold to an effective one (0 → ``n·ln(1e-16)``)."""
    if stop_log_det == 0:
        return dim * LOG_1E_16
    return float(stop_log_det)


def has_converged(chol: CholeskyFactor, stop_log_det: float) -> bool:
    """
    True once ``log det C`` drops below the threshold.

    A NaN threshold disables the test; the distribution may then shrink
    until the factor-scale floor is the only thing keeping it non-singular.
    """
    if math.isnan(stop_log_det):
        return False
    return chol.log_det() < resolve_threshold(stop_log_det, chol.dim)
