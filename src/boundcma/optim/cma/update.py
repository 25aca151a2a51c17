"""
Distribution update after a fully evaluated generation.

Reference: [Hansen 2023] N. Hansen, The CMA Evolution Strategy: A Tutorial,
arXiv:1604.00772 (2023)
"""

from __future__ import annotations

import logging
import math

import numpy as np

from boundcma.core._types import Float64Array, IntArray
from boundcma.optim.cma.params import CmaParams
from boundcma.optim.cma.sampler import BoxBounds
from boundcma.optim.cma.state import BestTracker, CmaState

__all__ = [
    "CHOL_SCALE_FLOOR",
    "chol_scale",
    "rank",
    "generation_best",
    "report_best",
    "update_distribution",
]

logger = logging.getLogger(__name__)

CHOL_SCALE_FLOOR: float = float(np.finfo(np.float64).smallest_subnormal)
"""Substitute for a zero covariance scale (smallest positive double, 5e-324)."""


def chol_scale(c1: float, c_mu: float) -> float:
    """Covariance decay ``1 − c1 − c_mu``, floored at :data:`CHOL_SCALE_FLOOR`."""
    s = 1.0 - c1 - c_mu
    if s == 0.0:
        return CHOL_SCALE_FLOOR
    return s


def rank(fitness: Float64Array) -> IntArray:
    """Stable ascending order; NaN ranks after every number (including +inf)."""
    return np.argsort(fitness, kind="stable")


def generation_best(fitness: Float64Array) -> int:
    """
    Index of the smallest non-NaN fitness, or ``-1`` if all are NaN.

    Ties resolve to the last index, and ``+inf`` is a valid candidate.
    """
    valid = ~np.isnan(fitness)
    if not np.any(valid):
        return -1
    best = np.min(fitness[valid])
    return int(np.flatnonzero(fitness == best)[-1])


def report_best(
    tracker: BestTracker, samples: Float64Array, fitness: Float64Array
) -> tuple[Float64Array, float]:
    """
    Fold a generation into ``tracker`` and return the point/value to report.

    Without forget mode the running best only moves on strict improvement and
    is always what gets reported.  In forget mode the generation's own best
    is reported (NaN and the first sample if every value is NaN).
    """
    idx = generation_best(fitness)
    if idx == -1:
        gen_x, gen_f = samples[0], math.nan
    else:
        gen_x, gen_f = samples[idx], float(fitness[idx])
    if tracker.forget:
        return gen_x.copy(), gen_f
    if gen_f < tracker.f:
        tracker.f = gen_f
        tracker.x = gen_x.copy()
    return tracker.x.copy(), tracker.f


def update_distribution(
    params: CmaParams,
    state: CmaState,
    samples: Float64Array,
    fitness: Float64Array,
    bounds: BoxBounds,
    max_contractions: int = 64,
) -> None:
    """
    One CMA-ES update of mean, evolution paths, Cholesky factor and σ.

    Parameters
    ----------
    params :
        Run-constant hyperparameters.
    state :
        Distribution state, updated in place.
    samples :
        (λ × n) candidates of the generation.
    fitness :
        Length-λ objective values (NaN allowed).
    bounds :
        Box bounds applied to the new mean.
    max_contractions :
        Contraction cap forwarded to :meth:`BoxBounds.enforce`.

    Raises
    ------
    NumericalError
        If the whitening solve fails.  ``state`` may then be partially
        updated and must not be used further.
    """
    order = rank(fitness)
    elite = samples[order[: params.mu]]
    mean_old = state.mean.copy()

    # m_{t+1} = Σ w_i x_{i:λ}
    mean_new = params.weights @ elite
    bounds.enforce(mean_new, mean_old, max_contractions)
    mean_diff = mean_new - mean_old
    state.mean = mean_new

    # p_c ← (1−c_c) p_c + √(c_c(2−c_c)μ_eff) (m_{t+1}−m_t)/σ
    state.p_c *= 1.0 - params.c_c
    state.p_c += (
        math.sqrt(params.c_c * (2.0 - params.c_c) * params.mu_eff)
        * state.inv_sigma
        * mean_diff
    )

    # p_s ← (1−c_s) p_s + √(c_s(2−c_s)μ_eff) U⁻ᵀ (m_{t+1}−m_t)/σ
    whitened = state.chol.solve_transpose(mean_diff)
    state.p_s *= 1.0 - params.c_s
    state.p_s += (
        math.sqrt(params.c_s * (2.0 - params.c_s) * params.mu_eff)
        * state.inv_sigma
        * whitened
    )

    # C ← (1−c1−c_mu) C + c1 p_c p_cᵀ + Σ c_mu w_i/σ (x_i−m_t)(x_i−m_t)ᵀ
    state.chol.scale(chol_scale(params.c1, params.c_mu))
    state.chol.sym_rank_one(params.c1, state.p_c)
    for w, x in zip(params.weights, elite):
        state.chol.sym_rank_one(params.c_mu * w * state.inv_sigma, x - mean_old)

    # σ ← σ exp(c_s/d_s (‖p_s‖/E_chi − 1))
    norm_ps = float(np.linalg.norm(state.p_s))
    state.inv_sigma /= math.exp(params.c_s / params.d_s * (norm_ps / params.e_chi - 1.0))
    state.generation += 1

    logger.debug(
        "generation %d: sigma %.3e  logdet %.3e  |p_s| %.3e",
        state.generation,
        state.sigma,
        state.chol.log_det(),
        norm_ps,
    )
