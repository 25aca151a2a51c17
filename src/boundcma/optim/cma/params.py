"""
Run configuration and derived CMA-ES hyperparameters.

Reference: [Hansen 2023] N. Hansen, The CMA Evolution Strategy: A Tutorial,
arXiv:1604.00772 (2023)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from boundcma.core._types import Float64Array
from boundcma.core.errors import ConfigurationError

__all__ = [
    "CmaConfig",
    "CmaParams",
    "DEFAULT_INV_SIGMA",
    "LOG_1E_16",
    "default_population",
]

DEFAULT_INV_SIGMA: float = 10.0 / 3.0
"""Inverse step size used when ``init_step_size`` is 0."""

LOG_1E_16: float = math.log(1e-16)
"""Per-dimension default of the log-determinant stopping threshold."""


def default_population(dim: int) -> int:
    """``4 + ⌊3 ln n⌋``."""
    return 4 + int(3 * math.log(dim))


def _chi_mean(k: int) -> float:
    """E‖𝒩(0, I_k)‖, chi mean (asymptotic approximation).

    Uses the standard expansion:
        √k · (1 − 1/(4k) + 1/(21 k²))
    """
    if k <= 0:
        return 0.0
    return math.sqrt(k) * (1.0 - 1.0 / (4.0 * k) + 1.0 / (21.0 * k * k))


def _as_bound(value: Any) -> tuple[float, ...] | None:
    if value is None:
        return None
    arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if arr.ndim != 1:
        raise ConfigurationError("bounds must be one-dimensional sequences.")
    return tuple(float(v) for v in arr)


@dataclass(frozen=True, slots=True)
class CmaConfig:
    """
    User-facing options, all optional.

    Attributes
    ----------
    init_step_size : float
        Initial step size σ₀.  ``0`` selects the default (inverse step size
        :data:`DEFAULT_INV_SIGMA`).  Negative values are rejected.
    population : int
        Population size λ.  ``0`` selects ``4 + ⌊3 ln n⌋``.
    init_cholesky : numpy.ndarray | None
        Upper Cholesky factor of the initial covariance; identity if None.
        Its size is checked against the problem dimension at initialisation.
    stop_log_det : float
        Log-determinant threshold below which the run is converged.  ``0``
        selects ``n·ln(1e-16)``; NaN disables the criterion, leaving the
        factor-scale floor as the only guard against collapse.
    forget_best : bool
        Report each generation's best instead of the best over the run.
    xmin, xmax : tuple[float, ...] | None
        Box bounds.  Either may cover only a prefix of the coordinates.
    seed : int | None
        Seed of the default random generator.
    max_contractions : int
        Cap on midpoint contractions per coordinate in the all-violated
        bound policy.
    """

    init_step_size: float = 0.0
    population: int = 0
    init_cholesky: Float64Array | None = field(default=None, compare=False)
    stop_log_det: float = 0.0
    forget_best: bool = False
    xmin: tuple[float, ...] | None = None
    xmax: tuple[float, ...] | None = None
    seed: int | None = None
    max_contractions: int = 64

    def __post_init__(self) -> None:
        if self.init_step_size < 0 or math.isnan(self.init_step_size):
            raise ConfigurationError(
                f"init_step_size must be non-negative, got {self.init_step_size}"
            )
        if self.population < 0:
            raise ConfigurationError(
                f"population must be non-negative, got {self.population}"
            )
        if self.max_contractions < 1:
            raise ConfigurationError("max_contractions must be at least one.")
        object.__setattr__(self, "xmin", _as_bound(self.xmin))
        object.__setattr__(self, "xmax", _as_bound(self.xmax))
        if self.init_cholesky is not None:
            object.__setattr__(
                self, "init_cholesky", np.asarray(self.init_cholesky, dtype=np.float64)
            )
        if self.xmin is not None and self.xmax is not None:
            common = min(len(self.xmin), len(self.xmax))
            for i in range(common):
                if self.xmin[i] > self.xmax[i]:
                    raise ConfigurationError(
                        f"xmin[{i}]={self.xmin[i]} exceeds xmax[{i}]={self.xmax[i]}"
                    )

    @property
    def inv_sigma0(self) -> float:
        if self.init_step_size == 0:
            return DEFAULT_INV_SIGMA
        return 1.0 / self.init_step_size

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CmaConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown config keys: {sorted(unknown)}")
        kwargs = dict(data)
        # YAML has no NaN literal that survives every loader; accept a string.
        if isinstance(kwargs.get("stop_log_det"), str):
            kwargs["stop_log_det"] = float(kwargs["stop_log_det"])
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str | Path) -> CmaConfig:
        config = yaml.safe_load(Path(path).read_text()) or {}
        return cls.from_dict(config.get("cma", config))


@dataclass(frozen=True, slots=True)
class CmaParams:
    """
    Run-constant CMA-ES parameters in dimension ``dim``.

    Attributes
    ----------
    dim : int
        Search dimension n.
    lambda_ : int
        Population size (λ).
    mu : int
        Number of parents (μ) used for recombination.
    weights : numpy.ndarray
        Length-μ positive recombination weights summing to one.
    mu_eff : float
        Variance-effective selection mass ``1 / Σ w²``.
    c_c, c_s, c1, c_mu, d_s : float
        Path decay rates, covariance learning rates and step-size damping.
    e_chi : float
        E‖𝒩(0, I_n)‖ used by step-size control.
    """

    dim: int
    lambda_: int
    mu: int
    weights: Float64Array
    mu_eff: float
    c_c: float
    c_s: float
    c1: float
    c_mu: float
    d_s: float
    e_chi: float

    def __post_init__(self) -> None:
        if self.dim <= 0:
            raise ConfigurationError("dim must be positive.")
        if self.lambda_ < 1:
            raise ConfigurationError("lambda_ must be at least one.")
        if not 1 <= self.mu <= self.lambda_:
            raise ConfigurationError("mu must satisfy 1 ≤ mu ≤ lambda_.")
        if self.weights.shape != (self.mu,):
            raise ConfigurationError("weights must have shape (mu,).")
        if np.any(self.weights <= 0):
            raise ConfigurationError("weights must be positive.")
        if not np.isclose(np.sum(self.weights), 1.0):
            raise ConfigurationError("weights must sum to one.")
        if not 0 < self.c_s < 1:
            raise ConfigurationError("c_s must be in (0, 1).")
        if not 0 <= self.c_c <= 1:
            raise ConfigurationError("c_c must be in [0, 1].")
        if self.c1 < 0 or self.c_mu < 0:
            raise ConfigurationError("c1 and c_mu must be non-negative.")
        if 1.0 - self.c1 - self.c_mu < 0.0:
            raise ConfigurationError("c1 + c_mu must not exceed one.")
        if self.d_s <= 0:
            raise ConfigurationError("d_s must be positive.")

    @classmethod
    def auto(cls, dim: int, population: int = 0) -> CmaParams:
        """Derive all hyperparameters from the dimension and population."""
        if dim <= 0:
            raise ConfigurationError(f"dimension must be positive, got {dim}")
        if population < 0:
            raise ConfigurationError(f"population must be non-negative, got {population}")
        n = float(dim)
        lam = population if population > 0 else default_population(dim)
        mu = max(1, lam // 2)

        idx = np.arange(1, mu + 1, dtype=np.float64)
        w = math.log(mu + 0.5) - np.log(idx)
        w = w / np.sum(w)
        mu_eff = float(1.0 / np.sum(w**2))

        c_c = (4.0 + mu_eff / n) / (n + 4.0 + 2.0 * mu_eff / n)
        c_s = (mu_eff + 2.0) / (n + mu_eff + 5.0)
        c1 = 2.0 / ((n + 1.3) ** 2 + mu_eff)
        c_mu = min(1.0 - c1, 2.0 * (mu_eff - 2.0 + 1.0 / mu_eff) / ((n + 2.0) ** 2 + mu_eff))
        d_s = 1.0 + 2.0 * max(0.0, math.sqrt((mu_eff - 1.0) / (n + 1.0)) - 1.0) + c_s

        return cls(
            dim=dim,
            lambda_=lam,
            mu=mu,
            weights=w,
            mu_eff=mu_eff,
            c_c=c_c,
            c_s=c_s,
            c1=c1,
            c_mu=c_mu,
            d_s=d_s,
            e_chi=_chi_mean(dim),
        )
