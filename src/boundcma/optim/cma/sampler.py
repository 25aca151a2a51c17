"""
Candidate sampling and box-bound enforcement.

Bounds may cover only a prefix of the coordinates: ``lower[i]`` applies to
coordinate ``i`` only when ``i < len(lower)``, and likewise for ``upper``.

Policy
------
Let ``n_bounded`` be the number of coordinates lying on or beyond a bound.

* ``n_bounded < n``: each violating coordinate is clamped onto its bound.
* ``n_bounded == n``: each violating coordinate is moved halfway towards the
  distribution mean, repeatedly, until it is feasible.  This keeps the
  direction of the step instead of collapsing the sample onto a corner.
  The number of halvings is capped; a coordinate still infeasible after the
  cap (only possible when the centre itself is on or past the bound) is
  clamped.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

import numpy as np

from boundcma.core._types import Float64Array
from boundcma.core.cholesky import CholeskyFactor
from boundcma.core.errors import ConfigurationError

__all__ = ["BoxBounds", "midpoint_path", "sample"]

logger = logging.getLogger(__name__)


def midpoint_path(
    value: float, center: float, bound: float, max_steps: int
) -> Iterator[float]:
    """
    Yield successive midpoints between ``value`` and ``center``.

    Iteration stops as soon as the point is on the feasible side of
    ``bound`` or after ``max_steps`` halvings.  The side is taken from the
    starting point: below ``bound`` means ``bound`` is a lower bound.
    """
    below = value < bound
    for _ in range(max_steps):
        if (value >= bound) if below else (value <= bound):
            return
        value = 0.5 * (value + center)
        yield value


@dataclass(frozen=True, slots=True)
class BoxBounds:
    """Prefix box bounds ``lower`` / ``upper`` (possibly empty)."""

    lower: Float64Array
    upper: Float64Array

    @classmethod
    def from_config(
        cls,
        dim: int,
        xmin: Sequence[float] | None,
        xmax: Sequence[float] | None,
    ) -> BoxBounds:
        lower = np.asarray(() if xmin is None else xmin, dtype=np.float64)
        upper = np.asarray(() if xmax is None else xmax, dtype=np.float64)
        for name, arr in (("xmin", lower), ("xmax", upper)):
            if arr.size > dim:
                raise ConfigurationError(
                    f"{name} has {arr.size} entries but the dimension is {dim}"
                )
            if np.any(np.isnan(arr)):
                raise ConfigurationError(f"{name} contains NaN")
        common = min(lower.size, upper.size)
        if np.any(lower[:common] > upper[:common]):
            raise ConfigurationError("xmin exceeds xmax")
        return cls(lower=lower, upper=upper)

    @property
    def is_empty(self) -> bool:
        return self.lower.size == 0 and self.upper.size == 0

    def count_bounded(self, x: Float64Array) -> int:
        """Number of coordinates on or beyond either bound."""
        on = np.zeros(x.shape[0], dtype=bool)
        nl, nu = self.lower.size, self.upper.size
        on[:nl] |= x[:nl] <= self.lower
        on[:nu] |= x[:nu] >= self.upper
        return int(np.count_nonzero(on))

    def contains(self, x: Float64Array) -> bool:
        nl, nu = self.lower.size, self.upper.size
        return bool(np.all(x[:nl] >= self.lower) and np.all(x[:nu] <= self.upper))

    def clip(self, x: Float64Array) -> Float64Array:
        """Copy of ``x`` with every coordinate clamped into the box."""
        y = np.array(x, dtype=np.float64, copy=True)
        nl, nu = self.lower.size, self.upper.size
        y[:nl] = np.maximum(y[:nl], self.lower)
        y[:nu] = np.minimum(y[:nu], self.upper)
        return y

    def enforce(
        self, x: Float64Array, center: Float64Array, max_contractions: int = 64
    ) -> Float64Array:
        """Apply the bound policy to ``x`` in place and return it."""
        if self.is_empty:
            return x
        n = x.shape[0]
        contract = self.count_bounded(x) == n
        for i in range(n):
            for bounds, too_far in ((self.lower, np.less), (self.upper, np.greater)):
                if i >= bounds.size or not too_far(x[i], bounds[i]):
                    continue
                if contract:
                    path = midpoint_path(x[i], center[i], bounds[i], max_contractions)
                    for value in path:
                        x[i] = value
                    if not too_far(x[i], bounds[i]):
                        continue
                    logger.warning(
                        "coordinate %d still infeasible after %d contractions; clamping",
                        i,
                        max_contractions,
                    )
                x[i] = bounds[i]
        return x


def sample(
    rng: np.random.Generator,
    mean: Float64Array,
    chol: CholeskyFactor,
    bounds: BoxBounds,
    max_contractions: int = 64,
) -> Float64Array:
    """
    Draw ``mean + Uᵀ z`` with ``z ~ 𝒩(0, I)`` and enforce ``bounds``.
    """
    z = rng.standard_normal(mean.shape[0])
    x = mean + chol.transform(z)
    return bounds.enforce(x, mean, max_contractions)
