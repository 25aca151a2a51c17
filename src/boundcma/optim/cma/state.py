"""
Adaptive CMA-ES state and per-generation buffers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from boundcma.core._types import Float64Array, IntArray
from boundcma.core.cholesky import CholeskyFactor

__all__ = ["CmaState", "GenerationBuffer", "BestTracker"]


@dataclass(slots=True)
class CmaState:
    """
    Mutable distribution state, written only between generations.

    Attributes
    ----------
    mean : Float64Array
        Distribution mean (length n).
    inv_sigma : float
        Inverse of the global step size.
    p_c, p_s : Float64Array
        Covariance and step-size evolution paths.
    chol : CholeskyFactor
        Factor of the sampling covariance.
    generation : int
        Number of completed updates.
    """

    mean: Float64Array
    inv_sigma: float
    p_c: Float64Array
    p_s: Float64Array
    chol: CholeskyFactor
    generation: int = 0

    @classmethod
    def initial(
        cls, dim: int, inv_sigma: float, chol: CholeskyFactor | None = None
    ) -> CmaState:
        return cls(
            mean=np.zeros(dim),
            inv_sigma=inv_sigma,
            p_c=np.zeros(dim),
            p_s=np.zeros(dim),
            chol=CholeskyFactor.identity(dim) if chol is None else chol.copy(),
        )

    @property
    def sigma(self) -> float:
        return 1.0 / self.inv_sigma


class GenerationBuffer:
    """
    Samples and fitness values of the generation in flight.

    Each slot carries the epoch in which its sample was drawn and the epoch
    in which its fitness was received.  Reads only see slots tagged with the
    current epoch, so nothing from a previous generation leaks through.
    """

    def __init__(self, population: int, dim: int) -> None:
        self.samples = np.zeros((population, dim))
        self.fitness = np.full(population, math.nan)
        self._sample_epoch: IntArray = np.full(population, -1, dtype=np.int64)
        self._fitness_epoch: IntArray = np.full(population, -1, dtype=np.int64)
        self.epoch = 0

    @property
    def population(self) -> int:
        return int(self.samples.shape[0])

    def advance(self) -> None:
        """Start a new generation; every slot becomes stale."""
        self.epoch += 1

    def put_sample(self, slot: int, x: Float64Array) -> None:
        self.samples[slot] = x
        self._sample_epoch[slot] = self.epoch
        self._fitness_epoch[slot] = -1

    def put_fitness(self, slot: int, f: float) -> None:
        self.fitness[slot] = f
        self._fitness_epoch[slot] = self.epoch

    def evaluated_slots(self) -> IntArray:
        """Indices whose sample and fitness both belong to the current epoch."""
        fresh = (self._sample_epoch == self.epoch) & (self._fitness_epoch == self.epoch)
        return np.flatnonzero(fresh)

    def is_complete(self) -> bool:
        return self.evaluated_slots().size == self.population


@dataclass(slots=True)
class BestTracker:
    """
    Best point and value seen over the run.

    ``f`` starts at +inf and only decreases; ``x`` starts at the initial
    mean.  In forget mode the tracker is bypassed and each generation's best
    is reported as-is.
    """

    x: Float64Array
    f: float = math.inf
    forget: bool = False
