from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from boundcma.core._types import Float64Array

__all__ = ["Problem", "Result", "Model"]


@dataclass(frozen=True, slots=True)
class Problem:
    func: Callable[[Float64Array], float]
    x0: tuple[float, ...]

    @property
    def dim(self) -> int:
        return len(self.x0)


@dataclass
class Result:
    problem: Problem
    best_x: Float64Array
    best_f: float
    wall_time_s: float
    extras: dict[str, Any] = field(default_factory=dict)


class Model(Protocol):
    def run(self, problem: Problem) -> Result: ...

    @classmethod
    def from_config(cls, path: Path) -> Model: ...
