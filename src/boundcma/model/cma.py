from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from boundcma.model.api import Problem, Result
from boundcma.model.driver import Settings, minimize
from boundcma.optim.cma.params import CmaConfig


@dataclass(frozen=True, slots=True)
class CmaModel:
    """Bounded CMA-ES run with fixed options, reusable across problems."""

    cma: CmaConfig = field(default_factory=CmaConfig)
    settings: Settings = field(default_factory=Settings)

    @classmethod
    def from_config(cls, path: Path) -> CmaModel:
        config = yaml.safe_load(Path(path).read_text()) or {}

        return cls(
            cma=CmaConfig.from_dict(config.get("cma", {})),
            settings=Settings(**config.get("run", {})),
        )

    def run(self, problem: Problem) -> Result:
        res = minimize(problem.func, problem.x0, self.cma, self.settings)

        return Result(
            problem=problem,
            best_x=res.x,
            best_f=res.f,
            wall_time_s=res.wall_time_s,
            extras={
                "status": res.status,
                "error": res.error,
                "stop_reason": res.stop_reason,
                "generations": res.generations,
                "evaluations": res.evaluations,
            },
        )
