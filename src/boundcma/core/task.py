"""
Messages exchanged between the optimizer and its caller.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from boundcma.core._types import Float64Array

__all__ = ["TaskKind", "Task", "Status", "NOTICE_ID"]

NOTICE_ID: int = -1
"""Id carried by tasks that do not request an evaluation."""


class TaskKind(Enum):
    """Kind of an outbound (or inbound) task."""

    EVALUATE = "evaluate"
    MAJOR_ITERATION = "major_iteration"
    DONE = "done"


class Status(Enum):
    """Termination status reported by ``CmaEsCholB.status()``."""

    NOT_TERMINATED = "not_terminated"
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass(frozen=True, slots=True, eq=False)
class Task:
    """
    A unit of work or a notification.

    Attributes
    ----------
    id : int
        Correlates an ``EVALUATE`` request with its result.  Notices and
        ``DONE`` use :data:`NOTICE_ID`.
    kind : TaskKind
        What the task asks for or announces.
    x : Float64Array
        Candidate point (``EVALUATE``) or reported best point.
    f : float
        Objective value; NaN on outbound ``EVALUATE`` tasks.
    error : Exception | None
        Failure carried by a terminal ``DONE`` task.
    """

    id: int
    kind: TaskKind
    x: Float64Array
    f: float = math.nan
    error: Exception | None = field(default=None, compare=False)

    def with_result(self, f: float) -> Task:
        """Return the inbound result for this ``EVALUATE`` task."""
        return Task(self.id, self.kind, self.x, float(f))

    @classmethod
    def evaluate(cls, task_id: int, x: Float64Array) -> Task:
        return cls(task_id, TaskKind.EVALUATE, np.array(x, dtype=np.float64, copy=True))
