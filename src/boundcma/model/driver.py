"""
Evaluate-and-feed loop around :class:`CmaEsCholB`.

Candidates are evaluated on a :class:`concurrent.futures.ThreadPoolExecutor`
with as many workers as the protocol allows in flight.  Results are fed back
in completion order, which is exactly the out-of-order pattern the protocol
is built for.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

import numpy as np

from boundcma.core._types import Float64Array
from boundcma.core.errors import ConfigurationError
from boundcma.core.task import Status, Task, TaskKind
from boundcma.optim.cma.params import CmaConfig
from boundcma.optim.cma.protocol import CmaEsCholB

__all__ = ["Settings", "Result", "minimize"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Stopping rules and parallelism for :func:`minimize`.

    Attributes
    ----------
    max_generations : int | None
        Stop after this many completed generations.
    max_evaluations : int | None
        Stop once this many results have been received.
    concurrency : int
        Desired number of parallel evaluations (0 means 1).
    log_every : int
        Log progress every *log_every* generations; ``0`` disables it.
    """

    max_generations: int | None = None
    max_evaluations: int | None = None
    concurrency: int = 1
    log_every: int = 10

    def __post_init__(self) -> None:
        if self.max_generations is not None and self.max_generations < 0:
            raise ConfigurationError("max_generations must be non-negative.")
        if self.max_evaluations is not None and self.max_evaluations < 0:
            raise ConfigurationError("max_evaluations must be non-negative.")
        if self.concurrency < 0:
            raise ConfigurationError("concurrency must be non-negative.")


@dataclass
class Result:
    x: Float64Array
    f: float
    status: Status
    error: Exception | None
    stop_reason: str
    generations: int
    evaluations: int
    wall_time_s: float
    history: list[float] = field(default_factory=list)


def minimize(
    func: Callable[[Float64Array], float],
    x0: Sequence[float] | Float64Array,
    config: CmaConfig | None = None,
    settings: Settings | None = None,
    *,
    rng: np.random.Generator | None = None,
) -> Result:
    """
    Minimise ``func`` with bound-constrained CMA-ES.

    Parameters
    ----------
    func :
        Objective; called from worker threads, so it must be thread-safe
        when ``settings.concurrency > 1``.
    x0 :
        Initial mean.
    config :
        Optimizer options.
    settings :
        Stopping rules and parallelism.
    rng :
        Random generator injected into the optimizer.

    Returns
    -------
    Result
        Reported best point and value, termination status and counters.
        ``history`` holds the best value reported at every generation.

    Raises
    ------
    Exception
        Whatever ``func`` raises is propagated.
    """
    settings = settings if settings is not None else Settings()
    x_start = np.asarray(x0, dtype=np.float64)
    opt = CmaEsCholB(config, rng=rng)
    in_flight = max(opt.initialize(x_start.size, settings.concurrency), 1)

    t0 = time.perf_counter()
    history: list[float] = []
    generations = 0
    evaluations = 0
    best_x, best_f = x_start.copy(), float("inf")
    stop_reason = ""
    pending: dict[Future[float], int] = {}

    with ThreadPoolExecutor(max_workers=in_flight) as pool:

        def launch(tasks: list[Task]) -> None:
            for task in tasks:
                pending[pool.submit(func, task.x)] = task.id

        if settings.max_generations == 0 or settings.max_evaluations == 0:
            stop_reason = "generation_limit" if settings.max_generations == 0 else "evaluation_limit"
            opt.start(x_start)
            opt.stop()
        else:
            launch(opt.start(x_start))

        while pending and not stop_reason:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for fut in done:
                task_id = pending.pop(fut)
                f = float(fut.result())
                evaluations += 1
                if stop_reason:
                    opt.submit_result(task_id, f)
                    continue

                batch: list[Task] = []
                for task in opt.submit_result(task_id, f):
                    if task.kind is TaskKind.EVALUATE:
                        batch.append(task)
                    elif task.kind is TaskKind.MAJOR_ITERATION:
                        generations += 1
                        best_x, best_f = task.x, task.f
                        history.append(task.f)
                        if settings.log_every and generations % settings.log_every == 0:
                            logger.info("gen %4d   best %12.6e", generations, task.f)
                        if (
                            settings.max_generations is not None
                            and generations >= settings.max_generations
                        ):
                            stop_reason = "generation_limit"
                    else:
                        generations += 1
                        best_x, best_f = task.x, task.f
                        history.append(task.f)
                        stop_reason = "failed" if task.error is not None else "converged"

                if (
                    not stop_reason
                    and settings.max_evaluations is not None
                    and evaluations >= settings.max_evaluations
                ):
                    stop_reason = "evaluation_limit"

                if stop_reason in ("generation_limit", "evaluation_limit"):
                    opt.stop()
                elif not stop_reason:
                    launch(batch)

        # Drain whatever is still running; results may still improve the best.
        for fut in list(pending):
            f = float(fut.result())
            evaluations += 1
            opt.submit_result(pending.pop(fut), f)

    for task in opt.close():
        best_x, best_f = task.x, task.f

    status, error = opt.status()
    dt = time.perf_counter() - t0
    logger.info(
        "Finished %d gens (%d evals) in %.1fs → best %.6e [%s]",
        generations,
        evaluations,
        dt,
        best_f,
        stop_reason,
    )
    return Result(
        x=np.asarray(best_x, dtype=np.float64),
        f=float(best_f),
        status=status,
        error=error,
        stop_reason=stop_reason,
        generations=generations,
        evaluations=evaluations,
        wall_time_s=dt,
        history=history,
    )
