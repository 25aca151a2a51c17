"""
Cooperative task protocol around the Cholesky CMA-ES engine.

The optimizer never calls the objective itself.  It hands out ``EVALUATE``
tasks and is driven forward by the results, which may come back in any order
and from any number of workers (up to the concurrency negotiated in
:meth:`CmaEsCholB.initialize`).  Every call is synchronous and returns the
tasks the caller should act on next:

* ``EVALUATE``        – evaluate ``x`` and answer with :meth:`submit_result`.
* ``MAJOR_ITERATION`` – a generation finished; ``x``/``f`` is the reported best.
* ``DONE``            – the run converged or failed; no new tasks follow.

Phase flow::

    AWAITING_INIT → SAMPLING ⇄ AWAITING_EVALUATIONS → UPDATING
        → {SAMPLING | CONVERGED | FAILED} → DRAINING → CLOSED

There is no cancellation and no timeout: a dispatched task that is never
answered stalls the generation.  A caller that wants to stop early calls
:meth:`CmaEsCholB.stop`, may still submit in-flight results, then calls
:meth:`CmaEsCholB.close`.

A protocol instance owns its state; never drive one instance from two
threads at once.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum

import numpy as np

from boundcma.core._types import Float64Array
from boundcma.core.cholesky import CholeskyFactor
from boundcma.core.errors import ConfigurationError, NumericalError, ProtocolError
from boundcma.core.task import NOTICE_ID, Status, Task, TaskKind
from boundcma.optim.cma.convergence import has_converged
from boundcma.optim.cma.params import CmaConfig, CmaParams
from boundcma.optim.cma.sampler import BoxBounds, sample
from boundcma.optim.cma.state import BestTracker, CmaState, GenerationBuffer
from boundcma.optim.cma.update import generation_best, report_best, update_distribution

__all__ = ["Phase", "Event", "Action", "transition", "next_action", "CmaEsCholB"]

logger = logging.getLogger(__name__)


class Phase(Enum):
    AWAITING_INIT = "awaiting_init"
    SAMPLING = "sampling"
    AWAITING_EVALUATIONS = "awaiting_evaluations"
    UPDATING = "updating"
    CONVERGED = "converged"
    FAILED = "failed"
    DRAINING = "draining"
    CLOSED = "closed"


class Event(Enum):
    START = "start"
    DISPATCHED = "dispatched"
    RESULT = "result"
    GENERATION_COMPLETE = "generation_complete"
    CONTINUE = "continue"
    CONVERGE = "converge"
    FAIL = "fail"
    DONE = "done"
    STOP = "stop"
    CLOSE = "close"


class Action(Enum):
    """What to do after a result has been recorded."""

    DISPATCH_NEXT = "dispatch_next"
    WAIT = "wait"
    UPDATE = "update"


_TRANSITIONS: dict[tuple[Phase, Event], Phase] = {
    (Phase.AWAITING_INIT, Event.START): Phase.SAMPLING,
    (Phase.SAMPLING, Event.DISPATCHED): Phase.AWAITING_EVALUATIONS,
    (Phase.AWAITING_EVALUATIONS, Event.RESULT): Phase.AWAITING_EVALUATIONS,
    (Phase.AWAITING_EVALUATIONS, Event.GENERATION_COMPLETE): Phase.UPDATING,
    (Phase.UPDATING, Event.CONTINUE): Phase.SAMPLING,
    (Phase.UPDATING, Event.CONVERGE): Phase.CONVERGED,
    (Phase.UPDATING, Event.FAIL): Phase.FAILED,
    (Phase.CONVERGED, Event.DONE): Phase.DRAINING,
    (Phase.FAILED, Event.DONE): Phase.DRAINING,
    (Phase.SAMPLING, Event.STOP): Phase.DRAINING,
    (Phase.AWAITING_EVALUATIONS, Event.STOP): Phase.DRAINING,
    (Phase.DRAINING, Event.STOP): Phase.DRAINING,
    (Phase.DRAINING, Event.RESULT): Phase.DRAINING,
    (Phase.DRAINING, Event.CLOSE): Phase.CLOSED,
}


def transition(phase: Phase, event: Event) -> Phase:
    """
    Pure phase transition.

    Raises
    ------
    ProtocolError
        If ``event`` is not allowed in ``phase``.
    """
    try:
        return _TRANSITIONS[(phase, event)]
    except KeyError:
        raise ProtocolError(f"event {event.value!r} not allowed in phase {phase.value!r}") from None


def next_action(sent: int, received: int, population: int) -> Action:
    """
    Decide what follows a recorded result.

    ``sent`` and ``received`` count this generation's dispatched tasks and
    results (the latter already including the result just recorded).
    """
    if not 0 <= received <= sent <= population:
        raise ProtocolError(
            f"inconsistent counters: sent={sent} received={received} population={population}"
        )
    if sent < population:
        return Action.DISPATCH_NEXT
    if received < population:
        return Action.WAIT
    return Action.UPDATE


class CmaEsCholB:
    """
    Bound-constrained CMA-ES with a Cholesky-factored covariance.

    Usage:
        - ``initialize(dim, concurrency)`` to size the run.
        - ``start(x0)`` for the first batch of ``EVALUATE`` tasks.
        - ``submit_result(task.id, f)`` for every evaluated task; act on the
          returned tasks.
        - After ``DONE`` (or ``stop()``), ``close()``.

    Parameters
    ----------
    config :
        Run options; defaults are used when omitted.
    rng :
        Random generator for sampling.  If omitted, one is created from
        ``config.seed`` at every :meth:`initialize`.
    """

    def __init__(
        self,
        config: CmaConfig | None = None,
        *,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.config = config if config is not None else CmaConfig()
        self._injected_rng = rng
        self._phase = Phase.AWAITING_INIT
        self._params: CmaParams | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def params(self) -> CmaParams:
        return self._require_init()

    @property
    def state(self) -> CmaState:
        self._require_init()
        return self._state

    @property
    def bounds(self) -> BoxBounds:
        self._require_init()
        return self._bounds

    @property
    def concurrency(self) -> int:
        self._require_init()
        return self._concurrency

    @property
    def best(self) -> tuple[Float64Array, float]:
        """Running best point and value (+inf before any result)."""
        self._require_init()
        return self._best.x.copy(), self._best.f

    @property
    def outstanding(self) -> list[int]:
        """Ids of dispatched tasks still awaiting a result."""
        self._require_init()
        return sorted(self._outstanding)

    def status(self) -> tuple[Status, Exception | None]:
        """``(FAILED, error)``, ``(CONVERGED, None)`` or ``(NOT_TERMINATED, None)``."""
        if self._params is None:
            return Status.NOT_TERMINATED, None
        if self._update_error is not None:
            return Status.FAILED, self._update_error
        if has_converged(self._state.chol, self.config.stop_log_det):
            return Status.CONVERGED, None
        return Status.NOT_TERMINATED, None

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------
    def initialize(self, dim: int, concurrency: int) -> int:
        """
        Derive hyperparameters and allocate buffers for a new run.

        Returns
        -------
        int
            Number of tasks the caller may have in flight at once,
            ``min(concurrency, λ)``.

        Raises
        ------
        ConfigurationError
            On a non-positive dimension, negative concurrency, or a Cholesky
            factor / bound vector that does not fit ``dim``.
        """
        if dim <= 0:
            raise ConfigurationError(f"dimension must be positive, got {dim}")
        if concurrency < 0:
            raise ConfigurationError(f"concurrency must be non-negative, got {concurrency}")
        cfg = self.config
        params = CmaParams.auto(dim, cfg.population)

        chol: CholeskyFactor | None = None
        if cfg.init_cholesky is not None:
            chol = CholeskyFactor.from_factor(cfg.init_cholesky)
            if chol.dim != dim:
                raise ConfigurationError(
                    f"init_cholesky has size {chol.dim}, expected {dim}"
                )

        self._bounds = BoxBounds.from_config(dim, cfg.xmin, cfg.xmax)
        self._state = CmaState.initial(dim, cfg.inv_sigma0, chol)
        self._buffer = GenerationBuffer(params.lambda_, dim)
        self._best = BestTracker(np.zeros(dim), forget=cfg.forget_best)
        self._rng = (
            self._injected_rng
            if self._injected_rng is not None
            else np.random.default_rng(cfg.seed)
        )
        self._concurrency = min(concurrency, params.lambda_)
        self._sent = 0
        self._received = 0
        self._outstanding: dict[int, int] = {}
        self._next_id = 0
        self._update_error: NumericalError | None = None
        self._phase = Phase.AWAITING_INIT
        self._params = params
        return self._concurrency

    def start(self, x0: Sequence[float] | Float64Array) -> list[Task]:
        """
        Set the initial mean and dispatch the first batch.

        ``max(concurrency, 1)`` tasks are returned; a start point outside the
        bounds is clipped into the box.
        """
        self._require_init()
        x = np.array(x0, dtype=np.float64, copy=True)
        if x.shape != (self._params.dim,):
            raise ConfigurationError(
                f"x0 must have shape ({self._params.dim},), got {x.shape}"
            )
        if not np.all(np.isfinite(x)):
            raise ConfigurationError("x0 must be finite.")
        self._phase = transition(self._phase, Event.START)
        if not self._bounds.contains(x):
            logger.warning("start point outside bounds; clipping into the box")
            x = self._bounds.clip(x)
        self._state.mean = x
        self._best.x = x.copy()
        logger.info(
            "CMA-ES start: dim=%d lambda=%d mu=%d concurrency=%d",
            self._params.dim,
            self._params.lambda_,
            self._params.mu,
            self._concurrency,
        )
        return self._dispatch_batch()

    def submit(self, result: Task) -> list[Task]:
        """Accept an inbound result message; only ``EVALUATE`` is valid."""
        if result.kind is not TaskKind.EVALUATE:
            raise ProtocolError(f"unexpected inbound task kind {result.kind.value!r}")
        return self.submit_result(result.id, result.f)

    def submit_result(self, task_id: int, f: float) -> list[Task]:
        """
        Record the objective value of task ``task_id``.

        Returns
        -------
        list[Task]
            One ``EVALUATE`` task (slot reused), nothing (still waiting), or
            the end-of-generation output: ``[MAJOR_ITERATION, EVALUATE...]``
            or ``[DONE]``.  While draining, always empty.

        Raises
        ------
        ProtocolError
            For an unknown id, a call outside an evaluation phase, or a
            generation whose buffer is not fully tagged with the current epoch.
        """
        self._require_init()
        if self._phase is Phase.DRAINING:
            self._record(task_id, f)
            self._phase = transition(self._phase, Event.RESULT)
            return []
        if self._phase is not Phase.AWAITING_EVALUATIONS:
            raise ProtocolError(f"no evaluations expected in phase {self._phase.value!r}")

        self._record(task_id, f)
        self._received += 1
        self._phase = transition(self._phase, Event.RESULT)

        action = next_action(self._sent, self._received, self._params.lambda_)
        if action is Action.DISPATCH_NEXT:
            task = self._dispatch(self._sent)
            self._sent += 1
            return [task]
        if action is Action.WAIT:
            return []
        return self._finish_generation()

    def stop(self) -> None:
        """Stop producing tasks; in-flight results may still be submitted."""
        self._require_init()
        self._phase = transition(self._phase, Event.STOP)

    def close(self) -> list[Task]:
        """
        Finish draining and close the run.

        Returns
        -------
        list[Task]
            A final ``MAJOR_ITERATION`` if a drained result beat the running
            best (never in forget mode), otherwise nothing.
        """
        self._require_init()
        self._phase = transition(self._phase, Event.CLOSE)
        if self._outstanding:
            logger.debug("closing with %d unanswered tasks", len(self._outstanding))
            self._outstanding.clear()
        if self._best.forget:
            return []
        slots = self._buffer.evaluated_slots()
        if slots.size == 0:
            return []
        fitness = self._buffer.fitness[slots]
        idx = generation_best(fitness)
        if idx == -1 or not fitness[idx] < self._best.f:
            return []
        self._best.f = float(fitness[idx])
        self._best.x = self._buffer.samples[slots[idx]].copy()
        return [Task(NOTICE_ID, TaskKind.MAJOR_ITERATION, self._best.x.copy(), self._best.f)]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_init(self) -> CmaParams:
        if self._params is None:
            raise ProtocolError("initialize() must be called first")
        return self._params

    def _record(self, task_id: int, f: float) -> None:
        try:
            slot = self._outstanding.pop(task_id)
        except KeyError:
            raise ProtocolError(f"unknown or already answered task id {task_id}") from None
        self._buffer.put_fitness(slot, float(f))

    def _dispatch(self, slot: int) -> Task:
        x = sample(
            self._rng,
            self._state.mean,
            self._state.chol,
            self._bounds,
            self.config.max_contractions,
        )
        self._buffer.put_sample(slot, x)
        task_id = self._next_id
        self._next_id += 1
        self._outstanding[task_id] = slot
        return Task.evaluate(task_id, x)

    def _dispatch_batch(self) -> list[Task]:
        n = max(self._concurrency, 1)
        tasks = [self._dispatch(slot) for slot in range(n)]
        self._sent = n
        self._received = 0
        self._phase = transition(self._phase, Event.DISPATCHED)
        return tasks

    def _finish_generation(self) -> list[Task]:
        buf = self._buffer
        if not buf.is_complete():
            raise ProtocolError(
                f"generation {buf.epoch} has only {buf.evaluated_slots().size} of "
                f"{buf.population} evaluated slots"
            )
        self._phase = transition(self._phase, Event.GENERATION_COMPLETE)
        x, f = report_best(self._best, buf.samples, buf.fitness)
        try:
            update_distribution(
                self._params,
                self._state,
                buf.samples,
                buf.fitness,
                self._bounds,
                self.config.max_contractions,
            )
        except NumericalError as exc:
            logger.error("CMA-ES update failed at generation %d: %s", self._state.generation, exc)
            self._update_error = exc
        buf.advance()
        self._sent = 0
        self._received = 0

        if self._update_error is not None:
            self._phase = transition(self._phase, Event.FAIL)
            return [self._done(x, f, self._update_error)]
        if has_converged(self._state.chol, self.config.stop_log_det):
            logger.info(
                "CMA-ES converged after %d generations: best %.6e",
                self._state.generation,
                f,
            )
            self._phase = transition(self._phase, Event.CONVERGE)
            return [self._done(x, f, None)]

        self._phase = transition(self._phase, Event.CONTINUE)
        notice = Task(NOTICE_ID, TaskKind.MAJOR_ITERATION, x, f)
        return [notice, *self._dispatch_batch()]

    def _done(self, x: Float64Array, f: float, error: Exception | None) -> Task:
        task = Task(NOTICE_ID, TaskKind.DONE, x, f, error)
        self._phase = transition(self._phase, Event.DONE)
        return task

    def __repr__(self) -> str:
        if self._params is None:
            return "CmaEsCholB(uninitialised)"
        return (
            f"CmaEsCholB(dim={self._params.dim}, lambda={self._params.lambda_}, "
            f"phase={self._phase.value}, generation={self._state.generation})"
        )
