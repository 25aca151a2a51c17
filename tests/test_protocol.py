import math

import numpy as np
import pytest

from boundcma.core.errors import ConfigurationError, NumericalError, ProtocolError
from boundcma.core.objectives import sphere
from boundcma.core.task import NOTICE_ID, Status, Task, TaskKind
from boundcma.optim.cma.params import CmaConfig
from boundcma.optim.cma.protocol import (
    Action,
    CmaEsCholB,
    Event,
    Phase,
    next_action,
    transition,
)
from boundcma.optim.cma.update import CHOL_SCALE_FLOOR, chol_scale


def _run_generation(opt, tasks, func=sphere, reverse=False):
    """Answer tasks until the generation ends; return the end-of-generation output."""
    queue = list(tasks)
    while queue:
        task = queue.pop() if reverse else queue.pop(0)
        out = opt.submit_result(task.id, func(task.x))
        evaluates = [t for t in out if t.kind is TaskKind.EVALUATE]
        notices = [t for t in out if t.kind is not TaskKind.EVALUATE]
        if notices:
            return notices, evaluates
        queue.extend(evaluates)
    raise AssertionError("generation never completed")


# ----------------------------------------------------------------------
# Pure state machine
# ----------------------------------------------------------------------
def test_transition_table():
    assert transition(Phase.AWAITING_INIT, Event.START) is Phase.SAMPLING
    assert transition(Phase.UPDATING, Event.CONTINUE) is Phase.SAMPLING
    assert transition(Phase.AWAITING_EVALUATIONS, Event.STOP) is Phase.DRAINING
    assert transition(Phase.DRAINING, Event.CLOSE) is Phase.CLOSED
    with pytest.raises(ProtocolError):
        transition(Phase.CLOSED, Event.RESULT)
    with pytest.raises(ProtocolError):
        transition(Phase.AWAITING_INIT, Event.RESULT)


def test_next_action():
    assert next_action(sent=2, received=1, population=6) is Action.DISPATCH_NEXT
    assert next_action(sent=6, received=4, population=6) is Action.WAIT
    assert next_action(sent=6, received=6, population=6) is Action.UPDATE
    with pytest.raises(ProtocolError):
        next_action(sent=2, received=3, population=6)


# ----------------------------------------------------------------------
# Initialisation and start
# ----------------------------------------------------------------------
@pytest.mark.parametrize("requested, expected", [(0, 0), (3, 3), (100, 6)])
def test_initialize_caps_concurrency(requested, expected):
    opt = CmaEsCholB(CmaConfig(population=6))
    assert opt.initialize(2, requested) == expected


def test_initialize_rejects_bad_input():
    opt = CmaEsCholB()
    with pytest.raises(ConfigurationError):
        opt.initialize(0, 1)
    with pytest.raises(ConfigurationError):
        opt.initialize(2, -1)
    with pytest.raises(ConfigurationError):
        CmaEsCholB(CmaConfig(init_cholesky=np.eye(3))).initialize(2, 1)
    with pytest.raises(ConfigurationError):
        CmaEsCholB(CmaConfig(xmin=[0.0, 0.0, 0.0])).initialize(2, 1)


def test_calls_before_initialize_raise():
    opt = CmaEsCholB()
    with pytest.raises(ProtocolError):
        opt.start([0.0])
    assert opt.status() == (Status.NOT_TERMINATED, None)


def test_start_dispatches_concurrency_tasks():
    opt = CmaEsCholB(CmaConfig(population=8, seed=0))
    opt.initialize(3, 4)
    tasks = opt.start([1.0, 2.0, 3.0])
    assert len(tasks) == 4
    assert [t.id for t in tasks] == [0, 1, 2, 3]
    assert all(t.kind is TaskKind.EVALUATE for t in tasks)
    assert all(math.isnan(t.f) for t in tasks)
    assert opt.outstanding == [0, 1, 2, 3]
    assert opt.phase is Phase.AWAITING_EVALUATIONS


def test_start_with_zero_concurrency_dispatches_one():
    opt = CmaEsCholB(CmaConfig(seed=0))
    opt.initialize(2, 0)
    assert len(opt.start([0.0, 0.0])) == 1


def test_start_clips_into_bounds():
    opt = CmaEsCholB(CmaConfig(xmin=[0.0, 0.0], xmax=[1.0, 1.0], seed=0))
    opt.initialize(2, 1)
    opt.start([5.0, -5.0])
    assert opt.state.mean.tolist() == [1.0, 0.0]


def test_start_rejects_wrong_shape():
    opt = CmaEsCholB()
    opt.initialize(2, 1)
    with pytest.raises(ConfigurationError):
        opt.start([0.0, 0.0, 0.0])


# ----------------------------------------------------------------------
# Result handling
# ----------------------------------------------------------------------
def test_sequential_generation_produces_notice_then_batch():
    opt = CmaEsCholB(CmaConfig(population=5, seed=1))
    opt.initialize(2, 2)
    tasks = opt.start([3.0, -1.0])
    notices, batch = _run_generation(opt, tasks)
    (notice,) = notices
    assert notice.kind is TaskKind.MAJOR_ITERATION
    assert notice.id == NOTICE_ID
    assert len(batch) == 2
    assert min(t.id for t in batch) == 5
    assert opt.state.generation == 1


def test_out_of_order_results_are_accepted():
    opt = CmaEsCholB(CmaConfig(population=6, seed=2))
    opt.initialize(2, 6)
    tasks = opt.start([1.0, 1.0])
    notices, batch = _run_generation(opt, tasks, reverse=True)
    assert notices[0].kind is TaskKind.MAJOR_ITERATION
    assert notices[0].f == pytest.approx(min(sphere(t.x) for t in tasks))
    assert len(batch) == 6


def test_unknown_or_repeated_id_raises():
    opt = CmaEsCholB(CmaConfig(population=6, seed=3))
    opt.initialize(2, 2)
    tasks = opt.start([0.0, 0.0])
    with pytest.raises(ProtocolError):
        opt.submit_result(999, 1.0)
    opt.submit_result(tasks[0].id, 1.0)
    with pytest.raises(ProtocolError):
        opt.submit_result(tasks[0].id, 1.0)


def test_submit_rejects_non_evaluate_kind():
    opt = CmaEsCholB(CmaConfig(seed=4))
    opt.initialize(2, 1)
    (task,) = opt.start([0.0, 0.0])
    opt.submit(task.with_result(2.0))
    with pytest.raises(ProtocolError):
        opt.submit(Task(NOTICE_ID, TaskKind.MAJOR_ITERATION, np.zeros(2), 1.0))


def test_huge_threshold_converges_after_first_generation():
    opt = CmaEsCholB(CmaConfig(population=4, stop_log_det=1e300, seed=5))
    opt.initialize(2, 4)
    tasks = opt.start([1.0, 1.0])
    notices, batch = _run_generation(opt, tasks)
    assert [t.kind for t in notices] == [TaskKind.DONE]
    assert notices[0].error is None
    assert batch == []
    assert opt.status() == (Status.CONVERGED, None)
    assert opt.phase is Phase.DRAINING
    assert opt.close() == []
    assert opt.phase is Phase.CLOSED


def test_nan_threshold_never_terminates():
    opt = CmaEsCholB(CmaConfig(population=4, stop_log_det=math.nan, seed=6))
    opt.initialize(2, 4)
    tasks = opt.start([1.0, 1.0])
    for _ in range(30):
        notices, tasks = _run_generation(opt, tasks)
        assert notices[0].kind is TaskKind.MAJOR_ITERATION
    assert opt.status() == (Status.NOT_TERMINATED, None)


def test_reported_best_is_non_increasing():
    opt = CmaEsCholB(CmaConfig(seed=7))
    opt.initialize(3, 3)
    tasks = opt.start([4.0, -4.0, 2.0])
    reported = []
    for _ in range(25):
        notices, tasks = _run_generation(opt, tasks)
        reported.append(notices[0].f)
        assert notices[0].f == pytest.approx(sphere(notices[0].x))
    assert all(b <= a for a, b in zip(reported, reported[1:]))
    assert opt.best[1] == reported[-1]


def test_forget_mode_reports_generation_minimum():
    opt = CmaEsCholB(CmaConfig(population=6, forget_best=True, seed=8))
    opt.initialize(2, 6)
    tasks = opt.start([2.0, 2.0])
    for _ in range(5):
        values = {t.id: sphere(t.x) for t in tasks}
        notices, new_tasks = _run_generation(opt, tasks)
        assert notices[0].f == pytest.approx(min(values.values()))
        tasks = new_tasks


def test_nan_results_are_tolerated():
    opt = CmaEsCholB(CmaConfig(population=4, seed=9))
    opt.initialize(2, 4)
    tasks = opt.start([1.0, 1.0])
    notices, _ = _run_generation(opt, tasks, func=lambda x: math.nan)
    assert notices[0].kind is TaskKind.MAJOR_ITERATION
    assert notices[0].f == math.inf


def test_samples_stay_inside_bounds():
    opt = CmaEsCholB(CmaConfig(xmin=[1.0, 1.0], xmax=[5.0, 5.0], seed=10))
    opt.initialize(2, 2)
    tasks = opt.start([3.0, 3.0])
    for _ in range(20):
        for t in tasks:
            assert np.all(t.x >= 1.0) and np.all(t.x <= 5.0)
        notices, tasks = _run_generation(opt, tasks)
        assert np.all(notices[0].x >= 1.0) and np.all(notices[0].x <= 5.0)


# ----------------------------------------------------------------------
# Stop / drain / close
# ----------------------------------------------------------------------
def test_stop_then_drain_then_close():
    opt = CmaEsCholB(CmaConfig(population=6, seed=11))
    opt.initialize(2, 3)
    tasks = opt.start([2.0, 2.0])
    opt.stop()
    assert opt.phase is Phase.DRAINING
    for t in tasks:
        assert opt.submit_result(t.id, sphere(t.x)) == []
    (final,) = opt.close()
    assert final.kind is TaskKind.MAJOR_ITERATION
    assert final.f == pytest.approx(min(sphere(t.x) for t in tasks))
    assert opt.phase is Phase.CLOSED
    with pytest.raises(ProtocolError):
        opt.submit_result(tasks[0].id, 0.0)


def test_close_without_improvement_or_in_forget_mode_is_silent():
    opt = CmaEsCholB(CmaConfig(population=6, seed=12))
    opt.initialize(2, 3)
    tasks = opt.start([2.0, 2.0])
    opt.stop()
    assert opt.close() == []

    opt = CmaEsCholB(CmaConfig(population=6, forget_best=True, seed=12))
    opt.initialize(2, 3)
    tasks = opt.start([2.0, 2.0])
    opt.stop()
    for t in tasks:
        opt.submit_result(t.id, sphere(t.x))
    assert opt.close() == []


def test_injected_rng_is_used():
    a = CmaEsCholB(rng=np.random.default_rng(42))
    b = CmaEsCholB(rng=np.random.default_rng(42))
    a.initialize(2, 1)
    b.initialize(2, 1)
    assert np.array_equal(a.start([0.0, 0.0])[0].x, b.start([0.0, 0.0])[0].x)


# ----------------------------------------------------------------------
# Edge configurations
# ----------------------------------------------------------------------
def test_large_population_runs_through_scale_floor():
    opt = CmaEsCholB(CmaConfig(population=100, seed=13))
    assert opt.initialize(2, 4) == 4
    assert chol_scale(opt.params.c1, opt.params.c_mu) == CHOL_SCALE_FLOOR
    tasks = opt.start([1.0, -1.0])
    notices, batch = _run_generation(opt, tasks)
    assert notices[0].kind is TaskKind.MAJOR_ITERATION
    assert len(batch) == 4
    diag = np.diag(opt.state.chol.upper)
    assert np.all(np.isfinite(diag)) and np.all(diag > 0)


def test_singular_factor_fails_the_run():
    opt = CmaEsCholB(CmaConfig(init_cholesky=np.diag([1.0, 1e-17]), population=4, seed=14))
    opt.initialize(2, 4)
    tasks = opt.start([1.0, 1.0])
    notices, batch = _run_generation(opt, tasks)
    (done,) = notices
    assert done.kind is TaskKind.DONE
    assert isinstance(done.error, NumericalError)
    assert batch == []
    status, err = opt.status()
    assert status is Status.FAILED
    assert err is done.error
    assert opt.phase is Phase.DRAINING
    assert opt.close() == []
    assert opt.phase is Phase.CLOSED


def test_update_refuses_stale_generation_buffer():
    opt = CmaEsCholB(CmaConfig(population=4, seed=15))
    opt.initialize(2, 4)
    tasks = opt.start([1.0, 1.0])
    for t in tasks[:-1]:
        opt.submit_result(t.id, sphere(t.x))
    # samples drawn in an earlier epoch must not feed the update
    opt._buffer.advance()
    with pytest.raises(ProtocolError):
        opt.submit_result(tasks[-1].id, sphere(tasks[-1].x))


def test_bounded_one_dimensional_run_converges_inside_the_box():
    opt = CmaEsCholB(CmaConfig(xmin=[1.0], xmax=[5.0], seed=16))
    opt.initialize(1, 2)
    tasks = opt.start([3.0])
    square = lambda x: float(x[0] ** 2)
    for _ in range(5000):
        notices, tasks = _run_generation(opt, tasks, func=square)
        (notice,) = notices
        assert 1.0 <= notice.x[0] <= 5.0
        if notice.kind is TaskKind.DONE:
            break
    assert notice.kind is TaskKind.DONE
    assert notice.error is None
    assert notice.f == pytest.approx(1.0, abs=1e-6)
    assert opt.status() == (Status.CONVERGED, None)
