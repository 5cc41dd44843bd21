from __future__ import annotations

import threading
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import OperationalError

from agency_core.orchestrator import scheduler as scheduler_module
from agency_core.orchestrator.backoff import BackoffPolicy
from agency_core.orchestrator.launcher.base import LaunchError
from agency_core.orchestrator.models import (
    AlreadyRunning,
    Backpressure,
    Deferred,
    Enqueued,
    Flow,
    LockUnavailable,
    RunOutcome,
    RunState,
    SchedulerConfig,
    SchedulerEventType,
)
from agency_core.orchestrator.scheduler import ThreadingRetryTimer, phase_grouping

pytestmark = [
    allure.epic("Run Scheduling"),
    allure.feature("Admission and Dispatch"),
]


def test_per_flow_limit_queues_second_run_until_first_finishes(make_scheduler, launcher) -> None:
    scheduler = make_scheduler(max_concurrent=2, per_flow_limits={Flow.IMPLEMENT: 1})

    first = scheduler.enqueue("a.md", Flow.IMPLEMENT)
    second = scheduler.enqueue("b.md", Flow.IMPLEMENT)

    assert isinstance(first, Enqueued)
    assert isinstance(second, Enqueued)
    assert first.dispatched is True
    assert second.dispatched is False
    assert launcher.launched_keys() == ["a.md"]
    assert scheduler.run(second.run_id).state == RunState.QUEUED

    scheduler.finish(first.run_id, RunOutcome.SUCCEEDED)

    assert launcher.launched_keys() == ["a.md", "b.md"]
    assert scheduler.run(second.run_id).state == RunState.RUNNING
    assert scheduler.run(first.run_id) is None


def test_enqueue_is_idempotent_per_resource(make_scheduler) -> None:
    scheduler = make_scheduler()

    first = scheduler.enqueue("a.md", "implement")
    second = scheduler.enqueue("a.md", "review")

    assert isinstance(first, Enqueued)
    assert second == AlreadyRunning(existing_run_id=first.run_id)


def test_concurrent_enqueue_of_same_resource_admits_one_run(make_scheduler) -> None:
    scheduler = make_scheduler(max_concurrent=4)
    results = []
    results_lock = threading.Lock()
    barrier = threading.Barrier(6)

    def _enqueue() -> None:
        barrier.wait()
        result = scheduler.enqueue("shared.md", Flow.IMPLEMENT)
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=_enqueue) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    admitted = [result for result in results if isinstance(result, Enqueued)]
    duplicates = [result for result in results if isinstance(result, AlreadyRunning)]
    assert len(admitted) == 1
    assert len(duplicates) == 5
    assert {result.existing_run_id for result in duplicates} == {admitted[0].run_id}


def test_global_cap_is_never_exceeded(make_scheduler, launcher) -> None:
    scheduler = make_scheduler(max_concurrent=2, per_flow_limits={Flow.IMPLEMENT: 3})

    for index in range(4):
        scheduler.enqueue(f"card-{index}.md", Flow.IMPLEMENT, parallelizable=True)
        assert scheduler.snapshot().running <= 2

    snapshot = scheduler.snapshot()
    assert snapshot.running == 2
    assert snapshot.queued == 2
    assert len(launcher.launched) == 2


def test_per_flow_caps_are_independent(make_scheduler) -> None:
    scheduler = make_scheduler(
        max_concurrent=4,
        per_flow_limits={Flow.IMPLEMENT: 1, Flow.REVIEW: 2},
    )

    for key in ("i1.md", "i2.md"):
        scheduler.enqueue(key, Flow.IMPLEMENT)
    for key in ("r1.md", "r2.md", "r3.md"):
        scheduler.enqueue(key, Flow.REVIEW)

    snapshot = scheduler.snapshot()
    assert snapshot.running_by_flow == {Flow.IMPLEMENT: 1, Flow.REVIEW: 2}
    assert snapshot.queued_by_flow == {Flow.IMPLEMENT: 1, Flow.REVIEW: 1}


def test_hard_limit_defers_without_taking_lock(make_scheduler, lock_store) -> None:
    scheduler = make_scheduler(max_concurrent=1, soft_limit=1, hard_limit=2)

    first = scheduler.enqueue("a.md", Flow.IMPLEMENT)
    second = scheduler.enqueue("b.md", Flow.IMPLEMENT)
    third = scheduler.enqueue("c.md", Flow.IMPLEMENT)

    assert isinstance(first, Enqueued)
    assert first.backpressure is None
    assert isinstance(second, Enqueued)
    assert second.backpressure == Backpressure(limit=1, depth=1)
    assert third == Deferred(backpressure=Backpressure(limit=2, depth=2))
    assert lock_store.holder("c.md") is None
    assert "c.md" not in scheduler.snapshot().locked_resource_keys
    assert scheduler.events()[-1].event_type == SchedulerEventType.DEFERRED


def test_soft_backpressure_is_attached_to_dispatched_runs(make_scheduler) -> None:
    scheduler = make_scheduler(max_concurrent=4, soft_limit=1, hard_limit=10)

    scheduler.enqueue("a.md", Flow.IMPLEMENT)
    result = scheduler.enqueue("b.md", Flow.REVIEW)

    assert isinstance(result, Enqueued)
    assert result.dispatched is True
    assert result.backpressure == Backpressure(limit=1, depth=1)


def test_launch_failure_retries_while_holding_lock(make_scheduler, launcher, timer, lock_store) -> None:
    scheduler = make_scheduler()
    launcher.failures.append(LaunchError("worker binary busy"))

    result = scheduler.enqueue("a.md", Flow.IMPLEMENT)

    assert isinstance(result, Enqueued)
    pending = timer.pending()
    assert [handle.delay_seconds for handle in pending] == [30]
    assert lock_store.holder("a.md") == result.run_id
    assert scheduler.snapshot().backing_off == frozenset({"a.md"})
    run = scheduler.run(result.run_id)
    assert run.attempts == 1
    assert run.state == RunState.QUEUED
    assert scheduler.enqueue("a.md", Flow.IMPLEMENT) == AlreadyRunning(result.run_id)

    timer.fire_all()

    assert [request.attempt for request in launcher.launched] == [1, 2]
    assert scheduler.run(result.run_id).state == RunState.RUNNING
    assert scheduler.snapshot().backing_off == frozenset()
    retry_events = [
        event
        for event in scheduler.events()
        if event.event_type == SchedulerEventType.RETRY_SCHEDULED
    ]
    assert [(event.attempt, event.delay_seconds) for event in retry_events] == [(1, 30)]


def test_backing_off_run_frees_capacity_for_others(make_scheduler, launcher, timer) -> None:
    scheduler = make_scheduler()
    launcher.failures.append(LaunchError("flaky"))
    first = scheduler.enqueue("a.md", Flow.IMPLEMENT)

    second = scheduler.enqueue("b.md", Flow.IMPLEMENT)
    assert isinstance(second, Enqueued)
    assert second.dispatched is True

    timer.fire_all()
    assert scheduler.run(first.run_id).state == RunState.QUEUED
    assert launcher.launched_keys() == ["a.md", "b.md"]

    scheduler.finish(second.run_id, RunOutcome.SUCCEEDED)
    assert launcher.launched_keys() == ["a.md", "b.md", "a.md"]


def test_exhausted_retries_give_up_and_release_lock(make_scheduler, launcher, timer, lock_store) -> None:
    gave_up = []
    scheduler = make_scheduler(
        retry_policy=BackoffPolicy(jitter_fraction=0, max_retries=1),
        on_gave_up=lambda run, reason: gave_up.append((run.run_id, reason)),
    )
    launcher.failures.extend([LaunchError("first"), LaunchError("second")])

    result = scheduler.enqueue("a.md", Flow.IMPLEMENT)
    timer.fire_all()

    assert gave_up == [(result.run_id, "Launch failed after 2 attempts: second")]
    assert lock_store.holder("a.md") is None
    assert scheduler.run(result.run_id) is None
    finished = scheduler.events()[-1]
    assert finished.event_type == SchedulerEventType.FINISHED
    assert finished.outcome == RunOutcome.LAUNCH_FAILED


def test_permanent_launch_error_is_not_retried(make_scheduler, launcher, timer, lock_store) -> None:
    gave_up = []
    scheduler = make_scheduler(on_gave_up=lambda run, reason: gave_up.append(run.resource_key))
    launcher.failures.append(LaunchError("command not found", transient=False))

    scheduler.enqueue("a.md", Flow.IMPLEMENT)

    assert timer.pending() == []
    assert gave_up == ["a.md"]
    assert lock_store.holder("a.md") is None


def test_unexpected_launcher_exception_is_retried(make_scheduler, launcher, timer) -> None:
    scheduler = make_scheduler()
    launcher.failures.append(RuntimeError("socket closed"))

    scheduler.enqueue("a.md", Flow.IMPLEMENT)

    assert len(timer.pending()) == 1


def test_non_parallelizable_runs_in_same_phase_serialize(make_scheduler, launcher) -> None:
    scheduler = make_scheduler(max_concurrent=2, per_flow_limits={Flow.IMPLEMENT: 2})

    first = scheduler.enqueue("phase-1/a.md", Flow.IMPLEMENT)
    scheduler.enqueue("phase-1/b.md", Flow.IMPLEMENT)

    assert launcher.launched_keys() == ["phase-1/a.md"]
    assert scheduler.snapshot().grouping_locks == frozenset({("phase-1", Flow.IMPLEMENT)})

    scheduler.finish(first.run_id, RunOutcome.FAILED)

    assert launcher.launched_keys() == ["phase-1/a.md", "phase-1/b.md"]


def test_parallelizable_runs_share_a_phase(make_scheduler, launcher) -> None:
    scheduler = make_scheduler(max_concurrent=3, per_flow_limits={Flow.IMPLEMENT: 3})

    scheduler.enqueue("phase-1/a.md", Flow.IMPLEMENT)
    scheduler.enqueue("phase-1/b.md", Flow.IMPLEMENT, parallelizable=True)
    scheduler.enqueue("phase-2/c.md", Flow.IMPLEMENT)

    assert launcher.launched_keys() == ["phase-1/a.md", "phase-1/b.md", "phase-2/c.md"]


def test_oldest_queued_run_wins_across_flows(make_scheduler, launcher) -> None:
    scheduler = make_scheduler()

    first = scheduler.enqueue("a.md", Flow.IMPLEMENT)
    second = scheduler.enqueue("b.md", Flow.REVIEW)
    scheduler.enqueue("c.md", Flow.IMPLEMENT)

    scheduler.finish(first.run_id, RunOutcome.SUCCEEDED)
    assert launcher.launched_keys() == ["a.md", "b.md"]

    scheduler.finish(second.run_id, RunOutcome.SUCCEEDED)
    assert launcher.launched_keys() == ["a.md", "b.md", "c.md"]


def test_depth_counts_runs_waiting_for_retry(make_scheduler, launcher) -> None:
    scheduler = make_scheduler(soft_limit=1, hard_limit=1)
    launcher.failures.append(LaunchError("flaky"))

    scheduler.enqueue("a.md", Flow.IMPLEMENT)
    result = scheduler.enqueue("b.md", Flow.REVIEW)

    assert result == Deferred(backpressure=Backpressure(limit=1, depth=1))


def test_cancel_queued_run_releases_lock(make_scheduler, launcher, lock_store) -> None:
    scheduler = make_scheduler()
    first = scheduler.enqueue("a.md", Flow.IMPLEMENT)
    second = scheduler.enqueue("b.md", Flow.IMPLEMENT)

    assert scheduler.cancel(second.run_id) is True

    assert lock_store.holder("b.md") is None
    assert scheduler.snapshot().queued == 0
    assert launcher.canceled == []
    scheduler.finish(first.run_id, RunOutcome.SUCCEEDED)
    assert launcher.launched_keys() == ["a.md"]


def test_cancel_running_run_signals_launcher_and_promotes_next(make_scheduler, launcher, lock_store) -> None:
    scheduler = make_scheduler()
    first = scheduler.enqueue("a.md", Flow.IMPLEMENT)
    scheduler.enqueue("b.md", Flow.IMPLEMENT)

    assert scheduler.cancel(first.run_id) is True

    assert launcher.canceled == [first.run_id]
    assert lock_store.holder("a.md") is None
    assert launcher.launched_keys() == ["a.md", "b.md"]
    canceled = [
        event
        for event in scheduler.events()
        if event.event_type == SchedulerEventType.FINISHED and event.run_id == first.run_id
    ]
    assert [event.outcome for event in canceled] == [RunOutcome.CANCELED]

    scheduler.finish(first.run_id, RunOutcome.FAILED)
    assert scheduler.snapshot().running == 1


def test_cancel_during_backoff_is_never_retried(make_scheduler, launcher, timer, lock_store) -> None:
    scheduler = make_scheduler()
    launcher.failures.append(LaunchError("flaky"))
    result = scheduler.enqueue("a.md", Flow.IMPLEMENT)
    handle = timer.pending()[0]

    assert scheduler.cancel(result.run_id) is True
    timer.fire_all()

    assert handle.canceled is True
    assert len(launcher.launched) == 1
    assert lock_store.holder("a.md") is None
    assert scheduler.cancel(result.run_id) is False


def test_finish_of_unknown_run_is_ignored(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.enqueue("a.md", Flow.IMPLEMENT)
    before = scheduler.events()

    scheduler.finish("missing", RunOutcome.SUCCEEDED)

    assert scheduler.events() == before


def test_snapshot_is_read_only(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.enqueue("a.md", Flow.IMPLEMENT)
    scheduler.enqueue("b.md", Flow.IMPLEMENT)
    events = len(scheduler.events())

    first = scheduler.snapshot()
    second = scheduler.snapshot()

    assert first == second
    assert first.locked_resource_keys == frozenset({"a.md", "b.md"})
    assert len(scheduler.events()) == events


def test_failed_admission_callback_rolls_lock_back(make_scheduler, launcher, lock_store) -> None:
    scheduler = make_scheduler()

    def _fail(run) -> None:
        raise OSError("card is read-only")

    with pytest.raises(OSError, match="read-only"):
        scheduler.enqueue("a.md", Flow.IMPLEMENT, on_admitted=_fail)

    assert lock_store.holder("a.md") is None
    assert scheduler.snapshot().locked_resource_keys == frozenset()
    assert launcher.launched == []
    assert isinstance(scheduler.enqueue("a.md", Flow.IMPLEMENT), Enqueued)


def test_admission_callback_sets_log_dir_for_launcher(make_scheduler, launcher, tmp_path: Path) -> None:
    scheduler = make_scheduler()

    def _admit(run) -> None:
        run.log_dir = tmp_path / run.run_id

    result = scheduler.enqueue("a.md", Flow.IMPLEMENT, on_admitted=_admit)

    assert launcher.launched[0].log_dir == tmp_path / result.run_id
    assert launcher.launched[0].flow == "implement"


def test_lock_held_by_crashed_process_blocks_until_cleared(make_scheduler, lock_store) -> None:
    scheduler = make_scheduler()
    lock_store.acquire(
        "a.md",
        "ghost-run",
        flow="implement",
        acquired_at=datetime(2026, 10, 18, 8, 0, tzinfo=UTC),
    )

    assert scheduler.enqueue("a.md", Flow.IMPLEMENT) == AlreadyRunning("ghost-run")
    assert scheduler.clear_stale_locks(now=datetime(2026, 10, 18, 8, 5, tzinfo=UTC)) == []
    assert scheduler.clear_stale_locks(now=datetime(2026, 10, 18, 8, 11, tzinfo=UTC)) == ["a.md"]
    assert isinstance(scheduler.enqueue("a.md", Flow.IMPLEMENT), Enqueued)


def test_clear_stale_locks_keeps_live_runs(make_scheduler, lock_store) -> None:
    scheduler = make_scheduler()
    result = scheduler.enqueue("a.md", Flow.IMPLEMENT)

    assert scheduler.clear_stale_locks(now=datetime(2026, 10, 19, tzinfo=UTC)) == []
    assert lock_store.holder("a.md") == result.run_id


def test_config_defaults_follow_concurrency() -> None:
    config = SchedulerConfig()
    scaled = SchedulerConfig(max_concurrent=3)

    assert (config.soft_limit, config.hard_limit) == (8, 16)
    assert (scaled.soft_limit, scaled.hard_limit) == (12, 24)
    assert config.per_flow_limit(Flow.IMPLEMENT) == 1
    assert SchedulerConfig(soft_limit=10, hard_limit=5).hard_limit == 10
    assert SchedulerConfig(max_concurrent=-2).max_concurrent == 0


@pytest.mark.parametrize(
    ("resource_key", "grouping"),
    [
        ("cards/phase-2-core/3.1-task.md", "phase-2-core"),
        ("phase-1/a.md", "phase-1"),
        ("misc/loose.md", "misc/loose.md"),
    ],
)
def test_phase_grouping(resource_key: str, grouping: str) -> None:
    assert phase_grouping(resource_key) == grouping


def test_threading_retry_timer_fires_and_cancels() -> None:
    timer = ThreadingRetryTimer()
    fired = threading.Event()
    skipped = threading.Event()

    timer.schedule(0.01, fired.set)
    handle = timer.schedule(0.2, skipped.set)
    handle.cancel()

    assert fired.wait(5)
    assert not skipped.wait(0.4)


def test_lock_store_fault_is_reported_without_admitting(
    make_scheduler,
    launcher,
    lock_store,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    scheduler = make_scheduler()

    def _locked(*args, **kwargs):
        raise OperationalError("INSERT INTO resource_locks", {}, Exception("database is locked"))

    monkeypatch.setattr(lock_store, "acquire", _locked)
    result = scheduler.enqueue("a.md", Flow.IMPLEMENT)

    assert isinstance(result, LockUnavailable)
    assert "database is locked" in result.reason
    assert launcher.launched == []
    assert scheduler.snapshot().locked_resource_keys == frozenset()

    monkeypatch.undo()
    assert isinstance(scheduler.enqueue("a.md", Flow.IMPLEMENT), Enqueued)


def test_event_history_keeps_most_recent_events(
    make_scheduler,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(scheduler_module, "EVENT_HISTORY_LIMIT", 3)
    scheduler = make_scheduler(max_concurrent=1)

    scheduler.enqueue("a.md", Flow.IMPLEMENT)
    scheduler.enqueue("b.md", Flow.IMPLEMENT)
    last = scheduler.enqueue("c.md", Flow.IMPLEMENT)

    events = scheduler.events()
    assert len(events) == 3
    assert events[-1].event_type == SchedulerEventType.ENQUEUED
    assert events[-1].run_id == last.run_id
