"""Single-writer scheduler for per-resource agent runs."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import PurePosixPath
from typing import Protocol
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from agency_core.orchestrator.launcher.base import LaunchError, LaunchRequest, WorkerLauncher
from agency_core.orchestrator.models import (
    AlreadyRunning,
    Backpressure,
    Deferred,
    Enqueued,
    EnqueueResult,
    Flow,
    LockUnavailable,
    Run,
    RunOutcome,
    RunState,
    SchedulerConfig,
    SchedulerEvent,
    SchedulerEventType,
    SchedulerSnapshot,
)
from agency_core.storage.common import utc_now
from agency_core.storage.lock_store import AlreadyLocked, ResourceLockStore

logger = logging.getLogger(__name__)


class RetryHandle(Protocol):
    def cancel(self) -> None: ...


class RetryTimer(Protocol):
    """Schedules a cancellable delayed callback."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> RetryHandle: ...


class ThreadingRetryTimer:
    """Default timer running callbacks on daemon ``threading.Timer`` threads."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> RetryHandle:
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = True
        timer.start()
        return timer


def phase_grouping(resource_key: str) -> str:
    """Group cards by their ``phase-*`` directory, falling back to the key itself."""

    for part in PurePosixPath(resource_key).parts:
        if part.startswith("phase-"):
            return part
    return resource_key


EVENT_HISTORY_LIMIT = 1_000

GaveUpHook = Callable[[Run, str], None]


class Scheduler:
    """Admission control, concurrency caps, FIFO queues and launch retries.

    All state transitions happen under one re-entrant monitor. Launcher calls,
    admission callbacks and hooks run outside it; a run is marked RUNNING before
    its launcher call so no two dispatches of the same resource can race.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        config: SchedulerConfig,
        launcher: WorkerLauncher,
        lock_store: ResourceLockStore,
        timer: RetryTimer | None = None,
        now: Callable[[], datetime] = utc_now,
        grouping: Callable[[str], str] = phase_grouping,
        on_gave_up: GaveUpHook | None = None,
    ) -> None:
        self.config = config
        self.launcher = launcher
        self.lock_store = lock_store
        self.timer = timer or ThreadingRetryTimer()
        self.now = now
        self.grouping = grouping
        self.on_gave_up = on_gave_up
        self._monitor = threading.RLock()
        self._runs: dict[str, Run] = {}
        self._by_resource: dict[str, str] = {}
        self._queues: dict[Flow, list[Run]] = {}
        self._running: set[str] = set()
        self._grouping_locks: dict[tuple[str, Flow], str] = {}
        self._backoff: dict[str, RetryHandle] = {}
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0
        self._events: deque[SchedulerEvent] = deque(maxlen=EVENT_HISTORY_LIMIT)

    def enqueue(
        self,
        resource_key: str,
        flow: Flow | str,
        *,
        parallelizable: bool = False,
        on_admitted: Callable[[Run], None] | None = None,
    ) -> EnqueueResult:
        """Admit a run for ``resource_key`` or explain why it was not admitted.

        ``on_admitted`` runs after the resource lock is taken and before the run
        can be dispatched. If it raises, the lock is rolled back and the error
        propagates to the caller.
        A lock store fault is logged and reported as ``LockUnavailable``.
        """

        flow = Flow(flow)
        with self._monitor:
            existing = self._by_resource.get(resource_key)
            if existing is not None:
                return AlreadyRunning(existing_run_id=existing)

            depth = self._depth()
            if depth >= self.config.hard_limit:
                backpressure = Backpressure(limit=self.config.hard_limit, depth=depth)
                self._record(
                    SchedulerEvent(SchedulerEventType.DEFERRED, flow, backpressure=backpressure),
                )
                logger.warning(
                    "Deferred %s run for %s: depth %d >= hard limit %d",
                    flow.value,
                    resource_key,
                    depth,
                    self.config.hard_limit,
                )
                return Deferred(backpressure=backpressure)

            enqueued_at = self.now()
            run = Run(
                run_id=str(uuid4()),
                resource_key=resource_key,
                flow=flow,
                parallelizable=parallelizable,
                enqueued_at=enqueued_at,
                grouping=(self.grouping(resource_key), flow),
            )
            try:
                acquired = self.lock_store.acquire(
                    resource_key,
                    run.run_id,
                    flow=flow.value,
                    acquired_at=enqueued_at,
                )
            except SQLAlchemyError as error:
                logger.exception("Lock store unavailable while admitting %s", resource_key)
                return LockUnavailable(reason=str(error))
            if isinstance(acquired, AlreadyLocked):
                logger.info(
                    "Resource %s is locked by run %s outside this scheduler",
                    resource_key,
                    acquired.existing_run_id,
                )
                return AlreadyRunning(existing_run_id=acquired.existing_run_id)

            self._runs[run.run_id] = run
            self._by_resource[resource_key] = run.run_id
            self._sequence[run.run_id] = self._next_sequence
            self._next_sequence += 1

            backpressure = None
            if depth >= self.config.soft_limit:
                backpressure = Backpressure(limit=self.config.soft_limit, depth=depth)
                self._record(
                    SchedulerEvent(
                        SchedulerEventType.BACKPRESSURE_SOFT,
                        flow,
                        run_id=run.run_id,
                        backpressure=backpressure,
                    ),
                )

        if on_admitted is not None:
            try:
                on_admitted(run)
            except Exception:
                with self._monitor:
                    self._forget(run)
                raise

        with self._monitor:
            self._queues.setdefault(flow, []).append(run)
            self._record(SchedulerEvent(SchedulerEventType.ENQUEUED, flow, run_id=run.run_id))
            dispatch = self._drain()
        self._launch(dispatch)
        return Enqueued(
            run_id=run.run_id,
            backpressure=backpressure,
            dispatched=any(item.run_id == run.run_id for item in dispatch),
        )

    def finish(self, run_id: str, outcome: RunOutcome, *, reason: str | None = None) -> None:
        """Release capacity for a running run; retry launch failures with backoff."""

        dispatch = self._finish(run_id, outcome, reason=reason, retryable=True)
        self._launch(dispatch)

    def cancel(self, run_id: str) -> bool:
        """Cancel a queued, backing-off or running run. Canceled runs are never retried."""

        with self._monitor:
            run = self._runs.get(run_id)
            if run is None:
                return False
            signal_launcher = run.state == RunState.RUNNING

        if signal_launcher:
            try:
                self.launcher.cancel(run_id)
            except Exception:
                logger.exception("Launcher failed to cancel run %s", run_id)

        with self._monitor:
            if self._runs.get(run_id) is not run:
                return False
            handle = self._backoff.pop(run_id, None)
            if handle is not None:
                handle.cancel()
            self._release_capacity(run)
            self._terminate(run, RunState.CANCELED)
            self._record(
                SchedulerEvent(
                    SchedulerEventType.FINISHED,
                    run.flow,
                    run_id=run_id,
                    outcome=RunOutcome.CANCELED,
                ),
            )
            logger.info("Canceled %s run %s for %s", run.flow.value, run_id, run.resource_key)
            dispatch = self._drain()
        self._launch(dispatch)
        return True

    def snapshot(self) -> SchedulerSnapshot:
        """Read-only projection of queues, running counts and locks."""

        with self._monitor:
            return SchedulerSnapshot(
                running_by_flow=self._running_by_flow(),
                queued_by_flow={flow: len(queue) for flow, queue in self._queues.items() if queue},
                locked_resource_keys=frozenset(self._by_resource),
                grouping_locks=frozenset(self._grouping_locks),
                backing_off=frozenset(
                    self._runs[run_id].resource_key for run_id in self._backoff
                ),
            )

    def events(self) -> list[SchedulerEvent]:
        """Most recent scheduler events, oldest first, capped at ``EVENT_HISTORY_LIMIT``."""

        with self._monitor:
            return list(self._events)

    def run(self, run_id: str) -> Run | None:
        """Return the active run for ``run_id``."""

        with self._monitor:
            return self._runs.get(run_id)

    def clear_stale_locks(self, now: datetime | None = None) -> list[str]:
        """Drop durable locks left behind by a crashed process."""

        cutoff = (now or self.now()) - timedelta(seconds=self.config.stale_lock_timeout_seconds)
        with self._monitor:
            return self.lock_store.clear_stale(
                older_than=cutoff,
                keep_run_ids=frozenset(self._runs),
            )

    def close(self) -> None:
        """Cancel pending backoff timers."""

        with self._monitor:
            for handle in self._backoff.values():
                handle.cancel()
            self._backoff.clear()

    def _finish(
        self,
        run_id: str,
        outcome: RunOutcome,
        *,
        reason: str | None,
        retryable: bool,
    ) -> list[Run]:
        gave_up: Run | None = None
        with self._monitor:
            run = self._runs.get(run_id)
            if run is None or run.state != RunState.RUNNING:
                return []
            self._release_capacity(run)

            if outcome == RunOutcome.LAUNCH_FAILED:
                delay = self.config.retry_policy.delay(run.attempts + 1) if retryable else None
                if delay is not None:
                    run.attempts += 1
                    run.state = RunState.QUEUED
                    self._backoff[run_id] = self.timer.schedule(
                        delay,
                        lambda: self._retry(run_id),
                    )
                    self._record(
                        SchedulerEvent(
                            SchedulerEventType.RETRY_SCHEDULED,
                            run.flow,
                            run_id=run_id,
                            attempt=run.attempts,
                            delay_seconds=delay,
                        ),
                    )
                    logger.warning(
                        "Launch of run %s failed (%s); retry %d in %.1fs",
                        run_id,
                        reason or "unknown error",
                        run.attempts,
                        delay,
                    )
                    return self._drain()
                gave_up = run

            self._terminate(run, outcome.state)
            self._record(
                SchedulerEvent(SchedulerEventType.FINISHED, run.flow, run_id=run_id, outcome=outcome),
            )
            logger.info(
                "Finished %s run %s for %s: %s",
                run.flow.value,
                run_id,
                run.resource_key,
                outcome.value,
            )
            dispatch = self._drain()

        if gave_up is not None and self.on_gave_up is not None:
            message = (
                f"Launch failed after {gave_up.attempts + 1} attempts: {reason or 'unknown error'}"
            )
            try:
                self.on_gave_up(gave_up, message)
            except Exception:
                logger.exception("on_gave_up hook failed for run %s", run_id)
        return dispatch

    def _retry(self, run_id: str) -> None:
        try:
            with self._monitor:
                if self._backoff.pop(run_id, None) is None:
                    return
                run = self._runs.get(run_id)
                if run is None:
                    return
                self._queues.setdefault(run.flow, []).append(run)
                dispatch = self._drain()
            self._launch(dispatch)
        except Exception:
            logger.exception("Retry of run %s failed", run_id)

    def _drain(self) -> list[Run]:
        dispatch: list[Run] = []
        while len(self._running) < self.config.max_concurrent:
            run = self._next_dispatchable()
            if run is None:
                break
            self._queues[run.flow].remove(run)
            run.state = RunState.RUNNING
            run.started_at = self.now()
            self._running.add(run.run_id)
            if not run.parallelizable:
                self._grouping_locks[run.grouping] = run.run_id
            self._record(SchedulerEvent(SchedulerEventType.STARTED, run.flow, run_id=run.run_id))
            dispatch.append(run)
        return dispatch

    def _next_dispatchable(self) -> Run | None:
        running_by_flow = self._running_by_flow()
        candidate: Run | None = None
        for flow, queue in self._queues.items():
            if running_by_flow.get(flow, 0) >= self.config.per_flow_limit(flow):
                continue
            for run in queue:
                owner = self._grouping_locks.get(run.grouping)
                if not run.parallelizable and owner is not None and owner != run.run_id:
                    continue
                if candidate is None or self._order_key(run) < self._order_key(candidate):
                    candidate = run
                break
        return candidate

    def _launch(self, runs: list[Run]) -> None:
        for run in runs:
            request = LaunchRequest(
                run_id=run.run_id,
                resource_key=run.resource_key,
                flow=run.flow.value,
                attempt=run.attempts + 1,
                log_dir=run.log_dir,
            )
            try:
                self.launcher.launch(request)
            except Exception as error:  # noqa: BLE001
                retryable = not isinstance(error, LaunchError) or error.transient
                follow_up = self._finish(
                    run.run_id,
                    RunOutcome.LAUNCH_FAILED,
                    reason=str(error),
                    retryable=retryable,
                )
                self._launch(follow_up)
                continue

            with self._monitor:
                still_active = self._runs.get(run.run_id) is run
            if not still_active:
                # Canceled while the launcher was starting the worker.
                try:
                    self.launcher.cancel(run.run_id)
                except Exception:
                    logger.exception("Launcher failed to cancel run %s", run.run_id)

    def _release_capacity(self, run: Run) -> None:
        self._running.discard(run.run_id)
        if self._grouping_locks.get(run.grouping) == run.run_id:
            del self._grouping_locks[run.grouping]

    def _terminate(self, run: Run, state: RunState) -> None:
        run.state = state
        queue = self._queues.get(run.flow)
        if queue is not None and run in queue:
            queue.remove(run)
        self._forget(run)

    def _forget(self, run: Run) -> None:
        self._runs.pop(run.run_id, None)
        self._sequence.pop(run.run_id, None)
        if self._by_resource.get(run.resource_key) == run.run_id:
            del self._by_resource[run.resource_key]
        try:
            self.lock_store.release(run.resource_key, run_id=run.run_id)
        except SQLAlchemyError:
            logger.exception("Failed to release lock for %s", run.resource_key)

    def _depth(self) -> int:
        # Every admitted, non-terminal run counts: running, queued and backing off.
        return len(self._runs)

    def _running_by_flow(self) -> dict[Flow, int]:
        counts: dict[Flow, int] = {}
        for run_id in self._running:
            flow = self._runs[run_id].flow
            counts[flow] = counts.get(flow, 0) + 1
        return counts

    def _order_key(self, run: Run) -> tuple[datetime, int]:
        return run.enqueued_at, self._sequence.get(run.run_id, 0)

    def _record(self, event: SchedulerEvent) -> None:
        self._events.append(event)
        logger.debug("Scheduler event %s", event)
