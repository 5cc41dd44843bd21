"""Bridge between scheduler run outcomes and card state."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from agency_core.orchestrator.contracts import (
    ResultContractError,
    RunResultPayload,
    read_run_result,
)
from agency_core.orchestrator.launcher.base import LaunchRequest
from agency_core.orchestrator.models import (
    AlreadyRunning,
    Deferred,
    Enqueued,
    EnqueueResult,
    FailureClass,
    Flow,
    Run,
    RunOutcome,
    RunState,
)
from agency_core.orchestrator.scheduler import Scheduler
from agency_core.orchestrator.workdir import RunLogLocator, RunLogPaths
from agency_core.resources.card_store import (
    ResourceState,
    ResourceStore,
    ResourceUpdate,
)
from agency_core.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunHandle:
    """Result of asking the coordinator to start a flow on a resource."""

    resource_key: str
    flow: Flow
    result: EnqueueResult
    log_paths: RunLogPaths | None = None

    @property
    def admitted(self) -> bool:
        return isinstance(self.result, Enqueued)

    @property
    def run_id(self) -> str | None:
        if isinstance(self.result, Enqueued):
            return self.result.run_id
        if isinstance(self.result, AlreadyRunning):
            return self.result.existing_run_id
        return None


@dataclass(frozen=True, slots=True)
class RunCompletion:
    """Reconciled terminal outcome of one run."""

    resource_key: str
    run_id: str
    flow: Flow
    status: RunState
    failure: FailureClass | None = None
    summary: str | None = None
    resource: ResourceState | None = None


CompletionListener = Callable[[RunCompletion], None]


@dataclass(slots=True)
class _RunContext:
    run_id: str
    resource_key: str
    flow: Flow
    log_paths: RunLogPaths
    branch: str | None = None


class RunLifecycleCoordinator:
    """Writes run state into cards and hands terminal outcomes to the scheduler.

    Exactly one of ``complete_run``, ``cancel_run`` or the scheduler's give-up
    hook reconciles a run: whichever claims the run context first.
    """

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        resources: ResourceStore,
        log_locator: RunLogLocator,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.scheduler = scheduler
        self.resources = resources
        self.log_locator = log_locator
        self.now = now
        self._lock = threading.Lock()
        self._contexts: dict[str, _RunContext] = {}
        self._listeners: list[CompletionListener] = []
        if scheduler.on_gave_up is None:
            scheduler.on_gave_up = self.handle_gave_up

    def add_completion_listener(self, listener: CompletionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def enqueue_run(
        self,
        resource_key: str,
        flow: Flow | str,
        *,
        branch: str | None = None,
        review_target: str | None = None,
        research_prompt: str | None = None,
    ) -> RunHandle:
        """Enqueue ``flow`` for the card and mark it running once admitted.

        Raises ``ResourceWriteError`` when the card cannot be read or the
        running state cannot be written; the resource lock is not kept then.
        """

        flow = Flow(flow)
        resource = self.resources.load(resource_key)
        admitted_paths: list[RunLogPaths] = []

        def mark_running(run: Run) -> None:
            paths = self.log_locator.materialize(run.run_id, on=run.enqueued_at)
            run.log_dir = paths.directory
            self.resources.apply(
                resource_key,
                ResourceUpdate(
                    status=RunState.RUNNING.value,
                    flow=flow.value,
                    branch=branch if flow == Flow.IMPLEMENT else None,
                    history_line=self._queued_line(
                        run.run_id,
                        flow,
                        branch=branch,
                        review_target=review_target,
                        research_prompt=research_prompt,
                    ),
                ),
            )
            with self._lock:
                self._contexts[run.run_id] = _RunContext(
                    run_id=run.run_id,
                    resource_key=resource_key,
                    flow=flow,
                    log_paths=paths,
                    branch=branch,
                )
            admitted_paths.append(paths)

        result = self.scheduler.enqueue(
            resource_key,
            flow,
            parallelizable=resource.parallelizable,
            on_admitted=mark_running,
        )
        if isinstance(result, AlreadyRunning):
            logger.info(
                "Card %s already owned by run %s",
                resource_key,
                result.existing_run_id,
            )
        elif isinstance(result, Deferred):
            logger.warning(
                "Deferred %s run for %s: queue depth %d",
                flow.value,
                resource_key,
                result.backpressure.depth,
            )
        return RunHandle(
            resource_key=resource_key,
            flow=flow,
            result=result,
            log_paths=admitted_paths[0] if admitted_paths else None,
        )

    def complete_run(
        self,
        resource_key: str,
        run_id: str,
        outcome: RunOutcome,
    ) -> ResourceState | None:
        """Reconcile a finished worker with its card and release the scheduler slot.

        Never raises for a known run: an unexpected fault while reading the
        result or writing the card is logged, the run is recorded as failed and
        the scheduler slot and lock are released regardless.
        """

        if outcome == RunOutcome.LAUNCH_FAILED:
            self.scheduler.finish(run_id, outcome)
            return None

        with self._lock:
            context = self._contexts.get(run_id)
            if context is not None and context.resource_key == resource_key:
                del self._contexts[run_id]
            else:
                context = None
        if context is None:
            logger.info("Ignoring completion of unknown run %s for %s", run_id, resource_key)
            return None

        try:
            status, failure, payload = self._resolve_outcome(context, outcome)
        except Exception:
            logger.exception("Failed to resolve outcome of run %s on %s", run_id, resource_key)
            status, failure, payload = RunState.FAILED, FailureClass.MALFORMED_RESULT, None

        checked: tuple[int, ...] = ()
        if (
            status == RunState.SUCCEEDED
            and context.flow == Flow.IMPLEMENT
            and payload is not None
            and payload.checked_criteria
        ):
            checked = tuple(payload.checked_criteria)

        resource = self._write_terminal(
            context,
            status,
            checked_indices=checked,
            payload=payload,
        )
        self.scheduler.finish(run_id, _scheduler_outcome(status))
        self._notify(
            RunCompletion(
                resource_key=resource_key,
                run_id=run_id,
                flow=context.flow,
                status=status,
                failure=failure,
                summary=payload.summary if payload is not None else None,
                resource=resource,
            ),
        )
        return resource

    def cancel_run(self, resource_key: str, run_id: str) -> bool:
        """Cancel a run and write the canceled state to its card."""

        with self._lock:
            context = self._contexts.get(run_id)
            if context is not None and context.resource_key == resource_key:
                del self._contexts[run_id]
            else:
                context = None
        canceled = self.scheduler.cancel(run_id)
        if context is None:
            return canceled

        resource = self._write_terminal(context, RunState.CANCELED)
        self._notify(
            RunCompletion(
                resource_key=resource_key,
                run_id=run_id,
                flow=context.flow,
                status=RunState.CANCELED,
                resource=resource,
            ),
        )
        return True

    def handle_worker_exit(self, request: LaunchRequest, outcome: RunOutcome) -> None:
        """Launcher exit callback."""

        self.complete_run(request.resource_key, request.run_id, outcome)

    def handle_gave_up(self, run: Run, reason: str) -> None:
        """Scheduler hook: launch retries are exhausted and the lock is released."""

        with self._lock:
            context = self._contexts.pop(run.run_id, None)
        if context is None:
            return
        logger.error("Run %s for %s gave up: %s", run.run_id, run.resource_key, reason)
        resource = self._write_terminal(context, RunState.FAILED)
        self._notify(
            RunCompletion(
                resource_key=run.resource_key,
                run_id=run.run_id,
                flow=context.flow,
                status=RunState.FAILED,
                failure=FailureClass.LAUNCH_FAILURE,
                summary=reason,
                resource=resource,
            ),
        )

    def active_runs(self) -> list[str]:
        with self._lock:
            return list(self._contexts)

    def _resolve_outcome(
        self,
        context: _RunContext,
        outcome: RunOutcome,
    ) -> tuple[RunState, FailureClass | None, RunResultPayload | None]:
        if outcome == RunOutcome.CANCELED:
            return RunState.CANCELED, None, None
        payload: RunResultPayload | None = None
        try:
            payload = read_run_result(context.log_paths.result)
        except ResultContractError as error:
            logger.warning("Run %s produced no usable result: %s", context.run_id, error)
        if outcome == RunOutcome.FAILED:
            return RunState.FAILED, FailureClass.EXECUTION_FAILURE, payload
        if payload is None:
            return RunState.FAILED, FailureClass.MALFORMED_RESULT, None
        status = RunState(payload.status)
        failure = FailureClass.EXECUTION_FAILURE if status == RunState.FAILED else None
        return status, failure, payload

    def _write_terminal(
        self,
        context: _RunContext,
        status: RunState,
        *,
        checked_indices: tuple[int, ...] = (),
        payload: RunResultPayload | None = None,
    ) -> ResourceState | None:
        """Persist the terminal state; failures are logged and yield ``None``."""

        try:
            update = ResourceUpdate(
                status=status.value,
                flow=context.flow.value,
                checked_indices=checked_indices,
                history_line=self._terminal_line(context, status, payload),
            )
            return self.resources.apply(context.resource_key, update)
        except Exception:
            logger.exception(
                "Failed to record %s for run %s on %s",
                status.value,
                context.run_id,
                context.resource_key,
            )
            return None

    def _notify(self, completion: RunCompletion) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(completion)
            except Exception:
                logger.exception("Completion listener failed for run %s", completion.run_id)

    def _queued_line(
        self,
        run_id: str,
        flow: Flow,
        *,
        branch: str | None,
        review_target: str | None,
        research_prompt: str | None,
    ) -> str:
        prefix = f"{self._today()}: Run {run_id} queued ({flow.value})"
        if flow == Flow.IMPLEMENT and branch:
            return f"{prefix} on branch {branch}."
        if flow == Flow.REVIEW and (review_target or branch):
            return f"{prefix} for {review_target or branch}."
        if flow == Flow.RESEARCH and research_prompt:
            return f'{prefix} topic "{research_prompt}".'
        return f"{prefix}."

    def _terminal_line(
        self,
        context: _RunContext,
        status: RunState,
        payload: RunResultPayload | None,
    ) -> str:
        prefix = f"{self._today()}: Run {context.run_id}"
        flow = context.flow.value
        if status == RunState.CANCELED:
            return f"{prefix} canceled ({flow})."
        if status == RunState.FAILED:
            return f"{prefix} failed ({flow}); see logs at {context.log_paths.directory}."
        if context.flow == Flow.IMPLEMENT:
            checked = len(payload.checked_criteria or []) if payload is not None else 0
            tests = "unknown"
            if payload is not None and payload.tests_passed is not None:
                tests = "pass" if payload.tests_passed else "fail"
            return f"{prefix} succeeded (implement); checked {checked} items; tests: {tests}."
        if context.flow == Flow.REVIEW:
            error, warn, info = payload.severity_counts() if payload is not None else (0, 0, 0)
            overall = (payload.overall if payload is not None else None) or "unknown"
            return (
                f"{prefix} succeeded (review); findings blocking/warn/info: "
                f"{error}/{warn}/{info}; overall={overall}."
            )
        if context.flow == Flow.RESEARCH:
            sources = len(payload.sources or []) if payload is not None else 0
            return f"{prefix} succeeded (research); {sources} sources captured."
        return f"{prefix} succeeded ({flow})."

    def _today(self) -> str:
        return self.now().strftime("%Y-%m-%d")


def _scheduler_outcome(status: RunState) -> RunOutcome:
    if status == RunState.SUCCEEDED:
        return RunOutcome.SUCCEEDED
    if status == RunState.CANCELED:
        return RunOutcome.CANCELED
    return RunOutcome.FAILED
