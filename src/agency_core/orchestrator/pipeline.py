"""Multi-flow pipelines: pure sequencing rules and a driver on top of the coordinator."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum

from agency_core.orchestrator.lifecycle import RunCompletion, RunLifecycleCoordinator
from agency_core.orchestrator.models import AlreadyRunning, Flow, LockUnavailable, RunState
from agency_core.resources.card_store import ResourceWriteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """Ordered flows applied to one card."""

    name: str
    flows: tuple[Flow, ...]


IMPLEMENT_ONLY = PipelineDefinition("implement-only", (Flow.IMPLEMENT,))
REVIEW_ONLY = PipelineDefinition("review-only", (Flow.REVIEW,))
IMPLEMENT_REVIEW = PipelineDefinition("implement-review", (Flow.IMPLEMENT, Flow.REVIEW))
RESEARCH_IMPLEMENT = PipelineDefinition("research-implement", (Flow.RESEARCH, Flow.IMPLEMENT))
FULL = PipelineDefinition("full", (Flow.RESEARCH, Flow.PLAN, Flow.IMPLEMENT, Flow.REVIEW))

BUILTIN_PIPELINES: dict[str, PipelineDefinition] = {
    definition.name: definition
    for definition in (IMPLEMENT_ONLY, REVIEW_ONLY, IMPLEMENT_REVIEW, RESEARCH_IMPLEMENT, FULL)
}


class PipelineStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_final(self) -> bool:
        return self in {PipelineStatus.COMPLETED, PipelineStatus.FAILED, PipelineStatus.ABORTED}


@dataclass(frozen=True, slots=True)
class PipelineState:
    """Progress of one pipeline execution."""

    resource_key: str
    definition: PipelineDefinition
    step_index: int = 0
    status: PipelineStatus = PipelineStatus.NOT_STARTED
    step_outcomes: tuple[RunState, ...] = ()
    reason: str | None = None

    @property
    def current_flow(self) -> Flow | None:
        if self.status != PipelineStatus.RUNNING:
            return None
        return self.definition.flows[self.step_index]


@dataclass(frozen=True, slots=True)
class Advance:
    next_flow: Flow


@dataclass(frozen=True, slots=True)
class Completed:
    pass


@dataclass(frozen=True, slots=True)
class Aborted:
    reason: str


PipelineDecision = Advance | Completed | Aborted


def resolve_pipeline(name: str) -> PipelineDefinition:
    """Look up a built-in pipeline by name."""

    try:
        return BUILTIN_PIPELINES[name]
    except KeyError as error:
        known = ", ".join(sorted(BUILTIN_PIPELINES))
        raise ValueError(f"Unknown pipeline {name!r}. Known pipelines: {known}") from error


def suggest_pipeline(metadata: Mapping[str, str | None]) -> PipelineDefinition:
    """Pick a pipeline from card frontmatter.

    An explicit ``agent_flow`` wins; otherwise ``risk`` decides.
    """

    flow = (metadata.get("agent_flow") or "").strip().lower()
    if flow == Flow.IMPLEMENT.value:
        return IMPLEMENT_REVIEW
    if flow == Flow.REVIEW.value:
        return REVIEW_ONLY
    if flow == Flow.RESEARCH.value:
        return RESEARCH_IMPLEMENT
    if flow == Flow.PLAN.value:
        return FULL

    risk = (metadata.get("risk") or "").strip().lower()
    if risk == "high":
        return FULL
    if risk == "low":
        return IMPLEMENT_ONLY
    return IMPLEMENT_REVIEW


def begin(state: PipelineState) -> tuple[PipelineState, PipelineDecision]:
    """Move a not-started pipeline onto its first flow."""

    if state.status != PipelineStatus.NOT_STARTED:
        raise ValueError(f"Pipeline for {state.resource_key} already started")
    if not state.definition.flows:
        return replace(state, status=PipelineStatus.COMPLETED), Completed()
    return (
        replace(state, status=PipelineStatus.RUNNING, step_index=0),
        Advance(state.definition.flows[0]),
    )


def on_flow_completed(
    state: PipelineState,
    outcome: RunState,
    *,
    continue_on_failure: bool = False,
) -> tuple[PipelineState, PipelineDecision]:
    """Decide what follows a finished flow. Cancellation always aborts."""

    if state.status != PipelineStatus.RUNNING:
        raise ValueError(f"Pipeline for {state.resource_key} is not running")
    if not outcome.is_terminal:
        raise ValueError(f"Flow outcome must be terminal, got {outcome.value}")

    flow = state.definition.flows[state.step_index]
    outcomes = (*state.step_outcomes, outcome)
    if outcome == RunState.CANCELED:
        reason = f"{flow.value} canceled"
        return (
            replace(state, status=PipelineStatus.ABORTED, step_outcomes=outcomes, reason=reason),
            Aborted(reason),
        )
    if outcome == RunState.FAILED and not continue_on_failure:
        reason = f"{flow.value} failed"
        return (
            replace(state, status=PipelineStatus.FAILED, step_outcomes=outcomes, reason=reason),
            Aborted(reason),
        )

    next_index = state.step_index + 1
    if next_index >= len(state.definition.flows):
        return (
            replace(state, status=PipelineStatus.COMPLETED, step_outcomes=outcomes),
            Completed(),
        )
    return (
        replace(state, step_index=next_index, step_outcomes=outcomes),
        Advance(state.definition.flows[next_index]),
    )


@dataclass(slots=True)
class _Execution:
    state: PipelineState
    branch: str | None = None
    run_id: str | None = None
    pending_flow: Flow | None = None
    done: threading.Event = field(default_factory=threading.Event)


class PipelineOrchestrator:
    """Runs pipelines by enqueueing each flow after the previous one completes."""

    def __init__(
        self,
        *,
        coordinator: RunLifecycleCoordinator,
        continue_on_failure: bool = False,
    ) -> None:
        self.coordinator = coordinator
        self.continue_on_failure = continue_on_failure
        self._lock = threading.RLock()
        self._executions: dict[str, _Execution] = {}
        self._finished: dict[str, _Execution] = {}
        coordinator.add_completion_listener(self.handle_completion)

    def start(
        self,
        resource_key: str,
        definition: PipelineDefinition | None = None,
        *,
        branch: str | None = None,
    ) -> PipelineState:
        """Start a pipeline; without a definition one is suggested from the card."""

        with self._lock:
            existing = self._executions.get(resource_key)
            if existing is not None:
                return existing.state
            if definition is None:
                resource = self.coordinator.resources.load(resource_key)
                definition = suggest_pipeline(resource.frontmatter)
            execution = _Execution(
                state=PipelineState(resource_key=resource_key, definition=definition),
                branch=branch,
            )
            self._executions[resource_key] = execution
            self._finished.pop(resource_key, None)
            logger.info("Starting pipeline %s for %s", definition.name, resource_key)
            state, decision = begin(execution.state)
            self._apply(execution, state, decision)
            return execution.state

    def handle_completion(self, completion: RunCompletion) -> None:
        """Completion listener fed by the coordinator."""

        with self._lock:
            execution = self._executions.get(completion.resource_key)
            if execution is None:
                return
            if execution.run_id is None:
                if execution.pending_flow != completion.flow:
                    return
            elif execution.run_id != completion.run_id:
                return
            state, decision = on_flow_completed(
                execution.state,
                completion.status,
                continue_on_failure=self.continue_on_failure,
            )
            self._apply(execution, state, decision)

    def cancel(self, resource_key: str) -> bool:
        """Drop the execution and cancel its current run."""

        with self._lock:
            execution = self._executions.get(resource_key)
            if execution is None:
                return False
            run_id = execution.run_id
            self._finish(
                execution,
                replace(execution.state, status=PipelineStatus.ABORTED, reason="canceled"),
            )
        if run_id is not None:
            self.coordinator.cancel_run(resource_key, run_id)
        return True

    def active(self) -> list[PipelineState]:
        with self._lock:
            return [execution.state for execution in self._executions.values()]

    def state(self, resource_key: str) -> PipelineState | None:
        with self._lock:
            execution = self._executions.get(resource_key) or self._finished.get(resource_key)
            return execution.state if execution is not None else None

    def wait(self, resource_key: str, timeout: float | None = None) -> PipelineState | None:
        """Block until the pipeline for ``resource_key`` reaches a final status.

        A finished execution is forgotten once it has been waited for.
        """

        with self._lock:
            execution = self._executions.get(resource_key) or self._finished.get(resource_key)
        if execution is None:
            return None
        if execution.done.wait(timeout):
            with self._lock:
                if self._finished.get(resource_key) is execution:
                    del self._finished[resource_key]
        return execution.state

    def _apply(
        self,
        execution: _Execution,
        state: PipelineState,
        decision: PipelineDecision,
    ) -> None:
        execution.state = state
        if isinstance(decision, Completed):
            logger.info("Pipeline %s completed for %s", state.definition.name, state.resource_key)
            self._finish(execution, state)
            return
        if isinstance(decision, Aborted):
            logger.warning(
                "Pipeline %s aborted for %s: %s",
                state.definition.name,
                state.resource_key,
                decision.reason,
            )
            self._finish(execution, state)
            return

        execution.run_id = None
        execution.pending_flow = decision.next_flow
        try:
            handle = self.coordinator.enqueue_run(
                state.resource_key,
                decision.next_flow,
                branch=execution.branch,
            )
        except ResourceWriteError as error:
            logger.warning("Pipeline for %s stopped: %s", state.resource_key, error)
            self._finish(
                execution,
                replace(state, status=PipelineStatus.ABORTED, reason=str(error)),
            )
            return
        except Exception as error:
            logger.exception(
                "Pipeline for %s failed to enqueue %s",
                state.resource_key,
                decision.next_flow.value,
            )
            self._finish(
                execution,
                replace(state, status=PipelineStatus.ABORTED, reason=f"enqueue failed: {error}"),
            )
            return

        if execution.state is not state:
            # The flow already completed re-entrantly and moved the pipeline on.
            return
        if not handle.admitted:
            if isinstance(handle.result, AlreadyRunning):
                reason = f"card already owned by run {handle.result.existing_run_id}"
            elif isinstance(handle.result, LockUnavailable):
                reason = f"lock store unavailable: {handle.result.reason}"
            else:
                reason = "scheduler saturated"
            self._finish(execution, replace(state, status=PipelineStatus.ABORTED, reason=reason))
            return
        execution.run_id = handle.run_id
        execution.pending_flow = None

    def _finish(self, execution: _Execution, state: PipelineState) -> None:
        execution.state = state
        if self._executions.get(state.resource_key) is execution:
            del self._executions[state.resource_key]
        self._finished[state.resource_key] = execution
        execution.done.set()
