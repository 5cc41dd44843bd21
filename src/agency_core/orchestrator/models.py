"""Domain models for run scheduling and lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from agency_core.orchestrator.backoff import BackoffPolicy


class Flow(str, Enum):
    """Named categories of agent work."""

    IMPLEMENT = "implement"
    REVIEW = "review"
    RESEARCH = "research"
    PLAN = "plan"


class RunState(str, Enum):
    """Run lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in {RunState.SUCCEEDED, RunState.FAILED, RunState.CANCELED}


class RunOutcome(str, Enum):
    """Outcome reported to the scheduler when a run attempt ends."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    LAUNCH_FAILED = "launch_failed"

    @property
    def state(self) -> RunState:
        if self == RunOutcome.SUCCEEDED:
            return RunState.SUCCEEDED
        if self == RunOutcome.CANCELED:
            return RunState.CANCELED
        return RunState.FAILED


class FailureClass(str, Enum):
    """Normalized fault taxonomy surfaced by scheduler and coordinator."""

    LOCK_CONFLICT = "lock_conflict"
    LAUNCH_FAILURE = "launch_failure"
    EXECUTION_FAILURE = "execution_failure"
    MALFORMED_RESULT = "malformed_result"
    BACKPRESSURE = "backpressure"
    QUEUE_SATURATION = "queue_saturation"


@dataclass(slots=True)
class Run:
    """One execution of a flow against a resource."""

    run_id: str
    resource_key: str
    flow: Flow
    parallelizable: bool
    enqueued_at: datetime
    grouping: tuple[str, Flow]
    attempts: int = 0
    state: RunState = RunState.QUEUED
    started_at: datetime | None = None
    log_dir: Path | None = None


@dataclass(frozen=True, slots=True)
class Backpressure:
    """Advisory queue depth notice."""

    limit: int
    depth: int


@dataclass(frozen=True, slots=True)
class AlreadyRunning:
    """Resource is already owned by an in-flight run."""

    existing_run_id: str


@dataclass(frozen=True, slots=True)
class Enqueued:
    """Run was admitted; it is either dispatched or waiting in its flow queue."""

    run_id: str
    backpressure: Backpressure | None = None
    dispatched: bool = False


@dataclass(frozen=True, slots=True)
class Deferred:
    """Scheduler is saturated; the request never entered the system."""

    backpressure: Backpressure


@dataclass(frozen=True, slots=True)
class LockUnavailable:
    """The durable lock store could not be reached; nothing was admitted."""

    reason: str


EnqueueResult = AlreadyRunning | Enqueued | Deferred | LockUnavailable


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Scheduler limits and retry policy, fixed for the scheduler's lifetime."""

    max_concurrent: int = 1
    per_flow_limits: dict[Flow, int] = field(default_factory=dict)
    soft_limit: int | None = None
    hard_limit: int | None = None
    retry_policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    stale_lock_timeout_seconds: float = 600.0

    def __post_init__(self) -> None:
        bounded_max = max(0, self.max_concurrent)
        merged = {flow: 1 for flow in Flow}
        for flow, value in self.per_flow_limits.items():
            merged[Flow(flow)] = max(0, value)
        soft = max(0, self.soft_limit) if self.soft_limit is not None else max(bounded_max * 4, 8)
        hard = max(soft, self.hard_limit) if self.hard_limit is not None else soft * 2
        object.__setattr__(self, "max_concurrent", bounded_max)
        object.__setattr__(self, "per_flow_limits", merged)
        object.__setattr__(self, "soft_limit", soft)
        object.__setattr__(self, "hard_limit", hard)

    def per_flow_limit(self, flow: Flow) -> int:
        return self.per_flow_limits.get(flow, self.max_concurrent)


@dataclass(frozen=True, slots=True)
class SchedulerSnapshot:
    """Read-only projection of scheduler state."""

    running_by_flow: dict[Flow, int]
    queued_by_flow: dict[Flow, int]
    locked_resource_keys: frozenset[str]
    grouping_locks: frozenset[tuple[str, Flow]]
    backing_off: frozenset[str]

    @property
    def running(self) -> int:
        return sum(self.running_by_flow.values())

    @property
    def queued(self) -> int:
        return sum(self.queued_by_flow.values())


class SchedulerEventType(str, Enum):
    """Scheduler event kinds recorded for observability."""

    ENQUEUED = "enqueued"
    STARTED = "started"
    FINISHED = "finished"
    RETRY_SCHEDULED = "retry_scheduled"
    DEFERRED = "deferred"
    BACKPRESSURE_SOFT = "backpressure_soft"


@dataclass(frozen=True, slots=True)
class SchedulerEvent:
    """One entry of the scheduler event log."""

    event_type: SchedulerEventType
    flow: Flow
    run_id: str | None = None
    outcome: RunOutcome | None = None
    attempt: int | None = None
    delay_seconds: float | None = None
    backpressure: Backpressure | None = None
