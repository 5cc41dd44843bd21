"""Controllers for coordinator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agency_core.config import Settings
from agency_core.orchestrator.launcher import SubprocessWorkerLauncher
from agency_core.orchestrator.lifecycle import RunLifecycleCoordinator
from agency_core.orchestrator.pipeline import (
    PipelineOrchestrator,
    PipelineStatus,
    resolve_pipeline,
    suggest_pipeline,
)
from agency_core.orchestrator.scheduler import Scheduler
from agency_core.orchestrator.workdir import RunLogLocator
from agency_core.resources.card_store import MarkdownCardStore
from agency_core.storage.common import utc_now
from agency_core.storage.lock_store import ResourceLockStore


@dataclass(slots=True)
class LocksListCommand:
    """CLI input for lock listing."""

    db_path: Path | None


@dataclass(slots=True)
class LocksReleaseCommand:
    """CLI input for releasing one lock by hand."""

    db_path: Path | None
    resource_key: str


@dataclass(slots=True)
class LocksClearStaleCommand:
    """CLI input for stale lock cleanup."""

    db_path: Path | None
    older_than_seconds: float | None


@dataclass(slots=True)
class PipelineSuggestCommand:
    """CLI input for pipeline suggestion."""

    cards_root: Path | None
    card: str


@dataclass(slots=True)
class RunPipelineCommand:
    """CLI input for running a pipeline on one card."""

    db_path: Path | None
    cards_root: Path | None
    card: str
    pipeline: str | None
    branch: str | None
    worker_command: str | None
    timeout_seconds: float | None


@dataclass(slots=True)
class RunPipelineResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class CoordinatorCliController:
    """Coordinates lock inspection and pipeline CLI operations."""

    def list_locks(self, command: LocksListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _lock_store(settings) as store:
            locks = store.list_locks()

        lines = [f"Locks: {len(locks)}"]
        for lock in locks:
            lines.append(
                f"  {lock.resource_key} run={lock.holder_run_id} flow={lock.flow} "
                f"acquired_at={lock.acquired_at.isoformat()}",
            )
        return lines

    def release_lock(self, command: LocksReleaseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _lock_store(settings) as store:
            released = store.release(command.resource_key)
        if not released:
            return [f"No lock held for {command.resource_key}"]
        return [f"Lock released: {command.resource_key}"]

    def clear_stale_locks(self, command: LocksClearStaleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        older_than = (
            command.older_than_seconds
            if command.older_than_seconds is not None
            else settings.scheduler.stale_lock_timeout_seconds
        )
        with _lock_store(settings) as store:
            removed = store.clear_stale(older_than=utc_now() - timedelta(seconds=older_than))

        lines = [f"Stale locks cleared: {len(removed)}"]
        lines.extend(f"  {resource_key}" for resource_key in removed)
        return lines

    def suggest_pipeline(self, command: PipelineSuggestCommand) -> list[str]:
        settings = Settings.from_env()
        cards = MarkdownCardStore(command.cards_root or settings.cards_root)
        resource = cards.load(command.card)
        definition = suggest_pipeline(resource.frontmatter)
        return [
            f"Pipeline: {definition.name}",
            f"Flows: {' -> '.join(flow.value for flow in definition.flows)}",
        ]

    def run_pipeline(self, command: RunPipelineCommand) -> RunPipelineResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.cards_root is not None:
            settings.cards_root = command.cards_root
        if command.worker_command is not None:
            settings.launcher.command_template = command.worker_command
        settings.validate()
        definition = resolve_pipeline(command.pipeline) if command.pipeline else None

        with _lock_store(settings) as store:
            launcher = SubprocessWorkerLauncher(
                command_template=settings.launcher.command_template,
                terminate_grace_seconds=settings.launcher.terminate_grace_seconds,
            )
            scheduler = Scheduler(
                config=settings.scheduler_config(),
                launcher=launcher,
                lock_store=store,
            )
            coordinator = RunLifecycleCoordinator(
                scheduler=scheduler,
                resources=MarkdownCardStore(settings.cards_root),
                log_locator=RunLogLocator(settings.logs_root),
            )
            launcher.on_exit = coordinator.handle_worker_exit
            orchestrator = PipelineOrchestrator(
                coordinator=coordinator,
                continue_on_failure=settings.continue_on_failure,
            )
            try:
                scheduler.clear_stale_locks()
                orchestrator.start(command.card, definition, branch=command.branch)
                state = orchestrator.wait(command.card, timeout=command.timeout_seconds)
                timed_out = state is not None and not state.status.is_final
                if timed_out:
                    orchestrator.cancel(command.card)
                    state = orchestrator.state(command.card)
            finally:
                scheduler.close()

        if state is None:
            return RunPipelineResult(lines=[f"Pipeline not started: {command.card}"], success=False)

        lines = [
            f"Pipeline: {state.definition.name} card={state.resource_key} "
            f"status={state.status.value}",
        ]
        for flow, outcome in zip(state.definition.flows, state.step_outcomes, strict=False):
            lines.append(f"  {flow.value}: {outcome.value}")
        if timed_out:
            lines.append(f"Timed out after {command.timeout_seconds}s; pipeline canceled.")
        elif state.reason:
            lines.append(f"Reason: {state.reason}")
        return RunPipelineResult(lines=lines, success=state.status == PipelineStatus.COMPLETED)


@contextmanager
def _lock_store(settings: Settings) -> Iterator[ResourceLockStore]:
    store = ResourceLockStore(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
