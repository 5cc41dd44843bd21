"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agency_core.orchestrator.backoff import BackoffPolicy
from agency_core.orchestrator.launcher.base import LaunchRequest
from agency_core.orchestrator.models import SchedulerConfig
from agency_core.orchestrator.scheduler import Scheduler
from agency_core.storage.lock_store import ResourceLockStore

ECHO_WORKER_COMMAND_TEMPLATE = (
    f"{sys.executable} -m agency_core.orchestrator.launcher.echo_worker "
    "--flow {flow} --result-path {result_path}"
)

CARD_TEMPLATE = """\
---
owner: sam
agent_flow: {agent_flow}
agent_status: idle
branch: null
risk: {risk}
review: not-requested
parallelizable: {parallelizable}
---

# 1.1 Sample card

Summary:
Make the thing work.

Acceptance Criteria:
- [ ] first criterion
- [ ] second criterion
- [x] third criterion

Notes:
Keep this note.

History:
- 2026-10-01: Card created.
"""


class FakeLauncher:
    """Records launch/cancel calls; raises queued failures in order."""

    def __init__(self) -> None:
        self.launched: list[LaunchRequest] = []
        self.canceled: list[str] = []
        self.failures: list[Exception] = []

    def launch(self, request: LaunchRequest) -> None:
        self.launched.append(request)
        if self.failures:
            raise self.failures.pop(0)

    def cancel(self, run_id: str) -> None:
        self.canceled.append(run_id)

    def launched_keys(self) -> list[str]:
        return [request.resource_key for request in self.launched]


@dataclass(slots=True)
class FakeHandle:
    delay_seconds: float
    callback: Callable[[], None]
    canceled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.canceled = True

    def fire(self) -> None:
        if self.canceled or self.fired:
            return
        self.fired = True
        self.callback()


@dataclass(slots=True)
class FakeTimer:
    handles: list[FakeHandle] = field(default_factory=list)

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> FakeHandle:
        handle = FakeHandle(delay_seconds=delay_seconds, callback=callback)
        self.handles.append(handle)
        return handle

    def pending(self) -> list[FakeHandle]:
        return [handle for handle in self.handles if not handle.canceled and not handle.fired]

    def fire_all(self) -> None:
        for handle in self.pending():
            handle.fire()


class TickingClock:
    """Returns strictly increasing timestamps, one second apart."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 10, 18, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


def write_card(
    root: Path,
    name: str,
    *,
    risk: str = "normal",
    parallelizable: bool = False,
    agent_flow: str = "null",
) -> Path:
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        CARD_TEMPLATE.format(
            risk=risk,
            parallelizable=str(parallelizable).lower(),
            agent_flow=agent_flow,
        ),
        "utf-8",
    )
    return path


@pytest.fixture()
def lock_store(tmp_path: Path) -> Iterator[ResourceLockStore]:
    store = ResourceLockStore(tmp_path / "agency.db")
    store.init_schema()
    yield store
    store.close()


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture()
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture()
def make_scheduler(
    lock_store: ResourceLockStore,
    launcher: FakeLauncher,
    timer: FakeTimer,
    clock: TickingClock,
) -> Callable[..., Scheduler]:
    """Build a scheduler with deterministic timers, clock and retry delays."""

    def _make(**config_overrides) -> Scheduler:
        config_overrides.setdefault(
            "retry_policy",
            BackoffPolicy(jitter_fraction=0.0),
        )
        on_gave_up = config_overrides.pop("on_gave_up", None)
        return Scheduler(
            config=SchedulerConfig(**config_overrides),
            launcher=launcher,
            lock_store=lock_store,
            timer=timer,
            now=clock,
            on_gave_up=on_gave_up,
        )

    return _make


@pytest.fixture()
def cards_root(tmp_path: Path) -> Path:
    root = tmp_path / "cards"
    root.mkdir()
    return root


@pytest.fixture()
def card_factory(cards_root: Path) -> Callable[..., str]:
    """Write a sample card under ``cards_root`` and return its resource key."""

    def _make(name: str = "phase-1/1.1-sample.md", **options) -> str:
        write_card(cards_root, name, **options)
        return name

    return _make


@pytest.fixture()
def echo_worker_command() -> str:
    return ECHO_WORKER_COMMAND_TEMPLATE
