"""Launcher interface for worker process execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


class LaunchError(RuntimeError):
    """Worker could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(frozen=True, slots=True)
class LaunchRequest:
    """Inputs required to start one run attempt."""

    run_id: str
    resource_key: str
    flow: str
    attempt: int
    log_dir: Path | None = None


class WorkerLauncher(Protocol):
    """Protocol implemented by worker launchers."""

    def launch(self, request: LaunchRequest) -> None:
        """Start the worker; raise ``LaunchError`` when it cannot start."""

    def cancel(self, run_id: str) -> None:
        """Terminate the worker for ``run_id`` if it is still alive."""
