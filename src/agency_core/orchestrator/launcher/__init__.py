"""Worker launcher implementations."""

from agency_core.orchestrator.launcher.base import LaunchError, LaunchRequest, WorkerLauncher
from agency_core.orchestrator.launcher.subprocess_launcher import SubprocessWorkerLauncher

__all__ = [
    "LaunchError",
    "LaunchRequest",
    "SubprocessWorkerLauncher",
    "WorkerLauncher",
]
