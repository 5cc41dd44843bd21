"""Per-run log directory layout."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


@dataclass(frozen=True, slots=True)
class RunLogPaths:
    """Well-known file locations for one run."""

    directory: Path
    stdout_log: Path
    stderr_log: Path
    result: Path

    @classmethod
    def in_directory(cls, directory: Path) -> RunLogPaths:
        return cls(
            directory=directory,
            stdout_log=directory / "stdout.log",
            stderr_log=directory / "stderr.log",
            result=directory / "result.json",
        )


class RunLogLocator:
    """Creates deterministic ``<root>/<YYYYMMDD>/<run_id>`` directories."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def paths_for(self, run_id: str, *, on: datetime) -> RunLogPaths:
        return RunLogPaths.in_directory(self.root_dir / on.strftime("%Y%m%d") / run_id)

    def materialize(self, run_id: str, *, on: datetime) -> RunLogPaths:
        paths = self.paths_for(run_id, on=on)
        paths.directory.mkdir(parents=True, exist_ok=True)
        return paths
