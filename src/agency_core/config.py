"""Runtime configuration for the run coordinator."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

from agency_core.orchestrator.backoff import BackoffPolicy
from agency_core.orchestrator.models import Flow, SchedulerConfig

_DEFAULT_WORKER_COMMAND = (
    f"{shlex.quote(sys.executable)} -m agency_core.orchestrator.launcher.echo_worker "
    "--flow {flow} --result-path {result_path}"
)


@dataclass(slots=True)
class SchedulerSettings:
    """Concurrency limits and queue thresholds."""

    max_concurrent: int = 1
    per_flow_limits: dict[Flow, int] = field(default_factory=dict)
    soft_limit: int | None = None
    hard_limit: int | None = None
    stale_lock_timeout_seconds: float = 600.0


@dataclass(slots=True)
class BackoffSettings:
    """Launch retry policy."""

    base_seconds: float = 30.0
    multiplier: float = 2.0
    jitter_fraction: float = 0.1
    max_delay_seconds: float = 300.0
    max_retries: int = 5


@dataclass(slots=True)
class LauncherSettings:
    """Worker process settings."""

    command_template: str = _DEFAULT_WORKER_COMMAND
    terminate_grace_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agency.db")
    logs_root: Path = Path(".agency/logs")
    cards_root: Path = Path()
    busy_timeout_ms: int = 5_000
    continue_on_failure: bool = False
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    launcher: LauncherSettings = field(default_factory=LauncherSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to a single workstation."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENCY_DB_PATH", ".agency.db")),
            logs_root=Path(os.getenv("AGENCY_LOGS_ROOT", ".agency/logs")),
            cards_root=Path(os.getenv("AGENCY_CARDS_ROOT", ".")),
            busy_timeout_ms=int(os.getenv("AGENCY_BUSY_TIMEOUT_MS", "5000")),
            continue_on_failure=_env_bool("AGENCY_PIPELINE_CONTINUE_ON_FAILURE", default=False),
            scheduler=SchedulerSettings(
                max_concurrent=int(os.getenv("AGENCY_MAX_CONCURRENT", "1")),
                per_flow_limits=_collect_per_flow_limits(),
                soft_limit=_env_optional_int("AGENCY_SOFT_LIMIT"),
                hard_limit=_env_optional_int("AGENCY_HARD_LIMIT"),
                stale_lock_timeout_seconds=float(
                    os.getenv("AGENCY_STALE_LOCK_TIMEOUT_SECONDS", "600"),
                ),
            ),
            backoff=BackoffSettings(
                base_seconds=float(os.getenv("AGENCY_BACKOFF_BASE_SECONDS", "30")),
                multiplier=float(os.getenv("AGENCY_BACKOFF_MULTIPLIER", "2")),
                jitter_fraction=float(os.getenv("AGENCY_BACKOFF_JITTER_FRACTION", "0.1")),
                max_delay_seconds=float(os.getenv("AGENCY_BACKOFF_MAX_DELAY_SECONDS", "300")),
                max_retries=int(os.getenv("AGENCY_BACKOFF_MAX_RETRIES", "5")),
            ),
            launcher=LauncherSettings(
                command_template=os.getenv("AGENCY_WORKER_COMMAND", _DEFAULT_WORKER_COMMAND),
                terminate_grace_seconds=float(
                    os.getenv("AGENCY_TERMINATE_GRACE_SECONDS", "2.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot work with."""

        if self.scheduler.max_concurrent <= 0:
            raise ValueError("AGENCY_MAX_CONCURRENT must be > 0.")
        if self.scheduler.soft_limit is not None and self.scheduler.soft_limit <= 0:
            raise ValueError("AGENCY_SOFT_LIMIT must be > 0.")
        if (
            self.scheduler.soft_limit is not None
            and self.scheduler.hard_limit is not None
            and self.scheduler.hard_limit < self.scheduler.soft_limit
        ):
            raise ValueError("AGENCY_HARD_LIMIT must be >= AGENCY_SOFT_LIMIT.")
        if self.scheduler.stale_lock_timeout_seconds <= 0:
            raise ValueError("AGENCY_STALE_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.backoff.base_seconds < 0 or self.backoff.max_delay_seconds < 0:
            raise ValueError("Backoff delays must be >= 0.")
        if self.backoff.multiplier < 1:
            raise ValueError("AGENCY_BACKOFF_MULTIPLIER must be >= 1.")
        if not 0 <= self.backoff.jitter_fraction <= 1:
            raise ValueError("AGENCY_BACKOFF_JITTER_FRACTION must be between 0 and 1.")
        if self.backoff.max_retries < 0:
            raise ValueError("AGENCY_BACKOFF_MAX_RETRIES must be >= 0.")
        if not self.launcher.command_template.strip():
            raise ValueError("AGENCY_WORKER_COMMAND must not be empty.")
        if self.busy_timeout_ms <= 0:
            raise ValueError("AGENCY_BUSY_TIMEOUT_MS must be > 0.")

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            max_concurrent=self.scheduler.max_concurrent,
            per_flow_limits=dict(self.scheduler.per_flow_limits),
            soft_limit=self.scheduler.soft_limit,
            hard_limit=self.scheduler.hard_limit,
            retry_policy=BackoffPolicy(
                base_seconds=self.backoff.base_seconds,
                multiplier=self.backoff.multiplier,
                jitter_fraction=self.backoff.jitter_fraction,
                max_delay_seconds=self.backoff.max_delay_seconds,
                max_retries=self.backoff.max_retries,
            ),
            stale_lock_timeout_seconds=self.scheduler.stale_lock_timeout_seconds,
        )


def _collect_per_flow_limits() -> dict[Flow, int]:
    raw = os.getenv("AGENCY_PER_FLOW_LIMITS", "").strip()
    if not raw:
        return {}

    limits: dict[Flow, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid AGENCY_PER_FLOW_LIMITS entry: "
                f"{token!r}. Expected format '<flow>=<limit>'.",
            )
        flow_raw, limit_raw = (value.strip() for value in token.split("=", 1))
        try:
            flow = Flow(flow_raw)
        except ValueError as error:
            known = ", ".join(item.value for item in Flow)
            raise ValueError(
                f"Unknown flow in AGENCY_PER_FLOW_LIMITS: {flow_raw!r} (known: {known})",
            ) from error
        try:
            limit = int(limit_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid AGENCY_PER_FLOW_LIMITS value for {flow_raw!r}: {limit_raw!r}",
            ) from error
        if limit < 0:
            raise ValueError(
                f"Invalid AGENCY_PER_FLOW_LIMITS value for {flow_raw!r}: {limit!r} (must be >= 0)",
            )
        limits[flow] = limit
    return limits


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
