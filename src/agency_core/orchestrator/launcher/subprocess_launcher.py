"""Subprocess-based worker launcher for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass

from agency_core.orchestrator.launcher.base import LaunchError, LaunchRequest
from agency_core.orchestrator.models import RunOutcome
from agency_core.orchestrator.workdir import RunLogPaths

logger = logging.getLogger(__name__)

ExitCallback = Callable[[LaunchRequest, RunOutcome], None]


@dataclass(slots=True)
class _TrackedProcess:
    request: LaunchRequest
    process: subprocess.Popen[str]
    canceled: bool = False


class SubprocessWorkerLauncher:
    """Start one worker process per run from a shell-style command template.

    Supported placeholders: ``{run_id}``, ``{flow}``, ``{resource}``,
    ``{log_dir}`` and ``{result_path}``. The exit of every process is reported
    through ``on_exit`` from a daemon watcher thread.
    """

    def __init__(
        self,
        *,
        command_template: str,
        on_exit: ExitCallback | None = None,
        terminate_grace_seconds: float = 2.0,
    ) -> None:
        self.command_template = command_template
        self.on_exit = on_exit
        self.terminate_grace_seconds = terminate_grace_seconds
        self._lock = threading.Lock()
        self._processes: dict[str, _TrackedProcess] = {}

    def launch(self, request: LaunchRequest) -> None:
        if request.log_dir is None:
            raise LaunchError(f"Run {request.run_id} has no log directory.", transient=False)
        paths = RunLogPaths.in_directory(request.log_dir)
        paths.directory.mkdir(parents=True, exist_ok=True)
        run_args = _build_run_args(
            command_template=self.command_template,
            request=request,
            paths=paths,
        )

        env = os.environ.copy()
        env["AGENCY_RUN_ID"] = request.run_id
        env["AGENCY_FLOW"] = request.flow
        env["AGENCY_RESOURCE"] = request.resource_key
        env["AGENCY_ATTEMPT"] = str(request.attempt)
        env["AGENCY_RESULT_PATH"] = str(paths.result)

        try:
            with (
                paths.stdout_log.open("a", encoding="utf-8") as stdout_handle,
                paths.stderr_log.open("a", encoding="utf-8") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    env=env,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
        except FileNotFoundError as error:
            raise LaunchError(
                f"Worker command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise LaunchError(f"Worker failed to start: {error}", transient=True) from error

        tracked = _TrackedProcess(request=request, process=process)
        with self._lock:
            self._processes[request.run_id] = tracked
        logger.info(
            "Started %s worker for run %s (pid %d, attempt %d)",
            request.flow,
            request.run_id,
            process.pid,
            request.attempt,
        )
        watcher = threading.Thread(
            target=self._watch,
            args=(tracked,),
            name=f"agency-worker-{request.run_id[:8]}",
            daemon=True,
        )
        watcher.start()

    def cancel(self, run_id: str) -> None:
        with self._lock:
            tracked = self._processes.get(run_id)
            if tracked is None:
                return
            tracked.canceled = True
        logger.info("Terminating worker for run %s", run_id)
        _terminate_process(tracked.process, grace_seconds=self.terminate_grace_seconds)

    def active_run_ids(self) -> list[str]:
        with self._lock:
            return list(self._processes)

    def _watch(self, tracked: _TrackedProcess) -> None:
        returncode = tracked.process.wait()
        with self._lock:
            self._processes.pop(tracked.request.run_id, None)
            canceled = tracked.canceled

        if canceled:
            outcome = RunOutcome.CANCELED
        elif returncode == 0:
            outcome = RunOutcome.SUCCEEDED
        else:
            outcome = RunOutcome.FAILED
        logger.info(
            "Worker for run %s exited with code %d (%s)",
            tracked.request.run_id,
            returncode,
            outcome.value,
        )
        if self.on_exit is None:
            return
        try:
            self.on_exit(tracked.request, outcome)
        except Exception:
            logger.exception("Exit callback failed for run %s", tracked.request.run_id)


def _build_run_args(
    *,
    command_template: str,
    request: LaunchRequest,
    paths: RunLogPaths,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise LaunchError("Worker command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            run_id=shlex.quote(request.run_id),
            flow=shlex.quote(request.flow),
            resource=shlex.quote(request.resource_key),
            log_dir=shlex.quote(str(paths.directory)),
            result_path=shlex.quote(str(paths.result)),
        )
    except (KeyError, IndexError) as error:
        raise LaunchError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise LaunchError("Worker command template rendered empty command.", transient=False)
    return argv


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace_seconds)
