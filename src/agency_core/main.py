"""CLI entrypoint for agency."""

import logging
from pathlib import Path

import rich_click as click

from agency_core import __version__
from agency_core.orchestrator.controllers import (
    CoordinatorCliController,
    LocksClearStaleCommand,
    LocksListCommand,
    LocksReleaseCommand,
    PipelineSuggestCommand,
    RunPipelineCommand,
)
from agency_core.orchestrator.pipeline import BUILTIN_PIPELINES
from agency_core.resources.card_store import ResourceWriteError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoordinatorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agency")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def agency(verbose: bool) -> None:
    """Agent run coordinator for markdown task cards."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agency.group()
def locks() -> None:
    """Durable resource lock commands."""


@locks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def locks_list(db_path: Path | None) -> None:
    """List held resource locks, oldest first."""

    _emit_lines(CONTROLLER.list_locks(LocksListCommand(db_path=db_path)))


@locks.command("release")
@click.argument("resource_key")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def locks_release(resource_key: str, db_path: Path | None) -> None:
    """Release the lock on RESOURCE_KEY regardless of its holder."""

    _emit_lines(
        CONTROLLER.release_lock(LocksReleaseCommand(db_path=db_path, resource_key=resource_key)),
    )


@locks.command("clear-stale")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than",
    "older_than_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Age in seconds; defaults to AGENCY_STALE_LOCK_TIMEOUT_SECONDS.",
)
def locks_clear_stale(db_path: Path | None, older_than_seconds: float | None) -> None:
    """Remove locks left behind by crashed processes."""

    _emit_lines(
        CONTROLLER.clear_stale_locks(
            LocksClearStaleCommand(db_path=db_path, older_than_seconds=older_than_seconds),
        ),
    )


@agency.group()
def pipeline() -> None:
    """Pipeline commands."""


@pipeline.command("suggest")
@click.argument("card")
@click.option(
    "--cards-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory card paths are relative to.",
)
def pipeline_suggest(card: str, cards_root: Path | None) -> None:
    """Suggest a pipeline for CARD from its frontmatter."""

    try:
        lines = CONTROLLER.suggest_pipeline(PipelineSuggestCommand(cards_root=cards_root, card=card))
    except ResourceWriteError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agency.command("run")
@click.argument("card")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--cards-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory card paths are relative to.",
)
@click.option(
    "--pipeline",
    "pipeline_name",
    type=click.Choice(sorted(BUILTIN_PIPELINES)),
    default=None,
    help="Pipeline to run; suggested from the card when omitted.",
)
@click.option("--branch", default=None, help="Branch recorded for implement runs.")
@click.option(
    "--worker-command",
    default=None,
    help="Worker command template; overrides AGENCY_WORKER_COMMAND.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Cancel the pipeline if it has not finished after this many seconds.",
)
def run(  # noqa: PLR0913
    card: str,
    db_path: Path | None,
    cards_root: Path | None,
    pipeline_name: str | None,
    branch: str | None,
    worker_command: str | None,
    timeout_seconds: float | None,
) -> None:
    """Run a pipeline on CARD and wait for it to finish."""

    try:
        result = CONTROLLER.run_pipeline(
            RunPipelineCommand(
                db_path=db_path,
                cards_root=cards_root,
                card=card,
                pipeline=pipeline_name,
                branch=branch,
                worker_command=worker_command,
                timeout_seconds=timeout_seconds,
            ),
        )
    except (ResourceWriteError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Pipeline did not complete.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agency()
