"""File-based contract for worker result payloads."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

RESULT_STATUSES = frozenset({"succeeded", "failed", "canceled"})


class ResultContractError(ValueError):
    """Result payload is missing or does not match the contract."""


@dataclass(slots=True)
class ResultSource:
    """One source captured by a research run."""

    title: str | None = None
    url: str | None = None


@dataclass(slots=True)
class RunResultPayload:
    """Machine-readable result written by a worker into its log directory."""

    status: str
    summary: str = ""
    checked_criteria: list[int] | None = None
    findings: list[dict[str, Any]] | None = None
    sources: list[ResultSource] | None = None
    tests_passed: bool | None = None
    overall: str | None = None

    def severity_counts(self) -> tuple[int, int, int]:
        """Count findings as (error, warn, info)."""

        error = warn = info = 0
        for finding in self.findings or []:
            severity = str(finding.get("severity") or "").lower()
            if severity == "error":
                error += 1
            elif severity in {"warn", "warning"}:
                warn += 1
            elif severity == "info":
                info += 1
        return error, warn, info


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_run_result(path: Path, payload: RunResultPayload) -> None:
    """Serialize a result payload using the worker-facing camelCase keys."""

    raw: dict[str, Any] = {"status": payload.status, "summary": payload.summary}
    if payload.checked_criteria is not None:
        raw["checkedCriteria"] = list(payload.checked_criteria)
    if payload.findings is not None:
        raw["findings"] = list(payload.findings)
    if payload.sources is not None:
        raw["sources"] = [asdict(source) for source in payload.sources]
    if payload.tests_passed is not None:
        raw["tests"] = {"passed": payload.tests_passed}
    if payload.overall is not None:
        raw["overall"] = payload.overall
    write_json(path, raw)


def read_run_result(path: Path) -> RunResultPayload:  # noqa: C901
    """Deserialize and validate a worker result payload."""

    if not path.exists():
        raise ResultContractError(f"Result payload not found: {path}")
    try:
        raw = load_json(path)
    except (
        json.JSONDecodeError,
        UnicodeDecodeError,
        TypeError,
        RecursionError,
        OSError,
    ) as error:
        raise ResultContractError(f"Result payload unreadable ({path}): {error}") from error

    status = raw.get("status")
    if not isinstance(status, str) or status not in RESULT_STATUSES:
        raise ResultContractError(f"result.status must be one of {sorted(RESULT_STATUSES)}")
    summary = raw.get("summary", "")
    if not isinstance(summary, str):
        raise ResultContractError("result.summary must be a string")

    checked = raw.get("checkedCriteria")
    if checked is not None:
        if not isinstance(checked, list) or not all(
            isinstance(item, int) and not isinstance(item, bool) for item in checked
        ):
            raise ResultContractError("result.checkedCriteria must be an array of integers")

    findings = raw.get("findings")
    if findings is not None:
        if not isinstance(findings, list) or not all(isinstance(item, dict) for item in findings):
            raise ResultContractError("result.findings must be an array of objects")

    sources: list[ResultSource] | None = None
    raw_sources = raw.get("sources")
    if raw_sources is not None:
        if not isinstance(raw_sources, list):
            raise ResultContractError("result.sources must be an array")
        sources = []
        for item in raw_sources:
            if not isinstance(item, dict):
                raise ResultContractError("result.sources items must be objects")
            title = item.get("title")
            url = item.get("url")
            sources.append(
                ResultSource(
                    title=title if isinstance(title, str) else None,
                    url=url if isinstance(url, str) else None,
                ),
            )

    tests_passed: bool | None = None
    tests = raw.get("tests")
    if isinstance(tests, dict) and isinstance(tests.get("passed"), bool):
        tests_passed = tests["passed"]

    overall = raw.get("overall")
    return RunResultPayload(
        status=status,
        summary=summary,
        checked_criteria=checked,
        findings=findings,
        sources=sources,
        tests_passed=tests_passed,
        overall=overall if isinstance(overall, str) else None,
    )
