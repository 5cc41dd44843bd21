"""Local demo worker for launcher integration tests."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

from agency_core.orchestrator.contracts import ResultSource, RunResultPayload, write_run_result


def main(argv: list[str] | None = None) -> int:
    """Write a deterministic result payload and exit."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--flow", default=os.getenv("AGENCY_FLOW", "implement"))
    parser.add_argument("--result-path", default=os.getenv("AGENCY_RESULT_PATH"))
    parser.add_argument("--status", default="succeeded")
    parser.add_argument("--check", type=int, action="append", default=[])
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    if not args.result_path:
        parser.error("--result-path or AGENCY_RESULT_PATH is required")
    if args.sleep > 0:
        time.sleep(args.sleep)

    payload = RunResultPayload(status=args.status, summary=f"echo {args.flow} run")
    if args.flow == "implement":
        payload.checked_criteria = list(args.check)
        payload.tests_passed = args.status == "succeeded"
    elif args.flow == "review":
        payload.findings = [{"severity": "info", "message": "echo review"}]
        payload.overall = "approve"
    elif args.flow == "research":
        payload.sources = [ResultSource(title="Echo source", url="https://example.com")]
    write_run_result(Path(args.result_path), payload)
    print(f"echo worker wrote {args.result_path}")  # noqa: T201
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
