"""Markdown card store that reads and writes only coordinator-owned fields."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

_FRONTMATTER_DELIMITER = "---"
_CHECKBOX_RE = re.compile(r"^(\s*[-*]\s+\[)([ xX])(\].*)$")
_SECTION_RE = re.compile(r"^(?:#{1,6}\s+)?([A-Za-z][A-Za-z /&-]*?)\s*:?\s*$")
_CRITERIA_SECTION = "acceptance criteria"
_HISTORY_SECTION = "history"
_KNOWN_SECTIONS = frozenset(
    {"summary", "acceptance criteria", "notes", "alignment", "history", "details"},
)


class ResourceWriteError(RuntimeError):
    """Card could not be read or written."""


@dataclass(slots=True)
class Criterion:
    """One checklist entry under Acceptance Criteria."""

    title: str
    is_complete: bool


@dataclass(slots=True)
class ResourceState:
    """Coordinator view of one card."""

    key: str
    path: Path
    frontmatter: dict[str, str | None]
    criteria: list[Criterion]
    history: list[str]

    @property
    def status(self) -> str | None:
        return self.frontmatter.get("agent_status")

    @property
    def flow(self) -> str | None:
        return self.frontmatter.get("agent_flow")

    @property
    def parallelizable(self) -> bool:
        value = (self.frontmatter.get("parallelizable") or "").strip().lower()
        return value in {"true", "yes", "1"}


@dataclass(slots=True)
class ResourceUpdate:
    """Owned-field changes applied in one write."""

    status: str | None = None
    flow: str | None = None
    branch: str | None = None
    checked_indices: tuple[int, ...] = ()
    history_line: str | None = None
    frontmatter: dict[str, str] = field(default_factory=dict)


class ResourceStore(Protocol):
    """Persistence boundary for externally owned resources."""

    def load(self, key: str) -> ResourceState: ...

    def apply(self, key: str, update: ResourceUpdate) -> ResourceState: ...


class MarkdownCardStore:
    """Cards are markdown files addressed by their path relative to ``root_dir``.

    ``apply`` re-reads the file at write time and edits only the owned lines,
    so edits made on disk since the run was enqueued survive.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def path_for(self, key: str) -> Path:
        return self.root_dir / key

    def load(self, key: str) -> ResourceState:
        path = self.path_for(key)
        try:
            text = path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            raise ResourceWriteError(f"Card not readable: {path} ({error})") from error
        return parse_card(key=key, path=path, text=text)

    def apply(self, key: str, update: ResourceUpdate) -> ResourceState:
        path = self.path_for(key)
        try:
            text = path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            raise ResourceWriteError(f"Card not readable: {path} ({error})") from error

        lines = text.splitlines()
        trailing_newline = text.endswith("\n")
        frontmatter_values = dict(update.frontmatter)
        if update.status is not None:
            frontmatter_values["agent_status"] = update.status
        if update.flow is not None:
            frontmatter_values["agent_flow"] = update.flow
        if update.branch is not None:
            frontmatter_values["branch"] = update.branch
        for name, value in frontmatter_values.items():
            lines = _set_frontmatter_value(lines, name, value, path=path)
        if update.checked_indices:
            lines = _check_criteria(lines, update.checked_indices)
        if update.history_line:
            lines = _append_history(lines, update.history_line)

        rendered = "\n".join(lines) + ("\n" if trailing_newline or not lines else "")
        _atomic_write(path, rendered)
        return parse_card(key=key, path=path, text=rendered)


def parse_card(*, key: str, path: Path, text: str) -> ResourceState:
    """Parse the owned fields of a card."""

    lines = text.splitlines()
    frontmatter: dict[str, str | None] = {}
    bounds = _frontmatter_bounds(lines)
    if bounds is not None:
        start, end = bounds
        for line in lines[start + 1 : end]:
            if ":" not in line:
                continue
            name, _, raw = line.partition(":")
            value = raw.strip()
            frontmatter[name.strip()] = None if value in {"", "null", "~"} else value

    criteria: list[Criterion] = []
    for index in _section_line_indices(lines, _CRITERIA_SECTION):
        match = _CHECKBOX_RE.match(lines[index])
        if match is None:
            continue
        criteria.append(
            Criterion(
                title=match.group(3)[1:].strip(),
                is_complete=match.group(2).lower() == "x",
            ),
        )

    history: list[str] = []
    for index in _section_line_indices(lines, _HISTORY_SECTION):
        stripped = lines[index].strip()
        if stripped.startswith(("- ", "* ")):
            history.append(stripped[2:].strip())

    return ResourceState(
        key=key,
        path=path,
        frontmatter=frontmatter,
        criteria=criteria,
        history=history,
    )


def _frontmatter_bounds(lines: list[str]) -> tuple[int, int] | None:
    if not lines or lines[0].strip() != _FRONTMATTER_DELIMITER:
        return None
    for index in range(1, len(lines)):
        if lines[index].strip() == _FRONTMATTER_DELIMITER:
            return 0, index
    return None


def _set_frontmatter_value(lines: list[str], name: str, value: str, *, path: Path) -> list[str]:
    bounds = _frontmatter_bounds(lines)
    if bounds is None:
        raise ResourceWriteError(f"Card is missing frontmatter delimiters: {path}")
    start, end = bounds
    updated = list(lines)
    for index in range(start + 1, end):
        existing, sep, _ = updated[index].partition(":")
        if sep and existing.strip() == name:
            updated[index] = f"{name}: {value}"
            return updated
    updated.insert(end, f"{name}: {value}")
    return updated


def _section_name(line: str) -> str | None:
    if not line.strip() or _CHECKBOX_RE.match(line) or line.lstrip().startswith(("- ", "* ")):
        return None
    match = _SECTION_RE.match(line)
    if match is None:
        return None
    name = match.group(1).strip().lower()
    if line.lstrip().startswith("#") or name in _KNOWN_SECTIONS:
        return name
    return None


def _section_range(lines: list[str], section: str) -> tuple[int, int] | None:
    bounds = _frontmatter_bounds(lines)
    body_start = bounds[1] + 1 if bounds is not None else 0
    header: int | None = None
    for index in range(body_start, len(lines)):
        name = _section_name(lines[index])
        if name is None:
            continue
        if header is not None:
            return header, index
        if name == section:
            header = index
    if header is None:
        return None
    return header, len(lines)


def _section_line_indices(lines: list[str], section: str) -> range:
    found = _section_range(lines, section)
    if found is None:
        return range(0)
    header, end = found
    return range(header + 1, end)


def _check_criteria(lines: list[str], indices: tuple[int, ...]) -> list[str]:
    wanted = set(indices)
    updated = list(lines)
    position = 0
    for index in _section_line_indices(lines, _CRITERIA_SECTION):
        match = _CHECKBOX_RE.match(updated[index])
        if match is None:
            continue
        if position in wanted:
            updated[index] = f"{match.group(1)}x{match.group(3)}"
        position += 1
    return updated


def _append_history(lines: list[str], entry: str) -> list[str]:
    updated = list(lines)
    found = _section_range(updated, _HISTORY_SECTION)
    if found is None:
        while updated and not updated[-1].strip():
            updated.pop()
        updated.extend(["", "History:", f"- {entry}"])
        return updated
    header, end = found
    insert_at = end
    while insert_at > header + 1 and not updated[insert_at - 1].strip():
        insert_at -= 1
    updated.insert(insert_at, f"- {entry}")
    return updated


def _atomic_write(path: Path, text: str) -> None:
    temp_path = path.with_name(f".{path.name}.tmp")
    try:
        temp_path.write_text(text, "utf-8")
        os.replace(temp_path, path)
    except OSError as error:
        temp_path.unlink(missing_ok=True)
        raise ResourceWriteError(f"Card not writable: {path} ({error})") from error
