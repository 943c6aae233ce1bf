"""Markdown codec for task records.

A task file looks like::

    # Task: Add retry budget to phase runner

    ## Metadata

    | Field | Value |
    |-------|-------|
    | ID | `002-001-phase-retries` |
    | Status | `todo` |
    | Priority | `002` |
    ...

    <free-form request body>

    ## Work Log

    ### 2026-10-19T09:15:00+00:00 - Claimed

    - worker-1 moved task to doing

    ## Notes
    ...

The body between the metadata table and ``## Work Log`` is kept verbatim, as is
everything after the work log (the footer).
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from taskrelay.orchestrator.models import (
    TaskOutcome,
    TaskRecord,
    TaskState,
    WorkLogEntry,
    parse_task_order,
)
from taskrelay.storage.common import from_iso, to_iso

logger = logging.getLogger(__name__)

WORK_LOG_HEADING = "## Work Log"
METADATA_HEADING = "## Metadata"
_TITLE_RE = re.compile(r"^#\s+(?:Task:\s*)?(?P<title>.*?)\s*$")
_ENTRY_RE = re.compile(r"^###\s+(?P<stamp>.+?)\s+-\s+(?P<title>.*?)\s*$")
_EMPTY_VALUES = {"", "-", "none", "n/a", "null"}


class TaskParseError(ValueError):
    """Raised when a task file cannot be decoded into a record."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message if path is None else f"{path}: {message}")
        self.path = path


def parse_task(text: str, *, state: TaskState, path: str | None = None) -> TaskRecord:
    """Decode task markdown; the bucket ``state`` overrides the declared status."""

    lines = text.splitlines()
    title = _parse_title(lines, path=path)
    metadata, table_end = _parse_metadata(lines, path=path)

    task_id = metadata.get("id", "")
    if not task_id:
        raise TaskParseError("metadata is missing the ID field", path=path)

    declared = metadata.get("status", "")
    if declared and declared != state.value:
        logger.debug(
            "Task %s declares status %r but lives in %s; bucket wins.",
            task_id,
            declared,
            state.value,
        )

    work_log_start = _find_heading(lines, WORK_LOG_HEADING, start=table_end)
    if work_log_start is None:
        body_lines = lines[table_end:]
        entries: list[WorkLogEntry] = []
        footer_lines: list[str] = []
    else:
        body_lines = lines[table_end:work_log_start]
        footer_start = _find_next_section(lines, start=work_log_start + 1)
        entries = _parse_work_log(lines[work_log_start + 1 : footer_start], path=path)
        footer_lines = lines[footer_start:]

    id_priority, sequence = parse_task_order(task_id)
    return TaskRecord(
        task_id=task_id,
        title=title,
        state=state,
        priority=_parse_int(metadata.get("priority"), default=id_priority),
        sequence=sequence,
        created_at=_parse_datetime(metadata.get("created"), field="Created", path=path),
        started_at=_parse_datetime(metadata.get("started"), field="Started", path=path),
        completed_at=_parse_datetime(metadata.get("completed"), field="Completed", path=path),
        blocked_by=_parse_id_set(metadata.get("blocked by")),
        blocks=_parse_id_set(metadata.get("blocks")),
        assigned_to=_optional(metadata.get("assigned to")),
        assigned_at=_parse_datetime(metadata.get("assigned at"), field="Assigned At", path=path),
        outcome=_parse_outcome(metadata.get("outcome"), path=path),
        body="\n".join(body_lines).strip("\n"),
        footer="\n".join(footer_lines).strip("\n"),
        work_log=entries,
    )


def render_task(record: TaskRecord) -> str:
    """Encode a record as task markdown."""

    rows = [
        ("ID", _code(record.task_id)),
        ("Status", _code(record.state.value)),
        ("Priority", _code(f"{record.priority:03d}")),
        ("Created", _code_time(record.created_at)),
        ("Started", _code_time(record.started_at)),
        ("Completed", _code_time(record.completed_at)),
        ("Blocked By", ", ".join(sorted(record.blocked_by))),
        ("Blocks", ", ".join(sorted(record.blocks))),
        ("Assigned To", _code(record.assigned_to)),
        ("Assigned At", _code_time(record.assigned_at)),
        ("Outcome", _code(record.outcome.value if record.outcome else None)),
    ]
    parts = [f"# Task: {record.title}", "", METADATA_HEADING, "", "| Field | Value |"]
    parts.append("|-------|-------|")
    parts.extend(f"| {name} | {value} |".replace("|  |", "| |") for name, value in rows)
    parts.append("")
    if record.body:
        parts.extend([record.body, ""])
    parts.extend([WORK_LOG_HEADING, ""])
    for entry in record.work_log:
        parts.append(f"### {to_iso(entry.timestamp)} - {entry.title}")
        parts.append("")
        if entry.lines:
            parts.extend(f"- {line}" for line in entry.lines)
            parts.append("")
    if record.footer:
        parts.extend([record.footer, ""])
    return "\n".join(parts)


def _parse_title(lines: list[str], *, path: str | None) -> str:
    for line in lines:
        if not line.strip():
            continue
        if line.startswith("# "):
            match = _TITLE_RE.match(line)
            if match is not None:
                return match.group("title")
        break
    raise TaskParseError("first line must be a '# Task: <title>' heading", path=path)


def _parse_metadata(lines: list[str], *, path: str | None) -> tuple[dict[str, str], int]:
    heading = _find_heading(lines, METADATA_HEADING, start=0)
    if heading is None:
        raise TaskParseError("missing '## Metadata' section", path=path)

    index = heading + 1
    while index < len(lines) and not lines[index].strip():
        index += 1

    metadata: dict[str, str] = {}
    while index < len(lines) and lines[index].lstrip().startswith("|"):
        cells = [cell.strip() for cell in lines[index].strip().strip("|").split("|")]
        index += 1
        if len(cells) < 2:  # noqa: PLR2004
            continue
        key, value = cells[0], cells[1]
        if key.lower() == "field" or set(key) <= {"-", ":"}:
            continue
        metadata[key.lower()] = value.strip("`").strip()
    if not metadata:
        raise TaskParseError("metadata table is empty", path=path)
    return metadata, index


def _parse_work_log(lines: list[str], *, path: str | None) -> list[WorkLogEntry]:
    entries: list[WorkLogEntry] = []
    for line in lines:
        if line.startswith("###"):
            match = _ENTRY_RE.match(line)
            if match is None:
                raise TaskParseError(f"malformed work log heading: {line!r}", path=path)
            timestamp = _parse_datetime(match.group("stamp"), field="Work Log", path=path)
            if timestamp is None:
                raise TaskParseError(f"work log entry without timestamp: {line!r}", path=path)
            entries.append(WorkLogEntry(timestamp=timestamp, title=match.group("title")))
            continue
        if not line.strip():
            continue
        if not entries:
            raise TaskParseError("work log text before the first entry heading", path=path)
        text = line[2:] if line.startswith("- ") else line
        entries[-1].lines.append(text)
    return entries


def _find_heading(lines: list[str], heading: str, *, start: int) -> int | None:
    for index in range(start, len(lines)):
        if lines[index].strip() == heading:
            return index
    return None


def _find_next_section(lines: list[str], *, start: int) -> int:
    for index in range(start, len(lines)):
        if lines[index].startswith("## "):
            return index
    return len(lines)


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().strip("`").strip()
    if cleaned.lower() in _EMPTY_VALUES:
        return None
    return cleaned


def _parse_int(value: str | None, *, default: int) -> int:
    cleaned = _optional(value)
    if cleaned is None:
        return default
    try:
        return int(cleaned)
    except ValueError:
        return default


def _parse_datetime(value: str | None, *, field: str, path: str | None) -> datetime | None:
    cleaned = _optional(value)
    if cleaned is None:
        return None
    try:
        return from_iso(cleaned)
    except ValueError as error:
        raise TaskParseError(f"invalid {field} timestamp {cleaned!r}", path=path) from error


def _parse_id_set(value: str | None) -> set[str]:
    cleaned = _optional(value)
    if cleaned is None:
        return set()
    tokens = re.split(r"[,\s]+", cleaned)
    return {token.strip("`") for token in tokens if token.strip("`")}


def _parse_outcome(value: str | None, *, path: str | None) -> TaskOutcome | None:
    cleaned = _optional(value)
    if cleaned is None:
        return None
    try:
        return TaskOutcome(cleaned.lower())
    except ValueError as error:
        raise TaskParseError(f"unknown outcome {cleaned!r}", path=path) from error


def _code(value: str | None) -> str:
    return f"`{value}`" if value else ""


def _code_time(value: datetime | None) -> str:
    return _code(to_iso(value)) if value is not None else ""
