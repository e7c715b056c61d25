"""
Usage log parsing.

Reads assistant session logs (one JSON object per line) and produces a
deduplicated, per-model usage summary. Logs are stored at:

- Main:      <projects_dir>/<encoded-project>/<session-id>.jsonl
- Sub-tasks: <projects_dir>/<encoded-project>/<session-id>/subagents/agent-*.jsonl
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Set, Union

from pydantic import BaseModel, ValidationError

from .project_identifier import resolve_project_identifier
from .project_path import decode_project_dir, encode_project_path
from .token_counter import TokenCounts

logger = logging.getLogger(__name__)

UNKNOWN_MODEL = "unknown"
LOG_SUFFIX = ".jsonl"
SUBTASK_DIR = "subagents"
SUBTASK_PREFIX = "agent-"


class UsagePayload(BaseModel):
    input_tokens: Optional[int] = 0
    output_tokens: Optional[int] = 0
    cache_creation_input_tokens: Optional[int] = 0
    cache_read_input_tokens: Optional[int] = 0


class MessagePayload(BaseModel):
    model: Optional[str] = None
    usage: Optional[UsagePayload] = None


class LogEntry(BaseModel):
    """Schema of one log line. Unrecognized fields are ignored."""
    type: str
    uuid: Optional[str] = None
    parentMessageId: Optional[str] = None
    sessionId: Optional[str] = None
    timestamp: Optional[str] = None
    message: Optional[MessagePayload] = None


@dataclass(frozen=True)
class UsageRecord:
    """Token usage of one model-generated request."""
    request_id: str
    model: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    timestamp: Optional[datetime] = None

    @property
    def counts(self) -> TokenCounts:
        return TokenCounts(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
        )

    @property
    def total_tokens(self) -> int:
        return self.counts.total_tokens


@dataclass(frozen=True)
class ParsedUsage:
    """A line that carried usage."""
    record: UsageRecord


@dataclass(frozen=True)
class Skip:
    """A line that carried no usage, with the reason it was dropped."""
    reason: str
    timestamp: Optional[datetime] = None


LineResult = Union[ParsedUsage, Skip]


@dataclass(frozen=True)
class SessionUsage:
    """Aggregated usage of one session, including its sub-task logs."""
    session_id: str
    project_path: str
    project_identifier: str
    records: List[UsageRecord]
    totals: TokenCounts
    model_breakdown: Dict[str, int]
    primary_model: str
    started_at: datetime
    ended_at: datetime
    skipped_lines: int = 0


@dataclass
class _FileScan:
    records: List[UsageRecord] = field(default_factory=list)
    timestamps: List[datetime] = field(default_factory=list)
    skipped: int = 0


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_line(line: str) -> LineResult:
    """Validate one log line and classify it.

    Never raises: undecodable or schema-invalid lines become Skip results.
    """
    try:
        raw = json.loads(line)
    except json.JSONDecodeError:
        return Skip("invalid json")

    try:
        entry = LogEntry.model_validate(raw)
    except ValidationError:
        return Skip("schema mismatch")

    timestamp = parse_timestamp(entry.timestamp)
    if entry.type != "assistant":
        return Skip("not an assistant turn", timestamp)
    if entry.message is None or entry.message.usage is None:
        return Skip("no usage payload", timestamp)

    usage = entry.message.usage
    request_id = entry.uuid or entry.parentMessageId or f"synthetic-{uuid.uuid4()}"
    return ParsedUsage(UsageRecord(
        request_id=request_id,
        model=entry.message.model or UNKNOWN_MODEL,
        input_tokens=usage.input_tokens or 0,
        output_tokens=usage.output_tokens or 0,
        cache_creation_tokens=usage.cache_creation_input_tokens or 0,
        cache_read_tokens=usage.cache_read_input_tokens or 0,
        timestamp=timestamp,
    ))


def _scan_file(file_path: Path) -> _FileScan:
    """Parse one log file, deduplicating request ids within that file."""
    scan = _FileScan()
    try:
        content = file_path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.debug("Cannot read usage log %s: %s", file_path, exc)
        return scan

    seen: Set[str] = set()
    for line in content.splitlines():
        if not line.strip():
            continue
        result = parse_line(line)
        if isinstance(result, Skip):
            if result.timestamp is not None:
                scan.timestamps.append(result.timestamp)
            if result.reason in ("invalid json", "schema mismatch"):
                scan.skipped += 1
            continue

        record = result.record
        if record.timestamp is not None:
            scan.timestamps.append(record.timestamp)
        # Streaming retransmits the same request; first occurrence wins
        if record.request_id in seen:
            continue
        seen.add(record.request_id)
        scan.records.append(record)

    if scan.skipped:
        logger.debug("Skipped %d malformed line(s) in %s", scan.skipped, file_path)
    return scan


def find_subtask_files(log_path: Path) -> List[Path]:
    """Find sub-task logs belonging to a session log."""
    subtask_dir = log_path.parent / log_path.stem / SUBTASK_DIR
    if not subtask_dir.is_dir():
        return []
    try:
        return sorted(
            p for p in subtask_dir.iterdir()
            if p.name.startswith(SUBTASK_PREFIX) and p.name.endswith(LOG_SUFFIX)
        )
    except OSError:
        return []


def session_id_from_path(log_path: Path) -> str:
    return Path(log_path).stem


def _file_times(log_path: Path) -> tuple:
    stat = log_path.stat()
    created = getattr(stat, "st_birthtime", stat.st_ctime)
    return (
        datetime.fromtimestamp(created, tz=timezone.utc),
        datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
    )


def _primary_model(breakdown: Dict[str, int]) -> str:
    """Model with the largest token share; ties go to the first encountered."""
    primary = UNKNOWN_MODEL
    best = -1
    for model, tokens in breakdown.items():
        if tokens > best:
            primary, best = model, tokens
    return primary


def empty_session_usage(session_id: str, project_path: str = "") -> SessionUsage:
    now = datetime.now(timezone.utc)
    return SessionUsage(
        session_id=session_id,
        project_path=project_path,
        project_identifier="",
        records=[],
        totals=TokenCounts(),
        model_breakdown={},
        primary_model=UNKNOWN_MODEL,
        started_at=now,
        ended_at=now,
    )


def parse_session(
    log_path: Union[str, Path],
    project_path: Optional[str] = None,
    resolve_identifier: Optional[Callable[[str], str]] = None
) -> SessionUsage:
    """Parse a session's log and all of its sub-task logs.

    Args:
        log_path: Path to the session's primary log file
        project_path: Raw project path, if the caller knows it
        resolve_identifier: Maps a raw project path to a project identifier
            (defaults to git/hash based resolution without custom names)

    Returns:
        SessionUsage; an empty summary when the log file is missing
    """
    log_path = Path(log_path)
    session_id = session_id_from_path(log_path)

    if not log_path.is_file():
        logger.debug("Usage log not found: %s", log_path)
        return empty_session_usage(session_id, project_path or "")

    raw_project_path = project_path or decode_project_dir(log_path.parent.name)
    resolve = resolve_identifier or resolve_project_identifier

    scans = [_scan_file(log_path)]
    scans.extend(_scan_file(p) for p in find_subtask_files(log_path))

    records: List[UsageRecord] = []
    timestamps: List[datetime] = []
    skipped = 0
    for scan in scans:
        records.extend(scan.records)
        timestamps.extend(scan.timestamps)
        skipped += scan.skipped

    totals = TokenCounts()
    breakdown: Dict[str, int] = {}
    for record in records:
        totals = totals + record.counts
        breakdown[record.model] = breakdown.get(record.model, 0) + record.total_tokens

    if timestamps:
        started_at, ended_at = min(timestamps), max(timestamps)
    else:
        started_at, ended_at = _file_times(log_path)

    return SessionUsage(
        session_id=session_id,
        project_path=raw_project_path,
        project_identifier=resolve(raw_project_path),
        records=records,
        totals=totals,
        model_breakdown=breakdown,
        primary_model=_primary_model(breakdown),
        started_at=started_at,
        ended_at=ended_at,
        skipped_lines=skipped,
    )


def find_log_path(
    session_id: str,
    projects_dir: Path,
    project_path: Optional[str] = None
) -> Optional[Path]:
    """Locate a session's log, trying the project's own directory first."""
    file_name = f"{session_id}{LOG_SUFFIX}"
    if project_path:
        candidate = projects_dir / encode_project_path(project_path) / file_name
        if candidate.is_file():
            return candidate

    for project_dir in _project_dirs(projects_dir):
        candidate = project_dir / file_name
        if candidate.is_file():
            return candidate
    return None


def find_all_logs(projects_dir: Path) -> List[Path]:
    """Every primary session log across all projects."""
    logs: List[Path] = []
    for project_dir in _project_dirs(projects_dir):
        logs.extend(_logs_in(project_dir))
    return logs


def find_logs_for_project(project_path: str, projects_dir: Path) -> List[Path]:
    return _logs_in(projects_dir / encode_project_path(project_path))


def _project_dirs(projects_dir: Path) -> Iterator[Path]:
    if not projects_dir.is_dir():
        return iter(())
    try:
        return iter(sorted(p for p in projects_dir.iterdir() if p.is_dir()))
    except OSError:
        return iter(())


def _logs_in(project_dir: Path) -> List[Path]:
    if not project_dir.is_dir():
        return []
    try:
        return sorted(p for p in project_dir.iterdir() if p.is_file() and p.suffix == LOG_SUFFIX)
    except OSError:
        return []
