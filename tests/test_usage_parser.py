"""
Unit tests for usage log parsing.

Tests line classification, deduplication, sub-task logs and session
aggregation.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from carbon_tracker.core.usage_parser import (
    ParsedUsage,
    Skip,
    find_all_logs,
    find_log_path,
    find_logs_for_project,
    parse_line,
    parse_session,
    parse_timestamp,
    session_id_from_path,
)

SONNET = "claude-sonnet-4-20250514"
OPUS = "claude-opus-4-20250514"


def _assistant(uuid=None, model=SONNET, input_tokens=100, output_tokens=50,
               cache_creation=0, cache_read=0, timestamp="2025-01-15T10:00:00Z",
               parent=None):
    entry = {
        "type": "assistant",
        "timestamp": timestamp,
        "message": {
            "model": model,
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_creation_input_tokens": cache_creation,
                "cache_read_input_tokens": cache_read,
            },
        },
    }
    if uuid is not None:
        entry["uuid"] = uuid
    if parent is not None:
        entry["parentMessageId"] = parent
    return json.dumps(entry)


def _write_log(path: Path, lines) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _fixed_identifier(raw_path: str) -> str:
    return "test_project"


class TestParseLine:
    """Test classification of single log lines."""

    def test_assistant_line_with_usage(self):
        result = parse_line(_assistant(uuid="u1", cache_creation=10, cache_read=20))

        assert isinstance(result, ParsedUsage)
        record = result.record
        assert record.request_id == "u1"
        assert record.model == SONNET
        assert record.input_tokens == 100
        assert record.output_tokens == 50
        assert record.cache_creation_tokens == 10
        assert record.cache_read_tokens == 20
        assert record.total_tokens == 180
        assert record.timestamp == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_invalid_json_skipped(self):
        result = parse_line("{not json")

        assert isinstance(result, Skip)
        assert result.reason == "invalid json"

    def test_schema_mismatch_skipped(self):
        """A line whose 'type' is missing does not match the schema."""
        result = parse_line(json.dumps({"message": {}}))

        assert isinstance(result, Skip)
        assert result.reason == "schema mismatch"

    def test_user_turn_skipped_with_timestamp(self):
        result = parse_line(json.dumps({"type": "user", "timestamp": "2025-01-15T09:00:00Z"}))

        assert isinstance(result, Skip)
        assert result.reason == "not an assistant turn"
        assert result.timestamp == datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

    def test_assistant_without_usage_skipped(self):
        result = parse_line(json.dumps({"type": "assistant", "message": {"model": SONNET}}))

        assert isinstance(result, Skip)
        assert result.reason == "no usage payload"

    def test_missing_counts_default_to_zero(self):
        line = json.dumps({"type": "assistant", "uuid": "u1", "message": {"usage": {"output_tokens": 7}}})
        result = parse_line(line)

        assert isinstance(result, ParsedUsage)
        assert result.record.input_tokens == 0
        assert result.record.output_tokens == 7
        assert result.record.model == "unknown"

    def test_request_id_falls_back_to_parent(self):
        result = parse_line(_assistant(parent="p1"))
        assert result.record.request_id == "p1"

    def test_request_id_synthesized_when_absent(self):
        first = parse_line(_assistant())
        second = parse_line(_assistant())

        assert first.record.request_id != second.record.request_id


class TestParseTimestamp:
    """Test timestamp normalization."""

    def test_naive_timestamp_is_utc(self):
        assert parse_timestamp("2025-01-15T10:00:00") == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_invalid_timestamp_is_none(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None


class TestParseSession:
    """Test session aggregation across log files."""

    def setup_method(self):
        self._temp = tempfile.TemporaryDirectory()
        self.projects_dir = Path(self._temp.name) / "projects"

    def teardown_method(self):
        self._temp.cleanup()

    def _log_path(self, session_id="session-1", project_dir="-home-dev-app") -> Path:
        return self.projects_dir / project_dir / f"{session_id}.jsonl"

    def test_duplicate_requests_counted_once(self):
        """Streaming writes the same uuid several times; only the first counts."""
        log = _write_log(self._log_path(), [
            _assistant(uuid="u1", input_tokens=100, output_tokens=10),
            _assistant(uuid="u1", input_tokens=100, output_tokens=50),
            _assistant(uuid="u2", input_tokens=200, output_tokens=20),
        ])

        usage = parse_session(log, "/home/dev/app", resolve_identifier=_fixed_identifier)

        assert len(usage.records) == 2
        assert usage.totals.input_tokens == 300
        assert usage.totals.output_tokens == 30
        assert usage.totals.total_tokens == 330

    def test_malformed_lines_counted_and_skipped(self):
        log = _write_log(self._log_path(), [
            "{broken",
            _assistant(uuid="u1"),
            json.dumps({"no_type": True}),
            "",
        ])

        usage = parse_session(log, "/home/dev/app", resolve_identifier=_fixed_identifier)

        assert len(usage.records) == 1
        assert usage.skipped_lines == 2

    def test_subtask_logs_included(self):
        """Sub-task logs add their usage; each file has its own dedup scope."""
        log = _write_log(self._log_path(), [_assistant(uuid="u1", input_tokens=100, output_tokens=0)])
        subtask_dir = log.parent / "session-1" / "subagents"
        _write_log(subtask_dir / "agent-a.jsonl", [
            _assistant(uuid="u1", input_tokens=10, output_tokens=0),
            _assistant(uuid="u1", input_tokens=10, output_tokens=0),
        ])
        _write_log(subtask_dir / "notes.jsonl", [_assistant(uuid="x", input_tokens=999)])

        usage = parse_session(log, "/home/dev/app", resolve_identifier=_fixed_identifier)

        assert usage.totals.input_tokens == 110
        assert len(usage.records) == 2

    def test_missing_file_returns_empty_summary(self):
        usage = parse_session(self._log_path("ghost"))

        assert usage.session_id == "ghost"
        assert usage.totals.total_tokens == 0
        assert usage.records == []
        assert usage.primary_model == "unknown"

    def test_primary_model_by_token_share(self):
        log = _write_log(self._log_path(), [
            _assistant(uuid="u1", model=SONNET, input_tokens=100, output_tokens=0),
            _assistant(uuid="u2", model=OPUS, input_tokens=500, output_tokens=0),
            _assistant(uuid="u3", model=SONNET, input_tokens=100, output_tokens=0),
        ])

        usage = parse_session(log, "/home/dev/app", resolve_identifier=_fixed_identifier)

        assert usage.primary_model == OPUS
        assert usage.model_breakdown == {SONNET: 200, OPUS: 500}

    def test_primary_model_tie_goes_to_first_seen(self):
        log = _write_log(self._log_path(), [
            _assistant(uuid="u1", model=OPUS, input_tokens=100, output_tokens=0),
            _assistant(uuid="u2", model=SONNET, input_tokens=100, output_tokens=0),
        ])

        usage = parse_session(log, "/home/dev/app", resolve_identifier=_fixed_identifier)

        assert usage.primary_model == OPUS

    def test_start_and_end_from_timestamps(self):
        log = _write_log(self._log_path(), [
            json.dumps({"type": "user", "timestamp": "2025-01-15T09:00:00Z"}),
            _assistant(uuid="u1", timestamp="2025-01-15T09:30:00Z"),
            _assistant(uuid="u2", timestamp="2025-01-15T11:00:00Z"),
        ])

        usage = parse_session(log, "/home/dev/app", resolve_identifier=_fixed_identifier)

        assert usage.started_at == datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)
        assert usage.ended_at == datetime(2025, 1, 15, 11, 0, tzinfo=timezone.utc)

    def test_times_fall_back_to_file_times(self):
        log = _write_log(self._log_path(), [_assistant(uuid="u1", timestamp=None)])

        usage = parse_session(log, "/home/dev/app", resolve_identifier=_fixed_identifier)

        assert usage.started_at.tzinfo is not None
        assert usage.started_at <= usage.ended_at

    def test_supplied_project_path_and_identifier(self):
        log = _write_log(self._log_path(), [_assistant(uuid="u1")])

        usage = parse_session(log, "/home/dev/app", resolve_identifier=_fixed_identifier)

        assert usage.project_path == "/home/dev/app"
        assert usage.project_identifier == "test_project"

    def test_project_path_decoded_from_directory(self):
        """Without a supplied path the encoded directory name is decoded."""
        log = _write_log(self._log_path(project_dir="-no-such-dir"), [_assistant(uuid="u1")])

        usage = parse_session(log, resolve_identifier=_fixed_identifier)

        assert usage.project_path == "-no-such-dir"


class TestLogDiscovery:
    """Test locating session logs on disk."""

    def test_find_log_path_prefers_project_dir(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            projects_dir = Path(temp_dir)
            own = _write_log(projects_dir / "-home-dev-app" / "s1.jsonl", ["{}"])
            _write_log(projects_dir / "-home-dev-other" / "s1.jsonl", ["{}"])

            assert find_log_path("s1", projects_dir, "/home/dev/app") == own

    def test_find_log_path_scans_all_projects(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            projects_dir = Path(temp_dir)
            log = _write_log(projects_dir / "-home-dev-other" / "s2.jsonl", ["{}"])

            assert find_log_path("s2", projects_dir) == log
            assert find_log_path("missing", projects_dir) is None

    def test_find_all_and_project_logs(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            projects_dir = Path(temp_dir)
            a = _write_log(projects_dir / "-home-dev-app" / "s1.jsonl", ["{}"])
            b = _write_log(projects_dir / "-home-dev-other" / "s2.jsonl", ["{}"])
            _write_log(projects_dir / "-home-dev-app" / "s1" / "subagents" / "agent-1.jsonl", ["{}"])

            assert find_all_logs(projects_dir) == [a, b]
            assert find_logs_for_project("/home/dev/app", projects_dir) == [a]
            assert find_all_logs(projects_dir / "missing") == []

    def test_session_id_from_path(self):
        assert session_id_from_path(Path(os.path.join("x", "abc-123.jsonl"))) == "abc-123"
