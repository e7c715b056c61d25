"""
Tests for the CLI interface.
"""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import respx
from typer.testing import CliRunner

from carbon_tracker.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from carbon_tracker.config.loader import ENV_CLAUDE_DIR, ApiConfig, Settings
from carbon_tracker.core.project_identifier import short_hash
from carbon_tracker.storage.models import AuthConfig, SessionAccountingRow
from carbon_tracker.storage.repository import open_store
from carbon_tracker.sync.orchestrator import enable_sync

runner = CliRunner()

GRAPHQL_URL = ApiConfig().graphql_url


@pytest.fixture
def claude_dir():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


def _env(claude_dir: Path) -> dict:
    return {ENV_CLAUDE_DIR: str(claude_dir)}


def _settings(claude_dir: Path) -> Settings:
    return Settings(claude_dir=claude_dir)


def _row(session_id="s1", project_identifier="local_abc", co2_grams=1.5):
    from datetime import datetime, timezone
    now = datetime.now(timezone.utc)
    return SessionAccountingRow(
        session_id=session_id,
        project_path="/home/dev/app",
        project_identifier=project_identifier,
        input_tokens=600,
        output_tokens=400,
        cache_creation_tokens=0,
        cache_read_tokens=0,
        total_tokens=1000,
        energy_wh=5.0,
        co2_grams=co2_grams,
        primary_model="claude-sonnet-4-20250514",
        created_at=now,
        updated_at=now,
    )


def _write_log(claude_dir: Path, session_id: str) -> Path:
    log = claude_dir / "projects" / "-home-dev-app" / f"{session_id}.jsonl"
    log.parent.mkdir(parents=True, exist_ok=True)
    log.write_text(json.dumps({
        "type": "assistant",
        "uuid": "u1",
        "timestamp": "2025-01-15T10:00:00Z",
        "message": {
            "model": "claude-sonnet-4-20250514",
            "usage": {"input_tokens": 600, "output_tokens": 400},
        },
    }) + "\n", encoding="utf-8")
    return log


class TestInit:
    """Test database initialization."""

    def test_init_creates_database(self, claude_dir):
        result = runner.invoke(app, ["init"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert _settings(claude_dir).database_path.exists()

    def test_invalid_config_fails(self, claude_dir):
        result = runner.invoke(app, ["--config", str(claude_dir / "missing.yaml"), "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output


class TestRecordHook:
    """Test the stop hook."""

    def test_records_session_from_stdin(self, claude_dir):
        log = _write_log(claude_dir, "s1")
        payload = json.dumps({"session_id": "s1", "transcript_path": str(log), "cwd": "/home/dev/app"})

        result = runner.invoke(app, ["record"], input=payload, env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        with open_store(_settings(claude_dir).database_path) as store:
            stored = store.get_session("s1")
        assert stored.total_tokens == 1000
        assert stored.project_path == "/home/dev/app"

    def test_empty_input_exits_zero(self, claude_dir):
        result = runner.invoke(app, ["record"], input="", env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS

    def test_malformed_input_exits_zero(self, claude_dir):
        result = runner.invoke(app, ["record"], input="{not json", env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS

    def test_internal_failure_exits_zero(self, claude_dir):
        payload = json.dumps({"session_id": "s1"})
        with patch("carbon_tracker.cli.main.record_session", side_effect=RuntimeError("boom")):
            result = runner.invoke(app, ["record"], input=payload, env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS

    def test_syncs_recorded_session_when_enabled(self, claude_dir):
        log = _write_log(claude_dir, "s1")
        with open_store(_settings(claude_dir).database_path) as store:
            enable_sync(store, "Ada")
        payload = json.dumps({"session_id": "s1", "transcript_path": str(log)})

        with respx.mock(assert_all_called=False) as router:
            route = router.post(GRAPHQL_URL).respond(json={"data": {"upsertClaudeCodeSession": {"id": "1"}}})
            result = runner.invoke(app, ["record"], input=payload, env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert route.called
        with open_store(_settings(claude_dir).database_path) as store:
            assert store.get_session("s1").needs_sync is False


class TestStatusAndReport:
    """Test read-only commands."""

    def test_status_without_database(self, claude_dir):
        result = runner.invoke(app, ["status"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert "No sessions recorded yet" in result.output
        assert not _settings(claude_dir).database_path.exists()

    def test_status_with_sessions(self, claude_dir):
        with open_store(_settings(claude_dir).database_path) as store:
            store.upsert_session(_row("a"))
            store.upsert_session(_row("b"))

        result = runner.invoke(app, ["status"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert "Sessions: 2" in result.output
        assert "CO2: 3.00g" in result.output
        assert "Sync: disabled" in result.output

    def test_report_tables(self, claude_dir):
        with open_store(_settings(claude_dir).database_path) as store:
            store.upsert_session(_row("a", project_identifier="acme_widgets_1"))

        result = runner.invoke(app, ["report", "--days", "3"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert "Daily emissions" in result.output
        assert "acme_widgets_1" in result.output

    def test_report_empty(self, claude_dir):
        result = runner.invoke(app, ["report"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert "No sessions in the last 7 day(s)" in result.output


class TestSyncCommands:
    """Test enabling and running sync."""

    def test_enable_sync_marks_existing_synced(self, claude_dir):
        with open_store(_settings(claude_dir).database_path) as store:
            store.upsert_session(_row("a"))

        result = runner.invoke(app, ["enable-sync", "--user-name", "Ada"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert "Sync enabled as \"Ada\"" in result.output
        with open_store(_settings(claude_dir).database_path) as store:
            assert store.count_unsynced_sessions() == 0

    def test_sync_not_enabled(self, claude_dir):
        result = runner.invoke(app, ["sync"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert "Sync is not enabled" in result.output

    def test_sync_uploads_pending(self, claude_dir):
        with open_store(_settings(claude_dir).database_path) as store:
            enable_sync(store, "Ada")
            store.upsert_session(_row("a"))
            store.upsert_session(_row("b"))

        with respx.mock(assert_all_called=False) as router:
            router.post(GRAPHQL_URL).respond(json={"data": {"upsertClaudeCodeSessions": [{"id": "1"}]}})
            result = runner.invoke(app, ["sync"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert "Synced 2 session(s)" in result.output

    def test_sync_authentication_failure_exits_one(self, claude_dir):
        from datetime import datetime, timedelta, timezone
        past = datetime.now(timezone.utc) - timedelta(days=1)
        with open_store(_settings(claude_dir).database_path) as store:
            enable_sync(store, "Ada")
            store.upsert_session(_row("a"))
            store.save_auth_config(AuthConfig("access", "refresh", past, past))

        result = runner.invoke(app, ["sync"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Authentication failed" in result.output

    def test_sync_session_hook_always_exits_zero(self, claude_dir):
        result = runner.invoke(app, ["sync-session"], input="{}", env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS

    def test_disable_sync(self, claude_dir):
        with open_store(_settings(claude_dir).database_path) as store:
            enable_sync(store, "Ada")

        result = runner.invoke(app, ["disable-sync"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        with open_store(_settings(claude_dir).database_path) as store:
            assert store.get_config("sync_enabled") == "false"


class TestProjectCommands:
    """Test project rename and removal."""

    def test_rename_requires_option(self, claude_dir):
        result = runner.invoke(app, ["rename-project"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_FAIL

    def test_rename_and_reset(self, claude_dir):
        project = str(claude_dir / "not-a-repo")
        local_id = f"local_{short_hash(project)}"
        with open_store(_settings(claude_dir).database_path) as store:
            store.upsert_session(_row("a", project_identifier=local_id))

        result = runner.invoke(
            app, ["rename-project", "--name", "Widgets", "--path", project], env=_env(claude_dir)
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert "Renamed project" in result.output
        with open_store(_settings(claude_dir).database_path) as store:
            assert store.get_session("a").project_identifier == f"Widgets_{short_hash(project)}"

        result = runner.invoke(app, ["rename-project", "--reset", "--path", project], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        with open_store(_settings(claude_dir).database_path) as store:
            assert store.get_session("a").project_identifier == local_id

    def test_remove_project(self, claude_dir):
        project = str(claude_dir / "not-a-repo")
        local_id = f"local_{short_hash(project)}"
        with open_store(_settings(claude_dir).database_path) as store:
            store.upsert_session(_row("a", project_identifier=local_id))
            store.upsert_session(_row("b", project_identifier="other"))

        result = runner.invoke(app, ["remove-project", "--path", project, "--yes"], env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert "Removed 1 session(s)" in result.output
        with open_store(_settings(claude_dir).database_path) as store:
            assert store.get_all_session_ids() == ["b"]


class TestStatusline:
    """Test the status bar output."""

    def _payload(self, input_tokens=0, output_tokens=0):
        return json.dumps({
            "session_id": "s1",
            "model": {"id": "claude-sonnet-4-20250514", "display_name": "Sonnet"},
            "context_window": {
                "current_usage": {"input_tokens": input_tokens, "output_tokens": output_tokens}
            },
        })

    def test_session_and_total(self, claude_dir):
        with open_store(_settings(claude_dir).database_path) as store:
            store.upsert_session(_row("a"))
            store.upsert_session(_row("b"))

        result = runner.invoke(
            app, ["statusline"], input=self._payload(600000, 400000), env=_env(claude_dir)
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert result.output.strip() == "session: 5.40g · total: 3.00g CO2"

    def test_session_without_database(self, claude_dir):
        result = runner.invoke(
            app, ["statusline"], input=self._payload(600000, 400000), env=_env(claude_dir)
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert result.output.strip() == "session: 5.40g CO2"
        assert not _settings(claude_dir).database_path.exists()

    def test_no_tokens_shows_total_only(self, claude_dir):
        with open_store(_settings(claude_dir).database_path) as store:
            store.upsert_session(_row("a"))

        result = runner.invoke(app, ["statusline"], input=self._payload(), env=_env(claude_dir))

        assert result.output.strip() == "session: 0g · total: 1.50g CO2"

    def test_nothing_to_show_prints_empty_line(self, claude_dir):
        result = runner.invoke(app, ["statusline"], input=self._payload(), env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert result.output.strip() == ""

    def test_malformed_input_prints_empty_line(self, claude_dir):
        result = runner.invoke(app, ["statusline"], input="{not json", env=_env(claude_dir))

        assert result.exit_code == EXIT_CODE_PASS
        assert result.output.strip() == ""
