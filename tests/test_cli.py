"""
Tests for the CLI interface.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest
from rich.console import Console
from typer.testing import CliRunner

from llm_meter.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL, _render_state
from llm_meter.config.credentials import InMemoryCredentialStore
from llm_meter.config.loader import AppConfig, ProviderSettings, config_path, db_path, load_config, save_config
from llm_meter.core.service import MeterService
from llm_meter.storage.models import CostRecord
from llm_meter.storage.repository import SnapshotRepository
from llm_meter.ui.state import (
    AppState,
    ConfirmAction,
    FormMode,
    ProviderDraft,
    open_provider_form,
    request_confirm,
    show_error,
)

runner = CliRunner()


@pytest.fixture
def app_home(tmp_path, monkeypatch):
    """Point the application home at a temporary directory."""
    monkeypatch.setenv("LLM_METER_HOME", str(tmp_path))
    return tmp_path


@pytest.fixture
def credentials():
    """Replace the keyring with an in-memory store."""
    store = InMemoryCredentialStore()
    with patch('llm_meter.cli.main.get_credentials', return_value=store):
        yield store


def mock_service(handler):
    """Patch the CLI service factory to use a mock HTTP transport."""
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return patch(
        'llm_meter.cli.main.get_service',
        side_effect=lambda creds: MeterService(creds, client=client),
    )


def seed_costs(rows):
    SnapshotRepository(db_path()).replace_snapshot(
        datetime(2000, 1, 1, tzinfo=timezone.utc), [], [], rows
    )


class TestInit:
    """Test the init command."""

    def test_init_creates_directories(self, app_home):
        result = runner.invoke(app, ["init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Initialized llm-meter config and data directories." in result.output
        assert config_path().exists()
        assert db_path().exists()

    def test_init_is_idempotent(self, app_home):
        runner.invoke(app, ["init"])
        save_config(AppConfig(refresh_seconds=15))

        result = runner.invoke(app, ["init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert load_config().refresh_seconds == 15


class TestAddProvider:
    """Test the add-provider command."""

    def test_add_provider_stores_key_and_enables(self, app_home, credentials):
        result = runner.invoke(app, [
            "add-provider", "OpenAI", "--api-key", "sk-new", "--organization-id", "org-7",
        ])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Provider 'openai' configured." in result.output
        assert credentials.get("openai") == "sk-new"
        config = load_config()
        assert config.enabled_providers == ["openai"]
        assert config.settings_for("openai").organization_id == "org-7"

    def test_unknown_provider_fails(self, app_home, credentials):
        result = runner.invoke(app, ["add-provider", "mistral", "--api-key", "k"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unsupported provider 'mistral'." in result.output
        assert not credentials.has("mistral")


class TestRefresh:
    """Test the refresh command."""

    def test_invalid_window_fails(self, app_home, credentials):
        result = runner.invoke(app, ["refresh", "--window", "2d"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unsupported window. Use 1d, 7d, or 30d." in result.output

    def test_refresh_stores_usage(self, app_home, credentials):
        runner.invoke(app, ["init"])
        save_config(AppConfig(enabled_providers=["openai"]))
        credentials.set("openai", "sk-openai")
        ts = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())
        body = {"data": [{"model": "gpt-4o", "input_tokens": 100, "output_tokens": 10, "start_time": ts}]}

        with mock_service(lambda request: httpx.Response(200, json=body)):
            result = runner.invoke(app, ["refresh", "--window", "1d"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Fetched 1 usage records and 1 cost rows" in result.output
        assert len(SnapshotRepository(db_path()).export_all_cost()) == 1

    def test_refresh_without_key_fails(self, app_home, credentials):
        save_config(AppConfig(enabled_providers=["anthropic"]))

        with mock_service(lambda request: httpx.Response(200, json={"data": []})):
            result = runner.invoke(app, ["refresh"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "No API key found for provider 'anthropic'" in result.output

    def test_refresh_upstream_error_fails(self, app_home, credentials):
        save_config(AppConfig(enabled_providers=["openai"]))
        credentials.set("openai", "sk-openai")

        with mock_service(lambda request: httpx.Response(502, json={})):
            result = runner.invoke(app, ["refresh"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "HTTP status 502" in result.output


class TestTestCommand:
    """Test the connection test command."""

    def test_successful_connection(self, app_home, credentials):
        credentials.set("anthropic", "sk-ant")

        with mock_service(lambda request: httpx.Response(200, json={})):
            result = runner.invoke(app, ["test", "anthropic"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "responded with status 200" in result.output

    def test_rejected_connection(self, app_home, credentials):
        credentials.set("openai", "sk-bad")

        with mock_service(lambda request: httpx.Response(401, json={})):
            result = runner.invoke(app, ["test", "openai"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Connection test failed for 'openai'" in result.output


class TestExport:
    """Test the export command."""

    def _rows(self):
        return [
            CostRecord("openai", "gpt-4o", 0.5, 0.25, 0.75, datetime(2024, 1, 1, tzinfo=timezone.utc)),
            CostRecord("anthropic", "claude-3-5-haiku", 0.1, 0.1, 0.2, datetime(2024, 1, 2, tzinfo=timezone.utc)),
        ]

    def test_export_json(self, app_home):
        runner.invoke(app, ["init"])
        seed_costs(self._rows())

        result = runner.invoke(app, ["export", "--format", "json"])

        assert result.exit_code == EXIT_CODE_PASS
        payload = json.loads(result.output)
        assert [row["model"] for row in payload] == ["claude-3-5-haiku", "gpt-4o"]
        assert payload[1]["total_cost"] == pytest.approx(0.75)

    def test_export_csv(self, app_home):
        runner.invoke(app, ["init"])
        seed_costs(self._rows())

        result = runner.invoke(app, ["export", "--format", "CSV"])

        assert result.exit_code == EXIT_CODE_PASS
        lines = result.output.splitlines()
        assert lines[0] == "provider,model,input_cost,output_cost,total_cost,currency,timestamp"
        assert lines[1].startswith("anthropic,claude-3-5-haiku,0.10000000,")
        assert len(lines) == 3

    def test_export_empty_store(self, app_home):
        result = runner.invoke(app, ["export"])

        assert result.exit_code == EXIT_CODE_PASS
        assert json.loads(result.output) == []

    def test_unsupported_format_fails(self, app_home):
        result = runner.invoke(app, ["export", "--format", "xml"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unsupported export format. Use json or csv" in result.output


class TestSummary:
    """Test the summary command."""

    def test_summary_shows_totals(self, app_home):
        runner.invoke(app, ["init"])
        seed_costs([
            CostRecord("openai", "gpt-4o", 1.0, 0.5, 1.5, datetime.now(timezone.utc) - timedelta(hours=1)),
        ])

        result = runner.invoke(app, ["summary", "--window", "1d"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "$1.5000" in result.output
        assert "gpt-4o" in result.output


class TestDashboard:
    """Test the dashboard command with scripted stdin."""

    def test_dashboard_quits_on_q(self, app_home, credentials):
        with mock_service(lambda request: httpx.Response(200, json={"data": []})):
            result = runner.invoke(app, ["dashboard"], input="q\n")

        assert result.exit_code == EXIT_CODE_PASS


class TestUnwritableHome:
    """Test filesystem errors during setup are reported, not raised."""

    @pytest.mark.parametrize("args", [["refresh"], ["summary"], ["export"], ["dashboard"]])
    def test_os_error_exits_with_message(self, app_home, credentials, args):
        with patch('llm_meter.cli.main.ensure_initialized', side_effect=PermissionError("Permission denied")):
            result = runner.invoke(app, args, input="q\n")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error:" in result.output
        assert "Permission denied" in result.output


def render_text(state, config):
    console = Console(record=True, width=160)
    console.print(_render_state(state, config))
    return console.export_text()


class TestRenderState:
    """Test each dashboard screen renders its own content."""

    def test_manager_lists_providers(self):
        state = AppState()
        config = AppConfig(enabled_providers=["openai"], provider_settings={"custom": ProviderSettings()})
        text = render_text(state, config)

        assert "custom" in text
        assert "anthropic" in text
        assert "p providers" in text

    def test_form_masks_api_key(self):
        state = AppState()
        open_provider_form(state, FormMode.add(), ProviderDraft(name="openai", api_key="sk-secret-value"))
        text = render_text(state, AppConfig())

        assert "Add provider" in text
        assert "sk-secret-value" not in text
        assert "s save" in text

    def test_error_and_confirm_dialogs(self):
        state = AppState()
        show_error(state, "Base URL is not valid")
        assert "Base URL is not valid" in render_text(state, AppConfig())

        state = AppState()
        request_confirm(state, ConfirmAction.delete_key("openai"))
        assert "Delete key for 'openai'?" in render_text(state, AppConfig())
