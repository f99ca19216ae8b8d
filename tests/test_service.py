"""
Tests for the refresh service.

Upstream APIs are served by httpx.MockTransport and results are written to a
temporary SQLite database.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from llm_meter.config.credentials import InMemoryCredentialStore
from llm_meter.config.loader import AppConfig, PricingOverride, ProviderSettings
from llm_meter.core.errors import (
    ConfigurationError,
    CredentialNotFoundError,
    CredentialRejectedError,
    NetworkError,
)
from llm_meter.core.service import MeterService
from llm_meter.storage.models import TimeWindow
from llm_meter.storage.repository import SnapshotRepository

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
ITEM_TS = int((NOW - timedelta(hours=2)).timestamp())


def upstream(responses, requests=None):
    """Mock transport answering by host; values are (status, json body)."""
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        status, body = responses[request.url.host]
        return httpx.Response(status, json=body)
    return httpx.Client(transport=httpx.MockTransport(handler))


OPENAI_BODY = {"data": [
    {"model": "gpt-4o", "input_tokens": 1000, "output_tokens": 500, "start_time": ITEM_TS},
    {"model": "whisper-1", "input_tokens": 10, "output_tokens": 0, "start_time": ITEM_TS},
]}
ANTHROPIC_BODY = {"data": [
    {"model": "claude-3-5-haiku", "input_tokens": 2000, "output_tokens": 1000, "timestamp": ITEM_TS},
]}


class TestRefresh:
    """Test MeterService.refresh end to end."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.storage = SnapshotRepository(os.path.join(self.temp_dir, "snapshots.sqlite"))
        self.credentials = InMemoryCredentialStore({"openai": "sk-openai", "anthropic": "sk-ant"})

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _service(self, responses, requests=None) -> MeterService:
        return MeterService(self.credentials, client=upstream(responses, requests), now=lambda: NOW)

    def test_refresh_fetches_prices_and_stores(self):
        """Test all enabled providers are fetched, priced and stored."""
        config = AppConfig(enabled_providers=["openai", "anthropic"])
        service = self._service({
            "api.openai.com": (200, OPENAI_BODY),
            "api.anthropic.com": (200, ANTHROPIC_BODY),
        })

        snapshot = service.refresh(config, TimeWindow.ONE_DAY, self.storage)

        assert snapshot.fetched_at == NOW
        assert [r.provider for r in snapshot.usage] == ["openai", "openai", "anthropic"]
        # whisper-1 has no price, so it is recorded as usage only
        assert [c.model for c in snapshot.cost] == ["gpt-4o", "claude-3-5-haiku"]

        summary = self.storage.aggregate_since(NOW - timedelta(days=1))
        assert summary.total_tokens == 1000 + 500 + 10 + 2000 + 1000
        expected_openai = 1000 / 1e6 * 5.0 + 500 / 1e6 * 15.0
        expected_anthropic = 2000 / 1e6 * 0.80 + 1000 / 1e6 * 4.0
        assert summary.total_cost == pytest.approx(expected_openai + expected_anthropic)

    def test_refresh_twice_does_not_double_count(self):
        """Test repeated refreshes of the same window replace stored rows."""
        config = AppConfig(enabled_providers=["openai"])
        service = self._service({"api.openai.com": (200, OPENAI_BODY)})

        service.refresh(config, TimeWindow.ONE_DAY, self.storage)
        service.refresh(config, TimeWindow.ONE_DAY, self.storage)

        summary = self.storage.aggregate_since(NOW - timedelta(days=1))
        assert summary.total_tokens == 1510
        assert len(self.storage.export_all_cost()) == 1

    def test_disabled_providers_are_skipped(self):
        """Test only enabled providers are requested."""
        requests = []
        config = AppConfig(enabled_providers=["anthropic"])
        service = self._service({"api.anthropic.com": (200, ANTHROPIC_BODY)}, requests)

        snapshot = service.refresh(config, TimeWindow.ONE_DAY, self.storage)

        assert {r.url.host for r in requests} == {"api.anthropic.com"}
        assert all(r.provider == "anthropic" for r in snapshot.usage)

    def test_refresh_keeps_other_provider_rows(self):
        """Test a refresh only replaces rows of refreshed providers."""
        both = AppConfig(enabled_providers=["openai", "anthropic"])
        responses = {
            "api.openai.com": (200, OPENAI_BODY),
            "api.anthropic.com": (200, ANTHROPIC_BODY),
        }
        self._service(responses).refresh(both, TimeWindow.ONE_DAY, self.storage)

        only_openai = AppConfig(enabled_providers=["openai"])
        self._service({"api.openai.com": (200, {"data": []})}).refresh(
            only_openai, TimeWindow.ONE_DAY, self.storage
        )

        summary = self.storage.aggregate_since(NOW - timedelta(days=1))
        assert summary.total_tokens == 3000
        assert [p for p, _ in summary.by_provider] == ["anthropic"]

    def test_failure_aborts_before_storage(self):
        """Test one failing provider leaves stored data untouched."""
        config = AppConfig(enabled_providers=["openai", "anthropic"])
        self._service({
            "api.openai.com": (200, OPENAI_BODY),
            "api.anthropic.com": (200, ANTHROPIC_BODY),
        }).refresh(config, TimeWindow.ONE_DAY, self.storage)
        before = self.storage.aggregate_since(NOW - timedelta(days=1))

        failing = self._service({
            "api.openai.com": (200, {"data": []}),
            "api.anthropic.com": (500, {"error": "down"}),
        })
        with pytest.raises(NetworkError):
            failing.refresh(config, TimeWindow.ONE_DAY, self.storage)

        assert self.storage.aggregate_since(NOW - timedelta(days=1)) == before

    def test_missing_key_is_configuration_error(self):
        """Test an enabled provider without a key aborts the refresh."""
        self.credentials.delete("anthropic")
        config = AppConfig(enabled_providers=["anthropic"])
        service = self._service({"api.anthropic.com": (200, ANTHROPIC_BODY)})

        with pytest.raises(CredentialNotFoundError, match="No API key found for provider 'anthropic'"):
            service.refresh(config, TimeWindow.ONE_DAY, self.storage)

    def test_no_enabled_providers_writes_nothing(self):
        service = self._service({})
        snapshot = service.refresh(AppConfig(), TimeWindow.SEVEN_DAYS, self.storage)
        assert snapshot.usage == []
        assert snapshot.cost == []

    def test_pricing_overrides_are_used(self):
        config = AppConfig(
            enabled_providers=["openai"],
            pricing_overrides=[PricingOverride("openai", "whisper", 1000.0, 0.0)],
        )
        service = self._service({"api.openai.com": (200, OPENAI_BODY)})

        snapshot = service.refresh(config, TimeWindow.ONE_DAY, self.storage)

        assert [c.model for c in snapshot.cost] == ["gpt-4o", "whisper-1"]
        assert snapshot.cost[1].total_cost == pytest.approx(0.01)

    def test_provider_base_url_is_honoured(self):
        requests = []
        config = AppConfig(
            enabled_providers=["openai"],
            provider_settings={"openai": ProviderSettings(base_url="http://proxy.local/usage")},
        )
        service = self._service({"proxy.local": (200, {"data": []})}, requests)

        service.refresh(config, TimeWindow.ONE_DAY, self.storage)

        assert str(requests[0].url) == "http://proxy.local/usage"


class TestConnectionTest:
    """Test MeterService.test_provider_connection."""

    def test_success_reports_status_and_duration(self):
        client = upstream({"api.openai.com": (200, {"data": []})})
        with MeterService(InMemoryCredentialStore(), client=client) as service:
            report = service.test_provider_connection("OpenAI", "sk-x", ProviderSettings())
        assert report.status_code == 200
        assert report.duration_ms >= 0

    def test_unknown_provider_raises(self):
        service = MeterService(InMemoryCredentialStore(), client=upstream({}))
        with pytest.raises(ConfigurationError, match="Unsupported provider"):
            service.test_provider_connection("mistral", "sk-x", ProviderSettings())

    def test_rejected_key(self):
        service = MeterService(InMemoryCredentialStore(), client=upstream({"api.anthropic.com": (401, {})}))
        with pytest.raises(CredentialRejectedError):
            service.test_provider_connection("anthropic", "bad", ProviderSettings())

    def test_connection_test_does_not_need_stored_key(self):
        """Test the connection test uses the key passed in, not the credential store."""
        requests = []
        client = upstream({"api.openai.com": (200, {})}, requests)
        MeterService(InMemoryCredentialStore(), client=client).test_provider_connection(
            "openai", "sk-draft", ProviderSettings()
        )
        assert requests[0].headers["Authorization"] == "Bearer sk-draft"

    def test_injected_client_is_not_closed(self):
        client = upstream({})
        with MeterService(InMemoryCredentialStore(), client=client):
            pass
        assert not client.is_closed
