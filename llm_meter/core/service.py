"""
Refresh orchestration.

MeterService pulls usage from every enabled provider, prices it and writes
it through the repository's atomic replace. It also runs one-off
connection tests that never touch storage.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import httpx

from llm_meter.config.loader import AppConfig, ProviderSettings, normalize_provider_name
from llm_meter.providers import ADAPTERS, ProviderContext, get_adapter
from llm_meter.storage.models import (
    CostRecord,
    ProviderTestReport,
    Snapshot,
    TimeWindow,
    UsageRecord,
)
from llm_meter.storage.repository import SnapshotRepository

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 10.0
TOTAL_TIMEOUT_SECONDS = 30.0
TEST_WINDOW = TimeWindow.SEVEN_DAYS


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MeterService:
    """Fetch, price and store usage for the configured providers.

    Args:
        credentials: Store with ``get(provider) -> str``
        client: HTTP client; one with the standard timeouts is created if omitted
        now: Clock returning tz-aware UTC datetimes
    """

    def __init__(
        self,
        credentials,
        client: Optional[httpx.Client] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.credentials = credentials
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(TOTAL_TIMEOUT_SECONDS, connect=CONNECT_TIMEOUT_SECONDS)
        )
        self.now = now

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "MeterService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def refresh(
        self,
        config: AppConfig,
        window: TimeWindow,
        storage: SnapshotRepository,
    ) -> Snapshot:
        """Run one full refresh.

        Providers are processed in declared adapter order. Any fetch or
        credential failure aborts the whole refresh before storage is
        touched, so the previously stored window stays intact.

        Args:
            config: Configuration snapshot; never mutated
            window: Look-back window to fetch and replace
            storage: Repository receiving the atomic replace

        Returns:
            Snapshot of the usage and cost rows written

        Raises:
            ConfigurationError: If an enabled provider has no API key
            NetworkError: If any provider request fails
            StorageError: If the replace transaction fails
        """
        refresh_end = self.now()
        since = refresh_end - timedelta(hours=window.hours)
        usage: List[UsageRecord] = []
        cost: List[CostRecord] = []
        refreshed: List[str] = []

        for adapter in ADAPTERS:
            if not config.is_enabled(adapter.name):
                continue

            ctx = ProviderContext(
                api_key=self.credentials.get(adapter.name),
                settings=config.settings_for(adapter.name),
                window=window,
                refresh_end=refresh_end,
            )
            rows = adapter.fetch_usage(self.client, ctx)
            rows_cost = adapter.derive_costs(rows, config.pricing_overrides)
            logger.info(
                "Fetched %d usage rows (%d priced) from %s",
                len(rows), len(rows_cost), adapter.name,
            )

            usage.extend(rows)
            cost.extend(rows_cost)
            refreshed.append(adapter.name)

        storage.replace_snapshot(since, refreshed, usage, cost)

        return Snapshot(usage=usage, cost=cost, fetched_at=refresh_end)

    def test_provider_connection(
        self,
        provider: str,
        api_key: str,
        settings: ProviderSettings,
    ) -> ProviderTestReport:
        """Test one provider with the given key and settings.

        Raises:
            ConfigurationError: If the provider is unknown
            CredentialRejectedError: If the provider answers 401/403
            NetworkError: On transport failure or any other non-2xx status
        """
        adapter = get_adapter(normalize_provider_name(provider))
        ctx = ProviderContext(
            api_key=api_key,
            settings=settings,
            window=TEST_WINDOW,
            refresh_end=self.now(),
        )
        started = time.monotonic()
        status_code = adapter.test_connection(self.client, ctx)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Connection test for %s returned %s in %d ms", adapter.name, status_code, duration_ms)
        return ProviderTestReport(status_code=status_code, duration_ms=duration_ms)
