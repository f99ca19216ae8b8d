"""
Provider adapter contract.

Every upstream API is wrapped by a ProviderAdapter that hides its URL
layout, auth headers and field naming behind the canonical UsageRecord.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from llm_meter.config.loader import PricingOverride, ProviderSettings
from llm_meter.core.errors import (
    ConfigurationError,
    CredentialRejectedError,
    NetworkError,
    UpstreamDataError,
)
from llm_meter.core.pricing import cost_for_usage, resolve_pricing
from llm_meter.storage.models import CostRecord, TimeWindow, UsageRecord, parse_timestamp

logger = logging.getLogger(__name__)

UNKNOWN_MODEL = "unknown"
MODELS_PATH = "/v1/models"


@dataclass(frozen=True)
class ProviderContext:
    """Everything an adapter needs for one fetch or test.

    ``refresh_end`` is the instant the refresh started; it bounds the
    default query window and stands in for items without a timestamp.
    The API key is excluded from repr so it never reaches logs.
    """
    api_key: str
    settings: ProviderSettings
    window: TimeWindow
    refresh_end: datetime

    def __repr__(self) -> str:
        return (
            f"ProviderContext(settings={self.settings!r}, window={self.window!r}, "
            f"refresh_end={self.refresh_end!r})"
        )


class ProviderAdapter(ABC):
    """Base class for upstream usage APIs.

    Subclasses set ``name`` and ``display_name`` and implement
    ``fetch_usage``; ``test_connection`` should be overridden to hit a cheap
    read-only endpoint instead of the usage report.
    """

    name: str = ""
    display_name: str = ""

    @abstractmethod
    def fetch_usage(self, client: httpx.Client, ctx: ProviderContext) -> List[UsageRecord]:
        """Fetch usage rows for the context's window.

        Raises:
            NetworkError: On transport failure, timeout or any non-2xx status
            UpstreamDataError: If the body is not JSON
        """

    def test_connection(self, client: httpx.Client, ctx: ProviderContext) -> Optional[int]:
        """Check access to the provider; returns the HTTP status when known."""
        self.fetch_usage(client, ctx)
        return None

    def derive_costs(
        self,
        usage: Sequence[UsageRecord],
        overrides: Sequence[PricingOverride] = (),
    ) -> List[CostRecord]:
        """Price usage rows.

        Rows whose model has no resolvable price are dropped from the result;
        this is not an error and the usage itself is still recorded.
        """
        costs = []
        for row in usage:
            pricing = resolve_pricing(self.name, row.model, overrides)
            if pricing is None:
                logger.debug("No pricing for %s/%s, skipping cost", self.name, row.model)
                continue
            costs.append(cost_for_usage(row, pricing))
        return costs

    def _items(self, body: Any) -> List[Dict[str, Any]]:
        """Return the dict entries of the body's ``data`` array."""
        if not isinstance(body, dict):
            return []
        data = body.get("data")
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def _get_json(self, client: httpx.Client, url: str, headers: Dict[str, str]) -> Any:
        response = send_get(client, url, headers, self.display_name)
        if not response.is_success:
            raise NetworkError(
                f"{self.display_name} usage request failed with HTTP status {response.status_code}.",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamDataError(f"{self.display_name} returned malformed JSON: {e}") from e

    def _check_access(self, client: httpx.Client, url: str, headers: Dict[str, str]) -> int:
        """GET a read-only endpoint and classify the status code."""
        response = send_get(client, url, headers, self.display_name)
        status = response.status_code
        if response.is_success:
            return status
        if status in (401, 403):
            raise CredentialRejectedError(
                f"{self.display_name} rejected credentials (unauthorized).",
                status_code=status,
            )
        raise NetworkError(
            f"{self.display_name} connection failed with HTTP status {status}.",
            status_code=status,
        )


def send_get(
    client: httpx.Client,
    url: str,
    headers: Dict[str, str],
    display_name: str,
) -> httpx.Response:
    """Issue one GET, mapping transport failures to NetworkError."""
    try:
        return client.get(url, headers=headers)
    except httpx.TimeoutException as e:
        raise NetworkError(f"{display_name} request timed out: {e}") from e
    except httpx.TransportError as e:
        raise NetworkError(f"{display_name} request failed: {e}") from e
    except httpx.InvalidURL as e:
        raise ConfigurationError(f"{display_name} URL is not valid: {url}") from e


def token_count(item: Dict[str, Any], *keys: str) -> int:
    """First non-negative integer found under ``keys``, else 0."""
    for key in keys:
        value = item.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
            return value
    return 0


def model_name(item: Dict[str, Any]) -> str:
    value = item.get("model")
    return value if isinstance(value, str) else UNKNOWN_MODEL


def epoch_timestamp(value: Any) -> Optional[datetime]:
    """Interpret an integer as Unix seconds."""
    if not isinstance(value, int) or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def rfc3339_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def resolve_test_url(base_url: Optional[str], default_url: str) -> str:
    """Pick the URL for a connection test.

    Without a base URL the vendor default is used. A base URL that is just a
    host (path empty, ``/``, ``/v1`` or ``/v1/``) gets the models path; any
    other base URL is used verbatim.
    """
    if not base_url:
        return default_url
    try:
        parsed = httpx.URL(base_url)
    except httpx.InvalidURL:
        return base_url
    if not parsed.scheme or not parsed.host:
        return base_url
    if parsed.path in ("", "/", "/v1", "/v1/"):
        return str(parsed.copy_with(path=MODELS_PATH))
    return base_url


def is_valid_base_url(base_url: str) -> bool:
    """Check that a user-entered base URL is absolute (scheme and host)."""
    try:
        parsed = httpx.URL(base_url)
    except httpx.InvalidURL:
        return False
    return bool(parsed.scheme and parsed.host)
