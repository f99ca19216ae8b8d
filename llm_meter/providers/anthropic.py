"""
Anthropic organization usage adapter.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from llm_meter.storage.models import UsageRecord
from .base import (
    ProviderAdapter,
    ProviderContext,
    epoch_timestamp,
    model_name,
    resolve_test_url,
    rfc3339_timestamp,
    token_count,
)

USAGE_URL = "https://api.anthropic.com/v1/organizations/usage_report/messages"
MODELS_URL = "https://api.anthropic.com/v1/models"
API_VERSION = "2023-06-01"

_RFC3339 = "%Y-%m-%dT%H:%M:%SZ"


class AnthropicAdapter(ProviderAdapter):
    """Adapter for api.anthropic.com.

    The usage report names tokens ``input_tokens``/``output_tokens`` or the
    older ``tokens_in``/``tokens_out``. Cached tokens are not reported.
    """

    name = "anthropic"
    display_name = "Anthropic"

    def usage_endpoint(self, ctx: ProviderContext) -> str:
        if ctx.settings.base_url:
            return ctx.settings.base_url
        start = ctx.refresh_end - timedelta(hours=ctx.window.hours)
        params = {
            "starting_at": start.strftime(_RFC3339),
            "ending_at": ctx.refresh_end.strftime(_RFC3339),
        }
        return str(httpx.URL(USAGE_URL, params=params))

    def headers(self, ctx: ProviderContext) -> Dict[str, str]:
        return {"x-api-key": ctx.api_key, "anthropic-version": API_VERSION}

    @staticmethod
    def parse_item_timestamp(item: Dict[str, Any]) -> Optional[datetime]:
        return (
            rfc3339_timestamp(item.get("starting_at"))
            or rfc3339_timestamp(item.get("ending_at"))
            or epoch_timestamp(item.get("timestamp"))
        )

    def fetch_usage(self, client: httpx.Client, ctx: ProviderContext) -> List[UsageRecord]:
        body = self._get_json(client, self.usage_endpoint(ctx), self.headers(ctx))
        return [
            UsageRecord(
                provider=self.name,
                model=model_name(item),
                input_tokens=token_count(item, "input_tokens", "tokens_in"),
                output_tokens=token_count(item, "output_tokens", "tokens_out"),
                cached_tokens=0,
                timestamp=self.parse_item_timestamp(item) or ctx.refresh_end,
            )
            for item in self._items(body)
        ]

    def test_connection(self, client: httpx.Client, ctx: ProviderContext) -> Optional[int]:
        url = resolve_test_url(ctx.settings.base_url, MODELS_URL)
        return self._check_access(client, url, self.headers(ctx))
