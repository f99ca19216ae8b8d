"""
OpenAI organization usage adapter.

Reads the completions usage report with an admin key and maps each bucket
to a UsageRecord.
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

USAGE_URL = "https://api.openai.com/v1/organization/usage/completions"
MODELS_URL = "https://api.openai.com/v1/models"


class OpenAIAdapter(ProviderAdapter):
    """Adapter for api.openai.com.

    Timestamps may arrive as epoch seconds or RFC 3339 strings under
    ``start_time`` or ``timestamp``.
    """

    name = "openai"
    display_name = "OpenAI"

    def usage_endpoint(self, ctx: ProviderContext) -> str:
        if ctx.settings.base_url:
            return ctx.settings.base_url
        start = ctx.refresh_end - timedelta(hours=ctx.window.hours)
        params = {
            "start_time": int(start.timestamp()),
            "end_time": int(ctx.refresh_end.timestamp()),
        }
        return str(httpx.URL(USAGE_URL, params=params))

    def headers(self, ctx: ProviderContext) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {ctx.api_key}"}
        if ctx.settings.organization_id:
            headers["OpenAI-Organization"] = ctx.settings.organization_id
        return headers

    @staticmethod
    def parse_item_timestamp(item: Dict[str, Any]) -> Optional[datetime]:
        for parse, key in (
            (epoch_timestamp, "start_time"),
            (epoch_timestamp, "timestamp"),
            (rfc3339_timestamp, "start_time"),
            (rfc3339_timestamp, "timestamp"),
        ):
            parsed = parse(item.get(key))
            if parsed is not None:
                return parsed
        return None

    def fetch_usage(self, client: httpx.Client, ctx: ProviderContext) -> List[UsageRecord]:
        body = self._get_json(client, self.usage_endpoint(ctx), self.headers(ctx))
        return [
            UsageRecord(
                provider=self.name,
                model=model_name(item),
                input_tokens=token_count(item, "input_tokens"),
                output_tokens=token_count(item, "output_tokens"),
                cached_tokens=token_count(item, "input_cached_tokens"),
                timestamp=self.parse_item_timestamp(item) or ctx.refresh_end,
            )
            for item in self._items(body)
        ]

    def test_connection(self, client: httpx.Client, ctx: ProviderContext) -> Optional[int]:
        url = resolve_test_url(ctx.settings.base_url, MODELS_URL)
        return self._check_access(client, url, self.headers(ctx))
