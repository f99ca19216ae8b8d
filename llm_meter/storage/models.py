"""
Data models for storage layer.

Defines the usage and cost records exchanged between providers, the
refresh service and the database.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from llm_meter.core.errors import ConfigurationError

CURRENCY_USD = "USD"

_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})?$"
)


def to_utc(value: datetime) -> datetime:
    """Return a tz-aware UTC datetime; naive values are assumed to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width RFC 3339 UTC string.

    Fixed width keeps lexicographic order equal to chronological order,
    which the storage queries rely on.
    """
    return to_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(raw: str) -> datetime:
    """Parse an RFC 3339 string into a UTC datetime.

    A time part is required. Fractions beyond microseconds are truncated
    and a missing offset means UTC.

    Raises:
        ValueError: If the string is not a valid timestamp
    """
    match = _TIMESTAMP_RE.match(raw.strip())
    if match is None:
        raise ValueError(f"Invalid RFC 3339 timestamp: {raw!r}")
    date_part, time_part, fraction, offset = match.groups()
    fraction = (fraction or "")[:6].ljust(6, "0")
    if offset is None or offset in ("Z", "z"):
        offset = "+00:00"
    return to_utc(datetime.fromisoformat(f"{date_part}T{time_part}.{fraction}{offset}"))


class TimeWindow(Enum):
    """Look-back windows supported by refresh and aggregation."""
    ONE_DAY = "1d"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"

    @property
    def label(self) -> str:
        return self.value

    @property
    def hours(self) -> int:
        return {
            TimeWindow.ONE_DAY: 24,
            TimeWindow.SEVEN_DAYS: 24 * 7,
            TimeWindow.THIRTY_DAYS: 24 * 30,
        }[self]

    @classmethod
    def parse(cls, label: str) -> "TimeWindow":
        """Parse a window label such as ``7d``.

        Raises:
            ConfigurationError: If the label is not one of 1d, 7d or 30d
        """
        try:
            return cls(label.strip())
        except ValueError:
            raise ConfigurationError("Unsupported window. Use 1d, 7d, or 30d.")


@dataclass(frozen=True)
class UsageRecord:
    """One upstream usage bucket for a provider and model.

    Created only by provider adapters and never edited once stored.
    """
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cached_tokens: int
    timestamp: datetime

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cached_tokens


@dataclass(frozen=True)
class CostRecord:
    """Cost derived from a single UsageRecord and a resolved price.

    Never edited after creation, only replaced wholesale by a later refresh.
    """
    provider: str
    model: str
    input_cost: float
    output_cost: float
    total_cost: float
    timestamp: datetime
    currency: str = CURRENCY_USD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "input_cost": self.input_cost,
            "output_cost": self.output_cost,
            "total_cost": self.total_cost,
            "currency": self.currency,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostRecord":
        return cls(
            provider=str(data["provider"]),
            model=str(data["model"]),
            input_cost=float(data["input_cost"]),
            output_cost=float(data["output_cost"]),
            total_cost=float(data["total_cost"]),
            currency=str(data.get("currency", CURRENCY_USD)),
            timestamp=parse_timestamp(data["timestamp"]),
        )


@dataclass(frozen=True)
class Snapshot:
    """Result of one refresh call. Not persisted itself."""
    usage: List[UsageRecord]
    cost: List[CostRecord]
    fetched_at: datetime


@dataclass(frozen=True)
class AggregateSummary:
    """Read-side totals over a time window."""
    total_tokens: int = 0
    total_cost: float = 0.0
    by_provider: List[Tuple[str, float]] = field(default_factory=list)
    by_model: List[Tuple[str, float]] = field(default_factory=list)


@dataclass(frozen=True)
class ProviderTestReport:
    """Outcome of a successful connection test."""
    status_code: Optional[int]
    duration_ms: int
