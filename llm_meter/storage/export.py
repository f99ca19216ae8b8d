"""
Export formats for stored cost records.

Serializes the output of ``SnapshotRepository.export_all_cost`` to JSON or
CSV, and parses the JSON form back into records.
"""

import json
from typing import Iterable, List

from llm_meter.core.errors import UpstreamDataError
from .models import CostRecord, format_timestamp

CSV_HEADER = "provider,model,input_cost,output_cost,total_cost,currency,timestamp"

_CSV_SPECIAL_CHARS = (",", '"', "\n", "\r")


def csv_field(raw: str) -> str:
    """Quote a CSV field when it contains a comma, quote or line break."""
    if any(ch in raw for ch in _CSV_SPECIAL_CHARS):
        return '"' + raw.replace('"', '""') + '"'
    return raw


def costs_to_json(records: Iterable[CostRecord]) -> str:
    """Serialize cost records to a pretty-printed JSON array."""
    return json.dumps([r.to_dict() for r in records], indent=2)


def costs_from_json(text: str) -> List[CostRecord]:
    """Parse a JSON array produced by ``costs_to_json``.

    Raises:
        UpstreamDataError: If the text is not a JSON array of cost objects
    """
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise UpstreamDataError(f"Invalid cost export JSON: {e}") from e
    if not isinstance(payload, list):
        raise UpstreamDataError("Cost export must be a JSON array")
    try:
        return [CostRecord.from_dict(item) for item in payload]
    except (KeyError, TypeError, ValueError) as e:
        raise UpstreamDataError(f"Invalid cost export row: {e}") from e


def costs_to_csv(records: Iterable[CostRecord]) -> str:
    """Render cost records as CSV with a header line."""
    lines = [CSV_HEADER]
    for r in records:
        lines.append(",".join([
            csv_field(r.provider),
            csv_field(r.model),
            f"{r.input_cost:.8f}",
            f"{r.output_cost:.8f}",
            f"{r.total_cost:.8f}",
            csv_field(r.currency),
            csv_field(format_timestamp(r.timestamp)),
        ]))
    return "\n".join(lines) + "\n"
