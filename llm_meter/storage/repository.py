"""
Repository pattern for data access.

Handles the snapshot tables: atomic replace-by-provider-and-window on
refresh, and read-side aggregation for the dashboard and exports.
"""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Sequence, Union

from llm_meter.core.errors import StorageError
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AggregateSummary,
    CostRecord,
    UsageRecord,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

TOP_MODELS_LIMIT = 10

_SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_records (
    id INTEGER PRIMARY KEY,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    input_tokens INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    cached_tokens INTEGER NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cost_records (
    id INTEGER PRIMARY KEY,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    input_cost REAL NOT NULL,
    output_cost REAL NOT NULL,
    total_cost REAL NOT NULL,
    currency TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_provider_ts ON usage_records(provider, timestamp);
CREATE INDEX IF NOT EXISTS idx_cost_provider_ts ON cost_records(provider, timestamp);
"""


class SnapshotRepository:
    """Repository for the usage_records and cost_records tables.

    Each operation opens its own connection and closes it before returning,
    so one instance can be shared by the refresh and export paths.
    """

    def __init__(self, db_path: Union[str, Path] = DEFAULT_DB_PATH):
        """Initialize the repository and make sure the schema exists.

        Args:
            db_path: Path to SQLite database file

        Raises:
            StorageError: If the database cannot be opened or created
        """
        self.db_path = db_path
        self.initialize_schema()

    def initialize_schema(self) -> None:
        """Create both snapshot tables if they don't exist."""
        try:
            conn = get_connection(self.db_path)
            try:
                conn.executescript(_SCHEMA)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def replace_snapshot(
        self,
        since: datetime,
        providers: Sequence[str],
        usage: Iterable[UsageRecord],
        cost: Iterable[CostRecord],
    ) -> None:
        """Replace the window of every refreshed provider in one transaction.

        For each provider in ``providers`` all usage and cost rows with
        ``timestamp >= since`` are deleted, then every row of the batches is
        inserted. Rows of providers not listed are never touched. Either
        everything is committed or nothing is.

        Args:
            since: Start of the refreshed window
            providers: Names of providers whose window is replaced
            usage: Usage rows to insert
            cost: Cost rows to insert

        Raises:
            StorageError: If any step fails; prior data is left intact
        """
        since_str = format_timestamp(since)
        usage_rows = [
            (
                r.provider,
                r.model,
                r.input_tokens,
                r.output_tokens,
                r.cached_tokens,
                format_timestamp(r.timestamp),
            )
            for r in usage
        ]
        cost_rows = [
            (
                r.provider,
                r.model,
                r.input_cost,
                r.output_cost,
                r.total_cost,
                r.currency,
                format_timestamp(r.timestamp),
            )
            for r in cost
        ]

        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

        try:
            conn.execute("BEGIN IMMEDIATE")
            for provider in providers:
                conn.execute(
                    "DELETE FROM usage_records WHERE provider = ? AND timestamp >= ?",
                    (provider, since_str),
                )
                conn.execute(
                    "DELETE FROM cost_records WHERE provider = ? AND timestamp >= ?",
                    (provider, since_str),
                )
            conn.executemany(
                """
                INSERT INTO usage_records
                (provider, model, input_tokens, output_tokens, cached_tokens, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                usage_rows,
            )
            conn.executemany(
                """
                INSERT INTO cost_records
                (provider, model, input_cost, output_cost, total_cost, currency, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                cost_rows,
            )
            conn.execute("COMMIT")
        except Exception as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if isinstance(e, sqlite3.Error):
                raise StorageError(str(e)) from e
            raise
        finally:
            conn.close()

        logger.debug(
            "Replaced snapshot since %s for %s: %d usage rows, %d cost rows",
            since_str, list(providers), len(usage_rows), len(cost_rows),
        )

    def aggregate_since(self, since: datetime) -> AggregateSummary:
        """Summarize tokens and cost recorded at or after ``since``.

        Args:
            since: Start of the aggregation window

        Returns:
            AggregateSummary with token total (input + output + cached),
            cost total, cost per provider and the top models by cost, both
            sorted by cost descending. Empty tables yield zeros.

        Raises:
            StorageError: If a query fails
        """
        since_str = format_timestamp(since)
        try:
            conn = get_connection(self.db_path)
            try:
                token_row = conn.execute(
                    """
                    SELECT COALESCE(SUM(input_tokens + output_tokens + cached_tokens), 0)
                    FROM usage_records WHERE timestamp >= ?
                    """,
                    (since_str,),
                ).fetchone()
                cost_row = conn.execute(
                    "SELECT COALESCE(SUM(total_cost), 0.0) FROM cost_records WHERE timestamp >= ?",
                    (since_str,),
                ).fetchone()
                by_provider = conn.execute(
                    """
                    SELECT provider, COALESCE(SUM(total_cost), 0.0) AS c
                    FROM cost_records WHERE timestamp >= ?
                    GROUP BY provider ORDER BY c DESC
                    """,
                    (since_str,),
                ).fetchall()
                by_model = conn.execute(
                    """
                    SELECT model, COALESCE(SUM(total_cost), 0.0) AS c
                    FROM cost_records WHERE timestamp >= ?
                    GROUP BY model ORDER BY c DESC LIMIT ?
                    """,
                    (since_str, TOP_MODELS_LIMIT),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

        return AggregateSummary(
            total_tokens=max(int(token_row[0] or 0), 0),
            total_cost=float(cost_row[0] or 0.0),
            by_provider=[(row[0], float(row[1])) for row in by_provider],
            by_model=[(row[0], float(row[1])) for row in by_model],
        )

    def export_all_cost(self) -> List[CostRecord]:
        """Return every cost row, newest first.

        Raises:
            StorageError: If the query fails or a stored timestamp is corrupt
        """
        try:
            conn = get_connection(self.db_path)
            try:
                rows = conn.execute(
                    """
                    SELECT provider, model, input_cost, output_cost, total_cost,
                           currency, timestamp
                    FROM cost_records ORDER BY timestamp DESC, id DESC
                    """
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

        records = []
        for row in rows:
            try:
                timestamp = parse_timestamp(row[6])
            except ValueError as e:
                raise StorageError(f"Invalid timestamp in cost_records: {row[6]!r}") from e
            records.append(CostRecord(
                provider=row[0],
                model=row[1],
                input_cost=row[2],
                output_cost=row[3],
                total_cost=row[4],
                currency=row[5],
                timestamp=timestamp,
            ))
        return records

    def fetch_usage_since(self, since: datetime) -> List[UsageRecord]:
        """Return usage rows at or after ``since``, oldest first."""
        try:
            conn = get_connection(self.db_path)
            try:
                rows = conn.execute(
                    """
                    SELECT provider, model, input_tokens, output_tokens,
                           cached_tokens, timestamp
                    FROM usage_records WHERE timestamp >= ?
                    ORDER BY timestamp ASC, id ASC
                    """,
                    (format_timestamp(since),),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

        return [
            UsageRecord(
                provider=row[0],
                model=row[1],
                input_tokens=row[2],
                output_tokens=row[3],
                cached_tokens=row[4],
                timestamp=parse_timestamp(row[5]),
            )
            for row in rows
        ]
