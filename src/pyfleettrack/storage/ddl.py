"""PostgreSQL DDL for the partitioned position history table.

The parent table is ``PARTITION BY RANGE (recorded_at)`` with one child
per calendar month. Indexes declared on the parent propagate to every
partition. Statement text is deterministic so it can be diffed in
migrations.
"""

from __future__ import annotations

from datetime import datetime

from pyfleettrack.storage.partitions import DEFAULT_TABLE, PartitionRange


def _quote_ts(bound: datetime) -> str:
    return f"'{bound.isoformat()}'"


def create_parent_table_sql(table: str = DEFAULT_TABLE, *, unique_source_log: bool = False) -> list[str]:
    """Statements creating the parent table and its indexes."""
    unique_clause = ""
    if unique_source_log:
        unique_clause = f",\n    CONSTRAINT {table}_source_log_uniq UNIQUE (entity_id, recorded_at, source_log_id)"

    return [
        "CREATE EXTENSION IF NOT EXISTS postgis",
        (
            f"CREATE TABLE IF NOT EXISTS {table} (\n"
            "    id BIGINT GENERATED ALWAYS AS IDENTITY,\n"
            "    entity_id TEXT NOT NULL,\n"
            "    entity_type TEXT NOT NULL CHECK (entity_type IN ('driver', 'vehicle', 'load', 'smart_hub')),\n"
            "    latitude NUMERIC(9, 6) NOT NULL CHECK (latitude BETWEEN -90 AND 90),\n"
            "    longitude NUMERIC(9, 6) NOT NULL CHECK (longitude BETWEEN -180 AND 180),\n"
            "    heading NUMERIC(5, 2) CHECK (heading >= 0 AND heading < 360),\n"
            "    speed NUMERIC(6, 2) CHECK (speed >= 0),\n"
            "    accuracy NUMERIC(8, 2) CHECK (accuracy >= 0),\n"
            "    source TEXT NOT NULL,\n"
            "    source_log_id TEXT,\n"
            "    recorded_at TIMESTAMPTZ NOT NULL,\n"
            "    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),\n"
            "    location geography(Point, 4326) GENERATED ALWAYS AS "
            "(ST_SetSRID(ST_MakePoint(longitude::float8, latitude::float8), 4326)::geography) STORED,\n"
            "    CHECK (recorded_at <= created_at),\n"
            f"    PRIMARY KEY (id, recorded_at){unique_clause}\n"
            ") PARTITION BY RANGE (recorded_at)"
        ),
        f"CREATE INDEX IF NOT EXISTS {table}_entity_recorded_idx ON {table} (entity_id, recorded_at DESC)",
        f"CREATE INDEX IF NOT EXISTS {table}_location_gist_idx ON {table} USING GIST (location)",
    ]


def create_partition_sql(partition: PartitionRange, table: str = DEFAULT_TABLE) -> str:
    return (
        f"CREATE TABLE IF NOT EXISTS {partition.name(table)} PARTITION OF {table} "
        f"FOR VALUES FROM ({_quote_ts(partition.start)}) TO ({_quote_ts(partition.end)})"
    )


def drop_partition_sql(partition: PartitionRange, table: str = DEFAULT_TABLE) -> str:
    return f"DROP TABLE IF EXISTS {partition.name(table)}"
