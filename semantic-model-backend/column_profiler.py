"""
Column Profiling for Relationship Inference
===========================================

Computes the statistics used to confirm or refute a naming-based join guess:
- ColumnProfile: total / non-null / distinct rows for one column
- OverlapProfile: distinct-value overlap for a column pair, bounded to the
  first N distinct values per side so cost stays predictable

Profiles are memoized per inference call in a ProfileCache keyed by typed
(table_id, column) and (table_id, column, table_id, column) tuples. The cache
is discarded when the call ends; nothing is shared across requests.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from model_catalog import ModelTable

logger = logging.getLogger(__name__)

DEFAULT_DISTINCT_LIMIT = 20000

ColumnKey = Tuple[str, str]
PairKey = Tuple[str, str, str, str]


def quote_postgres_ident(value: str) -> str:
    return '"' + str(value or "").replace('"', '""') + '"'


@dataclass(frozen=True)
class ColumnProfile:
    total_rows: int
    non_null_rows: int
    distinct_rows: int

    @property
    def unique(self) -> bool:
        return self.non_null_rows > 0 and self.non_null_rows == self.distinct_rows


@dataclass(frozen=True)
class OverlapProfile:
    """Overlap of distinct values between a (left, right) column pair"""
    left_distinct: int
    right_distinct: int
    overlap_distinct: int

    @property
    def left_coverage(self) -> float:
        """Share of left distinct values also present on the right."""
        return self.overlap_distinct / self.left_distinct if self.left_distinct else 0.0

    @property
    def right_coverage(self) -> float:
        return self.overlap_distinct / self.right_distinct if self.right_distinct else 0.0

    def reversed(self) -> "OverlapProfile":
        return OverlapProfile(
            left_distinct=self.right_distinct,
            right_distinct=self.left_distinct,
            overlap_distinct=self.overlap_distinct,
        )


@dataclass
class ProfileCache:
    """In-call memo of profiles. Call clear() when the inference call ends."""
    columns: Dict[ColumnKey, ColumnProfile] = field(default_factory=dict)
    overlaps: Dict[PairKey, OverlapProfile] = field(default_factory=dict)
    hits: int = 0
    misses: int = 0

    @staticmethod
    def column_key(table_id: str, column: str) -> ColumnKey:
        return (table_id, column.lower())

    @staticmethod
    def pair_key(left_table_id: str, left_column: str, right_table_id: str, right_column: str) -> PairKey:
        return (left_table_id, left_column.lower(), right_table_id, right_column.lower())

    def get_column(self, table_id: str, column: str) -> Optional[ColumnProfile]:
        profile = self.columns.get(self.column_key(table_id, column))
        if profile is not None:
            self.hits += 1
        return profile

    def put_column(self, table_id: str, column: str, profile: ColumnProfile) -> None:
        self.misses += 1
        self.columns[self.column_key(table_id, column)] = profile

    def get_overlap(self, left_table_id: str, left_column: str, right_table_id: str, right_column: str) -> Optional[OverlapProfile]:
        key = self.pair_key(left_table_id, left_column, right_table_id, right_column)
        profile = self.overlaps.get(key)
        if profile is None:
            # same pair seen in the other order
            reverse = self.overlaps.get((key[2], key[3], key[0], key[1]))
            profile = reverse.reversed() if reverse is not None else None
        if profile is not None:
            self.hits += 1
        return profile

    def put_overlap(self, left_table_id: str, left_column: str, right_table_id: str, right_column: str,
                    profile: OverlapProfile) -> None:
        self.misses += 1
        self.overlaps[self.pair_key(left_table_id, left_column, right_table_id, right_column)] = profile

    def clear(self) -> None:
        self.columns.clear()
        self.overlaps.clear()


class SQLColumnProfiler:
    """
    Profiles columns of postgres-runtime tables in the relational store.

    Tables are addressed through their runtime reference, columns are quoted
    as postgres identifiers.
    """

    def __init__(self, engine: Engine, distinct_limit: int = DEFAULT_DISTINCT_LIMIT):
        self.engine = engine
        self.distinct_limit = distinct_limit

    def profile_column(self, table: ModelTable, column: str) -> ColumnProfile:
        col = quote_postgres_ident(column)
        sql = (
            f"SELECT COUNT(*) AS total_rows, COUNT(t.{col}) AS non_null_rows, "
            f"COUNT(DISTINCT t.{col}) AS distinct_rows FROM {table.runtime_ref} t"
        )
        with self.engine.connect() as conn:
            row = conn.execute(text(sql)).mappings().one()
        return ColumnProfile(
            total_rows=int(row["total_rows"] or 0),
            non_null_rows=int(row["non_null_rows"] or 0),
            distinct_rows=int(row["distinct_rows"] or 0),
        )

    def profile_overlap(self, left_table: ModelTable, left_column: str,
                        right_table: ModelTable, right_column: str) -> OverlapProfile:
        left_col = quote_postgres_ident(left_column)
        right_col = quote_postgres_ident(right_column)
        sql = f"""
            WITH left_values AS (
                SELECT DISTINCT CAST(t.{left_col} AS TEXT) AS v
                FROM {left_table.runtime_ref} t
                WHERE t.{left_col} IS NOT NULL
                ORDER BY 1
                LIMIT :limit
            ),
            right_values AS (
                SELECT DISTINCT CAST(t.{right_col} AS TEXT) AS v
                FROM {right_table.runtime_ref} t
                WHERE t.{right_col} IS NOT NULL
                ORDER BY 1
                LIMIT :limit
            )
            SELECT
                (SELECT COUNT(*) FROM left_values) AS left_distinct,
                (SELECT COUNT(*) FROM right_values) AS right_distinct,
                (SELECT COUNT(*) FROM left_values l JOIN right_values r ON l.v = r.v) AS overlap_distinct
        """
        with self.engine.connect() as conn:
            row = conn.execute(text(sql), {"limit": self.distinct_limit}).mappings().one()
        return OverlapProfile(
            left_distinct=int(row["left_distinct"] or 0),
            right_distinct=int(row["right_distinct"] or 0),
            overlap_distinct=int(row["overlap_distinct"] or 0),
        )


def profile_column_cached(profiler: SQLColumnProfiler, cache: ProfileCache,
                          table: ModelTable, column: str) -> ColumnProfile:
    profile = cache.get_column(table.id, column)
    if profile is None:
        profile = profiler.profile_column(table, column)
        cache.put_column(table.id, column, profile)
    return profile


def profile_overlap_cached(profiler: SQLColumnProfiler, cache: ProfileCache,
                           left_table: ModelTable, left_column: str,
                           right_table: ModelTable, right_column: str) -> OverlapProfile:
    profile = cache.get_overlap(left_table.id, left_column, right_table.id, right_column)
    if profile is None:
        profile = profiler.profile_overlap(left_table, left_column, right_table, right_column)
        cache.put_overlap(left_table.id, left_column, right_table.id, right_column, profile)
    return profile

