"""
Query Plan Builder - Semantic Query to Executable SQL
=====================================================

Compiles a SemanticQuerySpec (select + filters + group-by across related
tables) into exactly one statement for exactly one execution engine.

Pipeline:
1. Resolve every referenced table against the catalog snapshot
2. Engine gate: executable tables only, one supported engine per plan
   (no in-process cross-engine joins)
3. Join graph over VALID, non n-n relationships between referenced tables;
   BFS from the root table to every required table
4. Alias tables t1 (root), t2, ... and emit one INNER JOIN per edge
5. Translate select / filter / group / order items into the engine dialect
   (identifier quoting, date-hierarchy extraction, aggregations)

Shape rules:
- Only dimensions selected        -> SELECT DISTINCT
- Dimensions mixed with measures  -> GROUP BY every dimension by ordinal
- No explicit ORDER BY            -> ORDER BY every dimension ascending
"""

import logging
import math
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from errors import (
    CrossSourceBlockedError,
    EngineNotSupportedError,
    InvalidRequestError,
    JoinGraphError,
    NoRelationshipPathError,
    TableNotExecutableError,
)
from model_catalog import (
    BIGQUERY_ENGINE,
    POSTGRES_ENGINE,
    SUPPORTED_ENGINES,
    Catalog,
    ModelRelationship,
    ModelTable,
)
from query_spec import FilterItem, SelectItem, SemanticQuerySpec

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 1000
MAX_LIMIT = 5000

NULL_LIKE_VALUES = {"", "(blank)", "null", "undefined", "nan"}


# ============================================================================
# DIALECT HELPERS
# ============================================================================

def quote_postgres_ident(value: str) -> str:
    return '"' + str(value or "").replace('"', '""') + '"'


def quote_bigquery_ident(value: str) -> str:
    return "`" + str(value or "").replace("`", "") + "`"


def quote_ident(engine: str, value: str) -> str:
    if engine == BIGQUERY_ENGINE:
        return quote_bigquery_ident(value)
    return quote_postgres_ident(value)


def quote_column_ref(engine: str, alias: str, column: str) -> str:
    return f"{alias}.{quote_ident(engine, column)}"


def apply_hierarchy_part(engine: str, alias: str, column: str, hierarchy_part: Optional[str]) -> str:
    """Wrap a column reference in the date-part extraction for the hierarchy level."""
    ref = quote_column_ref(engine, alias, column)
    if not hierarchy_part:
        return ref
    if hierarchy_part == "half":
        return f"CASE WHEN {ref} IS NULL THEN NULL WHEN EXTRACT(MONTH FROM {ref}) <= 6 THEN 1 ELSE 2 END"
    if hierarchy_part == "week":
        part = "ISOWEEK" if engine == BIGQUERY_ENGINE else "WEEK"
        return f"EXTRACT({part} FROM {ref})"
    return f"EXTRACT({hierarchy_part.upper()} FROM {ref})"


def sanitize_alias(value: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9_]", "_", str(value or ""))
    cleaned = cleaned.strip("_")[:60]
    return cleaned or "col"


def unique_alias(output: str, taken: Set[str]) -> str:
    """output, or output_2, output_3, ... when an earlier column already has that name (any case)"""
    candidate = output
    suffix = 2
    while candidate.lower() in taken:
        candidate = f"{output}_{suffix}"
        suffix += 1
    taken.add(candidate.lower())
    return candidate


def is_null_like(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if not isinstance(value, str):
        return False
    return value.strip().lower() in NULL_LIKE_VALUES


def bigquery_literal(value: Any) -> str:
    """Render a filter value as an escaped BigQuery literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)) and math.isfinite(value):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class FilterCompiler:
    """
    Renders filter items into one WHERE expression.

    Postgres values become :pN bind parameters, BigQuery values are inlined
    as escaped literals.
    """

    def __init__(self, engine: str):
        self.engine = engine
        self.params: Dict[str, Any] = {}

    def _value(self, value: Any) -> str:
        if self.engine == BIGQUERY_ENGINE:
            return bigquery_literal(value)
        name = f"p{len(self.params) + 1}"
        self.params[name] = value
        return f":{name}"

    def _values(self, value: Any) -> List[str]:
        values = value if isinstance(value, (list, tuple)) else [value]
        return [self._value(v) for v in values]

    def compile_clause(self, col_ref: str, item: FilterItem) -> str:
        text_type = "STRING" if self.engine == BIGQUERY_ENGINE else "TEXT"
        like = "LIKE" if self.engine == BIGQUERY_ENGINE else "ILIKE"
        text_ref = f"CAST({col_ref} AS {text_type})"
        op = item.operator
        value = item.value

        if op == "equals":
            return f"{col_ref} IS NULL" if is_null_like(value) else f"{col_ref} = {self._value(value)}"
        if op == "notEquals":
            return f"{col_ref} IS NOT NULL" if is_null_like(value) else f"{col_ref} != {self._value(value)}"
        if op == "contains":
            return f"{text_ref} {like} {self._value(f'%{value}%')}"
        if op == "notContains":
            return f"{text_ref} NOT {like} {self._value(f'%{value}%')}"
        if op == "startsWith":
            return f"{text_ref} {like} {self._value(f'{value}%')}"
        if op == "endsWith":
            return f"{text_ref} {like} {self._value(f'%{value}')}"
        if op == "greaterThan":
            return f"{col_ref} > {self._value(value)}"
        if op == "greaterOrEqual":
            return f"{col_ref} >= {self._value(value)}"
        if op == "lessThan":
            return f"{col_ref} < {self._value(value)}"
        if op == "lessOrEqual":
            return f"{col_ref} <= {self._value(value)}"
        if op == "between":
            if value is None or item.value2 is None:
                raise InvalidRequestError(f"between filter on {item.column} requires value and value2")
            return f"{col_ref} BETWEEN {self._value(value)} AND {self._value(item.value2)}"
        if op in ("in", "notIn"):
            rendered = self._values(value)
            if not rendered:
                return "1 = 0" if op == "in" else "1 = 1"
            keyword = "IN" if op == "in" else "NOT IN"
            return f"{col_ref} {keyword} ({', '.join(rendered)})"
        if op == "isNull":
            return f"{col_ref} IS NULL"
        if op == "isNotNull":
            return f"{col_ref} IS NOT NULL"
        raise InvalidRequestError(f"Unsupported filter operator: {op}")

    def compile(self, alias_by_table_id: Dict[str, str], filters: List[Tuple[str, FilterItem]]) -> Optional[str]:
        """Combine clauses left to right with each filter's AND/OR."""
        expr = None
        for table_id, item in filters:
            alias = alias_by_table_id.get(table_id)
            if not alias:
                continue
            col_ref = apply_hierarchy_part(self.engine, alias, item.column, item.hierarchy_part)
            clause = self.compile_clause(col_ref, item)
            if expr is None:
                expr = f"({clause})"
            else:
                expr = f"({expr} {item.logical} ({clause}))"
        return expr


# ============================================================================
# PLAN
# ============================================================================

@dataclass
class QueryPlan:
    data_model_id: str
    data_model_name: str
    engine: str
    sql: str
    params: Dict[str, Any]
    root_table: ModelTable
    selected_tables: List[ModelTable]
    relationships_used: List[ModelRelationship]
    output_columns: List[str] = field(default_factory=list)
    skipped_filter_table_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataModelId": self.data_model_id,
            "dataModelName": self.data_model_name,
            "engine": self.engine,
            "sql": self.sql,
            "params": self.params,
            "rootTable": {
                "id": self.root_table.id,
                "tableName": self.root_table.table_name,
                "datasetName": self.root_table.dataset_name,
            },
            "selectedTables": [
                {
                    "id": t.id,
                    "tableName": t.table_name,
                    "datasetName": t.dataset_name,
                    "sourceType": t.source_type,
                    "runtimeEngine": t.runtime_engine,
                    "runtimeRef": t.runtime_ref,
                }
                for t in self.selected_tables
            ],
            "relationshipsUsed": [
                {
                    "id": r.id,
                    "fromTableId": r.from_table_id,
                    "fromTable": r.from_table,
                    "fromColumn": r.from_column,
                    "toTableId": r.to_table_id,
                    "toTable": r.to_table,
                    "toColumn": r.to_column,
                    "relationshipType": r.relationship_type,
                    "crossFilterDirection": r.cross_filter_direction,
                }
                for r in self.relationships_used
            ],
            "columns": list(self.output_columns),
        }


# ============================================================================
# JOIN GRAPH
# ============================================================================

@dataclass
class JoinEdge:
    relationship: ModelRelationship
    next_table_id: str


def build_adjacency(relationships: List[ModelRelationship], table_ids: set) -> Dict[str, List[JoinEdge]]:
    """Undirected adjacency over joinable relationships between the given tables."""
    adjacency: Dict[str, List[JoinEdge]] = {}
    for rel in relationships:
        if not rel.is_joinable:
            continue
        if rel.from_table_id not in table_ids or rel.to_table_id not in table_ids:
            continue
        adjacency.setdefault(rel.from_table_id, []).append(JoinEdge(rel, rel.to_table_id))
        adjacency.setdefault(rel.to_table_id, []).append(JoinEdge(rel, rel.from_table_id))
    return adjacency


def bfs_path(adjacency: Dict[str, List[JoinEdge]], start_id: str, target_id: str) -> Optional[List[ModelRelationship]]:
    """Shortest relationship path from start to target, or None if unreachable."""
    if start_id == target_id:
        return []

    queue = deque([start_id])
    parent: Dict[str, Tuple[str, ModelRelationship]] = {}
    visited = {start_id}

    while queue:
        current = queue.popleft()
        if current == target_id:
            break
        for edge in adjacency.get(current, []):
            if edge.next_table_id in visited:
                continue
            visited.add(edge.next_table_id)
            parent[edge.next_table_id] = (current, edge.relationship)
            queue.append(edge.next_table_id)

    if target_id not in visited:
        return None

    path = []
    cursor = target_id
    while cursor != start_id:
        prev, rel = parent[cursor]
        path.append(rel)
        cursor = prev
    path.reverse()
    return path


# ============================================================================
# BUILDER
# ============================================================================

class QueryPlanBuilder:
    """Compiles SemanticQuerySpec requests against a catalog snapshot"""

    def __init__(self, default_limit: int = DEFAULT_LIMIT, max_limit: int = MAX_LIMIT):
        self.default_limit = default_limit
        self.max_limit = max_limit

    def build_plan(self, catalog: Catalog, spec: SemanticQuerySpec) -> QueryPlan:
        """
        Compile one plan.

        Raises:
            InvalidRequestError: unknown tables/columns, empty request
            TableNotExecutableError / EngineNotSupportedError / CrossSourceBlockedError
            NoRelationshipPathError / JoinGraphError
        """
        required_ids = self._collect_required(catalog, spec)
        filter_ids = self._unique([catalog.require_table(f.table_id).id for f in spec.filters])

        if not required_ids:
            required_ids = list(filter_ids)
        if not required_ids:
            raise InvalidRequestError("At least one table must be selected")
        optional_ids = [tid for tid in filter_ids if tid not in required_ids]

        selected = [catalog.resolve_table(tid) for tid in required_ids + optional_ids]
        self._validate_columns(catalog, spec)
        engine = self._check_engine(selected)

        root = self._pick_root(catalog, spec, required_ids)
        table_by_id = {t.id: t for t in selected}
        adjacency = build_adjacency(catalog.relationships, set(table_by_id))

        used: Dict[str, ModelRelationship] = {}
        for target_id in required_ids:
            path = bfs_path(adjacency, root.id, target_id)
            if path is None:
                raise NoRelationshipPathError(
                    f"No valid relationship path from root table to target table ({table_by_id[target_id].label})"
                )
            for rel in path:
                used.setdefault(rel.id, rel)

        skipped = []
        for target_id in optional_ids:
            path = bfs_path(adjacency, root.id, target_id)
            if path is None:
                logger.info(f"[WARN] Skipping filters on {table_by_id[target_id].label}: no relationship path")
                skipped.append(target_id)
                continue
            for rel in path:
                used.setdefault(rel.id, rel)

        relationships = list(used.values())
        alias_by_table_id, join_lines = self._build_joins(engine, root, relationships, table_by_id)

        select_parts, output_columns, dimension_ordinals, has_aggregation, has_star = self._compile_select(
            catalog, spec, engine, root, alias_by_table_id
        )

        filters = [
            (catalog.resolve_table(f.table_id).id, f)
            for f in spec.filters
            if catalog.resolve_table(f.table_id).id not in skipped
        ]
        compiler = FilterCompiler(engine)
        where = compiler.compile(alias_by_table_id, filters)

        group_parts = self._compile_group_by(catalog, spec, engine, alias_by_table_id, dimension_ordinals, has_aggregation)
        order_parts = self._compile_order_by(catalog, spec, engine, alias_by_table_id, dimension_ordinals, has_star)

        distinct = not has_aggregation and not has_star and bool(dimension_ordinals) and not spec.group_by
        limit = self._resolve_limit(spec.limit)

        lines = [
            f"SELECT {'DISTINCT ' if distinct else ''}{', '.join(select_parts)}",
            f"FROM {root.runtime_ref} {alias_by_table_id[root.id]}",
            *join_lines,
        ]
        if where:
            lines.append(f"WHERE {where}")
        if group_parts:
            lines.append(f"GROUP BY {', '.join(group_parts)}")
        if order_parts:
            lines.append(f"ORDER BY {', '.join(order_parts)}")
        lines.append(f"LIMIT {limit}")
        sql = "\n".join(lines)

        logger.info(
            f"[OK] Plan built: engine={engine} root={root.table_name} "
            f"tables={len(selected) - len(skipped)} joins={len(relationships)}"
        )
        return QueryPlan(
            data_model_id=catalog.model.id,
            data_model_name=catalog.model.name,
            engine=engine,
            sql=sql,
            params=compiler.params,
            root_table=root,
            selected_tables=[t for t in selected if t.id not in skipped],
            relationships_used=relationships,
            output_columns=output_columns,
            skipped_filter_table_ids=skipped,
        )

    # ------------------------------------------------------------ resolution

    @staticmethod
    def _unique(ids: List[str]) -> List[str]:
        seen = []
        for tid in ids:
            if tid not in seen:
                seen.append(tid)
        return seen

    def _collect_required(self, catalog: Catalog, spec: SemanticQuerySpec) -> List[str]:
        ids = [catalog.require_table(tid).id for tid in spec.table_ids]
        for items in (spec.select, spec.group_by, spec.order_by):
            ids.extend(catalog.require_table(item.table_id).id for item in items)
        return self._unique(ids)

    def _validate_columns(self, catalog: Catalog, spec: SemanticQuerySpec) -> None:
        for item in spec.select:
            if item.is_star:
                if item.is_aggregate and item.aggregation != "count":
                    raise InvalidRequestError(f"Aggregation {item.aggregation} cannot be applied to *")
                continue
            self._require_column(catalog, item.table_id, item.column)
        for items in (spec.filters, spec.group_by, spec.order_by):
            for item in items:
                self._require_column(catalog, item.table_id, item.column)

    @staticmethod
    def _require_column(catalog: Catalog, table_id: str, column: str) -> None:
        table = catalog.require_table(table_id)
        if not table.has_column(column):
            raise InvalidRequestError(f"Column {column} does not exist in table {table.label}")

    @staticmethod
    def _check_engine(tables: List[ModelTable]) -> str:
        for table in tables:
            if not table.is_executable or not table.runtime_ref:
                raise TableNotExecutableError(
                    table.executable_reason or f"Table {table.table_name} is not executable"
                )
        for table in tables:
            if table.runtime_engine not in SUPPORTED_ENGINES:
                raise EngineNotSupportedError(
                    f"Execution engine {table.runtime_engine} is not supported for {table.label}"
                )

        engines = {t.runtime_engine for t in tables}
        if len(engines) > 1:
            raise CrossSourceBlockedError(
                "Cross-source execution is blocked. Selected tables must belong to the same runtime engine."
            )
        return engines.pop()

    @staticmethod
    def _pick_root(catalog: Catalog, spec: SemanticQuerySpec, required_ids: List[str]) -> ModelTable:
        """Most referenced table in the select list; first occurrence wins ties."""
        counts: Dict[str, int] = {}
        first_seen: Dict[str, int] = {}
        for idx, item in enumerate(spec.select):
            tid = catalog.resolve_table(item.table_id).id
            counts[tid] = counts.get(tid, 0) + 1
            first_seen.setdefault(tid, idx)

        if counts:
            root_id = min(counts, key=lambda tid: (-counts[tid], first_seen[tid]))
            return catalog.resolve_table(root_id)

        for item in list(spec.group_by) + list(spec.order_by):
            return catalog.resolve_table(item.table_id)
        return catalog.resolve_table(required_ids[0])

    @staticmethod
    def _build_joins(engine: str, root: ModelTable, relationships: List[ModelRelationship],
                     table_by_id: Dict[str, ModelTable]) -> Tuple[Dict[str, str], List[str]]:
        alias_by_table_id = {root.id: "t1"}
        join_lines = []
        pending = list(relationships)
        counter = 2

        while pending:
            index = next(
                (
                    i for i, rel in enumerate(pending)
                    if (rel.from_table_id in alias_by_table_id) != (rel.to_table_id in alias_by_table_id)
                ),
                None,
            )
            if index is None:
                raise JoinGraphError("Cannot resolve join graph for selected tables")

            rel = pending.pop(index)
            has_from = rel.from_table_id in alias_by_table_id
            known_id, new_id = (rel.from_table_id, rel.to_table_id) if has_from else (rel.to_table_id, rel.from_table_id)
            known_col, new_col = (rel.from_column, rel.to_column) if has_from else (rel.to_column, rel.from_column)

            new_alias = f"t{counter}"
            counter += 1
            alias_by_table_id[new_id] = new_alias
            join_lines.append(
                f"INNER JOIN {table_by_id[new_id].runtime_ref} {new_alias} "
                f"ON {quote_column_ref(engine, alias_by_table_id[known_id], known_col)} = "
                f"{quote_column_ref(engine, new_alias, new_col)}"
            )

        return alias_by_table_id, join_lines

    # ----------------------------------------------------------- expressions

    def _compile_select(self, catalog: Catalog, spec: SemanticQuerySpec, engine: str, root: ModelTable,
                        alias_by_table_id: Dict[str, str]):
        items = spec.select or [SelectItem(table_id=root.id, column="*", alias="row")]

        parts = []
        output_columns = []
        dimension_ordinals = []
        has_aggregation = False
        has_star = False
        taken: Set[str] = set()

        for idx, item in enumerate(items):
            table = catalog.resolve_table(item.table_id)
            alias = alias_by_table_id[table.id]

            if item.is_star and not item.is_aggregate:
                has_star = True
                parts.append(f"{alias}.*")
                output_columns.append("*")
                continue

            if item.is_star:
                base = "*"
            else:
                base = apply_hierarchy_part(engine, alias, item.column, item.hierarchy_part)

            if item.is_aggregate:
                has_aggregation = True
                if item.aggregation == "countDistinct":
                    expr = f"COUNT(DISTINCT {base})"
                else:
                    expr = f"{item.aggregation.upper()}({base})"
            else:
                expr = base
                dimension_ordinals.append(len(parts) + 1)

            column_label = "all" if item.is_star else item.column
            output = sanitize_alias(item.alias or f"{table.table_name}_{column_label}_{item.aggregation.lower()}_{idx}")
            output = unique_alias(output, taken)
            parts.append(f"{expr} AS {quote_ident(engine, output)}")
            output_columns.append(output)

        return parts, output_columns, dimension_ordinals, has_aggregation, has_star

    @staticmethod
    def _compile_group_by(catalog, spec, engine, alias_by_table_id, dimension_ordinals, has_aggregation) -> List[str]:
        if spec.group_by:
            return [
                apply_hierarchy_part(
                    engine, alias_by_table_id[catalog.resolve_table(item.table_id).id], item.column, item.hierarchy_part
                )
                for item in spec.group_by
            ]
        if has_aggregation:
            return [str(ordinal) for ordinal in dimension_ordinals]
        return []

    @staticmethod
    def _compile_order_by(catalog, spec, engine, alias_by_table_id, dimension_ordinals, has_star) -> List[str]:
        if spec.order_by:
            return [
                f"{apply_hierarchy_part(engine, alias_by_table_id[catalog.resolve_table(item.table_id).id], item.column, item.hierarchy_part)} {item.dir}"
                for item in spec.order_by
            ]
        if has_star:
            return []
        return [f"{ordinal} ASC" for ordinal in dimension_ordinals]

    def _resolve_limit(self, requested: Optional[int]) -> int:
        if requested is None:
            return self.default_limit
        return max(1, min(int(requested), self.max_limit))
