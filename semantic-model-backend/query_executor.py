"""
Cross-Engine Query Executor
===========================

Runs a QueryPlan on the one engine the plan targets:
- postgres -> DatabaseManager (SQLAlchemy text() with bound params)
- bigquery -> BigQueryClient (REST jobs API)

Hand-written SQL takes a stricter route:
1. Read-only check (sql_validator)                   -> UNSAFE_SQL
2. Non-empty table scope                             -> MISSING_TABLE_SCOPE
3. Validation plan over the scope (engine, executability, join paths)
4. Scoped SQL guard rewrite for that plan's tables   -> SQL_SCOPE_*
5. Top-level LIMIT clamped to the planner's max limit

Every engine also stops reading rows at that limit.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from bigquery_client import BigQueryClient, RowsCallback
from database import DatabaseManager
from errors import EngineNotSupportedError, MissingTableScopeError
from model_catalog import BIGQUERY_ENGINE, POSTGRES_ENGINE, Catalog
from query_planner import QueryPlan, QueryPlanBuilder
from query_spec import ExecuteQueryRequest, SelectItem, SemanticQuerySpec
from scoped_sql_guard import ScopedSQLGuard, scoped_tables_for
from sql_validator import enforce_row_limit, validate_read_only

logger = logging.getLogger(__name__)


class QueryExecutor:
    """Executes compiled plans and scoped hand-written SQL"""

    def __init__(self, database: DatabaseManager, planner: QueryPlanBuilder,
                 bigquery: Optional[BigQueryClient] = None):
        self.database = database
        self.planner = planner
        self.bigquery = bigquery

    @property
    def enabled_engines(self) -> List[str]:
        engines = [POSTGRES_ENGINE]
        if self.bigquery is not None:
            engines.append(BIGQUERY_ENGINE)
        return engines

    async def execute_plan(self, plan: QueryPlan, on_rows: Optional[RowsCallback] = None,
                           cancel_event: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        """
        Run a plan on its engine.

        Returns:
            Dict with rows, rowCount and columns

        Raises:
            EngineNotSupportedError: the plan's engine is not enabled
            QueryExecutionError (and subclasses): the engine failed
        """
        if plan.engine == POSTGRES_ENGINE:
            result = self.database.execute_query(
                plan.sql, plan.params, literal_colons=not plan.params, max_rows=self.planner.max_limit
            )
        elif plan.engine == BIGQUERY_ENGINE and self.bigquery is not None:
            result = await self.bigquery.execute_query(
                plan.sql, limit=self.planner.max_limit, on_rows=on_rows, cancel_event=cancel_event
            )
        else:
            raise EngineNotSupportedError(f"Execution engine {plan.engine} is not enabled")

        logger.info(f"[OK] Executed plan on {plan.engine}: {result['row_count']} rows")
        return {
            "rows": result["data"],
            "rowCount": result["row_count"],
            "columns": result["columns"],
        }

    def validation_plan(self, catalog: Catalog, table_ids: List[str]) -> QueryPlan:
        """Plan over the raw-SQL table scope; its checks decide whether the SQL may run."""
        if not table_ids:
            raise MissingTableScopeError("tableIds are required when executing raw SQL")
        spec = SemanticQuerySpec(
            table_ids=table_ids,
            select=[SelectItem(table_id=table_ids[0], column="*", alias="row")],
            limit=1,
        )
        return self.planner.build_plan(catalog, spec)

    def prepare_raw(self, catalog: Catalog, table_ids: List[str], raw_sql: str) -> QueryPlan:
        """Validate, scope and rewrite hand-written SQL into a plan that runs it."""
        sql = validate_read_only(raw_sql)
        plan = self.validation_plan(catalog, table_ids)
        guard = ScopedSQLGuard(scoped_tables_for(plan.selected_tables))
        scoped_sql = enforce_row_limit(guard.rewrite(sql), self.planner.max_limit)
        return replace(plan, sql=scoped_sql, params={}, output_columns=[])

    async def execute_raw(self, catalog: Catalog, table_ids: List[str], raw_sql: str,
                          on_rows: Optional[RowsCallback] = None,
                          cancel_event: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        plan = self.prepare_raw(catalog, table_ids, raw_sql)
        result = await self.execute_plan(plan, on_rows=on_rows, cancel_event=cancel_event)
        return {**result, "plan": plan}

    async def execute_request(self, catalog: Catalog, request: ExecuteQueryRequest,
                              cancel_event: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        """Dispatch an execute request: raw SQL when present, semantic query otherwise."""
        if request.raw_sql:
            return await self.execute_raw(catalog, request.table_ids, request.raw_sql, cancel_event=cancel_event)

        plan = self.planner.build_plan(catalog, request)
        result = await self.execute_plan(plan, cancel_event=cancel_event)
        return {**result, "plan": plan}
