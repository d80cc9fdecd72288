"""
Relational Store Access - Schema + Postgres Execution
=====================================================

Owns the SQLAlchemy engine for the workspace relational store:
1. Table definitions for the semantic layer (data models, model tables,
   relationships) and the synced-table registry it reads from
2. Read-only execution of compiled or scoped SQL against the store

All statements elsewhere are written as text() and stay portable between
PostgreSQL and SQLite, so the same store code runs under tests.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from errors import QueryExecutionError

logger = logging.getLogger(__name__)

metadata = MetaData()

# ============================================================================
# SYNCED-TABLE REGISTRY (written by warehouse sync, read here)
# ============================================================================

connections = Table(
    "connections",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("workspace_id", String(64), nullable=False, index=True),
    Column("name", String(255)),
    Column("type", String(64), nullable=False),
    Column("project_id", String(255)),
    Column("is_deleted", Boolean, nullable=False, default=False),
)

synced_tables = Table(
    "synced_tables",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("connection_id", String(64), nullable=False, index=True),
    Column("table_name", String(255), nullable=False),
    Column("dataset_name", String(255)),
    Column("schema_def", Text),
    Column("is_deleted", Boolean, nullable=False, default=False),
)

model_runtime_tables = Table(
    "model_runtime_tables",
    metadata,
    Column("synced_table_id", String(64), primary_key=True),
    Column("runtime_engine", String(32)),
    Column("runtime_ref", Text),
    Column("runtime_schema", String(255)),
    Column("runtime_table", String(255)),
    Column("is_executable", Boolean, nullable=False, default=True),
    Column("executable_reason", Text),
)

# ============================================================================
# SEMANTIC LAYER
# ============================================================================

data_models = Table(
    "data_models",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("workspace_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("is_default", Boolean, nullable=False, default=False),
    # workspace_id for the default model, NULL otherwise: one default per workspace
    Column("default_key", String(64), unique=True),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

model_tables = Table(
    "model_tables",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("data_model_id", String(64), nullable=False),
    Column("synced_table_id", String(64), nullable=False),
    Column("table_name", String(255), nullable=False),
    Column("dataset_name", String(255)),
    Column("source_id", String(64)),
    Column("source_type", String(64)),
    Column("runtime_engine", String(32)),
    Column("runtime_ref", Text),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    UniqueConstraint("data_model_id", "synced_table_id", name="uq_model_tables_model_synced"),
)

model_relationships = Table(
    "model_relationships",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("data_model_id", String(64), nullable=False, index=True),
    Column("canonical_key", Text, nullable=False),
    Column("from_table", String(255)),
    Column("from_column", String(255), nullable=False),
    Column("to_table", String(255)),
    Column("to_column", String(255), nullable=False),
    Column("from_table_id", String(64), nullable=False),
    Column("to_table_id", String(64), nullable=False),
    Column("relationship_type", String(8), nullable=False),
    Column("cross_filter_direction", String(8), nullable=False, default="single"),
    Column("validation_status", String(16), nullable=False, default="valid"),
    Column("invalid_reason", Text),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    UniqueConstraint("data_model_id", "canonical_key", name="uq_model_relationships_canonical"),
)


def create_store_engine(database_url: str) -> Engine:
    """Create the engine for the relational store (in-memory SQLite shares one connection)."""
    if database_url == "sqlite://" or (database_url.startswith("sqlite") and ":memory:" in database_url):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


def create_schema(engine: Engine) -> None:
    """Create semantic layer and registry tables if they do not exist."""
    metadata.create_all(engine)
    logger.info(f"[OK] Store schema ensured ({len(metadata.tables)} tables)")


class DatabaseManager:
    """Executes read-only statements against the workspace relational store"""

    def __init__(self, engine: Engine):
        self.engine = engine

    def execute_query(self, sql: str, params: Optional[Dict[str, Any]] = None,
                      literal_colons: bool = False, max_rows: Optional[int] = None) -> Dict[str, Any]:
        """
        Execute one statement and return its rows.

        Hand-written SQL passes literal_colons=True so ":" in literals and
        "::" casts are not read as bind parameters. With max_rows the result is
        streamed and reading stops after that many rows.

        Returns:
            Dict with data (list of row dicts), columns and row_count

        Raises:
            QueryExecutionError: the store rejected or failed the statement
        """
        try:
            with self.engine.connect() as conn:
                statement = sql.replace(":", "\\:") if literal_colons else sql
                if max_rows:
                    conn = conn.execution_options(stream_results=True)
                result = conn.execute(text(statement), params or {})
                columns = list(result.keys())
                rows = result.fetchmany(max_rows) if max_rows else result.fetchall()
                data = [dict(row._mapping) for row in rows]
        except SQLAlchemyError as e:
            err_msg = str(getattr(e, "orig", None) or e)
            logger.error(f"Query execution failed: {err_msg}")
            raise QueryExecutionError(f"Query execution failed: {err_msg}") from e

        logger.info(f"Query executed: {len(data)} rows returned")
        return {
            "data": data,
            "columns": columns,
            "row_count": len(data),
        }
