"""
Schema Catalog - Workspace Data Models and Table Resolution
===========================================================

Loads the semantic layer's view of a workspace: the data model, every synced
table exposed through it (ModelTable) and the join edges stored between them
(ModelRelationship).

Guarantees:
1. One default data model per workspace, created idempotently
2. Catalog is reloaded per request (no cross-request caching)
3. All-or-nothing load: tables + relationships come from one transaction,
   otherwise CatalogLoadError
4. Tables without a runtime reference stay visible but are non-executable

Relationship identity is the canonical key: an order-independent form of the
two (table, column) endpoints, used for dedupe and upsert.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from errors import (
    CatalogLoadError,
    InvalidRequestError,
    ModelNotFoundError,
)

logger = logging.getLogger(__name__)

POSTGRES_ENGINE = "postgres"
BIGQUERY_ENGINE = "bigquery"
SUPPORTED_ENGINES = (POSTGRES_ENGINE, BIGQUERY_ENGINE)

DEFAULT_MODEL_NAME = "Workspace Default Model"

RELATIONSHIP_TYPES = ("1-1", "1-n", "n-1", "n-n")
CROSS_FILTER_DIRECTIONS = ("single", "both")
VALID = "valid"
INVALID = "invalid"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def canonical_relationship_key(
    from_table_id: str,
    from_column: str,
    to_table_id: str,
    to_column: str,
) -> str:
    """Order-independent identity of a relationship: key(A->B) == key(B->A)."""
    endpoints = sorted([
        f"{from_table_id}:{str(from_column).strip().lower()}",
        f"{to_table_id}:{str(to_column).strip().lower()}",
    ])
    return "|".join(endpoints)


# ============================================================================
# CATALOG TYPES
# ============================================================================

@dataclass(frozen=True)
class ModelColumn:
    name: str
    type: str = ""


@dataclass(frozen=True)
class ModelTable:
    """One physical table exposed to the semantic layer (immutable per snapshot)"""
    id: str
    synced_table_id: str
    table_name: str
    dataset_name: Optional[str]
    source_id: Optional[str]
    source_type: Optional[str]
    runtime_engine: str
    runtime_ref: Optional[str]
    is_executable: bool
    executable_reason: Optional[str] = None
    runtime_schema: Optional[str] = None
    runtime_table: Optional[str] = None
    project_id: Optional[str] = None
    columns: Tuple[ModelColumn, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.dataset_name or 'dataset'}.{self.table_name}"

    def find_column(self, name: str) -> Optional[ModelColumn]:
        wanted = str(name or "").strip().lower()
        for col in self.columns:
            if col.name.lower() == wanted:
                return col
        return None

    def has_column(self, name: str) -> bool:
        return self.find_column(name) is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "syncedTableId": self.synced_table_id,
            "tableName": self.table_name,
            "datasetName": self.dataset_name,
            "sourceId": self.source_id,
            "sourceType": self.source_type,
            "runtimeEngine": self.runtime_engine,
            "runtimeRef": self.runtime_ref,
            "isExecutable": self.is_executable,
            "executableReason": self.executable_reason,
            "schema": [{"name": c.name, "type": c.type} for c in self.columns],
        }


@dataclass
class ModelRelationship:
    id: str
    data_model_id: str
    from_table_id: str
    from_column: str
    to_table_id: str
    to_column: str
    relationship_type: str
    cross_filter_direction: str = "single"
    validation_status: str = VALID
    invalid_reason: Optional[str] = None
    from_table: Optional[str] = None
    to_table: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def canonical_key(self) -> str:
        return canonical_relationship_key(
            self.from_table_id, self.from_column, self.to_table_id, self.to_column
        )

    @property
    def is_joinable(self) -> bool:
        return self.validation_status == VALID and self.relationship_type != "n-n"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dataModelId": self.data_model_id,
            "fromTable": self.from_table,
            "fromColumn": self.from_column,
            "toTable": self.to_table,
            "toColumn": self.to_column,
            "fromTableId": self.from_table_id,
            "toTableId": self.to_table_id,
            "relationshipType": self.relationship_type,
            "crossFilterDirection": self.cross_filter_direction,
            "validationStatus": self.validation_status,
            "invalidReason": self.invalid_reason,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class DataModel:
    id: str
    workspace_id: str
    name: str
    is_default: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workspaceId": self.workspace_id,
            "name": self.name,
            "isDefault": self.is_default,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class Catalog:
    """One workspace snapshot: model + tables + stored relationships"""
    model: DataModel
    tables: List[ModelTable] = field(default_factory=list)
    relationships: List[ModelRelationship] = field(default_factory=list)

    def resolve_table(self, table_id_or_synced_id: Optional[str]) -> Optional[ModelTable]:
        """Resolve by model-table id first, then by synced-table id."""
        if not table_id_or_synced_id:
            return None
        for table in self.tables:
            if table.id == table_id_or_synced_id:
                return table
        for table in self.tables:
            if table.synced_table_id == table_id_or_synced_id:
                return table
        return None

    def require_table(self, table_id: Optional[str]) -> ModelTable:
        table = self.resolve_table(table_id)
        if table is None:
            raise InvalidRequestError(f"Table not found in data model: {table_id}")
        return table

    def relationship_keys(self) -> set:
        return {rel.canonical_key for rel in self.relationships}


# ============================================================================
# ROW MAPPING
# ============================================================================

def parse_schema_def(value: Any) -> Tuple[ModelColumn, ...]:
    """Parse a synced table's schema definition (JSON text or list of {name, type})."""
    if not value:
        return ()
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Ignoring unparseable schema definition")
            return ()
    if not isinstance(value, list):
        return ()

    columns = []
    for col in value:
        if isinstance(col, dict) and col.get("name"):
            columns.append(ModelColumn(name=str(col["name"]), type=str(col.get("type") or "")))
    return tuple(columns)


def resolve_runtime_engine(catalog_engine: Optional[str], stored_engine: Optional[str], connection_type: Optional[str]) -> str:
    engine = catalog_engine or stored_engine
    if engine:
        return str(engine).lower()
    return BIGQUERY_ENGINE if str(connection_type or "") == "BigQuery" else POSTGRES_ENGINE


def resolve_runtime_ref(
    engine: str,
    catalog_ref: Optional[str],
    stored_ref: Optional[str],
    project_id: Optional[str],
    dataset_name: Optional[str],
    table_name: Optional[str],
) -> Optional[str]:
    ref = catalog_ref or stored_ref
    if ref:
        return ref
    if engine == BIGQUERY_ENGINE and project_id and dataset_name and table_name:
        return f"`{project_id}.{dataset_name}.{table_name}`"
    return None


def _row_to_table(row: Dict[str, Any]) -> ModelTable:
    engine = resolve_runtime_engine(row.get("catalog_engine"), row.get("runtime_engine"), row.get("connection_type"))
    runtime_ref = resolve_runtime_ref(
        engine,
        row.get("catalog_ref"),
        row.get("runtime_ref"),
        row.get("project_id"),
        row.get("dataset_name"),
        row.get("table_name"),
    )

    flag = row.get("is_executable")
    is_executable = flag is None or bool(flag)
    reason = row.get("executable_reason") or None
    if not runtime_ref:
        is_executable = False
        reason = reason or f"No runtime reference available for {row.get('dataset_name') or 'dataset'}.{row.get('table_name')}"

    return ModelTable(
        id=row["id"],
        synced_table_id=row["synced_table_id"],
        table_name=row["table_name"],
        dataset_name=row.get("dataset_name"),
        source_id=row.get("source_id"),
        source_type=row.get("source_type"),
        runtime_engine=engine,
        runtime_ref=runtime_ref,
        is_executable=is_executable,
        executable_reason=None if is_executable else reason,
        runtime_schema=row.get("runtime_schema"),
        runtime_table=row.get("runtime_table"),
        project_id=row.get("project_id"),
        columns=parse_schema_def(row.get("schema_def")),
    )


def _row_to_relationship(row: Dict[str, Any]) -> ModelRelationship:
    return ModelRelationship(
        id=row["id"],
        data_model_id=row["data_model_id"],
        from_table_id=row["from_table_id"],
        from_column=row["from_column"],
        to_table_id=row["to_table_id"],
        to_column=row["to_column"],
        relationship_type=row["relationship_type"],
        cross_filter_direction=row.get("cross_filter_direction") or "single",
        validation_status=row.get("validation_status") or VALID,
        invalid_reason=row.get("invalid_reason"),
        from_table=row.get("from_table"),
        to_table=row.get("to_table"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _row_to_model(row: Dict[str, Any]) -> DataModel:
    return DataModel(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        is_default=bool(row["is_default"]),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


# ============================================================================
# STORE
# ============================================================================

class ModelCatalogStore:
    """Reads and writes the semantic layer tables for one relational store"""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ---------------------------------------------------------------- models

    def ensure_default_model(self, workspace_id: str, name: str = DEFAULT_MODEL_NAME) -> DataModel:
        """Return the workspace default model, creating it if missing (idempotent)."""
        try:
            with self.engine.begin() as conn:
                return self._ensure_default_model(conn, workspace_id, name)
        except SQLAlchemyError as e:
            logger.error(f"Failed to ensure default model for workspace {workspace_id}: {e}")
            raise CatalogLoadError("Failed to load default model") from e

    def _ensure_default_model(self, conn: Connection, workspace_id: str, name: str) -> DataModel:
        existing = self._select_default_model(conn, workspace_id)
        if existing:
            return existing

        now = _utcnow()
        # default_key is unique: concurrent creators converge on one row
        conn.execute(
            text(
                """
                INSERT INTO data_models (id, workspace_id, name, is_default, default_key, created_at, updated_at)
                VALUES (:id, :workspace_id, :name, :is_default, :default_key, :now, :now)
                ON CONFLICT (default_key) DO NOTHING
                """
            ),
            {
                "id": str(uuid.uuid4()),
                "workspace_id": workspace_id,
                "name": name,
                "is_default": True,
                "default_key": workspace_id,
                "now": now,
            },
        )
        model = self._select_default_model(conn, workspace_id)
        logger.info(f"[OK] Default data model ready for workspace {workspace_id}: {model.id}")
        return model

    def _select_default_model(self, conn: Connection, workspace_id: str) -> Optional[DataModel]:
        row = conn.execute(
            text(
                """
                SELECT * FROM data_models
                WHERE workspace_id = :workspace_id AND is_default = :is_default
                ORDER BY created_at ASC
                LIMIT 1
                """
            ),
            {"workspace_id": workspace_id, "is_default": True},
        ).mappings().first()
        return _row_to_model(dict(row)) if row else None

    def _resolve_model(self, conn: Connection, workspace_id: str, data_model_id: Optional[str]) -> DataModel:
        if not data_model_id:
            return self._ensure_default_model(conn, workspace_id, DEFAULT_MODEL_NAME)

        row = conn.execute(
            text("SELECT * FROM data_models WHERE id = :id AND workspace_id = :workspace_id LIMIT 1"),
            {"id": data_model_id, "workspace_id": workspace_id},
        ).mappings().first()
        if not row:
            raise ModelNotFoundError("Data model not found")
        return _row_to_model(dict(row))

    # --------------------------------------------------------------- catalog

    def load_catalog(self, workspace_id: str, data_model_id: Optional[str] = None) -> Catalog:
        """
        Load the full catalog for a workspace model.

        Raises:
            ModelNotFoundError: data_model_id does not belong to the workspace
            CatalogLoadError: the store failed mid-load (no partial catalog)
        """
        try:
            with self.engine.begin() as conn:
                model = self._resolve_model(conn, workspace_id, data_model_id)
                self._sync_model_tables(conn, workspace_id, model.id)
                tables = self._select_tables(conn, workspace_id, model.id)
                relationships = self._select_relationships(conn, model.id)
        except SQLAlchemyError as e:
            logger.error(f"Catalog load failed for workspace {workspace_id}: {e}")
            raise CatalogLoadError("Failed to load model catalog") from e

        logger.info(
            f"[OK] Catalog loaded: model={model.id} tables={len(tables)} relationships={len(relationships)}"
        )
        return Catalog(model=model, tables=tables, relationships=relationships)

    def _sync_model_tables(self, conn: Connection, workspace_id: str, data_model_id: str) -> None:
        """Upsert model_tables from the synced-table registry of the workspace."""
        rows = conn.execute(
            text(
                """
                SELECT st.id AS synced_table_id, st.table_name, st.dataset_name,
                       c.id AS source_id, c.type AS source_type,
                       mrt.runtime_engine AS catalog_engine, mrt.runtime_ref AS catalog_ref
                FROM synced_tables st
                JOIN connections c ON c.id = st.connection_id
                LEFT JOIN model_runtime_tables mrt ON mrt.synced_table_id = st.id
                WHERE st.is_deleted = :deleted
                  AND c.is_deleted = :deleted
                  AND c.workspace_id = :workspace_id
                """
            ),
            {"deleted": False, "workspace_id": workspace_id},
        ).mappings().all()

        now = _utcnow()
        for row in rows:
            engine = resolve_runtime_engine(row["catalog_engine"], None, row["source_type"])
            conn.execute(
                text(
                    """
                    INSERT INTO model_tables (
                        id, data_model_id, synced_table_id, table_name, dataset_name,
                        source_id, source_type, runtime_engine, runtime_ref, created_at, updated_at
                    )
                    VALUES (
                        :id, :data_model_id, :synced_table_id, :table_name, :dataset_name,
                        :source_id, :source_type, :runtime_engine, :runtime_ref, :now, :now
                    )
                    ON CONFLICT (data_model_id, synced_table_id) DO UPDATE SET
                        table_name = excluded.table_name,
                        dataset_name = excluded.dataset_name,
                        source_id = excluded.source_id,
                        source_type = excluded.source_type,
                        runtime_engine = excluded.runtime_engine,
                        runtime_ref = excluded.runtime_ref,
                        updated_at = excluded.updated_at
                    """
                ),
                {
                    "id": str(uuid.uuid4()),
                    "data_model_id": data_model_id,
                    "synced_table_id": row["synced_table_id"],
                    "table_name": row["table_name"],
                    "dataset_name": row["dataset_name"],
                    "source_id": row["source_id"],
                    "source_type": row["source_type"],
                    "runtime_engine": engine,
                    "runtime_ref": row["catalog_ref"],
                    "now": now,
                },
            )

    def _select_tables(self, conn: Connection, workspace_id: str, data_model_id: str) -> List[ModelTable]:
        rows = conn.execute(
            text(
                """
                SELECT mt.id, mt.synced_table_id, mt.table_name, mt.dataset_name,
                       mt.source_id, mt.source_type, mt.runtime_engine, mt.runtime_ref,
                       st.schema_def, c.project_id, c.type AS connection_type,
                       mrt.runtime_engine AS catalog_engine, mrt.runtime_ref AS catalog_ref,
                       mrt.runtime_schema, mrt.runtime_table,
                       mrt.is_executable, mrt.executable_reason
                FROM model_tables mt
                JOIN synced_tables st ON st.id = mt.synced_table_id
                JOIN connections c ON c.id = st.connection_id
                LEFT JOIN model_runtime_tables mrt ON mrt.synced_table_id = st.id
                WHERE mt.data_model_id = :data_model_id
                  AND st.is_deleted = :deleted
                  AND c.is_deleted = :deleted
                  AND c.workspace_id = :workspace_id
                ORDER BY mt.dataset_name, mt.table_name
                """
            ),
            {"data_model_id": data_model_id, "deleted": False, "workspace_id": workspace_id},
        ).mappings().all()
        return [_row_to_table(dict(row)) for row in rows]

    def _select_relationships(self, conn: Connection, data_model_id: str) -> List[ModelRelationship]:
        rows = conn.execute(
            text("SELECT * FROM model_relationships WHERE data_model_id = :data_model_id ORDER BY created_at ASC, id ASC"),
            {"data_model_id": data_model_id},
        ).mappings().all()
        return [_row_to_relationship(dict(row)) for row in rows]

    # --------------------------------------------------------- relationships

    def upsert_relationship(self, relationship: ModelRelationship) -> ModelRelationship:
        """Insert or update in place on (data_model_id, canonical_key)."""
        now = _utcnow()
        params = {
            "id": relationship.id or str(uuid.uuid4()),
            "data_model_id": relationship.data_model_id,
            "canonical_key": relationship.canonical_key,
            "from_table": relationship.from_table,
            "from_column": relationship.from_column,
            "to_table": relationship.to_table,
            "to_column": relationship.to_column,
            "from_table_id": relationship.from_table_id,
            "to_table_id": relationship.to_table_id,
            "relationship_type": relationship.relationship_type,
            "cross_filter_direction": relationship.cross_filter_direction,
            "validation_status": relationship.validation_status,
            "invalid_reason": relationship.invalid_reason,
            "now": now,
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        """
                        INSERT INTO model_relationships (
                            id, data_model_id, canonical_key, from_table, from_column, to_table, to_column,
                            from_table_id, to_table_id, relationship_type, cross_filter_direction,
                            validation_status, invalid_reason, created_at, updated_at
                        )
                        VALUES (
                            :id, :data_model_id, :canonical_key, :from_table, :from_column, :to_table, :to_column,
                            :from_table_id, :to_table_id, :relationship_type, :cross_filter_direction,
                            :validation_status, :invalid_reason, :now, :now
                        )
                        ON CONFLICT (data_model_id, canonical_key) DO UPDATE SET
                            from_table = excluded.from_table,
                            from_column = excluded.from_column,
                            to_table = excluded.to_table,
                            to_column = excluded.to_column,
                            from_table_id = excluded.from_table_id,
                            to_table_id = excluded.to_table_id,
                            relationship_type = excluded.relationship_type,
                            cross_filter_direction = excluded.cross_filter_direction,
                            validation_status = excluded.validation_status,
                            invalid_reason = excluded.invalid_reason,
                            updated_at = excluded.updated_at
                        """
                    ),
                    params,
                )
                row = conn.execute(
                    text(
                        "SELECT * FROM model_relationships "
                        "WHERE data_model_id = :data_model_id AND canonical_key = :canonical_key"
                    ),
                    {"data_model_id": params["data_model_id"], "canonical_key": params["canonical_key"]},
                ).mappings().first()
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert relationship {params['canonical_key']}: {e}")
            raise CatalogLoadError("Failed to save relationship") from e

        saved = _row_to_relationship(dict(row))
        logger.info(
            f"[OK] Relationship saved: {saved.from_table}.{saved.from_column} -> "
            f"{saved.to_table}.{saved.to_column} ({saved.relationship_type}, {saved.validation_status})"
        )
        return saved

    def delete_relationship(self, workspace_id: str, relationship_id: str) -> bool:
        """Delete a relationship owned by the workspace. Returns False when nothing matched."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    text(
                        """
                        DELETE FROM model_relationships
                        WHERE id = :id
                          AND data_model_id IN (SELECT id FROM data_models WHERE workspace_id = :workspace_id)
                        """
                    ),
                    {"id": relationship_id, "workspace_id": workspace_id},
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete relationship {relationship_id}: {e}")
            raise CatalogLoadError("Failed to delete relationship") from e
        return result.rowcount > 0

    # ------------------------------------------------------------- registry

    def register_connection(self, workspace_id: str, connection_type: str, project_id: Optional[str] = None,
                            name: Optional[str] = None, connection_id: Optional[str] = None) -> str:
        """Record a warehouse connection in the synced-table registry."""
        connection_id = connection_id or str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO connections (id, workspace_id, name, type, project_id, is_deleted) "
                    "VALUES (:id, :workspace_id, :name, :type, :project_id, :is_deleted)"
                ),
                {
                    "id": connection_id,
                    "workspace_id": workspace_id,
                    "name": name or connection_type,
                    "type": connection_type,
                    "project_id": project_id,
                    "is_deleted": False,
                },
            )
        return connection_id

    def register_synced_table(self, connection_id: str, table_name: str, dataset_name: Optional[str],
                              columns: List[Dict[str, str]], synced_table_id: Optional[str] = None) -> str:
        """Record a synced table and its column schema."""
        synced_table_id = synced_table_id or str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO synced_tables (id, connection_id, table_name, dataset_name, schema_def, is_deleted) "
                    "VALUES (:id, :connection_id, :table_name, :dataset_name, :schema_def, :is_deleted)"
                ),
                {
                    "id": synced_table_id,
                    "connection_id": connection_id,
                    "table_name": table_name,
                    "dataset_name": dataset_name,
                    "schema_def": json.dumps(columns),
                    "is_deleted": False,
                },
            )
        return synced_table_id

    def register_runtime_table(self, synced_table_id: str, runtime_engine: str, runtime_ref: Optional[str],
                               is_executable: bool = True, executable_reason: Optional[str] = None,
                               runtime_schema: Optional[str] = None, runtime_table: Optional[str] = None) -> None:
        """Record where a synced table can be queried at runtime."""
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO model_runtime_tables (
                        synced_table_id, runtime_engine, runtime_ref, runtime_schema,
                        runtime_table, is_executable, executable_reason
                    )
                    VALUES (
                        :synced_table_id, :runtime_engine, :runtime_ref, :runtime_schema,
                        :runtime_table, :is_executable, :executable_reason
                    )
                    ON CONFLICT (synced_table_id) DO UPDATE SET
                        runtime_engine = excluded.runtime_engine,
                        runtime_ref = excluded.runtime_ref,
                        runtime_schema = excluded.runtime_schema,
                        runtime_table = excluded.runtime_table,
                        is_executable = excluded.is_executable,
                        executable_reason = excluded.executable_reason
                    """
                ),
                {
                    "synced_table_id": synced_table_id,
                    "runtime_engine": runtime_engine,
                    "runtime_ref": runtime_ref,
                    "runtime_schema": runtime_schema,
                    "runtime_table": runtime_table,
                    "is_executable": is_executable,
                    "executable_reason": executable_reason,
                },
            )
