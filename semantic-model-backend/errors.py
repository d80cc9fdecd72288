"""
Semantic Layer Error Taxonomy
=============================

Every failure raised by the catalog, inference engine, planner, executor or
scoped SQL guard is a SemanticLayerError. The HTTP layer renders each one as
{"success": false, "message": ..., "code": ...} with the carried status code,
so callers can show a specific remediation per code.

Categories:
1. Input validation      -> 400 INVALID_REQUEST
2. Planning failures     -> 400 with a distinct code per cause
3. Security rejections   -> 400 (unsafe or out-of-scope raw SQL)
4. Remote failures       -> 502 / 401 / 499
"""

from typing import Iterable, List, Optional


class SemanticLayerError(Exception):
    """Base error carrying a machine-readable code and an HTTP status."""

    code = "PLAN_BUILD_FAILED"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message, "code": self.code}


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

class InvalidRequestError(SemanticLayerError):
    code = "INVALID_REQUEST"
    status_code = 400


class ModelNotFoundError(SemanticLayerError):
    code = "MODEL_NOT_FOUND"
    status_code = 404


class RelationshipNotFoundError(SemanticLayerError):
    code = "RELATIONSHIP_NOT_FOUND"
    status_code = 404


class CatalogLoadError(SemanticLayerError):
    code = "CATALOG_LOAD_FAILED"
    status_code = 500


# ---------------------------------------------------------------------------
# Planning failures
# ---------------------------------------------------------------------------

class PlanBuildError(SemanticLayerError):
    code = "PLAN_BUILD_FAILED"


class TableNotExecutableError(PlanBuildError):
    code = "TABLE_NOT_EXECUTABLE"


class EngineNotSupportedError(PlanBuildError):
    code = "ENGINE_NOT_SUPPORTED"


class CrossSourceBlockedError(PlanBuildError):
    code = "CROSS_SOURCE_BLOCKED"


class NoRelationshipPathError(PlanBuildError):
    code = "NO_RELATIONSHIP_PATH"


class JoinGraphError(PlanBuildError):
    code = "JOIN_GRAPH_ERROR"


# ---------------------------------------------------------------------------
# Security rejections
# ---------------------------------------------------------------------------

class UnsafeSQLError(SemanticLayerError):
    code = "UNSAFE_SQL"


class MissingTableScopeError(SemanticLayerError):
    code = "MISSING_TABLE_SCOPE"


class ScopedReferenceError(SemanticLayerError):
    """Raised by the scoped SQL guard. Carries the offending identifiers."""

    def __init__(self, message: str, identifiers: Iterable[str]):
        super().__init__(message)
        self.identifiers: List[str] = list(identifiers)


class AmbiguousTableReferenceError(ScopedReferenceError):
    code = "SQL_SCOPE_AMBIGUOUS"

    def __init__(self, identifiers: Iterable[str]):
        identifiers = list(identifiers)
        super().__init__(
            f"Ambiguous table reference: {', '.join(identifiers)}. "
            f"Please use dataset.table or project.dataset.table.",
            identifiers,
        )


class BlockedTableReferenceError(ScopedReferenceError):
    code = "SQL_SCOPE_BLOCKED"

    def __init__(self, identifiers: Iterable[str]):
        identifiers = list(identifiers)
        super().__init__(
            f"Query blocked: only selected tables are allowed. "
            f"Invalid reference(s): {', '.join(identifiers)}.",
            identifiers,
        )


# ---------------------------------------------------------------------------
# Execution failures
# ---------------------------------------------------------------------------

class QueryExecutionError(SemanticLayerError):
    code = "QUERY_EXECUTION_FAILED"
    status_code = 502


class WarehouseAuthError(QueryExecutionError):
    code = "WAREHOUSE_AUTH_FAILED"
    status_code = 401


class QueryCancelledError(QueryExecutionError):
    """A cancelled warehouse fetch. rows_delivered counts rows already handed to callbacks."""

    code = "QUERY_CANCELLED"
    status_code = 499

    def __init__(self, message: str = "Query was cancelled", rows_delivered: int = 0):
        super().__init__(message)
        self.rows_delivered = rows_delivered
