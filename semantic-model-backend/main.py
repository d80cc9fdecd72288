"""
Semantic Model Backend - Data Model & Query Planning API
========================================================

Workspace-scoped semantic layer over synced warehouse tables:
- Data model catalog (default model per workspace, model tables)
- Relationships: explicit create/delete, read-time revalidation, auto-detect
- Query planning: SemanticQuerySpec -> one SQL statement for one engine
- Execution: compiled plans and scoped read-only SQL (postgres / bigquery)

Request context (workspace, role, email) comes from headers set by the
upstream auth layer.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from bigquery_client import AccessTokenProvider, BigQueryClient
from column_profiler import SQLColumnProfiler
from config import Settings, configure_logging, load_settings
from database import DatabaseManager, create_schema, create_store_engine
from env_guard import validate_environment
from errors import (
    InvalidRequestError,
    PlanBuildError,
    QueryExecutionError,
    RelationshipNotFoundError,
    SemanticLayerError,
)
from model_catalog import ModelCatalogStore, ModelRelationship
from query_executor import QueryExecutor
from query_planner import QueryPlanBuilder
from query_spec import (
    AutoDetectRequest,
    CreateRelationshipRequest,
    ExecuteQueryRequest,
    SemanticQuerySpec,
)
from relationship_inference import RelationshipInferenceEngine

# CORS and log levels are fixed when the app is created; the rest is re-read at startup
APP_SETTINGS = load_settings()
configure_logging(APP_SETTINGS)
logger = logging.getLogger(__name__)

EDITOR_ROLES = {"Admin", "Editor"}

HTTP_ERROR_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    503: "SERVICE_UNAVAILABLE",
}


@dataclass
class Services:
    settings: Settings
    engine: Engine
    store: ModelCatalogStore
    inference: RelationshipInferenceEngine
    planner: QueryPlanBuilder
    executor: QueryExecutor


def build_services(settings: Settings, engine: Optional[Engine] = None) -> Services:
    """Wire store, inference, planner and executor around one store engine."""
    engine = engine or create_store_engine(settings.database_url)
    create_schema(engine)

    planner = QueryPlanBuilder(settings.query_default_limit, settings.query_max_limit)
    bigquery = None
    if settings.bigquery_enabled:
        bigquery = BigQueryClient(
            settings.bigquery_project_id,
            AccessTokenProvider(settings.bigquery_access_token),
            api_base=settings.bigquery_api_base,
        )

    return Services(
        settings=settings,
        engine=engine,
        store=ModelCatalogStore(engine),
        inference=RelationshipInferenceEngine(SQLColumnProfiler(engine, settings.profile_distinct_limit)),
        planner=planner,
        executor=QueryExecutor(DatabaseManager(engine), planner, bigquery),
    )


services: Optional[Services] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, close the warehouse session on shutdown"""
    global services

    try:
        logger.info("Initializing Semantic Model Backend...")
        validate_environment(strict=True)
        settings = load_settings()
        services = build_services(settings)

        logger.info("=" * 60)
        logger.info("Semantic Model Backend Ready!")
        logger.info(f"Engines: {', '.join(services.executor.enabled_engines)}")
        logger.info(f"Query limit: default {settings.query_default_limit}, max {settings.query_max_limit}")
        logger.info("=" * 60)
    except Exception as e:
        logger.error(f"Startup failed: {str(e)}")
        raise

    yield

    logger.info("Shutting down Semantic Model Backend...")
    if services is not None and services.executor.bigquery is not None:
        await services.executor.bigquery.close()


app = FastAPI(
    title="Semantic Model Backend",
    description="Data model catalog, relationship inference and query planning",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=APP_SETTINGS.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# ERROR ENVELOPE
# ============================================================================

@app.exception_handler(SemanticLayerError)
async def semantic_layer_error_handler(request: Request, exc: SemanticLayerError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())[1:])
        details.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "; ".join(details) or "Invalid request",
            "code": "INVALID_REQUEST",
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": str(exc.detail),
            "code": HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        },
    )


# ============================================================================
# DEPENDENCIES
# ============================================================================

@dataclass
class RequestContext:
    workspace_id: str
    user_role: Optional[str] = None
    user_email: Optional[str] = None

    @property
    def can_edit(self) -> bool:
        return self.user_role in EDITOR_ROLES


def get_services() -> Services:
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return services


def get_request_context(
    x_workspace_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> RequestContext:
    if not x_workspace_id or not x_workspace_id.strip():
        raise HTTPException(status_code=401, detail="Missing workspace context")
    return RequestContext(x_workspace_id.strip(), x_user_role, x_user_email)


def require_editor(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    if not ctx.can_edit:
        raise HTTPException(status_code=403, detail="Only Admin or Editor can manage relationships")
    return ctx


# ============================================================================
# ROUTES
# ============================================================================

@app.get("/health")
async def health_check(svc: Services = Depends(get_services)):
    """Health check endpoint"""
    return {
        "success": True,
        "data": {
            "status": "healthy",
            "engines": svc.executor.enabled_engines,
        },
    }


@app.get("/default-model")
async def get_default_model(
    ctx: RequestContext = Depends(get_request_context),
    svc: Services = Depends(get_services),
):
    model = svc.store.ensure_default_model(ctx.workspace_id)
    return {"success": True, "data": model.to_dict()}


@app.get("/tables")
async def list_tables(
    data_model_id: Optional[str] = Query(default=None, alias="dataModelId"),
    ctx: RequestContext = Depends(get_request_context),
    svc: Services = Depends(get_services),
):
    catalog = svc.store.load_catalog(ctx.workspace_id, data_model_id)
    return {
        "success": True,
        "data": [t.to_dict() for t in catalog.tables],
        "meta": {"dataModelId": catalog.model.id, "dataModelName": catalog.model.name},
    }


@app.get("/relationships")
async def list_relationships(
    data_model_id: Optional[str] = Query(default=None, alias="dataModelId"),
    ctx: RequestContext = Depends(get_request_context),
    svc: Services = Depends(get_services),
):
    catalog = svc.store.load_catalog(ctx.workspace_id, data_model_id)
    relationships = [svc.inference.revalidate_relationship(r, catalog) for r in catalog.relationships]
    return {
        "success": True,
        "data": [r.to_dict() for r in relationships],
        "meta": {"dataModelId": catalog.model.id, "total": len(relationships)},
    }


@app.post("/relationships", status_code=201)
async def create_relationship(
    request: CreateRelationshipRequest,
    ctx: RequestContext = Depends(require_editor),
    svc: Services = Depends(get_services),
):
    catalog = svc.store.load_catalog(ctx.workspace_id, request.data_model_id)
    from_table = catalog.require_table(request.from_table_id)
    to_table = catalog.require_table(request.to_table_id)
    if from_table.id == to_table.id and request.from_column.lower() == request.to_column.lower():
        raise InvalidRequestError("A relationship cannot join a column to itself")

    evaluation = svc.inference.evaluate_relationship(
        from_table, request.from_column, to_table, request.to_column, request.relationship_type
    )
    relationship = ModelRelationship(
        id=str(uuid.uuid4()),
        data_model_id=catalog.model.id,
        from_table_id=from_table.id,
        from_column=from_table.find_column(request.from_column).name,
        to_table_id=to_table.id,
        to_column=to_table.find_column(request.to_column).name,
        relationship_type=evaluation.relationship_type,
        cross_filter_direction=request.cross_filter_direction,
        validation_status=evaluation.validation_status,
        invalid_reason=evaluation.invalid_reason,
        from_table=from_table.table_name,
        to_table=to_table.table_name,
    )
    saved = svc.store.upsert_relationship(relationship)
    return {
        "success": True,
        "data": saved.to_dict(),
        "meta": {"confidence": evaluation.confidence, "reasons": evaluation.reasons},
    }


@app.delete("/relationships/{relationship_id}")
async def delete_relationship(
    relationship_id: str,
    ctx: RequestContext = Depends(require_editor),
    svc: Services = Depends(get_services),
):
    if not svc.store.delete_relationship(ctx.workspace_id, relationship_id):
        raise RelationshipNotFoundError("Relationship not found")
    logger.info(f"[OK] Relationship deleted: {relationship_id}")
    return {"success": True, "data": {"id": relationship_id}}


@app.post("/relationships/auto-detect")
async def auto_detect_relationships(
    request: Optional[AutoDetectRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
    svc: Services = Depends(get_services),
):
    request = request or AutoDetectRequest()
    catalog = svc.store.load_catalog(ctx.workspace_id, request.data_model_id)
    suggestions = svc.inference.suggest_relationships(catalog, request.table_ids)
    return {
        "success": True,
        "data": [s.to_dict() for s in suggestions],
        "meta": {"dataModelId": catalog.model.id, "total": len(suggestions)},
    }


@app.post("/query/plan")
async def plan_query(
    request: SemanticQuerySpec,
    ctx: RequestContext = Depends(get_request_context),
    svc: Services = Depends(get_services),
):
    catalog = svc.store.load_catalog(ctx.workspace_id, request.data_model_id)
    try:
        plan = svc.planner.build_plan(catalog, request)
    except SemanticLayerError:
        raise
    except Exception as e:
        logger.error(f"Plan build failed: {str(e)}")
        raise PlanBuildError(f"Failed to build query plan: {str(e)}") from e
    return {"success": True, "data": plan.to_dict()}


@app.post("/query/execute")
async def execute_query(
    request: ExecuteQueryRequest,
    ctx: RequestContext = Depends(get_request_context),
    svc: Services = Depends(get_services),
):
    catalog = svc.store.load_catalog(ctx.workspace_id, request.data_model_id)
    try:
        result = await svc.executor.execute_request(catalog, request)
    except SemanticLayerError:
        raise
    except Exception as e:
        logger.error(f"Query execution failed: {str(e)}")
        raise QueryExecutionError(f"Query execution failed: {str(e)}") from e

    return {
        "success": True,
        "data": {
            "rows": result["rows"],
            "rowCount": result["rowCount"],
            "columns": result["columns"],
            "plan": result["plan"].to_dict(),
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
