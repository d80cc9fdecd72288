"""
Runtime configuration for the semantic model backend.

Values come from the process environment, with a local .env file loaded
first via python-dotenv.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

DEFAULT_BIGQUERY_API_BASE = "https://bigquery.googleapis.com/bigquery/v2"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# this service's modules log under their own (flat) module names
APP_LOGGERS = (
    "main",
    "bigquery_client",
    "column_profiler",
    "database",
    "model_catalog",
    "query_executor",
    "query_planner",
    "relationship_inference",
    "scoped_sql_guard",
    "sql_validator",
)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class Settings:
    """Application settings resolved once at startup"""
    database_url: Optional[str] = None
    bigquery_api_base: str = DEFAULT_BIGQUERY_API_BASE
    bigquery_project_id: Optional[str] = None
    bigquery_access_token: Optional[str] = None
    query_default_limit: int = 1000
    query_max_limit: int = 5000
    profile_distinct_limit: int = 20000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @property
    def bigquery_enabled(self) -> bool:
        return bool(self.bigquery_access_token)

    @property
    def enabled_engines(self) -> List[str]:
        engines = ["postgres"]
        if self.bigquery_enabled:
            engines.append("bigquery")
        return engines


def load_settings() -> Settings:
    """Load settings from .env and the environment."""
    load_dotenv()

    origins = os.getenv("CORS_ORIGINS", "*")
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        bigquery_api_base=os.getenv("BIGQUERY_API_BASE", DEFAULT_BIGQUERY_API_BASE).rstrip("/"),
        bigquery_project_id=os.getenv("BIGQUERY_PROJECT_ID") or None,
        bigquery_access_token=os.getenv("BIGQUERY_ACCESS_TOKEN") or None,
        query_default_limit=_int_env("QUERY_DEFAULT_LIMIT", 1000),
        query_max_limit=_int_env("QUERY_MAX_LIMIT", 5000),
        profile_distinct_limit=_int_env("PROFILE_DISTINCT_LIMIT", 20000),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        log_level=log_level,
    )


def configure_logging(settings: Settings) -> None:
    """Libraries log at WARNING, this service's modules at LOG_LEVEL."""
    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(settings.log_level)
