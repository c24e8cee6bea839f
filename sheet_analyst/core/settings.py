from __future__ import annotations

import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    """Runtime configuration for the analysis service."""

    openai_api_key: str | None = None
    openai_base_url: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_timeout_s: float = Field(default=60.0, gt=0)
    llm_temperature: float = 0.1

    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)
    fetch_timeout_s: float = Field(default=30.0, gt=0)
    fetch_retries: int = Field(default=3, ge=0)
    fetch_backoff_s: float = Field(default=0.5, ge=0)

    sample_head: int = Field(default=100, ge=1)
    sample_random: int = Field(default=100, ge=0)
    sample_seed: int = 0
    schema_samples: int = Field(default=3, ge=0)
    schema_budget_chars: int = Field(default=6000, ge=200)

    query_timeout_s: float = Field(default=10.0, gt=0)
    max_result_rows: int = Field(default=500, ge=1)
    max_queries: int = Field(default=8, ge=1)

    table_cache_entries: int = Field(default=64, ge=1)
    table_cache_cells: int = Field(default=5_000_000, ge=1)
    table_cache_ttl_s: float = Field(default=900.0, gt=0)
    result_cache_entries: int = Field(default=256, ge=1)
    result_cache_ttl_s: float = Field(default=300.0, gt=0)

    session_policy: Literal["queue", "reject"] = "queue"
    session_max_queue: int = Field(default=16, ge=0)
    session_idle_ttl_s: float = Field(default=1800.0, gt=0)
    cpu_workers: int = Field(default=4, ge=1)

    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"])

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        defaults = cls()

        origins_env = os.getenv("API_CORS_ORIGINS", "")
        origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]

        policy = (os.getenv("SHEETS_SESSION_POLICY") or defaults.session_policy).strip().lower()
        if policy not in {"queue", "reject"}:
            policy = defaults.session_policy

        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            llm_model=os.getenv("SHEETS_LLM_MODEL") or defaults.llm_model,
            llm_timeout_s=_env_float("SHEETS_LLM_TIMEOUT", defaults.llm_timeout_s),
            llm_temperature=_env_float("SHEETS_LLM_TEMPERATURE", defaults.llm_temperature),
            max_file_size=_env_int("SHEETS_MAX_FILE_SIZE", defaults.max_file_size),
            fetch_timeout_s=_env_float("SHEETS_FETCH_TIMEOUT", defaults.fetch_timeout_s),
            fetch_retries=_env_int("SHEETS_FETCH_RETRIES", defaults.fetch_retries),
            fetch_backoff_s=_env_float("SHEETS_FETCH_BACKOFF", defaults.fetch_backoff_s),
            sample_head=_env_int("SHEETS_SAMPLE_HEAD", defaults.sample_head),
            sample_random=_env_int("SHEETS_SAMPLE_RANDOM", defaults.sample_random),
            sample_seed=_env_int("SHEETS_SAMPLE_SEED", defaults.sample_seed),
            schema_samples=_env_int("SHEETS_SCHEMA_SAMPLES", defaults.schema_samples),
            schema_budget_chars=_env_int("SHEETS_SCHEMA_BUDGET", defaults.schema_budget_chars),
            query_timeout_s=_env_float("SHEETS_QUERY_TIMEOUT", defaults.query_timeout_s),
            max_result_rows=_env_int("SHEETS_MAX_RESULT_ROWS", defaults.max_result_rows),
            max_queries=_env_int("SHEETS_MAX_QUERIES", defaults.max_queries),
            table_cache_entries=_env_int("SHEETS_TABLE_CACHE_ENTRIES", defaults.table_cache_entries),
            table_cache_cells=_env_int("SHEETS_TABLE_CACHE_CELLS", defaults.table_cache_cells),
            table_cache_ttl_s=_env_float("SHEETS_TABLE_CACHE_TTL", defaults.table_cache_ttl_s),
            result_cache_entries=_env_int("SHEETS_RESULT_CACHE_ENTRIES", defaults.result_cache_entries),
            result_cache_ttl_s=_env_float("SHEETS_RESULT_CACHE_TTL", defaults.result_cache_ttl_s),
            session_policy=policy,  # type: ignore[arg-type]
            session_max_queue=_env_int("SHEETS_SESSION_MAX_QUEUE", defaults.session_max_queue),
            session_idle_ttl_s=_env_float("SHEETS_SESSION_IDLE_TTL", defaults.session_idle_ttl_s),
            cpu_workers=_env_int("SHEETS_CPU_WORKERS", defaults.cpu_workers),
            log_level=(os.getenv("LOG_LEVEL") or defaults.log_level).upper(),
            cors_origins=origins or defaults.cors_origins,
        )
