"""Per-request analysis pipeline: fetch, parse, load, plan, execute, assemble."""
from __future__ import annotations

import asyncio
import logging
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath
from typing import Any, Awaitable, Callable, Iterator, Sequence
from urllib.parse import unquote, urlsplit

from sheet_analyst.application.answers import assemble_answer
from sheet_analyst.application.executor import QueryExecutor
from sheet_analyst.application.planner import QueryPlanner, plan_fingerprint
from sheet_analyst.application.sessions import SessionCoordinator
from sheet_analyst.core.errors import (
    AnalysisCancelled,
    LoadError,
    NoTablesError,
    QueryTimeout,
    SheetAnalysisError,
)
from sheet_analyst.core.hashing import fingerprint, strip_signature
from sheet_analyst.core.name_normalize import clean_table_name
from sheet_analyst.core.settings import Settings
from sheet_analyst.domain.plans import ExecutionOutcome, QueryResult
from sheet_analyst.domain.sessions import CancelToken, SessionTicket
from sheet_analyst.domain.tables import AnalyzedWorkbook, SchemaDescription, Table, WorkbookRef
from sheet_analyst.extractors import schema_infer, workbook as workbook_parser
from sheet_analyst.infrastructure.cache import SingleFlightCache
from sheet_analyst.infrastructure.fetcher import WorkbookFetcher
from sheet_analyst.infrastructure.llm import get_language_model
from sheet_analyst.infrastructure.store import EphemeralStoreManager, StoreHandle
from sheet_analyst.workers.pool import CpuPool

logger = logging.getLogger(__name__)

_RESERVED_NAME = re.compile(r"^result_\d+$")


@dataclass(frozen=True, slots=True)
class LoadedTable:
    workbook_url: str
    table: Table
    schema: SchemaDescription


@dataclass(frozen=True, slots=True)
class CachedAnalysis:
    """Value stored in the result cache."""

    outcome: ExecutionOutcome
    load_errors: tuple[LoadError, ...] = ()


@dataclass(slots=True)
class AnalysisReport:
    chat_id: str
    status: str
    answer: str
    comment: str | None
    tables: list[LoadedTable]
    results: tuple[QueryResult, ...]
    errors: list[SheetAnalysisError] = field(default_factory=list)
    skipped_sheets: list[dict[str, str]] = field(default_factory=list)
    cached: bool = False
    elapsed_ms: float = 0.0


def _file_stem(url: str) -> str:
    name = PurePosixPath(unquote(urlsplit(url).path)).stem
    return name or "Sheet1"


@contextmanager
def _step(name: str) -> Iterator[None]:
    started = time.perf_counter()
    yield
    logger.info("event=step name=%s elapsed_ms=%.0f", name, (time.perf_counter() - started) * 1000)


async def _through_cache(
    cache: SingleFlightCache,
    key: str,
    compute: Callable[[], Awaitable[Any]],
    cancel_token: CancelToken,
    **options: Any,
) -> Any:
    try:
        return await cache.get_or_compute(key, compute, **options)
    except AnalysisCancelled:
        # re-raises when this request was closed itself
        cancel_token.raise_if_cancelled()
    # the request computing this entry was closed; compute it here instead
    return await cache.get_or_compute(key, compute, **options)


class AnalysisPipeline:
    """One request's walk through fetch, parse, load, plan and execute."""

    def __init__(
        self,
        settings: Settings,
        *,
        sessions: SessionCoordinator,
        fetcher: WorkbookFetcher,
        store: EphemeralStoreManager,
        pool: CpuPool,
        table_cache: SingleFlightCache[str, AnalyzedWorkbook],
        result_cache: SingleFlightCache[str, CachedAnalysis],
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._fetcher = fetcher
        self._store = store
        self._pool = pool
        self._table_cache = table_cache
        self._result_cache = result_cache

    # ------------------------------------------------------------------
    # workbooks
    # ------------------------------------------------------------------
    def _analyze_bytes(self, ref: WorkbookRef, payload: bytes, cancel_token: CancelToken) -> AnalyzedWorkbook:
        settings = self._settings
        parsed = workbook_parser.parse(
            payload,
            ref.declared_type,
            name=_file_stem(ref.url),
            content_hash=ref.content_hash,
            cancel_token=cancel_token,
        )
        tables: list[Table] = []
        schemas: list[SchemaDescription] = []
        for table in parsed.tables:
            cancel_token.raise_if_cancelled()
            typed, schema = schema_infer.normalize(
                table,
                head=settings.sample_head,
                random_count=settings.sample_random,
                seed=settings.sample_seed,
                max_samples=settings.schema_samples,
            )
            tables.append(typed)
            schemas.append(schema)
        return AnalyzedWorkbook(
            ref=ref,
            tables=tuple(tables),
            schemas=tuple(schemas),
            errors=tuple(parsed.errors),
            skipped=tuple(parsed.skipped),
        )

    async def _workbook(self, ticket: SessionTicket, ref: WorkbookRef) -> AnalyzedWorkbook:
        reused = self._sessions.cached_workbook(ticket, ref.url)
        if reused is not None:
            logger.info("event=workbook status=session_hit url=%s", strip_signature(ref.url))
            return reused

        ticket.cancel_token.raise_if_cancelled()
        with _step("fetch"):
            fetched = await self._fetcher.fetch(ref.url, ref.declared_type, cancel_token=ticket.cancel_token)

        hashed = ref.with_hash(fetched.content_hash)
        key = fingerprint(strip_signature(ref.url), fetched.content_hash)

        async def compute() -> AnalyzedWorkbook:
            return await self._pool.run(self._analyze_bytes, hashed, fetched.payload, ticket.cancel_token)

        with _step("parse"):
            analyzed = await _through_cache(
                self._table_cache, key, compute, ticket.cancel_token, cost=lambda value: value.cost
            )

        if analyzed.ref.url != ref.url:
            analyzed = replace(analyzed, ref=hashed)
        self._sessions.remember_workbook(ticket, ref.url, analyzed)
        return analyzed

    @staticmethod
    def _assign_names(workbooks: Sequence[AnalyzedWorkbook]) -> list[LoadedTable]:
        """Make table names unique across all workbooks of the request."""

        taken: set[str] = set()
        loaded: list[LoadedTable] = []
        for analyzed in workbooks:
            for table, schema in zip(analyzed.tables, analyzed.schemas):
                base = f"sheet_{table.name}" if _RESERVED_NAME.match(table.name) else table.name
                name = clean_table_name(base, taken)
                if name != table.name:
                    table = replace(table, name=name)
                    schema = replace(schema, table=name)
                loaded.append(LoadedTable(workbook_url=analyzed.ref.url, table=table, schema=schema))
        return loaded

    # ------------------------------------------------------------------
    # store work
    # ------------------------------------------------------------------
    def _offloader(self, handle: StoreHandle) -> Callable[..., Awaitable[Any]]:
        async def offload(func: Callable[..., Any], *args: Any) -> Any:
            future = asyncio.ensure_future(self._pool.run(func, *args))
            try:
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                # stop the running statement and let the worker finish before the store closes
                handle.interrupt()
                await asyncio.wait({future})
                if not future.cancelled():
                    future.exception()
                raise

        return offload

    async def _analyse(
        self,
        messages: Sequence[str],
        tables: Sequence[LoadedTable],
        table_fingerprints: Sequence[str],
        cancel_token: CancelToken,
    ) -> CachedAnalysis:
        settings = self._settings
        with self._store.scoped() as handle:
            offload = self._offloader(handle)

            load_errors: list[LoadError] = []
            schemas: list[SchemaDescription] = []
            with _step("load"):
                for loaded in tables:
                    cancel_token.raise_if_cancelled()
                    try:
                        await offload(self._store.load, handle, loaded.table)
                    except LoadError as exc:
                        logger.warning("event=store_load status=error table=%s column=%s", exc.table, exc.column)
                        load_errors.append(exc)
                        continue
                    schemas.append(loaded.schema)
            if not schemas:
                raise NoTablesError("no table could be loaded for analysis")

            planner = QueryPlanner(
                get_language_model(),
                max_queries=settings.max_queries,
                schema_budget_chars=settings.schema_budget_chars,
                schema_samples=settings.schema_samples,
            )
            with _step("plan"):
                plan = await planner.plan(messages, schemas, cancel_token=cancel_token)

            executor = QueryExecutor(
                self._store,
                offload=offload,
                query_timeout=settings.query_timeout_s,
                max_rows=settings.max_result_rows,
            )
            with _step("execute"):
                outcome = await executor.execute(
                    handle, plan, table_fingerprints=table_fingerprints, cancel_token=cancel_token
                )
        return CachedAnalysis(outcome=outcome, load_errors=tuple(load_errors))

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------
    async def run(self, ticket: SessionTicket, messages: Sequence[str], refs: Sequence[WorkbookRef]) -> AnalysisReport:
        started = time.perf_counter()
        logger.info(
            "event=analysis status=start chat_id=%s sequence=%s files=%s messages=%s",
            ticket.chat_id,
            ticket.sequence,
            len(refs),
            len(messages),
        )

        workbooks = [await self._workbook(ticket, ref) for ref in refs]
        tables = self._assign_names(workbooks)
        sheet_errors: list[SheetAnalysisError] = [error for analyzed in workbooks for error in analyzed.errors]
        skipped = [
            {"file": strip_signature(analyzed.ref.url), "sheet": sheet}
            for analyzed in workbooks
            for sheet in analyzed.skipped
        ]
        if not tables:
            details = "; ".join(error.message for error in sheet_errors) or "every sheet is empty"
            raise NoTablesError(f"no sheet holds tabular data: {details}")

        schemas = [loaded.schema for loaded in tables]
        table_fingerprints = sorted(loaded.table.fingerprint for loaded in tables)
        key = fingerprint(plan_fingerprint(messages, schemas), fingerprint(table_fingerprints))

        computed = False

        async def compute() -> CachedAnalysis:
            nonlocal computed
            computed = True
            return await self._analyse(messages, tables, table_fingerprints, ticket.cancel_token)

        cached = await _through_cache(
            self._result_cache,
            key,
            compute,
            ticket.cancel_token,
            should_cache=lambda value: not any(isinstance(error, QueryTimeout) for error in value.outcome.errors),
        )

        errors: list[SheetAnalysisError] = [*sheet_errors, *cached.load_errors, *cached.outcome.errors]
        failed_tables = {error.table for error in cached.load_errors}
        report = AnalysisReport(
            chat_id=ticket.chat_id,
            status="partial" if errors else "success",
            answer=assemble_answer(cached.outcome),
            comment=cached.outcome.plan.comment,
            tables=[loaded for loaded in tables if loaded.table.name not in failed_tables],
            results=cached.outcome.results,
            errors=errors,
            skipped_sheets=skipped,
            cached=not computed,
            elapsed_ms=(time.perf_counter() - started) * 1000,
        )
        logger.info(
            "event=analysis status=%s chat_id=%s queries=%s errors=%s cached=%s elapsed_ms=%.0f",
            report.status,
            ticket.chat_id,
            len(cached.outcome.plan.queries),
            len(errors),
            report.cached,
            report.elapsed_ms,
        )
        return report
