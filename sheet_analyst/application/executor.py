"""Run a validated plan against a request's private store."""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Sequence, TypeVar

import duckdb

from sheet_analyst.core.errors import QueryExecutionError, QueryTimeout
from sheet_analyst.domain.plans import ExecutionOutcome, QueryPlan, QueryResult, QuerySpec
from sheet_analyst.domain.sessions import CancelToken
from sheet_analyst.infrastructure.store import EphemeralStoreManager, StoreHandle, quote_identifier

logger = logging.getLogger(__name__)

T = TypeVar("T")
Offload = Callable[..., Awaitable[T]]


class QueryExecutor:
    """Executes queries in plan order.

    Query ``i`` is materialised as ``result_<i+1>`` so that the next query can
    read it.  A failing query is recorded and execution continues; a query
    that reads a failed predecessor fails without touching the store.
    """

    def __init__(
        self,
        store: EphemeralStoreManager,
        *,
        offload: Offload,
        query_timeout: float = 10.0,
        max_rows: int = 500,
    ) -> None:
        self._store = store
        self._offload = offload
        self._query_timeout = query_timeout
        self._max_rows = max_rows

    def _run_one(self, handle: StoreHandle, spec: QuerySpec) -> tuple[tuple[str, ...], tuple[tuple, ...], int, bool]:
        total = self._store.materialize(handle, spec.relation, spec.sql, timeout=self._query_timeout)
        rows = self._store.query(
            handle,
            f"SELECT * FROM {quote_identifier(spec.relation)}",
            max_rows=self._max_rows,
            timeout=self._query_timeout,
        )
        return rows.columns, rows.rows, total, rows.truncated

    async def execute(
        self,
        handle: StoreHandle,
        plan: QueryPlan,
        *,
        table_fingerprints: Sequence[str] = (),
        cancel_token: CancelToken | None = None,
    ) -> ExecutionOutcome:
        results: list[QueryResult] = []
        errors: list[QueryExecutionError] = []
        failed: set[int] = set()

        for spec in plan.queries:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            if spec.depends_on_previous and spec.index - 1 in failed:
                error = QueryExecutionError(spec.index, f"depends on failed query {spec.index - 1}", sql=spec.sql)
                errors.append(error)
                failed.add(spec.index)
                logger.info("event=query index=%s status=skipped reason=failed_dependency", spec.index)
                continue

            started = time.perf_counter()
            try:
                columns, rows, total, truncated = await self._offload(self._run_one, handle, spec)
            except duckdb.InterruptException:
                errors.append(QueryTimeout(spec.index, f"timed out after {self._query_timeout:g}s", sql=spec.sql))
                failed.add(spec.index)
                logger.warning("event=query index=%s status=timeout", spec.index)
                continue
            except duckdb.Error as exc:
                errors.append(QueryExecutionError(spec.index, str(exc), sql=spec.sql))
                failed.add(spec.index)
                logger.warning("event=query index=%s status=error error=%s", spec.index, exc)
                continue

            results.append(
                QueryResult(
                    index=spec.index,
                    sql=spec.sql,
                    columns=columns,
                    rows=rows,
                    total_rows=total,
                    truncated=truncated,
                    plan_fingerprint=plan.fingerprint,
                    table_fingerprints=tuple(table_fingerprints),
                )
            )
            logger.info(
                "event=query index=%s status=ok rows=%s truncated=%s elapsed_ms=%.0f",
                spec.index,
                total,
                truncated,
                (time.perf_counter() - started) * 1000,
            )

        return ExecutionOutcome(plan=plan, results=tuple(results), errors=tuple(errors))
