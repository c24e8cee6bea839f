"""Application service tying the pipeline to the session coordinator."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from sheet_analyst.application.pipeline import AnalysisPipeline, AnalysisReport, CachedAnalysis
from sheet_analyst.application.sessions import SessionCoordinator
from sheet_analyst.core.errors import AnalysisCancelled
from sheet_analyst.core.settings import Settings
from sheet_analyst.domain.tables import AnalyzedWorkbook, WorkbookRef
from sheet_analyst.infrastructure.cache import SingleFlightCache
from sheet_analyst.infrastructure.fetcher import WorkbookFetcher
from sheet_analyst.infrastructure.store import EphemeralStoreManager
from sheet_analyst.workers.pool import CpuPool

logger = logging.getLogger(__name__)


class AnalysisService:
    """Coordinates analysis runs, session lifecycle and the shared caches."""

    def __init__(
        self,
        settings: Settings,
        *,
        fetcher: WorkbookFetcher | None = None,
        sessions: SessionCoordinator | None = None,
        store: EphemeralStoreManager | None = None,
    ) -> None:
        self.settings = settings
        self.sessions = sessions or SessionCoordinator(
            policy=settings.session_policy,
            max_queue=settings.session_max_queue,
            idle_ttl=settings.session_idle_ttl_s,
        )
        self.fetcher = fetcher or WorkbookFetcher(
            max_bytes=settings.max_file_size,
            timeout=settings.fetch_timeout_s,
            retries=settings.fetch_retries,
            backoff=settings.fetch_backoff_s,
        )
        self.store = store or EphemeralStoreManager()
        self.pool = CpuPool(settings.cpu_workers)
        self.table_cache: SingleFlightCache[str, AnalyzedWorkbook] = SingleFlightCache(
            "table_cache",
            max_entries=settings.table_cache_entries,
            max_cost=settings.table_cache_cells,
            ttl=settings.table_cache_ttl_s,
        )
        self.result_cache: SingleFlightCache[str, CachedAnalysis] = SingleFlightCache(
            "result_cache",
            max_entries=settings.result_cache_entries,
            ttl=settings.result_cache_ttl_s,
        )
        self._pipeline = AnalysisPipeline(
            settings,
            sessions=self.sessions,
            fetcher=self.fetcher,
            store=self.store,
            pool=self.pool,
            table_cache=self.table_cache,
            result_cache=self.result_cache,
        )

    # ------------------------------------------------------------------
    # analysis
    # ------------------------------------------------------------------
    async def analyze(self, chat_id: str, messages: Sequence[str], refs: Sequence[WorkbookRef]) -> AnalysisReport:
        self.sessions.expire_idle()
        async with self.sessions.session(chat_id) as ticket:
            task = asyncio.create_task(self._pipeline.run(ticket, list(messages), list(refs)))
            self.sessions.attach(ticket, task)
            try:
                return await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if ticket.cancel_token.cancelled and (current is None or not current.cancelling()):
                    raise AnalysisCancelled(chat_id) from None
                raise

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def describe_session(self, chat_id: str) -> dict[str, Any] | None:
        return self.sessions.describe(chat_id)

    def close_session(self, chat_id: str) -> bool:
        return self.sessions.close(chat_id)

    async def aclose(self) -> None:
        self.sessions.reset()
        self.table_cache.clear()
        self.result_cache.clear()
        self.pool.shutdown()
        await self.fetcher.aclose()


_service: AnalysisService | None = None


def configure_analysis_service(service: AnalysisService) -> None:
    global _service
    _service = service


def get_analysis_service() -> AnalysisService:
    global _service
    if _service is None:
        _service = AnalysisService(Settings.from_env())
    return _service


def reset_analysis_state() -> None:
    """Drop the shared service (sessions and caches) so tests start clean."""

    global _service
    if _service is not None:
        _service.sessions.reset()
        _service.table_cache.clear()
        _service.result_cache.clear()
        _service.pool.shutdown()
    _service = None
