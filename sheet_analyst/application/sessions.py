"""Per-chat mutual exclusion for analysis runs.

Each chat id maps to an :class:`AnalysisSession` whose state moves
``idle -> running -> idle`` and ends in ``closed``.  All transitions happen
under one registry lock.  When a run finishes, the running slot is handed
directly to the oldest queued request, so queued requests run in arrival
order and never overlap.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Literal

from sheet_analyst.core.errors import SessionBusy, SessionClosed, SessionExpired
from sheet_analyst.core.hashing import strip_signature
from sheet_analyst.domain.sessions import (
    AnalysisSession,
    CancelToken,
    PendingRequest,
    SessionState,
    SessionTicket,
)
from sheet_analyst.domain.tables import AnalyzedWorkbook

logger = logging.getLogger(__name__)


def _call_in_loop(loop: asyncio.AbstractEventLoop, func: Callable[..., Any], *args: Any) -> None:
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        func(*args)
    elif not loop.is_closed():
        loop.call_soon_threadsafe(func, *args)


def _resolve(future: asyncio.Future, value: Any) -> None:
    if not future.done():
        future.set_result(value)


def _reject(future: asyncio.Future, error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)


class SessionCoordinator:
    def __init__(
        self,
        *,
        policy: Literal["queue", "reject"] = "queue",
        max_queue: int = 16,
        idle_ttl: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy
        self._max_queue = max_queue
        self._idle_ttl = idle_ttl
        self._clock = clock
        self._sessions: dict[str, AnalysisSession] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # helpers (registry lock held)
    # ------------------------------------------------------------------
    def _expired_locked(self, session: AnalysisSession, now: float) -> bool:
        return (
            session.state is SessionState.IDLE
            and not session.waiters
            and now - session.last_activity >= self._idle_ttl
        )

    def _drop_locked(self, session: AnalysisSession) -> None:
        self._sessions.pop(session.chat_id, None)
        session.state = SessionState.CLOSED
        session.workbooks.clear()

    def _start_locked(self, session: AnalysisSession, sequence: int) -> SessionTicket:
        token = CancelToken(session.chat_id)
        session.state = SessionState.RUNNING
        session.running_sequence = sequence
        session.cancel_token = token
        session.task = None
        return SessionTicket(session=session, sequence=sequence, cancel_token=token)

    def _lookup_locked(self, chat_id: str) -> AnalysisSession | None:
        session = self._sessions.get(chat_id)
        if session is not None and self._expired_locked(session, self._clock()):
            self._drop_locked(session)
            logger.info("event=session status=expired chat_id=%s", chat_id)
            raise SessionExpired(chat_id)
        return session

    # ------------------------------------------------------------------
    # running slot
    # ------------------------------------------------------------------
    async def acquire(self, chat_id: str) -> SessionTicket:
        loop = asyncio.get_running_loop()
        with self._lock:
            now = self._clock()
            session = self._sessions.get(chat_id)
            if session is not None and self._expired_locked(session, now):
                self._drop_locked(session)
                session = None
            if session is None:
                session = AnalysisSession(chat_id=chat_id, last_activity=now)
                self._sessions[chat_id] = session
            sequence = session.next_sequence()
            session.last_activity = now

            if session.state is SessionState.IDLE:
                ticket = self._start_locked(session, sequence)
                logger.info("event=session status=running chat_id=%s sequence=%s", chat_id, sequence)
                return ticket
            if self._policy == "reject" or len(session.waiters) >= self._max_queue:
                logger.info("event=session status=busy chat_id=%s sequence=%s", chat_id, sequence)
                raise SessionBusy(chat_id)
            pending = PendingRequest(sequence=sequence, future=loop.create_future())
            session.waiters.append(pending)
            logger.info(
                "event=session status=queued chat_id=%s sequence=%s position=%s",
                chat_id,
                sequence,
                len(session.waiters),
            )

        try:
            return await pending.future
        except asyncio.CancelledError:
            with self._lock:
                if pending in session.waiters:
                    session.waiters.remove(pending)
                    handed_over = None
                elif pending.future.done() and not pending.future.cancelled() and pending.future.exception() is None:
                    handed_over = pending.future.result()
                else:
                    handed_over = None
            if handed_over is not None:
                # the slot arrived while we were being cancelled; pass it on
                self.release(handed_over)
            raise

    def release(self, ticket: SessionTicket) -> None:
        session = ticket.session
        with self._lock:
            if session.running_sequence != ticket.sequence:
                return
            session.running_sequence = None
            session.cancel_token = None
            session.task = None
            session.last_activity = self._clock()
            if session.state is SessionState.CLOSED:
                return
            while session.waiters:
                pending = session.waiters.popleft()
                if pending.future.done():
                    continue
                next_ticket = self._start_locked(session, pending.sequence)
                _call_in_loop(pending.future.get_loop(), _resolve, pending.future, next_ticket)
                logger.info(
                    "event=session status=handoff chat_id=%s sequence=%s", session.chat_id, pending.sequence
                )
                return
            session.state = SessionState.IDLE
        logger.info("event=session status=idle chat_id=%s", session.chat_id)

    @asynccontextmanager
    async def session(self, chat_id: str) -> AsyncIterator[SessionTicket]:
        ticket = await self.acquire(chat_id)
        try:
            yield ticket
        finally:
            self.release(ticket)

    def attach(self, ticket: SessionTicket, task: asyncio.Task) -> None:
        """Record the task running for ``ticket`` so that closing can cancel it."""

        with self._lock:
            closed = ticket.session.state is SessionState.CLOSED
            if not closed and ticket.session.running_sequence == ticket.sequence:
                ticket.session.task = task
        if closed:
            task.cancel()

    # ------------------------------------------------------------------
    # session data
    # ------------------------------------------------------------------
    def cached_workbook(self, ticket: SessionTicket, url: str) -> AnalyzedWorkbook | None:
        with self._lock:
            return ticket.session.workbooks.get(url)

    def remember_workbook(self, ticket: SessionTicket, url: str, workbook: AnalyzedWorkbook) -> None:
        with self._lock:
            if ticket.session.state is not SessionState.CLOSED:
                ticket.session.workbooks[url] = workbook

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def close(self, chat_id: str) -> bool:
        """Close ``chat_id``; returns ``False`` when no such session exists."""

        with self._lock:
            session = self._lookup_locked(chat_id)
            if session is None:
                return False
            self._drop_locked(session)
            waiters = list(session.waiters)
            session.waiters.clear()
            token, task = session.cancel_token, session.task

        if token is not None:
            token.cancel()
        if task is not None and not task.done():
            _call_in_loop(task.get_loop(), task.cancel)
        for pending in waiters:
            _call_in_loop(pending.future.get_loop(), _reject, pending.future, SessionClosed(chat_id))
        logger.info("event=session status=closed chat_id=%s cancelled=%s queued=%s", chat_id, token is not None, len(waiters))
        return True

    def describe(self, chat_id: str) -> dict[str, Any] | None:
        with self._lock:
            session = self._lookup_locked(chat_id)
            if session is None:
                return None
            return {
                "chat_id": session.chat_id,
                "state": session.state.value,
                "sequence": session.sequence,
                "running_sequence": session.running_sequence,
                "queued": len(session.waiters),
                "workbooks": sorted(strip_signature(workbook.ref.url) for workbook in session.workbooks.values()),
                "idle_seconds": round(max(0.0, self._clock() - session.last_activity), 3),
            }

    def expire_idle(self) -> list[str]:
        """Drop every session idle for longer than the configured window."""

        with self._lock:
            now = self._clock()
            stale = [session for session in self._sessions.values() if self._expired_locked(session, now)]
            for session in stale:
                self._drop_locked(session)
        for session in stale:
            logger.info("event=session status=expired chat_id=%s", session.chat_id)
        return [session.chat_id for session in stale]

    def running_count(self, chat_id: str) -> int:
        with self._lock:
            session = self._sessions.get(chat_id)
            return 1 if session is not None and session.state is SessionState.RUNNING else 0

    def reset(self) -> None:
        with self._lock:
            chat_ids = list(self._sessions)
        for chat_id in chat_ids:
            try:
                self.close(chat_id)
            except SessionExpired:
                continue
