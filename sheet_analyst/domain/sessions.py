"""Domain entities for per-chat analysis sessions."""
from __future__ import annotations

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from sheet_analyst.core.errors import AnalysisCancelled
from sheet_analyst.domain.tables import AnalyzedWorkbook


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CLOSED = "closed"


class CancelToken:
    """Cooperative cancellation flag checked at component boundaries."""

    def __init__(self, chat_id: str) -> None:
        self._chat_id = chat_id
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AnalysisCancelled(self._chat_id)


@dataclass(slots=True)
class PendingRequest:
    sequence: int
    future: asyncio.Future


@dataclass(slots=True)
class AnalysisSession:
    chat_id: str
    state: SessionState = SessionState.IDLE
    sequence: int = 0
    running_sequence: int | None = None
    last_activity: float = 0.0
    workbooks: dict[str, AnalyzedWorkbook] = field(default_factory=dict)
    waiters: deque[PendingRequest] = field(default_factory=deque)
    cancel_token: CancelToken | None = None
    task: asyncio.Task | None = None

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence


@dataclass(frozen=True, slots=True)
class SessionTicket:
    """Grants the holder the session's single running slot."""

    session: AnalysisSession
    sequence: int
    cancel_token: CancelToken

    @property
    def chat_id(self) -> str:
        return self.session.chat_id
