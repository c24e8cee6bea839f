"""Error taxonomy for the sheet analysis pipeline.

Every exception carries a dotted ``code`` that is surfaced verbatim to the
caller and an ``http_status`` used by the FastAPI adapter.  Per-sheet and
per-query failures are collected into the response instead of being raised
across the pipeline; everything else aborts the request.
"""
from __future__ import annotations

from typing import Any


class SheetAnalysisError(Exception):
    """Base class for all pipeline errors."""

    code = "internal"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


# ----------------------------------------------------------------------
# fetch
# ----------------------------------------------------------------------
class FetchError(SheetAnalysisError):
    code = "fetch.failed"
    http_status = 502

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class FetchTimeout(FetchError):
    code = "fetch.timeout"
    http_status = 504


class PayloadTooLarge(FetchError):
    code = "fetch.too_large"
    http_status = 413


class FetchStatusError(FetchError):
    code = "fetch.unsupported_status"

    def __init__(self, status_code: int, *, url: str | None = None) -> None:
        super().__init__(f"remote file request failed with status {status_code}", url=url)
        self.status_code = status_code


# ----------------------------------------------------------------------
# parse
# ----------------------------------------------------------------------
class ParseError(SheetAnalysisError):
    code = "parse.failed"
    http_status = 422


class UnsupportedFormat(ParseError):
    code = "parse.unsupported_format"

    def __init__(self, declared_type: str) -> None:
        super().__init__(f"unsupported workbook format: {declared_type!r}")
        self.declared_type = declared_type


class WorkbookParseError(ParseError):
    code = "parse.workbook_unreadable"


class SheetParseError(ParseError):
    code = "parse.sheet_error"

    def __init__(self, sheet_index: int, sheet_name: str, reason: str) -> None:
        super().__init__(f"sheet {sheet_name!r} (index {sheet_index}) could not be parsed: {reason}")
        self.sheet_index = sheet_index
        self.sheet_name = sheet_name
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"sheet": self.sheet_name, "sheet_index": self.sheet_index})
        return payload


class NoTablesError(ParseError):
    code = "parse.no_tables"


# ----------------------------------------------------------------------
# schema / store
# ----------------------------------------------------------------------
class SchemaError(SheetAnalysisError):
    code = "schema.malformed_table"
    http_status = 422


class LoadError(SheetAnalysisError):
    code = "store.load_failed"
    http_status = 422

    def __init__(self, table: str, column: str | None, reason: str) -> None:
        target = f"{table}.{column}" if column else table
        super().__init__(f"could not load {target}: {reason}")
        self.table = table
        self.column = column

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"table": self.table, "column": self.column})
        return payload


# ----------------------------------------------------------------------
# planner
# ----------------------------------------------------------------------
class PlannerError(SheetAnalysisError):
    code = "planner.failed"
    http_status = 502


class PlannerUnavailable(PlannerError):
    code = "planner.unavailable"
    http_status = 503


class PlanParseError(PlannerError):
    code = "planner.parse_failed"


class InvalidPlanReference(PlannerError):
    code = "planner.invalid_reference"
    http_status = 422

    def __init__(self, message: str, *, query_index: int | None = None, reference: str | None = None) -> None:
        super().__init__(message)
        self.query_index = query_index
        self.reference = reference


# ----------------------------------------------------------------------
# execution
# ----------------------------------------------------------------------
class ExecutionError(SheetAnalysisError):
    code = "execution.failed"


class QueryExecutionError(ExecutionError):
    code = "execution.query_failed"

    def __init__(self, index: int, reason: str, *, sql: str | None = None) -> None:
        super().__init__(f"query {index} failed: {reason}")
        self.index = index
        self.reason = reason
        self.sql = sql

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["query_index"] = self.index
        return payload


class QueryTimeout(QueryExecutionError):
    code = "execution.query_timeout"


# ----------------------------------------------------------------------
# sessions
# ----------------------------------------------------------------------
class SessionError(SheetAnalysisError):
    code = "session.error"
    http_status = 409

    def __init__(self, chat_id: str, message: str) -> None:
        super().__init__(message)
        self.chat_id = chat_id


class SessionBusy(SessionError):
    code = "session.busy"

    def __init__(self, chat_id: str) -> None:
        super().__init__(chat_id, f"an analysis is already running for chat {chat_id!r}")


class SessionClosed(SessionError):
    code = "session.closed"

    def __init__(self, chat_id: str) -> None:
        super().__init__(chat_id, f"chat {chat_id!r} was closed")


class SessionExpired(SessionError):
    code = "session.expired"
    http_status = 410

    def __init__(self, chat_id: str) -> None:
        super().__init__(chat_id, f"chat {chat_id!r} expired after inactivity")


class AnalysisCancelled(SessionError):
    code = "session.cancelled"

    def __init__(self, chat_id: str) -> None:
        super().__init__(chat_id, f"analysis for chat {chat_id!r} was cancelled")


# ----------------------------------------------------------------------
# caches
# ----------------------------------------------------------------------
class CacheError(SheetAnalysisError):
    code = "cache.error"


class CacheComputeError(CacheError):
    code = "cache.compute_failed"

    def __init__(self, cache_name: str, cause: BaseException) -> None:
        detail = getattr(cause, "message", None) or str(cause) or type(cause).__name__
        super().__init__(f"{cache_name} computation failed: {detail}")
        self.cache_name = cache_name
        self.cause = cause
