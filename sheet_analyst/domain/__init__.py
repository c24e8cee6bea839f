"""Domain layer definitions."""

from .plans import (
    ExecutionOutcome,
    PlanDecodeFailure,
    PlanDecodeResult,
    QueryPlan,
    QueryResult,
    QuerySpec,
    result_relation,
)
from .sessions import AnalysisSession, CancelToken, PendingRequest, SessionState, SessionTicket
from .tables import (
    AnalyzedWorkbook,
    Column,
    ColumnSchema,
    ColumnType,
    SchemaDescription,
    Table,
    WorkbookParseResult,
    WorkbookRef,
)

__all__ = [
    "AnalysisSession",
    "AnalyzedWorkbook",
    "CancelToken",
    "Column",
    "ColumnSchema",
    "ColumnType",
    "ExecutionOutcome",
    "PendingRequest",
    "PlanDecodeFailure",
    "PlanDecodeResult",
    "QueryPlan",
    "QueryResult",
    "QuerySpec",
    "SchemaDescription",
    "SessionState",
    "SessionTicket",
    "Table",
    "WorkbookParseResult",
    "WorkbookRef",
    "result_relation",
]
