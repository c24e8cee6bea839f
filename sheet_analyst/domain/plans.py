"""Domain entities for planned and executed queries."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sheet_analyst.core.errors import QueryExecutionError

RESULT_RELATION_PREFIX = "result_"


def result_relation(index: int) -> str:
    """Name of the relation holding query ``index``'s materialised result."""

    return f"{RESULT_RELATION_PREFIX}{index + 1}"


@dataclass(frozen=True, slots=True)
class QuerySpec:
    index: int
    sql: str
    tables: tuple[str, ...] = ()
    columns: tuple[str, ...] = ()
    depends_on_previous: bool = False

    @property
    def relation(self) -> str:
        return result_relation(self.index)


@dataclass(frozen=True, slots=True)
class QueryPlan:
    queries: tuple[QuerySpec, ...]
    fingerprint: str
    answer_template: str | None = None
    comment: str | None = None


@dataclass(frozen=True, slots=True)
class PlanDecodeFailure:
    reason: str
    raw: str = ""


@dataclass(frozen=True, slots=True)
class PlanDecodeResult:
    """Either a valid plan or the reason the model output could not be used."""

    plan: QueryPlan | None = None
    failure: PlanDecodeFailure | None = None

    @property
    def ok(self) -> bool:
        return self.plan is not None


@dataclass(frozen=True, slots=True)
class QueryResult:
    index: int
    sql: str
    columns: tuple[str, ...]
    rows: tuple[tuple[Any, ...], ...]
    total_rows: int
    truncated: bool = False
    plan_fingerprint: str = ""
    table_fingerprints: tuple[str, ...] = ()

    @property
    def scalar(self) -> Any:
        if len(self.columns) == 1 and len(self.rows) == 1:
            return self.rows[0][0]
        return None

    @property
    def is_scalar(self) -> bool:
        return len(self.columns) == 1 and len(self.rows) == 1


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    plan: QueryPlan
    results: tuple[QueryResult, ...]
    errors: tuple[QueryExecutionError, ...] = ()
