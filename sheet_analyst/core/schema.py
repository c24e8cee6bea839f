from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field, constr

from sheet_analyst.core.hashing import strip_signature
from sheet_analyst.domain.tables import ColumnType

if TYPE_CHECKING:
    from sheet_analyst.application.pipeline import AnalysisReport, LoadedTable
    from sheet_analyst.domain.plans import QueryResult


class FileDescriptor(BaseModel):
    type: constr(strip_whitespace=True, min_length=1)
    signed_url: constr(strip_whitespace=True, pattern=r"^https?://")


class AnalyzeRequest(BaseModel):
    user_email: constr(strip_whitespace=True, min_length=1)
    chat_id: constr(strip_whitespace=True, min_length=1, max_length=200)
    messages: list[str] = Field(min_length=1)
    files: list[FileDescriptor] = Field(min_length=1)


class ColumnAnalysis(BaseModel):
    name: str
    label: str | None = None
    data_type: str
    sample_values: list[str] = Field(default_factory=list)
    null_count: int = 0
    unique_count: int = 0
    min_value: str | None = None
    max_value: str | None = None
    has_duplicates: bool = False


class TableAnalysis(BaseModel):
    file: str
    sheet: str | None = None
    table: str
    row_count: int
    column_count: int
    columns: list[ColumnAnalysis]
    date_columns: list[str] = Field(default_factory=list)
    numeric_columns: list[str] = Field(default_factory=list)
    text_columns: list[str] = Field(default_factory=list)


class QueryResultModel(BaseModel):
    index: int
    sql: str
    columns: list[str]
    rows: list[list[Any]]
    total_rows: int
    truncated: bool = False


class ErrorDetail(BaseModel):
    code: str
    message: str
    sheet: str | None = None
    sheet_index: int | None = None
    table: str | None = None
    column: str | None = None
    query_index: int | None = None


class AnalyzeResponse(BaseModel):
    chat_id: str
    status: Literal["success", "partial", "failed"]
    answer: str
    comment: str | None = None
    analysis: list[TableAnalysis] = Field(default_factory=list)
    results: list[QueryResultModel] = Field(default_factory=list)
    errors: list[ErrorDetail] = Field(default_factory=list)
    skipped_sheets: list[dict[str, str]] = Field(default_factory=list)
    cached: bool = False
    elapsed_ms: float = 0.0


class FailureResponse(BaseModel):
    status: Literal["failed"] = "failed"
    error: ErrorDetail


def json_value(value: Any) -> Any:
    """Make a store value JSON friendly."""

    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d") if value.time() == time() and value.tzinfo is None else value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, (list, tuple)):
        return [json_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): json_value(item) for key, item in value.items()}
    return value


def table_analysis(loaded: "LoadedTable") -> TableAnalysis:
    schema = loaded.schema
    return TableAnalysis(
        file=strip_signature(loaded.workbook_url),
        sheet=schema.sheet,
        table=schema.table,
        row_count=schema.row_count,
        column_count=len(schema.columns),
        columns=[
            ColumnAnalysis(
                name=column.name,
                label=column.label,
                data_type=column.ctype.value,
                sample_values=list(column.samples),
                null_count=column.null_count,
                unique_count=column.unique_count,
                min_value=column.min_value,
                max_value=column.max_value,
                has_duplicates=column.has_duplicates,
            )
            for column in schema.columns
        ],
        date_columns=schema.columns_of_type(ColumnType.DATE),
        numeric_columns=schema.columns_of_type(ColumnType.INTEGER, ColumnType.FLOAT),
        text_columns=schema.columns_of_type(ColumnType.TEXT, ColumnType.MIXED),
    )


def query_result_model(result: "QueryResult") -> QueryResultModel:
    return QueryResultModel(
        index=result.index,
        sql=result.sql,
        columns=list(result.columns),
        rows=[[json_value(value) for value in row] for row in result.rows],
        total_rows=result.total_rows,
        truncated=result.truncated,
    )


def analyze_response(report: "AnalysisReport") -> AnalyzeResponse:
    return AnalyzeResponse(
        chat_id=report.chat_id,
        status=report.status,  # type: ignore[arg-type]
        answer=report.answer,
        comment=report.comment,
        analysis=[table_analysis(loaded) for loaded in report.tables],
        results=[query_result_model(result) for result in report.results],
        errors=[ErrorDetail(**error.to_dict()) for error in report.errors],
        skipped_sheets=report.skipped_sheets,
        cached=report.cached,
        elapsed_ms=round(report.elapsed_ms, 1),
    )
