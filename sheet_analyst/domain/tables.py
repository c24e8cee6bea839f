"""Domain entities for parsed workbooks."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from sheet_analyst.core.errors import SchemaError, SheetParseError
from sheet_analyst.core.hashing import fingerprint


class ColumnType(str, Enum):
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    DATE = "date"
    TEXT = "text"
    # parsed but not yet inferred; normalize() replaces it on every column
    MIXED = "mixed"


@dataclass(frozen=True, slots=True)
class WorkbookRef:
    """A remote source file as named by the caller."""

    url: str
    declared_type: str
    content_hash: str | None = None

    def with_hash(self, content_hash: str) -> "WorkbookRef":
        return replace(self, content_hash=content_hash)


@dataclass(frozen=True, slots=True)
class Column:
    name: str
    values: tuple[Any, ...]
    ctype: ColumnType = ColumnType.MIXED
    label: str | None = None


@dataclass(frozen=True, slots=True)
class Table:
    """One sheet as an ordered set of equally long columns."""

    name: str
    columns: tuple[Column, ...]
    sheet: str | None = None
    sheet_index: int | None = None
    content_hash: str | None = None

    def __post_init__(self) -> None:
        names = [column.name for column in self.columns]
        if len(set(names)) != len(names):
            raise SchemaError(f"table {self.name!r} has duplicate column names")
        lengths = {len(column.values) for column in self.columns}
        if len(lengths) > 1:
            raise SchemaError(f"table {self.name!r} has columns of unequal length")

    @property
    def row_count(self) -> int:
        return len(self.columns[0].values) if self.columns else 0

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    @property
    def cell_count(self) -> int:
        return self.row_count * len(self.columns)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.content_hash, self.sheet, self.name, self.column_names)

    def rows(self) -> list[tuple[Any, ...]]:
        return list(zip(*(column.values for column in self.columns)))

    def column(self, name: str) -> Column:
        for column in self.columns:
            if column.name == name:
                return column
        raise KeyError(name)

    def with_columns(self, columns: list[Column]) -> "Table":
        return replace(self, columns=tuple(columns))


@dataclass(frozen=True, slots=True)
class ColumnSchema:
    name: str
    ctype: ColumnType
    samples: tuple[str, ...] = ()
    label: str | None = None
    null_count: int = 0
    unique_count: int = 0
    min_value: str | None = None
    max_value: str | None = None
    has_duplicates: bool = False


@dataclass(frozen=True, slots=True)
class SchemaDescription:
    """Read-only, prompt-sized view over a :class:`Table`."""

    table: str
    columns: tuple[ColumnSchema, ...]
    row_count: int
    sheet: str | None = None

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def columns_of_type(self, *ctypes: ColumnType) -> list[str]:
        return [column.name for column in self.columns if column.ctype in ctypes]

    def to_prompt_dict(self, max_samples: int | None = None) -> dict[str, Any]:
        columns: list[dict[str, Any]] = []
        for column in self.columns:
            samples = list(column.samples if max_samples is None else column.samples[:max_samples])
            entry: dict[str, Any] = {"name": column.name, "type": column.ctype.value}
            if column.label and column.label != column.name:
                entry["label"] = column.label
            if samples:
                entry["samples"] = samples
            columns.append(entry)
        payload: dict[str, Any] = {"table": self.table, "rows": self.row_count, "columns": columns}
        if self.sheet:
            payload["sheet"] = self.sheet
        return payload


@dataclass
class WorkbookParseResult:
    tables: list[Table]
    errors: list[SheetParseError] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class AnalyzedWorkbook:
    """Typed tables with their schemas; shared read-only through the table cache."""

    ref: WorkbookRef
    tables: tuple[Table, ...]
    schemas: tuple[SchemaDescription, ...]
    errors: tuple[SheetParseError, ...] = ()
    skipped: tuple[str, ...] = ()

    @property
    def cost(self) -> int:
        return max(1, sum(table.cell_count for table in self.tables))
