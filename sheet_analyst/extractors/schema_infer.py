"""Column type inference and prompt-sized schema descriptions.

Types are chosen from a bounded sample: the first ``head`` rows plus a seeded
random subset of the remainder.  The narrowest type every sampled value
satisfies wins, in the order boolean, integer, float, date; anything else
(including columns with no values at all) is text.  :func:`normalize`
additionally checks every value of the column against the sampled type and
falls back to text on the first violation, so the typed table it returns
always loads cleanly.
"""

from __future__ import annotations

import json
import math
import random
from datetime import date, datetime, time
from typing import Any, Callable, Iterable, Sequence

from sheet_analyst.domain.tables import Column, ColumnSchema, ColumnType, SchemaDescription, Table

DATE_FORMATS = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%Y/%m/%d",
    "%d-%m-%Y",
]
DATETIME_FORMATS = [f"{fmt} %H:%M:%S" for fmt in DATE_FORMATS] + ["%Y-%m-%dT%H:%M:%S"]

TRUE_STRINGS = {"true", "yes"}
FALSE_STRINGS = {"false", "no"}

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
SAMPLE_TEXT_LIMIT = 40


# ----------------------------------------------------------------------
# value predicates
# ----------------------------------------------------------------------
def parse_date_string(text: str) -> datetime | None:
    candidate = text.strip()
    if not candidate or len(candidate) > 32:
        return None
    for fmt in DATE_FORMATS + DATETIME_FORMATS:
        try:
            return datetime.strptime(candidate, fmt)
        except ValueError:
            continue
    return None


def _parse_int(text: str) -> int | None:
    candidate = text.strip()
    if not candidate:
        return None
    body = candidate[1:] if candidate[0] in "+-" else candidate
    if not body.isdigit() or not body.isascii():
        return None
    value = int(candidate)
    return value if INT64_MIN <= value <= INT64_MAX else None


def _parse_float(text: str) -> float | None:
    try:
        value = float(text.strip())
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def is_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    return isinstance(value, str) and value.strip().lower() in TRUE_STRINGS | FALSE_STRINGS


def is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return INT64_MIN <= value <= INT64_MAX
    if isinstance(value, float):
        return math.isfinite(value) and value.is_integer() and INT64_MIN <= value <= INT64_MAX
    if isinstance(value, str):
        return _parse_int(value) is not None
    return False


def is_float(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, str):
        return _parse_float(value) is not None
    return False


def is_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    return isinstance(value, str) and parse_date_string(value) is not None


def looks_numeric_or_date(value: Any) -> bool:
    """Used by the header heuristic: does a cell look like data rather than a label?"""

    return is_float(value) or is_date(value)


_PRECEDENCE: list[tuple[ColumnType, Callable[[Any], bool]]] = [
    (ColumnType.BOOLEAN, is_boolean),
    (ColumnType.INTEGER, is_integer),
    (ColumnType.FLOAT, is_float),
    (ColumnType.DATE, is_date),
]


# ----------------------------------------------------------------------
# coercion
# ----------------------------------------------------------------------
def coerce_value(value: Any, ctype: ColumnType) -> Any:
    """Convert ``value`` to the Python type stored for ``ctype``.

    Raises ``ValueError`` when the value does not satisfy the type.
    """

    if value is None:
        return None
    if ctype is ColumnType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in TRUE_STRINGS:
                return True
            if lowered in FALSE_STRINGS:
                return False
        raise ValueError(f"{value!r} is not a boolean")
    if ctype is ColumnType.INTEGER:
        if not is_integer(value):
            raise ValueError(f"{value!r} is not an integer")
        return _parse_int(value) if isinstance(value, str) else int(value)
    if ctype is ColumnType.FLOAT:
        if not is_float(value):
            raise ValueError(f"{value!r} is not a number")
        return _parse_float(value) if isinstance(value, str) else float(value)
    if ctype is ColumnType.DATE:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime.combine(value, time())
        if isinstance(value, str):
            parsed = parse_date_string(value)
            if parsed is not None:
                return parsed
        raise ValueError(f"{value!r} is not a date")
    return display_value(value)


def display_value(value: Any) -> str:
    if isinstance(value, datetime):
        if value.time() == time():
            return value.strftime("%Y-%m-%d")
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


# ----------------------------------------------------------------------
# inference
# ----------------------------------------------------------------------
def sample_indices(row_count: int, *, head: int, random_count: int, seed: int) -> list[int]:
    if row_count <= head:
        return list(range(row_count))
    rest = range(head, row_count)
    picked = random.Random(seed).sample(rest, min(random_count, len(rest)))
    return list(range(head)) + sorted(picked)


def infer_type(values: Iterable[Any]) -> ColumnType:
    present = [value for value in values if value is not None and value != ""]
    if not present:
        return ColumnType.TEXT
    for ctype, predicate in _PRECEDENCE:
        if all(predicate(value) for value in present):
            return ctype
    return ColumnType.TEXT


def _profile(name: str, ctype: ColumnType, values: Sequence[Any], label: str | None, max_samples: int) -> ColumnSchema:
    present = [value for value in values if value is not None]
    displayed = [display_value(value) for value in present]
    unique = set(displayed)

    samples: list[str] = []
    for text in displayed:
        if len(samples) >= max_samples:
            break
        trimmed = text if len(text) <= SAMPLE_TEXT_LIMIT else text[: SAMPLE_TEXT_LIMIT - 3] + "..."
        if trimmed not in samples:
            samples.append(trimmed)

    min_value: str | None = None
    max_value: str | None = None
    if present:
        if ctype in {ColumnType.INTEGER, ColumnType.FLOAT, ColumnType.DATE, ColumnType.BOOLEAN}:
            try:
                min_value = display_value(min(present))
                max_value = display_value(max(present))
            except TypeError:
                min_value, max_value = min(displayed), max(displayed)
        else:
            min_value, max_value = min(displayed), max(displayed)

    return ColumnSchema(
        name=name,
        ctype=ctype,
        samples=tuple(samples),
        label=label,
        null_count=len(values) - len(present),
        unique_count=len(unique),
        min_value=min_value,
        max_value=max_value,
        has_duplicates=len(unique) < len(present),
    )


def describe(table: Table, *, max_samples: int = 3) -> SchemaDescription:
    """Describe ``table`` using the column types it already carries."""

    columns = tuple(
        _profile(column.name, column.ctype, column.values, column.label, max_samples) for column in table.columns
    )
    return SchemaDescription(table=table.name, columns=columns, row_count=table.row_count, sheet=table.sheet)


def infer(
    table: Table,
    *,
    head: int = 100,
    random_count: int = 100,
    seed: int = 0,
    max_samples: int = 3,
) -> SchemaDescription:
    indices = sample_indices(table.row_count, head=head, random_count=random_count, seed=seed)
    columns: list[ColumnSchema] = []
    for column in table.columns:
        ctype = infer_type(column.values[index] for index in indices)
        columns.append(_profile(column.name, ctype, column.values, column.label, max_samples))
    return SchemaDescription(table=table.name, columns=tuple(columns), row_count=table.row_count, sheet=table.sheet)


def normalize(
    table: Table,
    *,
    head: int = 100,
    random_count: int = 100,
    seed: int = 0,
    max_samples: int = 3,
) -> tuple[Table, SchemaDescription]:
    """Infer column types, coerce every value and return the typed table with its schema."""

    sampled = infer(table, head=head, random_count=random_count, seed=seed, max_samples=0)
    typed_columns: list[Column] = []
    for column, column_schema in zip(table.columns, sampled.columns):
        ctype = column_schema.ctype
        try:
            values = tuple(coerce_value(value, ctype) for value in column.values)
        except ValueError:
            ctype = ColumnType.TEXT
            values = tuple(coerce_value(value, ctype) for value in column.values)
        typed_columns.append(Column(name=column.name, values=values, ctype=ctype, label=column.label))
    typed = table.with_columns(typed_columns)
    return typed, describe(typed, max_samples=max_samples)


# ----------------------------------------------------------------------
# prompt rendering
# ----------------------------------------------------------------------
def render_schemas(schemas: Sequence[SchemaDescription], *, budget_chars: int, max_samples: int = 3) -> str:
    """Render schemas as JSON no longer than ``budget_chars`` where possible.

    Sample values are dropped first; if the bare column lists still do not
    fit, trailing columns are summarised with a ``more_columns`` count.
    """

    for samples in range(max_samples, -1, -1):
        text = json.dumps([schema.to_prompt_dict(samples) for schema in schemas], ensure_ascii=False)
        if len(text) <= budget_chars:
            return text

    payload = [schema.to_prompt_dict(0) for schema in schemas]
    per_table = max(1, budget_chars // max(1, len(payload)))
    for entry in payload:
        columns = entry["columns"]
        while len(columns) > 1 and len(json.dumps(entry, ensure_ascii=False)) > per_table:
            columns.pop()
            entry["more_columns"] = entry.get("more_columns", 0) + 1
    return json.dumps(payload, ensure_ascii=False)
