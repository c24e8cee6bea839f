"""Workbook parser: raw bytes to one :class:`Table` per sheet.

Each sheet is read as a raw grid (no pandas header handling) so the header
heuristic can be applied here: the first non-empty row names the columns
unless at least half of its cells look like numbers or dates, in which case
the sheet is treated as headerless and columns are named ``col_1..col_n``.
A sheet that fails to read is reported as a :class:`SheetParseError` and the
remaining sheets are still parsed.
"""

from __future__ import annotations

import io
import logging
import math
from datetime import date, datetime, time
from typing import Any

import pandas as pd

from sheet_analyst.core.errors import SheetParseError, WorkbookParseError
from sheet_analyst.core.name_normalize import clean_column_name, clean_table_name
from sheet_analyst.domain.sessions import CancelToken
from sheet_analyst.domain.tables import Column, Table, WorkbookParseResult
from sheet_analyst.extractors.detect import TEXT_FORMATS, detect_format
from sheet_analyst.extractors.schema_infer import display_value, looks_numeric_or_date

logger = logging.getLogger(__name__)

HEADERLESS_RATIO = 0.5


def _cell(value: Any) -> Any:
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    if isinstance(value, time):
        return value.isoformat()
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if hasattr(value, "item"):
        # numpy scalars
        return _cell(value.item())
    return value


def _is_headerless(row: list[Any]) -> bool:
    cells = [value for value in row if value is not None]
    if not cells:
        return True
    typed = sum(1 for value in cells if looks_numeric_or_date(value))
    return typed >= len(cells) * HEADERLESS_RATIO


def _grid(frame: pd.DataFrame) -> list[list[Any]]:
    rows = [[_cell(value) for value in row] for row in frame.itertuples(index=False, name=None)]
    rows = [row for row in rows if any(value is not None for value in row)]
    if not rows:
        return []
    width = max(len(row) for row in rows)
    rows = [row + [None] * (width - len(row)) for row in rows]
    keep = [index for index in range(width) if any(row[index] is not None for row in rows)]
    return [[row[index] for index in keep] for row in rows]


def frame_to_table(
    frame: pd.DataFrame,
    *,
    sheet_name: str,
    sheet_index: int,
    table_names: set[str],
    content_hash: str | None = None,
) -> Table | None:
    """Convert a raw sheet grid into a table, or ``None`` when it holds no data rows."""

    rows = _grid(frame)
    if not rows:
        return None

    header = rows[0]
    headerless = _is_headerless(header)
    data = rows if headerless else rows[1:]
    if not data:
        return None

    existing: set[str] = set()
    columns: list[Column] = []
    for index in range(len(header)):
        if headerless:
            label = None
            name = clean_column_name(f"col_{index + 1}", existing)
        else:
            raw = header[index]
            label = display_value(raw) if raw is not None else None
            name = clean_column_name(label or f"col_{index + 1}", existing)
        values = tuple(row[index] for row in data)
        columns.append(Column(name=name, values=values, label=label))

    return Table(
        name=clean_table_name(sheet_name, table_names),
        columns=tuple(columns),
        sheet=sheet_name,
        sheet_index=sheet_index,
        content_hash=content_hash,
    )


def _read_text(payload: bytes, fmt: str) -> pd.DataFrame:
    try:
        return pd.read_csv(
            io.BytesIO(payload),
            header=None,
            dtype=object,
            keep_default_na=False,
            sep="\t" if fmt == "tsv" else ",",
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError:
        return pd.DataFrame()


def parse(
    payload: bytes,
    declared_type: str,
    *,
    name: str = "Sheet1",
    content_hash: str | None = None,
    cancel_token: CancelToken | None = None,
) -> WorkbookParseResult:
    """Parse every sheet of a workbook.

    ``name`` is used as the sheet name for delimited text files, which have a
    single unnamed sheet.
    """

    fmt = detect_format(declared_type, payload)
    tables: list[Table] = []
    result = WorkbookParseResult(tables=tables)
    table_names: set[str] = set()

    if fmt in TEXT_FORMATS:
        try:
            frame = _read_text(payload, fmt)
        except (UnicodeDecodeError, pd.errors.ParserError) as exc:
            raise WorkbookParseError(f"delimited file could not be read: {exc}") from exc
        try:
            table = frame_to_table(frame, sheet_name=name, sheet_index=0, table_names=table_names, content_hash=content_hash)
        except Exception as exc:
            result.errors.append(SheetParseError(0, name, str(exc)))
            return result
        if table is None:
            result.skipped.append(name)
        else:
            tables.append(table)
        return result

    try:
        excel = pd.ExcelFile(io.BytesIO(payload), engine="openpyxl")
    except Exception as exc:  # openpyxl/zipfile level errors
        raise WorkbookParseError(f"workbook could not be opened: {exc}") from exc

    with excel:
        for sheet_index, sheet_name in enumerate(excel.sheet_names):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                frame = excel.parse(sheet_name=sheet_name, header=None, dtype=object)
                table = frame_to_table(
                    frame,
                    sheet_name=str(sheet_name),
                    sheet_index=sheet_index,
                    table_names=table_names,
                    content_hash=content_hash,
                )
            except Exception as exc:  # isolate the failing sheet
                logger.warning("event=sheet_parse status=error sheet=%s index=%s error=%s", sheet_name, sheet_index, exc)
                result.errors.append(SheetParseError(sheet_index, str(sheet_name), str(exc)))
                continue
            if table is None:
                logger.info("event=sheet_parse status=empty sheet=%s index=%s", sheet_name, sheet_index)
                result.skipped.append(str(sheet_name))
                continue
            tables.append(table)

    logger.info(
        "event=workbook_parse format=%s tables=%s errors=%s skipped=%s",
        fmt,
        len(result.tables),
        len(result.errors),
        len(result.skipped),
    )
    return result
