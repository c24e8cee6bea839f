"""Workbook format detection.

Callers declare a file type alongside each signed URL, but the declaration
may be an extension (``xlsx``), a dotted extension (``.csv``) or a MIME type.
The detector maps it onto one of the formats the parser understands and then
lets the payload's magic bytes correct an obviously wrong declaration
between zip-based workbooks and delimited text.
"""

from __future__ import annotations

from sheet_analyst.core.errors import UnsupportedFormat

ZIP_MAGIC = b"PK\x03\x04"
OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

WORKBOOK_FORMATS = {"xlsx", "xlsm"}
TEXT_FORMATS = {"csv", "tsv"}
SUPPORTED_FORMATS = WORKBOOK_FORMATS | TEXT_FORMATS

MIME_TYPES: dict[str, str] = {
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.ms-excel.sheet.macroenabled.12": "xlsm",
    "text/csv": "csv",
    "application/csv": "csv",
    "text/tab-separated-values": "tsv",
}


def normalise_declared_type(declared_type: str | None) -> str | None:
    text = str(declared_type or "").strip().lower()
    if not text:
        return None
    if text in MIME_TYPES:
        return MIME_TYPES[text]
    text = text.split(";", 1)[0].strip()
    if text in MIME_TYPES:
        return MIME_TYPES[text]
    text = text.lstrip(".")
    if text in SUPPORTED_FORMATS:
        return text
    for candidate in ("xlsm", "xlsx", "tsv", "csv"):
        if candidate in text:
            return candidate
    return None


def _looks_like_text(payload: bytes) -> bool:
    head = payload[:4096]
    if b"\x00" in head:
        return False
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as exc:
        # a multi-byte character may be cut at the sample boundary
        return exc.start >= len(head) - 4
    return True


def detect_format(declared_type: str | None, payload: bytes) -> str:
    """Return the parser format for ``payload`` or raise :class:`UnsupportedFormat`."""

    declared = normalise_declared_type(declared_type)
    if declared is None:
        raise UnsupportedFormat(str(declared_type or ""))
    if payload.startswith(OLE_MAGIC):
        raise UnsupportedFormat("xls")
    if payload.startswith(ZIP_MAGIC):
        return declared if declared in WORKBOOK_FORMATS else "xlsx"
    if declared in WORKBOOK_FORMATS and payload and _looks_like_text(payload):
        return "csv"
    return declared
