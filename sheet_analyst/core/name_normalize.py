from __future__ import annotations

import re
import unicodedata

_INVALID = re.compile(r"[^\w]")


def _clean(name: str) -> str:
    text = unicodedata.normalize("NFKC", str(name or "")).strip().lower()
    return _INVALID.sub("_", text)


def clean_column_name(name: str, existing: set[str]) -> str:
    """Return a SQL-safe, unique column identifier and record it in ``existing``."""

    base = _clean(name)
    if not base[:1].isalpha():
        base = f"col_{base}"
    candidate = base
    counter = 1
    while candidate in existing:
        candidate = f"{base}_{counter}"
        counter += 1
    existing.add(candidate)
    return candidate


def clean_table_name(name: str, existing: set[str] | None = None) -> str:
    base = _clean(name)
    if not base[:1].isalpha():
        base = f"tbl_{base}"
    if existing is None:
        return base
    candidate = base
    counter = 2
    while candidate in existing:
        candidate = f"{base}_{counter}"
        counter += 1
    existing.add(candidate)
    return candidate
