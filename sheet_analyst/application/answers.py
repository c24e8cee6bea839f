"""Turn executed queries into the caller-facing answer text."""
from __future__ import annotations

import re
from typing import Any

from sheet_analyst.domain.plans import ExecutionOutcome, QueryResult
from sheet_analyst.extractors.schema_infer import display_value

_PLACEHOLDER = re.compile(r"\{\s*result_(\d+)\s*\}")


def summarise_result(result: QueryResult) -> str:
    if result.is_scalar:
        return format_value(result.scalar)
    noun = "row" if result.total_rows == 1 else "rows"
    text = f"{result.total_rows} {noun}"
    if result.truncated:
        text += f" (first {len(result.rows)} shown)"
    return text


def format_value(value: Any) -> str:
    if value is None:
        return "no value"
    if isinstance(value, float):
        return f"{value:,.2f}" if not value.is_integer() else f"{int(value):,}"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, int):
        return f"{value:,}"
    return display_value(value)


def assemble_answer(outcome: ExecutionOutcome) -> str:
    """Fill ``{result_N}`` placeholders, or list per-query summaries when no template is given."""

    by_number = {result.index + 1: result for result in outcome.results}
    failed = {error.index + 1 for error in outcome.errors}
    template = outcome.plan.answer_template

    if template:

        def replace(match: re.Match[str]) -> str:
            number = int(match.group(1))
            if number in by_number:
                return summarise_result(by_number[number])
            if number in failed:
                return "(unavailable: query failed)"
            return match.group(0)

        return _PLACEHOLDER.sub(replace, template)

    lines: list[str] = []
    if outcome.plan.comment:
        lines.append(outcome.plan.comment)
    for spec in outcome.plan.queries:
        number = spec.index + 1
        if number in by_number:
            lines.append(f"Query {number}: {summarise_result(by_number[number])}")
        elif number in failed:
            lines.append(f"Query {number}: failed")
    return "\n".join(lines)
