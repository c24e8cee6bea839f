"""Translate a conversation plus table schemas into a :class:`QueryPlan`.

The model reply is untrusted input.  :func:`decode_plan` never raises; it
returns a :class:`PlanDecodeResult` that either holds a plan or the reason
the reply was unusable, and :class:`QueryPlanner` uses that reason for a
single corrective follow-up prompt.  References are then checked against the
known schemas by :func:`validate_plan`, which does raise.
"""
from __future__ import annotations

import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

import duckdb

from sheet_analyst.core.errors import InvalidPlanReference, PlanParseError
from sheet_analyst.core.hashing import conversation_digest, fingerprint
from sheet_analyst.domain.plans import (
    RESULT_RELATION_PREFIX,
    PlanDecodeFailure,
    PlanDecodeResult,
    QueryPlan,
    QuerySpec,
    result_relation,
)
from sheet_analyst.domain.sessions import CancelToken
from sheet_analyst.domain.tables import SchemaDescription
from sheet_analyst.extractors.schema_infer import render_schemas
from sheet_analyst.infrastructure.llm import LanguageModel
from sheet_analyst.infrastructure.store import SQL_TYPES, quote_identifier

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You translate questions about spreadsheet data into SQL queries.
The current date is {now}.

The queries run on DuckDB against the following tables (JSON, with sample values):
# START OF SCHEMA #
{schema}
# END OF SCHEMA #

Rules:
- Only write read-only statements: one SELECT (or WITH ... SELECT) per query.
- Use only the tables and columns listed above; quote identifiers with double quotes when needed.
- Queries run in order. Query number N (1-based) may read the result of query N-1 as the relation result_<N-1>; no other result relations exist.
- Select the columns that are needed to answer the question and give computed columns descriptive aliases.
- If the question can be answered without data, return no queries and put the answer in "answer".

Respond with a single JSON object and nothing else:
{{
  "comment": "optional explanation of assumptions",
  "answer": "optional answer template; {{result_1}} is replaced by the value of query 1",
  "queries": [{{"sql": "SELECT ...", "tables": ["table"], "columns": ["table.column"]}}]
}}"""

CORRECTION_PROMPT = (
    "Your previous reply could not be used: {reason}. "
    "Reply again with only the JSON object described above. Every query must be a single SELECT or WITH statement."
)

_REASONING = re.compile(r"(?is)<(think|analysis|reasoning)[^>]*>.*?</\1>")
_REASONING_FENCE = re.compile(r"(?is)```(?:think|thinking|analysis|reasoning)[^\n]*\n.*?```")
_FENCE = re.compile(r"(?is)```(?:json)?\s*\n?(.*?)```")
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_QUOTED_IDENTIFIER = re.compile(r'"(?:[^"]|"")*"')
_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"(?s)/\*.*?\*/")
_CTE_NAME = re.compile(r'(?i)(?:\bwith\s+(?:recursive\s+)?|,\s*)("?[A-Za-z_]\w*"?)\s*(?:\([^)]*\)\s*)?as\s*(?:not\s+)?(?:materialized\s*)?\(')
_RESULT_NAME = re.compile(rf"^{RESULT_RELATION_PREFIX}(\d+)$")
_FIRST_KEYWORD = re.compile(r"^\s*\(*\s*([A-Za-z]+)")
_UNRESOLVED = re.compile(r"(?i)not found|does not exist|does not have a column")
_UNRESOLVED_NAME = re.compile(r'(?i)(?:referenced column|referenced table|column named|table with name)\s+"?([^"\s!]+)')

READ_ONLY_KEYWORDS = {"select", "with"}


# ----------------------------------------------------------------------
# reply decoding
# ----------------------------------------------------------------------
def strip_reasoning(text: str) -> str:
    cleaned = _REASONING.sub(" ", text or "")
    cleaned = re.sub(r"(?is)</?(think|analysis|reasoning)[^>]*>", " ", cleaned)
    return _REASONING_FENCE.sub(" ", cleaned).strip()


def _json_objects(text: str) -> list[dict[str, Any]]:
    decoder = json.JSONDecoder()
    found: list[dict[str, Any]] = []
    index = text.find("{")
    while index != -1:
        try:
            value, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(value, dict):
            found.append(value)
        index = text.find("{", end)
    return found


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first JSON object carrying ``queries`` or ``answer``, else the first object."""

    cleaned = strip_reasoning(text)
    candidates: list[dict[str, Any]] = []
    for block in _FENCE.findall(cleaned):
        candidates.extend(_json_objects(block))
    candidates.extend(_json_objects(cleaned))
    for candidate in candidates:
        if "queries" in candidate or "answer" in candidate:
            return candidate
    return candidates[0] if candidates else None


def _strip_comments_and_literals(sql: str) -> str:
    text = _BLOCK_COMMENT.sub(" ", sql)
    text = _LINE_COMMENT.sub(" ", text)
    return _STRING_LITERAL.sub("''", text)


def _strip_sql_noise(sql: str) -> str:
    return _QUOTED_IDENTIFIER.sub('""', _strip_comments_and_literals(sql))


def read_only_violation(sql: str) -> str | None:
    """Return why ``sql`` is not a single read-only statement, or ``None``."""

    body = sql.strip().rstrip(";").strip()
    if not body:
        return "query text is empty"
    skeleton = _strip_sql_noise(body)
    if ";" in skeleton:
        return "each query must contain exactly one statement"
    match = _FIRST_KEYWORD.match(skeleton)
    if not match or match.group(1).lower() not in READ_ONLY_KEYWORDS:
        return "only SELECT or WITH statements are allowed"
    return None


def _as_names(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item).strip() for item in value if isinstance(item, str) and item.strip())


def decode_plan(text: str, plan_fingerprint: str, *, max_queries: int = 8) -> PlanDecodeResult:
    payload = extract_json_object(text)
    if payload is None:
        return PlanDecodeResult(failure=PlanDecodeFailure("no JSON object found in the reply", raw=text))

    raw_queries = payload.get("queries", [])
    if raw_queries is None:
        raw_queries = []
    if not isinstance(raw_queries, list):
        return PlanDecodeResult(failure=PlanDecodeFailure('"queries" must be a list', raw=text))
    if len(raw_queries) > max_queries:
        return PlanDecodeResult(
            failure=PlanDecodeFailure(f"at most {max_queries} queries are allowed, got {len(raw_queries)}", raw=text)
        )

    queries: list[QuerySpec] = []
    for index, item in enumerate(raw_queries):
        if isinstance(item, str):
            sql, tables, columns = item, (), ()
        elif isinstance(item, dict) and isinstance(item.get("sql"), str):
            sql, tables, columns = item["sql"], _as_names(item.get("tables")), _as_names(item.get("columns"))
        else:
            return PlanDecodeResult(
                failure=PlanDecodeFailure(f'query {index + 1} must be a SQL string or an object with "sql"', raw=text)
            )
        violation = read_only_violation(sql)
        if violation:
            return PlanDecodeResult(failure=PlanDecodeFailure(f"query {index + 1}: {violation}", raw=text))
        queries.append(QuerySpec(index=index, sql=sql.strip().rstrip(";").strip(), tables=tables, columns=columns))

    answer = payload.get("answer")
    comment = payload.get("comment")
    answer = answer.strip() if isinstance(answer, str) and answer.strip() else None
    comment = comment.strip() if isinstance(comment, str) and comment.strip() else None
    if not queries and answer is None:
        return PlanDecodeResult(failure=PlanDecodeFailure("the reply holds neither queries nor an answer", raw=text))

    plan = QueryPlan(queries=tuple(queries), fingerprint=plan_fingerprint, answer_template=answer, comment=comment)
    return PlanDecodeResult(plan=plan)


# ----------------------------------------------------------------------
# reference validation
# ----------------------------------------------------------------------
def _unquote(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and name[0] == name[-1] == '"':
        name = name[1:-1].replace('""', '"')
    return name.lower()


def referenced_relations(sql: str) -> set[str]:
    """Relations read by ``sql``, excluding names defined by its own CTEs."""

    connection = duckdb.connect()
    try:
        names = connection.get_table_names(sql)
    except duckdb.Error as exc:
        raise ValueError(str(exc)) from exc
    finally:
        connection.close()
    ctes = {_unquote(match) for match in _CTE_NAME.findall(_strip_comments_and_literals(sql))}
    return {name.lower() for name in names} - ctes


def _schema_replica(schemas: Sequence[SchemaDescription]) -> duckdb.DuckDBPyConnection:
    """Empty tables shaped like ``schemas``, for binding queries without data."""

    connection = duckdb.connect(":memory:", config={"enable_external_access": False})
    for schema in schemas:
        columns = ", ".join(
            f"{quote_identifier(column.name)} {SQL_TYPES[column.ctype]}" for column in schema.columns
        )
        connection.execute(f"CREATE TABLE {quote_identifier(schema.table)} ({columns})")
    return connection


def _bind_failure(connection: duckdb.DuckDBPyConnection, spec: QuerySpec) -> str | None:
    """Return the unresolved name when ``spec`` does not bind, else ``None``.

    Errors other than unresolved names (type mismatches, parse errors) are left
    for the executor to report against the single query.
    """

    try:
        connection.execute(f"DESCRIBE {spec.sql}")
    except (duckdb.BinderException, duckdb.CatalogException) as exc:
        message = str(exc)
        if not _UNRESOLVED.search(message):
            logger.info("event=plan_bind query=%s status=deferred error=%s", spec.index, message)
            return None
        named = _UNRESOLVED_NAME.search(message)
        return named.group(1).lower() if named else message.splitlines()[0]
    except duckdb.Error as exc:
        logger.info("event=plan_bind query=%s status=deferred error=%s", spec.index, exc)
        return None
    return None


def validate_plan(plan: QueryPlan, schemas: Sequence[SchemaDescription]) -> QueryPlan:
    """Check every table and column reference; mark queries that read their predecessor."""

    known: dict[str, set[str]] = {schema.table.lower(): {name.lower() for name in schema.column_names} for schema in schemas}
    validated: list[QuerySpec] = []
    replica = _schema_replica(schemas)
    previous_bound = False
    try:
        for spec in plan.queries:
            checked = _check_references(spec, known)
            validated.append(checked)
            if checked.depends_on_previous and not previous_bound:
                # predecessor has no known shape; the executor reports the dependency failure
                continue
            unresolved = _bind_failure(replica, checked)
            if unresolved is not None:
                raise InvalidPlanReference(
                    f"query {spec.index + 1} references unknown name {unresolved!r}",
                    query_index=spec.index,
                    reference=unresolved,
                )
            previous_bound = _shape_result(replica, checked)
    finally:
        replica.close()

    return QueryPlan(
        queries=tuple(validated),
        fingerprint=plan.fingerprint,
        answer_template=plan.answer_template,
        comment=plan.comment,
    )


def _shape_result(connection: duckdb.DuckDBPyConnection, spec: QuerySpec) -> bool:
    """Expose ``spec``'s output columns as its result relation for the next query."""

    try:
        connection.execute(f"CREATE OR REPLACE VIEW {result_relation(spec.index)} AS {spec.sql}")
    except duckdb.Error:
        return False
    return True


def _check_references(spec: QuerySpec, known: dict[str, set[str]]) -> QuerySpec:
    """Resolve the relations ``spec`` reads and check the model's declared columns."""

    try:
        relations = referenced_relations(spec.sql)
    except ValueError as exc:
        # unparsable SQL is reported by the executor as a failure of this query only
        logger.info("event=plan_validate query=%s status=unparsed error=%s", spec.index, exc)
        relations = set()
    relations |= {_unquote(name) for name in spec.tables}

    previous = result_relation(spec.index - 1).lower() if spec.index > 0 else None
    depends = False
    for relation in sorted(relations):
        if relation in known:
            continue
        if _RESULT_NAME.match(relation):
            if relation == previous:
                depends = True
                continue
            raise InvalidPlanReference(
                f"query {spec.index + 1} may only read the result of the query right before it, not {relation}",
                query_index=spec.index,
                reference=relation,
            )
        raise InvalidPlanReference(
            f"query {spec.index + 1} references unknown table {relation!r}",
            query_index=spec.index,
            reference=relation,
        )

    readable = [known[name] for name in relations if name in known]
    for column in spec.columns:
        table_part, _, column_part = column.rpartition(".")
        table_name, column_name = _unquote(table_part), _unquote(column_part)
        if column_name == "*":
            continue
        if table_name in known:
            if column_name in known[table_name]:
                continue
        elif depends and table_name in {"", previous}:
            continue
        elif any(column_name in columns for columns in readable):
            # qualified by a table alias
            continue
        raise InvalidPlanReference(
            f"query {spec.index + 1} references unknown column {column!r}",
            query_index=spec.index,
            reference=column,
        )

    return QuerySpec(
        index=spec.index,
        sql=spec.sql,
        tables=tuple(sorted(relations)),
        columns=spec.columns,
        depends_on_previous=depends,
    )


# ----------------------------------------------------------------------
# planner
# ----------------------------------------------------------------------
def plan_fingerprint(messages: Sequence[str], schemas: Sequence[SchemaDescription]) -> str:
    return fingerprint([schema.to_prompt_dict() for schema in schemas], conversation_digest(messages))


class QueryPlanner:
    def __init__(
        self,
        model: LanguageModel,
        *,
        max_queries: int = 8,
        schema_budget_chars: int = 6000,
        schema_samples: int = 3,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._model = model
        self._max_queries = max_queries
        self._schema_budget_chars = schema_budget_chars
        self._schema_samples = schema_samples
        self._now = now

    def build_prompt(self, messages: Sequence[str], schemas: Sequence[SchemaDescription]) -> list[dict[str, str]]:
        schema_text = render_schemas(schemas, budget_chars=self._schema_budget_chars, max_samples=self._schema_samples)
        system = SYSTEM_PROMPT.format(now=self._now().strftime("%Y-%m-%d %H:%M:%S UTC"), schema=schema_text)
        prompt = [{"role": "system", "content": system}]
        prompt.extend({"role": "user", "content": str(message)} for message in messages)
        return prompt

    async def plan(
        self,
        messages: Sequence[str],
        schemas: Sequence[SchemaDescription],
        *,
        cancel_token: CancelToken | None = None,
    ) -> QueryPlan:
        started = time.perf_counter()
        plan_id = plan_fingerprint(messages, schemas)
        prompt = self.build_prompt(messages, schemas)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        reply = await self._model.complete(prompt)
        decoded = decode_plan(reply, plan_id, max_queries=self._max_queries)

        if not decoded.ok:
            reason = decoded.failure.reason if decoded.failure else "unknown"
            logger.warning("event=plan_decode status=retry reason=%s", reason)
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            prompt = prompt + [
                {"role": "assistant", "content": reply},
                {"role": "user", "content": CORRECTION_PROMPT.format(reason=reason)},
            ]
            reply = await self._model.complete(prompt)
            decoded = decode_plan(reply, plan_id, max_queries=self._max_queries)

        if not decoded.ok or decoded.plan is None:
            reason = decoded.failure.reason if decoded.failure else "unknown"
            logger.warning("event=plan_decode status=failed reason=%s", reason)
            raise PlanParseError(f"planner reply could not be decoded after a corrective retry: {reason}")

        plan = validate_plan(decoded.plan, schemas)
        logger.info(
            "event=plan status=ok queries=%s elapsed_ms=%.0f",
            len(plan.queries),
            (time.perf_counter() - started) * 1000,
        )
        return plan
