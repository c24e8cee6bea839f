"""Per-request relational store backed by an in-memory DuckDB database."""
from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Sequence

import duckdb

from sheet_analyst.core.errors import LoadError
from sheet_analyst.domain.tables import ColumnType, Table
from sheet_analyst.extractors.schema_infer import coerce_value

logger = logging.getLogger(__name__)

SQL_TYPES: dict[ColumnType, str] = {
    ColumnType.BOOLEAN: "BOOLEAN",
    ColumnType.INTEGER: "BIGINT",
    ColumnType.FLOAT: "DOUBLE",
    ColumnType.DATE: "TIMESTAMP",
    ColumnType.TEXT: "VARCHAR",
    ColumnType.MIXED: "VARCHAR",
}

INSERT_BATCH_PARAMS = 2000


def quote_identifier(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


class StoreClosedError(RuntimeError):
    """Raised when a closed handle is used."""


@dataclass
class StoreHandle:
    handle_id: str
    connection: duckdb.DuckDBPyConnection | None
    tables: dict[str, Table] = field(default_factory=dict)
    closed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def require(self) -> duckdb.DuckDBPyConnection:
        if self.closed or self.connection is None:
            raise StoreClosedError(f"store {self.handle_id} is closed")
        return self.connection

    def interrupt(self) -> None:
        connection = self.connection
        if connection is not None and not self.closed:
            connection.interrupt()


@dataclass(frozen=True, slots=True)
class QueryRows:
    columns: tuple[str, ...]
    rows: tuple[tuple[Any, ...], ...]
    truncated: bool


class EphemeralStoreManager:
    """Creates, loads and tears down private stores.

    External file and network access is disabled on every connection, so
    planned SQL can only see the tables loaded into its own store.
    """

    def __init__(self, *, threads: int = 1) -> None:
        self._threads = threads
        self._open: set[str] = set()
        self._registry_lock = threading.Lock()

    @property
    def open_handles(self) -> int:
        with self._registry_lock:
            return len(self._open)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def open_session_store(self) -> StoreHandle:
        connection = duckdb.connect(
            ":memory:",
            config={"threads": self._threads, "enable_external_access": False},
        )
        handle = StoreHandle(handle_id=uuid.uuid4().hex[:12], connection=connection)
        with self._registry_lock:
            self._open.add(handle.handle_id)
        logger.debug("event=store_open handle=%s", handle.handle_id)
        return handle

    def close(self, handle: StoreHandle) -> bool:
        """Release the handle's resources; returns ``False`` if already closed."""

        with handle._lock:
            if handle.closed:
                return False
            handle.closed = True
            connection, handle.connection = handle.connection, None
        try:
            if connection is not None:
                connection.close()
        finally:
            handle.tables.clear()
            with self._registry_lock:
                self._open.discard(handle.handle_id)
            logger.debug("event=store_close handle=%s", handle.handle_id)
        return True

    @contextmanager
    def scoped(self) -> Iterator[StoreHandle]:
        handle = self.open_session_store()
        try:
            yield handle
        finally:
            self.close(handle)

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------
    def load(self, handle: StoreHandle, table: Table) -> None:
        connection = handle.require()
        if table.name in handle.tables:
            raise LoadError(table.name, None, "a table with this name is already loaded")
        if not table.columns:
            raise LoadError(table.name, None, "table has no columns")

        typed_columns: list[list[Any]] = []
        for column in table.columns:
            try:
                typed_columns.append([coerce_value(value, column.ctype) for value in column.values])
            except ValueError as exc:
                raise LoadError(table.name, column.name, str(exc)) from exc

        relation = quote_identifier(table.name)
        definition = ", ".join(f"{quote_identifier(column.name)} {SQL_TYPES[column.ctype]}" for column in table.columns)
        width = len(table.columns)
        batch_rows = max(1, INSERT_BATCH_PARAMS // width)
        row_placeholder = "(" + ", ".join(["?"] * width) + ")"
        rows = list(zip(*typed_columns))

        try:
            connection.execute(f"CREATE TABLE {relation} ({definition})")
            for start in range(0, len(rows), batch_rows):
                batch = rows[start : start + batch_rows]
                placeholders = ", ".join([row_placeholder] * len(batch))
                params = [value for row in batch for value in row]
                connection.execute(f"INSERT INTO {relation} VALUES {placeholders}", params)
        except duckdb.Error as exc:
            connection.execute(f"DROP TABLE IF EXISTS {relation}")
            raise LoadError(table.name, None, str(exc)) from exc

        handle.tables[table.name] = table
        logger.info("event=store_load handle=%s table=%s rows=%s", handle.handle_id, table.name, table.row_count)

    # ------------------------------------------------------------------
    # querying
    # ------------------------------------------------------------------
    @contextmanager
    def _deadline(self, handle: StoreHandle, timeout: float | None) -> Iterator[None]:
        if not timeout:
            yield
            return
        timer = threading.Timer(timeout, handle.interrupt)
        timer.daemon = True
        timer.start()
        try:
            yield
        finally:
            timer.cancel()

    def query(
        self,
        handle: StoreHandle,
        sql: str,
        params: Sequence[Any] | None = None,
        *,
        max_rows: int | None = None,
        timeout: float | None = None,
    ) -> QueryRows:
        connection = handle.require()
        with self._deadline(handle, timeout):
            cursor = connection.execute(sql, list(params or []))
            columns = tuple(description[0] for description in (cursor.description or []))
            if max_rows is None:
                fetched = cursor.fetchall()
            else:
                fetched = cursor.fetchmany(max_rows + 1)
        truncated = max_rows is not None and len(fetched) > max_rows
        if truncated:
            fetched = fetched[:max_rows]
        return QueryRows(columns=columns, rows=tuple(tuple(row) for row in fetched), truncated=truncated)

    def materialize(self, handle: StoreHandle, relation: str, sql: str, *, timeout: float | None = None) -> int:
        """Run ``sql`` into a temporary relation and return its row count."""

        connection = handle.require()
        with self._deadline(handle, timeout):
            connection.execute(f"CREATE TEMP TABLE {quote_identifier(relation)} AS {sql}")
            row = connection.execute(f"SELECT count(*) FROM {quote_identifier(relation)}").fetchone()
        return int(row[0]) if row else 0

    def relation_names(self, handle: StoreHandle) -> list[str]:
        rows = self.query(handle, "SELECT table_name FROM information_schema.tables ORDER BY table_name").rows
        return [row[0] for row in rows]
