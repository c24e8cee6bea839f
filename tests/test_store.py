from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import duckdb
import pytest

from sheet_analyst.core.errors import LoadError
from sheet_analyst.domain.tables import Column, ColumnType, Table
from sheet_analyst.infrastructure.store import EphemeralStoreManager, StoreClosedError


def _sales_table() -> Table:
    return Table(
        name="sales",
        columns=(
            Column("day", (datetime(2024, 1, 1), datetime(2024, 1, 2), None), ColumnType.DATE),
            Column("amount", (10, None, 30), ColumnType.INTEGER),
            Column("ratio", (0.5, 1.5, None), ColumnType.FLOAT),
            Column("region", ("north", "south", None), ColumnType.TEXT),
            Column("paid", (True, False, None), ColumnType.BOOLEAN),
        ),
    )


def test_loaded_table_reads_back_unchanged():
    manager = EphemeralStoreManager()
    table = _sales_table()

    with manager.scoped() as handle:
        manager.load(handle, table)
        result = manager.query(handle, 'SELECT * FROM "sales"')

    assert result.columns == ("day", "amount", "ratio", "region", "paid")
    assert list(result.rows) == table.rows()
    assert result.truncated is False


def test_large_tables_load_in_batches():
    manager = EphemeralStoreManager()
    values = tuple(range(5000))
    table = Table(
        name="numbers",
        columns=(Column("n", values, ColumnType.INTEGER), Column("label", tuple(str(v) for v in values), ColumnType.TEXT)),
    )

    with manager.scoped() as handle:
        manager.load(handle, table)
        total = manager.query(handle, "SELECT count(*), sum(n) FROM numbers").rows[0]

    assert total == (5000, sum(values))


def test_store_is_closed_exactly_once():
    manager = EphemeralStoreManager()

    with manager.scoped() as handle:
        assert manager.open_handles == 1

    assert manager.open_handles == 0
    assert handle.closed is True
    assert manager.close(handle) is False
    with pytest.raises(StoreClosedError):
        handle.require()


def test_store_is_closed_when_the_scope_fails():
    manager = EphemeralStoreManager()

    with pytest.raises(RuntimeError):
        with manager.scoped() as handle:
            manager.load(handle, _sales_table())
            raise RuntimeError("planner exploded")

    assert handle.closed is True
    assert manager.open_handles == 0


def test_load_error_names_table_and_column():
    manager = EphemeralStoreManager()
    table = Table(name="orders", columns=(Column("quantity", (1, "many"), ColumnType.INTEGER),))

    with manager.scoped() as handle:
        with pytest.raises(LoadError) as excinfo:
            manager.load(handle, table)
        assert manager.relation_names(handle) == []

    assert excinfo.value.table == "orders"
    assert excinfo.value.column == "quantity"
    assert excinfo.value.to_dict()["code"] == "store.load_failed"


def test_row_cap_marks_results_truncated():
    manager = EphemeralStoreManager()
    table = Table(name="t", columns=(Column("n", tuple(range(10)), ColumnType.INTEGER),))

    with manager.scoped() as handle:
        manager.load(handle, table)
        capped = manager.query(handle, "SELECT n FROM t ORDER BY n", max_rows=3)
        exact = manager.query(handle, "SELECT n FROM t ORDER BY n", max_rows=10)

    assert capped.rows == ((0,), (1,), (2,))
    assert capped.truncated is True
    assert exact.truncated is False


def test_parameters_are_bound_not_interpolated():
    manager = EphemeralStoreManager()

    with manager.scoped() as handle:
        manager.load(handle, _sales_table())
        rows = manager.query(handle, "SELECT amount FROM sales WHERE region = ?", ["north"]).rows
        nothing = manager.query(handle, "SELECT amount FROM sales WHERE region = ?", ["north' OR '1'='1"]).rows

    assert rows == ((10,),)
    assert nothing == ()


def test_materialized_results_are_queryable():
    manager = EphemeralStoreManager()

    with manager.scoped() as handle:
        manager.load(handle, _sales_table())
        count = manager.materialize(handle, "result_1", "SELECT region, amount FROM sales WHERE amount IS NOT NULL")
        follow_up = manager.query(handle, "SELECT sum(amount) FROM result_1").rows

    assert count == 2
    assert follow_up == ((40,),)


def test_stores_are_isolated_from_each_other():
    manager = EphemeralStoreManager()

    with manager.scoped() as first, manager.scoped() as second:
        manager.load(first, _sales_table())
        with pytest.raises(duckdb.Error):
            manager.query(second, "SELECT * FROM sales")


def test_external_file_access_is_disabled(tmp_path):
    secret = tmp_path / "secret.csv"
    secret.write_text("a\n1\n")
    manager = EphemeralStoreManager()

    with manager.scoped() as handle:
        with pytest.raises(duckdb.Error):
            manager.query(handle, f"SELECT * FROM read_csv('{secret}')")
