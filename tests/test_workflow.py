import json
import sys
from datetime import datetime
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook

sys.path.append(str(Path(__file__).resolve().parents[1]))

from sheet_analyst.app import create_app
from sheet_analyst.application import AnalysisService, reset_analysis_state
from sheet_analyst.core.settings import Settings
from sheet_analyst.infrastructure import UnconfiguredLanguageModel, WorkbookFetcher, configure_language_model

BASE_URL = "https://files.example.com"
SALES_PATH = "/uploads/sales.xlsx"

TOTAL_REPLY = json.dumps(
    {
        "comment": "Sum of the Amount column.",
        "answer": "Total sales: {result_1}",
        "queries": [
            {"sql": "SELECT sum(amount) AS total FROM sales", "tables": ["sales"], "columns": ["sales.amount"]}
        ],
    }
)


class ScriptedModel:
    """Replays canned planner replies; the last one repeats."""

    def __init__(self, *replies: str) -> None:
        self.replies = list(replies)
        self.prompts: list[list[dict[str, str]]] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def complete(self, messages: list[dict[str, str]]) -> str:
        self.prompts.append(messages)
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


@pytest.fixture(autouse=True)
def reset_state():
    reset_analysis_state()
    configure_language_model(UnconfiguredLanguageModel())
    yield
    reset_analysis_state()
    configure_language_model(UnconfiguredLanguageModel())


@pytest.fixture()
def remote_files():
    return {"files": {}, "requests": []}


@pytest.fixture()
def service(remote_files):
    def handler(request: httpx.Request) -> httpx.Response:
        remote_files["requests"].append(str(request.url))
        payload = remote_files["files"].get(request.url.path)
        if payload is None:
            return httpx.Response(404)
        return httpx.Response(200, content=payload)

    settings = Settings(fetch_retries=0, cpu_workers=2)
    fetcher = WorkbookFetcher(retries=0, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return AnalysisService(settings, fetcher=fetcher)


@pytest.fixture()
def client(service):
    app = create_app(Settings(log_level="WARNING"), service=service)
    with TestClient(app) as test_client:
        yield test_client


def _sales_workbook(tmp_path: Path, filename: str = "sales.xlsx", amounts=(10, 20, 30)) -> bytes:
    workbook = Workbook()
    sales = workbook.active
    sales.title = "Sales"
    sales.append(["Date", "Region", "Amount"])
    regions = ["North", "South", "North"]
    for index, amount in enumerate(amounts):
        sales.append([datetime(2024, 1, index + 1), regions[index % len(regions)], amount])

    workbook.create_sheet("Empty")

    headerless = workbook.create_sheet("Headerless")
    for index in range(1, 4):
        headerless.append([index, index * 10, f"item-{index}"])

    path = tmp_path / filename
    workbook.save(path)
    return path.read_bytes()


def _request(
    chat_id: str = "chat-1",
    messages: tuple[str, ...] = ("What are total sales?",),
    url: str = BASE_URL + SALES_PATH + "?signature=one",
    file_type: str = "xlsx",
) -> dict:
    return {
        "user_email": "analyst@example.com",
        "chat_id": chat_id,
        "messages": list(messages),
        "files": [{"type": file_type, "signed_url": url}],
    }


def test_analyze_answers_a_question_end_to_end(client, service, remote_files, tmp_path):
    remote_files["files"][SALES_PATH] = _sales_workbook(tmp_path)
    model = ScriptedModel(TOTAL_REPLY)
    configure_language_model(model)

    response = client.post("/api/sheets/analyze", json=_request())
    assert response.status_code == 200, response.text
    body = response.json()

    assert body["chat_id"] == "chat-1"
    assert body["status"] == "success"
    assert body["answer"] == "Total sales: 60"
    assert body["comment"] == "Sum of the Amount column."
    assert body["results"] == [
        {
            "index": 0,
            "sql": "SELECT sum(amount) AS total FROM sales",
            "columns": ["total"],
            "rows": [[60]],
            "total_rows": 1,
            "truncated": False,
        }
    ]
    assert body["errors"] == []
    assert body["skipped_sheets"] == [{"file": BASE_URL + SALES_PATH, "sheet": "Empty"}]
    assert body["cached"] is False

    tables = {table["table"]: table for table in body["analysis"]}
    assert set(tables) == {"sales", "headerless"}
    sales = tables["sales"]
    assert sales["file"] == BASE_URL + SALES_PATH
    assert sales["sheet"] == "Sales"
    assert sales["row_count"] == 3
    assert sales["column_count"] == 3
    assert sales["date_columns"] == ["date"]
    assert sales["numeric_columns"] == ["amount"]
    assert sales["text_columns"] == ["region"]
    amount = next(column for column in sales["columns"] if column["name"] == "amount")
    assert amount["label"] == "Amount"
    assert amount["min_value"] == "10"
    assert amount["max_value"] == "30"
    assert [column["name"] for column in tables["headerless"]["columns"]] == ["col_1", "col_2", "col_3"]

    system_prompt = model.prompts[0][0]["content"]
    assert '"table": "sales"' in system_prompt
    assert model.prompts[0][-1] == {"role": "user", "content": "What are total sales?"}
    assert service.store.open_handles == 0


def test_repeated_question_is_served_from_session_and_result_cache(client, remote_files, tmp_path):
    remote_files["files"][SALES_PATH] = _sales_workbook(tmp_path)
    model = ScriptedModel(TOTAL_REPLY)
    configure_language_model(model)

    first = client.post("/api/sheets/analyze", json=_request())
    second = client.post("/api/sheets/analyze", json=_request())

    assert first.status_code == 200 and second.status_code == 200
    assert second.json()["cached"] is True
    assert second.json()["answer"] == first.json()["answer"]
    assert len(remote_files["requests"]) == 1
    assert model.calls == 1


def test_resigned_url_in_another_chat_reuses_parsed_tables(client, service, remote_files, tmp_path):
    remote_files["files"][SALES_PATH] = _sales_workbook(tmp_path)
    configure_language_model(ScriptedModel(TOTAL_REPLY))

    first = client.post("/api/sheets/analyze", json=_request(chat_id="chat-1"))
    second = client.post(
        "/api/sheets/analyze",
        json=_request(chat_id="chat-2", url=BASE_URL + SALES_PATH + "?signature=two"),
    )

    assert first.status_code == 200 and second.status_code == 200
    # the file is downloaded again to learn its content hash, but not parsed again
    assert len(remote_files["requests"]) == 2
    assert service.table_cache.stats.computations == 1
    assert service.table_cache.stats.hits == 1
    assert second.json()["answer"] == "Total sales: 60"


def test_failed_query_yields_partial_result(client, remote_files, tmp_path):
    remote_files["files"][SALES_PATH] = _sales_workbook(tmp_path)
    reply = json.dumps(
        {
            "answer": "Rows: {result_2}",
            "queries": [
                "SELECT CAST(region AS INTEGER) AS region_number FROM sales",
                "SELECT count(*) AS n FROM sales",
            ],
        }
    )
    configure_language_model(ScriptedModel(reply))

    response = client.post("/api/sheets/analyze", json=_request())

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "partial"
    assert body["answer"] == "Rows: 3"
    assert [result["index"] for result in body["results"]] == [1]
    assert len(body["errors"]) == 1
    assert body["errors"][0]["code"] == "execution.query_failed"
    assert body["errors"][0]["query_index"] == 0


def test_sheets_with_the_same_name_in_two_files_get_unique_tables(client, remote_files, tmp_path):
    remote_files["files"]["/uploads/north.xlsx"] = _sales_workbook(tmp_path, "north.xlsx")
    remote_files["files"]["/uploads/south.xlsx"] = _sales_workbook(tmp_path, "south.xlsx", amounts=(1, 2, 3))
    reply = json.dumps(
        {
            "answer": "Combined: {result_1}",
            "queries": ["SELECT (SELECT sum(amount) FROM sales) + (SELECT sum(amount) FROM sales_2) AS total"],
        }
    )
    configure_language_model(ScriptedModel(reply))
    payload = _request()
    payload["files"] = [
        {"type": "xlsx", "signed_url": BASE_URL + "/uploads/north.xlsx?signature=a"},
        {"type": "xlsx", "signed_url": BASE_URL + "/uploads/south.xlsx?signature=b"},
    ]

    response = client.post("/api/sheets/analyze", json=payload)

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["answer"] == "Combined: 66"
    names = [table["table"] for table in body["analysis"]]
    assert names == ["sales", "headerless", "sales_2", "headerless_2"]


def test_csv_file_becomes_a_table_named_after_the_file(client, remote_files):
    remote_files["files"]["/uploads/q3-orders.csv"] = b"order_id,amount\n1,5\n2,7\n"
    reply = json.dumps({"answer": "{result_1} orders", "queries": ["SELECT count(*) AS orders FROM q3_orders"]})
    configure_language_model(ScriptedModel(reply))

    response = client.post(
        "/api/sheets/analyze",
        json=_request(url=BASE_URL + "/uploads/q3-orders.csv?signature=x", file_type="text/csv"),
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["answer"] == "2 orders"
    assert body["analysis"][0]["table"] == "q3_orders"
    assert body["analysis"][0]["numeric_columns"] == ["order_id", "amount"]


def test_unparsable_plan_fails_after_one_retry(client, service, remote_files, tmp_path):
    remote_files["files"][SALES_PATH] = _sales_workbook(tmp_path)
    model = ScriptedModel("I think the answer is sixty.", "Still not JSON.")
    configure_language_model(model)

    response = client.post("/api/sheets/analyze", json=_request())

    assert response.status_code == 502
    body = response.json()
    assert body["status"] == "failed"
    assert body["error"]["code"] == "planner.parse_failed"
    assert model.calls == 2
    assert service.store.open_handles == 0


def test_plan_with_unknown_table_is_rejected(client, remote_files, tmp_path):
    remote_files["files"][SALES_PATH] = _sales_workbook(tmp_path)
    configure_language_model(ScriptedModel(json.dumps({"queries": ["SELECT * FROM customers"]})))

    response = client.post("/api/sheets/analyze", json=_request())

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "planner.invalid_reference"


def test_plan_with_unknown_column_is_rejected(client, service, remote_files, tmp_path):
    remote_files["files"][SALES_PATH] = _sales_workbook(tmp_path)
    configure_language_model(ScriptedModel(json.dumps({"queries": ["SELECT sum(discount) FROM sales"]})))

    response = client.post("/api/sheets/analyze", json=_request())

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "planner.invalid_reference"
    assert service.store.open_handles == 0


def test_unconfigured_model_reports_planner_unavailable(client, remote_files, tmp_path):
    remote_files["files"][SALES_PATH] = _sales_workbook(tmp_path)

    response = client.post("/api/sheets/analyze", json=_request())

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "planner.unavailable"


def test_missing_remote_file_fails_the_request(client, remote_files):
    configure_language_model(ScriptedModel(TOTAL_REPLY))

    response = client.post("/api/sheets/analyze", json=_request())

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "fetch.unsupported_status"
    assert len(remote_files["requests"]) == 1


def test_workbook_without_data_fails_the_request(client, remote_files, tmp_path):
    workbook = Workbook()
    workbook.active.title = "Empty"
    path = tmp_path / "empty.xlsx"
    workbook.save(path)
    remote_files["files"][SALES_PATH] = path.read_bytes()
    configure_language_model(ScriptedModel(TOTAL_REPLY))

    response = client.post("/api/sheets/analyze", json=_request())

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "parse.no_tables"


def test_session_can_be_inspected_and_closed(client, remote_files, tmp_path):
    remote_files["files"][SALES_PATH] = _sales_workbook(tmp_path)
    configure_language_model(ScriptedModel(TOTAL_REPLY))
    assert client.post("/api/sheets/analyze", json=_request()).status_code == 200

    snapshot = client.get("/api/sheets/sessions/chat-1")
    assert snapshot.status_code == 200
    body = snapshot.json()
    assert body["state"] == "idle"
    assert body["sequence"] == 1
    assert body["queued"] == 0
    assert body["workbooks"] == [BASE_URL + SALES_PATH]

    closed = client.delete("/api/sheets/sessions/chat-1")
    assert closed.status_code == 200
    assert closed.json() == {"chat_id": "chat-1", "state": "closed"}

    assert client.get("/api/sheets/sessions/chat-1").status_code == 404
    assert client.delete("/api/sheets/sessions/chat-1").status_code == 404


def test_invalid_requests_are_rejected(client):
    no_messages = _request()
    no_messages["messages"] = []
    assert client.post("/api/sheets/analyze", json=no_messages).status_code == 422

    bad_url = _request(url="ftp://files.example.com/sales.xlsx")
    assert client.post("/api/sheets/analyze", json=bad_url).status_code == 422


def test_root_describes_the_api(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["analyze"] == "/api/sheets/analyze"
