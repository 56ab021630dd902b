import base64
import json

from fastapi.testclient import TestClient

from analyst_pipelines.hybrid_analyst_pipeline import Pipeline
from analyst_pipelines.lib.pipeline_prompts import DEFAULT_PLANNER_SYSTEM
from analyst_service import main as service_main

client = TestClient(service_main.app)

CSV = (
    "carrier,tracking_no,vend_track_no,return_po\n"
    "UPS,A,A,PO1\n"
    "UPS,B,C,\n"
    "FEDEX,D,,PO3\n"
)


def _fake_llm(system: str, user: str) -> str:
    if DEFAULT_PLANNER_SYSTEM in system:
        return '{"action": "direct_analysis"}'
    return json.dumps({"blocks": [{"type": "markdown", "data": "Most shipments match."}]})


def setup_function() -> None:
    service_main.ANALYST_API_KEY = ""
    with service_main.STORE_LOCK:
        service_main.DATASET_STORE.clear()
    service_main.PIPELINE = Pipeline(Pipeline.Valves(route_trace_enabled=False, llm_api_key=""), llm_text=_fake_llm)


def _load(text: str = CSV, filename: str = "shipments.csv") -> str:
    resp = client.post(
        "/v1/dataset/load",
        json={"filename": filename, "content_type": "text/csv", "data_b64": base64.b64encode(text.encode()).decode()},
    )
    assert resp.status_code == 200
    return resp.json()["dataset_id"]


def test_health() -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_load_and_profile() -> None:
    dataset_id = _load()
    resp = client.get(f"/v1/dataset/{dataset_id}/profile")
    assert resp.status_code == 200
    profile = resp.json()["profile"]
    assert profile["rows"] == 3
    assert profile["columns"] == ["carrier", "tracking_no", "vend_track_no", "return_po"]
    assert profile["empty_counts"]["return_po"] == 1


def test_load_rejects_bad_input() -> None:
    bad_b64 = client.post("/v1/dataset/load", json={"filename": "x.csv", "data_b64": "@@not base64@@"})
    assert bad_b64.status_code == 400
    assert bad_b64.json()["detail"] == "invalid_base64"

    garbage = base64.b64encode(b"definitely not a workbook").decode()
    bad_xlsx = client.post("/v1/dataset/load", json={"filename": "book.xlsx", "data_b64": garbage})
    assert bad_xlsx.status_code == 400
    assert bad_xlsx.json()["detail"].startswith("read_error:")


def test_unknown_dataset_is_404() -> None:
    assert client.get("/v1/dataset/nope/profile").status_code == 404
    resp = client.post("/v1/dataset/nope/ask", json={"question": "unique count of carrier"})
    assert resp.status_code == 404
    assert resp.json()["detail"] == "dataset_not_found"


def test_ask_local_match() -> None:
    dataset_id = _load()
    resp = client.post(f"/v1/dataset/{dataset_id}/ask", json={"question": "Show the distribution of carrier"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["route"] == "local"
    assert body["intent_id"] == "distribution"
    assert [b["type"] for b in body["blocks"]] == ["markdown", "chart", "table"]
    assert body["blocks"][1]["data"]["type"] == "pie"
    assert "backgroundColor" in body["blocks"][1]["data"]["datasets"][0]


def test_ask_local_only_without_match() -> None:
    dataset_id = _load()
    resp = client.post(
        f"/v1/dataset/{dataset_id}/ask",
        json={"question": "Summarize vendor performance", "local_only": True},
    )
    assert resp.json() == {"route": "no_match", "intent_id": None, "blocks": []}


def test_ask_goes_to_external_engine_with_knowledge() -> None:
    seen = []

    def _recording_llm(system: str, user: str) -> str:
        seen.append(user)
        return _fake_llm(system, user)

    service_main.PIPELINE = Pipeline(Pipeline.Valves(route_trace_enabled=False), llm_text=_recording_llm)
    dataset_id = _load()
    resp = client.post(
        f"/v1/dataset/{dataset_id}/ask",
        json={
            "question": "Summarize vendor performance",
            "knowledge": [{"name": "notes.md", "content": "Vendors must send tracking numbers."}],
        },
        headers={"x-request-id": "req-7"},
    )
    body = resp.json()
    assert body["route"] == "direct"
    assert body["blocks"] == [{"type": "markdown", "data": "Most shipments match."}]
    assert "Vendors must send tracking numbers." in seen[-1]


def test_execute_plan() -> None:
    dataset_id = _load()
    plan = {
        "action": "filter_and_analyze",
        "filters": [{"column": "carrier", "operator": "equals", "value": "ups"}],
        "calculations": ["count", "mismatch_rate", "missing_po_rate"],
    }
    resp = client.post(f"/v1/dataset/{dataset_id}/execute", json={"plan": plan})
    assert resp.status_code == 200
    body = resp.json()
    assert body["rows"] == 2
    assert body["metrics"] == {"count": 2, "mismatch_rate": 50.0, "missing_po_rate": 50.0}
    assert body["notes"] == {}
    assert [b["data"]["value"] for b in body["blocks"] if b["type"] == "card"] == ["2", "50.00%", "50.00%"]


def test_execute_rejects_invalid_plan() -> None:
    dataset_id = _load()
    resp = client.post(f"/v1/dataset/{dataset_id}/execute", json={"plan": {"calculations": ["median"]}})
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("invalid_plan")


def test_execute_rejects_unknown_action() -> None:
    dataset_id = _load()
    plan = {
        "action": "filter_and_analyse",
        "filters": [{"column": "return_po", "operator": "is_empty"}],
        "calculations": ["count"],
    }
    resp = client.post(f"/v1/dataset/{dataset_id}/execute", json={"plan": plan})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "invalid_plan:1_errors"


def test_delete_discards_dataset() -> None:
    dataset_id = _load()
    assert client.delete(f"/v1/dataset/{dataset_id}").status_code == 200
    assert client.get(f"/v1/dataset/{dataset_id}/profile").status_code == 404
    assert client.delete(f"/v1/dataset/{dataset_id}").status_code == 404


def test_bearer_auth_when_key_configured() -> None:
    service_main.ANALYST_API_KEY = "secret"
    payload = {"filename": "a.csv", "data_b64": base64.b64encode(CSV.encode()).decode()}
    assert client.post("/v1/dataset/load", json=payload).status_code == 401
    ok = client.post("/v1/dataset/load", json=payload, headers={"Authorization": "Bearer secret"})
    assert ok.status_code == 200
