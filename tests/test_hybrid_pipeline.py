import json
from typing import Callable, Dict, List

import pytest

from analyst_pipelines.hybrid_analyst_pipeline import GEMINI_OPENAI_BASE_URL, KnowledgeFile, Pipeline
from analyst_pipelines.lib.blocks import ANALYSIS_ERROR_TEXT, MarkdownBlock
from analyst_pipelines.lib.dataset import TabularDataset
from analyst_pipelines.lib.pipeline_prompts import DEFAULT_PLANNER_SYSTEM


def _dataset() -> TabularDataset:
    rows = [
        {"carrier": "UPS", "tracking_no": "A", "vend_track_no": "A", "return_po": "PO1"},
        {"carrier": "UPS", "tracking_no": "B", "vend_track_no": "C", "return_po": ""},
        {"carrier": "FEDEX", "tracking_no": "D", "vend_track_no": "", "return_po": ""},
        {"carrier": "DHL", "tracking_no": "E", "vend_track_no": "E", "return_po": " "},
    ]
    return TabularDataset.from_records(["carrier", "tracking_no", "vend_track_no", "return_po"], rows)


def _valves(**overrides) -> Pipeline.Valves:
    params = {"route_trace_enabled": False, "llm_api_key": "", "shortcut_enabled": True, "planner_enabled": True}
    params.update(overrides)
    return Pipeline.Valves(**params)


class FakeLLM:
    def __init__(self, plan_reply: str, insights_reply: str) -> None:
        self.plan_reply = plan_reply
        self.insights_reply = insights_reply
        self.calls: List[Dict[str, str]] = []

    def __call__(self, system: str, user: str) -> str:
        stage = "plan" if DEFAULT_PLANNER_SYSTEM in system else "insights"
        self.calls.append({"stage": stage, "system": system, "user": user})
        reply = self.plan_reply if stage == "plan" else self.insights_reply
        if isinstance(reply, Exception):
            raise reply
        return reply


def _insights(text: str) -> str:
    return json.dumps({"blocks": [{"type": "markdown", "data": text}]})


def _never_called() -> Callable[[str, str], str]:
    def _fail(_system: str, _user: str) -> str:
        raise AssertionError("external engine must not be called")

    return _fail


def test_local_match_does_not_call_external_engine() -> None:
    pipe = Pipeline(_valves(), llm_text=_never_called())
    answer = pipe.answer("unique count of carrier", _dataset())
    assert answer.route == "local"
    assert answer.intent_id == "unique_count"
    assert answer.blocks[0].data.value == "3"
    assert answer.plan is None


def test_missing_column_is_answered_locally() -> None:
    pipe = Pipeline(_valves(), llm_text=_never_called())
    answer = pipe.answer("distribution of warehouse", _dataset())
    assert answer.route == "local"
    assert answer.blocks == [MarkdownBlock(data="Error: Column 'warehouse' not found in the data.")]


def test_plan_route_prepends_metric_cards() -> None:
    plan = {
        "action": "filter_and_analyze",
        "filters": [{"column": "return_po", "operator": "is_empty"}],
        "calculations": ["count", "mismatch_rate"],
    }
    llm = FakeLLM(json.dumps(plan), _insights("Three shipments lack a return PO."))
    pipe = Pipeline(_valves(answer_table_max_rows=5), llm_text=llm)
    answer = pipe.answer("Which shipments are missing a return PO?", _dataset())

    assert answer.route == "plan"
    assert answer.metrics["count"] == 3
    assert answer.metrics["mismatch_rate"] == pytest.approx(100.0 / 3)
    assert [b.type for b in answer.blocks] == ["card", "card", "table", "markdown"]
    assert answer.blocks[0].data.value == "3"
    assert answer.blocks[1].data.value == "33.33%"
    assert answer.blocks[-1].data == "Three shipments lack a return PO."

    assert [c["stage"] for c in llm.calls] == ["plan", "insights"]
    insights_user = llm.calls[1]["user"]
    assert "Pre-computed metrics" in insights_user
    assert "PO1" not in insights_user


def test_direct_route_skips_executor() -> None:
    llm = FakeLLM('{"action": "direct_analysis"}', _insights("Overall the data looks healthy."))
    pipe = Pipeline(_valves(), llm_text=llm)
    answer = pipe.answer("Summarize vendor performance", _dataset())
    assert answer.route == "direct"
    assert answer.metrics == {}
    assert [b.type for b in answer.blocks] == ["markdown"]
    assert "Pre-computed metrics" not in llm.calls[1]["user"]
    assert "PO1" in llm.calls[1]["user"]


def test_planner_failure_degrades_to_direct_analysis() -> None:
    llm = FakeLLM("I cannot produce a plan.", _insights("ok"))
    answer = Pipeline(_valves(), llm_text=llm).answer("Summarize vendor performance", _dataset())
    assert answer.route == "direct"
    assert answer.plan is not None and answer.plan.action == "direct_analysis"


def test_insights_failure_returns_error_block() -> None:
    llm = FakeLLM('{"action": "direct_analysis"}', RuntimeError("upstream 500"))
    answer = Pipeline(_valves(), llm_text=llm).answer("Summarize vendor performance", _dataset())
    assert answer.route == "error"
    assert answer.blocks == [MarkdownBlock(data=ANALYSIS_ERROR_TEXT)]


def test_missing_api_key_is_reported_as_error_block() -> None:
    answer = Pipeline(_valves(llm_api_key="")).answer("Summarize vendor performance", _dataset())
    assert answer.route == "error"
    assert answer.blocks[0].data == ANALYSIS_ERROR_TEXT


def test_knowledge_files_are_forwarded() -> None:
    llm = FakeLLM('{"action": "direct_analysis"}', _insights("ok"))
    knowledge = [KnowledgeFile(name="glossary.md", content="A return PO links a return to its order."), KnowledgeFile("empty.txt", "  ")]
    Pipeline(_valves(), llm_text=llm).answer("Summarize vendor performance", _dataset(), knowledge=knowledge)
    user = llm.calls[1]["user"]
    assert "### glossary.md" in user
    assert "A return PO links a return to its order." in user
    assert "empty.txt" not in user


def test_disabled_shortcut_and_planner() -> None:
    llm = FakeLLM('{"action": "filter_and_analyze"}', _insights("ok"))
    pipe = Pipeline(_valves(shortcut_enabled=False, planner_enabled=False), llm_text=llm)
    answer = pipe.answer("unique count of carrier", _dataset())
    assert answer.route == "direct"
    assert [c["stage"] for c in llm.calls] == ["insights"]


def test_max_prompt_rows_caps_csv() -> None:
    llm = FakeLLM('{"action": "direct_analysis"}', _insights("ok"))
    Pipeline(_valves(max_prompt_rows=2), llm_text=llm).answer("Summarize vendor performance", _dataset())
    user = llm.calls[1]["user"]
    assert "(first 2 of 4 rows)" in user
    assert "DHL" not in user


def test_answer_payload_uses_wire_shape() -> None:
    plan = {"action": "filter_and_analyze", "calculations": ["count"], "data_subset_columns": ["carrier"]}
    llm = FakeLLM(json.dumps(plan), _insights("ok"))
    payload = Pipeline(_valves(), llm_text=llm).answer("How many rows are there?", _dataset()).to_payload()
    assert payload["route"] == "plan"
    assert payload["plan"]["data_subset_columns"] == ["carrier"]
    assert payload["plan"]["calculations"] == ["count"]
    assert payload["blocks"][0]["type"] == "card"
    assert payload["trace_id"]


def test_route_trace_records_stages(tmp_path) -> None:
    path = tmp_path / "trace.jsonl"
    plan = {"action": "filter_and_analyze", "calculations": ["count"]}
    llm = FakeLLM(json.dumps(plan), _insights("ok"))
    valves = _valves(route_trace_enabled=True, route_trace_persist_path=str(path), route_trace_sink_url="")
    answer = Pipeline(valves, llm_text=llm).answer("How many rows are there?", _dataset(), request_id="req-42")
    snapshot = json.loads(path.read_text(encoding="utf-8").splitlines()[-1])
    assert snapshot["request_id"] == "req-42"
    assert snapshot["trace_id"] == answer.trace_id
    assert [s["stage_key"] for s in snapshot["stages"]] == ["shortcut_router", "plan_llm", "plan_execute", "insights_llm"]


def test_gemini_provider_uses_openai_compatible_endpoint() -> None:
    pipe = Pipeline(_valves(provider="gemini", llm_base_url=""), llm_text=_never_called())
    assert pipe._base_url() == GEMINI_OPENAI_BASE_URL
    custom = Pipeline(_valves(llm_base_url="http://gateway/v1"), llm_text=_never_called())
    assert custom._base_url() == "http://gateway/v1"
