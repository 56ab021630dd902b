import json

import pytest
import requests

from analyst_pipelines.lib import route_trace
from analyst_pipelines.lib.route_trace import (
    RouteTracer,
    current_route_tracer,
    redact_payload,
    reset_active_route_tracer,
    set_active_route_tracer,
    summarize_payload,
    traced_stage,
)


def test_redact_payload_masks_secret_keys_and_tokens() -> None:
    redacted = redact_payload(
        {
            "api_key": "plain-secret",
            "note": "Bearer abc.def.ghi and sk-abcdefghijklmnopqrstuvwxyz",
            "nested": [{"password": "x"}, b"raw"],
        }
    )
    assert redacted["api_key"] == "[REDACTED]"
    assert "abc.def.ghi" not in redacted["note"]
    assert "sk-[REDACTED]" in redacted["note"]
    assert redacted["nested"][0]["password"] == "[REDACTED]"
    assert redacted["nested"][1] == "[bytes:3]"


def test_summarize_payload_kinds() -> None:
    assert summarize_payload(None) == {"kind": "none"}
    assert summarize_payload("hello")["kind"] == "text"
    small = summarize_payload({"status": "hit"})
    assert small["kind"] == "json_object"
    assert small["value"] == {"status": "hit"}
    assert summarize_payload([1, 2, 3])["items"] == 3
    assert summarize_payload(7) == {"size_bytes": 1, "kind": "scalar", "value": 7}


def test_stage_lifecycle_and_persisted_snapshot(tmp_path) -> None:
    path = tmp_path / "traces" / "routes.jsonl"
    tracer = RouteTracer(request_id="req-1", trace_id="trace-1", persist_path=str(path), meta={"token": "t"})
    sid = tracer.start_stage(stage_key="plan_llm", stage_name="Planner", purpose="plan", input_payload={"q": "x"})
    tracer.end_stage(sid, status="ok", output_payload={"action": "direct_analysis"})
    tracer.record_stage(stage_key="plan_execute", stage_name="Exec", purpose="run", status="error", error={"message": "boom"})
    tracer.finalize("error")

    stages = tracer.stages
    assert [s.stage_id for s in stages] == ["1:plan_llm", "2:plan_execute"]
    assert stages[0].duration_ms is not None
    assert stages[1].error == {"message": "boom"}

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    snapshot = json.loads(lines[0])
    assert snapshot["trace_id"] == "trace-1"
    assert snapshot["status"] == "error"
    assert snapshot["final"] is True
    assert snapshot["meta"] == {"token": "[REDACTED]"}


def test_end_stage_unknown_id_is_ignored() -> None:
    tracer = RouteTracer(request_id="r")
    tracer.end_stage("99:missing")
    assert tracer.stages == []


def test_publish_snapshot_posts_to_sink(monkeypatch) -> None:
    calls = []

    def _fake_post(url, headers=None, json=None, timeout=None):
        calls.append({"url": url, "headers": headers, "json": json})

    monkeypatch.setattr(route_trace.requests, "post", _fake_post)
    tracer = RouteTracer(request_id="r", sink_url="http://sink/v1/traces/upsert", sink_api_key="k")
    tracer.publish_snapshot()
    assert calls[0]["url"] == "http://sink/v1/traces/upsert"
    assert calls[0]["headers"]["Authorization"] == "Bearer k"
    assert calls[0]["json"]["final"] is False


def test_publish_snapshot_survives_sink_errors(monkeypatch) -> None:
    def _boom(*_args, **_kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(route_trace.requests, "post", _boom)
    RouteTracer(request_id="r", sink_url="http://sink").publish_snapshot(final=True)


def test_active_tracer_contextvar() -> None:
    assert current_route_tracer() is None
    tracer = RouteTracer(request_id="ctx")
    token = set_active_route_tracer(tracer)
    try:
        assert current_route_tracer() is tracer
    finally:
        reset_active_route_tracer(token)
    assert current_route_tracer() is None


def test_traced_stage_records_output_and_errors() -> None:
    tracer = RouteTracer(request_id="stages")
    token = set_active_route_tracer(tracer)
    try:
        with traced_stage("plan_execute", "Exec", "run", {"filters": 1}) as stage:
            stage.output = {"metrics": {"count": 2}}
        with pytest.raises(RuntimeError):
            with traced_stage("insights_llm", "LLM", "call"):
                raise RuntimeError("upstream 500")
    finally:
        reset_active_route_tracer(token)

    ok, failed = tracer.stages
    assert ok.status == "ok"
    assert ok.output_summary["value"] == {"metrics": {"count": 2}}
    assert failed.status == "error"
    assert failed.error == {"type": "RuntimeError", "message": "upstream 500"}


def test_traced_stage_without_tracer_is_noop() -> None:
    with traced_stage("plan_llm", "Planner", "plan") as stage:
        stage.output = {"action": "direct_analysis"}
    assert current_route_tracer() is None
