import contextlib
import contextvars
import json
import logging
import os
import re
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import requests

_SECRET_KEY_RE = re.compile(
    r"(api[_-]?key|authorization|auth|token|secret|password|passwd|bearer|cookie|session|private[_-]?key)", re.I
)
_VALUE_PATTERNS = (
    (re.compile(r"\bBearer\s+[A-Za-z0-9._\-+/=]+", re.I), "Bearer [REDACTED]"),
    (re.compile(r"\bsk-[A-Za-z0-9\-]{12,}\b"), "sk-[REDACTED]"),
    (re.compile(r"\bAIza[0-9A-Za-z_\-]{20,}\b"), "[REDACTED_KEY]"),
)
_SMALL_VALUE_CHARS = 400

try:
    _SINK_TIMEOUT_S = float(os.getenv("ANALYST_TRACE_SINK_TIMEOUT_S", "0.8"))
except ValueError:
    _SINK_TIMEOUT_S = 0.8

_ACTIVE_ROUTE_TRACER: contextvars.ContextVar[Optional["RouteTracer"]] = contextvars.ContextVar(
    "active_route_tracer", default=None
)


def set_active_route_tracer(tracer: Optional["RouteTracer"]) -> contextvars.Token:
    return _ACTIVE_ROUTE_TRACER.set(tracer)


def reset_active_route_tracer(token: contextvars.Token) -> None:
    _ACTIVE_ROUTE_TRACER.reset(token)


def current_route_tracer() -> Optional["RouteTracer"]:
    return _ACTIVE_ROUTE_TRACER.get()


def redact_payload(value: Any, max_depth: int = 6) -> Any:
    if max_depth <= 0:
        return "[MAX_DEPTH]"
    if isinstance(value, dict):
        return {
            str(k): "[REDACTED]" if _SECRET_KEY_RE.search(str(k)) else redact_payload(v, max_depth - 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_payload(v, max_depth - 1) for v in value]
    if isinstance(value, bytes):
        return f"[bytes:{len(value)}]"
    if isinstance(value, str):
        for pattern, replacement in _VALUE_PATTERNS:
            value = pattern.sub(replacement, value)
        return value
    return value


def summarize_payload(payload: Any) -> Dict[str, Any]:
    """Describe a stage payload without copying it into the trace.

    Text is reduced to its size. Objects keep their keys, and small objects
    (statuses, intent ids, metric dicts) are kept whole after redaction.
    """
    value = redact_payload(payload)
    if value is None:
        return {"kind": "none"}
    if isinstance(value, str):
        return {"kind": "text", "chars": len(value), "size_bytes": len(value.encode("utf-8", errors="ignore"))}

    raw = json.dumps(value, ensure_ascii=False, default=str, separators=(",", ":"))
    summary: Dict[str, Any] = {"size_bytes": len(raw.encode("utf-8", errors="ignore"))}
    if isinstance(value, dict):
        summary["kind"] = "json_object"
        summary["keys"] = [str(k) for k in list(value)[:50]]
        if len(raw) <= _SMALL_VALUE_CHARS:
            summary["value"] = value
    elif isinstance(value, list):
        summary["kind"] = "json_array"
        summary["items"] = len(value)
    else:
        summary["kind"] = "scalar"
        summary["value"] = value
    return summary


@dataclass
class StageEvent:
    stage_id: str
    stage_index: int
    stage_key: str
    stage_name: str
    purpose: str
    started_at_ts: float
    ended_at_ts: Optional[float] = None
    duration_ms: Optional[float] = None
    status: str = "in_progress"
    input_summary: Dict[str, Any] = field(default_factory=dict)
    processing_summary: str = ""
    output_summary: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    def close(self, status: str, output_payload: Any, error: Optional[Dict[str, Any]], started: float) -> None:
        self.ended_at_ts = time.time()
        self.duration_ms = round((time.monotonic() - started) * 1000.0, 3)
        self.status = status
        self.output_summary = summarize_payload(output_payload)
        if error:
            self.error = redact_payload(error)


class StageHandle:
    """Mutable result slot for a stage opened with ``traced_stage``."""

    def __init__(self) -> None:
        self.output: Any = None
        self.status = "ok"


class RouteTracer:
    def __init__(
        self,
        *,
        request_id: str,
        trace_id: Optional[str] = None,
        sink_url: str = "",
        sink_api_key: str = "",
        persist_path: str = "",
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.request_id = str(request_id or "").strip() or uuid.uuid4().hex
        self.trace_id = str(trace_id or "").strip() or uuid.uuid4().hex
        self.sink_url = str(sink_url or "").strip()
        self.sink_api_key = str(sink_api_key or "").strip()
        self.persist_path = str(persist_path or "").strip()
        self.meta = dict(meta or {})

        self._lock = threading.Lock()
        self._started_at_ts = time.time()
        self._ended_at_ts: Optional[float] = None
        self._status = "in_progress"
        self._events: Dict[str, StageEvent] = {}
        self._clock: Dict[str, float] = {}

    @property
    def stages(self) -> List[StageEvent]:
        with self._lock:
            return list(self._events.values())

    def start_stage(
        self,
        *,
        stage_key: str,
        stage_name: str,
        purpose: str,
        input_payload: Any = None,
        processing_summary: str = "",
    ) -> str:
        with self._lock:
            index = len(self._events) + 1
            stage_id = f"{index}:{stage_key}"
            self._events[stage_id] = StageEvent(
                stage_id=stage_id,
                stage_index=index,
                stage_key=stage_key,
                stage_name=stage_name,
                purpose=purpose,
                started_at_ts=time.time(),
                input_summary=summarize_payload(input_payload),
                processing_summary=processing_summary,
            )
            self._clock[stage_id] = time.monotonic()
        return stage_id

    def end_stage(
        self,
        stage_id: str,
        *,
        status: str = "ok",
        output_payload: Any = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            event = self._events.get(stage_id)
            if event is None:
                return
            started = self._clock.pop(stage_id, time.monotonic())
            event.close(status, output_payload, error, started)

    def record_stage(self, *, output_payload: Any = None, status: str = "ok", error: Optional[Dict[str, Any]] = None, **stage: Any) -> None:
        self.end_stage(self.start_stage(**stage), status=status, output_payload=output_payload, error=error)

    def to_dict(self, final: bool = False) -> Dict[str, Any]:
        with self._lock:
            ended = self._ended_at_ts or time.time()
            return {
                "trace_id": self.trace_id,
                "request_id": self.request_id,
                "status": self._status,
                "started_at_ts": self._started_at_ts,
                "ended_at_ts": self._ended_at_ts,
                "total_latency_ms": round((ended - self._started_at_ts) * 1000.0, 3),
                "meta": redact_payload(self.meta),
                "stages": [asdict(ev) for ev in self._events.values()],
                "final": bool(final),
            }

    def _post(self, payload: Dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.sink_api_key:
            headers["Authorization"] = f"Bearer {self.sink_api_key}"
        try:
            requests.post(self.sink_url, headers=headers, json=payload, timeout=max(0.2, _SINK_TIMEOUT_S))
        except requests.RequestException as exc:
            logging.warning("event=route_trace_sink status=error trace_id=%s error=%s", self.trace_id, exc)

    def _append(self, payload: Dict[str, Any]) -> None:
        try:
            os.makedirs(os.path.dirname(self.persist_path) or ".", exist_ok=True)
            with open(self.persist_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        except OSError as exc:
            logging.warning("event=route_trace_persist status=error path=%s error=%s", self.persist_path, exc)

    def publish_snapshot(self, final: bool = False) -> None:
        payload = self.to_dict(final=final)
        if self.sink_url:
            self._post(payload)
        if final and self.persist_path:
            self._append(payload)

    def finalize(self, status: str = "ok") -> None:
        with self._lock:
            self._status = status
            self._ended_at_ts = time.time()
        if self.sink_url:
            threading.Thread(target=self.publish_snapshot, kwargs={"final": True}, daemon=True).start()
        else:
            self.publish_snapshot(final=True)


@contextlib.contextmanager
def traced_stage(stage_key: str, stage_name: str, purpose: str, input_payload: Any = None) -> Iterator[StageHandle]:
    """Record one stage on the active tracer; a no-op when tracing is off.

    Exceptions mark the stage as ``error`` and propagate.
    """
    handle = StageHandle()
    tracer = current_route_tracer()
    if tracer is None:
        yield handle
        return
    stage_id = tracer.start_stage(
        stage_key=stage_key, stage_name=stage_name, purpose=purpose, input_payload=input_payload
    )
    try:
        yield handle
    except Exception as exc:
        tracer.end_stage(stage_id, status="error", error={"type": type(exc).__name__, "message": str(exc)})
        raise
    tracer.end_stage(stage_id, status=handle.status, output_payload=handle.output)
