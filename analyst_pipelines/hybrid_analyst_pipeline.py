"""
title: Hybrid Tabular Analyst
description: Answers questions about an uploaded CSV/XLSX. Questions that match a local recognizer are
    computed in-process; everything else goes through an LLM planner, the local plan executor and an
    LLM insights call that returns renderable blocks.
requirements: openai,pydantic,requests,pandas
"""
import contextvars
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from openai import OpenAI
from pydantic import BaseModel, Field

from analyst_pipelines.lib.blocks import (
    ANALYSIS_ERROR_TEXT,
    blocks_to_payload,
    markdown,
    metrics_to_blocks,
    parse_blocks,
)
from analyst_pipelines.lib.dataset import TabularDataset
from analyst_pipelines.lib.llm_json import parse_json_from_llm
from analyst_pipelines.lib.pipeline_prompts import (
    DEFAULT_INSIGHTS_SYSTEM,
    DEFAULT_PLANNER_SYSTEM,
    JSON_ONLY_GUARD,
)
from analyst_pipelines.lib.plan import ExecutionPlan, plan_from_llm
from analyst_pipelines.lib.plan_executor import ExecutionResult, MetricFields, PlanExecutor
from analyst_pipelines.lib.route_trace import (
    RouteTracer,
    reset_active_route_tracer,
    set_active_route_tracer,
    traced_stage,
)
from analyst_pipelines.shortcut_router.shortcut_router import ShortcutRouter, ShortcutRouterConfig

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_MODEL = "gemini-2.5-pro"

_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("analyst_request_id", default="-")
_TRACE_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("analyst_trace_id", default="-")

LLMText = Callable[[str, str], str]


class _RequestTraceLoggingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "_request_trace_injected", False):
            return True
        request_id = (_REQUEST_ID_CTX.get() or "-").strip() or "-"
        trace_id = (_TRACE_ID_CTX.get() or "-").strip() or "-"
        record.msg = f"request_id={request_id} trace_id={trace_id} {record.msg}"
        record._request_trace_injected = True
        return True


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _safe_trunc(text: str, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[:limit] + "...(truncated)"


@dataclass(frozen=True)
class KnowledgeFile:
    name: str
    content: str


@dataclass
class AnalystAnswer:
    route: str
    blocks: List[Any]
    intent_id: Optional[str] = None
    plan: Optional[ExecutionPlan] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    trace_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "route": self.route,
            "intent_id": self.intent_id,
            "plan": self.plan.model_dump(mode="json", by_alias=True) if self.plan else None,
            "metrics": self.metrics,
            "trace_id": self.trace_id,
            "blocks": blocks_to_payload(self.blocks),
        }


def _knowledge_section(knowledge: Optional[Sequence[KnowledgeFile]]) -> str:
    if not knowledge:
        return ""
    parts = [f"### {kf.name}\n{kf.content}" for kf in knowledge if (kf.content or "").strip()]
    if not parts:
        return ""
    return "Reference documents:\n" + "\n\n".join(parts) + "\n\n"


class Pipeline:
    class Valves(BaseModel):
        provider: str = Field(default=os.getenv("ANALYST_LLM_PROVIDER", "gateway").lower())
        llm_base_url: str = Field(default=os.getenv("ANALYST_LLM_BASE_URL", ""))
        llm_api_key: str = Field(default=os.getenv("ANALYST_LLM_API_KEY", os.getenv("API_KEY", "")))
        llm_model: str = Field(default=os.getenv("ANALYST_LLM_MODEL", DEFAULT_MODEL))
        llm_timeout_s: int = Field(default=_env_int("ANALYST_LLM_TIMEOUT_S", 60), ge=1)
        llm_max_retries: int = Field(default=_env_int("ANALYST_LLM_MAX_RETRIES", 1), ge=0)
        llm_max_tokens: int = Field(default=_env_int("ANALYST_LLM_MAX_TOKENS", 2048), ge=64)

        shortcut_enabled: bool = Field(default=_env_bool("SHORTCUT_ENABLED", True))
        planner_enabled: bool = Field(default=_env_bool("ANALYST_PLANNER_ENABLED", True))
        max_prompt_rows: int = Field(default=_env_int("ANALYST_MAX_PROMPT_ROWS", 2000), ge=1)
        answer_table_max_rows: int = Field(default=_env_int("ANSWER_TABLE_MAX_ROWS", 20), ge=0)

        scanned_tracking_column: str = Field(default=os.getenv("ANALYST_SCANNED_TRACKING_COLUMN", "tracking_no"))
        vendor_tracking_column: str = Field(default=os.getenv("ANALYST_VENDOR_TRACKING_COLUMN", "vend_track_no"))
        return_po_column: str = Field(default=os.getenv("ANALYST_RETURN_PO_COLUMN", "return_po"))

        route_trace_enabled: bool = Field(default=_env_bool("ROUTE_TRACE_ENABLED", True))
        route_trace_sink_url: str = Field(default=os.getenv("ROUTE_TRACE_SINK_URL", ""))
        route_trace_sink_api_key: str = Field(default=os.getenv("ROUTE_TRACE_SINK_API_KEY", ""))
        route_trace_persist_path: str = Field(default=os.getenv("ROUTE_TRACE_PERSIST_PATH", ""))
        debug: bool = Field(default=_env_bool("ANALYST_DEBUG", False))

    def __init__(self, valves: Optional["Pipeline.Valves"] = None, llm_text: Optional[LLMText] = None) -> None:
        self.valves = valves or self.Valves()
        logging.basicConfig(level=logging.DEBUG if self.valves.debug else logging.INFO)
        root_logger = logging.getLogger()
        if not any(isinstance(f, _RequestTraceLoggingFilter) for f in root_logger.filters):
            root_logger.addFilter(_RequestTraceLoggingFilter())

        self._router = ShortcutRouter(ShortcutRouterConfig(enabled=bool(self.valves.shortcut_enabled)))
        self._executor = PlanExecutor(
            MetricFields(
                scanned_tracking=self.valves.scanned_tracking_column,
                vendor_tracking=self.valves.vendor_tracking_column,
                return_po=self.valves.return_po_column,
            )
        )
        self._llm: Optional[OpenAI] = None
        self._llm_text: LLMText = llm_text or self._openai_text
        logging.info(
            "event=analyst_config provider=%s model=%s base_url=%s api_key_set=%s planner=%s shortcut=%s",
            self.valves.provider,
            self.valves.llm_model,
            self._base_url() or "-",
            bool(self.valves.llm_api_key),
            bool(self.valves.planner_enabled),
            bool(self.valves.shortcut_enabled),
        )

    @property
    def router(self) -> ShortcutRouter:
        return self._router

    def _base_url(self) -> str:
        if self.valves.llm_base_url:
            return self.valves.llm_base_url
        if self.valves.provider == "gemini":
            return GEMINI_OPENAI_BASE_URL
        return ""

    def _client(self) -> OpenAI:
        if self._llm is None:
            if not self.valves.llm_api_key:
                raise RuntimeError(f"LLM provider '{self.valves.provider}' is configured without an API key")
            self._llm = OpenAI(
                base_url=self._base_url() or None,
                api_key=self.valves.llm_api_key,
                timeout=float(self.valves.llm_timeout_s),
                max_retries=int(self.valves.llm_max_retries),
            )
        return self._llm

    def _openai_text(self, system: str, user: str) -> str:
        kwargs: Dict[str, Any] = {
            "model": self.valves.llm_model,
            "messages": [{"role": "system", "content": system}, {"role": "user", "content": user}],
            "temperature": 0,
            "max_tokens": int(self.valves.llm_max_tokens),
            "response_format": {"type": "json_object"},
        }
        client = self._client()
        try:
            resp = client.chat.completions.create(**kwargs)
        except Exception as exc:
            err = str(exc).lower()
            if not any(token in err for token in ("response_format", "json_object", "unsupported")):
                raise
            logging.info(
                "event=llm_response_format_fallback reason=unsupported_json_mode model=%s",
                self.valves.llm_model,
            )
            kwargs.pop("response_format", None)
            resp = client.chat.completions.create(**kwargs)
        if not resp.choices or resp.choices[0].message is None:
            raise RuntimeError("Invalid response structure from LLM provider")
        return (resp.choices[0].message.content or "").strip()

    def _llm_json(self, stage_key: str, system: str, user: str) -> Any:
        guarded_system = f"{JSON_ONLY_GUARD}\n\n{system}".strip()
        logging.info(
            "event=llm_json_request stage=%s model=%s user_preview=%s",
            stage_key,
            self.valves.llm_model,
            _safe_trunc(user, 600),
        )
        started = time.monotonic()
        with traced_stage(
            stage_key,
            "LLM Structured JSON Call",
            "Send system/user messages to the configured model and parse a JSON reply.",
            {"model": self.valves.llm_model, "system_chars": len(guarded_system), "user_chars": len(user)},
        ) as stage:
            try:
                raw_text = self._llm_text(guarded_system, user)
                parsed = parse_json_from_llm(raw_text)
            except Exception as exc:
                logging.warning(
                    "event=llm_json_response stage=%s status=error error_type=%s error=%s",
                    stage_key,
                    type(exc).__name__,
                    _safe_trunc(exc, 500),
                )
                raise
            stage.output = parsed
        logging.info(
            "event=llm_json_response stage=%s status=ok latency_ms=%.1f raw_preview=%s",
            stage_key,
            (time.monotonic() - started) * 1000.0,
            _safe_trunc(raw_text, 600),
        )
        return parsed

    def plan(self, question: str, dataset: TabularDataset) -> ExecutionPlan:
        payload = {
            "question": question,
            "columns": list(dataset.headers),
            "rows": dataset.row_count,
            "preview": [dict(r) for r in dataset.rows[:5]],
        }
        try:
            parsed = self._llm_json("plan_llm", DEFAULT_PLANNER_SYSTEM, json.dumps(payload, ensure_ascii=False))
        except Exception:
            logging.info("event=plan_fallback status=direct_analysis reason=planner_error")
            return ExecutionPlan()
        plan = plan_from_llm(parsed)
        logging.info(
            "event=plan_ready action=%s filters=%d calculations=%s",
            plan.action,
            len(plan.filters),
            [c.value for c in plan.calculations],
        )
        return plan

    def execute(self, plan: ExecutionPlan, dataset: TabularDataset) -> ExecutionResult:
        with traced_stage(
            "plan_execute",
            "Local Plan Execution",
            "Apply plan filters and calculations to the in-memory dataset.",
            plan.model_dump(mode="json", by_alias=True),
        ) as stage:
            result = self._executor.execute(plan, dataset)
            stage.output = {"metrics": result.metrics, "notes": result.notes, "rows": result.subset.row_count}
        return result

    def _insights_prompt(
        self,
        question: str,
        data: TabularDataset,
        result: Optional[ExecutionResult],
        knowledge: Optional[Sequence[KnowledgeFile]],
    ) -> str:
        limit = int(self.valves.max_prompt_rows)
        shown = min(limit, data.row_count)
        head = "Here is the CSV data I'm working with"
        if shown < data.row_count:
            head += f" (first {shown} of {data.row_count} rows)"
        parts = [f"{head}:\n---\n{data.to_csv_text(limit)}\n---\n\n"]
        if result is not None and result.metrics:
            metrics = {"metrics": result.metrics, "notes": result.notes, "rows_after_filters": result.subset.row_count}
            parts.append(f"Pre-computed metrics (exact, from the local engine):\n{json.dumps(metrics)}\n\n")
        parts.append(_knowledge_section(knowledge))
        parts.append(f"My question is: {question}\n\nPlease provide the analysis based on my question.")
        return "".join(parts)

    def insights(
        self,
        question: str,
        dataset: TabularDataset,
        result: Optional[ExecutionResult] = None,
        knowledge: Optional[Sequence[KnowledgeFile]] = None,
    ) -> Tuple[List[Any], bool]:
        data = result.subset if result is not None else dataset
        user = self._insights_prompt(question, data, result, knowledge)
        try:
            parsed = self._llm_json("insights_llm", DEFAULT_INSIGHTS_SYSTEM, user)
        except Exception:
            return [markdown(ANALYSIS_ERROR_TEXT)], False
        return parse_blocks(parsed), True

    def answer(
        self,
        question: str,
        dataset: TabularDataset,
        knowledge: Optional[Sequence[KnowledgeFile]] = None,
        request_id: Optional[str] = None,
    ) -> AnalystAnswer:
        trace_id = uuid.uuid4().hex[:16]
        request_id = (request_id or trace_id)[:96]
        req_token = _REQUEST_ID_CTX.set(request_id)
        trace_token = _TRACE_ID_CTX.set(trace_id)
        tracer: Optional[RouteTracer] = None
        if self.valves.route_trace_enabled:
            tracer = RouteTracer(
                request_id=request_id,
                trace_id=trace_id,
                sink_url=self.valves.route_trace_sink_url,
                sink_api_key=self.valves.route_trace_sink_api_key,
                persist_path=self.valves.route_trace_persist_path,
                meta={"rows": dataset.row_count, "cols": len(dataset.headers)},
            )
        tracer_token = set_active_route_tracer(tracer)
        status = "ok"
        try:
            hit = self._router.match(question, dataset)
            if hit is not None:
                return AnalystAnswer(route="local", blocks=hit.blocks, intent_id=hit.intent_id, trace_id=trace_id)

            plan = self.plan(question, dataset) if self.valves.planner_enabled else ExecutionPlan()
            result: Optional[ExecutionResult] = None
            if plan.is_local:
                result = self.execute(plan, dataset)
            blocks, ok = self.insights(question, dataset, result, knowledge)
            if not ok:
                status = "error"
            elif result is not None and result.metrics:
                blocks = metrics_to_blocks(result, int(self.valves.answer_table_max_rows)) + blocks
            return AnalystAnswer(
                route=("plan" if result is not None else "direct") if ok else "error",
                blocks=blocks,
                plan=plan,
                metrics=dict(result.metrics) if result is not None else {},
                trace_id=trace_id,
            )
        except Exception:
            status = "error"
            raise
        finally:
            reset_active_route_tracer(tracer_token)
            _TRACE_ID_CTX.reset(trace_token)
            _REQUEST_ID_CTX.reset(req_token)
            if tracer:
                tracer.finalize(status)
