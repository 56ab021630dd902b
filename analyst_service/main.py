import base64
import binascii
import logging
import os
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from analyst_pipelines.hybrid_analyst_pipeline import KnowledgeFile, Pipeline
from analyst_pipelines.lib.blocks import blocks_to_payload, metrics_to_blocks
from analyst_pipelines.lib.dataset import TabularDataset, load_dataset_bytes
from analyst_pipelines.lib.plan import ExecutionPlan

app = FastAPI(title="hybrid-analyst")

ANALYST_API_KEY = os.getenv("ANALYST_API_KEY", "")
DEF_MAX_ROWS = int(os.getenv("MAX_ROWS", "200000"))
DEF_PREVIEW_ROWS = int(os.getenv("PREVIEW_ROWS", "20"))
DATASET_TTL_S = int(os.getenv("DATASET_TTL_S", "1800"))
MAX_DATASETS = int(os.getenv("MAX_DATASETS", "32"))


class LoadRequest(BaseModel):
    filename: Optional[str] = None
    content_type: Optional[str] = None
    data_b64: str
    max_rows: Optional[int] = Field(default=None, ge=1)


class KnowledgeItem(BaseModel):
    name: str
    content: str = ""


class AskRequest(BaseModel):
    question: str = Field(min_length=1)
    knowledge: List[KnowledgeItem] = Field(default_factory=list)
    local_only: bool = False


class ExecuteRequest(BaseModel):
    plan: Dict[str, Any]


DATASET_STORE: Dict[str, Dict[str, Any]] = {}
STORE_LOCK = threading.Lock()
PIPELINE: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    global PIPELINE
    if PIPELINE is None:
        PIPELINE = Pipeline()
    return PIPELINE


def _require_auth(request: Request) -> None:
    if not ANALYST_API_KEY:
        return
    auth = request.headers.get("authorization", "")
    if auth != f"Bearer {ANALYST_API_KEY}":
        raise HTTPException(status_code=401, detail="unauthorized")


def _cleanup_store() -> None:
    now = time.time()
    with STORE_LOCK:
        expired = [key for key, entry in DATASET_STORE.items() if now - entry.get("ts", 0) > DATASET_TTL_S]
        for key in expired:
            DATASET_STORE.pop(key, None)
        while len(DATASET_STORE) > MAX_DATASETS:
            oldest_key = min(DATASET_STORE.items(), key=lambda item: item[1].get("ts", 0))[0]
            DATASET_STORE.pop(oldest_key, None)
    if expired:
        logging.info("event=dataset_store_cleanup expired=%d", len(expired))


def _get_entry(dataset_id: str) -> Dict[str, Any]:
    with STORE_LOCK:
        entry = DATASET_STORE.get(dataset_id)
        if not entry:
            raise HTTPException(status_code=404, detail="dataset_not_found")
        entry["ts"] = time.time()
        return entry


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/v1/dataset/load")
def load_dataset(req: LoadRequest, request: Request) -> dict:
    _require_auth(request)
    _cleanup_store()

    try:
        data = base64.b64decode(req.data_b64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="invalid_base64")

    max_rows = req.max_rows or DEF_MAX_ROWS
    try:
        dataset = load_dataset_bytes(data, req.filename or "", req.content_type or "", max_rows)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"read_error:{type(exc).__name__}:{exc}")

    profile = dataset.profile(DEF_PREVIEW_ROWS)
    dataset_id = str(uuid.uuid4())
    with STORE_LOCK:
        DATASET_STORE[dataset_id] = {
            "dataset": dataset,
            "profile": profile,
            "filename": req.filename or "",
            "ts": time.time(),
        }
    return {"dataset_id": dataset_id, "profile": profile}


@app.get("/v1/dataset/{dataset_id}/profile")
def get_profile(dataset_id: str, request: Request) -> dict:
    _require_auth(request)
    _cleanup_store()
    entry = _get_entry(dataset_id)
    return {"dataset_id": dataset_id, "profile": entry.get("profile"), "ts": entry.get("ts")}


@app.delete("/v1/dataset/{dataset_id}")
def delete_dataset(dataset_id: str, request: Request) -> dict:
    _require_auth(request)
    with STORE_LOCK:
        entry = DATASET_STORE.pop(dataset_id, None)
    if not entry:
        raise HTTPException(status_code=404, detail="dataset_not_found")
    logging.info("event=dataset_deleted dataset_id=%s", dataset_id)
    return {"status": "ok", "dataset_id": dataset_id}


@app.post("/v1/dataset/{dataset_id}/ask")
def ask(dataset_id: str, req: AskRequest, request: Request) -> dict:
    _require_auth(request)
    _cleanup_store()
    dataset: TabularDataset = _get_entry(dataset_id)["dataset"]
    pipeline = get_pipeline()

    if req.local_only:
        hit = pipeline.router.match(req.question, dataset)
        if hit is None:
            return {"route": "no_match", "intent_id": None, "blocks": []}
        return {"route": "local", "intent_id": hit.intent_id, "blocks": blocks_to_payload(hit.blocks)}

    knowledge = [KnowledgeFile(name=k.name, content=k.content) for k in req.knowledge]
    request_id = request.headers.get("x-request-id") or None
    answer = pipeline.answer(req.question, dataset, knowledge=knowledge, request_id=request_id)
    return answer.to_payload()


@app.post("/v1/dataset/{dataset_id}/execute")
def execute(dataset_id: str, req: ExecuteRequest, request: Request) -> dict:
    _require_auth(request)
    _cleanup_store()
    dataset: TabularDataset = _get_entry(dataset_id)["dataset"]
    try:
        plan = ExecutionPlan.model_validate(req.plan)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"invalid_plan:{len(exc.errors())}_errors")

    pipeline = get_pipeline()
    result = pipeline.execute(plan, dataset)
    return {
        "metrics": result.metrics,
        "notes": result.notes,
        "rows": result.subset.row_count,
        "blocks": blocks_to_payload(metrics_to_blocks(result, int(pipeline.valves.answer_table_max_rows))),
    }
