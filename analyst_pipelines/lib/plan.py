import logging
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

FILTER_OPERATORS = {"equals", "not_equals", "contains", "is_empty", "is_not_empty"}
PLAN_ACTIONS = {"direct_analysis", "filter_and_analyze"}


class Calculation(str, Enum):
    COUNT = "count"
    MISMATCH_RATE = "mismatch_rate"
    MISSING_PO_RATE = "missing_po_rate"


class Filter(BaseModel):
    column: str
    # Unknown operators are kept; the executor lets every row through for them.
    operator: str
    value: Optional[Union[str, int, float]] = None

    def value_text(self) -> str:
        if self.value is None:
            return ""
        return str(self.value)


class ExecutionPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["direct_analysis", "filter_and_analyze"] = "direct_analysis"
    filters: List[Filter] = Field(default_factory=list)
    calculations: List[Calculation] = Field(default_factory=list)
    columns: Optional[List[str]] = Field(default=None, alias="data_subset_columns")

    @property
    def is_local(self) -> bool:
        return self.action == "filter_and_analyze"


def plan_from_llm(payload: Any) -> ExecutionPlan:
    if not isinstance(payload, dict):
        logging.warning("event=plan_coerce status=fallback reason=non_object kind=%s", type(payload).__name__)
        return ExecutionPlan()
    raw: Dict[str, Any] = dict(payload.get("plan") if isinstance(payload.get("plan"), dict) else payload)

    action = str(raw.get("action") or "").strip().lower()
    if action not in PLAN_ACTIONS:
        logging.warning("event=plan_coerce status=fallback reason=unknown_action action=%s", action or "-")
        action = "direct_analysis"

    calcs: List[Calculation] = []
    for item in raw.get("calculations") or []:
        name = str(item or "").strip().lower()
        try:
            calc = Calculation(name)
        except ValueError:
            logging.warning("event=plan_coerce status=drop_calculation name=%s", name or "-")
            continue
        if calc not in calcs:
            calcs.append(calc)

    filters: List[Filter] = []
    for item in raw.get("filters") or []:
        if not isinstance(item, dict):
            continue
        try:
            filters.append(Filter.model_validate(item))
        except ValidationError as exc:
            logging.warning("event=plan_coerce status=drop_filter errors=%d", len(exc.errors()))

    columns = raw.get("columns", raw.get("data_subset_columns"))
    if not isinstance(columns, list):
        columns = None
    else:
        columns = [str(c) for c in columns if str(c).strip()] or None

    return ExecutionPlan(action=action, filters=filters, calculations=calcs, columns=columns)
