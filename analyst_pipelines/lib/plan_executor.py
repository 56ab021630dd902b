import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Union

from analyst_pipelines.lib.dataset import Row, TabularDataset
from analyst_pipelines.lib.plan import FILTER_OPERATORS, Calculation, ExecutionPlan, Filter

Metric = Union[int, float]


@dataclass(frozen=True)
class MetricFields:
    scanned_tracking: str = "tracking_no"
    vendor_tracking: str = "vend_track_no"
    return_po: str = "return_po"


@dataclass
class ExecutionResult:
    metrics: Dict[str, Metric]
    subset: TabularDataset
    notes: Dict[str, str] = field(default_factory=dict)


def _norm(value: str) -> str:
    return (value or "").strip().lower()


def _raw(row: Row, column: str) -> str:
    return row.get(column) or ""


def _calc_count(rows: Sequence[Row], fields: MetricFields) -> Metric:
    return len(rows)


def _calc_mismatch_rate(rows: Sequence[Row], fields: MetricFields) -> Metric:
    mismatches = 0
    for row in rows:
        vendor = _raw(row, fields.vendor_tracking).strip()
        if vendor and _raw(row, fields.scanned_tracking).strip() != vendor:
            mismatches += 1
    return mismatches / len(rows) * 100.0


def _calc_missing_po_rate(rows: Sequence[Row], fields: MetricFields) -> Metric:
    missing = sum(1 for row in rows if not _raw(row, fields.return_po).strip())
    return missing / len(rows) * 100.0


CALCULATIONS: Dict[str, Callable[[Sequence[Row], MetricFields], Metric]] = {
    Calculation.COUNT.value: _calc_count,
    Calculation.MISMATCH_RATE.value: _calc_mismatch_rate,
    Calculation.MISSING_PO_RATE.value: _calc_missing_po_rate,
}


def row_passes(row: Row, flt: Filter) -> bool:
    cell = _norm(_raw(row, flt.column))
    op = flt.operator
    if op == "is_empty":
        return not cell
    if op == "is_not_empty":
        return bool(cell)
    target = _norm(flt.value_text())
    if op == "equals":
        return cell == target
    if op == "not_equals":
        return cell != target
    if op == "contains":
        return target in cell
    return True


class PlanExecutor:
    def __init__(self, fields: Optional[MetricFields] = None) -> None:
        self.fields = fields or MetricFields()

    def apply_filters(self, filters: Sequence[Filter], dataset: TabularDataset) -> List[Row]:
        rows: List[Row] = list(dataset.rows)
        for flt in filters:
            if flt.operator not in FILTER_OPERATORS:
                logging.warning("event=plan_filter status=skip reason=unknown_operator operator=%s", flt.operator)
                continue
            if not dataset.has_column(flt.column):
                logging.warning("event=plan_filter status=degraded reason=unknown_column column=%s", flt.column)
            before = len(rows)
            rows = [r for r in rows if row_passes(r, flt)]
            logging.info(
                "event=plan_filter status=ok column=%s operator=%s rows_before=%d rows_after=%d",
                flt.column,
                flt.operator,
                before,
                len(rows),
            )
        return rows

    def execute(self, plan: ExecutionPlan, dataset: TabularDataset) -> ExecutionResult:
        if plan.is_local:
            rows = self.apply_filters(plan.filters, dataset)
        else:
            rows = list(dataset.rows)

        total = len(rows)
        metrics: Dict[str, Metric] = {}
        notes: Dict[str, str] = {}
        for calc in plan.calculations:
            name = calc.value if isinstance(calc, Calculation) else str(calc)
            fn = CALCULATIONS.get(name)
            if fn is None:
                logging.warning("event=plan_calculation status=skip reason=unknown name=%s", name)
                continue
            if total == 0:
                metrics[name] = 0
                notes[name] = "no data"
                continue
            metrics[name] = fn(rows, self.fields)

        subset = dataset.with_rows(rows)
        if plan.columns:
            subset = subset.select_columns(plan.columns)
        logging.info(
            "event=plan_execute status=ok action=%s filters=%d rows_in=%d rows_out=%d metrics=%s",
            plan.action,
            len(plan.filters),
            dataset.row_count,
            total,
            sorted(metrics),
        )
        return ExecutionResult(metrics=metrics, subset=subset, notes=notes)


def execute_plan(
    plan: ExecutionPlan, dataset: TabularDataset, fields: Optional[MetricFields] = None
) -> ExecutionResult:
    return PlanExecutor(fields).execute(plan, dataset)
