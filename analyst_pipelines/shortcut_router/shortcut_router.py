import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from analyst_pipelines.lib.blocks import (
    NO_DATA_DESCRIPTION,
    card,
    chart,
    chart_kind_for,
    distinct_colors,
    error_block,
    format_percentage,
    markdown,
    percentage,
    table,
)
from analyst_pipelines.lib.dataset import TabularDataset
from analyst_pipelines.lib.query_signals import (
    CONTAINMENT_PATTERNS,
    DISTRIBUTION_PATTERNS,
    UNIQUE_COUNT_PATTERNS,
    VALUE_PERCENTAGE_PATTERNS,
    normalize_question,
    strip_quotes,
)
from analyst_pipelines.lib.route_trace import current_route_tracer

Blocks = List[Any]
EMPTY_VALUE_LABEL = "N/A"


def _safe_trunc(value: Any, limit: int = 300) -> str:
    text = str(value)
    if len(text) <= limit:
        return text
    return text[:limit] + "...(truncated)"


def _handle_unique_count(dataset: TabularDataset, column: str) -> Blocks:
    values = {v.strip() for v in dataset.column_values(column) if v.strip()}
    count = len(values)
    return [
        card(
            f'Unique "{column}" Count',
            str(count),
            f"There are {count} distinct non-empty values in the '{column}' column.",
        )
    ]


def _handle_distribution(dataset: TabularDataset, column: str) -> Blocks:
    total = dataset.row_count
    if total == 0:
        return [markdown(f"There is no data to build a distribution for the **{column}** column.")]

    counts = Counter(v.strip() or EMPTY_VALUE_LABEL for v in dataset.column_values(column))
    # sorted() is stable, so equal counts keep first-seen order.
    ordered: List[Tuple[str, int]] = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    labels = [value for value, _ in ordered]
    data = [cnt for _, cnt in ordered]
    rows = [[value, cnt, format_percentage(percentage(cnt, total))] for value, cnt in ordered]
    return [
        markdown(f"Here is the distribution for the **{column}** column."),
        chart(
            chart_kind_for(len(ordered)),
            labels,
            f"Distribution of {column}",
            data,
            distinct_colors(len(ordered)),
        ),
        table([column, "Count", "Percentage"], rows),
    ]


def _handle_containment_percentage(dataset: TabularDataset, column_a: str, column_b: str) -> Blocks:
    title = f"Rows where {column_a} contains {column_b}"
    total = dataset.row_count
    if total == 0:
        return [card(title, "0%", NO_DATA_DESCRIPTION)]
    hits = 0
    for row in dataset.rows:
        a = dataset.cell(row, column_a)
        b = dataset.cell(row, column_b)
        if a and b and b in a:
            hits += 1
    return [
        card(
            title,
            format_percentage(percentage(hits, total)),
            f"{hits} out of {total} rows have a non-empty '{column_a}' containing the '{column_b}' value.",
        )
    ]


def _handle_value_percentage(dataset: TabularDataset, value: str, column: str) -> Blocks:
    title = f'Percentage of "{value}" in {column}'
    total = dataset.row_count
    if total == 0:
        return [card(title, "0%", NO_DATA_DESCRIPTION)]
    target = value.strip().lower()
    hits = sum(1 for v in dataset.column_values(column) if v.strip().lower() == target)
    return [
        card(
            title,
            format_percentage(percentage(hits, total)),
            f'{hits} out of {total} rows had the value "{value}".',
        )
    ]


@dataclass(frozen=True)
class Recognizer:
    intent_id: str
    patterns: Sequence[Pattern[str]]
    args: Tuple[str, ...]
    column_args: Tuple[str, ...]
    handler: Callable[..., Blocks]

    @property
    def arity(self) -> int:
        return len(self.args)

    def extract(self, question: str) -> Optional[Tuple[int, Dict[str, str]]]:
        for idx, pattern in enumerate(self.patterns):
            m = pattern.search(question)
            if not m:
                continue
            captured = {name: strip_quotes(m.group(name) or "") for name in self.args}
            if len([v for v in captured.values() if v]) == self.arity:
                return idx, captured
        return None


# Compound recognizers go first so that "percentage of A containing B" is not
# taken by a single-argument pattern.
DEFAULT_RECOGNIZERS: Tuple[Recognizer, ...] = (
    Recognizer(
        intent_id="containment_percentage",
        patterns=CONTAINMENT_PATTERNS,
        args=("a", "b"),
        column_args=("a", "b"),
        handler=_handle_containment_percentage,
    ),
    Recognizer(
        intent_id="value_percentage",
        patterns=VALUE_PERCENTAGE_PATTERNS,
        args=("value", "column"),
        column_args=("column",),
        handler=_handle_value_percentage,
    ),
    Recognizer(
        intent_id="unique_count",
        patterns=UNIQUE_COUNT_PATTERNS,
        args=("column",),
        column_args=("column",),
        handler=_handle_unique_count,
    ),
    Recognizer(
        intent_id="distribution",
        patterns=DISTRIBUTION_PATTERNS,
        args=("column",),
        column_args=("column",),
        handler=_handle_distribution,
    ),
)


@dataclass
class ShortcutHit:
    intent_id: str
    args: Dict[str, str]
    blocks: Blocks
    pattern_index: int = 0
    missing_columns: List[str] = field(default_factory=list)


def resolve_column(name: str, headers: Sequence[str]) -> Optional[str]:
    if name in headers:
        return name
    wanted = name.strip().casefold()
    variants = [wanted, wanted.replace(" ", "_"), wanted.replace("_", " ")]
    for suffix in ("es", "s"):
        if wanted.endswith(suffix) and len(wanted) > len(suffix) + 1:
            variants.append(wanted[: -len(suffix)])
    by_fold = {h.casefold(): h for h in headers}
    for v in variants:
        if v in by_fold:
            return by_fold[v]
    return None


def missing_columns_block(missing: Sequence[str]) -> Any:
    if len(missing) == 1:
        return error_block(f"Column '{missing[0]}' not found in the data.")
    names = ", ".join(f"'{m}'" for m in missing)
    return error_block(f"Columns {names} not found in the data.")


class ShortcutRouterConfig:
    def __init__(self, **kwargs: Any) -> None:
        for k, v in kwargs.items():
            setattr(self, k, v)


class ShortcutRouter:
    def __init__(
        self,
        config: Optional[ShortcutRouterConfig] = None,
        recognizers: Optional[Sequence[Recognizer]] = None,
    ) -> None:
        self.config = config or ShortcutRouterConfig()
        self.recognizers: Tuple[Recognizer, ...] = tuple(recognizers or DEFAULT_RECOGNIZERS)

    def _bool_config(self, name: str, env_name: str, default: bool) -> bool:
        raw = getattr(self.config, name, None)
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str):
            return raw.strip().lower() in {"1", "true", "yes", "on"}
        env_raw = os.getenv(env_name, "1" if default else "0")
        return str(env_raw).strip().lower() in {"1", "true", "yes", "on"}

    @property
    def enabled(self) -> bool:
        return self._bool_config("enabled", "SHORTCUT_ENABLED", True)

    def match(self, question: str, dataset: TabularDataset) -> Optional[ShortcutHit]:
        q = normalize_question(question)
        if not q:
            return None
        if not self.enabled:
            logging.info("event=shortcut_router_match status=disabled query_preview=%s", _safe_trunc(q, 200))
            return None

        for recognizer in self.recognizers:
            extracted = recognizer.extract(q)
            if extracted is None:
                continue
            pattern_index, args = extracted
            hit = self._run(recognizer, pattern_index, args, dataset)
            logging.info(
                "event=shortcut_router_match status=hit intent_id=%s pattern=%d args=%s missing=%s blocks=%d",
                hit.intent_id,
                pattern_index,
                args,
                hit.missing_columns,
                len(hit.blocks),
            )
            self._trace(q, hit)
            return hit

        logging.info("event=shortcut_router_match status=miss query_preview=%s", _safe_trunc(q, 200))
        self._trace(q, None)
        return None

    def _run(
        self, recognizer: Recognizer, pattern_index: int, args: Dict[str, str], dataset: TabularDataset
    ) -> ShortcutHit:
        resolved = dict(args)
        missing: List[str] = []
        for name in recognizer.column_args:
            col = resolve_column(args[name], dataset.headers)
            if col is None:
                missing.append(args[name])
            else:
                resolved[name] = col
        if missing:
            blocks: Blocks = [missing_columns_block(missing)]
        else:
            blocks = recognizer.handler(dataset, *[resolved[name] for name in recognizer.args])
        return ShortcutHit(
            intent_id=recognizer.intent_id,
            args=resolved,
            blocks=blocks,
            pattern_index=pattern_index,
            missing_columns=missing,
        )

    def _trace(self, question: str, hit: Optional[ShortcutHit]) -> None:
        tracer = current_route_tracer()
        if not tracer:
            return
        tracer.record_stage(
            stage_key="shortcut_router",
            stage_name="Local Intent Matcher",
            purpose="Answer the question from the in-memory dataset without an external call.",
            input_payload={"question": question},
            output_payload={
                "status": "hit" if hit else "miss",
                "intent_id": hit.intent_id if hit else None,
                "args": hit.args if hit else {},
                "blocks": len(hit.blocks) if hit else 0,
            },
            processing_summary="Ordered recognizer scan; first structural match wins.",
        )


def try_local_analysis(
    question: str, dataset: TabularDataset, router: Optional[ShortcutRouter] = None
) -> Optional[Blocks]:
    hit = (router or ShortcutRouter()).match(question, dataset)
    if hit is None:
        return None
    return hit.blocks
