import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

CHART_KINDS = ("bar", "pie", "line", "doughnut")
PIE_MAX_SLICES = 5
MAX_DISTINCT_HUES = 48
NO_DATA_DESCRIPTION = "No data to analyze."
ANALYSIS_ERROR_TEXT = (
    "**Error:** I encountered a problem while generating the analysis. This could be due to a malformed "
    "response from the AI or a configuration issue. Please try rephrasing your question."
)

METRIC_TITLES = {
    "count": "Matching Rows",
    "mismatch_rate": "Tracking Mismatch Rate",
    "missing_po_rate": "Missing Return PO Rate",
}
RATE_METRICS = {"mismatch_rate", "missing_po_rate"}

Cell = Union[int, float, str]


class CardData(BaseModel):
    title: str
    value: str
    description: Optional[str] = None


class TableData(BaseModel):
    headers: List[str]
    rows: List[List[Cell]]


class ChartDataset(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    label: str
    data: List[float]
    colors: Optional[List[str]] = Field(default=None, alias="backgroundColor")


class ChartData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["bar", "pie", "line", "doughnut"] = Field(alias="type")
    labels: List[str]
    datasets: List[ChartDataset]


class CardBlock(BaseModel):
    type: Literal["card"] = "card"
    data: CardData


class TableBlock(BaseModel):
    type: Literal["table"] = "table"
    data: TableData


class ChartBlock(BaseModel):
    type: Literal["chart"] = "chart"
    data: ChartData


class MarkdownBlock(BaseModel):
    type: Literal["markdown"] = "markdown"
    data: str


ResponseBlock = Annotated[Union[CardBlock, TableBlock, ChartBlock, MarkdownBlock], Field(discriminator="type")]

_BLOCK_ADAPTER: TypeAdapter = TypeAdapter(ResponseBlock)


def card(title: str, value: str, description: Optional[str] = None) -> CardBlock:
    return CardBlock(data=CardData(title=title, value=value, description=description))


def table(headers: Sequence[str], rows: Sequence[Sequence[Cell]]) -> TableBlock:
    return TableBlock(data=TableData(headers=list(headers), rows=[list(r) for r in rows]))


def chart(
    kind: str,
    labels: Sequence[str],
    label: str,
    data: Sequence[float],
    colors: Optional[Sequence[str]] = None,
) -> ChartBlock:
    dataset = ChartDataset(label=label, data=list(data), colors=list(colors) if colors is not None else None)
    return ChartBlock(data=ChartData(kind=kind, labels=list(labels), datasets=[dataset]))


def markdown(text: str) -> MarkdownBlock:
    return MarkdownBlock(data=text)


def error_block(text: str) -> MarkdownBlock:
    return MarkdownBlock(data=text if text.startswith("Error:") else f"Error: {text}")


def format_percentage(value: float) -> str:
    return f"{float(value):.2f}%"


def percentage(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return part / total * 100.0


def distinct_colors(count: int) -> List[str]:
    if count <= 0:
        return []
    step = max(360.0 / count, 360.0 / MAX_DISTINCT_HUES)
    return [f"hsl({round(i * step) % 360}, 55%, 55%)" for i in range(count)]


def chart_kind_for(distinct_values: int) -> str:
    return "pie" if distinct_values <= PIE_MAX_SLICES else "bar"


def block_to_payload(block: Any) -> Dict[str, Any]:
    return block.model_dump(by_alias=True, exclude_none=True)


def blocks_to_payload(blocks: Sequence[Any]) -> List[Dict[str, Any]]:
    return [block_to_payload(b) for b in blocks]


def parse_block(item: Any) -> Any:
    return _BLOCK_ADAPTER.validate_python(item)


def parse_blocks(payload: Any) -> List[Any]:
    """Normalize an external engine payload into response blocks.

    Accepts a JSON array of blocks or an object carrying one under ``blocks``;
    a lone block object is treated as a one-item list. Invalid items are
    dropped; if nothing survives, a single markdown error block is returned.
    """
    items: List[Any]
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict) and isinstance(payload.get("blocks"), list):
        items = payload["blocks"]
    elif isinstance(payload, dict) and "type" in payload:
        items = [payload]
    else:
        logging.warning("event=blocks_parse status=error reason=unexpected_root kind=%s", type(payload).__name__)
        return [markdown(ANALYSIS_ERROR_TEXT)]

    out: List[Any] = []
    for idx, item in enumerate(items):
        if isinstance(item, dict) and item.get("type") == "markdown" and not isinstance(item.get("data"), str):
            item = {"type": "markdown", "data": str(item.get("data") or "")}
        try:
            out.append(parse_block(item))
        except ValidationError as exc:
            logging.warning(
                "event=blocks_parse status=drop idx=%d errors=%d",
                idx,
                len(exc.errors()),
            )
    if not out:
        return [markdown(ANALYSIS_ERROR_TEXT)]
    return out


def metrics_to_blocks(result: Any, table_max_rows: int = 20) -> List[Any]:
    total = result.subset.row_count
    out: List[Any] = []
    for name, value in result.metrics.items():
        title = METRIC_TITLES.get(name, name.replace("_", " ").title())
        note = (result.notes or {}).get(name)
        if note:
            shown = "0%" if name in RATE_METRICS else "0"
            description = NO_DATA_DESCRIPTION
        else:
            shown = format_percentage(value) if name in RATE_METRICS else str(value)
            description = f"Computed over {total} row(s)."
        out.append(card(title, shown, description))
    if table_max_rows > 0 and total:
        preview = result.subset.rows[:table_max_rows]
        headers = list(result.subset.headers)
        out.append(table(headers, [[r.get(h) or "" for h in headers] for r in preview]))
    return out
