import io
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

Row = Dict[str, str]


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (float, np.floating)):
        if np.isnan(value):
            return ""
        if float(value).is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, np.integer):
        return str(int(value))
    if value is pd.NaT or value is pd.NA:
        return ""
    return str(value)


@dataclass(frozen=True)
class TabularDataset:
    headers: Tuple[str, ...]
    rows: Tuple[Row, ...]

    def __post_init__(self) -> None:
        if len(set(self.headers)) != len(self.headers):
            raise ValueError("dataset headers must be unique")

    @classmethod
    def from_records(cls, headers: Sequence[str], rows: Iterable[Mapping[str, Any]]) -> "TabularDataset":
        cols = tuple(str(h) for h in headers)
        out: List[Row] = []
        for row in rows:
            out.append({c: _cell_text(row.get(c)) for c in cols})
        return cls(headers=cols, rows=tuple(out))

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "TabularDataset":
        cols = [str(c) for c in df.columns]
        records = df.to_dict(orient="records")
        rows = ({str(k): v for k, v in rec.items()} for rec in records)
        return cls.from_records(cols, rows)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def has_column(self, column: str) -> bool:
        return column in self.headers

    def cell(self, row: Mapping[str, str], column: str) -> str:
        return row.get(column) or ""

    def column_values(self, column: str) -> List[str]:
        return [self.cell(r, column) for r in self.rows]

    def with_rows(self, rows: Iterable[Row]) -> "TabularDataset":
        return TabularDataset(headers=self.headers, rows=tuple(rows))

    def select_columns(self, columns: Sequence[str]) -> "TabularDataset":
        keep = tuple(c for c in columns if c in self.headers)
        if not keep:
            return self
        return TabularDataset(
            headers=keep,
            rows=tuple({c: self.cell(r, c) for c in keep} for r in self.rows),
        )

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(list(self.rows), columns=list(self.headers))

    def to_csv_text(self, limit: Optional[int] = None) -> str:
        rows = self.rows if limit is None else self.rows[: max(0, int(limit))]
        lines = [",".join(self.headers)]
        for row in rows:
            lines.append(",".join(self.cell(row, h) for h in self.headers))
        return "\n".join(lines)

    def profile(self, preview_rows: int = 5) -> Dict[str, Any]:
        return {
            "rows": self.row_count,
            "cols": len(self.headers),
            "columns": list(self.headers),
            "empty_counts": {h: sum(1 for r in self.rows if not self.cell(r, h).strip()) for h in self.headers},
            "preview": [dict(r) for r in self.rows[: max(0, int(preview_rows))]],
        }


def guess_ext(filename: Optional[str], content_type: Optional[str]) -> str:
    if filename and "." in filename:
        return filename.rsplit(".", 1)[-1].lower()
    if content_type:
        ct = content_type.lower()
        if "csv" in ct:
            return "csv"
        if "tsv" in ct or "tab-separated" in ct:
            return "tsv"
        if "excel" in ct or "spreadsheet" in ct:
            return "xlsx"
    return ""


def load_dataframe(data: bytes, filename: str = "", content_type: str = "", max_rows: Optional[int] = None) -> pd.DataFrame:
    ext = guess_ext(filename, content_type)
    if ext in {"xlsx", "xls"}:
        df = pd.read_excel(io.BytesIO(data), engine="openpyxl", dtype=str, keep_default_na=False)
    elif ext == "tsv":
        df = pd.read_csv(io.BytesIO(data), sep="\t", nrows=max_rows, dtype=str, keep_default_na=False)
    else:
        df = pd.read_csv(
            io.BytesIO(data),
            nrows=max_rows,
            dtype=str,
            keep_default_na=False,
            skipinitialspace=True,
        )
    if max_rows is not None and len(df) > max_rows:
        df = df.head(max_rows)
    df.columns = [str(c).strip() for c in df.columns]
    return df


def load_dataset_bytes(
    data: bytes, filename: str = "", content_type: str = "", max_rows: Optional[int] = None
) -> TabularDataset:
    df = load_dataframe(data, filename, content_type, max_rows)
    dataset = TabularDataset.from_dataframe(df)
    logging.info(
        "event=dataset_loaded filename=%s ext=%s rows=%d cols=%d",
        filename or "-",
        guess_ext(filename, content_type) or "csv",
        dataset.row_count,
        len(dataset.headers),
    )
    return dataset
