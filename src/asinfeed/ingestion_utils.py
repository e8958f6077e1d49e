"""File and configuration helpers supporting report ingestion."""
from __future__ import annotations

import io
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd
import yaml

from .errors import ConfigurationError, ReportParseError


CSV_EXTENSIONS = {".csv", ".txt"}
EXCEL_EXTENSIONS = {".xlsx", ".xlsm", ".xls"}
HEADER_SCAN_ROWS = 10

# Header row indicators for vendor exports that carry banner rows above the table.
HEADER_ID_HINTS = ("asin",)
HEADER_METRIC_HINTS = ("revenue", "qty", "items", "earnings", "ad fees", "clicks")

# Preferred sheet name fragments, in priority order.
SHEET_PREFERENCE = ("earnings", "orders")


def load_config(path: str | Path) -> Dict:
    """Load a YAML configuration file."""

    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Configuration file not found: {p}")
    with open(p, "r", encoding="utf-8") as stream:
        data = yaml.safe_load(stream)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {p} must contain a mapping at the top level")
    return data


def ensure_directory(directory: str | Path) -> Path:
    """Ensure that the directory exists."""

    path = Path(directory)
    path.mkdir(parents=True, exist_ok=True)
    return path


def detect_file_format(path: str | Path) -> str:
    """Return ``csv``, ``xlsx`` or ``unknown`` based on the file extension."""

    suffix = Path(path).suffix.lower()
    if suffix in CSV_EXTENSIONS:
        return "csv"
    if suffix in EXCEL_EXTENSIONS:
        return "xlsx"
    return "unknown"


def normalize_headers(df: pd.DataFrame) -> pd.DataFrame:
    """Normalize header whitespace."""

    df = df.copy()
    df.columns = [str(col).strip() for col in df.columns]
    return df


def _drop_blank_rows(df: pd.DataFrame) -> pd.DataFrame:
    stripped = df.apply(lambda col: col.astype("string").str.strip())
    blank = stripped.isna() | (stripped == "")
    return df.loc[~blank.all(axis=1)]


def read_csv_frame(source: Union[str, Path, io.StringIO]) -> pd.DataFrame:
    """Read delimited text keeping every cell as a string."""

    try:
        df = pd.read_csv(
            source,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=False,
            skipinitialspace=True,
        )
    except pd.errors.EmptyDataError as exc:
        raise ReportParseError("CSV file is empty") from exc
    except (pd.errors.ParserError, UnicodeDecodeError, OSError) as exc:
        raise ReportParseError(f"Failed to parse CSV: {exc}") from exc
    # Index carries the 1-based file line number (line 1 is the header)
    df.index = df.index + 2
    return _drop_blank_rows(normalize_headers(df))


def select_sheet(sheet_names: Sequence[str], preferred: Optional[str] = None) -> str:
    """Pick the sheet to parse.

    An explicit ``preferred`` name wins; otherwise the first sheet whose name
    mentions earnings, then orders, else the first sheet.
    """

    if not sheet_names:
        raise ReportParseError("Workbook contains no sheets")
    if preferred is not None:
        if preferred not in sheet_names:
            raise ReportParseError(f"Sheet '{preferred}' not found. Available sheets: {', '.join(sheet_names)}")
        return preferred
    for fragment in SHEET_PREFERENCE:
        for name in sheet_names:
            if fragment in str(name).lower():
                return name
    return sheet_names[0]


def detect_header_row(grid: pd.DataFrame, max_rows: int = HEADER_SCAN_ROWS) -> int:
    """Return the index of the first row that looks like the report header.

    A header row mentions an ASIN column and at least one metric column.
    Falls back to 0 when nothing in the first ``max_rows`` rows qualifies.
    """

    for idx in range(min(max_rows, len(grid))):
        cells = [str(v) for v in grid.iloc[idx].tolist() if pd.notna(v)]
        joined = "|".join(cells).lower()
        if any(h in joined for h in HEADER_ID_HINTS) and any(h in joined for h in HEADER_METRIC_HINTS):
            return idx
    return 0


def _frame_from_grid(grid: pd.DataFrame, header_row: int) -> pd.DataFrame:
    header = [str(v).strip() if pd.notna(v) else "" for v in grid.iloc[header_row].tolist()]
    columns: List[str] = []
    for pos, name in enumerate(header):
        # Keep positional names for blank or duplicated headers
        label = name or f"Unnamed: {pos}"
        if label in columns:
            label = f"{label}.{pos}"
        columns.append(label)
    body = grid.iloc[header_row + 1:].copy()
    body.columns = columns
    body = body.fillna("").astype(str)
    # Index carries the 1-based sheet row number
    body.index = body.index + 1
    return _drop_blank_rows(body)


def read_excel_frame(
    source: Union[str, Path, io.BytesIO],
    sheet_name: Optional[str] = None,
) -> Tuple[pd.DataFrame, str, int]:
    """Read a workbook sheet, skipping any banner rows above the header.

    Returns ``(frame, sheet_name, header_row_index)``.
    """

    try:
        sheets = pd.read_excel(source, sheet_name=None, header=None, dtype=str)
    except (ValueError, OSError, KeyError, ImportError) as exc:
        raise ReportParseError(f"Failed to parse XLSX: {exc}") from exc

    chosen = select_sheet(list(sheets.keys()), sheet_name)
    grid = sheets[chosen].dropna(how="all")
    if grid.empty:
        raise ReportParseError(f"Sheet '{chosen}' is empty")
    header_pos = detect_header_row(grid)
    return _frame_from_grid(grid, header_pos), chosen, int(grid.index[header_pos])
