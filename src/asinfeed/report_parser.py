"""Associates report parsing with flexible column detection.

Reads CSV or XLSX exports of an Associates earnings/orders report, resolves
each semantic column (ASIN, ordered items, revenue, earnings, clicks...)
against a table of known header aliases, validates ASINs and coerces metric
cells into floats.

Usage::

    result = parse_report("reports/fee-earnings.xlsx")
    result.line_items        # List[LineItem]
    result.diagnostics       # ParseDiagnostics
"""
from __future__ import annotations

import difflib
import io
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from .errors import ReportParseError
from .id_normalizer import is_valid_asin, normalize_asin
from .ingestion_utils import detect_file_format, read_csv_frame, read_excel_frame
from .metric_normalizer import coerce_metric
from .logging_utils import get_logger, log_warning
from .models import LineItem, RowIssue
from .standards.naming import normalize_header_token


LOGGER_NAME = "asinfeed.parser"

# Header aliases per semantic role, in match priority order.
COLUMN_ALIASES: Dict[str, List[str]] = {
    "asin": ["asin", "product asin", "product_asin", "linking asin"],
    "ordered_items": [
        "ordered items", "items ordered", "qty ordered", "quantity ordered", "qty",
        "items shipped",
    ],
    "revenue": [
        "shipped revenue", "revenue", "shipped earnings", "product revenue",
        "revenue($)", "revenue ($)",
    ],
    "earnings": [
        "earnings", "publisher earnings", "commission", "your earnings",
        "affiliate earnings", "ad fees", "ad fees($)", "ad fees ($)",
    ],
    "clicks": ["clicks", "link clicks", "click count", "total clicks"],
    "items_shipped": ["items shipped", "shipped items", "qty shipped"],
    "tag": ["tag", "tracking id", "associate tag"],
    "product_name": ["name", "product name", "title", "product title"],
}

REQUIRED_ROLES = ("asin", "ordered_items", "revenue", "earnings")
METRIC_ROLES = ("ordered_items", "revenue", "earnings", "clicks")


@dataclass(frozen=True)
class ColumnMap:
    """Resolved report header for each semantic role (None when absent)."""

    asin: str
    ordered_items: str
    revenue: str
    earnings: str
    clicks: Optional[str] = None
    items_shipped: Optional[str] = None
    tag: Optional[str] = None
    product_name: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)


@dataclass
class ParseDiagnostics:
    format: str
    total_rows: int = 0
    valid_rows: int = 0
    skipped_rows: int = 0
    unique_asins: int = 0
    column_totals: Dict[str, float] = field(default_factory=dict)
    average_conversion_rate: float = 0.0
    column_mapping: Dict[str, Optional[str]] = field(default_factory=dict)
    sheet_name: Optional[str] = None
    header_row: int = 0
    warnings: List[str] = field(default_factory=list)
    row_issues: List[RowIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class ParseResult:
    line_items: List[LineItem]
    diagnostics: ParseDiagnostics


def find_column(
    headers: Sequence[str],
    aliases: Sequence[str],
    fuzzy_cutoff: Optional[float] = None,
) -> Optional[str]:
    """Return the first header matching any alias (alias priority order).

    When ``fuzzy_cutoff`` is set and no alias matches exactly, fall back to
    the closest header by ``difflib`` similarity above the cutoff.
    """

    normalized = [normalize_header_token(h) for h in headers]
    for alias in aliases:
        key = normalize_header_token(alias)
        if key in normalized:
            return headers[normalized.index(key)]

    if fuzzy_cutoff is not None:
        for alias in aliases:
            close = difflib.get_close_matches(normalize_header_token(alias), normalized, n=1, cutoff=fuzzy_cutoff)
            if close:
                return headers[normalized.index(close[0])]
    return None


def resolve_columns(
    headers: Sequence[str],
    aliases: Mapping[str, Sequence[str]] = COLUMN_ALIASES,
    fuzzy_cutoff: Optional[float] = None,
) -> ColumnMap:
    """Resolve every role to a header, failing on unresolved required roles."""

    headers = [str(h).strip() for h in headers]
    found: Dict[str, Optional[str]] = {
        role: find_column(headers, role_aliases, fuzzy_cutoff) for role, role_aliases in aliases.items()
    }
    missing = [role for role in REQUIRED_ROLES if not found.get(role)]
    if missing:
        expected = "; ".join(f"{role}: {' or '.join(aliases.get(role, []))}" for role in missing)
        raise ReportParseError(
            f"Missing required columns. Could not find: {', '.join(missing)}\n"
            f"Available columns: {', '.join(headers)}\n"
            f"Expected one of: {expected}"
        )
    return ColumnMap(**{role: found.get(role) for role in ColumnMap.__dataclass_fields__})


def _cell(row: pd.Series, column: Optional[str]) -> str:
    if column is None:
        return ""
    value = row.get(column, "")
    return "" if value is None or pd.isna(value) else str(value)


def _build_line_items(
    df: pd.DataFrame,
    columns: ColumnMap,
    diagnostics: ParseDiagnostics,
    strict: bool,
) -> List[LineItem]:
    items: List[LineItem] = []
    for row_number, row in df.iterrows():
        raw_asin = _cell(row, columns.asin)
        asin = normalize_asin(raw_asin)
        if not is_valid_asin(asin):
            diagnostics.skipped_rows += 1
            if strict:
                reason = "Missing ASIN" if not asin else "Invalid ASIN format"
                diagnostics.row_issues.append(RowIssue(int(row_number), reason, raw_asin.strip()))
            continue

        tag = _cell(row, columns.tag).strip() or None
        items_shipped = coerce_metric(_cell(row, columns.items_shipped)) if columns.items_shipped else None
        items.append(
            LineItem(
                asin=asin,
                ordered_items=coerce_metric(_cell(row, columns.ordered_items)),
                revenue=coerce_metric(_cell(row, columns.revenue)),
                earnings=coerce_metric(_cell(row, columns.earnings)),
                clicks=coerce_metric(_cell(row, columns.clicks)),
                source_tag=tag,
                items_shipped=items_shipped,
            )
        )
    return items


def _finalize_diagnostics(diagnostics: ParseDiagnostics, items: List[LineItem]) -> None:
    totals = {role: float(sum(getattr(item, role) for item in items)) for role in METRIC_ROLES}
    diagnostics.valid_rows = len(items)
    diagnostics.unique_asins = len({item.asin for item in items})
    diagnostics.column_totals = totals
    clicks = totals["clicks"]
    diagnostics.average_conversion_rate = totals["ordered_items"] / clicks if clicks > 0 else 0.0


def parse_frame(
    df: pd.DataFrame,
    *,
    file_format: str = "csv",
    sheet_name: Optional[str] = None,
    header_row: int = 0,
    strict: bool = False,
    fuzzy_cutoff: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> ParseResult:
    """Turn an already-read report table into line items and diagnostics."""

    lg = logger or get_logger(LOGGER_NAME)
    columns = resolve_columns(list(df.columns), fuzzy_cutoff=fuzzy_cutoff)
    diagnostics = ParseDiagnostics(
        format=file_format,
        total_rows=len(df),
        column_mapping=columns.as_dict(),
        sheet_name=sheet_name,
        header_row=header_row,
    )
    if columns.clicks is None:
        msg = "Clicks column not found. Conversion rates cannot be calculated."
        diagnostics.warnings.append(msg)
        log_warning(lg, msg)

    items = _build_line_items(df, columns, diagnostics, strict)
    _finalize_diagnostics(diagnostics, items)
    lg.info(
        "Parsed %s rows (%s valid, %s skipped, %s unique ASINs)",
        diagnostics.total_rows,
        diagnostics.valid_rows,
        diagnostics.skipped_rows,
        diagnostics.unique_asins,
    )
    return ParseResult(line_items=items, diagnostics=diagnostics)


def parse_report(
    source: Union[str, Path],
    *,
    sheet_name: Optional[str] = None,
    strict: bool = False,
    fuzzy_cutoff: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> ParseResult:
    """Parse a CSV or XLSX Associates report from disk.

    Args:
        source: Path to a ``.csv``/``.txt`` or ``.xlsx``/``.xlsm``/``.xls`` file.
        sheet_name: Workbook sheet to read; auto-selected when omitted.
        strict: Record every skipped row with its row number and reason.
        fuzzy_cutoff: Enable difflib header matching for roles no alias matched.

    Raises:
        ReportParseError: File missing, unreadable, unsupported or lacking
            a required column.
    """

    lg = logger or get_logger(LOGGER_NAME)
    path = Path(source)
    if not path.exists():
        raise ReportParseError(f"Input not found: {path}")

    file_format = detect_file_format(path)
    if file_format == "csv":
        df = read_csv_frame(path)
        return parse_frame(df, file_format="csv", strict=strict, fuzzy_cutoff=fuzzy_cutoff, logger=lg)
    if file_format == "xlsx":
        df, chosen, header_row = read_excel_frame(path, sheet_name=sheet_name)
        lg.info("Using sheet '%s' (header at row %s)", chosen, header_row + 1)
        return parse_frame(
            df,
            file_format="xlsx",
            sheet_name=chosen,
            header_row=header_row,
            strict=strict,
            fuzzy_cutoff=fuzzy_cutoff,
            logger=lg,
        )
    raise ReportParseError(f"Unsupported file format. Please provide CSV or XLSX file. Got: {path}")


def parse_report_text(
    content: str,
    *,
    strict: bool = False,
    fuzzy_cutoff: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> ParseResult:
    """Parse CSV report content already held in memory (e.g. from a webhook)."""

    if not content or not content.strip():
        raise ReportParseError("CSV file is empty")
    df = read_csv_frame(io.StringIO(content))
    return parse_frame(df, file_format="csv", strict=strict, fuzzy_cutoff=fuzzy_cutoff, logger=logger)
