"""End-to-end feed pipeline: parse -> aggregate -> enrich -> assemble -> write.

Run from the command line::

    asinfeed-pipeline reports/fee-earnings.csv --config config/config.yaml --top-n 50

Credentials come from the ``paapi`` config section, falling back to the
``ASINFEED_ACCESS_KEY``, ``ASINFEED_SECRET_KEY`` and ``ASINFEED_PARTNER_TAG``
environment variables.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import requests

from .aggregator import AggregationResult, RankFilters, aggregate_and_rank
from .common.config_validator import AppConfig, load_and_validate_config
from .errors import AsinFeedError, ConfigurationError, ReportParseError
from .feed_generator import FeedOptions, FeedPaths, assemble_feed, write_feed
from .ingestion_utils import load_config
from .logging_utils import end_phase_timer, get_logger, log_system_event, setup_logging, start_phase_timer, write_timing_report
from .models import EnrichmentResult, FeedResult
from .paapi_client import enrich_asins
from .report_parser import ParseResult, parse_report
from .signing import RequestSigner


LOGGER_NAME = "asinfeed.pipeline"

ENV_CREDENTIALS = {
    "access_key": "ASINFEED_ACCESS_KEY",
    "secret_key": "ASINFEED_SECRET_KEY",
    "partner_tag": "ASINFEED_PARTNER_TAG",
}

SUMMARY_TOP_PRODUCTS = 5


@dataclass
class PhaseResult:
    """Outcome details for a single pipeline phase."""

    name: str
    status: str
    detail: str
    duration_seconds: float


@dataclass
class PipelineRunResult:
    """Aggregate summary returned by :func:`run_pipeline`."""

    started_at: datetime
    finished_at: datetime
    parse_results: List[ParseResult]
    aggregation: AggregationResult
    enrichment: EnrichmentResult
    feed: FeedResult
    paths: Optional[FeedPaths] = None
    phases: List[PhaseResult] = field(default_factory=list)
    run_summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """True when every phase succeeded or was skipped."""

        return all(phase.status in {"success", "skipped"} for phase in self.phases)


def build_run_summary(
    parse_results: Sequence[ParseResult],
    aggregation: AggregationResult,
    enrichment: EnrichmentResult,
    feed: FeedResult,
    paths: Optional[FeedPaths],
    config: AppConfig,
    timings: Optional[Mapping[str, float]] = None,
) -> Dict[str, Any]:
    """Structured data a notifier needs to render a run report without recomputing anything."""

    meta = feed.metadata
    ranked = sorted(feed.products, key=lambda p: (p.get("rank") is None, p.get("rank") or 0))
    top = [
        {
            "rank": p.get("rank"),
            "asin": p["asin"],
            "title": p["title"],
            "price": p.get("price"),
            "ordered_items": p.get("ordered_items"),
            "revenue": p.get("revenue"),
            "is_on_sale": bool(p.get("is_on_sale")),
        }
        for p in ranked[:SUMMARY_TOP_PRODUCTS]
    ]
    stats = enrichment.stats
    return {
        "status": feed.status.value,
        "report_date": meta.report_date,
        "generated_at": meta.generated_at,
        "ranking_metric": meta.ranking_metric,
        "sales_only": meta.sales_only,
        "parse": {
            "total_rows": sum(r.diagnostics.total_rows for r in parse_results),
            "valid_rows": sum(r.diagnostics.valid_rows for r in parse_results),
            "skipped_rows": sum(r.diagnostics.skipped_rows for r in parse_results),
            "warnings": [w for r in parse_results for w in r.diagnostics.warnings],
        },
        "ranked_products": len(aggregation.products),
        "enrichment": stats.to_dict(),
        "error_codes": dict(Counter(err.code for err in enrichment.errors)),
        "min_success_rate": config.feed.min_success_rate,
        "below_success_threshold": meta.below_success_threshold,
        "feed_products": meta.total_asins,
        "top_products": top,
        "summary": dict(meta.summary),
        "sales": dict(meta.sales),
        "feed_path": str(paths.feed_path) if paths else None,
        "metadata_path": str(paths.metadata_path) if paths else None,
        "timings": dict(timings or {}),
    }


def run_pipeline(
    report_paths: Sequence[Union[str, Path]],
    config: AppConfig,
    *,
    session: Optional[requests.Session] = None,
    signer: Optional[RequestSigner] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    cancel_event: Optional[threading.Event] = None,
    write: bool = True,
    report_date: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> PipelineRunResult:
    """Execute the full pipeline for one or more report files.

    Line items from every report are pooled before aggregation.

    Raises:
        ConfigurationError: Invalid ranking key, filters or settings.
        ReportParseError: A report is unreadable or lacks required columns.
    """

    lg = logger or get_logger(LOGGER_NAME)
    if not report_paths:
        raise ConfigurationError("At least one report file is required")

    started_at = datetime.now(timezone.utc)
    timings: Dict[str, float] = {}
    phases: List[PhaseResult] = []
    log_system_event(lg, f"Pipeline started for {len(report_paths)} report(s)")

    filters = RankFilters.from_mapping(config.feed.filters)

    t0 = start_phase_timer("Parse")
    parse_results = [
        parse_report(
            path,
            sheet_name=config.feed.sheet_name,
            strict=config.feed.strict,
            fuzzy_cutoff=config.feed.fuzzy_cutoff,
        )
        for path in report_paths
    ]
    line_items = [item for result in parse_results for item in result.line_items]
    elapsed = end_phase_timer("Parse", t0, timings, lg)
    phases.append(PhaseResult("Parse", "success", f"{len(line_items)} line items", elapsed))

    t0 = start_phase_timer("Aggregate")
    aggregation = aggregate_and_rank(
        line_items,
        rank_by=config.feed.rank_by,
        top_n=config.feed.top_n,
        filters=filters,
    )
    elapsed = end_phase_timer("Aggregate", t0, timings, lg)
    phases.append(PhaseResult("Aggregate", "success", f"{len(aggregation.products)} ranked products", elapsed))

    t0 = start_phase_timer("Enrich")
    enrichment = enrich_asins(
        aggregation.products,
        config.paapi,
        session=session,
        signer=signer,
        sleep=sleep,
        clock=clock,
        cancel_event=cancel_event,
    )
    elapsed = end_phase_timer("Enrich", t0, timings, lg)
    phases.append(
        PhaseResult(
            "Enrich",
            "success",
            f"{enrichment.stats.enriched_count}/{enrichment.stats.total_requested} enriched",
            elapsed,
        )
    )

    options = FeedOptions(
        output_dir=config.paths.output_dir,
        publisher=config.feed.publisher,
        credential=config.feed.credential,
        partner_tag=config.paapi.partner_tag,
        base_url=config.paapi.base_url,
        report_date=report_date,
        ranking_metric=config.feed.rank_by,
        sales_only=config.feed.sales_only,
        enrichment_stats=enrichment.stats,
        min_success_rate=config.feed.min_success_rate,
    )
    t0 = start_phase_timer("Assemble")
    feed = assemble_feed(enrichment.enriched, options)
    elapsed = end_phase_timer("Assemble", t0, timings, lg)
    phases.append(PhaseResult("Assemble", "success", f"{feed.metadata.total_asins} products ({feed.status.value})", elapsed))

    paths: Optional[FeedPaths] = None
    if write:
        t0 = start_phase_timer("Write")
        paths = write_feed(feed, options)
        elapsed = end_phase_timer("Write", t0, timings, lg)
        phases.append(PhaseResult("Write", "success", str(paths.feed_path), elapsed))
    else:
        phases.append(PhaseResult("Write", "skipped", "write disabled", 0.0))

    summary = build_run_summary(parse_results, aggregation, enrichment, feed, paths, config, timings)
    log_system_event(
        lg,
        f"Pipeline finished: {feed.metadata.total_asins} products, success rate "
        f"{enrichment.stats.success_rate:.1%}",
    )
    return PipelineRunResult(
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
        parse_results=parse_results,
        aggregation=aggregation,
        enrichment=enrichment,
        feed=feed,
        paths=paths,
        phases=phases,
        run_summary=summary,
    )


def resolve_config(
    config_path: Optional[str],
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Load the YAML config, fill missing credentials from the environment and apply CLI overrides."""

    env = os.environ if environ is None else environ
    raw: Dict[str, Any] = load_config(config_path) if config_path else {}
    paapi = dict(raw.get("paapi") or raw.pop("pa_api", None) or {})
    for key, var in ENV_CREDENTIALS.items():
        if not paapi.get(key) and env.get(var):
            paapi[key] = env[var]
    raw["paapi"] = paapi

    feed = dict(raw.get("feed") or {})
    paths = dict(raw.get("paths") or {})
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key == "output_dir":
            paths[key] = value
        else:
            feed[key] = value
    raw["feed"] = feed
    raw["paths"] = paths
    return raw


def build_arg_parser() -> argparse.ArgumentParser:
    """Create an argument parser for the pipeline CLI."""

    parser = argparse.ArgumentParser(description="Associates report to enriched product feed")
    parser.add_argument("reports", nargs="+", help="CSV/XLSX report file(s)")
    parser.add_argument("--config", help="Path to YAML configuration file")
    parser.add_argument("--rank-by", help="Ranking metric (ordered_items, revenue, earnings, conversion_rate, revenue_per_click)")
    parser.add_argument("--top-n", type=int, help="Keep only the top N ranked products")
    parser.add_argument("--sales-only", action="store_true", default=None, help="Only include products on sale")
    parser.add_argument("--publisher", help="Publisher directory name")
    parser.add_argument("--credential", help="Credential directory name")
    parser.add_argument("--output-dir", help="Feed output root")
    parser.add_argument("--sheet", dest="sheet_name", help="Workbook sheet to parse")
    parser.add_argument("--strict", action="store_true", default=None, help="Record every skipped report row")
    parser.add_argument("--report-date", help="Report date (YYYY-MM-DD); defaults to today")
    parser.add_argument("--no-write", action="store_true", help="Assemble the feed without writing files")
    parser.add_argument("--summary-json", help="Also write the run summary to this path")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point. Returns 0 on success, 2 on configuration errors, 1 on parse errors."""

    parser = build_arg_parser()
    args = parser.parse_args(argv)
    overrides = {
        "rank_by": args.rank_by,
        "top_n": args.top_n,
        "sales_only": args.sales_only,
        "publisher": args.publisher,
        "credential": args.credential,
        "sheet_name": args.sheet_name,
        "strict": args.strict,
        "output_dir": args.output_dir,
    }
    try:
        raw = resolve_config(args.config, overrides=overrides)
        config = load_and_validate_config(raw)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    lg = setup_logging(config.model_dump())
    try:
        result = run_pipeline(args.reports, config, write=not args.no_write, report_date=args.report_date)
    except ConfigurationError as exc:
        lg.error("Configuration error: %s", exc)
        return 2
    except ReportParseError as exc:
        lg.error("Report parse error: %s", exc)
        return 1
    except AsinFeedError as exc:
        lg.error("Pipeline failed: %s", exc)
        return 1

    write_timing_report(result.run_summary["timings"], config.model_dump())
    text = json.dumps(result.run_summary, indent=2, ensure_ascii=False)
    if args.summary_json:
        Path(args.summary_json).write_text(text, encoding="utf-8")
    print(text)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI guard
    sys.exit(main())
