import logging
from pathlib import Path

from asinfeed.feed_generator import FeedOptions, assemble_feed
from asinfeed.logging_utils import (
    end_phase_timer,
    get_logger,
    setup_logging,
    start_phase_timer,
    write_timing_report,
)
from asinfeed.models import AggregatedProduct, EnrichedProduct, EnrichmentStats
from asinfeed.report_parser import parse_report_text


def test_setup_logging_attaches_console_and_file_handlers(tmp_path: Path):
    config = {"paths": {"logs_dir": str(tmp_path / "logs")}, "logging": {"level": "debug", "file_name": "run.log"}}

    logger = setup_logging(config)
    again = setup_logging(config)

    assert logger is again
    assert logger.level == logging.DEBUG
    assert len(again.handlers) == 2
    get_logger("parser").info("hello from the parser")
    for handler in again.handlers:
        handler.flush()
    assert "asinfeed.parser | hello from the parser" in (tmp_path / "logs" / "run.log").read_text(encoding="utf-8")
    for handler in list(again.handlers):
        handler.close()
        again.removeHandler(handler)


def test_get_logger_namespaces_children():
    assert get_logger("enrichment").name == "asinfeed.enrichment"
    assert get_logger("asinfeed.feed").name == "asinfeed.feed"


def test_phase_timers_and_timing_report(tmp_path: Path):
    timings = {}
    start = start_phase_timer("Parse")
    elapsed = end_phase_timer("Parse", start, timings, logging.getLogger("asinfeed.test"))
    timings["Enrich"] = 1.5

    path = write_timing_report(timings, {"paths": {"logs_dir": str(tmp_path)}})
    text = path.read_text(encoding="utf-8")

    assert elapsed >= 0
    assert "Parse:" in text
    assert "Enrich: 1.50 seconds" in text
    assert "Total Duration:" in text


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.messages = []

    def emit(self, record):
        self.messages.append(record.getMessage())


def _capturing_logger(name):
    logger = logging.getLogger(name)
    handler = _ListHandler()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger, handler


def test_pipeline_warnings_use_warning_prefix():
    logger, handler = _capturing_logger("asinfeed.test.warnings")
    try:
        parse_report_text("ASIN,Ordered Items,Revenue,Earnings\nB000000001,1,1,1\n", logger=logger)
        base = AggregatedProduct("B000000001", ordered_items=1, revenue=10.0, earnings=1.0, clicks=2, rank=1)
        product = EnrichedProduct(base, title="Item")
        stats = EnrichmentStats(total_requested=2, enriched_count=1, failed_count=1, success_rate=0.5)
        assemble_feed([product], FeedOptions(enrichment_stats=stats), logger=logger)
    finally:
        logger.removeHandler(handler)

    warnings = [m for m in handler.messages if m.startswith("[WARNING]")]
    assert warnings == [
        "[WARNING] Clicks column not found. Conversion rates cannot be calculated.",
        "[WARNING] Enrichment success rate 50.0% is below the 95% threshold",
    ]
