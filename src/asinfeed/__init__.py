"""asinfeed: Amazon Associates reports to ranked, PA-API enriched product feeds.

Stages:
  - ``report_parser``: CSV/XLSX reports -> line items + diagnostics
  - ``aggregator``: per-ASIN sums, derived rates and ranking
  - ``paapi_client``: batched, paced, retrying GetItems enrichment
  - ``feed_generator``: feed formatting, metadata and output files
  - ``feed_pipeline``: orchestration and the ``asinfeed-pipeline`` CLI
"""

__all__ = [
    "aggregator",
    "errors",
    "feed_generator",
    "feed_pipeline",
    "models",
    "paapi_client",
    "report_parser",
    "signing",
]

__version__ = "0.1.0"
