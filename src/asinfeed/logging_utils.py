"""Logging setup and phase timing helpers.

All modules log through named loggers under the ``asinfeed`` hierarchy;
:func:`setup_logging` attaches the console and file handlers once, at the
root of that hierarchy.

If the log file cannot be opened, logging degrades to console only.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, Mapping, Optional


ROOT_LOGGER = "asinfeed"
SYSTEM_FMT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FMT = "%Y-%m-%d %H:%M:%S"

PHASES = ("Parse", "Aggregate", "Enrich", "Assemble", "Write")


def _section(config: Optional[Mapping], name: str) -> Mapping:
    return (config or {}).get(name) or {}


def _ensure_logs_dir(config: Optional[Mapping]) -> Path:
    logs_dir = Path(_section(config, "paths").get("logs_dir", "logs")).expanduser().resolve()
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def _safe_add_file_handler(logger: logging.Logger, path: Path, level: int) -> None:
    try:
        fh = logging.FileHandler(path, encoding="utf-8")
    except OSError as exc:
        logger.warning("[WARNING] Failed to attach file handler %s (%s)", str(path), exc)
        return
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(SYSTEM_FMT, DATE_FMT))
    logger.addHandler(fh)


def setup_logging(config: Optional[Mapping] = None, name: str = ROOT_LOGGER) -> logging.Logger:
    """Configure the ``asinfeed`` logger with console + file handlers.

    Reads ``logging.level`` / ``logging.file_name`` and ``paths.logs_dir``
    from a plain config mapping. Safe to call repeatedly: handlers are reset.
    """
    log_cfg = _section(config, "logging")
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    # Reset handlers to avoid duplication across repeated initializations
    logger.handlers = []
    logger.propagate = False

    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(logging.Formatter(SYSTEM_FMT, DATE_FMT))
    logger.addHandler(sh)

    try:
        logs_dir = _ensure_logs_dir(config)
    except OSError as exc:
        logger.warning("[WARNING] Could not create logs directory (%s); console logging only", exc)
        return logger
    _safe_add_file_handler(logger, logs_dir / log_cfg.get("file_name", "asinfeed.log"), level)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child logger of ``asinfeed`` (``get_logger("parser")`` -> ``asinfeed.parser``)."""
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def start_phase_timer(phase_name: str) -> float:
    """Start a timer for a given phase and return the perf counter."""
    return time.perf_counter()


def end_phase_timer(phase_name: str, start_time: float, timing_dict: Dict[str, float], logger: logging.Logger) -> float:
    """End timer, record to ``timing_dict`` and log the duration."""
    elapsed = time.perf_counter() - float(start_time)
    timing_dict[phase_name] = float(elapsed)
    logger.info("Phase %s completed in %.2f seconds", phase_name, elapsed)
    return elapsed


def write_timing_report(timing_dict: Dict[str, float], config: Optional[Mapping] = None) -> Optional[Path]:
    """Write a timing breakdown to ``{logs_dir}/timing.log``.

    Returns the path to the written report, or None when it cannot be written.
    """
    out_path = _ensure_logs_dir(config) / "timing.log"
    lines = ["---- ASINFEED PIPELINE TIMING REPORT ----"]
    total = 0.0
    for key in PHASES:
        if key in timing_dict:
            val = float(timing_dict[key])
            total += val
            lines.append(f"{key}: {val:.2f} seconds")
    lines.append(f"Total Duration: {total:.2f} seconds")
    try:
        out_path.write_text("\n".join(lines), encoding="utf-8")
    except OSError as exc:
        logging.getLogger(ROOT_LOGGER).warning("[WARNING] Failed to write timing report (%s): %s", str(out_path), exc)
        return None
    return out_path


def log_system_event(logger: logging.Logger, message: str):
    logger.info("[SYSTEM] %s", message)


def log_warning(logger: logging.Logger, message: str):
    logger.warning("[WARNING] %s", message)
