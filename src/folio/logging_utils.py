"""
Logging setup on top of loguru.
"""
from __future__ import annotations

from pathlib import Path
import sys

from loguru import logger

from folio.config import LoggingConfig


def setup_logging(
    logs_dir: str | Path,
    level: str = "INFO",
    rotation: str = "1 day",
    retention: str = "30 days",
    format_type: str = "text",
    enable_console: bool = True,
) -> None:
    """
    Configure console and rotating file sinks.

    Args:
        logs_dir: Directory for log files
        level: Console level (DEBUG, INFO, WARNING, ERROR)
        rotation: When to rotate files (e.g. "1 day", "50 MB")
        retention: How long to keep rotated files
        format_type: "json" for serialized records, "text" otherwise
        enable_console: Whether to log to stderr
    """
    log_path = Path(logs_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger.remove()
    serialize = format_type == "json"
    text_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan> | "
        "<level>{message}</level>"
    )

    if enable_console:
        logger.add(sys.stderr, format=text_format, level=level, colorize=not serialize, serialize=serialize)

    logger.add(
        log_path / "runtime.log",
        level="INFO",
        rotation=rotation,
        retention=retention,
        enqueue=True,
        serialize=serialize,
    )
    logger.add(
        log_path / "errors.log",
        level="ERROR",
        rotation=rotation,
        retention="60 days",
        enqueue=True,
        serialize=serialize,
    )
    # Order lifecycle lines kept longer for audit.
    logger.add(
        log_path / "orders.log",
        level="INFO",
        rotation=rotation,
        retention="90 days",
        enqueue=True,
        serialize=serialize,
        filter=lambda record: record["message"].startswith("ORDER |"),
    )
    logger.info(f"Logging initialized: level={level}, dir={log_path}, format={format_type}")


def setup_logging_from_config(config: LoggingConfig) -> None:
    setup_logging(
        logs_dir=config.logs_dir,
        level=config.level,
        format_type=config.format_type,
        enable_console=config.enable_console,
    )


def log_order_event(event: str, order_id: int | None, **kwargs: object) -> None:
    """Log one order lifecycle line routed to the orders sink."""
    extra = " | ".join(f"{k}={v}" for k, v in kwargs.items() if v is not None)
    msg = f"ORDER | {event} | id={order_id}"
    if extra:
        msg += f" | {extra}"
    logger.info(msg)
