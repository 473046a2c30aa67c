"""Logging setup and console helpers for detection runs."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence, Union

from rich.console import Console
from rich.logging import RichHandler

from ..models import Detection

LOGGER_NAME = "scallop_analysis"
LOG_FILENAME = "run.log"

console = Console()


def create_session_dir(base_dir: Union[str, Path]) -> Path:
    """Create a timestamped session directory under ``base_dir``."""
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    session_dir = Path(base_dir) / f"session_{stamp}"
    session_dir.mkdir(parents=True, exist_ok=True)
    return session_dir


def setup_logger(
    session_dir: Optional[Union[str, Path]] = None,
    verbose: bool = False,
) -> logging.Logger:
    """Set up the package logger with a rich console handler and a log file.

    Args:
        session_dir: Directory for ``run.log``; no file handler if None
        verbose: Show DEBUG messages on the console

    Returns:
        Configured package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to avoid duplicates
    logger.handlers.clear()
    logger.propagate = False

    console_handler = RichHandler(console=console, show_path=False, markup=False)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    if session_dir is not None:
        log_file = Path(session_dir) / LOG_FILENAME
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(threadName)s - %(levelname)s - %(name)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)
        logger.debug("Log file: %s", log_file)

    return logger


def log_image_start(logger: logging.Logger, name: str, index: int = 0, total: int = 0) -> None:
    """Log the start of processing for one image."""
    if total:
        logger.info("[%d/%d] Processing %s", index, total, name)
    else:
        logger.info("Processing %s", name)


def log_detection(logger: logging.Logger, name: str, detections: Sequence[Detection]) -> None:
    """Log the per-category detection counts for one image."""
    if not detections:
        logger.info("%s: no detections", name)
        return
    counts = {}
    for det in detections:
        counts[det.category.value] = counts.get(det.category.value, 0) + 1
    summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
    logger.info("%s: %d detections (%s)", name, len(detections), summary)


def log_warning(logger: logging.Logger, message: str) -> None:
    logger.warning(message)


def log_error(logger: logging.Logger, message: str) -> None:
    logger.error(message)


def log_output(logger: logging.Logger, label: str, path: Union[str, Path]) -> None:
    logger.info("%s: %s", label, path)
