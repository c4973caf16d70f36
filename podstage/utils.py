"""
Utility functions for podstage.

Includes logging setup and small filesystem helpers used during setup.
"""

import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console(stderr=True)


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "pretty",
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Set up logging for an orchestration run.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON lines) or "pretty" (human-readable)
        log_file: Optional file that receives a copy of every record

    Returns:
        Configured package logger
    """
    logger = logging.getLogger("podstage")
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    logger.handlers = []  # Clear existing handlers
    logger.propagate = False

    if log_format == "structured":
        console_handler: logging.Handler = logging.StreamHandler()
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
        console_handler.setFormatter(ContextFormatter("%(message)s"))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "stage"):
            log_data["stage"] = record.stage
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ContextFormatter(logging.Formatter):
    """Human-readable formatter that appends stage and metadata fields."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = []
        if hasattr(record, "stage"):
            fields.append(f"stage={record.stage}")
        metadata = getattr(record, "metadata", None)
        if isinstance(metadata, dict):
            fields.extend(f"{k}={v}" for k, v in metadata.items())
        if fields:
            message = f"{message} [{' '.join(fields)}]"
        return message


def copy_file_exclusive(src: Path, dest: Path) -> None:
    """
    Copy src to dest, refusing to overwrite an existing file.

    Raises:
        FileExistsError: If dest already exists
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    with open(src, "rb") as src_f, open(dest, "xb") as dest_f:
        shutil.copyfileobj(src_f, dest_f)
    os.chmod(dest, 0o644)


def iter_files(root: Path) -> Iterator[Path]:
    """Yield every regular file below root, in sorted order."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_file():
                yield path
