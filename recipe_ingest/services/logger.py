"""Loguru setup and structured log records for the ingest service.

Every record helper emits one line of the form ``TAG: {...}`` so the daily log
file can be grepped per concern (LLM calls, pipeline phases, store writes).
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from recipe_ingest.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"

NOISY_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "openai._base_client",
)

LOG_DIR = Path(settings.log_dir)
LOG_DIR.mkdir(parents=True, exist_ok=True)

logger.remove()
logger.add(sys.stderr, format=CONSOLE_FORMAT, level=settings.app_log_level.upper(), colorize=True)
logger.add(
    LOG_DIR / "recipe_ingest_{time:YYYY-MM-DD}.log",
    format=FILE_FORMAT,
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

for _name in NOISY_LOGGERS:
    logging.getLogger(_name).setLevel(settings.noisy_log_level.upper())


def _emit(level: str, tag: str, fields: dict[str, Any]) -> None:
    record = {"timestamp": datetime.now(timezone.utc).isoformat(), **fields}
    logger.log(level, f"{tag}: {record}")


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Record one completion request with its token usage and latency."""
    fields = {
        "model": model,
        "caller": caller,
        "tokens": {"input": input_tokens, "output": output_tokens},
        "duration_ms": duration_ms,
        "status": status,
    }
    if error:
        _emit("ERROR", "LLM_CALL_FAILED", {**fields, "error": error})
    else:
        _emit("INFO", "LLM_CALL", fields)


def log_phase(task_id: str, phase: str, status: str, data: Optional[dict[str, Any]] = None) -> None:
    """Record a phase start, completion or failure for a task."""
    level = "WARNING" if status == "failed" else "INFO"
    _emit(level, "INGEST_PHASE", {"task_id": task_id, "phase": phase, "status": status, "data": data})


def log_store_operation(
    operation: str,
    collection: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    fields = {"operation": operation, "collection": collection, "status": status, "details": details}
    if error:
        _emit("ERROR", "STORE_OPERATION_FAILED", {**fields, "error": error})
    else:
        _emit("DEBUG", "STORE_OPERATION", fields)


def log_event(event_type: str, message: str, **kwargs) -> None:
    """Record a lifecycle event such as a commit, rejection or expiry sweep."""
    _emit("INFO", "EVENT", {"event_type": event_type, "message": message, **kwargs})
