# src/common/logging_utils.py

"""
Structured logging utilities for the Ollama gateway.

This module ensures:
- Prompts, chat messages and credentials are never logged. Relayed model
  output is never logged either; the one exception is the short warmup reply
  (`warmup_reply`), kept as a startup diagnostic.
- Logs are structured as key=value pairs.
- Only metadata (request_id, method, path, status, timing) is logged.
- Logging level is set once at startup via configure_logging().

We use a very lightweight wrapper on top of Python's standard logging module.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Dict, Any


LOGGER_NAME = "ollama_proxy"

# Longer values are cut so a stray payload cannot flood the log
MAX_VALUE_LENGTH = 256


# -------------------------------------------------------------------------
# Logger Initialization
# -------------------------------------------------------------------------

def _initialize_logger() -> logging.Logger:
    """
    Initializes a logger with stdout handler.
    Logs are formatted as: timestamp level message key=value key=value ...
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(sys.stdout)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler.setFormatter(formatter)

    # Avoid multiple handlers if this is re-imported
    if not logger.handlers:
        logger.addHandler(handler)

    return logger


_logger = _initialize_logger()


def configure_logging(level: str) -> None:
    """Apply the configured level, e.g. "INFO" or "debug"."""
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    _logger.setLevel(resolved)


# -------------------------------------------------------------------------
# Sanitization
# -------------------------------------------------------------------------

# Keys that should never be logged
SENSITIVE_KEYS = {
    "prompt",
    "messages",
    "system",
    "response",
    "message",
    "content",
    "input",
    "images",
    "embedding",
    "embeddings",
    "authorization",
    "token",
    "bearer_token",
}


def _sanitize_extra(extra: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Sanitize extra metadata fields before logging.

    Rules:
    - Drop known sensitive keys (SENSITIVE_KEYS) always.
    - Truncate string values longer than MAX_VALUE_LENGTH.
    - Always coerce values to strings.
    """
    if not extra:
        return {}

    cleaned: Dict[str, str] = {}

    for key, value in extra.items():
        k = str(key)

        if k.lower() in SENSITIVE_KEYS:
            continue

        v = str(value)
        if len(v) > MAX_VALUE_LENGTH:
            v = v[:MAX_VALUE_LENGTH] + "..."

        cleaned[k] = v

    return cleaned


def _level_to_int(level: str) -> int:
    lvl = level.lower()
    if lvl == "info":
        return logging.INFO
    if lvl == "warning":
        return logging.WARNING
    if lvl == "error":
        return logging.ERROR
    if lvl == "debug":
        return logging.DEBUG
    return logging.INFO


# -------------------------------------------------------------------------
# Sanitized logging function
# -------------------------------------------------------------------------

def log_event(
    message: str,
    *,
    request_id: Optional[str] = None,
    model: Optional[str] = None,
    error: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    level: str = "info",
):
    """
    Logs a sanitized, structured message with no sensitive data.

    Examples:
        log_event(
            "proxy_request_completed",
            request_id="abc123",
            extra={"status": 200, "latency_ms": 1234},
        )

        log_event(
            "keepalive_ping_failed",
            model="mistral:7b",
            error="timeout",
            level="warning",
        )
    """

    fields = []

    if request_id:
        fields.append(f"request_id={request_id}")

    if model:
        fields.append(f"model={model}")

    if error:
        fields.append(f"error={error}")

    for k, v in _sanitize_extra(extra).items():
        fields.append(f"{k}={v}")

    full_message = f"{message} " + " ".join(fields) if fields else message

    _logger.log(_level_to_int(level), full_message)
