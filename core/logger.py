"""
Structured JSON logging with optional ``agent_id`` context.

Usage::

    from core.logger import get_logger
    log = get_logger("orchestrator")
    log.info("Decision recorded", extra={"token_id": "5", "strategy": "Hold"})

Every log record is emitted as a single JSON line on stderr.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from config.settings import settings

# Keys lifted from ``extra={…}`` into the JSON payload.
_EXTRA_KEYS: tuple[str, ...] = (
    "token_id", "strategy", "confidence", "cycle_id", "attempt", "delay_s",
    "regime", "skip_reason", "error", "duration_ms", "reference", "state",
)


class _JSONFormatter(logging.Formatter):
    """Format each log record as a compact JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        agent_id = getattr(record, "agent_id", None)
        if agent_id:
            payload["agent_id"] = agent_id

        for key in _EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class _AgentAdapter(logging.LoggerAdapter):
    """Injects ``agent_id`` into every record automatically."""

    def process(
        self, msg: str, kwargs: dict[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        extra = kwargs.setdefault("extra", {})
        extra.setdefault("agent_id", self.extra.get("agent_id"))
        return msg, kwargs


def _configure_root_logger() -> None:
    """One-time setup: attach the JSON formatter to stderr."""
    root = logging.getLogger()
    if root.handlers:
        return  # Already configured (e.g. during tests).

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JSONFormatter())
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())


_configure_root_logger()


def get_logger(agent_id: str | None = None, name: str | None = None) -> logging.LoggerAdapter:
    """Return a structured logger, optionally bound to an *agent_id*.

    Parameters
    ----------
    agent_id:
        Logical component name (e.g. ``"market_monitor"``).
    name:
        Python logger name.  Defaults to ``faktory.<agent_id>`` when
        *agent_id* is provided, otherwise ``"faktory"``.
    """
    logger_name = name or (f"faktory.{agent_id}" if agent_id else "faktory")
    base = logging.getLogger(logger_name)
    return _AgentAdapter(base, extra={"agent_id": agent_id or ""})
