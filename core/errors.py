"""
Exception taxonomy for the agent.

Failures split into *transient* (retry later), *rejected* (the ledger said
no; retrying will not help), invalid input, and unavailable optional data.
Intentional no-ops (rate-limited invoices, an open circuit breaker) are
modelled as :class:`EngineSkip` so logs can tell them apart from errors.
"""

from __future__ import annotations

import asyncio
import re

import httpx
from web3.exceptions import ContractLogicError

from core.models import SkipReason


class AgentError(Exception):
    """Base class for every error raised by the agent."""


class TransientExternalError(AgentError):
    """Network / timeout / DNS / rate-limit / 5xx class failure. Retryable."""


class RejectedOperationError(AgentError):
    """Ledger-level rejection (revert, unauthorized, bad args). Not retryable."""


class ValidationError(AgentError):
    """Missing or invalid input, e.g. an absent token id."""


class UnavailableDataError(AgentError):
    """An optional data source (price feed, yield source) is unreachable."""


class EngineSkip(AgentError):
    """Intentional no-op. Never counted as a failure."""

    reason: SkipReason

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.reason.value)


class RateLimitedSkip(EngineSkip):
    reason = SkipReason.RATE_LIMITED


class CircuitOpenSkip(EngineSkip):
    reason = SkipReason.CIRCUIT_OPEN


# Lower-cased message fragments that mark a failure as transient.
_TRANSIENT_MARKERS: tuple[str, ...] = (
    "network",
    "timeout",
    "timed out",
    "econnrefused",
    "connection refused",
    "connection reset",
    "connection aborted",
    "enotfound",
    "getaddrinfo",
    "name or service not known",
    "temporary failure in name resolution",
    "rate limit",
    "too many requests",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "nonce too low",
    "replacement transaction underpriced",
    "already known",
)

# Contract-level failures; checked before the transient markers.
_REJECTED_MARKERS: tuple[str, ...] = (
    "revert",
    "invalid opcode",
    "out of gas",
)

# A status code only counts when it reads as one, e.g. "HTTP 503" or "status: 429".
_STATUS_CODE = re.compile(r"\b(?:http|status(?:\s+code)?|code)\s*[:=]?\s*(\d{3})\b")


def _is_transient_status(code: int) -> bool:
    return code == 429 or 500 <= code <= 599


def is_transient_message(message: str) -> bool:
    lowered = message.lower()
    if any(marker in lowered for marker in _REJECTED_MARKERS):
        return False
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return True
    return any(_is_transient_status(int(m)) for m in _STATUS_CODE.findall(lowered))


def classify_error(exc: BaseException) -> AgentError:
    """Map an arbitrary exception onto the taxonomy.

    Already-classified errors pass through unchanged. Known exception types
    decide first (socket errors and timeouts, HTTP status, contract logic
    errors); everything else is decided by message.
    """
    if isinstance(exc, AgentError):
        return exc
    message = str(exc) or type(exc).__name__
    if isinstance(exc, ContractLogicError):
        return RejectedOperationError(message)
    if isinstance(exc, httpx.HTTPStatusError):
        if _is_transient_status(exc.response.status_code):
            return TransientExternalError(message)
        return RejectedOperationError(message)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)):
        return TransientExternalError(message)
    if is_transient_message(message):
        return TransientExternalError(message)
    return RejectedOperationError(message)
