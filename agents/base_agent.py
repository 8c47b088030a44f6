"""
Abstract base class for long-running Faktory agents.

Subclass ``BaseAgent``, implement :meth:`process`, and you get:

* A structured logger bound to your ``agent_id``.
* Graceful start / stop lifecycle with health-check support.
* :meth:`publish` for pushing snapshots onto the message bus without ever
  failing the caller.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from core.logger import get_logger
from core.message_bus import MessageBus


class BaseAgent(abc.ABC):
    """Skeleton that every Faktory agent inherits from."""

    def __init__(
        self,
        agent_id: str,
        agent_type: str,
        bus: MessageBus | None = None,
        **kwargs: Any,
    ) -> None:
        self.agent_id = agent_id
        self.agent_type = agent_type
        self.bus = bus
        self.log: logging.LoggerAdapter = get_logger(agent_id)
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._last_heartbeat: datetime | None = None

    @property
    def running(self) -> bool:
        return self._running

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Boot the agent's processing loop."""
        if self._running:
            self.log.warning("Agent already running.")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"agent:{self.agent_id}")
        self.log.info("Agent started.")

    async def stop(self) -> None:
        """Signal the agent to shut down gracefully."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log.info("Agent stopped.")

    async def _run_loop(self) -> None:
        """Internal loop that calls :meth:`process` repeatedly."""
        try:
            while self._running:
                self._last_heartbeat = datetime.now(timezone.utc)
                await self.process()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.exception("Unhandled error in agent loop - exiting.")
            self._running = False

    # -- abstract interface --------------------------------------------------

    @abc.abstractmethod
    async def process(self) -> None:
        """Execute one iteration of the agent's core logic, then wait."""
        ...

    # -- helpers -------------------------------------------------------------

    async def publish(self, stream: str, payload: BaseModel) -> str | None:
        """Best-effort publish to *stream*. Returns the message id or None."""
        if self.bus is None:
            return None
        try:
            return await self.bus.publish_to(stream, payload)
        except Exception as exc:
            self.log.warning(
                "Publish to %s failed.", stream, extra={"error": str(exc)},
            )
            return None

    # -- health --------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        """Return a JSON-serialisable health snapshot."""
        return {
            "agent_id": self.agent_id,
            "agent_type": self.agent_type,
            "running": self._running,
            "last_heartbeat": (
                self._last_heartbeat.isoformat() if self._last_heartbeat else None
            ),
        }
