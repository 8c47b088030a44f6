"""
EventBroadcaster — fire-and-forget fan-out of agent thoughts.

``publish`` never blocks and never raises: the thought is appended to a
replay buffer, pushed onto every live subscriber queue (WebSocket clients),
and queued for a single background pump that forwards it to Redis Streams.
One outbound queue keeps per-invoice stage order intact on the bus.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

from core.logger import get_logger
from core.message_bus import (
    MessageBus,
    STREAM_AGENT_EXECUTIONS,
    STREAM_AGENT_THOUGHTS,
)
from core.models import AgentThought, ThoughtType

_REPLAY_SIZE = 50
_QUEUE_SIZE = 1_000

# Console prefixes per thought type.
_PREFIX: dict[ThoughtType, str] = {
    ThoughtType.THINKING: "[think]",
    ThoughtType.ANALYSIS: "[analysis]",
    ThoughtType.DECISION: "[decision]",
    ThoughtType.EXECUTION: "[exec]",
    ThoughtType.ERROR: "[error]",
    ThoughtType.SKIP: "[skip]",
}


def envelope(thought: AgentThought) -> dict[str, Any]:
    """Wrap a thought in the message shape the dashboard expects."""
    if thought.type == ThoughtType.ERROR:
        kind = "error"
    elif thought.type == ThoughtType.EXECUTION and "success" in thought.data:
        kind = "execution"
    else:
        kind = "thought"
    return {"type": kind, "payload": thought.model_dump(mode="json")}


class EventBroadcaster:
    """Publishes :class:`AgentThought` events to the bus and local subscribers."""

    def __init__(
        self,
        bus: MessageBus | None = None,
        replay_size: int = _REPLAY_SIZE,
        queue_size: int = _QUEUE_SIZE,
    ) -> None:
        self.bus = bus
        self.log = get_logger("broadcaster")
        self._replay: deque[dict[str, Any]] = deque(maxlen=replay_size)
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()
        self._queue_size = queue_size
        self._outbound: asyncio.Queue[tuple[str, AgentThought]] | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._published = 0
        self._dropped = 0

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self._pump_task is not None:
            return
        self._outbound = asyncio.Queue(maxsize=self._queue_size)
        self._pump_task = asyncio.create_task(self._pump(), name="broadcaster:pump")

    async def stop(self) -> None:
        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        self._outbound = None

    # -- publishing ----------------------------------------------------------

    def publish(self, thought: AgentThought) -> None:
        """Emit *thought* to every sink without waiting on any of them."""
        self._published += 1
        self.log.info(
            "%s %s",
            _PREFIX.get(thought.type, ""),
            thought.message,
            extra={"token_id": thought.token_id},
        )

        message = envelope(thought)
        self._replay.append(message)
        for queue in list(self._subscribers):
            self._offer(queue, message)

        if self._outbound is not None and self.bus is not None:
            stream = (
                STREAM_AGENT_EXECUTIONS
                if message["type"] == "execution"
                else STREAM_AGENT_THOUGHTS
            )
            try:
                self._outbound.put_nowait((stream, thought))
            except asyncio.QueueFull:
                self._dropped += 1
                self.log.warning("Outbound queue full; dropping thought.")

    def thought(
        self,
        type: ThoughtType,
        message: str,
        token_id: str = "system",
        **data: Any,
    ) -> AgentThought:
        """Build and publish a thought in one call."""
        t = AgentThought(type=type, token_id=token_id, message=message, data=data)
        self.publish(t)
        return t

    def execution(self, token_id: str, success: bool, reference: str | None = None) -> None:
        if success:
            suffix = f" (tx: {reference[:10]}...)" if reference else ""
            message = f"Strategy change executed successfully{suffix}"
        else:
            message = "Strategy change execution failed"
        self.thought(
            ThoughtType.EXECUTION, message, token_id=token_id,
            success=success, tx_hash=reference,
        )

    def error(self, token_id: str, message: str, **data: Any) -> None:
        self.thought(ThoughtType.ERROR, message, token_id=token_id, **data)

    # -- subscribers ---------------------------------------------------------

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._subscribers.discard(queue)

    def replay(self) -> list[dict[str, Any]]:
        """Most recent messages, oldest first, for newly connected clients."""
        return list(self._replay)

    @property
    def client_count(self) -> int:
        return len(self._subscribers)

    def _offer(self, queue: asyncio.Queue[dict[str, Any]], message: dict[str, Any]) -> None:
        # Slow consumers lose their oldest message rather than stalling the agent.
        if queue.full():
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self._dropped += 1
        queue.put_nowait(message)

    # -- bus pump ------------------------------------------------------------

    async def _pump(self) -> None:
        assert self._outbound is not None
        while True:
            stream, thought = await self._outbound.get()
            try:
                await self.bus.publish_to(stream, thought)  # type: ignore[union-attr]
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.log.warning(
                    "Bus publish failed; thought dropped.", extra={"error": str(exc)},
                )

    # -- health --------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        return {
            "published": self._published,
            "dropped": self._dropped,
            "subscribers": len(self._subscribers),
            "pending": self._outbound.qsize() if self._outbound else 0,
        }
