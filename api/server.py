"""
Faktory control API — FastAPI app exposing status, manual analysis, runtime
configuration, demo scenarios and the live thought stream.

NOT a BaseAgent — runs inside the agent process next to the orchestrator.

  GET   /health              liveness + component health
  GET   /status              config, breaker, regime, market, clients
  POST  /analyze/{token_id}  analyse one invoice now
  PATCH /config              minConfidence / analysisIntervalMs /
                             maxConcurrentAnalyses / autoExecute
  POST  /demo/{scenario}     marketCrash | marketRally | reset
  GET   /metrics             Prometheus exposition
  WS    /ws                  replay buffer, then live thoughts

Start via: ``asyncio.create_task(start_server(orchestrator))``
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse

from config.settings import settings
from core import metrics
from core.errors import AgentError, ValidationError

logger = logging.getLogger("faktory.api")


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def create_app(orchestrator: Any) -> FastAPI:
    """Create the FastAPI application bound to *orchestrator*."""
    background: set[asyncio.Task[Any]] = set()

    def _spawn(coro: Any, label: str) -> None:
        task = asyncio.create_task(coro, name=f"api:{label}")
        background.add(task)
        task.add_done_callback(background.discard)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        for t in list(background):
            t.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)

    app = FastAPI(
        title="Faktory Agent",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        bus = orchestrator.bus
        return {
            "status": "ok" if orchestrator.running else "stopped",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "redis": await bus.health_check() if bus is not None else None,
            "agent": orchestrator.health(),
        }

    @app.get("/status")
    async def status():
        return orchestrator.status()

    @app.post("/analyze/{token_id}")
    async def analyze(token_id: str, force: bool = False):
        try:
            result = await orchestrator.analyze(token_id, force=force)
        except ValidationError as exc:
            return _error(str(exc), 400)
        if result is None:
            return {"token_id": token_id, "analysis": None, "skipped": True}
        return {
            "token_id": token_id,
            "analysis": result.model_dump(mode="json"),
            "skipped": False,
        }

    @app.patch("/config")
    async def update_config(options: dict[str, Any] = Body(...)):
        try:
            config = orchestrator.update_config(**options)
        except ValidationError as exc:
            return _error(str(exc), 400)
        return config.model_dump(by_alias=True)

    @app.post("/demo/{scenario}")
    async def demo(scenario: str):
        try:
            conditions = await orchestrator.trigger_demo(scenario)
        except ValidationError as exc:
            return _error(str(exc), 400)
        return {"scenario": scenario, "market": conditions.model_dump(mode="json")}

    @app.get("/metrics")
    async def prometheus_metrics():
        body, content_type = metrics.render()
        return PlainTextResponse(body, media_type=content_type)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        broadcaster = orchestrator.broadcaster
        await websocket.send_json({"type": "status", "payload": {"status": "connected"}})
        # Subscribe and snapshot the replay with no await in between.
        queue = broadcaster.subscribe()
        metrics.ws_clients.set(broadcaster.client_count)
        for message in broadcaster.replay():
            await websocket.send_text(json.dumps(message, default=str))

        async def _sender() -> None:
            while True:
                message = await queue.get()
                await websocket.send_text(json.dumps(message, default=str))

        sender = asyncio.create_task(_sender(), name="ws:sender")
        try:
            while True:
                raw = await websocket.receive_text()
                reply = _handle_client_message(raw)
                if reply is not None:
                    await websocket.send_json(reply)
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            try:
                await sender
            except (asyncio.CancelledError, Exception):
                pass
            broadcaster.unsubscribe(queue)
            metrics.ws_clients.set(broadcaster.client_count)

    def _handle_client_message(raw: str) -> dict[str, Any] | None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            return {"type": "error", "payload": {"message": "invalid JSON"}}
        if not isinstance(message, dict):
            return {"type": "error", "payload": {"message": "expected an object"}}

        kind = message.get("type")
        if kind == "requestAnalysis":
            token_id = message.get("tokenId")
            _spawn(_guarded(orchestrator.analyze(str(token_id or ""))), f"analyze:{token_id}")
            return None
        if kind == "triggerDemo":
            scenario = str(message.get("scenario") or "")
            _spawn(_guarded(orchestrator.trigger_demo(scenario)), f"demo:{scenario}")
            return None
        if kind == "ping":
            return {"type": "pong", "payload": {}}
        return {"type": "error", "payload": {"message": f"unknown message type: {kind!r}"}}

    async def _guarded(coro: Any) -> None:
        try:
            await coro
        except AgentError as exc:
            orchestrator.broadcaster.error("system", f"Request rejected: {exc}")
        except Exception:
            logger.exception("WebSocket-triggered request failed.")

    return app


# ---------------------------------------------------------------------------
# Entry-point for in-process startup
# ---------------------------------------------------------------------------

async def start_server(orchestrator: Any) -> None:
    """Serve the control API as an async task within the agent process."""
    import uvicorn

    app = create_app(orchestrator)
    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    logger.info("Control API starting on http://%s:%d", settings.api_host, settings.api_port)
    await server.serve()
