"""
Faktory agent — main entry-point.

Connects to Redis, wires the decision engine (ledger, market monitor, regime
classifier, execution pipeline, narrative explainer, orchestrator), starts
the control API and runs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal

from agents.execution.ledger import LedgerClient
from agents.execution.pipeline import DecisionExecutionPipeline
from agents.market.monitor import MarketMonitor
from agents.market.prices import (
    HttpPriceSource,
    LedgerPriceSource,
    PriceSource,
    StaticPriceSource,
)
from agents.market.regime import RegimeClassifier
from agents.meta.orchestrator import CycleOrchestrator
from agents.narrative.explainer import NarrativeExplainer
from config.settings import Settings, settings
from core.broadcaster import EventBroadcaster
from core.logger import get_logger
from core.message_bus import MessageBus
from core.models import AgentConfig
from core.resilience import CircuitBreaker, RateLimiter, RetryPolicy

log = get_logger(name="faktory.main")


async def _connect_bus(bus: MessageBus) -> MessageBus | None:
    """Connect to Redis. The agent keeps running without the event stream."""
    log.info("Connecting to Redis …")
    try:
        await bus.connect()
    except Exception as exc:
        log.warning("Redis unavailable; thoughts will not be streamed: %s", exc)
        return None
    log.info("Infrastructure ready.")
    return bus


def check_environment(cfg: Settings) -> None:
    """Log configuration warnings; exit non-zero on any configuration error."""
    errors, warnings = cfg.validate_environment()
    for warning in warnings:
        log.warning("Environment: %s", warning)
    if errors:
        for error in errors:
            log.error("Environment: %s", error)
        log.error("Environment validation failed; configure the variables above.")
        raise SystemExit(1)


def _create_price_source(cfg: Settings, ledger: LedgerClient) -> PriceSource:
    if cfg.price_source == "http":
        return HttpPriceSource(
            cfg.coingecko_base_url, api_key=cfg.coingecko_api_key.get_secret_value(),
        )
    if cfg.price_source == "ledger":
        return LedgerPriceSource(
            ledger, {"ETH": cfg.eth_price_feed_id, "MNT": cfg.mnt_price_feed_id},
        )
    log.info("No price source configured - market monitor runs in simulated mode.")
    return StaticPriceSource()


def create_orchestrator(cfg: Settings, bus: MessageBus | None) -> CycleOrchestrator:
    """Wire every component of the decision engine from *cfg*."""
    ledger = LedgerClient.from_settings(cfg)
    broadcaster = EventBroadcaster(bus=bus)
    monitor = MarketMonitor(
        _create_price_source(cfg, ledger),
        retention_secs=cfg.market_retention_hours * 3600,
    )
    pipeline = DecisionExecutionPipeline(
        ledger=ledger,
        broadcaster=broadcaster,
        rate_limiter=RateLimiter(cooldown=cfg.analysis_cooldown_secs),
        breaker=CircuitBreaker(
            threshold=cfg.circuit_breaker_threshold,
            reset_timeout=cfg.circuit_breaker_reset_secs,
        ),
        retry_policy=RetryPolicy(
            max_attempts=cfg.retry_max_attempts,
            base_delay=cfg.retry_base_delay,
            max_delay=cfg.retry_max_delay,
        ),
    )
    config = AgentConfig(
        min_confidence=cfg.min_confidence,
        analysis_interval_ms=cfg.analysis_interval_ms,
        max_concurrent_analyses=cfg.max_concurrent_analyses,
        auto_execute=cfg.effective_auto_execute,
    )
    return CycleOrchestrator(
        ledger=ledger,
        monitor=monitor,
        regime=RegimeClassifier.from_settings(cfg),
        pipeline=pipeline,
        broadcaster=broadcaster,
        explainer=NarrativeExplainer.from_settings(cfg),
        config=config,
        bus=bus,
        crash_pct=cfg.market_crash_pct,
        rally_pct=cfg.market_rally_pct,
        bull_upgrade_confidence=cfg.bull_upgrade_confidence,
        authorization_check=ledger.is_agent_authorized if ledger.can_sign else None,
    )


async def run() -> None:
    """Main async entry-point."""
    check_environment(settings)
    raw_bus = MessageBus(settings.redis_url)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _handle_signal() -> None:
        log.info("Shutdown signal received.")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler for all signals.
            pass

    orchestrator: CycleOrchestrator | None = None
    api_task: asyncio.Task | None = None
    bus: MessageBus | None = None
    try:
        bus = await _connect_bus(raw_bus)
        orchestrator = create_orchestrator(settings, bus)
        await orchestrator.start()

        if settings.api_enabled:
            from api.server import start_server
            api_task = asyncio.create_task(start_server(orchestrator), name="api")

        log.info(
            "Faktory agent is live  |  auto_execute=%s  |  interval=%ds  |  min_confidence=%d",
            orchestrator.config.auto_execute,
            orchestrator.config.analysis_interval_ms // 1000,
            orchestrator.config.min_confidence,
        )

        # Block until a termination signal arrives.
        await shutdown_event.wait()

    except Exception:
        log.exception("Fatal error during startup.")

    finally:
        log.info("Shutting down …")
        if api_task:
            api_task.cancel()
            try:
                await api_task
            except asyncio.CancelledError:
                pass
        if orchestrator is not None:
            await orchestrator.stop()
            await orchestrator.monitor.aclose()
        if bus is not None:
            await bus.close()
        log.info("Faktory agent stopped.")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
