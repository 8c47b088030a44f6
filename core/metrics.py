"""
Prometheus metrics for the decision engine.

Collectors live on the default registry and are exposed by ``GET /metrics``.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

cycles_total = Counter(
    "faktory_cycles_total", "Analysis cycles by outcome", ["outcome"],
)
analyses_total = Counter(
    "faktory_analyses_total", "Per-invoice analyses by outcome", ["outcome"],
)
executions_total = Counter(
    "faktory_executions_total", "Strategy change executions by outcome", ["outcome"],
)
narrative_total = Counter(
    "faktory_narrative_total", "Decision explanations by source", ["source"],
)
circuit_open = Gauge(
    "faktory_circuit_open", "1 while the cycle circuit breaker is open",
)
market_price_change = Gauge(
    "faktory_market_price_change_pct", "ETH price change over the retained window",
)
ws_clients = Gauge(
    "faktory_ws_clients", "Connected WebSocket clients",
)


def render() -> tuple[str, str]:
    """Current exposition text and its content type."""
    return generate_latest().decode("utf-8"), CONTENT_TYPE_LATEST
