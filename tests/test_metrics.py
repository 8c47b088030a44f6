"""Tests for the Prometheus collectors updated by the engine."""

from prometheus_client import REGISTRY

from tests.conftest import FakeClock, FakeLedger, build_orchestrator, make_deposit, make_invoice


def _value(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestCycleMetrics:
    async def test_completed_cycle_counted(self):
        before = _value("faktory_cycles_total", outcome="completed")
        await build_orchestrator().run_cycle()
        assert _value("faktory_cycles_total", outcome="completed") == before + 1
        assert _value("faktory_circuit_open") == 0

    async def test_failed_cycles_open_gauge(self):
        ledger = FakeLedger()
        ledger.invoice_ids_error = ledger.deposit_ids_error = "rpc down"
        orch = build_orchestrator(ledger)
        before = _value("faktory_cycles_total", outcome="failed")
        for _ in range(3):
            await orch.run_cycle()
        assert _value("faktory_cycles_total", outcome="failed") == before + 3
        assert _value("faktory_circuit_open") == 1

    async def test_gauge_clears_after_auto_reset(self):
        clock = FakeClock()
        ledger = FakeLedger()
        ledger.invoice_ids_error = ledger.deposit_ids_error = "rpc down"
        orch = build_orchestrator(ledger, clock=clock)
        for _ in range(3):
            await orch.run_cycle()
        assert _value("faktory_circuit_open") == 1

        clock.advance(60)
        orch.health()
        assert _value("faktory_circuit_open") == 0

    async def test_execution_and_narrative_counted(self):
        ledger = FakeLedger([make_invoice("5")], [make_deposit("5")])
        executed = _value("faktory_executions_total", outcome="success")
        templates = _value("faktory_narrative_total", source="template")
        await build_orchestrator(ledger).analyze("5")
        assert _value("faktory_executions_total", outcome="success") == executed + 1
        assert _value("faktory_narrative_total", source="template") == templates + 1
