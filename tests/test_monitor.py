"""SystemMonitor sampling."""

import asyncio
import logging
from types import SimpleNamespace
from typing import Any, cast

import pytest

from karatapp.core import monitor as monitor_module
from karatapp.core.monitor import SystemMonitor


class FakePool:
    """QueuePool counters: 5 slots, 2 in use, none beyond the limit."""

    def size(self):
        return 5

    def checkedin(self):
        return 3

    def checkedout(self):
        return 2

    def overflow(self):
        return -3


class RecordingGauge:
    def __init__(self):
        self.values: dict[str, float] = {}

    def labels(self, *, state: str):
        return SimpleNamespace(set=lambda value: self.values.__setitem__(state, value))


def _monitor(pool: Any = None, interval: float = 1.0) -> SystemMonitor:
    engine = SimpleNamespace(pool=pool) if pool is not None else None
    return SystemMonitor(container=cast("Any", SimpleNamespace(db_engine=engine)), interval=interval)


@pytest.fixture
def gauge(monkeypatch) -> RecordingGauge:
    recorder = RecordingGauge()
    monkeypatch.setattr(monitor_module, "DB_POOL_STATS", recorder)
    return recorder


def test_interval_must_be_positive():
    with pytest.raises(ValueError, match="interval"):
        _monitor(interval=0)


def test_pool_counters_are_exported(gauge):
    _monitor(FakePool()).collect_db_pool_stats()

    # negative overflow (unused headroom) is clamped to zero
    assert gauge.values == {"capacity": 5.0, "available": 3.0, "acquired": 2.0, "overflow": 0.0}


def test_pools_without_counters_are_ignored(gauge):
    _monitor(object()).collect_db_pool_stats()
    _monitor().collect_db_pool_stats()

    assert gauge.values == {}


def test_reader_failure_is_logged_once(gauge, caplog):
    class FlakyPool(FakePool):
        def checkedout(self):
            raise RuntimeError("pool closed")

    monitor = _monitor(FlakyPool())
    with caplog.at_level(logging.WARNING, logger="monitor"):
        for _ in range(3):
            monitor.collect_db_pool_stats()

    assert sum("Failed to collect DB pool stats" in r.getMessage() for r in caplog.records) == 1
    assert "acquired" not in gauge.values
    assert gauge.values["capacity"] == 5.0


@pytest.mark.asyncio
async def test_run_observes_loop_lag_until_cancelled(monkeypatch):
    observed: list[float] = []
    monkeypatch.setattr(monitor_module, "EVENT_LOOP_LAG", SimpleNamespace(observe=observed.append))

    task = asyncio.create_task(_monitor(interval=0.01).run())
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert observed
    assert all(lag >= 0 for lag in observed)
