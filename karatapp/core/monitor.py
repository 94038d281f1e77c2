"""Background collection of process-level metrics.

Samples the event-loop lag and the occupancy of the database connection
pool at a fixed interval.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .metrics import DB_POOL_STATS, EVENT_LOOP_LAG

if TYPE_CHECKING:
    from collections.abc import Callable

    from .container import Container

log = logging.getLogger("monitor")


class SystemMonitor:
    """Periodic metrics sampler.

    Attributes:
        container: used to reach the database engine.
        interval: sampling interval in seconds.
    """

    def __init__(self, container: Container, interval: float = 5.0):
        if interval <= 0:
            raise ValueError("interval must be greater than 0")

        self.container = container
        self.interval = interval
        self._pool_error_logged = False

    @staticmethod
    def _read_pool_metric(reader: Callable[[], Any]) -> float | None:
        value = reader()
        if isinstance(value, bool) or not isinstance(value, int | float):
            return None
        return float(max(0, value))

    def collect_db_pool_stats(self) -> None:
        engine = self.container.db_engine
        pool = getattr(engine, "pool", None) if engine is not None else None
        if pool is None:
            return

        readers: tuple[tuple[str, str], ...] = (
            ("capacity", "size"),
            ("available", "checkedin"),
            ("acquired", "checkedout"),
            ("overflow", "overflow"),
        )
        for state, method in readers:
            reader = getattr(pool, method, None)
            if reader is None:
                # StaticPool and NullPool do not track these.
                continue
            try:
                value = self._read_pool_metric(reader)
            except Exception as e:
                if not self._pool_error_logged:
                    log.warning("Failed to collect DB pool stats: %s", e)
                    self._pool_error_logged = True
                continue
            if value is not None:
                DB_POOL_STATS.labels(state=state).set(value)

    async def run(self) -> None:
        log.info("System monitor started.")
        loop = asyncio.get_running_loop()
        expected = loop.time() + self.interval

        try:
            while True:
                await asyncio.sleep(max(0.0, expected - loop.time()))
                now = loop.time()
                EVENT_LOOP_LAG.observe(max(0.0, now - expected))
                expected = now + self.interval
                self.collect_db_pool_stats()
        except asyncio.CancelledError:
            log.info("System monitor stopped.")
            raise
