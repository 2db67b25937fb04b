import asyncio
import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from .models import HealthStatus

logger = logging.getLogger(__name__)

PROBE_INTERVAL = 30.0
PROBE_TIMEOUT = 10.0
SLOW_LATENCY_MS = 2000.0
LATENCY_SPAN_MS = 4000.0
MIN_MULTIPLIER = 0.5
RECOVERY_STEP = 0.1
EMA_KEEP = 0.7


class HealthMonitor:
    """Process-wide health of the completion service.

    All reads and writes of the status go through one lock, so concurrent
    probes (from any thread or event loop) never lose an average or
    multiplier update. The lock is never held across the network call.
    """

    def __init__(self, interval: float = PROBE_INTERVAL, clock: Callable[[], float] = time.monotonic,
                 timeout: float = PROBE_TIMEOUT):
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._status = HealthStatus()
        self._last_probe: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def status(self) -> HealthStatus:
        with self._lock:
            return replace(self._status)

    @property
    def multiplier(self) -> float:
        with self._lock:
            return self._status.multiplier

    def due(self) -> bool:
        with self._lock:
            return self._last_probe is None or self._clock() - self._last_probe >= self.interval

    async def probe(self, ping: Callable[[], Awaitable[None]]) -> HealthStatus:
        """Run ``ping`` unless a probe already ran within the interval."""
        with self._lock:
            now = self._clock()
            if self._last_probe is not None and now - self._last_probe < self.interval:
                return replace(self._status)
            self._last_probe = now
        started = self._clock()
        try:
            await asyncio.wait_for(ping(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Health probe timed out after %.1fs", self.timeout)
            return self.record_failure()
        except Exception as e:  # any probe failure counts against health
            logger.warning("Health probe failed: %s", e)
            return self.record_failure()
        return self.record_success((self._clock() - started) * 1000.0)

    def record_success(self, latency_ms: float) -> HealthStatus:
        with self._lock:
            s = self._status
            s.avg_latency_ms = EMA_KEEP * s.avg_latency_ms + (1 - EMA_KEEP) * latency_ms
            # The multiplier follows the latest sample; the average is for reporting.
            if latency_ms > SLOW_LATENCY_MS:
                s.multiplier = max(MIN_MULTIPLIER, 1.0 - (latency_ms - SLOW_LATENCY_MS) / LATENCY_SPAN_MS)
            else:
                s.multiplier = min(1.0, s.multiplier + RECOVERY_STEP)
            s.healthy = True
            s.consecutive_failures = 0
            s.last_checked = datetime.now(timezone.utc)
            logger.debug("Health probe ok: latency=%.0fms avg=%.0fms multiplier=%.2f",
                         latency_ms, s.avg_latency_ms, s.multiplier)
            return replace(s)

    def record_failure(self) -> HealthStatus:
        with self._lock:
            s = self._status
            s.healthy = False
            s.consecutive_failures += 1
            s.last_checked = datetime.now(timezone.utc)
            return replace(s)


_monitor: Optional[HealthMonitor] = None


def get_monitor() -> HealthMonitor:
    global _monitor
    if _monitor is None:
        _monitor = HealthMonitor()
    return _monitor
