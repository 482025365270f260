"""
Adaptive fetch control (backpressure)

When the store's write latency climbs past a threshold the writer fetches
smaller batches and waits between polls instead of failing. Consumer lag
grows, which is observable, and the pressure propagates back to the log.
"""
import time
from typing import Any, Dict

from ..utils.config import BackpressureConfig
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

POLL_DELAY_STEP_SECONDS = 0.05


class AdaptiveFetchController:
    """Per-partition fetch size and poll delay driven by an EWMA of write latency"""

    def __init__(self, max_fetch_size: int, config: BackpressureConfig):
        self.max_fetch_size = max_fetch_size
        self.min_fetch_size = max(1, min(config.min_fetch_size, max_fetch_size))
        self.threshold_ms = config.latency_threshold_ms
        self.max_poll_delay = config.max_poll_delay_ms / 1000.0
        self.alpha = config.ewma_alpha

        self.fetch_size = max_fetch_size
        self.poll_delay = 0.0
        self.latency_ewma_ms = 0.0
        self.rate_ewma = 0.0  # records per second
        self._last_observed = None

    @property
    def throttled(self) -> bool:
        return self.fetch_size < self.max_fetch_size or self.poll_delay > 0

    def observe(self, latency_ms: float, records: int) -> None:
        """Record one batch write and adjust fetch size / poll delay"""
        if self.latency_ewma_ms == 0.0:
            self.latency_ewma_ms = latency_ms
        else:
            self.latency_ewma_ms = self.alpha * latency_ms + (1 - self.alpha) * self.latency_ewma_ms

        now = time.monotonic()
        if self._last_observed is not None:
            elapsed = max(now - self._last_observed, 1e-6)
            rate = records / elapsed
            self.rate_ewma = self.alpha * rate + (1 - self.alpha) * self.rate_ewma
        self._last_observed = now

        if self.latency_ewma_ms > self.threshold_ms:
            was = self.fetch_size
            self.fetch_size = max(self.min_fetch_size, self.fetch_size // 2)
            self.poll_delay = min(self.max_poll_delay, max(POLL_DELAY_STEP_SECONDS, self.poll_delay * 2))
            if was != self.fetch_size:
                logger.warning(
                    f"[Backpressure] Write latency {self.latency_ewma_ms:.0f}ms over "
                    f"{self.threshold_ms:.0f}ms; fetch size {was} -> {self.fetch_size}"
                )
        elif self.throttled:
            step = max(1, self.max_fetch_size // 10)
            self.fetch_size = min(self.max_fetch_size, self.fetch_size + step)
            self.poll_delay = self.poll_delay / 2 if self.poll_delay > 0.001 else 0.0

    def status(self) -> Dict[str, Any]:
        return {
            "fetch_size": self.fetch_size,
            "poll_delay_ms": round(self.poll_delay * 1000, 1),
            "latency_ewma_ms": round(self.latency_ewma_ms, 2),
            "consumption_rate": round(self.rate_ewma, 2),
            "throttled": self.throttled,
        }
