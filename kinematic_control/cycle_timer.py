"""
Control cycle timing using Welford's online algorithm.

Measures how long each control cycle spends computing its command and how
much of the control period is left over. O(1) space, thread-safe, and a
single boolean check per call when disabled.

Usage:
    timer = CycleTimer(period_s=0.01, enabled=True)

    with timer:
        qdot = controller.move_at_speed(twist)

    stats = timer.get_stats()
"""

import threading
import time
from typing import Any, Dict, Optional

__all__ = ['CycleTimer']


class CycleTimer:
    """Per-cycle compute time, headroom and deadline overruns."""

    __slots__ = (
        '_enabled', '_lock', '_period',
        '_n', '_mean', '_m2', '_min', '_max',
        '_overruns', '_start',
    )

    def __init__(self, period_s: float, enabled: bool = False):
        """
        Args:
            period_s: Control period the cycle has to fit in (seconds)
            enabled: When False, start()/stop() return immediately
        """
        if period_s <= 0:
            raise ValueError(f"period_s must be positive, got {period_s}")
        self._enabled = bool(enabled)
        self._period = float(period_s)
        self._lock = threading.Lock()
        self._reset_internal()

    def _reset_internal(self) -> None:
        self._n = 0
        self._mean = 0.0
        self._m2 = 0.0
        self._min = float('inf')
        self._max = 0.0
        self._overruns = 0
        self._start: Optional[float] = None

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = bool(enabled)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def period(self) -> float:
        return self._period

    def reset(self) -> None:
        with self._lock:
            self._reset_internal()

    def start(self) -> None:
        if not self._enabled:
            return
        self._start = time.perf_counter()

    def stop(self) -> None:
        if not self._enabled or self._start is None:
            return
        self.record(time.perf_counter() - self._start)
        self._start = None

    def record(self, compute_s: float) -> None:
        """Add one cycle's compute time (seconds)."""
        if not self._enabled:
            return
        with self._lock:
            self._n += 1
            delta = compute_s - self._mean
            self._mean += delta / self._n
            self._m2 += delta * (compute_s - self._mean)
            if compute_s < self._min:
                self._min = compute_s
            if compute_s > self._max:
                self._max = compute_s
            if compute_s > self._period:
                self._overruns += 1

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    def get_stats(self) -> Dict[str, Any]:
        """Timing statistics in milliseconds; empty dict when disabled."""
        if not self._enabled:
            return {}

        with self._lock:
            std = (self._m2 / (self._n - 1)) ** 0.5 if self._n > 1 else 0.0
            min_s = 0.0 if self._n == 0 else self._min
            overrun_pct = 100.0 * self._overruns / self._n if self._n else 0.0
            return {
                'period_ms': self._period * 1000.0,
                'compute_avg_ms': self._mean * 1000.0,
                'compute_std_ms': std * 1000.0,
                'compute_min_ms': min_s * 1000.0,
                'compute_max_ms': self._max * 1000.0,
                'headroom_min_ms': (self._period - self._max) * 1000.0,
                'overrun_count': int(self._overruns),
                'overrun_pct': float(overrun_pct),
                'samples': int(self._n),
            }
