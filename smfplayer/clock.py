from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Optional, Deque, List


TickHandler = Callable[[], None]

DEFAULT_INTERVAL_MS = 5.0


class InternalClock:
    """Fixed-interval timer calling `tick_handler` on its own thread.

    Handler calls are strictly sequential. When a call overruns one or more
    slots the missed slots are dropped (counted), never replayed in a burst.
    """

    def __init__(self, tick_handler: TickHandler, interval_ms: float = DEFAULT_INTERVAL_MS):
        self.tick_handler = tick_handler
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._jitter_ms: Deque[float] = deque(maxlen=512)
        self._lock = threading.Lock()
        self._interval = float(interval_ms) / 1000.0
        self._dropped = 0

    @property
    def running(self) -> bool:
        return bool(self._t and self._t.is_alive() and not self._stop.is_set())

    def start(self):
        if self._t and self._t.is_alive():
            return
        self._stop.clear()
        self._t = threading.Thread(target=self._run, name="smfplayer-clock", daemon=True)
        self._t.start()

    def stop(self):
        self._stop.set()
        # Stop may be requested by the handler itself (e.g. end of file)
        if self._t and self._t is not threading.current_thread():
            self._t.join(timeout=1.0)

    def _run(self):
        next_call = time.monotonic()
        while not self._stop.is_set():
            now = time.monotonic()
            if now >= next_call:
                jitter_ms = max(0.0, (now - next_call) * 1000.0)
                with self._lock:
                    self._jitter_ms.append(jitter_ms)
                    interval = self._interval
                next_call += interval
                if now - next_call >= interval:
                    # Fell behind by whole slots: skip them
                    missed = int((now - next_call) // interval)
                    with self._lock:
                        self._dropped += missed
                    next_call += missed * interval
                self.tick_handler()
            else:
                time.sleep(min(0.002, max(0.0, next_call - now)))

    def _percentile(self, values: List[float], pct: float) -> float:
        if not values:
            return 0.0
        xs = sorted(values)
        k = (len(xs) - 1) * pct
        f = int(k)
        c = min(f + 1, len(xs) - 1)
        if f == c:
            return xs[f]
        d0 = xs[f] * (c - k)
        d1 = xs[c] * (k - f)
        return d0 + d1

    def get_metrics(self) -> dict:
        with self._lock:
            samples = list(self._jitter_ms)
            dropped = self._dropped
        return {
            "jitterMsP95": round(self._percentile(samples, 0.95), 3),
            "jitterMsP99": round(self._percentile(samples, 0.99), 3),
            "droppedSlots": dropped,
        }
