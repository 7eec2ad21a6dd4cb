"""A shared ticker aligned to interval boundaries with many subscribers."""

from __future__ import annotations

import queue
import threading
import time


class TickerSubscription:
    """Receives tick times from a Ticker; holds at most one pending tick."""

    def __init__(self, ticker: Ticker, sub_id: int, ticks: queue.Queue[float]) -> None:
        self._ticker = ticker
        self._id = sub_id
        self._ticks = ticks

    def get(self, timeout: float | None = None) -> float:
        """Wait for the next tick and return its Unix time."""
        try:
            return self._ticks.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no tick received") from None

    def stop(self) -> None:
        self._ticker._unsubscribe(self._id)


class Ticker:
    """Ticks every ``interval`` seconds, starting at the next multiple of it."""

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("ticker interval must be positive")
        self._lock = threading.Lock()
        self._interval = interval
        self._subscribers: dict[int, queue.Queue[float]] = {}
        self._last_id = 0
        self._last_time = 0.0
        self._stop_event = threading.Event()
        self._launch()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def last_time(self) -> float:
        """Unix time of the latest tick, 0.0 before the first one."""
        with self._lock:
            return self._last_time

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> TickerSubscription:
        ticks: queue.Queue[float] = queue.Queue(maxsize=1)
        with self._lock:
            self._last_id += 1
            sub_id = self._last_id
            self._subscribers[sub_id] = ticks
        return TickerSubscription(self, sub_id, ticks)

    def reset(self, interval: float) -> None:
        """Restart ticking with a new interval; no-op if it is unchanged."""
        if interval <= 0:
            raise ValueError("ticker interval must be positive")
        if interval == self._interval:
            return
        self.stop()
        self._interval = interval
        self._launch()

    def stop(self) -> None:
        self._stop_event.set()

    def __enter__(self) -> Ticker:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _unsubscribe(self, sub_id: int) -> None:
        with self._lock:
            self._subscribers.pop(sub_id, None)

    def _launch(self) -> None:
        stop_event = threading.Event()
        self._stop_event = stop_event
        thread = threading.Thread(
            target=self._run, args=(stop_event, self._interval), name="ticker", daemon=True
        )
        thread.start()

    def _run(self, stop_event: threading.Event, interval: float) -> None:
        interval_ns = max(1, int(interval * 1e9))
        first_delay = (interval_ns - time.time_ns() % interval_ns) / 1e9
        if stop_event.wait(first_delay):
            return
        self._notify(time.time())
        next_tick = time.monotonic() + interval
        while not stop_event.wait(max(0.0, next_tick - time.monotonic())):
            self._notify(time.time())
            next_tick += interval
            now = time.monotonic()
            while next_tick <= now:
                # Drop ticks that were missed, as a slow receiver would.
                next_tick += interval

    def _notify(self, now: float) -> None:
        with self._lock:
            self._last_time = now
            for ticks in self._subscribers.values():
                try:
                    ticks.put_nowait(now)
                except queue.Full:
                    pass