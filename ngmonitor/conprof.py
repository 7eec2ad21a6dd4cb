"""Continuous profiling: profile storage together with the scrape manager."""

from __future__ import annotations

import os
import queue
import ssl
from collections.abc import Callable
from typing import Any

from .meta import ContinueProfilingConfig
from .scrape_manager import ScrapeManager
from .store import GC_INTERVAL, ProfileStorage

Getter = Callable[[], Any]


class ContinuousProfiling:
    """Opens the profile storage and starts scraping into it."""

    def __init__(
        self,
        database: str | os.PathLike[str],
        topology_updates: queue.Queue[Getter] | None,
        config_source: Callable[[], ContinueProfilingConfig],
        config_updates: queue.Queue[Getter] | None = None,
        *,
        scheme: str = "http",
        ssl_context: ssl.SSLContext | None = None,
        gc_interval: float | None = GC_INTERVAL,
    ) -> None:
        settings = config_source()
        self.storage = ProfileStorage(
            database,
            retention_seconds=settings.data_retention_seconds,
            gc_interval=gc_interval,
        )
        try:
            self.manager = ScrapeManager(
                self.storage,
                topology_updates,
                config_source,
                config_updates,
                scheme=scheme,
                ssl_context=ssl_context,
            )
        except Exception:
            self.storage.close()
            raise
        self.manager.start()

    def stop(self) -> None:
        """Stop scraping and close the storage."""
        self.manager.close()

    def __enter__(self) -> ContinuousProfiling:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()