"""Starts and stops profile scraping as the topology and settings change."""

from __future__ import annotations

import logging
import queue
import ssl
import threading
from collections.abc import Callable
from typing import Any

from .meta import ContinueProfilingConfig, ProfileStatus, StatusCounter
from .scrape import PprofProfilingConfig, ProfileScraper, ScrapeSuite, Target
from .store import ProfileStorage
from .ticker import Ticker
from .topology import (
    COMPONENT_PD,
    COMPONENT_TICDC,
    COMPONENT_TIDB,
    COMPONENT_TIFLASH,
    Component,
)

log = logging.getLogger(__name__)

UPDATE_TARGET_META_INTERVAL = 60.0
_POLL_INTERVAL = 0.005

Getter = Callable[[], Any]


def go_app_profiling_config(settings: ContinueProfilingConfig) -> dict[str, PprofProfilingConfig]:
    """Profiles fetched from components written in Go."""
    return {
        "heap": PprofProfilingConfig(path="/debug/pprof/heap"),
        # debug=2 stops the world while collecting the stacks.
        "goroutine": PprofProfilingConfig(path="/debug/pprof/goroutine", params={"debug": "1"}),
        "mutex": PprofProfilingConfig(path="/debug/pprof/mutex"),
        "profile": PprofProfilingConfig(
            path="/debug/pprof/profile", seconds=settings.profile_seconds
        ),
    }


def non_go_app_profiling_config(
    settings: ContinueProfilingConfig,
) -> dict[str, PprofProfilingConfig]:
    """Profiles fetched from components not written in Go."""
    return {
        "profile": PprofProfilingConfig(
            path="/debug/pprof/profile",
            seconds=settings.profile_seconds,
            header={"Content-Type": "application/protobuf"},
        ),
    }


class ScrapeManager:
    """Keeps a scrape suite per profile kind of every known component.

    ``topology_updates`` and ``config_updates`` carry getters returning the
    latest component list and settings. ``config_source`` returns the current
    settings and is also read by the scrape suites. After an update has been
    applied the queue's ``task_done`` is called.
    """

    def __init__(
        self,
        store: ProfileStorage,
        topology_updates: queue.Queue[Getter] | None,
        config_source: Callable[[], ContinueProfilingConfig],
        config_updates: queue.Queue[Getter] | None = None,
        *,
        scheme: str = "http",
        ssl_context: ssl.SSLContext | None = None,
        update_meta_interval: float = UPDATE_TARGET_META_INTERVAL,
    ) -> None:
        self._store = store
        self._topology_updates = topology_updates
        self._config_updates = config_updates
        self._config_source = config_source
        self._config = config_source()
        self._scheme = scheme
        self._ssl_context = ssl_context
        self._update_meta_interval = update_meta_interval
        self._latest: dict[Component, None] = {}
        self._lock = threading.Lock()
        self._running: dict[Component, list[ScrapeSuite]] = {}
        self._ticker = Ticker(self._config.interval_seconds)
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._suite_threads: list[threading.Thread] = []

    def start(self) -> None:
        for target, name in ((self._run, "scrape-manager"), (self._update_meta_loop, "target-meta")):
            thread = threading.Thread(target=target, name=name, daemon=True)
            self._threads.append(thread)
            thread.start()
        log.info("continuous profiling manager started")

    def __enter__(self) -> ScrapeManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def current_scrape_components(self) -> list[Component]:
        with self._lock:
            components = list(self._running)
        return sorted(components, key=lambda c: (c.name, c.ip, c.port))

    def all_scrape_suites(self) -> list[ScrapeSuite]:
        with self._lock:
            return [suite for suites in self._running.values() for suite in suites]

    def update_target_meta(self) -> int:
        """Store the last scrape time of every suite; return how many changed."""
        count = 0
        for suite in self.all_scrape_suites():
            ts = int(suite.last_scrape)
            if ts <= 0:
                continue
            target = suite.target
            try:
                if self._store.update_profile_target_info(target, ts):
                    count += 1
            except Exception as exc:
                log.error("update profile target info failed: %s: %s", target, exc)
        log.debug("update profile target info finished: update-count=%d", count)
        return count

    def last_scrape_time(self) -> float:
        return self._ticker.last_time

    def running_status(self) -> ProfileStatus:
        counter = StatusCounter()
        for suite in self.all_scrape_suites():
            counter.add_status(suite.last_scrape_status)
        return counter.final_status()

    def close(self) -> None:
        self._stop.set()
        self._ticker.stop()
        for thread in self._threads:
            thread.join()
        for suite in self.all_scrape_suites():
            suite.stop()
        for thread in list(self._suite_threads):
            thread.join()
        self._store.close()

    def _update_meta_loop(self) -> None:
        while not self._stop.wait(self._update_meta_interval):
            self.update_target_meta()

    def _set_config(self, config: ContinueProfilingConfig) -> None:
        self._config = config

    def _set_topology(self, components: list[Component]) -> None:
        self._latest = dict.fromkeys(components)

    def _poll(self) -> tuple[queue.Queue[Getter], Getter, Callable[[Any], None]] | None:
        sources = (
            (self._config_updates, self._set_config),
            (self._topology_updates, self._set_topology),
        )
        for updates, handle in sources:
            if updates is None:
                continue
            try:
                return updates, updates.get_nowait(), handle
            except queue.Empty:
                continue
        return None

    def _run(self) -> None:
        old = self._config
        while not self._stop.is_set():
            item = self._poll()
            if item is None:
                self._stop.wait(_POLL_INTERVAL)
                continue
            updates, getter, handle = item
            try:
                handle(getter())
                self._reload(old, self._config)
            except Exception:
                log.exception("reload continuous profiling failed")
            finally:
                old = self._config
                updates.task_done()

    def _reload(self, old: ContinueProfilingConfig, new: ContinueProfilingConfig) -> None:
        if old.interval_seconds != new.interval_seconds:
            self._ticker.reset(new.interval_seconds)

        need_reload = old.enable != new.enable or old.profile_seconds != new.profile_seconds
        for component in self._components_to_stop(need_reload):
            self._stop_scrape(component)

        if not new.enable:
            return

        for component in self._components_to_start(need_reload):
            try:
                self._start_scrape(component, new)
            except Exception as exc:
                log.error(
                    "start scrape failed: component=%s address=%s:%s: %s",
                    component.name,
                    component.ip,
                    component.status_port,
                    exc,
                )

    def _components_to_stop(self, need_reload: bool) -> list[Component]:
        with self._lock:
            return [c for c in self._running if need_reload or c not in self._latest]

    def _components_to_start(self, need_reload: bool) -> list[Component]:
        with self._lock:
            return [c for c in self._latest if need_reload or c not in self._running]

    def _profiling_config(self, component: Component) -> dict[str, PprofProfilingConfig]:
        if component.name in (COMPONENT_TIDB, COMPONENT_PD, COMPONENT_TICDC):
            return go_app_profiling_config(self._config)
        return non_go_app_profiling_config(self._config)

    def _start_scrape(self, component: Component, settings: ContinueProfilingConfig) -> None:
        if not settings.enable:
            return
        # TiFlash profiles are not usable yet.
        if component.name == COMPONENT_TIFLASH:
            return
        address = f"{component.ip}:{component.port}"
        scrape_address = f"{component.ip}:{component.status_port}"
        self._suite_threads = [t for t in self._suite_threads if t.is_alive()]
        for kind, config in self._profiling_config(component).items():
            target = Target(component.name, address, scrape_address, kind, self._scheme, config)
            suite = ScrapeSuite(
                ProfileScraper(target, self._ssl_context), self._store, self._config_source
            )
            subscription = self._ticker.subscribe()
            thread = threading.Thread(
                target=self._run_suite, args=(suite, subscription), name="scrape-suite", daemon=True
            )
            self._suite_threads.append(thread)
            thread.start()
            with self._lock:
                self._running.setdefault(component, []).append(suite)
        log.info("start component scrape: component=%s address=%s", component.name, address)

    @staticmethod
    def _run_suite(suite: ScrapeSuite, subscription: Any) -> None:
        try:
            suite.run(subscription)
        except Exception:
            log.exception("scrape suite failed")

    def _stop_scrape(self, component: Component) -> None:
        log.info(
            "stop component scrape: component=%s address=%s:%s",
            component.name,
            component.ip,
            component.status_port,
        )
        with self._lock:
            suites = self._running.pop(component, [])
        for suite in suites:
            suite.stop()