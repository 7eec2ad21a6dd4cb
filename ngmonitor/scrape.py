"""Fetching pprof profiles from one target and storing them on every tick."""

from __future__ import annotations

import logging
import ssl
import threading
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from .meta import ContinueProfilingConfig, ProfileStatus, ProfileTarget
from .store import ProfileStorage

log = logging.getLogger(__name__)

_TICK_POLL_INTERVAL = 0.05

SettingsSource = Callable[[], ContinueProfilingConfig]


class TickSource(Protocol):
    """Anything handing out tick times, such as a ticker subscription."""

    def get(self, timeout: float | None = None) -> float: ...

    def stop(self) -> None: ...


class ScrapeError(RuntimeError):
    """Raised when a target answers a scrape with an unexpected HTTP status."""


@dataclass
class PprofProfilingConfig:
    """How to fetch one kind of pprof profile from a component."""

    path: str = ""
    seconds: int = 0
    params: dict[str, str] = field(default_factory=dict)
    header: dict[str, str] = field(default_factory=dict)


class Target:
    """A single HTTP or HTTPS endpoint serving one kind of profile."""

    def __init__(
        self,
        component: str,
        address: str,
        scrape_address: str,
        kind: str,
        scheme: str,
        config: PprofProfilingConfig,
    ) -> None:
        self.profile_target = ProfileTarget(kind=kind, component=component, address=address)
        self.scheme = scheme
        self.host = scrape_address
        self.path = config.path
        self.header = dict(config.header)
        pairs = list(config.params.items())
        if config.seconds > 0:
            pairs.append(("seconds", str(config.seconds)))
        # Keys sorted, values of one key kept in insertion order.
        pairs.sort(key=lambda pair: pair[0])
        self.query = urllib.parse.urlencode(pairs)

    @property
    def kind(self) -> str:
        return self.profile_target.kind

    @property
    def component(self) -> str:
        return self.profile_target.component

    @property
    def address(self) -> str:
        return self.profile_target.address

    def url(self) -> str:
        url = f"{self.scheme}://{self.host}{self.path}"
        if self.query:
            url += "?" + self.query
        return url

    def __repr__(self) -> str:
        return f"Target({self.profile_target!r}, url={self.url()!r})"


class ProfileScraper:
    """Fetches the profile of one target over HTTP."""

    def __init__(self, target: Target, ssl_context: ssl.SSLContext | None = None) -> None:
        self.target = target
        handlers: list[urllib.request.BaseHandler] = [urllib.request.ProxyHandler({})]
        if ssl_context is not None:
            handlers.append(urllib.request.HTTPSHandler(context=ssl_context))
        self._opener = urllib.request.build_opener(*handlers)
        self._request: urllib.request.Request | None = None

    def scrape(self, timeout: float | None = None) -> bytes:
        """Fetch the profile and return its bytes."""
        if self._request is None:
            self._request = urllib.request.Request(
                self.target.url(), headers=dict(self.target.header), method="GET"
            )
        try:
            with self._opener.open(self._request, timeout=timeout) as response:
                if response.status != 200:
                    raise ScrapeError(
                        f"server returned HTTP status {response.status} {response.reason}"
                    )
                try:
                    return response.read()
                except OSError as exc:
                    raise ScrapeError(f"failed to read body: {exc}") from exc
        except urllib.error.HTTPError as exc:
            raise ScrapeError(f"server returned HTTP status {exc.code} {exc.reason}") from exc


def _enabled_settings() -> ContinueProfilingConfig:
    return ContinueProfilingConfig(enable=True)


class ScrapeSuite:
    """Scrapes one target on every tick and stores the result."""

    def __init__(
        self,
        scraper: ProfileScraper,
        store: ProfileStorage,
        settings: SettingsSource | None = None,
    ) -> None:
        self.scraper = scraper
        self.store = store
        self._settings = settings if settings is not None else _enabled_settings
        self.last_scrape = 0.0
        self.last_scrape_status = ProfileStatus.FINISHED
        self.last_scrape_size = 0
        self._stop = threading.Event()

    @property
    def target(self) -> ProfileTarget:
        return self.scraper.target.profile_target

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run(self, subscription: TickSource) -> None:
        """Scrape on each tick from ``subscription`` until stopped."""
        target = self.target
        log.debug("scraper start to run: %s", target)
        try:
            while True:
                start = self._next_tick(subscription)
                if start is None:
                    return
                self._scrape_once(target, start)
        finally:
            subscription.stop()
            log.debug("scraper stop running: %s", target)

    def _next_tick(self, subscription: TickSource) -> float | None:
        while not self._stop.is_set():
            try:
                return subscription.get(timeout=_TICK_POLL_INTERVAL)
            except TimeoutError:
                continue
        return None

    def _scrape_once(self, target: ProfileTarget, start: float) -> None:
        self.last_scrape = start
        self.last_scrape_status = ProfileStatus.RUNNING
        settings = self._settings()
        data = b""
        scrape_error: Exception | None = None
        if settings.enable:
            try:
                data = self.scraper.scrape(timeout=settings.timeout_seconds)
            except Exception as exc:
                scrape_error = exc
                log.error("scrape failed: %s: %s", target, exc)
        self.last_scrape_size = len(data)

        store_error: Exception | None = None
        try:
            self.store.add_profile(target, start, data, scrape_error)
        except Exception as exc:
            store_error = exc
            log.error("save scrape data failed: %s start=%s: %s", target, start, exc)

        if scrape_error is not None or store_error is not None:
            self.last_scrape_status = ProfileStatus.FAILED
        else:
            self.last_scrape_status = ProfileStatus.FINISHED

    def stop(self) -> None:
        """Stop scraping; a scrape in progress is still completed and stored."""
        self._stop.set()