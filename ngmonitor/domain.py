"""Maintains PD and etcd clients, recreating them when the PD configuration changes."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)

MIN_RETRY_INTERVAL = 0.01
MAX_RETRY_INTERVAL = 1.0
_WARN_INTERVAL = 5.0
_POLL_INTERVAL = 0.01
HEALTH_PATH = "/pd/api/v1/health"

EtcdFactory = Callable[[Sequence[str]], Any]


class OperationCancelled(Exception):
    """Raised when waiting is given up because the owner was closed or cancelled."""

    def __init__(self, message: str = "operation cancelled") -> None:
        super().__init__(message)


class PDClientError(RuntimeError):
    """Raised when a PD request fails."""


@dataclass(frozen=True)
class PDConfig:
    """Where to reach PD: its endpoints (host:port) and the URL scheme."""

    endpoints: tuple[str, ...] = ()
    scheme: str = "http"

    def __post_init__(self) -> None:
        object.__setattr__(self, "endpoints", tuple(self.endpoints))


class PDClient:
    """Minimal HTTP client for the PD API."""

    def __init__(self, base_url: str, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def get_health(self) -> Any:
        """Query PD health and return the decoded response body."""
        url = self.base_url + HEALTH_PATH
        try:
            with urllib.request.urlopen(url, timeout=self.timeout) as response:
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise PDClientError(f"Request to {url} failed: Response status {exc.code}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise PDClientError(f"Request to {url} failed: {exc}") from exc
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError as exc:
            raise PDClientError(f"Request to {url} returned invalid JSON") from exc

    def __repr__(self) -> str:
        return f"PDClient({self.base_url!r})"


class ClientMaintainer:
    """Holds a PD client and an etcd client once they have been created."""

    def __init__(self) -> None:
        self._initialized = threading.Event()
        self._pd_config: PDConfig | None = None
        self._pd_client: PDClient | None = None
        self._etcd_client: Any = None

    def init(self, pd_config: PDConfig, pd_client: PDClient, etcd_client: Any) -> None:
        if self._initialized.is_set():
            raise RuntimeError("client maintainer is already initialized")
        self._pd_config = pd_config
        self._pd_client = pd_client
        self._etcd_client = etcd_client
        self._initialized.set()

    def _wait(self, timeout: float | None) -> None:
        if not self._initialized.wait(timeout):
            raise TimeoutError("clients are not initialized yet")

    def get_pd_client(self, timeout: float | None = None) -> PDClient:
        """Return the PD client, waiting up to ``timeout`` seconds for it."""
        self._wait(timeout)
        assert self._pd_client is not None
        return self._pd_client

    def get_etcd_client(self, timeout: float | None = None) -> Any:
        """Return the etcd client, waiting up to ``timeout`` seconds for it."""
        self._wait(timeout)
        return self._etcd_client

    def is_initialized(self) -> bool:
        return self._initialized.is_set()

    def need_recreate_client(self, pd_config: PDConfig) -> bool:
        return self._pd_config != pd_config

    def close(self) -> None:
        if self._initialized.is_set():
            self._etcd_client.close()


def create_pd_client(endpoints: Sequence[str], scheme: str = "http") -> PDClient:
    """Return a client for the first endpoint that reports healthy."""
    if not endpoints:
        raise ValueError("need specify pd endpoints")
    last_error: Exception | None = None
    for endpoint in endpoints:
        client = PDClient(f"{scheme}://{endpoint}")
        try:
            client.get_health()
        except PDClientError as exc:
            last_error = exc
            continue
        log.info("create pd client success: pd-address=%s", endpoint)
        return client
    assert last_error is not None
    raise last_error


def _create_clients(pd_config: PDConfig, etcd_factory: EtcdFactory) -> tuple[PDClient, Any]:
    if not pd_config.endpoints:
        raise ValueError(
            "unexpected empty pd endpoints, please specify at least one pd endpoint"
        )
    etcd_client = etcd_factory(pd_config.endpoints)
    try:
        pd_client = create_pd_client(pd_config.endpoints, pd_config.scheme)
    except Exception:
        etcd_client.close()
        raise
    return pd_client, etcd_client


def create_clients_with_retry(
    config_source: Callable[[], PDConfig],
    etcd_factory: EtcdFactory,
    cancelled: threading.Event | None = None,
) -> tuple[PDClient, Any]:
    """Create PD and etcd clients, retrying with backoff until ``cancelled`` is set."""
    if cancelled is None:
        cancelled = threading.Event()
    last_warning = time.monotonic()
    backoff = MIN_RETRY_INTERVAL
    while True:
        if cancelled.is_set():
            raise OperationCancelled()
        try:
            return _create_clients(config_source(), etcd_factory)
        except Exception as exc:
            now = time.monotonic()
            if now - last_warning > _WARN_INTERVAL:
                last_warning = now
                log.warning("create pd/etcd client failed: %s", exc)
        if cancelled.wait(backoff):
            raise OperationCancelled()
        backoff = min(backoff * 2, MAX_RETRY_INTERVAL)


class Domain:
    """Creates clients in the background and recreates them on PD config changes.

    ``config_updates`` carries getters returning a PDConfig; each is taken as
    a sign that the configuration may have changed.
    """

    def __init__(
        self,
        config_source: Callable[[], PDConfig],
        etcd_factory: EtcdFactory,
        config_updates: queue.Queue[Callable[[], PDConfig]] | None = None,
    ) -> None:
        self._setup(config_source, etcd_factory, config_updates)
        initial = config_source()
        threading.Thread(
            target=self._start, args=(initial,), name="domain", daemon=True
        ).start()

    @classmethod
    def for_clients(cls, pd_config: PDConfig, pd_client: PDClient, etcd_client: Any) -> Domain:
        """A domain holding ready-made clients, with no background work."""
        domain = cls.__new__(cls)
        domain._setup(lambda: pd_config, lambda endpoints: etcd_client, None)
        domain._cm.init(pd_config, pd_client, etcd_client)
        return domain

    def _setup(
        self,
        config_source: Callable[[], PDConfig],
        etcd_factory: EtcdFactory,
        config_updates: queue.Queue[Callable[[], PDConfig]] | None,
    ) -> None:
        self._config_source = config_source
        self._etcd_factory = etcd_factory
        self._config_updates = config_updates
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._cm = ClientMaintainer()

    def _start(self, pd_config: PDConfig) -> None:
        try:
            self._recreate(pd_config)
        except OperationCancelled:
            return
        updates = self._config_updates
        if updates is None:
            return
        while not self._closed.is_set():
            try:
                getter = updates.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._recreate(getter())
            except OperationCancelled:
                return
            finally:
                updates.task_done()

    def _recreate(self, pd_config: PDConfig) -> None:
        with self._lock:
            if self._cm.is_initialized():
                if not self._cm.need_recreate_client(pd_config):
                    return
                self._cm.close()
                self._cm = ClientMaintainer()
        pd_client, etcd_client = create_clients_with_retry(
            self._config_source, self._etcd_factory, self._closed
        )
        with self._lock:
            if self._closed.is_set():
                etcd_client.close()
                raise OperationCancelled()
            self._cm.init(pd_config, pd_client, etcd_client)

    def _wait_for(self, pick: Callable[[ClientMaintainer], Callable[[float], Any]]) -> Any:
        while True:
            if self._closed.is_set():
                raise OperationCancelled("domain is closed")
            try:
                return pick(self._cm)(_POLL_INTERVAL)
            except TimeoutError:
                continue

    def get_pd_client(self) -> PDClient:
        """Return the PD client; blocks until it exists or the domain is closed."""
        return self._wait_for(lambda cm: cm.get_pd_client)

    def get_etcd_client(self) -> Any:
        """Return the etcd client; blocks until it exists or the domain is closed."""
        return self._wait_for(lambda cm: cm.get_etcd_client)

    def close(self) -> None:
        with self._lock:
            self._closed.set()
            self._cm.close()

    def __enter__(self) -> Domain:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()