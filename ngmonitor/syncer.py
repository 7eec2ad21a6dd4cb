"""Publishes this server's address and liveness to etcd under the topology prefix."""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

log = logging.getLogger(__name__)

TOPOLOGY_PREFIX = "/topology/ng-monitoring"
DEFAULT_RETRY_COUNT = 3
DEFAULT_TIMEOUT = 2.0
DEF_RETRY_INTERVAL = 0.03
NEW_SESSION_RETRY_INTERVAL = 0.2
LOG_INTERVAL_COUNT = int(3.0 / NEW_SESSION_RETRY_INTERVAL)
TOPOLOGY_SESSION_TTL = 45
TOPOLOGY_TIME_TO_REFRESH = 30.0
_POLL_INTERVAL = 0.01

_PORT_RE = re.compile(r"[0-9]+")
_UINT64_MAX = (1 << 64) - 1


class EtcdSession(Protocol):
    """A lease kept alive in the background."""

    @property
    def lease(self) -> int: ...

    def done(self) -> bool:
        """Whether the lease was lost and the session has ended."""
        ...


class EtcdClient(Protocol):
    """The etcd operations the syncer needs."""

    def put(
        self, key: str, value: str, lease: int | None = None, timeout: float | None = None
    ) -> Any: ...

    def new_session(self, ttl: int) -> EtcdSession: ...


class EtcdClientSource(Protocol):
    """Anything handing out an etcd client, such as a Domain."""

    def get_etcd_client(self) -> Any: ...


class SyncerStopped(Exception):
    """Raised when work is given up because the syncer was stopped."""


@dataclass
class ServerInfo:
    """Static information about this server; it does not change while running."""

    git_hash: str
    ip: str
    port: int
    start_timestamp: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "git_hash": self.git_hash,
                "ip": self.ip,
                "listening_port": self.port,
                "start_timestamp": self.start_timestamp,
            },
            separators=(",", ":"),
        )


def _split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        rest = address[end + 1 :]
        if not rest:
            raise ValueError(f"address {address}: missing port in address")
        if not rest.startswith(":"):
            raise ValueError(f"address {address}: unexpected text after ']'")
        host, port = address[1:end], rest[1:]
        if ":" in port:
            raise ValueError(f"address {address}: too many colons in address")
    else:
        index = address.rfind(":")
        if index < 0:
            raise ValueError(f"address {address}: missing port in address")
        host, port = address[:index], address[index + 1 :]
        if ":" in host:
            raise ValueError(f"address {address}: too many colons in address")
    if "[" in host or "]" in host:
        raise ValueError(f"address {address}: unexpected bracket in address")
    return host, port


def _parse_port(text: str) -> int:
    if _PORT_RE.fullmatch(text):
        value = int(text)
        if value <= _UINT64_MAX:
            return value
    return 0


def server_info_from_address(advertise_address: str, git_hash: str = "") -> ServerInfo:
    """Build the server info; an address that cannot be split leaves ip and port empty."""
    info = ServerInfo(git_hash=git_hash, ip="", port=0, start_timestamp=int(time.time()))
    try:
        host, port = _split_host_port(advertise_address)
    except ValueError:
        return info
    info.ip = host
    info.port = _parse_port(port)
    return info


def put_kv_with_retry(
    client: EtcdClient,
    key: str,
    value: str,
    retry_count: int = DEFAULT_RETRY_COUNT,
    lease: int | None = None,
) -> None:
    """Put a key, retrying up to ``retry_count`` times; raise the last error on failure."""
    last_error: Exception | None = None
    for attempt in range(retry_count):
        try:
            client.put(key, value, lease=lease, timeout=DEFAULT_TIMEOUT)
        except Exception as exc:
            last_error = exc
            log.warning(
                "[syncer] etcd-cli put kv failed: key=%s value=%s retryCnt=%d: %s",
                key,
                value,
                attempt,
                exc,
            )
            time.sleep(DEF_RETRY_INTERVAL)
            continue
        return
    if last_error is not None:
        raise last_error


def _new_etcd_session(
    client: EtcdClient, retry_count: int, ttl: int, stop: threading.Event
) -> EtcdSession:
    last_error: Exception | None = None
    for failed in range(retry_count):
        if stop.is_set():
            raise SyncerStopped("topology syncer is stopped")
        try:
            return client.new_session(ttl)
        except Exception as exc:
            last_error = exc
            if failed % LOG_INTERVAL_COUNT == 0:
                log.warning("failed to new session to etcd: %s", exc)
        if stop.wait(NEW_SESSION_RETRY_INTERVAL):
            raise SyncerStopped("topology syncer is stopped")
    if last_error is None:
        raise RuntimeError("no attempt was made to create an etcd session")
    raise last_error


class TopologySyncer:
    """Keeps this server's info and a leased liveness key in etcd."""

    def __init__(
        self,
        domain: EtcdClientSource,
        advertise_address: str,
        git_hash: str = "",
        refresh_interval: float = TOPOLOGY_TIME_TO_REFRESH,
    ) -> None:
        self._domain = domain
        self.advertise_address = advertise_address
        self.server_info = server_info_from_address(advertise_address, git_hash)
        self.refresh_interval = refresh_interval
        self._session: EtcdSession | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def info_key(self) -> str:
        return f"{TOPOLOGY_PREFIX}/{self.advertise_address}/info"

    @property
    def ttl_key(self) -> str:
        return f"{TOPOLOGY_PREFIX}/{self.advertise_address}/ttl"

    def start(self) -> None:
        self._thread = threading.Thread(target=self._keeper_loop, name="topology-syncer", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()

    def __enter__(self) -> TopologySyncer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _keeper_loop(self) -> None:
        try:
            self.new_session_and_store_server_info()
        except SyncerStopped:
            return
        except Exception as exc:
            log.error("store topology into etcd failed: %s", exc)
        next_refresh = time.monotonic() + self.refresh_interval
        while not self._stop.wait(min(_POLL_INTERVAL, self.refresh_interval)):
            if self._session_done():
                log.info("server topology syncer need to restart")
                try:
                    self.new_session_and_store_server_info()
                except SyncerStopped:
                    return
                except Exception as exc:
                    log.error("server topology syncer restart failed: %s", exc)
                else:
                    log.info("server topology syncer restarted")
            now = time.monotonic()
            if now >= next_refresh:
                next_refresh = now + self.refresh_interval
                try:
                    self.store_topology_info()
                except Exception as exc:
                    log.error("refresh topology in loop failed: %s", exc)

    def _session_done(self) -> bool:
        return self._session is not None and self._session.done()

    def new_session_and_store_server_info(self) -> None:
        """Open a fresh leased session, then store the server info and liveness key."""
        client = self._domain.get_etcd_client()
        self._session = _new_etcd_session(
            client, DEFAULT_RETRY_COUNT, TOPOLOGY_SESSION_TTL, self._stop
        )
        self.store_server_info()
        self.store_topology_info()

    def store_server_info(self) -> None:
        """Store the server info; it carries no lease."""
        client = self._domain.get_etcd_client()
        put_kv_with_retry(client, self.info_key, self.server_info.to_json(), DEFAULT_RETRY_COUNT)

    def store_topology_info(self) -> None:
        """Store the current time under the liveness key, bound to the session lease."""
        if self._stop.is_set():
            raise SyncerStopped("topology syncer is stopped")
        if self._session is None:
            raise RuntimeError("no topology session")
        client = self._domain.get_etcd_client()
        put_kv_with_retry(
            client,
            self.ttl_key,
            str(time.time_ns()),
            DEFAULT_RETRY_COUNT,
            lease=self._session.lease,
        )