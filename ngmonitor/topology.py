"""Cluster topology: components and their periodic discovery."""

from __future__ import annotations

import json
import logging
import queue
import re
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

log = logging.getLogger(__name__)

COMPONENT_TIDB = "tidb"
COMPONENT_TIKV = "tikv"
COMPONENT_TIFLASH = "tiflash"
COMPONENT_PD = "pd"
COMPONENT_TICDC = "ticdc"

DISCOVER_INTERVAL = 30.0
TICDC_TOPOLOGY_KEY_PREFIX = "/tidb/cdc/default/__cdc_meta__/capture/"

_PORT_RE = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class Component:
    """One instance of a cluster component."""

    name: str
    ip: str = ""
    port: int = 0
    status_port: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "ip": self.ip,
            "port": self.port,
            "status_port": self.status_port,
        }


TopologyGetter = Callable[[], "list[Component]"]
Fetcher = Callable[[], Iterable[Component]]


class TopologyDiscoverer:
    """Collects components from fetchers and notifies subscribers periodically.

    Each subscriber is a queue holding at most one getter; calling the getter
    yields the latest known components.
    """

    def __init__(self, fetchers: Sequence[Fetcher], interval: float = DISCOVER_INTERVAL) -> None:
        self._fetchers = list(fetchers)
        self._interval = interval
        self._lock = threading.Lock()
        self._subscribers: list[queue.Queue[TopologyGetter]] = []
        self._components: list[Component] | None = None
        self._closed = threading.Event()

    def subscribe(self) -> queue.Queue[TopologyGetter]:
        subscription: queue.Queue[TopologyGetter] = queue.Queue(maxsize=1)
        with self._lock:
            self._subscribers.append(subscription)
            subscription.put_nowait(self.current_components)
        return subscription

    def start(self) -> None:
        threading.Thread(target=self._loop, name="topology-discoverer", daemon=True).start()

    def close(self) -> None:
        self._closed.set()

    def fetch_topology(self) -> list[Component]:
        """Fetch all components; the stored topology is kept if any fetcher fails."""
        components: list[Component] = []
        for fetch in self._fetchers:
            components.extend(fetch())
        self._components = components
        return list(components)

    def current_components(self) -> list[Component]:
        components = self._components
        return [] if components is None else list(components)

    def _loop(self) -> None:
        try:
            self.fetch_topology()
            log.info("first load topology: %s", self.current_components())
        except Exception:
            log.exception("first load topology failed")
        while not self._closed.wait(self._interval):
            try:
                self.fetch_topology()
                log.debug("load topology success: %s", self.current_components())
            except Exception:
                log.exception("load topology failed")
            self._notify_subscribers()

    def _notify_subscribers(self) -> None:
        with self._lock:
            for subscription in self._subscribers:
                try:
                    subscription.put_nowait(self.current_components)
                except queue.Full:
                    pass


def _text(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


def parse_ticdc_components(kvs: Iterable[tuple[str | bytes, str | bytes]]) -> list[Component]:
    """Build TiCDC components from capture entries stored in etcd.

    Entries outside the capture prefix or with malformed data are skipped.
    """
    components: list[Component] = []
    for raw_key, raw_value in kvs:
        if not _text(raw_key).startswith(TICDC_TOPOLOGY_KEY_PREFIX):
            continue
        try:
            item = json.loads(raw_value)
        except (ValueError, UnicodeDecodeError) as exc:
            log.warning("invalid ticdc node item in etcd: %s", exc)
            continue
        if not isinstance(item, dict):
            log.warning("invalid ticdc node item in etcd: %r", item)
            continue
        address = item.get("address", "")
        if not isinstance(address, str):
            log.warning("invalid ticdc node item in etcd: %r", item)
            continue
        parts = address.split(":")
        if len(parts) != 2:
            log.warning("invalid ticdc node address in etcd: %s", address)
            continue
        ip, port_text = parts
        if not _PORT_RE.fullmatch(port_text):
            log.warning("invalid ticdc node address in etcd: %s", address)
            continue
        port = int(port_text)
        components.append(Component(name=COMPONENT_TICDC, ip=ip, port=port, status_port=port))
    return components