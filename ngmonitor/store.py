"""Persistent storage of scraped profiles, one pair of tables per target."""

from __future__ import annotations

import logging
import math
import os
import sqlite3
import sys
import threading
import time
from collections.abc import Callable
from datetime import datetime

import zstandard

from .meta import (
    PROFILE_KIND_GOROUTINE,
    BasicQueryParam,
    ContinueProfilingConfig,
    ProfileList,
    ProfileTarget,
    TargetInfo,
)

log = logging.getLogger(__name__)

TABLE_NAME_PREFIX = "conprof"
META_TABLE_SUFFIX = "meta"
DATA_TABLE_SUFFIX = "data"
META_TABLE_NAME = TABLE_NAME_PREFIX + "_targets_meta"

GC_INTERVAL = 10 * 60.0
MAX_QUERY_RANGE_SECONDS = 2 * 60 * 60
_UNLIMITED = sys.maxsize

ProfileHandler = Callable[[ProfileTarget, int, bytes], object]


class StoreClosedError(RuntimeError):
    """Raised when the storage is used after it was closed."""

    def __init__(self) -> None:
        super().__init__("storage is closed")


class QueryRangeTooLargeError(ValueError):
    """Raised when a query spans more than two hours."""

    def __init__(self) -> None:
        super().__init__("query time range too large, should no more than 2 hours")


def _unix_seconds(moment: float | int | datetime) -> int:
    if isinstance(moment, datetime):
        return math.floor(moment.timestamp())
    return math.floor(moment)


def _meta_table(info: TargetInfo) -> str:
    return f'"{TABLE_NAME_PREFIX}_{info.id}_{META_TABLE_SUFFIX}"'


def _data_table(info: TargetInfo) -> str:
    return f'"{TABLE_NAME_PREFIX}_{info.id}_{DATA_TABLE_SUFFIX}"'


class ProfileStorage:
    """Stores profiles per target in SQLite and expires them by retention.

    ``database`` is a file path or ``":memory:"``. When ``gc_interval`` is not
    None, garbage collection runs at once and then every ``gc_interval``
    seconds in a background thread.
    """

    def __init__(
        self,
        database: str | os.PathLike[str] = ":memory:",
        *,
        retention_seconds: int = ContinueProfilingConfig().data_retention_seconds,
        gc_interval: float | None = GC_INTERVAL,
    ) -> None:
        self.retention_seconds = retention_seconds
        self._db = sqlite3.connect(
            os.fspath(database), check_same_thread=False, isolation_level=None
        )
        self._lock = threading.RLock()
        self._closed = False
        self._stop = threading.Event()
        self._meta_cache: dict[ProfileTarget, TargetInfo] = {}
        self._id_allocator = 0
        self._compressor = zstandard.ZstdCompressor()
        self._decompressor = zstandard.ZstdDecompressor()
        try:
            self._init()
        except Exception:
            self._db.close()
            raise
        if gc_interval is not None:
            threading.Thread(
                target=self._gc_loop, args=(gc_interval,), name="profile-gc", daemon=True
            ).start()

    def __enter__(self) -> ProfileStorage:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _init(self) -> None:
        with self._lock:
            self._db.execute(
                f'CREATE TABLE IF NOT EXISTS "{META_TABLE_NAME}" '
                "(id INTEGER PRIMARY KEY, kind TEXT, component TEXT, address TEXT, "
                "last_scrape_ts INTEGER)"
            )
            for target, info in self._load_all_targets():
                self._meta_cache[target] = info

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError()

    def _load_all_targets(self) -> list[tuple[ProfileTarget, TargetInfo]]:
        rows = self._db.execute(
            f'SELECT id, kind, component, address, last_scrape_ts FROM "{META_TABLE_NAME}"'
        ).fetchall()
        result = []
        for target_id, kind, component, address, ts in rows:
            self._rebase_id(target_id)
            result.append(
                (ProfileTarget(kind, component, address), TargetInfo(target_id, ts or 0))
            )
        log.info("load all target info from meta table: %d targets", len(result))
        return result

    def _load_meta_into_cache(self, target: ProfileTarget) -> None:
        rows = self._db.execute(
            f'SELECT id, last_scrape_ts FROM "{META_TABLE_NAME}" '
            "WHERE kind = ? AND component = ? AND address = ?",
            (target.kind, target.component, target.address),
        ).fetchall()
        for target_id, ts in rows:
            self._rebase_id(target_id)
            self._meta_cache[target] = TargetInfo(target_id, ts or 0)
            log.info("load target info into cache: %s id=%d ts=%s", target, target_id, ts)

    def _rebase_id(self, target_id: int) -> None:
        if target_id > self._id_allocator:
            self._id_allocator = target_id

    def _alloc_id(self) -> int:
        self._id_allocator += 1
        return self._id_allocator

    def update_profile_target_info(self, target: ProfileTarget, ts: int) -> bool:
        """Record a newer last scrape time; return whether anything changed."""
        self._check_open()
        with self._lock:
            info = self._meta_cache.get(target)
            if info is None or ts <= info.last_scrape_ts:
                return False
            info.last_scrape_ts = ts
            self._db.execute(
                f'UPDATE "{META_TABLE_NAME}" SET last_scrape_ts = ? WHERE id = ?',
                (ts, info.id),
            )
        return True

    def add_profile(
        self,
        target: ProfileTarget,
        timestamp: float | int | datetime,
        data: bytes | None,
        error: BaseException | str | None = None,
    ) -> None:
        """Store one scrape result; with an error only the error text is kept."""
        self._check_open()
        ts = _unix_seconds(timestamp)
        with self._lock:
            info = self._prepare_profile_table(target, ts)
            error_text = ""
            if error is None:
                payload = bytes(data or b"")
                if target.kind == PROFILE_KIND_GOROUTINE:
                    payload = self._compressor.compress(payload)
                self._db.execute(
                    f"INSERT INTO {_data_table(info)} (ts, data) VALUES (?, ?)", (ts, payload)
                )
            else:
                error_text = str(error)
            self._db.execute(
                f"INSERT INTO {_meta_table(info)} (ts, error) VALUES (?, ?)", (ts, error_text)
            )

    def _check_param(self, param: BasicQueryParam) -> None:
        if param.end - param.begin > MAX_QUERY_RANGE_SECONDS:
            raise QueryRangeTooLargeError()
        if param.limit == 0:
            param.limit = _UNLIMITED

    def _query_targets(self, param: BasicQueryParam) -> list[tuple[ProfileTarget, TargetInfo]]:
        targets = param.targets or self._all_targets()
        pairs = []
        for target in targets:
            info = self.get_target_info(target)
            if info is not None:
                pairs.append((target, info))
        return pairs

    def query_group_profiles(self, param: BasicQueryParam | None) -> list[ProfileList]:
        """Timestamps and errors of every matching target that has any."""
        self._check_open()
        if param is None:
            return []
        self._check_param(param)
        result = []
        for target, info in self._query_targets(param):
            profiles = self.query_target_profiles(target, info, param)
            if profiles.ts_list:
                result.append(profiles)
        return result

    def query_target_profiles(
        self, target: ProfileTarget, info: TargetInfo, param: BasicQueryParam
    ) -> ProfileList:
        result = ProfileList(target=target)
        with self._lock:
            cursor = self._db.execute(
                f"SELECT ts, error FROM {_meta_table(info)} "
                "WHERE ts >= ? AND ts <= ? ORDER BY ts DESC",
                (param.begin, param.end),
            )
            for ts, error_text in cursor:
                result.ts_list.append(ts)
                result.error_list.append(error_text or "")
                if len(result.ts_list) >= param.limit:
                    break
        return result

    def query_profile_data(
        self, param: BasicQueryParam | None, handle: ProfileHandler | None
    ) -> None:
        """Pass every matching profile to ``handle(target, ts, data)``."""
        self._check_open()
        if param is None or handle is None:
            return
        self._check_param(param)
        for target, info in self._query_targets(param):
            self.query_target_profile_data(target, info, param, handle)

    def query_target_profile_data(
        self,
        target: ProfileTarget,
        info: TargetInfo,
        param: BasicQueryParam,
        handle: ProfileHandler,
    ) -> None:
        rows: list[tuple[int, bytes]] = []
        with self._lock:
            cursor = self._db.execute(
                f"SELECT ts, data FROM {_data_table(info)} "
                "WHERE ts >= ? AND ts <= ? ORDER BY ts DESC",
                (param.begin, param.end),
            )
            for ts, data in cursor:
                rows.append((ts, bytes(data or b"")))
                if len(rows) >= param.limit:
                    break
        for ts, data in rows:
            if target.kind == PROFILE_KIND_GOROUTINE:
                data = self._decompressor.decompress(data)
            handle(target, ts, data)

    def get_target_info(self, target: ProfileTarget) -> TargetInfo | None:
        with self._lock:
            return self._meta_cache.get(target)

    def _all_targets(self) -> list[ProfileTarget]:
        with self._lock:
            return list(self._meta_cache)

    def _prepare_profile_table(self, target: ProfileTarget, ts: int) -> TargetInfo:
        info = self._meta_cache.get(target)
        if info is not None:
            return info
        self._load_meta_into_cache(target)
        info = self._meta_cache.get(target)
        if info is not None:
            return info
        info = self._create_profile_table(target, ts)
        self._meta_cache[target] = info
        return info

    def _create_profile_table(self, target: ProfileTarget, ts: int) -> TargetInfo:
        info = TargetInfo(id=self._alloc_id(), last_scrape_ts=ts)
        self._db.execute(
            f"CREATE TABLE IF NOT EXISTS {_meta_table(info)} (ts INTEGER PRIMARY KEY, error TEXT)"
        )
        self._db.execute(
            f"CREATE TABLE IF NOT EXISTS {_data_table(info)} (ts INTEGER PRIMARY KEY, data BLOB)"
        )
        self._db.execute(
            f'INSERT INTO "{META_TABLE_NAME}" '
            "(id, kind, component, address, last_scrape_ts) VALUES (?, ?, ?, ?, ?)",
            (info.id, target.kind, target.component, target.address, info.last_scrape_ts),
        )
        log.info("create profile target table: id=%d %s", info.id, target)
        return info

    def run_gc(self, retention_seconds: int | None = None) -> int:
        """Delete profiles older than the retention and drop stale targets.

        Returns the number of targets whose tables were dropped.
        """
        self._check_open()
        if retention_seconds is None:
            retention_seconds = self.retention_seconds
        started = time.monotonic()
        safe_point = math.floor(time.time() - retention_seconds)
        dropped = 0
        with self._lock:
            all_targets = self._load_all_targets()
            for target, info in all_targets:
                for table in (_data_table(info), _meta_table(info)):
                    try:
                        self._db.execute(f"DELETE FROM {table} WHERE ts <= ?", (safe_point,))
                    except sqlite3.Error:
                        log.exception("gc delete target data failed")
                try:
                    if self._drop_profile_table_if_stale(target, info, safe_point):
                        dropped += 1
                except sqlite3.Error:
                    log.exception("gc drop target table failed")
        log.info(
            "gc finished: total-targets=%d safepoint=%d cost=%.3fs",
            len(all_targets),
            safe_point,
            time.monotonic() - started,
        )
        return dropped

    def _drop_profile_table_if_stale(
        self, target: ProfileTarget, info: TargetInfo, safe_point: int
    ) -> bool:
        last_scrape_ts = info.last_scrape_ts
        cached = self._meta_cache.get(target)
        if cached is not None:
            if cached.id != info.id:
                log.error(
                    "same target has different ids: %s id-1=%d id-2=%d",
                    target,
                    cached.id,
                    info.id,
                )
            else:
                last_scrape_ts = cached.last_scrape_ts
        if last_scrape_ts >= safe_point:
            return False
        self._db.execute(f'DELETE FROM "{META_TABLE_NAME}" WHERE id = ?', (info.id,))
        self._meta_cache.pop(target, None)
        self._db.execute(f"DROP TABLE IF EXISTS {_data_table(info)}")
        self._db.execute(f"DROP TABLE IF EXISTS {_meta_table(info)}")
        log.info("drop profile target table: id=%d %s", info.id, target)
        return True

    def _gc_loop(self, interval: float) -> None:
        while not self._stop.is_set():
            try:
                self.run_gc()
            except StoreClosedError:
                return
            except Exception:
                log.exception("profile gc failed")
            if self._stop.wait(interval):
                return

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        with self._lock:
            self._db.close()