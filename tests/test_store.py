import random
import time
from datetime import datetime, timezone

import pytest

from ngmonitor.meta import BasicQueryParam, ProfileTarget
from ngmonitor.store import ProfileStorage, QueryRangeTooLargeError, StoreClosedError

CASES = [
    ProfileTarget("profile", "tidb", "127.0.0.1:10080"),
    ProfileTarget("profile", "pd", "127.0.0.1:2379"),
    ProfileTarget("profile", "tikv", "127.0.0.1:20180"),
    ProfileTarget("goroutine", "tidb", "127.0.0.1:10080"),
    ProfileTarget("heap", "tidb", "127.0.0.1:10080"),
]


def mock_profile():
    size = 50 * 1024 + random.randrange(50 * 1024)
    data = bytearray(size)
    for i in range(0, size, 99):
        data[i] = i % 255
    return bytes(data)


def open_storage(path):
    return ProfileStorage(path, gc_interval=None)


def _round(path, base_ts, clean_cache):
    datas = [mock_profile() for _ in CASES]
    with open_storage(path) as storage:
        if clean_cache:
            storage._meta_cache.clear()
        for i, (pt, data) in enumerate(zip(CASES, datas)):
            ts = base_ts + i
            storage.add_profile(pt, ts, data, None)
            param = BasicQueryParam(begin=ts, end=ts, limit=100, targets=[pt])
            lists = storage.query_group_profiles(param)
            assert len(lists) == 1
            assert lists[0].target == pt
            assert lists[0].ts_list == [ts]

            seen = []
            storage.query_profile_data(param, lambda t, s, d: seen.append((t, s, d)))
            assert seen == [(pt, ts, data)]

            storage.update_profile_target_info(pt, ts)
            info = storage.get_target_info(pt)
            assert info is not None
            assert info.last_scrape_ts == ts

        param = BasicQueryParam(begin=base_ts, end=base_ts + len(CASES), limit=100)
        lists = storage.query_group_profiles(param)
        assert len(lists) == len(CASES)
        for plist in lists:
            idx = CASES.index(plist.target)
            assert plist.ts_list == [base_ts + idx]

        seen = []
        storage.query_profile_data(param, lambda t, s, d: seen.append((t, s, d)))
        assert len(seen) == len(CASES)
        for target, ts, data in seen:
            idx = CASES.index(target)
            assert ts == base_ts + idx
            assert data == datas[idx]


def test_profile_storage_and_gc(tmp_path):
    path = tmp_path / "profiles.db"
    base_ts = int(time.time())
    for i in range(2):
        _round(path, base_ts + i * 1000, i > 0)

    with open_storage(path) as storage:
        assert len(storage._meta_cache) == len(CASES)
        dropped = storage.run_gc(retention_seconds=-100000)
        assert dropped == len(CASES)
        assert storage._meta_cache == {}
        assert storage.query_group_profiles(BasicQueryParam(begin=base_ts, end=base_ts + 10)) == []


def test_store_profile_status(tmp_path):
    with open_storage(tmp_path / "p.db") as storage:
        pt = ProfileTarget("profile", "tidb", "10.0.1.2")
        t0 = time.time()
        storage.add_profile(pt, t0, None, RuntimeError("context canceled"))
        t1 = t0 + 1
        profile = mock_profile()
        storage.add_profile(pt, t1, profile, None)

        param = BasicQueryParam(begin=int(t0), end=int(t1))
        lists = storage.query_group_profiles(param)
        assert len(lists) == 1
        assert lists[0].ts_list == [int(t1), int(t0)]
        assert lists[0].error_list == ["", "context canceled"]

        seen = []
        storage.query_profile_data(param, lambda t, s, d: seen.append((s, d)))
        assert seen == [(int(t1), profile)]


def test_datetime_timestamp_is_floored():
    with open_storage(":memory:") as storage:
        pt = ProfileTarget("heap", "pd", "10.0.1.3:2379")
        moment = datetime(2022, 1, 1, 0, 0, 0, 700000, tzinfo=timezone.utc)
        storage.add_profile(pt, moment, b"heap", None)
        ts = int(moment.timestamp())
        lists = storage.query_group_profiles(BasicQueryParam(begin=ts, end=ts))
        assert lists[0].ts_list == [1640995200]


def test_limit_returns_newest_first():
    with open_storage(":memory:") as storage:
        pt = ProfileTarget("goroutine", "tidb", "10.0.1.4:10080")
        for ts in range(1000, 1005):
            storage.add_profile(pt, ts, f"data-{ts}".encode(), None)
        param = BasicQueryParam(begin=1000, end=1004, limit=2)
        assert storage.query_group_profiles(param)[0].ts_list == [1004, 1003]
        seen = []
        storage.query_profile_data(param, lambda t, s, d: seen.append((s, d)))
        assert seen == [(1004, b"data-1004"), (1003, b"data-1003")]


def test_zero_limit_means_unlimited():
    with open_storage(":memory:") as storage:
        pt = ProfileTarget("profile", "tikv", "10.0.1.5:20180")
        for ts in range(10, 20):
            storage.add_profile(pt, ts, b"x", None)
        param = BasicQueryParam(begin=10, end=19)
        assert len(storage.query_group_profiles(param)[0].ts_list) == 10


def test_query_range_too_large():
    with open_storage(":memory:") as storage:
        param = BasicQueryParam(begin=1639962239, end=1639969440)
        with pytest.raises(QueryRangeTooLargeError, match="no more than 2 hours"):
            storage.query_group_profiles(param)
        with pytest.raises(QueryRangeTooLargeError):
            storage.query_profile_data(param, lambda *args: None)


def test_none_param_returns_empty():
    with open_storage(":memory:") as storage:
        assert storage.query_group_profiles(None) == []


def test_update_profile_target_info():
    with open_storage(":memory:") as storage:
        pt = ProfileTarget("mutex", "tidb", "10.0.1.6:10080")
        unknown = ProfileTarget("mutex", "pd", "10.0.1.7:2379")
        assert storage.update_profile_target_info(unknown, 100) is False
        storage.add_profile(pt, 100, b"m", None)
        assert storage.update_profile_target_info(pt, 100) is False
        assert storage.update_profile_target_info(pt, 150) is True
        assert storage.get_target_info(pt).last_scrape_ts == 150


def test_gc_keeps_fresh_targets_and_deletes_old_rows():
    with open_storage(":memory:") as storage:
        now = int(time.time())
        fresh = ProfileTarget("profile", "tidb", "10.0.1.8:10080")
        storage.add_profile(fresh, now - 500, b"old", None)
        storage.add_profile(fresh, now, b"new", None)
        assert storage.run_gc(retention_seconds=100) == 0
        lists = storage.query_group_profiles(BasicQueryParam(begin=now - 600, end=now))
        assert lists[0].ts_list == [now]


def test_ids_persist_across_reopen(tmp_path):
    path = tmp_path / "ids.db"
    first = ProfileTarget("profile", "tidb", "10.0.1.9:10080")
    second = ProfileTarget("profile", "pd", "10.0.1.9:2379")
    with open_storage(path) as storage:
        storage.add_profile(first, 10, b"a", None)
        first_id = storage.get_target_info(first).id
    with open_storage(path) as storage:
        assert storage.get_target_info(first).id == first_id
        storage.add_profile(second, 11, b"b", None)
        assert storage.get_target_info(second).id == first_id + 1


def test_closed_storage_raises():
    storage = open_storage(":memory:")
    pt = ProfileTarget("profile", "tidb", "10.0.1.10:10080")
    storage.close()
    assert storage.closed is True
    with pytest.raises(StoreClosedError, match="storage is closed"):
        storage.add_profile(pt, 1, b"", None)
    with pytest.raises(StoreClosedError):
        storage.query_group_profiles(BasicQueryParam())
    with pytest.raises(StoreClosedError):
        storage.update_profile_target_info(pt, 5)
    with pytest.raises(StoreClosedError):
        storage.query_profile_data(BasicQueryParam(), lambda *args: None)