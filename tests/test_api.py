import io
import json
import zipfile

import pytest

from ngmonitor.api import (
    ApiError,
    ComponentNum,
    ProfilingApi,
    build_query_param,
    profile_estimate_size,
    target_from_query,
)
from ngmonitor.meta import ContinueProfilingConfig, ProfileStatus, ProfileTarget
from ngmonitor.store import ProfileStorage
from ngmonitor.topology import (
    COMPONENT_PD,
    COMPONENT_TIDB,
    COMPONENT_TIFLASH,
    COMPONENT_TIKV,
    Component,
)

T0 = 1_700_000_000


class _StubManager:
    def __init__(self, components=(), last_time=0.0, status=ProfileStatus.FINISHED):
        self.components = list(components)
        self.last_time = last_time
        self.status = status

    def current_scrape_components(self):
        return list(self.components)

    def last_scrape_time(self):
        return self.last_time

    def running_status(self):
        return self.status


def _settings():
    return ContinueProfilingConfig(enable=True, profile_seconds=1, interval_seconds=1)


@pytest.fixture
def storage():
    store = ProfileStorage(":memory:", gc_interval=None)
    yield store
    store.close()


def _api(storage, manager=None, components=(), converter=None):
    return ProfilingApi(
        storage,
        manager or _StubManager(),
        lambda: list(components),
        _settings,
        converter,
    )


ERROR_CASES = [
    ("/group_profiles", '{"message":"need param begin_time","status":"error"}'),
    ("/group_profiles?begin_time=0", '{"message":"need param end_time","status":"error"}'),
    (
        "/group_profiles?begin_time=0&end_time=zx",
        '{"message":"invalid param end_time value, error: strconv.ParseInt: parsing \\"zx\\": invalid syntax","status":"error"}',
    ),
    (
        "/group_profiles?begin_time=1639962239&end_time=1639969440",
        '{"message":"query time range too large, should no more than 2 hours","status":"error"}',
    ),
    ("/group_profile/detail", '{"message":"need param ts","status":"error"}'),
    (
        "/group_profile/detail?ts=x",
        '{"message":"invalid param ts value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    (
        "/group_profile/detail?ts=0&limit=x",
        '{"message":"invalid param limit value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    ("/single_profile/view", '{"message":"need param ts","status":"error"}'),
    (
        "/single_profile/view?ts=x",
        '{"message":"invalid param ts value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    ("/single_profile/view?ts=0", '{"message":"need param profile_type","status":"error"}'),
    (
        "/single_profile/view?ts=0&data_format=svg",
        '{"message":"need param profile_type","status":"error"}',
    ),
    (
        "/single_profile/view?ts=0&data_format=unknown",
        '{"message":"invalid param data_format value unknown, expected: svg, protobuf","status":"error"}',
    ),
    (
        "/single_profile/view?ts=0&profile_type=heap",
        '{"message":"need param component","status":"error"}',
    ),
    (
        "/single_profile/view?ts=0&profile_type=heap&component=tidb",
        '{"message":"need param address","status":"error"}',
    ),
    ("/download", '{"message":"need param ts","status":"error"}'),
    (
        "/download?ts=x",
        '{"message":"invalid param ts value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    (
        "/download?begin_time=x",
        '{"message":"invalid param begin_time value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    (
        "/download?begin_time=1&end_time=x",
        '{"message":"invalid param end_time value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
]


@pytest.mark.parametrize("api_path, body", ERROR_CASES)
def test_error_requests(storage, api_path, body):
    path, _, query = api_path.partition("?")
    response = _api(storage).handle(path, query)
    assert response.status == 503
    assert response.body.decode() == body


def test_unknown_path_is_not_found(storage):
    response = _api(storage).handle("/nothing", "")
    assert response.status == 404


def test_build_query_param_defaults_and_values():
    param = build_query_param({"ts": "5", "limit": "7"}, ["ts"], ["limit", "data_format"])
    assert (param.begin, param.end, param.limit) == (5, 5, 7)
    assert param.data_format == "svg"
    param = build_query_param({"data_format": ["protobuf"]}, [], ["data_format"])
    assert param.data_format == "protobuf"


def test_build_query_param_out_of_range():
    with pytest.raises(ApiError, match="value out of range"):
        build_query_param({"ts": "99999999999999999999"}, ["ts"], [])


def test_target_from_query():
    param = build_query_param({"ts": "1"}, ["ts"])
    target_from_query({"profile_type": "heap"}, param, False)
    assert param.targets == []
    target_from_query(
        {"profile_type": "heap", "component": "tidb", "address": "10.0.1.2"}, param, True
    )
    assert param.targets == [ProfileTarget("heap", "tidb", "10.0.1.2")]
    with pytest.raises(ApiError, match="need param address"):
        target_from_query({"profile_type": "heap", "component": "tidb"}, param, True)


def test_profile_estimate_size():
    assert profile_estimate_size(Component(name=COMPONENT_TIFLASH)) == 0
    assert profile_estimate_size(Component(name="other")) == 128 * 1024
    assert profile_estimate_size(Component(name=COMPONENT_TIKV)) == 200 * 1024


def test_estimate_size(storage):
    components = [
        Component(COMPONENT_PD, "127.0.0.1", 2379, 2379),
        Component(COMPONENT_TIDB, "127.0.0.1", 4000, 10080),
        Component(COMPONENT_TIKV, "127.0.0.1", 20160, 20180),
    ]
    response = _api(storage, components=components).handle("/estimate_size")
    assert response.status == 200
    assert json.loads(response.body) == {"instance_count": 3, "profile_size": 88915968000}


def test_components(storage):
    comps = [Component(COMPONENT_PD, "127.0.0.1", 2379, 2379)]
    response = _api(storage, manager=_StubManager(comps)).handle("/components")
    assert response.status == 200
    assert json.loads(response.body) == [
        {"name": "pd", "ip": "127.0.0.1", "port": 2379, "status_port": 2379}
    ]


PT0 = ProfileTarget(kind="goroutine", component="tidb", address="10.0.1.2")
PT1 = ProfileTarget(kind="profile", component="tidb", address="10.0.1.2")
PT2 = ProfileTarget(kind="heap", component="pd", address="10.0.1.2")
DATAS = [
    (T0, PT0, ProfileStatus.FINISHED, None),
    (T0, PT1, ProfileStatus.FINISHED, None),
    (T0, PT2, ProfileStatus.FINISHED, None),
    (T0 + 1, PT0, ProfileStatus.FINISHED, None),
    (T0 + 1, PT1, ProfileStatus.FAILED, "timeout"),
    (T0 + 1, PT2, ProfileStatus.FINISHED, None),
    (T0 + 2, PT0, ProfileStatus.FAILED, "timeout"),
    (T0 + 2, PT1, ProfileStatus.FAILED, "timeout"),
    (T0 + 2, PT2, ProfileStatus.FAILED, "timeout"),
]
PROFILE = bytes(range(1, 11))


def _fill(storage):
    for ts, target, _, error in DATAS:
        storage.add_profile(target, ts, PROFILE, error)


def test_query_status(storage):
    _fill(storage)
    api = _api(storage)
    response = api.handle("/group_profiles", f"begin_time={T0}&end_time={T0 + 2}")
    assert response.status == 200
    groups = json.loads(response.body)
    assert [g["ts"] for g in groups] == [T0 + 2, T0 + 1, T0]
    assert [g["state"] for g in groups] == ["failed", "finished_with_error", "finished"]
    for group in groups:
        assert group["profile_duration_secs"] == 1
        assert group["component_num"] == {"tidb": 1, "pd": 1, "tikv": 0, "tiflash": 0, "ticdc": 0}

    expected_states = ["finished", "finished_with_error", "failed"]
    for ts, state in zip([T0, T0 + 1, T0 + 2], expected_states):
        response = api.handle("/group_profile/detail", f"ts={ts}")
        assert response.status == 200
        detail = json.loads(response.body)
        assert detail["ts"] == ts
        assert detail["state"] == state
        assert len(detail["target_profiles"]) == 3
        for tp in detail["target_profiles"]:
            matches = [
                status
                for data_ts, target, status, _ in DATAS
                if data_ts == ts
                and target.component == tp["target"]["component"]
                and target.kind == tp["profile_type"]
            ]
            assert matches == [ProfileStatus(matches[0])]
            assert tp["state"] == str(matches[0])


def test_group_profiles_uses_running_status_for_latest_tick(storage):
    _fill(storage)
    manager = _StubManager(last_time=T0 + 0.5, status=ProfileStatus.RUNNING)
    groups = _api(storage, manager=manager).group_profiles(
        {"begin_time": str(T0), "end_time": str(T0 + 2)}
    )
    assert groups[-1].ts == T0
    assert groups[-1].state == "running"
    assert groups[-1].comp_num == ComponentNum(tidb=1, pd=1)


def test_single_profile_view(storage):
    storage.add_profile(PT1, T0, b"profile")
    query = {"ts": str(T0), "profile_type": "profile", "component": "tidb", "address": "10.0.1.2"}
    response = _api(storage).handle("/single_profile/view", query)
    assert response.status == 200
    assert response.body == b"profile"


def test_single_profile_view_svg_conversion(storage):
    storage.add_profile(PT1, T0, b"profile")
    query = {"ts": str(T0), "profile_type": "profile", "component": "tidb", "address": "10.0.1.2"}
    converted = _api(storage, converter=lambda data: b"<svg>" + data + b"</svg>")
    assert converted.single_profile_view(query) == b"<svg>profile</svg>"

    def broken(data):
        raise ValueError("not a profile")

    assert _api(storage, converter=broken).single_profile_view(query) == b"profile"
    protobuf = dict(query, data_format="protobuf")
    assert converted.single_profile_view(protobuf) == b"profile"


def test_download(storage):
    storage.add_profile(PT0, T0, b"goroutine")
    target = ProfileTarget("profile", "tidb", "127.0.0.1:10080")
    storage.add_profile(target, T0, b"profile")
    response = _api(storage).handle("/download", f"ts={T0}")
    assert response.status == 200
    disposition = response.headers["Content-Disposition"]
    assert disposition.startswith('attachment; filename="profile"')
    assert disposition.endswith(".zip")
    with zipfile.ZipFile(io.BytesIO(response.body)) as archive:
        names = sorted(archive.namelist())
        assert names == [
            "README.md",
            "goroutine_tidb_10.0.1.2_1700000000.txt",
            "profile_tidb_127.0.0.1_10080_1700000000.proto",
        ]
        assert archive.read("goroutine_tidb_10.0.1.2_1700000000.txt") == b"goroutine"
        assert archive.read("profile_tidb_127.0.0.1_10080_1700000000.proto") == b"profile"
        assert b".proto" in archive.read("README.md")
        for info in archive.infolist():
            assert info.compress_type == zipfile.ZIP_DEFLATED


def test_download_single_target(storage):
    storage.add_profile(PT0, T0, b"goroutine")
    storage.add_profile(PT1, T0, b"profile")
    query = {
        "begin_time": str(T0),
        "end_time": str(T0),
        "limit": "1000",
        "profile_type": "profile",
        "component": "tidb",
        "address": "10.0.1.2",
    }
    result = _api(storage).download(query)
    with zipfile.ZipFile(io.BytesIO(result.data)) as archive:
        assert sorted(archive.namelist()) == ["README.md", "profile_tidb_10.0.1.2_1700000000.proto"]