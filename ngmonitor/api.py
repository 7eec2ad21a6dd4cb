"""Queries over stored continuous profiling data, as served over HTTP."""

from __future__ import annotations

import io
import json
import math
import re
import time
import zipfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from typing import Any, Protocol, Union
from urllib.parse import parse_qs

from .meta import (
    PROFILE_DATA_FORMAT_PROTOBUF,
    PROFILE_DATA_FORMAT_SVG,
    PROFILE_KIND_GOROUTINE,
    BasicQueryParam,
    ContinueProfilingConfig,
    ProfileStatus,
    ProfileTarget,
    StatusCounter,
)
from .store import ProfileStorage
from .topology import (
    COMPONENT_PD,
    COMPONENT_TICDC,
    COMPONENT_TIDB,
    COMPONENT_TIFLASH,
    COMPONENT_TIKV,
    Component,
)

BEGIN_TIME_PARAM = "begin_time"
END_TIME_PARAM = "end_time"
TS_PARAM = "ts"
LIMIT_PARAM = "limit"
DATA_FORMAT_PARAM = "data_format"
DEFAULT_DATA_FORMAT = PROFILE_DATA_FORMAT_SVG
PROFILE_TYPE_PARAM = "profile_type"
COMPONENT_PARAM = "component"
ADDRESS_PARAM = "address"

DEFAULT_PROFILE_SIZE = 128 * 1024

DOWNLOAD_README = """
To review the profile data whose file name suffix is '.proto' interactively:

$ pprof --http=127.0.0.1:6060 profile_xxx.proto
"""

JSON_CONTENT_TYPE = "application/json; charset=utf-8"

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1

Query = Mapping[str, Union[str, Sequence[str]]]
SvgConverter = Callable[[bytes], bytes]


class ApiError(ValueError):
    """Raised when a request carries missing or invalid parameters."""


def _json_name(name: str, **kwargs: Any) -> Any:
    return field(metadata={"json": name}, **kwargs)


@dataclass
class ComponentNum:
    """How many instances of each component a profile group covers."""

    tidb: int = 0
    pd: int = 0
    tikv: int = 0
    tiflash: int = 0
    ticdc: int = 0


@dataclass
class GroupProfiles:
    """Summary of all profiles taken at one timestamp."""

    ts: int
    profile_secs: int = _json_name("profile_duration_secs")
    state: str = ""
    comp_num: ComponentNum = _json_name("component_num", default_factory=ComponentNum)


@dataclass(frozen=True)
class Target:
    """A profiled component instance."""

    component: str
    address: str


@dataclass
class ProfileDetail:
    """State of one profile within a group."""

    state: str
    error: str
    type: str = _json_name("profile_type")
    target: Target = field(default_factory=lambda: Target("", ""))


@dataclass
class GroupProfileDetail:
    """All profiles taken at one timestamp."""

    ts: int
    profile_secs: int = _json_name("profile_duration_secs")
    state: str = ""
    target_profiles: list[ProfileDetail] = field(default_factory=list)


@dataclass
class EstimateSize:
    """Estimated daily profile volume for the current topology."""

    instance_count: int
    profile_size: int


@dataclass
class Download:
    """A zip archive of profiles and the Content-Disposition to send with it."""

    content_disposition: str
    data: bytes


@dataclass
class Response:
    """An HTTP response produced by ProfilingApi.handle."""

    status: int
    body: bytes
    content_type: str = JSON_CONTENT_TYPE
    headers: dict[str, str] = field(default_factory=dict)


class ScrapeStatusSource(Protocol):
    """What the API needs from the scrape manager."""

    def current_scrape_components(self) -> list[Component]: ...

    def last_scrape_time(self) -> float: ...

    def running_status(self) -> ProfileStatus: ...


def _encode(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {
            f.metadata.get("json", f.name): _encode(getattr(value, f.name)) for f in fields(value)
        }
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    return value


def _dump_json(value: Any) -> bytes:
    text = json.dumps(_encode(value), separators=(",", ":"), ensure_ascii=False)
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return text.encode()


def _form_value(query: Query, name: str) -> str:
    value = query.get(name)
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value[0]) if value else ""


def _parse_int(name: str, text: str) -> int:
    if _INT_RE.fullmatch(text):
        value = int(text)
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
        reason = "value out of range"
    else:
        reason = "invalid syntax"
    quoted = json.dumps(text, ensure_ascii=False)
    raise ApiError(
        f"invalid param {name} value, error: strconv.ParseInt: parsing {quoted}: {reason}"
    )


def _apply_param(query: Query, param: BasicQueryParam, name: str, required: bool) -> None:
    value = _form_value(query, name)
    if not value:
        if required:
            raise ApiError(f"need param {name}")
        return
    if name == TS_PARAM:
        param.begin = param.end = _parse_int(name, value)
    elif name == BEGIN_TIME_PARAM:
        param.begin = _parse_int(name, value)
    elif name == END_TIME_PARAM:
        param.end = _parse_int(name, value)
    elif name == LIMIT_PARAM:
        param.limit = _parse_int(name, value)
    elif name == DATA_FORMAT_PARAM:
        if value not in (PROFILE_DATA_FORMAT_SVG, PROFILE_DATA_FORMAT_PROTOBUF):
            raise ApiError(
                f"invalid param {DATA_FORMAT_PARAM} value {value}, expected: "
                f"{PROFILE_DATA_FORMAT_SVG}, {PROFILE_DATA_FORMAT_PROTOBUF}"
            )
        param.data_format = value
    else:
        raise ApiError(f"unknown param {name}")


def build_query_param(
    query: Query, requires: Sequence[str], options: Sequence[str] = ()
) -> BasicQueryParam:
    """Read the required and optional parameters of a request into a query."""
    param = BasicQueryParam()
    for name in requires:
        _apply_param(query, param, name, True)
    for name in options:
        _apply_param(query, param, name, False)
    if not param.data_format:
        param.data_format = DEFAULT_DATA_FORMAT
    return param


def target_from_query(query: Query, param: BasicQueryParam, required: bool) -> None:
    """Add the target named by the request to ``param``, if it names one fully."""
    values = []
    for name in (PROFILE_TYPE_PARAM, COMPONENT_PARAM, ADDRESS_PARAM):
        value = _form_value(query, name)
        if not value:
            if required:
                raise ApiError(f"need param {name}")
            return
        values.append(value)
    kind, component, address = values
    param.targets.append(ProfileTarget(kind=kind, component=component, address=address))


def profile_estimate_size(component: Component) -> int:
    """Estimated bytes of one round of profiles of a component."""
    name = component.name
    if name == COMPONENT_PD:
        return 20 * 1024 + 25 * 1024 + 100 * 1024 + 30 * 1024
    if name in (COMPONENT_TIDB, COMPONENT_TICDC):
        return 100 * 1024 + 100 * 1024 + 400 * 1024 + 30 * 1024
    if name == COMPONENT_TIKV:
        return 200 * 1024
    if name == COMPONENT_TIFLASH:
        # TiFlash profiles are not scraped yet.
        return 0
    return DEFAULT_PROFILE_SIZE


def _status_from_error(error: str) -> ProfileStatus:
    return ProfileStatus.FINISHED if error == "" else ProfileStatus.FAILED


@dataclass
class _Group:
    counter: StatusCounter = field(default_factory=StatusCounter)
    targets: set[Target] = field(default_factory=set)

    def component_num(self) -> ComponentNum:
        num = ComponentNum()
        counts: dict[str, int] = {}
        for target in self.targets:
            counts[target.component] = counts.get(target.component, 0) + 1
        attrs = {
            COMPONENT_TIDB: "tidb",
            COMPONENT_PD: "pd",
            COMPONENT_TIKV: "tikv",
            COMPONENT_TIFLASH: "tiflash",
            COMPONENT_TICDC: "ticdc",
        }
        for component, count in counts.items():
            attr = attrs.get(component)
            if attr is not None:
                setattr(num, attr, count)
        return num


class ProfilingApi:
    """Answers the continuous profiling queries.

    ``topology_source`` returns the current cluster components and
    ``settings_source`` the current profiling settings. ``svg_converter``,
    when given, turns protobuf profile data into SVG; if it is missing or
    fails, profile data is returned as stored.
    """

    def __init__(
        self,
        storage: ProfileStorage,
        manager: ScrapeStatusSource,
        topology_source: Callable[[], Sequence[Component]],
        settings_source: Callable[[], ContinueProfilingConfig],
        svg_converter: SvgConverter | None = None,
    ) -> None:
        self._storage = storage
        self._manager = manager
        self._topology_source = topology_source
        self._settings_source = settings_source
        self._svg_converter = svg_converter

    def group_profiles(self, query: Query) -> list[GroupProfiles]:
        param = build_query_param(query, [BEGIN_TIME_PARAM, END_TIME_PARAM], [LIMIT_PARAM])
        groups: dict[int, _Group] = {}
        for plist in self._storage.query_group_profiles(param):
            target = Target(plist.target.component, plist.target.address)
            for ts, error in zip(plist.ts_list, plist.error_list):
                group = groups.setdefault(ts, _Group())
                group.counter.add_status(_status_from_error(error))
                group.targets.add(target)

        last_time = self._manager.last_scrape_time()
        last_ts = math.floor(last_time) if last_time > 0 else None
        profile_secs = self._settings_source().profile_seconds
        result = []
        for ts, group in groups.items():
            if ts == last_ts:
                status = self._manager.running_status()
            else:
                status = group.counter.final_status()
            result.append(
                GroupProfiles(
                    ts=ts,
                    profile_secs=profile_secs,
                    state=str(status),
                    comp_num=group.component_num(),
                )
            )
        result.sort(key=lambda group: group.ts, reverse=True)
        return result

    def group_profile_detail(self, query: Query) -> GroupProfileDetail:
        param = build_query_param(query, [TS_PARAM], [LIMIT_PARAM])
        counter = StatusCounter()
        details = []
        for plist in self._storage.query_group_profiles(param):
            if not plist.error_list:
                continue
            error = plist.error_list[0]
            status = _status_from_error(error)
            counter.add_status(status)
            details.append(
                ProfileDetail(
                    state=str(status),
                    error=error,
                    type=plist.target.kind,
                    target=Target(plist.target.component, plist.target.address),
                )
            )
        details.sort(key=lambda detail: detail.target.address)
        return GroupProfileDetail(
            ts=param.begin,
            profile_secs=self._settings_source().profile_seconds,
            state=str(counter.final_status()),
            target_profiles=details,
        )

    def single_profile_view(self, query: Query) -> bytes:
        param = build_query_param(query, [TS_PARAM], [LIMIT_PARAM, DATA_FORMAT_PARAM])
        target_from_query(query, param, True)
        found: list[bytes] = [b""]

        def keep(target: ProfileTarget, ts: int, data: bytes) -> None:
            found[0] = data

        self._storage.query_profile_data(param, keep)
        data = found[0]
        if param.data_format == PROFILE_DATA_FORMAT_SVG and self._svg_converter is not None:
            try:
                return self._svg_converter(data)
            except Exception:
                pass
        return data

    def download(self, query: Query) -> Download:
        if _form_value(query, BEGIN_TIME_PARAM):
            param = build_query_param(query, [BEGIN_TIME_PARAM, END_TIME_PARAM], [LIMIT_PARAM])
        else:
            param = build_query_param(query, [TS_PARAM], [LIMIT_PARAM])
        target_from_query(query, param, False)

        stamp = datetime.fromtimestamp(param.begin).strftime("%Y-%m-%d_%H-%M-%S")
        disposition = 'attachment; filename="profile"' + stamp + ".zip"

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:

            def add(target: ProfileTarget, ts: int, data: bytes) -> None:
                name = f"{target.kind}_{target.component}_{target.address}_{ts}"
                name = name.replace(":", "_")
                name += ".txt" if target.kind == PROFILE_KIND_GOROUTINE else ".proto"
                archive.writestr(self._zip_info(name), data)

            self._storage.query_profile_data(param, add)
            archive.writestr(self._zip_info("README.md"), DOWNLOAD_README.encode())
        return Download(content_disposition=disposition, data=buffer.getvalue())

    @staticmethod
    def _zip_info(name: str) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(name, date_time=time.localtime()[:6])
        info.compress_type = zipfile.ZIP_DEFLATED
        return info

    def components(self) -> list[Component]:
        return self._manager.current_scrape_components()

    def estimate_size(self) -> EstimateSize:
        components = list(self._topology_source())
        total = sum(profile_estimate_size(component) for component in components)
        interval = self._settings_source().interval_seconds
        return EstimateSize(
            instance_count=len(components),
            profile_size=(24 * 60 * 60 // interval) * total,
        )

    def handle(self, path: str, query: Query | str | None = None) -> Response:
        """Answer a request to ``path`` (relative to the API root)."""
        if query is None:
            query = {}
        elif isinstance(query, str):
            query = parse_qs(query, keep_blank_values=True)

        routes: dict[str, Callable[[Query], Response]] = {
            "/group_profiles": lambda q: Response(200, _dump_json(self.group_profiles(q))),
            "/group_profile/detail": lambda q: Response(
                200, _dump_json(self.group_profile_detail(q))
            ),
            "/single_profile/view": lambda q: Response(
                200, self.single_profile_view(q), "application/octet-stream"
            ),
            "/download": self._download_response,
            "/components": lambda q: Response(200, _dump_json(self.components())),
            "/estimate_size": lambda q: Response(200, _dump_json(self.estimate_size())),
        }
        route = routes.get(path)
        if route is None:
            return Response(404, b"404 page not found", "text/plain")
        try:
            return route(query)
        except Exception as exc:
            return Response(503, _dump_json({"message": str(exc), "status": "error"}))

    def _download_response(self, query: Query) -> Response:
        result = self.download(query)
        return Response(
            200,
            result.data,
            "application/zip",
            {"Content-Disposition": result.content_disposition},
        )