"""Core value types for continuous profiling: targets, query parameters and statuses."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

PROFILE_KIND_PROFILE = "profile"
PROFILE_KIND_GOROUTINE = "goroutine"
PROFILE_KIND_HEAP = "heap"
PROFILE_KIND_MUTEX = "mutex"
PROFILE_DATA_FORMAT_SVG = "svg"
PROFILE_DATA_FORMAT_PROTOBUF = "protobuf"


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


class ProfileStatus(IntEnum):
    """State of a single profile or of a group of profiles."""

    FINISHED = 0
    FAILED = 1
    RUNNING = 2
    FINISHED_WITH_ERROR = 3

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class ProfileTarget:
    """Identifies what was profiled: the profile kind, component and address."""

    kind: str
    component: str
    address: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "component": self.component, "address": self.address}


@dataclass
class TargetInfo:
    """Storage identity of a profile target and when it was last scraped."""

    id: int
    last_scrape_ts: int


@dataclass
class BasicQueryParam:
    """Parameters of a profile query; times are Unix seconds."""

    begin: int = 0
    end: int = 0
    limit: int = 0
    targets: list[ProfileTarget] = field(default_factory=list)
    data_format: str = ""

    def to_json(self) -> str:
        return _compact_json(
            {
                "begin_time": self.begin,
                "end_time": self.end,
                "limit": self.limit,
                "targets": [target.to_dict() for target in self.targets],
                "data_format": self.data_format,
            }
        )


@dataclass
class ProfileList:
    """Profile timestamps of one target, newest first, with their error strings."""

    target: ProfileTarget
    error_list: list[str] = field(default_factory=list)
    ts_list: list[int] = field(default_factory=list)

    def to_json(self) -> str:
        return _compact_json({"target": self.target.to_dict(), "timestamp_list": self.ts_list})


@dataclass
class StatusCounter:
    """Counts statuses and folds them into one overall status."""

    finished_count: int = 0
    running_count: int = 0
    failed_count: int = 0
    total_count: int = 0

    def add_status(self, status: int) -> None:
        self.total_count += 1
        if status == ProfileStatus.FINISHED:
            self.finished_count += 1
        elif status == ProfileStatus.FAILED:
            self.failed_count += 1
        elif status == ProfileStatus.RUNNING:
            self.running_count += 1

    def final_status(self) -> ProfileStatus:
        if self.finished_count == self.total_count:
            return ProfileStatus.FINISHED
        if self.failed_count == self.total_count:
            return ProfileStatus.FAILED
        if self.running_count > 0:
            return ProfileStatus.RUNNING
        return ProfileStatus.FINISHED_WITH_ERROR


@dataclass
class ContinueProfilingConfig:
    """Settings of continuous profiling; all durations are in seconds."""

    enable: bool = False
    profile_seconds: int = 10
    interval_seconds: int = 60
    timeout_seconds: int = 120
    data_retention_seconds: int = 3 * 24 * 60 * 60