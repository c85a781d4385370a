from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SegmentKind(str, Enum):
    IO = "io"                  # command issue or completion round trip
    WAIT = "wait"              # queued behind busy device slots
    COMPUTE = "compute"
    RETRY = "retry"            # backoff after a failed attempt
    AGGREGATION = "aggregation"
    FINALIZE = "finalize"


class LaneRole(str, Enum):
    SSD = "ssd"
    HOST = "host"
    AGGREGATOR = "aggregator"


class EventType(str, Enum):
    INFO = "info"
    WARNING = "warning"


HOST_LANE_ID = "host"


def ssd_lane_id(lane_index: int) -> str:
    return f"ssd-{lane_index}"


def ssd_lane_label(lane_index: int) -> str:
    return f"SSD{lane_index}"


@dataclass(frozen=True)
class TimelineSegment:
    start_us: float
    end_us: float
    label: str
    kind: SegmentKind
    chunk_index: Optional[int] = None
    command_index: Optional[int] = None

    @property
    def duration_us(self) -> float:
        return self.end_us - self.start_us


def make_segment(
    start_us: float,
    end_us: float,
    label: str,
    kind: SegmentKind,
    chunk_index: Optional[int] = None,
    command_index: Optional[int] = None,
) -> Optional[TimelineSegment]:
    # Empty or inverted intervals are never emitted.
    if not (math.isfinite(start_us) and math.isfinite(end_us)) or end_us <= start_us:
        return None
    return TimelineSegment(start_us, end_us, label, kind, chunk_index, command_index)


@dataclass
class TimelineLane:
    id: str
    label: str
    role: LaneRole
    segments: List[TimelineSegment] = field(default_factory=list)
    total_us: float = 0.0
    is_critical: bool = False

    def add(self, segment: Optional[TimelineSegment]) -> bool:
        if segment is None:
            return False
        self.segments.append(segment)
        return True


@dataclass(frozen=True)
class OccupancyEvent:
    time_us: float
    delta: int


@dataclass(frozen=True)
class EventLogEntry:
    time_us: float
    message: str
    type: EventType = EventType.INFO
    related_object: Optional[int] = None
    lane_id: Optional[str] = None
    chunk_index: Optional[int] = None
    attempt: Optional[int] = None
    delta_us: Optional[int] = None


@dataclass(frozen=True)
class RunbookEntry:
    id: str
    time_us: float
    object_index: int
    lane_id: str
    chunk_index: int
    attempt: int
    retry_delay_us: float
    additional_latency_us: float
    message: str


def sort_events(events: List[EventLogEntry]) -> List[EventLogEntry]:
    # Stable: entries sharing a timestamp keep their emission order.
    return sorted(events, key=lambda entry: entry.time_us)


def sort_runbook(entries: List[RunbookEntry]) -> List[RunbookEntry]:
    return sorted(entries, key=lambda entry: entry.time_us)


def flag_critical_lanes(lanes: List[TimelineLane], tolerance_us: float = 1e-6) -> None:
    if not lanes:
        return
    longest = max(lane.total_us for lane in lanes)
    for lane in lanes:
        if lane.total_us >= longest - tolerance_us:
            lane.is_critical = True
