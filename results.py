from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from scenario import AggregatorPolicy, Scenario
from timeline import EventLogEntry, LaneRole, RunbookEntry, TimelineLane


class AggregationLocation(str, Enum):
    SERIAL = "serial"
    HOST = "host"
    SSD = "ssd"


@dataclass(frozen=True)
class KPIBreakdown:
    label: str
    value_us: float
    percent: float


@dataclass(frozen=True)
class KPIConfidenceInterval:
    margin: float
    lower: float
    upper: float


@dataclass(frozen=True)
class KPIConfidenceSet:
    confidence_level: float
    sample_count: int
    object_count: int
    source: str
    p50: KPIConfidenceInterval
    p95: KPIConfidenceInterval
    p99: KPIConfidenceInterval
    latency: KPIConfidenceInterval
    throughput: KPIConfidenceInterval


@dataclass
class SimulationKPIs:
    latency_us: float
    throughput_objs_per_sec: float
    p50_us: float
    p95_us: float
    p99_us: float
    critical_path: List[KPIBreakdown]
    confidence: Optional[KPIConfidenceSet] = None

    def critical_share(self, label_fragment: str) -> float:
        fragment = label_fragment.lower()
        for entry in self.critical_path:
            if fragment in entry.label.lower():
                return entry.percent
        return 0.0


@dataclass(frozen=True)
class AggregationTreeStage:
    id: str
    level: int
    label: str
    fan_in: int
    duration_us: float
    nodes: int


@dataclass(frozen=True)
class AggregationTree:
    location: AggregationLocation
    total_us: float
    depth: int
    stages: List[AggregationTreeStage]
    policy: Optional[AggregatorPolicy] = None


@dataclass(frozen=True)
class QueueHeatmapSample:
    time_us: float
    occupancy: int


@dataclass(frozen=True)
class QueueHeatmapLane:
    id: str
    label: str
    role: LaneRole
    samples: List[QueueHeatmapSample]
    peak: int


@dataclass(frozen=True)
class SimulationCalibrationSummary:
    profile_id: Optional[str]
    warnings: List[str]
    applied: bool
    use_profile_defaults: bool
    label: Optional[str] = None
    device: Optional[str] = None
    firmware: Optional[str] = None
    source: Optional[str] = None
    sample_count: Optional[int] = None
    tolerance_percent: Optional[float] = None
    mu_per_4k_us: Optional[float] = None
    sigma_per_4k_us: Optional[float] = None


@dataclass
class SimulationDerived:
    file_bytes: int
    chunk_bytes: int
    total_chunks: int
    stripes: int
    mdts_segments_per_chunk: int
    mdts_clamp: bool
    ssd_compute_critical_path_us: float
    ssd_aggregate_critical_path_us: float
    aggregator_total_us: float
    aggregator_per_stripe_us: float
    total_latency_us: float
    object_latencies_us: List[float]
    failures: int
    retries: int
    random_seed: int
    aggregator_location: AggregationLocation
    commands_per_object: int
    pipeline_fill_us: Optional[float] = None
    steady_state_us: Optional[float] = None
    calibration: Optional[SimulationCalibrationSummary] = None


@dataclass
class SimulationResult:
    scenario: Scenario
    derived: SimulationDerived
    lanes: List[TimelineLane]
    events: List[EventLogEntry]
    kpis: SimulationKPIs
    aggregation_tree: AggregationTree
    heatmap: List[QueueHeatmapLane]
    runbook: List[RunbookEntry] = field(default_factory=list)

    def lane(self, lane_id: str) -> TimelineLane:
        for lane in self.lanes:
            if lane.id == lane_id:
                return lane
        raise KeyError(f"Unknown lane id: {lane_id}")


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def result_to_dict(result: SimulationResult) -> Dict[str, Any]:
    """JSON-ready view of a result: enums as strings, tuples as lists."""
    return _plain(asdict(result))
