"""
KPI extraction shared by every solution orchestrator.

- nearest-rank percentiles over per-object latencies
- 95% confidence intervals projected onto a calibration's sample size
- queue-occupancy heatmaps from +1/-1 lane events
- aggregation-tree shape per solution
- latency histograms and per-lane compute boxplots for reporting
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from results import (
    AggregationLocation,
    AggregationTree,
    AggregationTreeStage,
    KPIBreakdown,
    KPIConfidenceInterval,
    KPIConfidenceSet,
    QueueHeatmapLane,
    QueueHeatmapSample,
    SimulationCalibrationSummary,
    SimulationKPIs,
)
from scenario import AggregatorPolicy, Scenario, Solution
from timeline import LaneRole, OccupancyEvent, SegmentKind, TimelineLane
from utils import log2_safe, objects_per_second, to_percent

Z_95 = 1.96
P95_MARGIN_MULTIPLIER = 1.4
P99_MARGIN_MULTIPLIER = 2.1
LOW_SAMPLE_WARNING_THRESHOLD = 1000


def percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile on a sorted copy; 0.0 for an empty list."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(len(ordered) - 1, max(0, math.ceil((pct / 100.0) * len(ordered)) - 1))
    return ordered[index]


def standard_deviation(values: Sequence[float]) -> float:
    if len(values) <= 1:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float), ddof=1))


def breakdown(label: str, value_us: float, total_us: float) -> KPIBreakdown:
    return KPIBreakdown(label=label, value_us=value_us, percent=to_percent(value_us, total_us))


def build_kpis(
    scenario: Scenario,
    total_latency_us: float,
    object_latencies: Sequence[float],
    critical_path: List[KPIBreakdown],
) -> SimulationKPIs:
    return SimulationKPIs(
        latency_us=total_latency_us,
        throughput_objs_per_sec=objects_per_second(scenario.objects_in_flight, total_latency_us),
        p50_us=percentile(object_latencies, 50),
        p95_us=percentile(object_latencies, 95),
        p99_us=percentile(object_latencies, 99),
        critical_path=critical_path,
    )


def build_calibration_summary(scenario: Scenario) -> Optional[SimulationCalibrationSummary]:
    calibration = scenario.calibration
    if calibration is None:
        return None
    warnings = list(calibration.warnings)
    sample_count = calibration.sample_count or 0
    if 0 < sample_count < LOW_SAMPLE_WARNING_THRESHOLD:
        warnings.append("Calibration sample size below 1k commands; confidence may be weak.")
    if calibration.sigma_per_4k_us is None or calibration.sigma_per_4k_us < 0:
        warnings.append("Calibration sigma missing - jitter falls back to scenario input.")
    return SimulationCalibrationSummary(
        profile_id=calibration.profile_id,
        warnings=warnings,
        applied=bool(calibration.profile_id),
        use_profile_defaults=calibration.use_profile_defaults,
        label=calibration.label,
        device=calibration.device,
        firmware=calibration.firmware,
        source=calibration.source,
        sample_count=calibration.sample_count,
        tolerance_percent=calibration.tolerance_percent,
        mu_per_4k_us=calibration.mu_per_4k_us,
        sigma_per_4k_us=calibration.sigma_per_4k_us,
    )


def compute_confidence(
    scenario: Scenario,
    commands_per_object: int,
    object_latencies: Sequence[float],
    kpis: SimulationKPIs,
) -> Optional[KPIConfidenceSet]:
    """
    95% normal-approximation intervals, only when a calibration with a known
    sample count is attached. The simulated spread is shrunk by
    sqrt(observed / estimated) objects, where the estimate is how many whole
    objects the calibration's command count represents.
    """
    calibration = scenario.calibration
    if calibration is None or not calibration.sample_count or calibration.sample_count <= 0:
        return None
    if not object_latencies:
        return None
    observed = len(object_latencies)
    std_dev = standard_deviation(object_latencies)
    if not math.isfinite(std_dev) or std_dev == 0:
        return None

    sample_count = max(1, int(calibration.sample_count))
    estimated = max(observed, sample_count // max(commands_per_object, 1))
    if estimated <= 1:
        return None

    observed_margin = (std_dev / math.sqrt(observed)) * Z_95
    if not math.isfinite(observed_margin) or observed_margin <= 0:
        return None
    margin = observed_margin * math.sqrt(observed / estimated)

    def interval(value: float, multiplier: float) -> KPIConfidenceInterval:
        scaled = margin * multiplier
        return KPIConfidenceInterval(
            margin=scaled, lower=max(0.0, value - scaled), upper=value + scaled
        )

    latency = interval(kpis.latency_us, 1.0)
    throughput_margin = (
        kpis.throughput_objs_per_sec * (latency.margin / kpis.latency_us)
        if kpis.latency_us > 0
        else 0.0
    )
    return KPIConfidenceSet(
        confidence_level=0.95,
        sample_count=sample_count,
        object_count=estimated,
        source="calibration",
        p50=interval(kpis.p50_us, 1.0),
        p95=interval(kpis.p95_us, P95_MARGIN_MULTIPLIER),
        p99=interval(kpis.p99_us, P99_MARGIN_MULTIPLIER),
        latency=latency,
        throughput=KPIConfidenceInterval(
            margin=throughput_margin,
            lower=max(0.0, kpis.throughput_objs_per_sec - throughput_margin),
            upper=kpis.throughput_objs_per_sec + throughput_margin,
        ),
    )


def build_heatmap_lane(
    lane_id: str,
    label: str,
    role: LaneRole,
    events: Sequence[OccupancyEvent],
    total_us: float,
) -> QueueHeatmapLane:
    # Releases sort ahead of arrivals at the same instant.
    ordered = sorted(events, key=lambda e: (e.time_us, e.delta))
    samples = [QueueHeatmapSample(0.0, 0)]
    occupancy = 0
    last_time = 0.0
    for event in ordered:
        if event.time_us > last_time:
            samples.append(QueueHeatmapSample(event.time_us, occupancy))
            last_time = event.time_us
        occupancy = max(0, occupancy + event.delta)
        samples.append(QueueHeatmapSample(event.time_us, occupancy))
    if last_time < total_us:
        samples.append(QueueHeatmapSample(total_us, occupancy))
    peak = max(sample.occupancy for sample in samples)
    return QueueHeatmapLane(id=lane_id, label=label, role=role, samples=samples, peak=peak)


def build_aggregation_tree(
    scenario: Scenario,
    stripes: int,
    aggregator_per_stripe_us: float,
    ssd_aggregation_total_us: float,
    pipeline_fill_us: float = 0.0,
    steady_state_us: float = 0.0,
    serial_stage_us: float = 0.0,
) -> AggregationTree:
    width = scenario.stripe_width

    if scenario.solution == Solution.SERIAL:
        # One seed hand-off per device: a chain of single fan-in stages.
        stages = [
            AggregationTreeStage(
                id=f"serial-{level}",
                level=level,
                label=f"Seed SSD{level}",
                fan_in=1,
                duration_us=serial_stage_us,
                nodes=1,
            )
            for level in range(width)
        ]
        return AggregationTree(
            location=AggregationLocation.SERIAL,
            total_us=max(pipeline_fill_us, steady_state_us),
            depth=len(stages),
            stages=stages,
        )

    if scenario.solution == Solution.HOST_AGGREGATE:
        depth = max(1, math.ceil(log2_safe(width)))
        per_stage = aggregator_per_stripe_us / depth
        stages: List[AggregationTreeStage] = []
        active = width
        level = 0
        while active > 1:
            nodes = math.ceil(active / 2)
            stages.append(
                AggregationTreeStage(
                    id=f"host-{level}",
                    level=level,
                    label=f"Host combine stage {level + 1}",
                    fan_in=min(2, active),
                    duration_us=per_stage,
                    nodes=nodes,
                )
            )
            active = nodes
            level += 1
        if not stages:
            stages.append(
                AggregationTreeStage(
                    id="host-0",
                    level=0,
                    label="Host combine",
                    fan_in=width,
                    duration_us=aggregator_per_stripe_us,
                    nodes=1,
                )
            )
        return AggregationTree(
            location=AggregationLocation.HOST,
            total_us=aggregator_per_stripe_us,
            depth=len(stages),
            stages=stages,
        )

    policy_label = (
        "round-robin" if scenario.aggregator_policy == AggregatorPolicy.ROUND_ROBIN else "pinned"
    )
    return AggregationTree(
        location=AggregationLocation.SSD,
        total_us=ssd_aggregation_total_us,
        depth=1,
        stages=[
            AggregationTreeStage(
                id="ssd-agg",
                level=0,
                label=f"SSD combine ({policy_label})",
                fan_in=width,
                duration_us=aggregator_per_stripe_us,
                nodes=stripes,
            )
        ],
        policy=scenario.aggregator_policy,
    )


@dataclass(frozen=True)
class LatencyDistributionBin:
    index: int
    start: float
    end: float
    count: int
    density: float
    cumulative: float


@dataclass(frozen=True)
class LatencyDistributionSummary:
    bins: List[LatencyDistributionBin]
    min: float
    max: float
    mean: float
    std_dev: float
    total: int
    peak_density: float


def compute_latency_distribution(
    latencies_us: Sequence[float], desired_bins: int = 20
) -> LatencyDistributionSummary:
    if not latencies_us:
        return LatencyDistributionSummary([], 0.0, 0.0, 0.0, 0.0, 0, 0.0)

    values = np.sort(np.asarray(latencies_us, dtype=float))
    total = int(values.size)
    lo = float(values[0])
    hi = float(values[-1])
    span = max(hi - lo, 1.0)
    bin_count = max(1, min(desired_bins, total))
    bin_size = span / bin_count

    if bin_count == 1:
        counts = np.array([total])
    else:
        ratios = np.clip((values - lo) / span, 0.0, 1.0)
        indices = np.minimum(bin_count - 1, np.floor(ratios * bin_count).astype(int))
        counts = np.bincount(indices, minlength=bin_count)

    cumulative = np.cumsum(counts)
    bins = []
    for index in range(bin_count):
        start = lo if index == 0 else lo + index * bin_size
        end = hi if index == bin_count - 1 else start + bin_size
        bins.append(
            LatencyDistributionBin(
                index=index,
                start=start,
                end=end,
                count=int(counts[index]),
                density=float(counts[index]) / total,
                cumulative=float(cumulative[index]) / total,
            )
        )
    return LatencyDistributionSummary(
        bins=bins,
        min=lo,
        max=hi,
        mean=float(values.mean()),
        std_dev=float(values.std()),
        total=total,
        peak_density=max(b.density for b in bins),
    )


@dataclass(frozen=True)
class LaneBoxplotStats:
    lane_id: str
    label: str
    sample_count: int
    min: float
    q1: float
    median: float
    q3: float
    max: float


def compute_lane_boxplots(lanes: Sequence[TimelineLane]) -> List[LaneBoxplotStats]:
    plots: List[LaneBoxplotStats] = []
    for lane in lanes:
        if lane.role != LaneRole.SSD:
            continue
        durations = [
            seg.duration_us
            for seg in lane.segments
            if seg.kind == SegmentKind.COMPUTE and seg.duration_us > 0
        ]
        if not durations:
            continue
        q1, median, q3 = np.percentile(np.asarray(durations), [25, 50, 75])
        plots.append(
            LaneBoxplotStats(
                lane_id=lane.id,
                label=lane.label,
                sample_count=len(durations),
                min=min(durations),
                q1=float(q1),
                median=float(median),
                q3=float(q3),
                max=max(durations),
            )
        )
    return plots
