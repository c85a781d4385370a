"""
Solution orchestrators.

- S1 (serial): one global cursor walks every command in stripe order, so
  command N starts only after command N-1 has completed (CRC seed chaining).
- S2 (host aggregation): lanes run in parallel; the host combines each
  object's stripes once the slowest contributing lane drains.
- S3 (SSD aggregation): lanes run in parallel; each stripe's combine step is
  appended to a device lane (pinned to SSD0 or round-robin) and competes with
  that device's CRC work.

`simulate()` is the single entry point; handlers are selected by `Solution`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from analytics import (
    breakdown,
    build_aggregation_tree,
    build_calibration_summary,
    build_heatmap_lane,
    build_kpis,
    compute_confidence,
)
from lane_simulator import (
    CommandCompletion,
    MergedLaneResults,
    attempt_fails,
    kib_label,
    merge_lane_results,
    record_retry,
    retry_delay_us,
    simulate_lane,
)
from partitioner import (
    ChunkInfo,
    build_chunk_infos,
    build_lane_jobs,
    chunk_bytes,
    commands_per_object,
    file_bytes,
    stripe_count,
)
from results import (
    AggregationLocation,
    AggregationTree,
    KPIBreakdown,
    QueueHeatmapLane,
    SimulationDerived,
    SimulationKPIs,
    SimulationResult,
)
from sampler import Mulberry32, sample_service_time
from scenario import AggregatorPolicy, Scenario, Solution, normalize_scenario
from timeline import (
    HOST_LANE_ID,
    EventLogEntry,
    EventType,
    LaneRole,
    OccupancyEvent,
    RunbookEntry,
    SegmentKind,
    TimelineLane,
    flag_critical_lanes,
    make_segment,
    sort_events,
    sort_runbook,
    ssd_lane_id,
    ssd_lane_label,
)
from utils import CRC_UNIT_BYTES, log2_safe

logger = logging.getLogger(__name__)

SERIAL_START_MESSAGE = "Seeded serial CRC pipeline - commands execute strictly in order."


@dataclass
class PartitionedRun:
    """Everything derived from the scenario before any lane is simulated."""

    scenario: Scenario
    file_bytes: int
    chunk_bytes: int
    chunks: List[ChunkInfo]
    stripes: int
    rng: Mulberry32

    @property
    def commands_per_object(self) -> int:
        return commands_per_object(self.chunks)

    @property
    def mdts_segments_per_chunk(self) -> int:
        return max(len(chunk.segments) for chunk in self.chunks)

    @property
    def mdts_clamp(self) -> bool:
        return self.chunk_bytes > self.scenario.mdts_bytes


@dataclass
class HostTimeline:
    """Serialized host work: aggregation and per-object finalize intervals."""

    lane: TimelineLane = field(
        default_factory=lambda: TimelineLane(
            id=HOST_LANE_ID, label="Host", role=LaneRole.HOST, is_critical=True
        )
    )
    occupancy: List[OccupancyEvent] = field(default_factory=list)
    events: List[EventLogEntry] = field(default_factory=list)
    cursor: float = 0.0

    def busy(self, start_us: float, end_us: float, label: str, kind: SegmentKind) -> None:
        if self.lane.add(make_segment(start_us, end_us, label, kind)):
            self.occupancy.append(OccupancyEvent(start_us, 1))
            self.occupancy.append(OccupancyEvent(end_us, -1))

    def finalize(self, object_index: int, ready_us: float, overhead_us: float) -> float:
        start = max(ready_us, self.cursor)
        end = start + overhead_us
        self.busy(start, end, f"Validation · Object {object_index + 1}", SegmentKind.FINALIZE)
        self.events.append(
            EventLogEntry(
                time_us=end,
                message=f"Validation complete for object {object_index + 1}.",
                type=EventType.INFO,
                related_object=object_index,
            )
        )
        self.cursor = end
        self.lane.total_us = end
        return end

    def heatmap(self) -> QueueHeatmapLane:
        return build_heatmap_lane(
            self.lane.id, self.lane.label, LaneRole.HOST, self.occupancy, self.lane.total_us
        )


def _readiness(
    completions: Sequence[CommandCompletion], objects: int
) -> Tuple[Dict[Tuple[int, int], float], List[float]]:
    """Latest completion per (object, stripe) and per object."""
    stripe_ready: Dict[Tuple[int, int], float] = {}
    object_ready = [0.0] * objects
    for completion in completions:
        key = (completion.object_index, completion.stripe_index)
        stripe_ready[key] = max(stripe_ready.get(key, 0.0), completion.completion_time_us)
        object_ready[completion.object_index] = max(
            object_ready[completion.object_index], completion.completion_time_us
        )
    return stripe_ready, object_ready


def _run_lanes(run: PartitionedRun) -> MergedLaneResults:
    # Lanes draw from the shared generator one after another, lane 0 first.
    lane_jobs = build_lane_jobs(run.scenario, run.chunks, run.stripes)
    return merge_lane_results(
        [
            simulate_lane(run.scenario, lane_index, jobs, run.rng)
            for lane_index, jobs in enumerate(lane_jobs)
        ]
    )


def _lane_heatmaps(
    lanes: Sequence[TimelineLane],
    occupancy: Dict[str, List[OccupancyEvent]],
    extra: Optional[Dict[str, List[OccupancyEvent]]] = None,
) -> List[QueueHeatmapLane]:
    heatmap = []
    for lane in lanes:
        events = list(occupancy.get(lane.id, []))
        if extra:
            events.extend(extra.get(lane.id, []))
        heatmap.append(build_heatmap_lane(lane.id, lane.label, LaneRole.SSD, events, lane.total_us))
    return heatmap


def _assemble(
    run: PartitionedRun,
    lanes: List[TimelineLane],
    events: List[EventLogEntry],
    runbook: List[RunbookEntry],
    host: HostTimeline,
    object_latencies: List[float],
    critical_path: List[KPIBreakdown],
    aggregation_tree: AggregationTree,
    heatmap: List[QueueHeatmapLane],
    location: AggregationLocation,
    failures: int,
    retries: int,
    ssd_compute_critical_path_us: float,
    ssd_aggregate_critical_path_us: float = 0.0,
    aggregator_total_us: float = 0.0,
    aggregator_per_stripe_us: float = 0.0,
    pipeline_fill_us: Optional[float] = None,
    steady_state_us: Optional[float] = None,
) -> SimulationResult:
    scenario = run.scenario
    total_latency_us = host.cursor
    kpis: SimulationKPIs = build_kpis(scenario, total_latency_us, object_latencies, critical_path)
    kpis.confidence = compute_confidence(
        scenario, run.commands_per_object, object_latencies, kpis
    )
    derived = SimulationDerived(
        file_bytes=run.file_bytes,
        chunk_bytes=run.chunk_bytes,
        total_chunks=len(run.chunks),
        stripes=run.stripes,
        mdts_segments_per_chunk=run.mdts_segments_per_chunk,
        mdts_clamp=run.mdts_clamp,
        ssd_compute_critical_path_us=ssd_compute_critical_path_us,
        ssd_aggregate_critical_path_us=ssd_aggregate_critical_path_us,
        aggregator_total_us=aggregator_total_us,
        aggregator_per_stripe_us=aggregator_per_stripe_us,
        total_latency_us=total_latency_us,
        object_latencies_us=object_latencies,
        failures=failures,
        retries=retries,
        random_seed=scenario.random_seed,
        aggregator_location=location,
        commands_per_object=run.commands_per_object,
        pipeline_fill_us=pipeline_fill_us,
        steady_state_us=steady_state_us,
        calibration=build_calibration_summary(scenario),
    )
    heatmap.append(host.heatmap())
    logger.info(
        "%s: %d objects in %.1f us (p99 %.1f us, %d retries)",
        scenario.solution.value,
        scenario.objects_in_flight,
        total_latency_us,
        kpis.p99_us,
        retries,
    )
    return SimulationResult(
        scenario=scenario,
        derived=derived,
        lanes=lanes + [host.lane],
        events=sort_events(events + host.events),
        kpis=kpis,
        aggregation_tree=aggregation_tree,
        heatmap=heatmap,
        runbook=sort_runbook(runbook),
    )


def simulate_serial(run: PartitionedRun) -> SimulationResult:
    scenario = run.scenario
    rng = run.rng
    nvme = scenario.nvme_latency_us
    lanes = [
        TimelineLane(id=ssd_lane_id(i), label=ssd_lane_label(i), role=LaneRole.SSD)
        for i in range(scenario.stripe_width)
    ]
    occupancy: Dict[str, List[OccupancyEvent]] = {lane.id: [] for lane in lanes}
    events = [EventLogEntry(time_us=0.0, message=SERIAL_START_MESSAGE, type=EventType.INFO)]
    runbook: List[RunbookEntry] = []
    host = HostTimeline()
    object_latencies: List[float] = []
    failures = 0
    cursor = 0.0

    for object_index in range(scenario.objects_in_flight):
        for chunk in run.chunks:
            lane = lanes[chunk.lane_index]
            lane_occupancy = occupancy[lane.id]
            for segment_index, size in enumerate(chunk.segments):
                attempt = 0
                while True:
                    attempt += 1
                    label = kib_label(size)
                    issue_start = cursor
                    issue_end = issue_start + nvme
                    lane.add(
                        make_segment(
                            issue_start,
                            issue_end,
                            f"Issue {label} (try {attempt})",
                            SegmentKind.IO,
                            chunk.chunk_index,
                            segment_index,
                        )
                    )
                    lane_occupancy.append(OccupancyEvent(issue_start, 1))

                    compute_us = sample_service_time(scenario, size, rng)
                    compute_end = issue_end + compute_us
                    lane.add(
                        make_segment(
                            issue_end,
                            compute_end,
                            f"CRC {label} (try {attempt})",
                            SegmentKind.COMPUTE,
                            chunk.chunk_index,
                            segment_index,
                        )
                    )
                    completion_end = compute_end + nvme
                    lane.add(
                        make_segment(
                            compute_end,
                            completion_end,
                            f"Completion (try {attempt})",
                            SegmentKind.IO,
                            chunk.chunk_index,
                            segment_index,
                        )
                    )
                    lane_occupancy.append(OccupancyEvent(completion_end, -1))
                    lane.total_us = max(lane.total_us, completion_end)
                    cursor = completion_end

                    if not attempt_fails(scenario, attempt, rng):
                        break

                    failures += 1
                    delay = retry_delay_us(scenario, attempt)
                    retry_end = completion_end + delay
                    lane.add(
                        make_segment(
                            completion_end,
                            retry_end,
                            f"Retry backoff {round(delay)} µs",
                            SegmentKind.RETRY,
                            chunk.chunk_index,
                            segment_index,
                        )
                    )
                    record_retry(
                        lane.id,
                        chunk.lane_index,
                        object_index,
                        chunk.chunk_index,
                        attempt,
                        completion_end,
                        delay,
                        compute_us + 2 * nvme,
                        events,
                        runbook,
                    )
                    cursor = retry_end

        host.cursor = cursor
        latency = host.finalize(object_index, cursor, scenario.orchestration_overhead_us)
        object_latencies.append(latency)
        cursor = latency

    flag_critical_lanes(lanes, tolerance_us=0.0)

    total = host.cursor
    orchestration = scenario.orchestration_overhead_us * scenario.objects_in_flight
    critical_path = [
        breakdown("Serial CRC chain", total - orchestration, total),
        breakdown("Orchestration", orchestration, total),
    ]

    # Per-command estimate used to describe the seed chain's fill and steady state.
    service_estimate = 2 * nvme + scenario.crc_per_4k_us * (run.chunk_bytes / CRC_UNIT_BYTES)
    pipeline_fill = service_estimate * min(scenario.stripe_width, len(run.chunks))
    steady_state = service_estimate * len(run.chunks)
    tree = build_aggregation_tree(
        scenario,
        run.stripes,
        0.0,
        0.0,
        pipeline_fill_us=pipeline_fill,
        steady_state_us=steady_state,
        serial_stage_us=service_estimate,
    )

    return _assemble(
        run,
        lanes,
        events,
        runbook,
        host,
        object_latencies,
        critical_path,
        tree,
        _lane_heatmaps(lanes, occupancy),
        AggregationLocation.SERIAL,
        failures=failures,
        retries=failures,
        ssd_compute_critical_path_us=total,
        pipeline_fill_us=pipeline_fill,
        steady_state_us=steady_state,
    )


def host_aggregation_per_stripe_us(scenario: Scenario) -> float:
    coeffs = scenario.host_coefficients
    width = scenario.stripe_width
    return coeffs.c0 + coeffs.c1 * width + coeffs.c2 * log2_safe(width)


def ssd_aggregation_per_stripe_us(scenario: Scenario) -> float:
    coeffs = scenario.ssd_coefficients
    return coeffs.d0 + coeffs.d1 * scenario.stripe_width


def simulate_parallel_host(run: PartitionedRun) -> SimulationResult:
    scenario = run.scenario
    merged = _run_lanes(run)
    _, object_ready = _readiness(merged.completions, scenario.objects_in_flight)

    per_stripe = host_aggregation_per_stripe_us(scenario)
    per_object = per_stripe * run.stripes

    host = HostTimeline()
    object_latencies: List[float] = []
    for object_index in range(scenario.objects_in_flight):
        agg_start = max(object_ready[object_index], host.cursor)
        agg_end = agg_start + per_object
        if per_object > 0:
            host.busy(
                agg_start,
                agg_end,
                f"Host aggregation · Object {object_index + 1}",
                SegmentKind.AGGREGATION,
            )
            host.events.append(
                EventLogEntry(
                    time_us=agg_start,
                    message=f"Host begins aggregation for object {object_index + 1}.",
                    related_object=object_index,
                )
            )
            host.events.append(
                EventLogEntry(
                    time_us=agg_end,
                    message=f"Host aggregation complete for object {object_index + 1}.",
                    related_object=object_index,
                )
            )
        host.cursor = agg_end
        object_latencies.append(
            host.finalize(object_index, agg_end, scenario.orchestration_overhead_us)
        )

    flag_critical_lanes(merged.lanes)

    total = host.cursor
    compute_critical = max(object_ready)
    aggregation_total = per_object * scenario.objects_in_flight
    orchestration = scenario.orchestration_overhead_us * scenario.objects_in_flight
    critical_path = [
        breakdown("SSD fan-out", compute_critical, total),
        breakdown("Host aggregation", aggregation_total, total),
        breakdown("Orchestration", orchestration, total),
    ]

    return _assemble(
        run,
        merged.lanes,
        merged.events,
        merged.runbook,
        host,
        object_latencies,
        critical_path,
        build_aggregation_tree(scenario, run.stripes, per_stripe, 0.0),
        _lane_heatmaps(merged.lanes, merged.occupancy),
        AggregationLocation.HOST,
        failures=merged.failures,
        retries=merged.retries,
        ssd_compute_critical_path_us=compute_critical,
        aggregator_total_us=aggregation_total,
        aggregator_per_stripe_us=per_stripe,
    )


def aggregator_lane_index(scenario: Scenario, object_index: int, stripe_index: int, stripes: int) -> int:
    if scenario.aggregator_policy == AggregatorPolicy.ROUND_ROBIN:
        return (object_index * stripes + stripe_index) % scenario.stripe_width
    return 0


def simulate_parallel_ssd(run: PartitionedRun) -> SimulationResult:
    scenario = run.scenario
    merged = _run_lanes(run)
    stripe_ready, object_compute_ready = _readiness(
        merged.completions, scenario.objects_in_flight
    )

    per_stripe = ssd_aggregation_per_stripe_us(scenario)
    aggregator_cursor = [0.0] * scenario.stripe_width
    aggregator_occupancy: Dict[str, List[OccupancyEvent]] = {
        lane.id: [] for lane in merged.lanes
    }
    aggregator_events: List[EventLogEntry] = []
    object_aggregated = [0.0] * scenario.objects_in_flight

    for object_index in range(scenario.objects_in_flight):
        for stripe_index in range(run.stripes):
            lane_index = aggregator_lane_index(scenario, object_index, stripe_index, run.stripes)
            lane = merged.lanes[lane_index]
            start = max(
                aggregator_cursor[lane_index], stripe_ready.get((object_index, stripe_index), 0.0)
            )
            end = start + per_stripe
            lane.add(
                make_segment(
                    start,
                    end,
                    f"SSD aggregation · Stripe {stripe_index + 1} (object {object_index + 1})",
                    SegmentKind.AGGREGATION,
                )
            )
            lane.total_us = max(lane.total_us, end)
            aggregator_cursor[lane_index] = end
            aggregator_events.append(
                EventLogEntry(
                    time_us=start,
                    message=(
                        f"SSD{lane_index} aggregates stripe {stripe_index + 1} "
                        f"for object {object_index + 1}."
                    ),
                    related_object=object_index,
                    lane_id=lane.id,
                )
            )
            aggregator_occupancy[lane.id].append(OccupancyEvent(start, 1))
            aggregator_occupancy[lane.id].append(OccupancyEvent(end, -1))
            object_aggregated[object_index] = max(object_aggregated[object_index], end)

    host = HostTimeline()
    object_latencies = [
        host.finalize(object_index, object_aggregated[object_index], scenario.orchestration_overhead_us)
        for object_index in range(scenario.objects_in_flight)
    ]

    flag_critical_lanes(merged.lanes)

    total = host.cursor
    compute_finish = max(object_compute_ready)
    aggregate_critical = max(0.0, max(object_aggregated) - compute_finish)
    orchestration = scenario.orchestration_overhead_us * scenario.objects_in_flight
    critical_path = [
        breakdown("SSD fan-out", compute_finish, total),
        breakdown("SSD aggregation", aggregate_critical, total),
        breakdown("Orchestration", orchestration, total),
    ]

    return _assemble(
        run,
        merged.lanes,
        merged.events + aggregator_events,
        merged.runbook,
        host,
        object_latencies,
        critical_path,
        build_aggregation_tree(scenario, run.stripes, per_stripe, per_stripe * run.stripes),
        _lane_heatmaps(merged.lanes, merged.occupancy, aggregator_occupancy),
        AggregationLocation.SSD,
        failures=merged.failures,
        retries=merged.retries,
        ssd_compute_critical_path_us=compute_finish,
        ssd_aggregate_critical_path_us=aggregate_critical,
        aggregator_total_us=per_stripe * run.stripes * scenario.objects_in_flight,
        aggregator_per_stripe_us=per_stripe,
    )


SOLUTION_HANDLERS: Dict[Solution, Callable[[PartitionedRun], SimulationResult]] = {
    Solution.SERIAL: simulate_serial,
    Solution.HOST_AGGREGATE: simulate_parallel_host,
    Solution.SSD_AGGREGATE: simulate_parallel_ssd,
}


def partition(scenario: Scenario) -> PartitionedRun:
    """Normalize the scenario and lay out its chunks; seeds a fresh generator."""
    scenario = normalize_scenario(scenario)
    total_file_bytes = file_bytes(scenario)
    total_chunk_bytes = chunk_bytes(scenario)
    chunks = build_chunk_infos(scenario, total_file_bytes, total_chunk_bytes)
    return PartitionedRun(
        scenario=scenario,
        file_bytes=total_file_bytes,
        chunk_bytes=total_chunk_bytes,
        chunks=chunks,
        stripes=stripe_count(scenario, chunks),
        rng=Mulberry32(scenario.random_seed),
    )


def simulate(scenario: Scenario) -> SimulationResult:
    run = partition(scenario)
    logger.debug(
        "Simulating %s: width=%d objects=%d chunks=%d stripes=%d seed=%d",
        run.scenario.solution.value,
        run.scenario.stripe_width,
        run.scenario.objects_in_flight,
        len(run.chunks),
        run.stripes,
        run.scenario.random_seed,
    )
    return SOLUTION_HANDLERS[run.scenario.solution](run)
