"""
Per-device command timeline with a bounded pool of NVMe queue slots.

Each lane walks its job list in order. A command is issued (one NVMe
round-trip), waits for the earliest free queue slot, computes its CRC,
and completes (another round-trip). A failure roll after completion may
schedule a retry with fixed or exponential backoff; the final permitted
attempt always succeeds so every command terminates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from partitioner import CommandJob
from sampler import Mulberry32, sample_service_time
from scenario import RetryPolicy, Scenario
from timeline import (
    EventLogEntry,
    EventType,
    LaneRole,
    OccupancyEvent,
    RunbookEntry,
    SegmentKind,
    TimelineLane,
    make_segment,
    ssd_lane_id,
    ssd_lane_label,
)
from utils import round_half_up

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandCompletion:
    object_index: int
    chunk_index: int
    stripe_index: int
    lane_index: int
    completion_time_us: float


@dataclass
class LaneSimulationResult:
    lane: TimelineLane
    completions: List[CommandCompletion] = field(default_factory=list)
    events: List[EventLogEntry] = field(default_factory=list)
    runbook: List[RunbookEntry] = field(default_factory=list)
    occupancy_events: List[OccupancyEvent] = field(default_factory=list)
    failures: int = 0
    retries: int = 0


@dataclass
class MergedLaneResults:
    lanes: List[TimelineLane]
    completions: List[CommandCompletion]
    events: List[EventLogEntry]
    runbook: List[RunbookEntry]
    occupancy: Dict[str, List[OccupancyEvent]]
    failures: int
    retries: int


def retry_delay_us(scenario: Scenario, attempt: int) -> float:
    if scenario.retry_policy == RetryPolicy.EXPONENTIAL:
        return scenario.retry_backoff_us * (2 ** max(0, attempt - 1))
    return scenario.retry_backoff_us


def attempt_fails(scenario: Scenario, attempt: int, rng: Mulberry32) -> bool:
    # The roll is drawn on every attempt so the stream stays aligned,
    # but the last permitted attempt cannot fail.
    roll = rng.random()
    if attempt >= scenario.retry_max_attempts:
        return False
    return roll < scenario.failure_probability


def kib_label(num_bytes: int) -> str:
    return f"{round_half_up(num_bytes / 1024)} KiB"


def record_retry(
    lane_id: str,
    lane_index: int,
    object_index: int,
    chunk_index: int,
    attempt: int,
    time_us: float,
    delay_us: float,
    attempt_duration_us: float,
    events: List[EventLogEntry],
    runbook: List[RunbookEntry],
) -> None:
    events.append(
        EventLogEntry(
            time_us=time_us,
            message=(
                f"CRC timeout on SSD{lane_index} chunk {chunk_index} "
                f"(attempt {attempt}) - retrying in {round(delay_us)} µs"
            ),
            type=EventType.WARNING,
            related_object=object_index,
            lane_id=lane_id,
            chunk_index=chunk_index,
            attempt=attempt,
            delta_us=round(delay_us),
        )
    )
    runbook.append(
        RunbookEntry(
            id=f"{lane_id}-{object_index}-{chunk_index}-{attempt}",
            time_us=time_us,
            object_index=object_index,
            lane_id=lane_id,
            chunk_index=chunk_index,
            attempt=attempt,
            retry_delay_us=delay_us,
            additional_latency_us=delay_us + attempt_duration_us,
            message=f"Retry scheduled after {round(delay_us)} µs backoff",
        )
    )


def simulate_lane(
    scenario: Scenario,
    lane_index: int,
    jobs: List[CommandJob],
    rng: Mulberry32,
) -> LaneSimulationResult:
    lane = TimelineLane(
        id=ssd_lane_id(lane_index), label=ssd_lane_label(lane_index), role=LaneRole.SSD
    )
    result = LaneSimulationResult(lane=lane)
    slots = [0.0] * scenario.queue_depth
    nvme = scenario.nvme_latency_us

    issue_cursor = 0.0
    for job in jobs:
        attempt = 0
        last_completion_end = 0.0
        while True:
            attempt += 1
            size = kib_label(job.bytes)
            issue_start = max(issue_cursor, last_completion_end)
            issue_end = issue_start + nvme
            lane.add(
                make_segment(
                    issue_start,
                    issue_end,
                    f"Issue {size} (try {attempt})",
                    SegmentKind.IO,
                    job.chunk_index,
                    job.segment_index,
                )
            )
            result.occupancy_events.append(OccupancyEvent(issue_start, 1))

            slot = min(range(len(slots)), key=lambda idx: slots[idx])
            compute_start = max(issue_end, slots[slot])
            if compute_start > issue_end:
                lane.add(
                    make_segment(
                        issue_end,
                        compute_start,
                        "Queue wait",
                        SegmentKind.WAIT,
                        job.chunk_index,
                        job.segment_index,
                    )
                )

            compute_us = sample_service_time(scenario, job.bytes, rng)
            compute_end = compute_start + compute_us
            slots[slot] = compute_end
            lane.add(
                make_segment(
                    compute_start,
                    compute_end,
                    f"CRC {size} (try {attempt})",
                    SegmentKind.COMPUTE,
                    job.chunk_index,
                    job.segment_index,
                )
            )

            completion_end = compute_end + nvme
            lane.add(
                make_segment(
                    compute_end,
                    completion_end,
                    f"Completion (try {attempt})",
                    SegmentKind.IO,
                    job.chunk_index,
                    job.segment_index,
                )
            )
            result.occupancy_events.append(OccupancyEvent(completion_end, -1))

            lane.total_us = max(lane.total_us, completion_end)
            issue_cursor = max(issue_cursor, issue_end)

            if attempt_fails(scenario, attempt, rng):
                result.failures += 1
                result.retries += 1
                delay = retry_delay_us(scenario, attempt)
                retry_end = completion_end + delay
                lane.add(
                    make_segment(
                        completion_end,
                        retry_end,
                        f"Retry backoff {round(delay)} µs",
                        SegmentKind.RETRY,
                        job.chunk_index,
                        job.segment_index,
                    )
                )
                attempt_duration = (
                    (issue_end - issue_start)
                    + (compute_start - issue_end)
                    + compute_us
                    + nvme
                )
                record_retry(
                    lane.id,
                    lane_index,
                    job.object_index,
                    job.chunk_index,
                    attempt,
                    completion_end,
                    delay,
                    attempt_duration,
                    result.events,
                    result.runbook,
                )
                issue_cursor = max(issue_cursor, retry_end)
                last_completion_end = retry_end
                continue

            result.completions.append(
                CommandCompletion(
                    object_index=job.object_index,
                    chunk_index=job.chunk_index,
                    stripe_index=job.stripe_index,
                    lane_index=lane_index,
                    completion_time_us=completion_end,
                )
            )
            break

    logger.debug(
        "Lane %s: %d jobs, %d retries, finished at %.1f us",
        lane.id,
        len(jobs),
        result.retries,
        lane.total_us,
    )
    return result


def merge_lane_results(results: List[LaneSimulationResult]) -> MergedLaneResults:
    merged = MergedLaneResults(
        lanes=[], completions=[], events=[], runbook=[], occupancy={}, failures=0, retries=0
    )
    for result in results:
        merged.lanes.append(result.lane)
        merged.completions.extend(result.completions)
        merged.events.extend(result.events)
        merged.runbook.extend(result.runbook)
        merged.occupancy.setdefault(result.lane.id, []).extend(result.occupancy_events)
        merged.failures += result.failures
        merged.retries += result.retries
    return merged
