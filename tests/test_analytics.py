import math
import pathlib
import random
import sys
from dataclasses import replace

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import pytest

from analytics import (
    build_aggregation_tree,
    build_calibration_summary,
    build_heatmap_lane,
    build_kpis,
    compute_confidence,
    compute_lane_boxplots,
    compute_latency_distribution,
    percentile,
    standard_deviation,
)
from presets import BASELINE_SCENARIO
from scenario import AggregatorPolicy, ScenarioCalibration, Solution
from timeline import LaneRole, OccupancyEvent, SegmentKind, TimelineLane, make_segment


def test_nearest_rank_percentile():
    values = [5, 1, 3, 2, 4]
    assert percentile(values, 50) == 3
    assert percentile(values, 99) == 5
    assert percentile(values, 0) == 1
    assert percentile([], 50) == 0.0
    assert values == [5, 1, 3, 2, 4]


def test_percentile_ordering_on_random_lists():
    rng = random.Random(42)
    for _ in range(200):
        values = [rng.uniform(0, 1e6) for _ in range(rng.randint(1, 40))]
        assert percentile(values, 50) <= percentile(values, 95) <= percentile(values, 99)


def test_sample_standard_deviation():
    assert standard_deviation([2, 4, 4, 4, 5, 5, 7, 9]) == pytest.approx(math.sqrt(32 / 7))
    assert standard_deviation([3.0]) == 0.0


def test_heatmap_releases_before_arrivals_at_same_instant():
    events = [
        OccupancyEvent(0, 1),
        OccupancyEvent(10, 1),
        OccupancyEvent(10, -1),
        OccupancyEvent(20, -1),
    ]
    lane = build_heatmap_lane("ssd-0", "SSD0", LaneRole.SSD, events, 30)
    samples = [(s.time_us, s.occupancy) for s in lane.samples]
    assert samples == [(0, 0), (0, 1), (10, 1), (10, 0), (10, 1), (20, 1), (20, 0), (30, 0)]
    assert lane.peak == 1


def test_heatmap_occupancy_never_negative():
    events = [OccupancyEvent(5, -1), OccupancyEvent(6, 1), OccupancyEvent(7, 1)]
    lane = build_heatmap_lane("host", "Host", LaneRole.HOST, events, 7)
    assert min(s.occupancy for s in lane.samples) == 0
    assert lane.peak == 2
    assert lane.samples[-1].time_us == 7


def _calibrated(sample_count):
    return replace(
        BASELINE_SCENARIO,
        calibration=ScenarioCalibration(profile_id="lab", sample_count=sample_count),
    )


def test_confidence_projects_onto_calibration_sample():
    scenario = _calibrated(1000)
    latencies = [100.0, 200.0, 300.0, 400.0]
    kpis = build_kpis(scenario, 400.0, latencies, [])
    confidence = compute_confidence(scenario, 10, latencies, kpis)

    observed_margin = standard_deviation(latencies) / 2 * 1.96
    margin = observed_margin * math.sqrt(4 / 100)
    assert confidence.object_count == 100
    assert confidence.sample_count == 1000
    assert confidence.confidence_level == 0.95
    assert confidence.p50.margin == pytest.approx(margin)
    assert confidence.p95.margin == pytest.approx(margin * 1.4)
    assert confidence.p99.margin == pytest.approx(margin * 2.1)
    assert confidence.latency.upper == pytest.approx(400.0 + margin)
    assert confidence.throughput.margin == pytest.approx(
        kpis.throughput_objs_per_sec * margin / 400.0
    )


def test_confidence_absent_without_spread_or_samples():
    latencies = [100.0, 200.0]
    no_count = replace(BASELINE_SCENARIO, calibration=ScenarioCalibration())
    kpis = build_kpis(no_count, 200.0, latencies, [])
    assert compute_confidence(no_count, 1, latencies, kpis) is None

    scenario = _calibrated(5000)
    flat = [50.0, 50.0, 50.0]
    assert compute_confidence(scenario, 1, flat, build_kpis(scenario, 50.0, flat, [])) is None
    assert compute_confidence(scenario, 1, [], build_kpis(scenario, 0.0, [], [])) is None


def test_host_tree_binary_combine_stages():
    scenario = replace(BASELINE_SCENARIO, solution=Solution.HOST_AGGREGATE, stripe_width=5)
    tree = build_aggregation_tree(scenario, stripes=2, aggregator_per_stripe_us=90.0, ssd_aggregation_total_us=0)
    assert [stage.nodes for stage in tree.stages] == [3, 2, 1]
    assert [stage.fan_in for stage in tree.stages] == [2, 2, 2]
    assert all(stage.duration_us == pytest.approx(30.0) for stage in tree.stages)
    assert tree.stages[0].label == "Host combine stage 1"
    assert tree.total_us == 90.0


def test_host_tree_single_device_fallback():
    scenario = replace(BASELINE_SCENARIO, solution=Solution.HOST_AGGREGATE, stripe_width=1)
    tree = build_aggregation_tree(scenario, 4, 22.0, 0)
    assert [stage.id for stage in tree.stages] == ["host-0"]
    assert tree.stages[0].fan_in == 1


def test_serial_and_ssd_trees():
    serial = build_aggregation_tree(
        replace(BASELINE_SCENARIO, solution=Solution.SERIAL, stripe_width=4),
        stripes=2,
        aggregator_per_stripe_us=0,
        ssd_aggregation_total_us=0,
        pipeline_fill_us=100,
        steady_state_us=250,
        serial_stage_us=25,
    )
    assert [stage.label for stage in serial.stages] == ["Seed SSD0", "Seed SSD1", "Seed SSD2", "Seed SSD3"]
    assert serial.total_us == 250

    ssd = build_aggregation_tree(
        replace(
            BASELINE_SCENARIO,
            solution=Solution.SSD_AGGREGATE,
            aggregator_policy=AggregatorPolicy.ROUND_ROBIN,
        ),
        stripes=6,
        aggregator_per_stripe_us=40,
        ssd_aggregation_total_us=240,
    )
    assert ssd.depth == 1
    assert ssd.stages[0].label == "SSD combine (round-robin)"
    assert ssd.stages[0].nodes == 6
    assert ssd.stages[0].fan_in == BASELINE_SCENARIO.stripe_width


def test_calibration_summary_warnings():
    scenario = replace(
        BASELINE_SCENARIO,
        calibration=ScenarioCalibration(profile_id="p", sample_count=500, warnings=("imported",)),
    )
    summary = build_calibration_summary(scenario)
    assert summary.applied
    assert summary.warnings[0] == "imported"
    assert any("below 1k" in w for w in summary.warnings)
    assert any("sigma missing" in w for w in summary.warnings)

    unapplied = build_calibration_summary(
        replace(BASELINE_SCENARIO, calibration=ScenarioCalibration(sigma_per_4k_us=3.0))
    )
    assert not unapplied.applied
    assert unapplied.warnings == []
    assert build_calibration_summary(replace(BASELINE_SCENARIO, calibration=None)) is None


def test_latency_distribution_bins():
    summary = compute_latency_distribution([float(v) for v in range(1, 101)])
    assert len(summary.bins) == 20
    assert sum(b.count for b in summary.bins) == 100
    assert summary.bins[-1].cumulative == pytest.approx(1.0)
    assert summary.mean == pytest.approx(50.5)
    assert summary.peak_density == max(b.density for b in summary.bins)

    few = compute_latency_distribution([10.0, 10.0, 10.0])
    assert len(few.bins) == 3
    assert few.bins[0].count == 3
    assert compute_latency_distribution([]).total == 0


def test_lane_boxplots_use_compute_segments_of_ssd_lanes():
    lane = TimelineLane(id="ssd-0", label="SSD0", role=LaneRole.SSD)
    start = 0.0
    for duration in (1.0, 2.0, 3.0, 4.0):
        lane.add(make_segment(start, start + duration, "crc", SegmentKind.COMPUTE))
        lane.add(make_segment(start + duration, start + duration + 50, "io", SegmentKind.IO))
        start += duration + 50
    host = TimelineLane(id="host", label="Host", role=LaneRole.HOST)
    host.add(make_segment(0, 5, "fin", SegmentKind.COMPUTE))

    stats = compute_lane_boxplots([lane, host])
    assert len(stats) == 1
    assert stats[0].sample_count == 4
    assert stats[0].median == pytest.approx(2.5)
    assert stats[0].q1 == pytest.approx(1.75)
    assert stats[0].q3 == pytest.approx(3.25)
    assert (stats[0].min, stats[0].max) == (1.0, 4.0)


def test_make_segment_rejects_empty_intervals():
    assert make_segment(5, 5, "x", SegmentKind.IO) is None
    assert make_segment(5, 4, "x", SegmentKind.IO) is None
    assert make_segment(0, float("inf"), "x", SegmentKind.IO) is None
