import pathlib
import sys
from dataclasses import replace
from types import SimpleNamespace

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import pytest

from presets import BASELINE_SCENARIO
from results import KPIBreakdown, SimulationKPIs
from scenario import Solution
from sweep import (
    ALL_SOLUTIONS,
    SWEEP_KNOBS,
    SweepConfig,
    SweepPoint,
    SweepRun,
    build_sweep_values,
    format_knob_value,
    generate_sweep_advisor,
    run_sweep,
)


def test_stripe_width_sweep_values():
    values = build_sweep_values(SweepConfig("stripe_width", 4, 32, 4))
    assert values == [4, 8, 12, 16, 20, 24, 28, 32]


def test_descending_sweep():
    values = build_sweep_values(SweepConfig("queue_depth", 16, 4, 4))
    assert values == [16, 12, 8, 4]


def test_values_are_clamped_and_end_is_included():
    values = build_sweep_values(SweepConfig("stripe_width", -5, 70, 10))
    knob = SWEEP_KNOBS["stripe_width"]
    assert values[0] == 1
    assert values[-1] == 64
    assert all(knob.min <= v <= knob.max for v in values)
    assert len(values) == len(set(values))


def test_zero_step_uses_knob_default():
    assert build_sweep_values(SweepConfig("chunk_size_kb", 4, 16, 0)) == [4, 8, 12, 16]


def test_point_count_is_capped():
    values = build_sweep_values(SweepConfig("crc_sigma_per_4k_us", 0, 200, 0.001))
    assert len(values) <= 1025
    assert values[-1] == 200


def test_unknown_knob_is_rejected():
    with pytest.raises(KeyError):
        build_sweep_values(SweepConfig("file_size_mb", 1, 2, 1))


def test_run_sweep_covers_every_point_and_solution():
    base = replace(BASELINE_SCENARIO, file_size_mb=2, objects_in_flight=2)
    run = run_sweep(base, SweepConfig("stripe_width", 4, 32, 4))
    assert len(run.points) == 8
    for index, point in enumerate(run.points):
        assert set(point.results) == {Solution.SERIAL, Solution.HOST_AGGREGATE, Solution.SSD_AGGREGATE}
        for solution, result in point.results.items():
            assert result.scenario.solution == solution
            assert result.scenario.stripe_width == point.value
            assert result.scenario.random_seed == base.random_seed + index


def test_integer_knobs_are_rounded():
    base = replace(BASELINE_SCENARIO, file_size_mb=1, objects_in_flight=1)
    run = run_sweep(base, SweepConfig("queue_depth", 1.5, 1.5, 1), solutions=[Solution.HOST_AGGREGATE])
    assert run.solutions == (Solution.HOST_AGGREGATE,)
    assert run.points[0].results[Solution.HOST_AGGREGATE].scenario.queue_depth == 2


def _fake_result(p99, critical_path=()):
    kpis = SimulationKPIs(
        latency_us=p99,
        throughput_objs_per_sec=0.0,
        p50_us=p99,
        p95_us=p99,
        p99_us=p99,
        critical_path=list(critical_path),
    )
    return SimpleNamespace(kpis=kpis)


def test_advisor_reports_dominance_crossover_hotspot_and_balance():
    host_heavy = [KPIBreakdown("Host aggregation", 100.0, 50.0)]
    points = [
        SweepPoint(1, {
            Solution.SERIAL: _fake_result(100),
            Solution.HOST_AGGREGATE: _fake_result(200, host_heavy),
            Solution.SSD_AGGREGATE: _fake_result(300),
        }),
        SweepPoint(2, {
            Solution.SERIAL: _fake_result(300),
            Solution.HOST_AGGREGATE: _fake_result(100),
            Solution.SSD_AGGREGATE: _fake_result(200),
        }),
        SweepPoint(3, {
            Solution.SERIAL: _fake_result(300),
            Solution.HOST_AGGREGATE: _fake_result(200),
            Solution.SSD_AGGREGATE: _fake_result(100),
        }),
    ]
    run = SweepRun(BASELINE_SCENARIO, SweepConfig("stripe_width", 1, 3, 1), points, ALL_SOLUTIONS)
    hints = generate_sweep_advisor(run)
    assert [hint.id for hint in hints] == [
        "dominant-s1",
        "crossover-s3",
        "host-hotspot",
        "balanced-tradeoff",
    ]
    assert hints[0].message == "S1 leads 1/3 sweep points with 50.0% p99 lead."
    assert hints[1].message == "S3 overtakes S1 at 3 on this sweep."
    assert hints[2].tone == "warning"


def test_advisor_with_single_winner():
    ssd_heavy = [KPIBreakdown("SSD aggregation", 90.0, 60.0)]
    points = [
        SweepPoint(v, {
            Solution.HOST_AGGREGATE: _fake_result(100),
            Solution.SSD_AGGREGATE: _fake_result(100, ssd_heavy),
        })
        for v in (64, 128)
    ]
    run = SweepRun(
        BASELINE_SCENARIO,
        SweepConfig("chunk_size_kb", 64, 128, 64),
        points,
        (Solution.HOST_AGGREGATE, Solution.SSD_AGGREGATE),
    )
    hints = generate_sweep_advisor(run)
    assert [hint.id for hint in hints] == ["dominant-s2", "ssd-hotspot"]
    assert "matching p99" in hints[0].message
    assert "64 KiB" in hints[1].message


def test_advisor_empty_run():
    run = SweepRun(BASELINE_SCENARIO, SweepConfig("stripe_width", 1, 2, 1), [], ALL_SOLUTIONS)
    assert generate_sweep_advisor(run) == []


def test_format_knob_value():
    assert format_knob_value(SWEEP_KNOBS["crc_per_4k_us"], 1500) == "1.50 ms"
    assert format_knob_value(SWEEP_KNOBS["crc_per_4k_us"], 95) == "95 µs"
    assert format_knob_value(SWEEP_KNOBS["chunk_size_kb"], 2048) == "2.0 MiB"
    assert format_knob_value(SWEEP_KNOBS["stripe_width"], 8) == "8"


def test_process_pool_sweep_matches_sequential_run():
    base = replace(BASELINE_SCENARIO, file_size_mb=1, objects_in_flight=2)
    config = SweepConfig("queue_depth", 1, 4, 1)
    sequential = run_sweep(base, config)
    pooled = run_sweep(base, config, max_workers=2)
    assert [p.value for p in pooled.points] == [p.value for p in sequential.points]
    for a, b in zip(sequential.points, pooled.points):
        for solution in ALL_SOLUTIONS:
            assert a.results[solution].derived.total_latency_us == b.results[solution].derived.total_latency_us
            assert a.results[solution].kpis.p99_us == b.results[solution].kpis.p99_us
