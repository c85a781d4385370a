import pathlib
import sys
from dataclasses import replace

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

from partitioner import (
    build_chunk_infos,
    build_lane_jobs,
    chunk_bytes,
    commands_per_object,
    file_bytes,
    split_segments,
    stripe_count,
)
from presets import BASELINE_SCENARIO
from scenario import normalize_scenario


def _layout(**changes):
    scenario = normalize_scenario(replace(BASELINE_SCENARIO, **changes))
    chunks = build_chunk_infos(scenario, file_bytes(scenario), chunk_bytes(scenario))
    return scenario, chunks


def test_reference_layout():
    scenario, chunks = _layout(stripe_width=8, file_size_mb=32, chunk_size_kb=64)
    assert len(chunks) == 512
    assert stripe_count(scenario, chunks) == 64
    assert commands_per_object(chunks) == 512
    assert chunks[9].lane_index == 1
    assert chunks[9].stripe_index == 1


def test_bytes_are_conserved_and_segments_respect_mdts():
    for chunk_kb, mdts in ((300, 131072), (256, 131072), (64, 131072), (1000, 4096), (4, 8192)):
        scenario, chunks = _layout(file_size_mb=1, chunk_size_kb=chunk_kb, mdts_bytes=mdts)
        assert sum(chunk.total_bytes for chunk in chunks) == file_bytes(scenario)
        for chunk in chunks:
            assert sum(chunk.segments) == chunk.total_bytes
            assert all(0 < size <= mdts for size in chunk.segments)


def test_uneven_tail_chunk_and_segments():
    scenario, chunks = _layout(file_size_mb=1, chunk_size_kb=300, mdts_bytes=131072)
    assert len(chunks) == 4
    assert chunks[0].segments == (131072, 131072, 45056)
    assert chunks[-1].total_bytes == 1048576 - 3 * 307200


def test_chunk_multiple_of_mdts_and_smaller_than_mdts():
    assert split_segments(262144, 131072, 262144) == (131072, 131072)
    assert split_segments(65536, 131072, 65536) == (65536,)


def test_chunk_size_has_4k_floor():
    scenario = replace(BASELINE_SCENARIO, chunk_size_kb=0.5)
    assert chunk_bytes(scenario) == 4096


def test_lane_jobs_interleave_objects_per_stripe():
    scenario, chunks = _layout(stripe_width=2, objects_in_flight=2, file_size_mb=0.5, chunk_size_kb=128)
    stripes = stripe_count(scenario, chunks)
    lane_jobs = build_lane_jobs(scenario, chunks, stripes)
    assert len(lane_jobs) == 2
    order = [(job.stripe_index, job.object_index) for job in lane_jobs[0]]
    assert order == [(0, 0), (0, 1), (1, 0), (1, 1)]
    assert all(job.lane_index == 1 for job in lane_jobs[1])


def test_lane_without_chunks_has_no_jobs():
    scenario, chunks = _layout(stripe_width=8, file_size_mb=0.5, chunk_size_kb=256)
    lane_jobs = build_lane_jobs(scenario, chunks, stripe_count(scenario, chunks))
    assert [len(jobs) for jobs in lane_jobs[:2]] == [scenario.objects_in_flight * 2] * 2
    assert all(not jobs for jobs in lane_jobs[2:])
