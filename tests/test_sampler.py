import math
import pathlib
import statistics
import sys
from dataclasses import replace

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import pytest

from presets import BASELINE_SCENARIO
from sampler import (
    Mulberry32,
    apply_tail,
    sample_gamma,
    sample_lognormal,
    sample_service_time,
)
from scenario import ServiceDistribution


def test_same_seed_same_stream():
    a = Mulberry32(1337)
    b = Mulberry32(1337)
    first = [a.random() for _ in range(50)]
    assert first == [b.random() for _ in range(50)]
    assert all(0.0 <= value < 1.0 for value in first)
    assert first != [Mulberry32(1338).random() for _ in range(50)]


def test_deterministic_service_scales_with_size_and_draws_once():
    scenario = replace(
        BASELINE_SCENARIO,
        service_distribution=ServiceDistribution.DETERMINISTIC,
        crc_per_4k_us=95,
        straggler_p99_multiplier=20,
    )
    rng = Mulberry32(7)
    assert sample_service_time(scenario, 65536, rng) == pytest.approx(95 * 16)
    assert rng.draws == 1
    # Sub-4 KiB commands cost one full unit.
    assert sample_service_time(scenario, 512, rng) == pytest.approx(95)


def test_service_time_floor():
    scenario = replace(
        BASELINE_SCENARIO, service_distribution=ServiceDistribution.DETERMINISTIC, crc_per_4k_us=0.1
    )
    assert sample_service_time(scenario, 4096, Mulberry32(1)) == 1.0


def test_apply_tail_thresholds():
    assert apply_tail(10.0, 0.5, 2.0, 5.0) == 10.0
    assert apply_tail(10.0, 0.96, 2.0, 5.0) == 20.0
    assert apply_tail(10.0, 0.995, 2.0, 5.0) == 50.0


def test_zero_sigma_returns_mean_without_draws():
    rng = Mulberry32(3)
    assert sample_lognormal(100.0, 0.0, rng) == 100.0
    assert sample_gamma(100.0, 0.0, rng) == 100.0
    assert rng.draws == 0


@pytest.mark.parametrize("sampler", [sample_lognormal, sample_gamma])
def test_stochastic_samplers_match_mean(sampler):
    rng = Mulberry32(2024)
    draws = [sampler(100.0, 20.0, rng) for _ in range(4000)]
    assert all(value > 0 for value in draws)
    assert statistics.mean(draws) == pytest.approx(100.0, rel=0.05)
    assert statistics.stdev(draws) == pytest.approx(20.0, rel=0.15)


def test_gamma_small_shape_branch():
    rng = Mulberry32(99)
    draws = [sample_gamma(10.0, 20.0, rng) for _ in range(5000)]
    assert all(value >= 0 for value in draws)
    assert statistics.mean(draws) == pytest.approx(10.0, rel=0.15)


def test_stochastic_service_times_are_reproducible():
    scenario = replace(BASELINE_SCENARIO, service_distribution=ServiceDistribution.GAMMA)
    first = [sample_service_time(scenario, 4096, Mulberry32(5)) for _ in range(3)]
    assert first[0] == first[1] == first[2]


def test_gamma_small_shape_uses_raw_uniform_for_exponential():
    mean, std = 10.0, 20.0
    shape = (mean * mean) / (std * std)
    scale = (std * std) / mean

    replay = Mulberry32(4242)
    while True:
        x = replay.random() ** (1.0 / shape)
        y = replay.random() ** (1.0 / (1.0 - shape))
        if x + y <= 1:
            expected = scale * -math.log(replay.random()) * x / (x + y)
            break

    rng = Mulberry32(4242)
    assert sample_gamma(mean, std, rng) == pytest.approx(expected)
    assert rng.draws == replay.draws
