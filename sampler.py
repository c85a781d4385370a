"""
Service-time sampling for per-command CRC work.

All randomness flows through an explicit `Mulberry32` generator that callers
pass into every sampling function. A simulation seeds exactly one generator
and hands it to each lane in turn, so the draw order (lane 0 first, then
lane 1, ...; job by job; attempt by attempt) fixes the result for a seed.
"""

from __future__ import annotations

import math

from scenario import Scenario, ServiceDistribution
from utils import crc_units

_MASK32 = 0xFFFFFFFF
_TWO_POW_32 = 4294967296.0

P95_TAIL_THRESHOLD = 0.95
P99_TAIL_THRESHOLD = 0.99
MIN_SERVICE_US = 1.0


def _imul(a: int, b: int) -> int:
    return (a * b) & _MASK32


class Mulberry32:
    """32-bit mixing PRNG producing uniform floats in [0, 1)."""

    def __init__(self, seed: int):
        self._state = int(seed) & _MASK32
        self.draws = 0

    def random(self) -> float:
        self._state = (self._state + 0x6D2B79F5) & _MASK32
        t = self._state
        t = _imul(t ^ (t >> 15), t | 1)
        t = ((t + _imul(t ^ (t >> 7), t | 61)) & _MASK32) ^ t
        self.draws += 1
        return ((t ^ (t >> 14)) & _MASK32) / _TWO_POW_32


def sample_normal(rng: Mulberry32) -> float:
    # Box-Muller; zero draws are rejected so log() stays finite.
    u = 0.0
    v = 0.0
    while u == 0.0:
        u = rng.random()
    while v == 0.0:
        v = rng.random()
    return math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)


def sample_lognormal(mean: float, std: float, rng: Mulberry32) -> float:
    if std <= 0:
        return mean
    variance = std * std
    sigma = math.sqrt(math.log(1.0 + variance / (mean * mean)))
    mu = math.log(mean) - sigma * sigma / 2.0
    return math.exp(mu + sigma * sample_normal(rng))


def sample_gamma(mean: float, std: float, rng: Mulberry32) -> float:
    """Marsaglia-Tsang gamma draw with shape/scale matched to mean and std."""
    if std <= 0:
        return mean
    variance = std * std
    shape = max(0.001, (mean * mean) / variance)
    scale = variance / mean

    if shape < 1:
        while True:
            x = rng.random() ** (1.0 / shape)
            y = rng.random() ** (1.0 / (1.0 - shape))
            if 0 < x + y <= 1:
                u = 0.0
                while u == 0.0:
                    u = rng.random()
                return scale * -math.log(u) * x / (x + y)

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)
    while True:
        x = sample_normal(rng)
        v = 1.0 + c * x
        if v <= 0:
            continue
        v = v * v * v
        u = rng.random()
        if u < 1.0 - 0.331 * x ** 4:
            return scale * d * v
        if u > 0 and math.log(u) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
            return scale * d * v


def apply_tail(sample: float, roll: float, p95_multiplier: float, p99_multiplier: float) -> float:
    if roll > P99_TAIL_THRESHOLD:
        return sample * p99_multiplier
    if roll > P95_TAIL_THRESHOLD:
        return sample * p95_multiplier
    return sample


def sample_service_time(scenario: Scenario, num_bytes: int, rng: Mulberry32) -> float:
    """
    CRC compute time in µs for one command of `num_bytes`.

    The per-4KiB mean and sigma scale linearly with the command size. One
    tail roll is always consumed, even in deterministic mode, so every
    distribution advances the shared generator identically per command.
    """
    units = crc_units(num_bytes)
    mean = scenario.crc_per_4k_us * units
    sigma = max(0.0, scenario.crc_sigma_per_4k_us) * units

    distribution = scenario.service_distribution
    if distribution == ServiceDistribution.LOGNORMAL:
        sample = sample_lognormal(mean, sigma, rng)
    elif distribution == ServiceDistribution.GAMMA:
        sample = sample_gamma(mean, sigma, rng)
    else:
        sample = mean

    roll = rng.random()
    if distribution != ServiceDistribution.DETERMINISTIC:
        sample = apply_tail(
            sample,
            roll,
            scenario.straggler_p95_multiplier,
            scenario.straggler_p99_multiplier,
        )
    return max(sample, MIN_SERVICE_US)
