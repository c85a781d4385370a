from dataclasses import dataclass, replace
from typing import Dict, List

from scenario import (
    AggregatorPolicy,
    HostCoefficients,
    RetryPolicy,
    Scenario,
    ScenarioCalibration,
    ServiceDistribution,
    Solution,
    SsdCoefficients,
)

# Reference stripe: 8 Gen4x4 SSDs, 128 KiB MDTS, lognormal CRC service.
BASELINE_SCENARIO = Scenario(
    stripe_width=8,
    objects_in_flight=3,
    file_size_mb=32,
    chunk_size_kb=64,
    queue_depth=8,
    threads=8,
    host_coefficients=HostCoefficients(c0=22, c1=1.4, c2=7),
    ssd_coefficients=SsdCoefficients(d0=64, d1=2.2),
    nvme_latency_us=12,
    crc_per_4k_us=95,
    crc_sigma_per_4k_us=18,
    service_distribution=ServiceDistribution.LOGNORMAL,
    straggler_p95_multiplier=1.7,
    straggler_p99_multiplier=2.8,
    failure_probability=0.002,
    retry_policy=RetryPolicy.FIXED,
    retry_backoff_us=80,
    retry_max_attempts=3,
    orchestration_overhead_us=18,
    mdts_bytes=128 * 1024,
    solution=Solution.HOST_AGGREGATE,
    aggregator_policy=AggregatorPolicy.PINNED,
    random_seed=1337,
    calibration=ScenarioCalibration(use_profile_defaults=False, tolerance_percent=15),
)


@dataclass(frozen=True)
class ScenarioPreset:
    key: str
    label: str
    summary: str
    scenario: Scenario
    notes: str = ""


SCENARIO_PRESETS: Dict[str, ScenarioPreset] = {
    "baseline": ScenarioPreset(
        key="baseline",
        label="Baseline 8x Gen4x4",
        summary="Lognormal service with host aggregation tuned for 8 SSDs.",
        scenario=BASELINE_SCENARIO,
        notes="Reference scenario used across the docs.",
    ),
    "host16": ScenarioPreset(
        key="host16",
        label="16x Host Aggregation",
        summary="Emphasises host combine cost on a 16-way stripe.",
        scenario=replace(
            BASELINE_SCENARIO,
            stripe_width=16,
            objects_in_flight=4,
            file_size_mb=48,
            chunk_size_kb=128,
            queue_depth=12,
            host_coefficients=HostCoefficients(c0=34, c1=2.2, c2=10.2),
            ssd_coefficients=SsdCoefficients(d0=70, d1=2.4),
            solution=Solution.HOST_AGGREGATE,
            orchestration_overhead_us=22,
            straggler_p95_multiplier=1.5,
            straggler_p99_multiplier=2.4,
            random_seed=2023,
        ),
        notes="Explores host CPU headroom when widening the fan-out.",
    ),
    "ssd16": ScenarioPreset(
        key="ssd16",
        label="16x SSD Aggregation",
        summary="Models device-side aggregation on a wide stripe.",
        scenario=replace(
            BASELINE_SCENARIO,
            stripe_width=16,
            objects_in_flight=6,
            file_size_mb=64,
            chunk_size_kb=128,
            queue_depth=16,
            solution=Solution.SSD_AGGREGATE,
            aggregator_policy=AggregatorPolicy.ROUND_ROBIN,
            ssd_coefficients=SsdCoefficients(d0=38, d1=1.8),
            host_coefficients=HostCoefficients(c0=18, c1=1.1, c2=6.4),
            straggler_p95_multiplier=1.4,
            straggler_p99_multiplier=2.0,
            random_seed=9042,
        ),
        notes="Round-robin aggregator SSD behaviour.",
    ),
    "stress32": ScenarioPreset(
        key="stress32",
        label="Stress 32x p99",
        summary="Heavy concurrency with straggler amplification.",
        scenario=replace(
            BASELINE_SCENARIO,
            stripe_width=32,
            objects_in_flight=8,
            file_size_mb=96,
            chunk_size_kb=192,
            mdts_bytes=256 * 1024,
            queue_depth=20,
            service_distribution=ServiceDistribution.GAMMA,
            crc_per_4k_us=110,
            crc_sigma_per_4k_us=32,
            straggler_p95_multiplier=2.2,
            straggler_p99_multiplier=4.1,
            failure_probability=0.006,
            retry_policy=RetryPolicy.EXPONENTIAL,
            retry_backoff_us=120,
            retry_max_attempts=5,
            solution=Solution.SSD_AGGREGATE,
            aggregator_policy=AggregatorPolicy.PINNED,
            orchestration_overhead_us=28,
            random_seed=7321,
        ),
        notes="Guardrail and tail-latency sensitivity checks.",
    ),
}


def preset_choices() -> List[str]:
    return sorted(SCENARIO_PRESETS.keys())


def get_preset(key: str) -> ScenarioPreset:
    normalized = key.strip().lower()
    if normalized not in SCENARIO_PRESETS:
        raise KeyError(
            f"Unknown scenario preset '{key}'. Choices: {', '.join(preset_choices())}"
        )
    return SCENARIO_PRESETS[normalized]
