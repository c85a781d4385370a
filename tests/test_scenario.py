import json
import math
import pathlib
import sys
from dataclasses import replace

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

from presets import BASELINE_SCENARIO, SCENARIO_PRESETS, get_preset
from scenario import (
    HostCoefficientOverrides,
    RetryPolicy,
    ScenarioCalibration,
    ServiceDistribution,
    Solution,
    SsdCoefficientOverrides,
    normalize_scenario,
    scenario_from_dict,
    scenario_to_dict,
)

import pytest


def test_out_of_range_fields_are_clamped():
    scenario = normalize_scenario(
        replace(
            BASELINE_SCENARIO,
            stripe_width=500,
            objects_in_flight=0,
            file_size_mb=math.nan,
            queue_depth=-3,
            failure_probability=2.5,
            retry_max_attempts=99,
            random_seed=0,
        )
    )
    assert scenario.stripe_width == 64
    assert scenario.objects_in_flight == 1
    assert scenario.file_size_mb == 0.5
    assert scenario.queue_depth == 1
    assert scenario.failure_probability == 1
    assert scenario.retry_max_attempts == 10
    assert scenario.random_seed == 1


def test_infinite_inputs_clamp_to_the_bound_they_exceed():
    scenario = normalize_scenario(
        scenario_from_dict(
            json.loads(
                '{"stripe_width": 1e999, "retry_backoff_us": 1e999, '
                '"failure_probability": 1e999, "queue_depth": -1e999}'
            )
        )
    )
    assert scenario.stripe_width == 64
    assert scenario.retry_backoff_us == 1_000_000
    assert scenario.failure_probability == 1
    assert scenario.queue_depth == 1

    low = normalize_scenario(
        replace(BASELINE_SCENARIO, crc_per_4k_us=-math.inf, nvme_latency_us=math.inf)
    )
    assert low.crc_per_4k_us == 1
    assert low.nvme_latency_us == 200


def test_integer_fields_round_half_up():
    scenario = normalize_scenario(replace(BASELINE_SCENARIO, stripe_width=2.5, queue_depth=3.5))
    assert scenario.stripe_width == 3
    assert scenario.queue_depth == 4


def test_normalize_is_idempotent():
    once = normalize_scenario(replace(BASELINE_SCENARIO, chunk_size_kb=1, crc_per_4k_us=9000))
    assert normalize_scenario(once) == once


def test_unknown_enum_strings_fall_back():
    scenario = normalize_scenario(
        replace(
            BASELINE_SCENARIO,
            solution="s9",
            service_distribution="weibull",
            retry_policy="linear",
            aggregator_policy="random",
        )
    )
    assert scenario.solution == Solution.HOST_AGGREGATE
    assert scenario.service_distribution == ServiceDistribution.DETERMINISTIC
    assert scenario.retry_policy == RetryPolicy.FIXED
    assert scenario.aggregator_policy.value == "pinned"


def test_enum_strings_are_accepted():
    scenario = normalize_scenario(replace(BASELINE_SCENARIO, solution="s3", aggregator_policy="roundRobin"))
    assert scenario.solution == Solution.SSD_AGGREGATE
    assert scenario.aggregator_policy.value == "roundRobin"


def test_calibration_defaults_override_scenario_fields():
    calibration = ScenarioCalibration(
        profile_id="p1",
        mu_per_4k_us=50,
        sigma_per_4k_us=4,
        nvme_latency_us=300,
        queue_depth=100,
        mdts_bytes=65536,
        use_profile_defaults=True,
        host_coefficients=HostCoefficientOverrides(c0=5),
        ssd_coefficients=SsdCoefficientOverrides(d1=900),
    )
    scenario = normalize_scenario(replace(BASELINE_SCENARIO, calibration=calibration))
    assert scenario.crc_per_4k_us == 50
    assert scenario.crc_sigma_per_4k_us == 4
    # Calibrated NVMe latency may exceed the manual 200 µs ceiling.
    assert scenario.nvme_latency_us == 300
    assert scenario.queue_depth == 64
    assert scenario.mdts_bytes == 65536
    assert scenario.host_coefficients.c0 == 5
    assert scenario.host_coefficients.c1 == BASELINE_SCENARIO.host_coefficients.c1
    assert scenario.ssd_coefficients.d0 == BASELINE_SCENARIO.ssd_coefficients.d0
    assert scenario.ssd_coefficients.d1 == 40


def test_calibration_ignored_without_profile_defaults():
    calibration = ScenarioCalibration(mu_per_4k_us=50, use_profile_defaults=False)
    scenario = normalize_scenario(replace(BASELINE_SCENARIO, calibration=calibration))
    assert scenario.crc_per_4k_us == BASELINE_SCENARIO.crc_per_4k_us
    assert scenario.calibration.mu_per_4k_us == 50


def test_calibration_blank_warnings_are_dropped():
    calibration = ScenarioCalibration(warnings=("", "  ", "low sample count"), tolerance_percent=400)
    scenario = normalize_scenario(replace(BASELINE_SCENARIO, calibration=calibration))
    assert scenario.calibration.warnings == ("low sample count",)
    assert scenario.calibration.tolerance_percent == 100


def test_scenario_from_dict_merges_partial_coefficients():
    scenario = scenario_from_dict(
        {"stripe_width": 4, "host_coefficients": {"c0": 1}, "not_a_field": True}
    )
    assert scenario.stripe_width == 4
    assert scenario.host_coefficients.c0 == 1
    assert scenario.host_coefficients.c1 == BASELINE_SCENARIO.host_coefficients.c1
    assert scenario.queue_depth == BASELINE_SCENARIO.queue_depth


def test_scenario_dict_uses_plain_values():
    data = scenario_to_dict(BASELINE_SCENARIO)
    assert data["solution"] == "s2"
    assert data["service_distribution"] == "lognormal"
    assert data["host_coefficients"] == {"c0": 22, "c1": 1.4, "c2": 7}
    restored = normalize_scenario(scenario_from_dict(data))
    assert restored == normalize_scenario(BASELINE_SCENARIO)


def test_presets_are_simulatable_and_lookup_is_case_insensitive():
    for preset in SCENARIO_PRESETS.values():
        assert normalize_scenario(preset.scenario) == normalize_scenario(
            normalize_scenario(preset.scenario)
        )
    assert get_preset(" SSD16 ").key == "ssd16"
    with pytest.raises(KeyError):
        get_preset("gen6")
