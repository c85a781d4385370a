from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Type, TypeVar

from utils import MAX_SEED, clamp, clamp_int, to_number

logger = logging.getLogger(__name__)

MAX_MDTS_BYTES = 16 * 1024 * 1024
MIN_MDTS_BYTES = 4096


class Solution(str, Enum):
    SERIAL = "s1"          # per-device CRC chained through the seed
    HOST_AGGREGATE = "s2"  # parallel fan-out, host combines partial CRCs
    SSD_AGGREGATE = "s3"   # parallel fan-out, a device combines partial CRCs


class ServiceDistribution(str, Enum):
    DETERMINISTIC = "deterministic"
    LOGNORMAL = "lognormal"
    GAMMA = "gamma"


class RetryPolicy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class AggregatorPolicy(str, Enum):
    PINNED = "pinned"
    ROUND_ROBIN = "roundRobin"


E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: Type[E], value: Any, default: E) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class HostCoefficients:
    c0: float  # fixed host combine cost (µs)
    c1: float  # per-device cost (µs)
    c2: float  # per combine-tree level cost (µs)


@dataclass(frozen=True)
class SsdCoefficients:
    d0: float  # fixed device combine cost (µs)
    d1: float  # per-device cost (µs)


@dataclass(frozen=True)
class HostCoefficientOverrides:
    c0: Optional[float] = None
    c1: Optional[float] = None
    c2: Optional[float] = None

    def is_empty(self) -> bool:
        return self.c0 is None and self.c1 is None and self.c2 is None


@dataclass(frozen=True)
class SsdCoefficientOverrides:
    d0: Optional[float] = None
    d1: Optional[float] = None

    def is_empty(self) -> bool:
        return self.d0 is None and self.d1 is None


@dataclass(frozen=True)
class ScenarioCalibration:
    """Measured timing overlay attached to a scenario."""

    profile_id: Optional[str] = None
    label: Optional[str] = None
    device: Optional[str] = None
    firmware: Optional[str] = None
    source: Optional[str] = None
    sample_count: Optional[int] = None
    mu_per_4k_us: Optional[float] = None
    sigma_per_4k_us: Optional[float] = None
    nvme_latency_us: Optional[float] = None
    queue_depth: Optional[int] = None
    threads: Optional[int] = None
    read_nlb: Optional[int] = None
    mdts_bytes: Optional[int] = None
    tolerance_percent: Optional[float] = None
    applied_at: Optional[str] = None
    use_profile_defaults: bool = False
    host_coefficients: Optional[HostCoefficientOverrides] = None
    ssd_coefficients: Optional[SsdCoefficientOverrides] = None
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Scenario:
    stripe_width: int
    objects_in_flight: int
    file_size_mb: float
    chunk_size_kb: float
    queue_depth: int
    threads: int
    host_coefficients: HostCoefficients
    ssd_coefficients: SsdCoefficients
    nvme_latency_us: float
    crc_per_4k_us: float
    crc_sigma_per_4k_us: float
    service_distribution: ServiceDistribution
    straggler_p95_multiplier: float
    straggler_p99_multiplier: float
    failure_probability: float
    retry_policy: RetryPolicy
    retry_backoff_us: float
    retry_max_attempts: int
    orchestration_overhead_us: float
    mdts_bytes: int
    solution: Solution
    aggregator_policy: AggregatorPolicy
    random_seed: int
    calibration: Optional[ScenarioCalibration] = field(default=None)


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return to_number(value, None)


def _normalize_host_overrides(
    overrides: Optional[HostCoefficientOverrides],
) -> Optional[HostCoefficientOverrides]:
    if overrides is None:
        return None
    cleaned = HostCoefficientOverrides(
        c0=_optional_float(overrides.c0),
        c1=_optional_float(overrides.c1),
        c2=_optional_float(overrides.c2),
    )
    return None if cleaned.is_empty() else cleaned


def _normalize_ssd_overrides(
    overrides: Optional[SsdCoefficientOverrides],
) -> Optional[SsdCoefficientOverrides]:
    if overrides is None:
        return None
    cleaned = SsdCoefficientOverrides(
        d0=_optional_float(overrides.d0),
        d1=_optional_float(overrides.d1),
    )
    return None if cleaned.is_empty() else cleaned


def _optional_clamp_int(value: Any, lo: int, hi: int) -> Optional[int]:
    if value is None:
        return None
    return clamp_int(value, lo, hi)


def normalize_calibration(
    calibration: Optional[ScenarioCalibration],
) -> Optional[ScenarioCalibration]:
    if calibration is None:
        return None
    warnings = tuple(
        w for w in (calibration.warnings or ()) if isinstance(w, str) and w.strip()
    )
    tolerance = (
        clamp(calibration.tolerance_percent, 1, 100)
        if calibration.tolerance_percent is not None
        else None
    )
    sample_count = (
        clamp_int(calibration.sample_count, 0, 2**53)
        if calibration.sample_count is not None
        else None
    )
    return ScenarioCalibration(
        profile_id=calibration.profile_id,
        label=calibration.label if isinstance(calibration.label, str) else None,
        device=calibration.device if isinstance(calibration.device, str) else None,
        firmware=calibration.firmware if isinstance(calibration.firmware, str) else None,
        source=calibration.source if isinstance(calibration.source, str) else None,
        sample_count=sample_count,
        mu_per_4k_us=_optional_float(calibration.mu_per_4k_us),
        sigma_per_4k_us=_optional_float(calibration.sigma_per_4k_us),
        nvme_latency_us=_optional_float(calibration.nvme_latency_us),
        queue_depth=_optional_clamp_int(calibration.queue_depth, 1, 128),
        threads=_optional_clamp_int(calibration.threads, 1, 256),
        read_nlb=_optional_clamp_int(calibration.read_nlb, 1, 128),
        mdts_bytes=_optional_clamp_int(calibration.mdts_bytes, MIN_MDTS_BYTES, MAX_MDTS_BYTES),
        tolerance_percent=tolerance,
        applied_at=calibration.applied_at,
        use_profile_defaults=bool(calibration.use_profile_defaults),
        host_coefficients=_normalize_host_overrides(calibration.host_coefficients),
        ssd_coefficients=_normalize_ssd_overrides(calibration.ssd_coefficients),
        warnings=warnings,
    )


def apply_calibration(scenario: Scenario, calibration: ScenarioCalibration) -> Scenario:
    """
    Copy measured values from a calibration overlay into the effective
    scenario. Only fields present on the overlay are taken; every overridable
    field is listed here explicitly.
    """
    changes: Dict[str, Any] = {}
    if calibration.mu_per_4k_us is not None:
        changes["crc_per_4k_us"] = clamp(calibration.mu_per_4k_us, 1, 500)
    if calibration.sigma_per_4k_us is not None:
        changes["crc_sigma_per_4k_us"] = clamp(calibration.sigma_per_4k_us, 0, 500)
    if calibration.nvme_latency_us is not None:
        changes["nvme_latency_us"] = clamp(calibration.nvme_latency_us, 1, 500)
    if calibration.queue_depth is not None:
        changes["queue_depth"] = clamp_int(calibration.queue_depth, 1, 64)
    if calibration.threads is not None:
        changes["threads"] = clamp_int(calibration.threads, 1, 256)
    if calibration.mdts_bytes is not None:
        changes["mdts_bytes"] = clamp_int(
            calibration.mdts_bytes, MIN_MDTS_BYTES, MAX_MDTS_BYTES
        )

    host = calibration.host_coefficients
    if host is not None:
        base = scenario.host_coefficients
        changes["host_coefficients"] = HostCoefficients(
            c0=clamp(host.c0, 0, 500) if host.c0 is not None else base.c0,
            c1=clamp(host.c1, 0, 50) if host.c1 is not None else base.c1,
            c2=clamp(host.c2, 0, 200) if host.c2 is not None else base.c2,
        )
    ssd = calibration.ssd_coefficients
    if ssd is not None:
        base_ssd = scenario.ssd_coefficients
        changes["ssd_coefficients"] = SsdCoefficients(
            d0=clamp(ssd.d0, 0, 400) if ssd.d0 is not None else base_ssd.d0,
            d1=clamp(ssd.d1, 0, 40) if ssd.d1 is not None else base_ssd.d1,
        )
    return replace(scenario, **changes)


def normalize_scenario(scenario: Scenario) -> Scenario:
    """
    Clamp every field into its valid range and fold in calibration defaults.

    Pure and total: any input yields a simulatable scenario, and applying it
    twice gives the same result as applying it once.
    """
    calibration = normalize_calibration(scenario.calibration)
    host = scenario.host_coefficients
    ssd = scenario.ssd_coefficients

    normalized = Scenario(
        stripe_width=clamp_int(scenario.stripe_width, 1, 64),
        objects_in_flight=clamp_int(scenario.objects_in_flight, 1, 16),
        file_size_mb=clamp(scenario.file_size_mb, 0.5, 4096),
        chunk_size_kb=clamp(scenario.chunk_size_kb, 4, 2048),
        queue_depth=clamp_int(scenario.queue_depth, 1, 64),
        threads=clamp_int(scenario.threads, 1, 256),
        host_coefficients=HostCoefficients(
            c0=clamp(host.c0, 0, 500),
            c1=clamp(host.c1, 0, 50),
            c2=clamp(host.c2, 0, 200),
        ),
        ssd_coefficients=SsdCoefficients(
            d0=clamp(ssd.d0, 0, 400),
            d1=clamp(ssd.d1, 0, 40),
        ),
        nvme_latency_us=clamp(scenario.nvme_latency_us, 1, 200),
        crc_per_4k_us=clamp(scenario.crc_per_4k_us, 1, 500),
        crc_sigma_per_4k_us=clamp(scenario.crc_sigma_per_4k_us, 0, 500),
        service_distribution=coerce_enum(
            ServiceDistribution,
            scenario.service_distribution,
            ServiceDistribution.DETERMINISTIC,
        ),
        straggler_p95_multiplier=clamp(scenario.straggler_p95_multiplier, 1, 10),
        straggler_p99_multiplier=clamp(scenario.straggler_p99_multiplier, 1, 20),
        failure_probability=clamp(scenario.failure_probability, 0, 1),
        retry_policy=coerce_enum(RetryPolicy, scenario.retry_policy, RetryPolicy.FIXED),
        retry_backoff_us=clamp(scenario.retry_backoff_us, 0, 1_000_000),
        retry_max_attempts=clamp_int(scenario.retry_max_attempts, 1, 10),
        orchestration_overhead_us=clamp(scenario.orchestration_overhead_us, 0, 500),
        mdts_bytes=clamp_int(scenario.mdts_bytes, MIN_MDTS_BYTES, MAX_MDTS_BYTES),
        solution=coerce_enum(Solution, scenario.solution, Solution.HOST_AGGREGATE),
        aggregator_policy=coerce_enum(
            AggregatorPolicy, scenario.aggregator_policy, AggregatorPolicy.PINNED
        ),
        random_seed=clamp_int(scenario.random_seed, 1, MAX_SEED),
        calibration=calibration,
    )

    if calibration is not None and calibration.use_profile_defaults:
        normalized = apply_calibration(normalized, calibration)
    return normalized


# ---------------------------------------------------------------------------
# Plain-mapping conversion for JSON import/export.

def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def calibration_to_dict(calibration: ScenarioCalibration) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for f in fields(calibration):
        value = getattr(calibration, f.name)
        if isinstance(value, (HostCoefficientOverrides, SsdCoefficientOverrides)):
            value = {k: v for k, v in vars(value).items() if v is not None}
        elif isinstance(value, tuple):
            value = list(value)
        data[f.name] = value
    return data


def scenario_to_dict(scenario: Scenario) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for f in fields(scenario):
        value = getattr(scenario, f.name)
        if isinstance(value, (HostCoefficients, SsdCoefficients)):
            value = dict(vars(value))
        elif isinstance(value, ScenarioCalibration):
            value = calibration_to_dict(value)
        data[f.name] = _enum_value(value)
    return data


def _overrides_from(cls, raw: Any):
    if not isinstance(raw, Mapping):
        return None
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in known})


def calibration_from_dict(data: Mapping[str, Any]) -> ScenarioCalibration:
    known = {f.name for f in fields(ScenarioCalibration)}
    kwargs = {k: v for k, v in data.items() if k in known}
    kwargs["host_coefficients"] = _overrides_from(
        HostCoefficientOverrides, data.get("host_coefficients")
    )
    kwargs["ssd_coefficients"] = _overrides_from(
        SsdCoefficientOverrides, data.get("ssd_coefficients")
    )
    kwargs["warnings"] = tuple(data.get("warnings") or ())
    return ScenarioCalibration(**kwargs)


def scenario_from_dict(
    data: Mapping[str, Any], base: Optional[Scenario] = None
) -> Scenario:
    """
    Build a scenario from a JSON-style mapping. Missing keys are taken from
    `base` (or the baseline preset); coefficient blocks merge per field.
    """
    if base is None:
        from presets import BASELINE_SCENARIO

        base = BASELINE_SCENARIO

    known = {f.name for f in fields(Scenario)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown scenario keys: %s", ", ".join(unknown))

    changes: Dict[str, Any] = {k: v for k, v in data.items() if k in known}
    if "host_coefficients" in changes:
        raw = changes["host_coefficients"] or {}
        changes["host_coefficients"] = HostCoefficients(
            c0=raw.get("c0", base.host_coefficients.c0),
            c1=raw.get("c1", base.host_coefficients.c1),
            c2=raw.get("c2", base.host_coefficients.c2),
        )
    if "ssd_coefficients" in changes:
        raw = changes["ssd_coefficients"] or {}
        changes["ssd_coefficients"] = SsdCoefficients(
            d0=raw.get("d0", base.ssd_coefficients.d0),
            d1=raw.get("d1", base.ssd_coefficients.d1),
        )
    if "calibration" in changes:
        raw = changes["calibration"]
        changes["calibration"] = (
            calibration_from_dict(raw) if isinstance(raw, Mapping) else None
        )
    return replace(base, **changes)
