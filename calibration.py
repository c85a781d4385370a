"""
Calibration import: turn an exerciser log (or an exported profile JSON)
into a measured timing profile, and convert profiles to and from the
overlay a scenario carries.
"""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from analytics import standard_deviation
from scenario import (
    HostCoefficientOverrides,
    Scenario,
    ScenarioCalibration,
    SsdCoefficientOverrides,
)
from utils import CRC_UNIT_BYTES, clamp, round_half_up

logger = logging.getLogger(__name__)

AVG_LATENCY_RE = re.compile(
    r"Avg latency\s+(\d+(?:\.\d+)?)\s*(?:usecs|µs|us)\s+per\s+(\d+)\s*B", re.IGNORECASE
)
CRC_COUNT_RE = re.compile(r"(?:\b|\D)(\d+)/(\d+)\s+CRCs", re.IGNORECASE)
QUEUE_DEPTH_RE = re.compile(r"(queue\s*depth|queuedepth|QD)\s*(?:=|:)?\s*(\d+)", re.IGNORECASE)
THREADS_RE = re.compile(r"(threads?|NUM_VERIFY_THREADS)\s*(?:=|:)?\s*(\d+)", re.IGNORECASE)
READ_NLB_RE = re.compile(r"(read\+?\s?NLB|readplus_nlb|NLB)\s*(?:=|:)?\s*(\d+)", re.IGNORECASE)
MDTS_RE = re.compile(r"(MDTS|mdts_bytes)\s*(?:=|:)?\s*(\d+)", re.IGNORECASE)
CRC_RATE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*CRCs/(?:sec|s)", re.IGNORECASE)

DEFAULT_TOLERANCE_PERCENT = 15.0
DEFAULT_NVME_LATENCY_US = 12.0
SIGMA_FALLBACK_RATIO = 0.18


class CalibrationError(ValueError):
    """Raised when no timing signal can be extracted from calibration input."""


@dataclass
class CalibrationProfile:
    id: str
    label: str
    created_at: str
    source: str  # log | manual | imported
    mu_per_4k_us: float
    sigma_per_4k_us: float
    nvme_latency_us: float
    sample_count: int
    device: Optional[str] = None
    firmware: Optional[str] = None
    queue_depth: Optional[int] = None
    threads: Optional[int] = None
    read_nlb: Optional[int] = None
    mdts_bytes: Optional[int] = None
    tolerance_percent: Optional[float] = None
    host_coefficients: Optional[HostCoefficientOverrides] = None
    ssd_coefficients: Optional[SsdCoefficientOverrides] = None
    notes: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("host_coefficients", "ssd_coefficients"):
            if data[key] is not None:
                data[key] = {k: v for k, v in data[key].items() if v is not None}
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CalibrationProfile":
        data = _snake_keys(data)
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["host_coefficients"] = _overrides(
            HostCoefficientOverrides, data.get("host_coefficients")
        )
        kwargs["ssd_coefficients"] = _overrides(
            SsdCoefficientOverrides, data.get("ssd_coefficients")
        )
        kwargs["warnings"] = list(data.get("warnings") or [])
        return _normalize_imported(kwargs)


@dataclass
class CalibrationParseResult:
    profile: CalibrationProfile
    warnings: List[str]
    avg_latency_samples: List[float]
    command_samples: List[int]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_profile_id() -> str:
    return str(uuid.uuid4())


_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")


def _snake(key: str) -> str:
    # muPer4kUs -> mu_per4k_us; the digit run stays glued to its prefix.
    snake = _CAMEL_RE.sub(r"_\1", key).lower()
    return snake.replace("per4k", "per_4k")


def _snake_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {_snake(str(key)): value for key, value in data.items()}


def _overrides(cls, raw: Any):
    if not isinstance(raw, Mapping):
        return None
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in known})


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def looks_like_profile(candidate: Any) -> bool:
    if not isinstance(candidate, Mapping):
        return False
    data = _snake_keys(candidate)
    return all(
        _is_number(data.get(key)) for key in ("mu_per_4k_us", "sigma_per_4k_us", "sample_count")
    )


def normalize_tolerance(value: Any) -> Optional[float]:
    if value is None:
        return None
    return clamp(round_half_up(clamp(value, 1, 100)), 1, 100)


def _normalize_imported(kwargs: Dict[str, Any]) -> CalibrationProfile:
    tolerance = normalize_tolerance(kwargs.get("tolerance_percent"))
    nvme = kwargs.get("nvme_latency_us")
    return CalibrationProfile(
        id=kwargs.get("id") or _new_profile_id(),
        label=kwargs.get("label") or f"Calibration {_now().isoformat()}",
        created_at=kwargs.get("created_at") or _now().isoformat(),
        source=kwargs.get("source") or "imported",
        mu_per_4k_us=clamp(kwargs.get("mu_per_4k_us"), 1, 1000),
        sigma_per_4k_us=clamp(kwargs.get("sigma_per_4k_us"), 0, 1000),
        nvme_latency_us=clamp(DEFAULT_NVME_LATENCY_US if nvme is None else nvme, 1, 500),
        sample_count=max(0, round_half_up(clamp(kwargs.get("sample_count"), 0, 2**53))),
        device=kwargs.get("device"),
        firmware=kwargs.get("firmware"),
        queue_depth=kwargs.get("queue_depth"),
        threads=kwargs.get("threads"),
        read_nlb=kwargs.get("read_nlb"),
        mdts_bytes=kwargs.get("mdts_bytes"),
        tolerance_percent=DEFAULT_TOLERANCE_PERCENT if tolerance is None else tolerance,
        host_coefficients=kwargs.get("host_coefficients"),
        ssd_coefficients=kwargs.get("ssd_coefficients"),
        notes=kwargs.get("notes"),
        warnings=list(kwargs.get("warnings") or []),
    )


def estimate_nvme_latency(mu_per_4k_us: float, command_rates: List[float]) -> float:
    """Per-command NVMe overhead guess; faster measured rates imply more overlap."""
    peak = max(command_rates) if command_rates else 0.0
    if not math.isfinite(peak) or peak <= 0:
        return clamp(mu_per_4k_us * 0.12, 4, 80)
    ideal_latency = 1_000_000 / peak
    return clamp(min(mu_per_4k_us * 0.25, ideal_latency * 0.4), 4, 120)


def _try_json_profile(text: str) -> Optional[CalibrationProfile]:
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    if not looks_like_profile(parsed):
        return None
    return CalibrationProfile.from_dict(parsed)


def parse_calibration_input(
    text: str,
    label: Optional[str] = None,
    device: Optional[str] = None,
    firmware: Optional[str] = None,
    tolerance_percent: Optional[float] = None,
) -> CalibrationParseResult:
    trimmed = (text or "").strip()
    if not trimmed:
        raise CalibrationError("Calibration input is empty.")

    imported = _try_json_profile(trimmed)
    if imported is not None:
        logger.debug("Calibration input parsed as profile JSON (%s)", imported.id)
        return CalibrationParseResult(
            profile=imported, warnings=[], avg_latency_samples=[], command_samples=[]
        )

    avg_samples: List[float] = []
    command_samples: List[int] = []
    command_rates: List[float] = []
    detected: Dict[str, Optional[int]] = {
        "queue_depth": None,
        "threads": None,
        "read_nlb": None,
        "mdts_bytes": None,
    }
    first_match_patterns = {
        "queue_depth": QUEUE_DEPTH_RE,
        "threads": THREADS_RE,
        "read_nlb": READ_NLB_RE,
        "mdts_bytes": MDTS_RE,
    }

    for line in trimmed.splitlines():
        match = AVG_LATENCY_RE.search(line)
        if match:
            avg_samples.append(float(match.group(1)))

        match = CRC_COUNT_RE.search(line)
        if match and int(match.group(2)) > 0:
            command_samples.append(int(match.group(2)))

        match = CRC_RATE_RE.search(line)
        if match and float(match.group(1)) > 0:
            command_rates.append(float(match.group(1)))

        for key, pattern in first_match_patterns.items():
            if detected[key] is None:
                match = pattern.search(line)
                if match:
                    detected[key] = int(match.group(2))

    if not avg_samples:
        raise CalibrationError("No avg latency samples found in calibration log.")

    warnings: List[str] = []
    mu = sum(avg_samples) / len(avg_samples)
    sigma = standard_deviation(avg_samples)
    if sigma <= 0:
        sigma = mu * SIGMA_FALLBACK_RATIO
        warnings.append("Unable to derive σ from log - estimated at 18% of μ.")

    sample_count = sum(command_samples)
    if not sample_count:
        warnings.append(
            "Unable to determine total command count - confidence will rely on "
            "simulation sample size."
        )
    if detected["queue_depth"] is None:
        warnings.append("Queue depth not found in log - retaining scenario value.")
    if detected["threads"] is None:
        warnings.append("Thread count not found in log - retaining scenario value.")
    if detected["read_nlb"] is None:
        warnings.append("Read+ NLB not found - assuming 1 (4 KiB).")

    tolerance = normalize_tolerance(tolerance_percent)
    now = _now()
    profile = CalibrationProfile(
        id=_new_profile_id(),
        label=label or f"Log import {now.date().isoformat()}",
        created_at=now.isoformat(),
        source="log",
        mu_per_4k_us=mu,
        sigma_per_4k_us=sigma,
        nvme_latency_us=estimate_nvme_latency(mu, command_rates),
        sample_count=sample_count,
        device=device,
        firmware=firmware,
        queue_depth=detected["queue_depth"],
        threads=detected["threads"],
        read_nlb=detected["read_nlb"],
        mdts_bytes=detected["mdts_bytes"],
        tolerance_percent=DEFAULT_TOLERANCE_PERCENT if tolerance is None else tolerance,
        notes="Auto-generated from exerciser log import.",
        warnings=list(warnings),
    )
    for warning in warnings:
        logger.warning("Calibration import: %s", warning)
    logger.info(
        "Parsed %d latency samples: mu=%.2f us sigma=%.2f us, %d commands",
        len(avg_samples),
        mu,
        sigma,
        sample_count,
    )
    return CalibrationParseResult(
        profile=profile,
        warnings=warnings,
        avg_latency_samples=avg_samples,
        command_samples=command_samples,
    )


def profile_to_scenario_calibration(
    profile: CalibrationProfile,
    use_profile_defaults: bool = True,
    warnings: Optional[List[str]] = None,
) -> ScenarioCalibration:
    mdts = profile.mdts_bytes
    if mdts is None and profile.read_nlb:
        mdts = profile.read_nlb * CRC_UNIT_BYTES
    return ScenarioCalibration(
        profile_id=profile.id,
        label=profile.label,
        device=profile.device,
        firmware=profile.firmware,
        source=profile.source,
        sample_count=profile.sample_count,
        mu_per_4k_us=profile.mu_per_4k_us,
        sigma_per_4k_us=profile.sigma_per_4k_us,
        nvme_latency_us=profile.nvme_latency_us,
        queue_depth=profile.queue_depth,
        threads=profile.threads,
        read_nlb=profile.read_nlb,
        mdts_bytes=mdts,
        tolerance_percent=(
            DEFAULT_TOLERANCE_PERCENT
            if profile.tolerance_percent is None
            else profile.tolerance_percent
        ),
        applied_at=_now().isoformat(),
        use_profile_defaults=use_profile_defaults,
        host_coefficients=profile.host_coefficients,
        ssd_coefficients=profile.ssd_coefficients,
        warnings=tuple(warnings or ()),
    )


def scenario_to_calibration_profile(
    scenario: Scenario,
    label: Optional[str] = None,
    source: str = "manual",
    profile_id: Optional[str] = None,
) -> CalibrationProfile:
    """Capture a scenario's timing inputs as a reusable profile."""
    calibration = scenario.calibration
    host = scenario.host_coefficients
    ssd = scenario.ssd_coefficients
    if label is None:
        label = (calibration.label if calibration else None) or (
            f"Scenario capture {_now().date().isoformat()}"
        )
    tolerance = normalize_tolerance(calibration.tolerance_percent if calibration else None)
    return CalibrationProfile(
        id=profile_id or _new_profile_id(),
        label=label,
        created_at=_now().isoformat(),
        source=source,
        mu_per_4k_us=scenario.crc_per_4k_us,
        sigma_per_4k_us=scenario.crc_sigma_per_4k_us,
        nvme_latency_us=scenario.nvme_latency_us,
        sample_count=(calibration.sample_count or 0) if calibration else 0,
        device=calibration.device if calibration else None,
        firmware=calibration.firmware if calibration else None,
        queue_depth=scenario.queue_depth,
        threads=scenario.threads,
        read_nlb=calibration.read_nlb if calibration else None,
        mdts_bytes=(calibration.mdts_bytes if calibration else None) or scenario.mdts_bytes,
        tolerance_percent=DEFAULT_TOLERANCE_PERCENT if tolerance is None else tolerance,
        host_coefficients=(
            calibration.host_coefficients
            if calibration and calibration.host_coefficients
            else HostCoefficientOverrides(c0=host.c0, c1=host.c1, c2=host.c2)
        ),
        ssd_coefficients=(
            calibration.ssd_coefficients
            if calibration and calibration.ssd_coefficients
            else SsdCoefficientOverrides(d0=ssd.d0, d1=ssd.d1)
        ),
        notes="Snapshot of scenario timing inputs.",
        warnings=list(calibration.warnings) if calibration else [],
    )
