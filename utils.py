import math
from typing import Any

BYTES_PER_KIB = 1024
BYTES_PER_MIB = 1024 * 1024
CRC_UNIT_BYTES = 4096  # service-time coefficients are quoted per 4 KiB
MIN_CHUNK_BYTES = 4096
MAX_SEED = 2_147_483_647
US_PER_SECOND = 1_000_000.0


def round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; scenario fields round halves up.
    return int(math.floor(value + 0.5))


def to_number(value: Any, fallback: float) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return number


def clamp(value: Any, lo: float, hi: float) -> float:
    """
    Total clamp used by every normalisation step.
    NaN and non-numeric input collapse to the lower bound; infinities land
    on the bound they exceed.
    """
    if isinstance(value, bool):
        return max(lo, min(hi, float(value)))
    try:
        number = float(value)
    except (TypeError, ValueError):
        return lo
    if math.isnan(number):
        return lo
    return max(lo, min(hi, number))


def clamp_int(value: Any, lo: int, hi: int) -> int:
    return int(clamp(round_half_up(clamp(value, lo, hi)), lo, hi))


def log2_safe(value: float) -> float:
    return math.log2(max(1.0, value))


def to_percent(value: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return (value / total) * 100.0


def mib_to_bytes(mib: float) -> int:
    return max(1, round_half_up(mib * BYTES_PER_MIB))


def kib_to_chunk_bytes(kib: float) -> int:
    return max(MIN_CHUNK_BYTES, round_half_up(kib * BYTES_PER_KIB))


def crc_units(num_bytes: float) -> float:
    return max(1.0, num_bytes / CRC_UNIT_BYTES)


def objects_per_second(objects: int, total_us: float) -> float:
    if total_us <= 0:
        return 0.0
    return objects / (total_us / US_PER_SECOND)


def slugify(name: str) -> str:
    return "".join(ch.lower() if ch.isalnum() else "_" for ch in name).strip("_")


def format_us(value_us: float) -> str:
    if math.isinf(value_us):
        return "  inf"
    if value_us >= 1e6:
        return f"{value_us / 1e6:.2f} s"
    if value_us >= 1e3:
        return f"{value_us / 1e3:.2f} ms"
    return f"{value_us:.0f} µs"


def format_bytes(num_bytes: float) -> str:
    if num_bytes >= BYTES_PER_MIB:
        return f"{num_bytes / BYTES_PER_MIB:.1f} MiB"
    if num_bytes >= BYTES_PER_KIB:
        return f"{num_bytes / BYTES_PER_KIB:.0f} KiB"
    return f"{num_bytes:.0f} B"
