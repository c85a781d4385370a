"""
Single-knob parameter sweeps across the three solutions, plus the advisory
notes derived from them.

Each sweep point gets `seed + point_index` so points are decorrelated yet
reproducible. Points share nothing at runtime, so `run_sweep` can fan them
out over a process pool when `max_workers` is given.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

from results import SimulationResult
from scenario import Scenario, Solution, coerce_enum
from solutions import simulate
from utils import MAX_SEED, clamp, round_half_up

logger = logging.getLogger(__name__)

MAX_SWEEP_POINTS = 1024
HOTSPOT_SHARE_PERCENT = 45.0
MAX_ADVISOR_HINTS = 5


@dataclass(frozen=True)
class SweepKnobDefinition:
    id: str
    label: str
    min: float
    max: float
    step: float
    unit: Optional[str] = None
    helper: Optional[str] = None
    integer: bool = False


SWEEP_KNOBS: Dict[str, SweepKnobDefinition] = {
    "stripe_width": SweepKnobDefinition(
        "stripe_width", "Stripe Width", 1, 64, 1, unit="×",
        helper="Number of SSDs participating in a stripe.", integer=True,
    ),
    "objects_in_flight": SweepKnobDefinition(
        "objects_in_flight", "Objects in Flight", 1, 16, 1,
        helper="Concurrent files under CRC validation.", integer=True,
    ),
    "chunk_size_kb": SweepKnobDefinition(
        "chunk_size_kb", "Chunk Size", 4, 2048, 4, unit="KiB",
        helper="Chunk size before MDTS enforcement.",
    ),
    "queue_depth": SweepKnobDefinition(
        "queue_depth", "Queue Depth / SSD", 1, 64, 1,
        helper="Outstanding CRC commands per SSD.", integer=True,
    ),
    "crc_per_4k_us": SweepKnobDefinition(
        "crc_per_4k_us", "μ per 4 KiB", 5, 400, 5, unit="µs",
        helper="Average CRC service time baseline.",
    ),
    "crc_sigma_per_4k_us": SweepKnobDefinition(
        "crc_sigma_per_4k_us", "σ per 4 KiB", 0, 200, 5, unit="µs",
        helper="Jitter width applied to CRC service time.",
    ),
}

ALL_SOLUTIONS: Tuple[Solution, ...] = (
    Solution.SERIAL,
    Solution.HOST_AGGREGATE,
    Solution.SSD_AGGREGATE,
)


@dataclass(frozen=True)
class SweepConfig:
    knob: str
    start: float
    end: float
    step: float

    @property
    def definition(self) -> SweepKnobDefinition:
        try:
            return SWEEP_KNOBS[self.knob]
        except KeyError:
            raise KeyError(
                f"Unknown sweep knob '{self.knob}'. Choose from: {', '.join(SWEEP_KNOBS)}"
            ) from None


@dataclass
class SweepPoint:
    value: float
    results: Dict[Solution, SimulationResult]

    def winner(self) -> Solution:
        return min(self.results, key=lambda solution: self.results[solution].kpis.p99_us)


@dataclass
class SweepRun:
    base_scenario: Scenario
    config: SweepConfig
    points: List[SweepPoint]
    solutions: Tuple[Solution, ...]


@dataclass(frozen=True)
class SweepAdvisorHint:
    id: str
    tone: str  # positive | neutral | warning
    message: str


def build_sweep_values(config: SweepConfig) -> List[float]:
    """
    Values visited by a sweep: walk from start toward end by |step|, clamp to
    the knob's domain, round to 4 decimals and drop consecutive repeats. The
    clamped end value is always the last point.
    """
    definition = config.definition
    step = max(abs(config.step or definition.step or 1), 1e-9)
    direction = 1 if config.end >= config.start else -1
    values: List[float] = []
    current = config.start

    for _ in range(MAX_SWEEP_POINTS):
        rounded = round(clamp(current, definition.min, definition.max), 4)
        if not values or abs(values[-1] - rounded) > 1e-6:
            values.append(rounded)
        if (direction > 0 and current >= config.end) or (direction < 0 and current <= config.end):
            break
        current += direction * step

    terminal = round(clamp(config.end, definition.min, definition.max), 4)
    if not values or abs(values[-1] - terminal) > 1e-6:
        values.append(terminal)
    return values


def scenario_for_point(
    base: Scenario, config: SweepConfig, value: float, point_index: int, solution: Solution
) -> Scenario:
    definition = config.definition
    knob_value = round_half_up(value) if definition.integer else value
    return replace(
        base,
        **{config.knob: knob_value},
        solution=solution,
        random_seed=int(clamp(base.random_seed + point_index, 1, MAX_SEED)),
    )


def _simulate_point(
    base: Scenario, config: SweepConfig, value: float, point_index: int, solutions: Sequence[Solution]
) -> Tuple[int, SweepPoint]:
    results = {
        solution: simulate(scenario_for_point(base, config, value, point_index, solution))
        for solution in solutions
    }
    return point_index, SweepPoint(value=value, results=results)


def run_sweep(
    base: Scenario,
    config: SweepConfig,
    solutions: Sequence[Solution] = ALL_SOLUTIONS,
    max_workers: Optional[int] = None,
) -> SweepRun:
    values = build_sweep_values(config)
    chosen = tuple(coerce_enum(Solution, s, Solution.HOST_AGGREGATE) for s in solutions)
    logger.info(
        "Sweeping %s over %d points (%s) for %s",
        config.knob,
        len(values),
        ", ".join(f"{v:g}" for v in values),
        "/".join(s.value for s in chosen),
    )

    points: List[Optional[SweepPoint]] = [None] * len(values)
    if max_workers and max_workers > 1 and len(values) > 1:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(_simulate_point, base, config, value, index, chosen)
                for index, value in enumerate(values)
            ]
            for future in as_completed(futures):
                index, point = future.result()
                points[index] = point
    else:
        for index, value in enumerate(values):
            points[index] = _simulate_point(base, config, value, index, chosen)[1]

    return SweepRun(base_scenario=base, config=config, points=points, solutions=chosen)


def format_knob_value(definition: SweepKnobDefinition, value: float) -> str:
    if definition.unit == "µs":
        if value >= 1000:
            return f"{value / 1000:.2f} ms"
        return f"{value:.0f} µs"
    if definition.unit == "KiB":
        if value >= 1024:
            return f"{value / 1024:.1f} MiB"
        return f"{value:.0f} KiB"
    return f"{value:.0f}"


def _best_per_point(run: SweepRun) -> List[Tuple[float, Solution, float]]:
    """(value, winner, p99 lead over runner-up in percent) for every point."""
    best = []
    for point in run.points:
        ranked = sorted(
            ((point.results[s].kpis.p99_us, s) for s in run.solutions if s in point.results),
            key=lambda entry: entry[0],
        )
        winner_p99, winner = ranked[0]
        runner_up_p99 = ranked[1][0] if len(ranked) > 1 else winner_p99
        lead = (runner_up_p99 - winner_p99) / runner_up_p99 * 100 if runner_up_p99 > 0 else 0.0
        best.append((point.value, winner, lead))
    return best


def generate_sweep_advisor(run: SweepRun) -> List[SweepAdvisorHint]:
    hints: List[SweepAdvisorHint] = []
    if not run.points:
        return hints

    definition = run.config.definition
    best = _best_per_point(run)
    counts = {solution: 0 for solution in run.solutions}
    for _, winner, _ in best:
        counts[winner] += 1

    # Ties keep the earlier solution in run order.
    dominant = None
    for solution in run.solutions:
        if counts[solution] > (counts[dominant] if dominant is not None else 0):
            dominant = solution

    if dominant is not None:
        leads = [lead for _, winner, lead in best if winner == dominant]
        mean_lead = sum(leads) / max(len(leads), 1)
        lead_label = f"{mean_lead:.1f}% p99 lead" if mean_lead > 0 else "matching p99"
        hints.append(
            SweepAdvisorHint(
                id=f"dominant-{dominant.value}",
                tone="positive",
                message=(
                    f"{dominant.value.upper()} leads {len(leads)}/{len(best)} "
                    f"sweep points with {lead_label}."
                ),
            )
        )

    first_winner = best[0][1]
    last_winner = best[-1][1]
    if first_winner != last_winner:
        change_value = next(value for value, winner, _ in best if winner == last_winner)
        hints.append(
            SweepAdvisorHint(
                id=f"crossover-{last_winner.value}",
                tone="neutral",
                message=(
                    f"{last_winner.value.upper()} overtakes {first_winner.value.upper()} at "
                    f"{format_knob_value(definition, change_value)} on this sweep."
                ),
            )
        )

    host_hotspot = next(
        (
            point
            for point in run.points
            if Solution.HOST_AGGREGATE in point.results
            and point.results[Solution.HOST_AGGREGATE].kpis.critical_share("host aggregation")
            >= HOTSPOT_SHARE_PERCENT
        ),
        None,
    )
    if host_hotspot is not None:
        hints.append(
            SweepAdvisorHint(
                id="host-hotspot",
                tone="warning",
                message=(
                    f"Host aggregation consumes ≥45% of latency at "
                    f"{format_knob_value(definition, host_hotspot.value)}; "
                    "consider SSD aggregation or reducing fan-in."
                ),
            )
        )

    ssd_hotspot = next(
        (
            point
            for point in run.points
            if Solution.SSD_AGGREGATE in point.results
            and point.results[Solution.SSD_AGGREGATE].kpis.critical_share("ssd aggregation")
            >= HOTSPOT_SHARE_PERCENT
        ),
        None,
    )
    if ssd_hotspot is not None:
        hints.append(
            SweepAdvisorHint(
                id="ssd-hotspot",
                tone="warning",
                message=(
                    f"SSD aggregation dominates beyond "
                    f"{format_knob_value(definition, ssd_hotspot.value)}; "
                    "round-robin policy or host combine may help."
                ),
            )
        )

    if all(counts.get(solution, 0) > 0 for solution in ALL_SOLUTIONS) and len(hints) < 4:
        hints.append(
            SweepAdvisorHint(
                id="balanced-tradeoff",
                tone="neutral",
                message=(
                    "All solutions win at least once; use this sweep to align "
                    "architecture with deployment priorities."
                ),
            )
        )

    return hints[:MAX_ADVISOR_HINTS]
