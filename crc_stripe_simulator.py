#!/usr/bin/env python3
"""
CRC stripe validation latency simulator.

Compares three ways of validating a striped object's CRC across NVMe SSDs:
S1 serial seed chaining, S2 parallel fan-out with host aggregation, and S3
parallel fan-out with on-SSD aggregation.

Examples:
  python crc_stripe_simulator.py run --preset baseline --solution s3
  python crc_stripe_simulator.py compare --preset host16
  python crc_stripe_simulator.py sweep --knob stripe_width --start 4 --end 32 --step 4
  python crc_stripe_simulator.py calibrate exerciser.log --run
"""

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
from matplotlib.patches import Patch

from analytics import compute_lane_boxplots, compute_latency_distribution
from calibration import (
    CalibrationError,
    parse_calibration_input,
    profile_to_scenario_calibration,
)
from presets import get_preset, preset_choices
from results import SimulationResult, result_to_dict
from scenario import (
    AggregatorPolicy,
    RetryPolicy,
    Scenario,
    ServiceDistribution,
    Solution,
    scenario_from_dict,
)
from solutions import simulate
from sweep import (
    ALL_SOLUTIONS,
    SWEEP_KNOBS,
    SweepConfig,
    SweepRun,
    format_knob_value,
    generate_sweep_advisor,
    run_sweep,
)
from timeline import SegmentKind
from utils import format_bytes, format_us, slugify

SOLUTION_LABELS: Dict[Solution, str] = {
    Solution.SERIAL: "S1 serial",
    Solution.HOST_AGGREGATE: "S2 host agg",
    Solution.SSD_AGGREGATE: "S3 SSD agg",
}

SOLUTION_STYLES: Dict[Solution, Dict[str, str]] = {
    Solution.SERIAL: {"color": "tab:red", "marker": "s", "linestyle": ":"},
    Solution.HOST_AGGREGATE: {"color": "tab:blue", "marker": "o", "linestyle": "-"},
    Solution.SSD_AGGREGATE: {"color": "tab:green", "marker": "^", "linestyle": "--"},
}

SEGMENT_COLORS: Dict[SegmentKind, str] = {
    SegmentKind.IO: "#9ecae1",
    SegmentKind.WAIT: "#d9d9d9",
    SegmentKind.COMPUTE: "#3182bd",
    SegmentKind.RETRY: "#e6550d",
    SegmentKind.AGGREGATION: "#31a354",
    SegmentKind.FINALIZE: "#756bb1",
}

# Scenario fields settable from a CLI flag of the same name.
SCENARIO_OVERRIDES = (
    "stripe_width",
    "objects_in_flight",
    "file_size_mb",
    "chunk_size_kb",
    "queue_depth",
    "threads",
    "nvme_latency_us",
    "crc_per_4k_us",
    "crc_sigma_per_4k_us",
    "failure_probability",
    "retry_backoff_us",
    "retry_max_attempts",
    "orchestration_overhead_us",
    "mdts_bytes",
    "random_seed",
)


def add_scenario_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--preset",
        choices=preset_choices(),
        default="baseline",
        help="Named reference scenario to start from (default: baseline).",
    )
    parser.add_argument(
        "--scenario-file",
        type=str,
        default=None,
        help="JSON file with scenario fields layered over the preset.",
    )
    parser.add_argument("--stripe-width", type=int, help="SSDs per stripe (1-64).")
    parser.add_argument("--objects-in-flight", type=int, help="Concurrent objects (1-16).")
    parser.add_argument("--file-size-mb", type=float, help="Object size in MiB.")
    parser.add_argument("--chunk-size-kb", type=float, help="Chunk size in KiB.")
    parser.add_argument("--queue-depth", type=int, help="Outstanding CRC commands per SSD.")
    parser.add_argument("--threads", type=int, help="Verification threads.")
    parser.add_argument("--nvme-latency-us", type=float, help="NVMe round trip per command.")
    parser.add_argument("--crc-per-4k-us", type=float, help="Mean CRC time per 4 KiB.")
    parser.add_argument("--crc-sigma-per-4k-us", type=float, help="CRC jitter per 4 KiB.")
    parser.add_argument(
        "--distribution",
        choices=[d.value for d in ServiceDistribution],
        help="Service-time distribution.",
    )
    parser.add_argument("--failure-probability", type=float, help="Per-attempt failure chance.")
    parser.add_argument(
        "--retry-policy", choices=[p.value for p in RetryPolicy], help="Retry backoff policy."
    )
    parser.add_argument("--retry-backoff-us", type=float, help="Base retry backoff.")
    parser.add_argument("--retry-max-attempts", type=int, help="Attempts per command (1-10).")
    parser.add_argument(
        "--orchestration-overhead-us", type=float, help="Host finalize cost per object."
    )
    parser.add_argument("--mdts-bytes", type=int, help="Maximum data transfer size per command.")
    parser.add_argument(
        "--aggregator-policy",
        choices=[p.value for p in AggregatorPolicy],
        help="Which SSD aggregates each stripe under S3.",
    )
    parser.add_argument("--random-seed", type=int, help="PRNG seed.")


def add_output_arguments(parser: argparse.ArgumentParser, default_plot: str) -> None:
    parser.add_argument(
        "--json-out", type=str, default=None, help="Write the full result as JSON to this path."
    )
    parser.add_argument(
        "--plot-dir",
        type=str,
        default=default_plot,
        help=f"Directory for generated plots (default: {default_plot}).",
    )
    parser.add_argument(
        "--skip-plots", action="store_true", help="Do not generate matplotlib figures."
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Simulate CRC validation latency across a stripe of NVMe SSDs."
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Increase log verbosity (-v, -vv)."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Simulate one solution and print its KPIs.")
    add_scenario_arguments(run_parser)
    run_parser.add_argument(
        "--solution",
        choices=[s.value for s in Solution],
        default=None,
        help="Solution to simulate (default: the preset's).",
    )
    run_parser.add_argument(
        "--events", type=int, default=10, help="Number of event-log entries to print."
    )
    add_output_arguments(run_parser, "plots")

    compare_parser = sub.add_parser("compare", help="Run S1, S2 and S3 on one scenario.")
    add_scenario_arguments(compare_parser)
    add_output_arguments(compare_parser, "plots")

    sweep_parser = sub.add_parser("sweep", help="Sweep one knob across all solutions.")
    add_scenario_arguments(sweep_parser)
    sweep_parser.add_argument("--knob", choices=sorted(SWEEP_KNOBS), required=True)
    sweep_parser.add_argument("--start", type=float, required=True)
    sweep_parser.add_argument("--end", type=float, required=True)
    sweep_parser.add_argument(
        "--step", type=float, default=0.0, help="Step size (default: the knob's own step)."
    )
    sweep_parser.add_argument(
        "--solutions",
        type=str,
        default="s1,s2,s3",
        help="Comma-separated solutions to include (default: s1,s2,s3).",
    )
    sweep_parser.add_argument(
        "--workers", type=int, default=None, help="Process-pool size for sweep points."
    )
    add_output_arguments(sweep_parser, "plots")

    calibrate_parser = sub.add_parser(
        "calibrate", help="Import an exerciser log or profile JSON."
    )
    calibrate_parser.add_argument("input", type=str, help="Log or JSON file to parse.")
    calibrate_parser.add_argument("--label", type=str, default=None)
    calibrate_parser.add_argument("--device", type=str, default=None)
    calibrate_parser.add_argument("--firmware", type=str, default=None)
    calibrate_parser.add_argument("--tolerance-percent", type=float, default=None)
    calibrate_parser.add_argument(
        "--profile-out", type=str, default=None, help="Write the parsed profile as JSON."
    )
    calibrate_parser.add_argument(
        "--run",
        action="store_true",
        help="Also simulate the preset scenario with this profile applied.",
    )
    add_scenario_arguments(calibrate_parser)
    calibrate_parser.add_argument(
        "--solution", choices=[s.value for s in Solution], default=None
    )
    add_output_arguments(calibrate_parser, "plots")

    return parser.parse_args(argv)


def parse_solutions(value: str) -> List[Solution]:
    chosen = []
    for item in value.split(","):
        item = item.strip().lower()
        if not item:
            continue
        try:
            chosen.append(Solution(item))
        except ValueError:
            raise argparse.ArgumentTypeError(
                f"Unknown solution '{item}'. Choose from: s1, s2, s3"
            ) from None
    if not chosen:
        raise argparse.ArgumentTypeError("At least one solution is required.")
    return chosen


def build_scenario(args: argparse.Namespace) -> Scenario:
    scenario = get_preset(args.preset).scenario
    if args.scenario_file:
        path = Path(args.scenario_file)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SystemExit(f"Unable to read scenario file {path}: {exc}")
        if not isinstance(data, dict):
            raise SystemExit(f"Scenario file {path} must contain a JSON object.")
        scenario = scenario_from_dict(data, base=scenario)

    changes = {
        name: getattr(args, name)
        for name in SCENARIO_OVERRIDES
        if getattr(args, name, None) is not None
    }
    if getattr(args, "distribution", None):
        changes["service_distribution"] = ServiceDistribution(args.distribution)
    if getattr(args, "retry_policy", None):
        changes["retry_policy"] = RetryPolicy(args.retry_policy)
    if getattr(args, "aggregator_policy", None):
        changes["aggregator_policy"] = AggregatorPolicy(args.aggregator_policy)
    if getattr(args, "solution", None):
        changes["solution"] = Solution(args.solution)
    return replace(scenario, **changes)


def write_json(path_str: str, payload) -> None:
    path = Path(path_str)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    print(f"Saved JSON: {path}")


def print_result(result: SimulationResult, event_limit: int = 10) -> None:
    scenario = result.scenario
    derived = result.derived
    kpis = result.kpis
    print(f"=== {SOLUTION_LABELS[scenario.solution]} ===")
    print(
        "Stripe width: {} | Objects: {} | File: {} | Chunk: {} | QD: {} | Seed: {}".format(
            scenario.stripe_width,
            scenario.objects_in_flight,
            format_bytes(derived.file_bytes),
            format_bytes(derived.chunk_bytes),
            scenario.queue_depth,
            derived.random_seed,
        )
    )
    print(
        "Chunks: {} | Stripes: {} | Commands/object: {} | MDTS segments/chunk: {}{}".format(
            derived.total_chunks,
            derived.stripes,
            derived.commands_per_object,
            derived.mdts_segments_per_chunk,
            " (MDTS clamp)" if derived.mdts_clamp else "",
        )
    )
    print(
        "Latency: {} | Throughput: {:.1f} obj/s | p50 {} | p95 {} | p99 {}".format(
            format_us(kpis.latency_us),
            kpis.throughput_objs_per_sec,
            format_us(kpis.p50_us),
            format_us(kpis.p95_us),
            format_us(kpis.p99_us),
        )
    )
    print(f"Failures: {derived.failures} | Retries: {derived.retries}")
    print("Critical path:")
    for entry in kpis.critical_path:
        print(f"  {entry.label:<18} {format_us(entry.value_us):>10} {entry.percent:6.1f}%")

    tree = result.aggregation_tree
    print(
        f"Aggregation tree: {tree.location.value} | depth {tree.depth} | "
        f"total {format_us(tree.total_us)}"
    )
    for stage in tree.stages:
        print(
            f"  {stage.label:<28} fan-in {stage.fan_in:>3} x{stage.nodes:<4} "
            f"{format_us(stage.duration_us):>10}"
        )

    peaks = ", ".join(f"{lane.label}={lane.peak}" for lane in result.heatmap)
    print(f"Peak queue occupancy: {peaks}")

    if kpis.confidence is not None:
        conf = kpis.confidence
        print(
            "95% CI (n={} commands, ~{} objects): p99 {} ± {} | latency {} ± {}".format(
                conf.sample_count,
                conf.object_count,
                format_us(kpis.p99_us),
                format_us(conf.p99.margin),
                format_us(kpis.latency_us),
                format_us(conf.latency.margin),
            )
        )
    if derived.calibration is not None:
        for warning in derived.calibration.warnings:
            print(f"  calibration: {warning}")

    if event_limit > 0 and result.events:
        print(f"Events (first {min(event_limit, len(result.events))} of {len(result.events)}):")
        for entry in result.events[:event_limit]:
            print(f"  [{format_us(entry.time_us):>10}] {entry.type.value:<7} {entry.message}")
    if result.runbook:
        print(f"Runbook: {len(result.runbook)} retries scheduled")


def print_distribution(result: SimulationResult) -> None:
    summary = compute_latency_distribution(result.derived.object_latencies_us)
    if summary.total == 0:
        return
    print(
        "Object latency spread: min {} | mean {} | max {} | std {}".format(
            format_us(summary.min),
            format_us(summary.mean),
            format_us(summary.max),
            format_us(summary.std_dev),
        )
    )
    boxplots = compute_lane_boxplots(result.lanes)
    if boxplots:
        print("Per-lane CRC compute (min / q1 / median / q3 / max):")
        for stats in boxplots:
            print(
                f"  {stats.label:<6} n={stats.sample_count:<5} "
                f"{stats.min:8.1f} {stats.q1:8.1f} {stats.median:8.1f} "
                f"{stats.q3:8.1f} {stats.max:8.1f} µs"
            )


def plot_timeline(result: SimulationResult, output_dir: Path) -> Optional[Path]:
    lanes = [lane for lane in result.lanes if lane.segments]
    if not lanes:
        return None
    output_dir.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(9, 0.45 * len(lanes) + 1.8))

    for row, lane in enumerate(lanes):
        for kind, color in SEGMENT_COLORS.items():
            spans = [
                (seg.start_us / 1e3, seg.duration_us / 1e3)
                for seg in lane.segments
                if seg.kind == kind
            ]
            if spans:
                ax.broken_barh(spans, (row - 0.4, 0.8), facecolors=color)

    ax.set_yticks(range(len(lanes)))
    ax.set_yticklabels(
        [f"{lane.label}{' *' if lane.is_critical else ''}" for lane in lanes]
    )
    ax.invert_yaxis()
    ax.set_xlabel("Time (ms)")
    scenario = result.scenario
    ax.set_title(
        f"{SOLUTION_LABELS[scenario.solution]} | width {scenario.stripe_width} | "
        f"{scenario.objects_in_flight} objects | p99 {format_us(result.kpis.p99_us)}"
    )
    handles = [
        Patch(facecolor=color, label=kind.value)
        for kind, color in SEGMENT_COLORS.items()
    ]
    ax.legend(handles=handles, loc="upper right", fontsize=7, ncol=3)
    ax.grid(True, axis="x", alpha=0.2)

    output_path = output_dir / f"timeline_{slugify(scenario.solution.value)}_seed{scenario.random_seed}.png"
    fig.tight_layout()
    fig.savefig(output_path, dpi=160)
    plt.close(fig)
    return output_path


def plot_sweep(run: SweepRun, output_dir: Path) -> Optional[Path]:
    if not run.points:
        return None
    output_dir.mkdir(parents=True, exist_ok=True)
    definition = run.config.definition
    fig, ax = plt.subplots(figsize=(7, 4.5))

    values = [point.value for point in run.points]
    for solution in run.solutions:
        style = SOLUTION_STYLES[solution]
        p99_ms = [point.results[solution].kpis.p99_us / 1e3 for point in run.points]
        ax.plot(
            values,
            p99_ms,
            label=SOLUTION_LABELS[solution],
            color=style["color"],
            marker=style["marker"],
            linestyle=style["linestyle"],
        )

    unit = f" ({definition.unit})" if definition.unit else ""
    ax.set_xlabel(f"{definition.label}{unit}")
    ax.set_ylabel("p99 object latency (ms)")
    ax.set_title(f"p99 vs {definition.label} | seed {run.base_scenario.random_seed}")
    ax.grid(True, alpha=0.2)
    ax.legend()

    output_path = output_dir / f"sweep_{slugify(definition.id)}.png"
    fig.tight_layout()
    fig.savefig(output_path, dpi=160)
    plt.close(fig)
    return output_path


def print_sweep(run: SweepRun) -> None:
    definition = run.config.definition
    headers = ["Value"] + [f"{SOLUTION_LABELS[s]} p99" for s in run.solutions] + ["Winner"]
    print(" | ".join(f"{h:>16}" for h in headers))
    for point in run.points:
        row = [format_knob_value(definition, point.value)]
        row += [format_us(point.results[s].kpis.p99_us) for s in run.solutions]
        row.append(point.winner().value.upper())
        print(" | ".join(f"{cell:>16}" for cell in row))
    hints = generate_sweep_advisor(run)
    if hints:
        print("Advisor:")
        for hint in hints:
            print(f"  [{hint.tone}] {hint.message}")


def command_run(args: argparse.Namespace, scenario: Scenario) -> None:
    result = simulate(scenario)
    print_result(result, args.events)
    print_distribution(result)
    if args.json_out:
        write_json(args.json_out, result_to_dict(result))
    if not args.skip_plots:
        path = plot_timeline(result, Path(args.plot_dir))
        if path:
            print(f"Saved timeline plot: {path}")


def command_compare(args: argparse.Namespace, scenario: Scenario) -> None:
    results = {}
    for idx, solution in enumerate(ALL_SOLUTIONS):
        if idx > 0:
            print()
        result = simulate(replace(scenario, solution=solution))
        print_result(result, event_limit=0)
        results[solution] = result
    print()
    best = min(results, key=lambda s: results[s].kpis.p99_us)
    print(f"Lowest p99: {SOLUTION_LABELS[best]} ({format_us(results[best].kpis.p99_us)})")
    if args.json_out:
        write_json(
            args.json_out, {s.value: result_to_dict(r) for s, r in results.items()}
        )
    if not args.skip_plots:
        for result in results.values():
            path = plot_timeline(result, Path(args.plot_dir))
            if path:
                print(f"Saved timeline plot: {path}")


def command_sweep(args: argparse.Namespace, scenario: Scenario) -> None:
    try:
        solutions = parse_solutions(args.solutions)
    except argparse.ArgumentTypeError as exc:
        raise SystemExit(str(exc))
    config = SweepConfig(knob=args.knob, start=args.start, end=args.end, step=args.step)
    run = run_sweep(scenario, config, solutions, max_workers=args.workers)
    print_sweep(run)
    if args.json_out:
        write_json(
            args.json_out,
            {
                "config": {
                    "knob": config.knob,
                    "start": config.start,
                    "end": config.end,
                    "step": config.step,
                },
                "solutions": [s.value for s in run.solutions],
                "points": [
                    {
                        "value": point.value,
                        "results": {
                            s.value: result_to_dict(r) for s, r in point.results.items()
                        },
                    }
                    for point in run.points
                ],
                "advisor": [
                    {"id": h.id, "tone": h.tone, "message": h.message}
                    for h in generate_sweep_advisor(run)
                ],
            },
        )
    if not args.skip_plots:
        path = plot_sweep(run, Path(args.plot_dir))
        if path:
            print(f"Saved sweep plot: {path}")


def command_calibrate(args: argparse.Namespace, scenario: Scenario) -> None:
    path = Path(args.input)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SystemExit(f"Unable to read calibration input {path}: {exc}")
    try:
        parsed = parse_calibration_input(
            text,
            label=args.label,
            device=args.device,
            firmware=args.firmware,
            tolerance_percent=args.tolerance_percent,
        )
    except CalibrationError as exc:
        raise SystemExit(str(exc))

    profile = parsed.profile
    print(f"Calibration profile: {profile.label} ({profile.source})")
    print(
        "mu {:.2f} µs/4KiB | sigma {:.2f} µs | NVMe {:.1f} µs | samples {} | tolerance {:.0f}%".format(
            profile.mu_per_4k_us,
            profile.sigma_per_4k_us,
            profile.nvme_latency_us,
            profile.sample_count,
            profile.tolerance_percent or 0,
        )
    )
    print(
        "QD {} | threads {} | read NLB {} | MDTS {}".format(
            profile.queue_depth, profile.threads, profile.read_nlb, profile.mdts_bytes
        )
    )
    for warning in parsed.warnings:
        print(f"  warning: {warning}")
    if args.profile_out:
        write_json(args.profile_out, profile.to_dict())

    if args.run:
        calibrated = replace(
            scenario,
            calibration=profile_to_scenario_calibration(profile, warnings=parsed.warnings),
        )
        print()
        command_run(
            argparse.Namespace(
                events=0,
                json_out=args.json_out,
                skip_plots=args.skip_plots,
                plot_dir=args.plot_dir,
            ),
            calibrated,
        )


COMMANDS = {
    "run": command_run,
    "compare": command_compare,
    "sweep": command_sweep,
    "calibrate": command_calibrate,
}


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING - 10 * min(args.verbose, 2),
        format="%(levelname)s %(name)s: %(message)s",
    )
    scenario = build_scenario(args)
    COMMANDS[args.command](args, scenario)


if __name__ == "__main__":
    main()
