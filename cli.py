"""
CLI entry point for the rate gate bench.

Runs many concurrent callers through one RateGate and reports whether the
rolling-window limit held.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from bench import BenchResult, run_async_bench, run_thread_bench
from config import BENCH_MODES, AppConfig, ConfigurationError, GateConfig, build_gate, load_config, validate_config
from export import save_admissions_csv
from logging_utils import setup_logging

logger: logging.Logger | None = None
console = Console()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='gate-bench',
        description='Stress a rolling-window rate gate and check its limit',
    )
    parser.add_argument(
        '--config',
        type=Path,
        default=None,
        help='TOML config file (default: built-in defaults)',
    )
    parser.add_argument('--max-count', type=int, default=None, help='Admissions allowed per window')
    parser.add_argument('--reset-span', type=float, default=None, help='Window length in seconds')
    parser.add_argument('--callers', type=int, default=None, help='Concurrent callers')
    parser.add_argument('--duration', type=float, default=None, help='Run length in seconds')
    parser.add_argument('--mode', choices=BENCH_MODES, default=None, help='Threads or asyncio tasks')
    parser.add_argument(
        '--csv',
        action='store_true',
        help='Write the admission timeline as CSV',
    )
    parser.add_argument(
        '--output-dir',
        type=Path,
        default=None,
        help='Override CSV output directory (default: output/)',
    )
    parser.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Only warnings on the console log',
    )
    return parser.parse_args(argv)


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Layer CLI flags over the loaded config (CLI flag > config > default)."""
    gate = replace(
        config.gate,
        max_count=args.max_count if args.max_count is not None else config.gate.max_count,
        reset_seconds=args.reset_span if args.reset_span is not None else config.gate.reset_seconds,
    )
    bench = replace(
        config.bench,
        callers=args.callers if args.callers is not None else config.bench.callers,
        duration_seconds=args.duration if args.duration is not None else config.bench.duration_seconds,
        mode=args.mode or config.bench.mode,
    )
    logging_cfg = replace(config.logging, verbose_console_logging=not args.quiet and config.logging.verbose_console_logging)
    updated = replace(config, gate=gate, bench=bench, logging=logging_cfg)
    validate_config(updated)
    return updated


def render_summary(result: BenchResult) -> Table:
    """Rich table summarizing one bench run."""
    table = Table(title="Rate gate bench", show_header=True)
    table.add_column("Metric", style="bold cyan")
    table.add_column("Value", justify="right")

    expected = result.expected_admissions
    table.add_row("Mode", result.mode)
    table.add_row("Callers", str(result.callers))
    table.add_row("Limit", f"{result.max_count} / {result.reset_span:g}s")
    table.add_row("Duration", f"{result.elapsed_seconds:.2f}s")
    table.add_row("Admissions", str(result.admission_count))
    table.add_row("Expected", "unbounded" if expected is None else f"≈{expected}")
    table.add_row("Max in any window", str(result.max_in_window))
    table.add_row("Cancelled waiters", str(result.cancelled))
    verdict = "[green]held[/]" if result.within_limit else "[red]violated[/]"
    table.add_row("Verdict", verdict)
    return table


def run(args: argparse.Namespace) -> BenchResult:
    global logger

    # 1. Load config
    try:
        config = load_config(args.config) if args.config else AppConfig()
        config = apply_overrides(config, args)
        gate = build_gate(config.gate)
    except ConfigurationError as e:
        console.print(f"\n[red]Configuration error:[/] {e}")
        sys.exit(1)

    # 2. Setup logging
    logger = setup_logging(
        log_name='gate_bench',
        verbose_console_logging=config.logging.verbose_console_logging,
    )

    gate_cfg: GateConfig = config.gate
    bench_cfg = config.bench
    console.print(Panel(
        f"[bold]Rate gate bench[/bold]\n\n"
        f"  Limit:    [cyan]{gate_cfg.max_count} per {gate_cfg.reset_seconds:g}s[/]\n"
        f"  Callers:  [cyan]{bench_cfg.callers}[/] ({bench_cfg.mode})\n"
        f"  Duration: [cyan]{bench_cfg.duration_seconds:g}s[/]",
        border_style="blue",
    ))

    # 3. Run
    with gate:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TextColumn("{task.completed} admitted"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task("Admitting", total=None)

            def on_admission(count: int) -> None:
                progress.update(task_id, completed=count)

            if bench_cfg.mode == 'async':
                result = asyncio.run(run_async_bench(
                    gate, bench_cfg.callers, bench_cfg.duration_seconds, on_admission,
                ))
            else:
                result = run_thread_bench(
                    gate, bench_cfg.callers, bench_cfg.duration_seconds, on_admission,
                )

    console.print(render_summary(result))

    # 4. Export
    if args.csv:
        output_dir = config.resolve_path(args.output_dir or config.paths.output_dir)
        path = save_admissions_csv(result, output_dir)
        console.print(f"Timeline written to [cyan]{path}[/]")

    if not result.within_limit:
        logger.error(f"Rate limit violated: {result.max_in_window} admissions in one window")
    return result


# -----------------------------------------------
# Entry point
# -----------------------------------------------

def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    result = run(args)
    sys.exit(0 if result.within_limit else 2)


if __name__ == '__main__':
    main()
