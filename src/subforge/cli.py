"""Command line interface for subforge.

Commands:
- `subforge detect` - list detected compute devices
- `subforge chain` - show the backend fallback chain
- `subforge transcribe audio.wav --model base` - run a request end to end
- `subforge report` - summarize the performance history
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from subforge import __version__
from subforge.backends.catalog import BackendCatalog, current_platform, describe_chain
from subforge.config import VALID_PREFERENCES, Settings
from subforge.errors import DetectionError
from subforge.hardware.classification import SameVendorTieBreak, rank_devices
from subforge.hardware.detector import HardwareDetector
from subforge.monitoring.performance import PerformanceMonitor
from subforge.monitoring.telemetry import RecordingSink
from subforge.orchestrator import InferenceSessionOrchestrator, ProcessingRequest
from subforge.utils.async_io import shutdown_executor
from subforge.utils.logging import configure_from_cli


def load_settings(args: argparse.Namespace) -> Settings:
    """Settings from --settings, or defaults."""
    if getattr(args, "settings", None):
        return Settings.load(Path(args.settings))
    return Settings()


async def _detect_devices(detector: HardwareDetector, console: Console):
    try:
        return await detector.detect()
    except DetectionError as e:
        console.print(f"[yellow]Warning:[/yellow] {e}")
        return e.partial_devices


# =============================================================================
# Commands
# =============================================================================

def detect_command(args: argparse.Namespace, console: Console) -> int:
    """Print the detected devices, best first."""
    settings = load_settings(args)
    tie_break = SameVendorTieBreak(settings.tie_break)
    detector = HardwareDetector(cache_ttl=settings.detection_ttl, tie_break=tie_break)
    devices = rank_devices(asyncio.run(_detect_devices(detector, console)), tie_break)

    if args.json:
        console.print_json(json.dumps([d.to_dict() for d in devices]))
        return 0

    table = Table(title=f"Compute devices ({current_platform()})")
    for column in ("ID", "Name", "Family", "Memory", "Runtimes", "Driver", "Priority"):
        table.add_column(column)
    for device in devices:
        info = device.to_dict()
        memory = "shared" if device.shared_memory else f"{device.memory_mb} MB"
        table.add_row(
            info["id"],
            info["name"],
            info["family"],
            memory,
            ", ".join(info["capabilities"]) or "-",
            info["driver_version"] or "-",
            str(info["priority"]),
        )
    console.print(table)
    return 0


def chain_command(args: argparse.Namespace, console: Console) -> int:
    """Print the fallback chain for this machine."""
    settings = load_settings(args)
    tie_break = SameVendorTieBreak(settings.tie_break)
    detector = HardwareDetector(cache_ttl=settings.detection_ttl, tie_break=tie_break)
    devices = asyncio.run(_detect_devices(detector, console))

    catalog = BackendCatalog(tie_break=tie_break)
    preference = args.prefer or settings.explicit_preference
    chain = catalog.build_fallback_chain(devices, user_preference=preference)

    table = Table(title="Backend fallback chain")
    for column in ("#", "Backend", "Device", "Modules", "Reason"):
        table.add_column(column)
    for row in describe_chain(chain):
        table.add_row(row["position"], row["backend"], row["device"], row["modules"], row["reason"])
    console.print(table)
    return 0


def transcribe_command(args: argparse.Namespace, console: Console) -> int:
    """Run one request through the orchestrator."""
    settings = load_settings(args)
    sink = RecordingSink()
    orchestrator = InferenceSessionOrchestrator(
        settings=settings,
        detector=HardwareDetector(
            cache_ttl=settings.detection_ttl,
            tie_break=SameVendorTieBreak(settings.tie_break),
        ),
        sink=sink,
    )
    request = ProcessingRequest(
        audio_path=str(args.audio),
        model_id=args.model,
        backend_preference=args.prefer,
        input_duration=args.duration,
        language=args.language,
    )

    with console.status(f"Transcribing {args.audio}..."):
        outcome = asyncio.run(orchestrator.process(request))

    for note in outcome.notes:
        console.print(f"[yellow]Note:[/yellow] {note}")

    if args.output:
        Path(args.output).write_text(json.dumps(outcome.to_dict(), indent=2), encoding="utf-8")

    if not outcome.succeeded:
        console.print(f"[red]{outcome.message}[/red]")
        if outcome.fallback_content and args.fallback_srt:
            Path(args.fallback_srt).write_text(outcome.fallback_content, encoding="utf-8")
            console.print(f"Fallback subtitles written to {args.fallback_srt}")
        return 1

    metrics = outcome.metrics
    table = Table(title=f"Completed on {outcome.backend}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Processing time", f"{metrics.processing_duration:.2f} s")
    table.add_row("Speedup", f"{metrics.speedup:.2f}x")
    table.add_row("Peak memory", f"{metrics.peak_memory_bytes / (1024 * 1024):.0f} MB")
    table.add_row("Characters", str(metrics.transcription_length))
    table.add_row("Recovered failures", str(len(outcome.failures)))
    console.print(table)
    return 0


def report_command(args: argparse.Namespace, console: Console) -> int:
    """Print the performance report from the history file."""
    settings = load_settings(args)
    history_file = Path(args.history) if args.history else settings.history_file
    if history_file is None:
        console.print("[yellow]No history file configured.[/yellow]")
        return 1

    report = PerformanceMonitor(history_file).generate_report()
    if report.total_sessions == 0:
        console.print("No sessions recorded yet.")
        return 0

    table = Table(title=f"Performance report ({report.total_sessions} sessions, "
                        f"{report.success_rate:.0%} succeeded)")
    for column in ("Backend", "Sessions", "Avg speedup", "Avg time", "Peak memory", "Trend"):
        table.add_column(column)
    for kind, stats in sorted(report.averages.items()):
        table.add_row(
            kind,
            str(stats["sessions"]),
            f"{stats['speedup']:.2f}x",
            f"{stats['processing_duration']:.1f} s",
            f"{stats['peak_memory_mb']:.0f} MB",
            report.trends.get(kind, "stable"),
        )
    console.print(table)

    for tip in report.recommendations:
        console.print(f"- {tip}")
    return 0


# =============================================================================
# Parser
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="subforge",
        description="Hardware-aware speech-to-subtitle inference",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--settings", type=str, default=None, help="Settings JSON file")
    parser.add_argument("--log-level", type=str,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        default=None, help="Logging level (default: from settings)")
    parser.add_argument("--log-format", type=str, choices=["text", "json"], default="text",
                        help="Log output format")
    parser.add_argument("--log-file", type=str, default=None, help="Also log to this file")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    detect_parser = subparsers.add_parser("detect", help="List detected compute devices")
    detect_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    detect_parser.set_defaults(func=detect_command)

    chain_parser = subparsers.add_parser("chain", help="Show the backend fallback chain")
    chain_parser.add_argument("--prefer", type=str, default=None,
                              help=f"Backend kind ({', '.join(VALID_PREFERENCES)}) or device id")
    chain_parser.set_defaults(func=chain_command)

    transcribe_parser = subparsers.add_parser("transcribe", help="Transcribe an audio file")
    transcribe_parser.add_argument("audio", type=str, help="Audio file")
    transcribe_parser.add_argument("--model", type=str, required=True, help="Model id, e.g. base.en")
    transcribe_parser.add_argument("--prefer", type=str, default=None, help="Preferred backend")
    transcribe_parser.add_argument("--language", type=str, default="auto", help="Spoken language")
    transcribe_parser.add_argument("--duration", type=float, default=0.0,
                                   help="Audio duration in seconds (for speedup metrics)")
    transcribe_parser.add_argument("--output", type=str, default=None,
                                   help="Write the outcome as JSON to this file")
    transcribe_parser.add_argument("--fallback-srt", type=str, default=None,
                                   help="Write fallback subtitles here if processing fails")
    transcribe_parser.set_defaults(func=transcribe_command)

    report_parser = subparsers.add_parser("report", help="Show the performance report")
    report_parser.add_argument("--history", type=str, default=None,
                               help="History file (default: from settings)")
    report_parser.set_defaults(func=report_command)

    return parser


def main(argv: Optional[List[str]] = None, console: Optional[Console] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    console = console or Console()

    try:
        settings = load_settings(args)
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid settings:[/red] {e}")
        return 2

    configure_from_cli(
        log_level=args.log_level or settings.log_level,
        log_format=args.log_format,
        log_file=args.log_file,
        verbose=args.verbose,
    )

    if not args.command:
        parser.print_help()
        return 0

    try:
        return args.func(args, console)
    except KeyboardInterrupt:
        console.print("Interrupted")
        return 130
    finally:
        shutdown_executor()


if __name__ == "__main__":
    sys.exit(main())
