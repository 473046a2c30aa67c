"""Command-line interface for scallop detection."""

import argparse
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich_argparse import RichHelpFormatter

from .config import SystemParameters, load_system_config
from .core.pipeline import CoreDetector, RunSummary, run_detector
from .core.preprocessing import load_image
from .errors import ScallopError
from .output.logger import (
    create_session_dir,
    log_detection,
    log_error,
    log_output,
    setup_logger,
)
from .output.rendering import output_name, save_overlay
from .profiles import get_profile, profile_help

console = Console()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="scallop-detect",
        description="Detect and classify scallops in seafloor survey imagery",
        epilog="Run 'scallop-detect <command> --help' for command-specific options.",
        formatter_class=RichHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=Path,
        help="System configuration JSON file",
    )
    common.add_argument(
        "--profile",
        type=str,
        help="Built-in survey profile (see 'scallop-detect profiles')",
    )
    common.add_argument(
        "--classifier",
        type=str,
        help="Classifier configuration key",
    )
    common.add_argument(
        "--classifier-dir",
        type=str,
        help="Directory holding <key>.json classifier configurations",
    )
    common.add_argument(
        "--min-radius",
        type=float,
        help="Minimum search radius (meters with metadata, else pixels)",
    )
    common.add_argument(
        "--max-radius",
        type=float,
        help="Maximum search radius (meters with metadata, else pixels)",
    )
    common.add_argument(
        "-o", "--output",
        type=str,
        help="Output directory",
    )
    common.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output",
    )

    # Process command
    process_parser = subparsers.add_parser(
        "process",
        help="Process a single image",
        parents=[common],
        formatter_class=RichHelpFormatter,
    )
    process_parser.add_argument(
        "image",
        type=Path,
        help="Path to image file",
    )
    process_parser.add_argument(
        "--altitude",
        type=float,
        default=0.0,
        help="Camera altitude in meters",
    )
    process_parser.add_argument(
        "--pitch",
        type=float,
        default=0.0,
        help="Camera pitch in degrees",
    )
    process_parser.add_argument(
        "--roll",
        type=float,
        default=0.0,
        help="Camera roll in degrees",
    )
    process_parser.add_argument(
        "--no-viz",
        action="store_true",
        help="Skip the detection overlay image",
    )

    # Batch command
    batch_parser = subparsers.add_parser(
        "batch",
        help="Process a directory or an input list",
        parents=[common],
        formatter_class=RichHelpFormatter,
    )
    source = batch_parser.add_mutually_exclusive_group()
    source.add_argument(
        "--input-dir",
        type=str,
        help="Directory of images to process (recursive)",
    )
    source.add_argument(
        "--input-list",
        type=Path,
        help="List file: '<file> <key>' or '<file> <alt> <pitch> <roll> <key>' per line",
    )
    batch_parser.add_argument(
        "--threads",
        type=int,
        help="Number of worker threads",
    )
    batch_parser.add_argument(
        "--training",
        action="store_true",
        help="Extract training samples instead of detecting",
    )
    batch_parser.add_argument(
        "--ground-truth",
        type=str,
        help="Ground-truth CSV for training sample extraction",
    )
    batch_parser.add_argument(
        "--keep",
        type=float,
        help="Fraction of negative candidates kept in training (0-1)",
    )
    batch_parser.add_argument(
        "--benchmark",
        type=str,
        help="Write per-image stage timings to this CSV file",
    )
    batch_parser.add_argument(
        "--save-images",
        action="store_true",
        help="Write detection overlay images",
    )

    # Profiles command
    subparsers.add_parser(
        "profiles",
        help="List built-in survey profiles",
        formatter_class=RichHelpFormatter,
    )

    return parser


def build_settings(args: argparse.Namespace) -> SystemParameters:
    """Settings from config file, then profile, then command-line overrides."""
    settings = load_system_config(args.config) if args.config else SystemParameters()
    if args.profile:
        try:
            settings = get_profile(args.profile).apply(settings)
        except ValueError as e:
            raise ScallopError(str(e))

    overrides = {}
    if args.classifier:
        overrides["classifier_to_use"] = args.classifier
    if args.classifier_dir:
        overrides["classifier_directory"] = args.classifier_dir
    if args.output:
        overrides["output_directory"] = args.output
    if args.min_radius is not None:
        key = "min_search_radius_meters" if settings.use_metadata else "min_search_radius_pixels"
        overrides[key] = args.min_radius
    if args.max_radius is not None:
        key = "max_search_radius_meters" if settings.use_metadata else "max_search_radius_pixels"
        overrides[key] = args.max_radius

    if args.command == "batch":
        if args.input_dir:
            overrides.update(input_directory=args.input_dir, is_input_directory=True)
        if args.input_list:
            overrides.update(
                input_directory=str(args.input_list.parent),
                input_filename=args.input_list.name,
                is_input_directory=False,
            )
        if args.threads is not None:
            overrides["num_threads"] = args.threads
        if args.training:
            overrides["is_training_mode"] = True
        if args.ground_truth:
            overrides.update(ground_truth_file=args.ground_truth, use_file_for_training=True)
        if args.keep is not None:
            overrides["training_percent_keep"] = args.keep
        if args.benchmark:
            overrides["benchmark_file"] = args.benchmark
        if args.save_images:
            overrides["output_detection_images"] = True

    return replace(settings, **overrides).validate()


def process_single_image(args: argparse.Namespace) -> int:
    """Process a single image."""
    try:
        settings = build_settings(args)
    except ScallopError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    session_dir = create_session_dir(Path(settings.output_directory) / "logs")
    logger = setup_logger(session_dir, verbose=args.verbose)

    if not args.image.exists():
        log_error(logger, f"Image not found: {args.image}")
        return 1

    try:
        with CoreDetector(settings) as detector:
            detections = detector.process_file(args.image, args.pitch, args.roll, args.altitude)
    except ScallopError as e:
        log_error(logger, str(e))
        return 1

    log_detection(logger, args.image.name, detections)

    if not args.no_viz:
        path = Path(settings.output_directory) / output_name(args.image.name, "detections")
        save_overlay(path, load_image(args.image), detections=detections)
        log_output(logger, "Overlay", path)

    table = Table(title=f"Detections in {args.image.name}")
    table.add_column("#", style="white")
    table.add_column("Category", style="cyan")
    table.add_column("Row", style="green")
    table.add_column("Col", style="green")
    table.add_column("Major", style="green")
    table.add_column("Minor", style="green")
    table.add_column("Angle", style="green")

    for i, det in enumerate(detections, 1):
        table.add_row(
            str(i),
            det.category.value,
            f"{det.r:.1f}",
            f"{det.c:.1f}",
            f"{det.major:.1f}",
            f"{det.minor:.1f}",
            f"{det.angle:.1f}",
        )

    console.print(table)
    return 0


def print_summary(summary: RunSummary, training: bool) -> None:
    table = Table(title=f"Batch Results ({summary.processed} processed, {summary.skipped} skipped)")
    table.add_column("Category", style="cyan")
    table.add_column("Count", style="green")

    if training:
        counts = {}
        for sample in summary.samples:
            counts[sample.category.value] = counts.get(sample.category.value, 0) + 1
        for name, n in sorted(counts.items()):
            table.add_row(name, str(n))
    else:
        counts = summary.category_counts()
        for category, n in counts.items():
            table.add_row(category.value, str(n))
        scallops = sum(n for category, n in counts.items() if category.is_scallop)
        table.add_row("all scallops", str(scallops), style="bold")

    console.print(table)
    if summary.failed:
        console.print(f"[yellow]{summary.failed} images failed; see log for details[/yellow]")
    if summary.cancelled:
        console.print("[yellow]Run ended early by user[/yellow]")


def process_batch(args: argparse.Namespace) -> int:
    """Process a directory or input list."""
    try:
        settings = build_settings(args)
    except ScallopError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    session_dir = create_session_dir(Path(settings.output_directory) / "logs")
    logger = setup_logger(session_dir, verbose=args.verbose)

    try:
        summary = run_detector(settings)
    except ScallopError as e:
        log_error(logger, str(e))
        if args.verbose:
            console.print_exception()
        return 1

    if summary.list_path is not None:
        log_output(logger, "Detection list", summary.list_path)
    if summary.samples_path is not None:
        log_output(logger, "Training samples", summary.samples_path)
    log_output(logger, "Log", session_dir)

    print_summary(summary, settings.is_training_mode)
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "process":
        return process_single_image(args)
    elif args.command == "batch":
        return process_batch(args)
    elif args.command == "profiles":
        console.print(profile_help())
        return 0
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
