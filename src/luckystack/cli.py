"""
Command-line interface for the luckystack pipeline.

Usage:
    python -m luckystack analyze <input> [options]
    luckystack stack <input> [options]

<input> is a video file, a directory of images, or a directory of FITS frames.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from .cli_output import (
    TqdmProgressSink,
    format_rejections,
    print_banner,
    print_error,
    print_header,
    print_path,
    print_quality_summary,
    print_success,
    print_summary_box,
    print_warning,
    setup_terminal,
)
from .config import TARGET_PRESETS, WAVELET_PRESETS, ProcessingParams, WaveletLayers
from .errors import LuckyStackError
from .io import open_source, write_image
from .pipeline import CancellationToken, LuckyStacker, Outcome
from .report import build_report, write_all_reports
from .utils import format_duration, get_version, get_version_banner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def parse_wavelets(text: str) -> WaveletLayers:
    """Parse ``--wavelets``: a preset name or five comma-separated gains."""
    if text in WAVELET_PRESETS:
        return WaveletLayers.from_preset(text)
    try:
        gains = [float(v) for v in text.split(",")]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid wavelet gains: {text}") from None
    if len(gains) != 5:
        raise argparse.ArgumentTypeError(f"expected 5 wavelet gains, got {len(gains)}")
    return WaveletLayers.from_gains(gains)


def build_params(args: argparse.Namespace) -> ProcessingParams:
    """Map CLI flags onto ProcessingParams (preset first, then overrides)."""
    overrides = {}
    if args.keep is not None:
        overrides["keep_percentage"] = args.keep
    if args.min_frames is not None:
        overrides["min_frames"] = args.min_frames
    if args.max_frames is not None:
        overrides["max_frames"] = args.max_frames
    if args.no_local_align:
        overrides["enable_local_align"] = False
    if args.tile_size is not None:
        overrides["tile_size"] = args.tile_size
    if args.sigma is not None:
        overrides["sigma_clip_threshold"] = args.sigma
    if args.iterations is not None:
        overrides["sigma_iterations"] = args.iterations
    if args.wavelets is not None:
        overrides["wavelet_layers"] = args.wavelets
    if args.rotation:
        overrides["estimate_rotation"] = True
    if args.step is not None:
        overrides["sample_step"] = args.step
    if args.workers is not None:
        overrides["workers"] = args.workers

    params = TARGET_PRESETS[args.preset]() if args.preset else ProcessingParams()
    return params.with_changes(**overrides)


def analyze_input(input_path: str, step: int = 1, workers: int | None = None, json_path: str | None = None) -> int:
    """Score the frames of an input and print quality statistics."""
    try:
        source = open_source(input_path)
    except LuckyStackError as e:
        print_error(e.message)
        return EXIT_FAILED

    outcome = LuckyStacker(source).analyze(step, workers=workers)
    if not outcome.ok:
        print_error(f"Analysis failed: {outcome.message}")
        return EXIT_FAILED

    analysis = outcome.analysis
    print_header(f"Frame quality: {Path(input_path).name}")
    print_quality_summary(analysis)

    if json_path:
        payload = {
            "input": str(input_path),
            "total_frames": analysis.total_frames,
            "sample_step": analysis.sample_step,
            "decode_failures": analysis.decode_failures,
            "scores": [
                {
                    "frame_index": s.frame_index,
                    "quality_score": s.quality_score,
                    "raw_sharpness": s.raw_sharpness,
                    "roi": [s.roi.x, s.roi.y, s.roi.width, s.roi.height],
                }
                for s in analysis.scores
            ],
        }
        Path(json_path).parent.mkdir(parents=True, exist_ok=True)
        with open(json_path, "w") as f:
            json.dump(payload, f, indent=2)
        print_path("Scores", json_path)

    return EXIT_OK


def stack_input(
    input_path: str,
    params: ProcessingParams,
    output_path: str | None = None,
    write_report: bool = False,
    quiet: bool = False,
) -> int:
    """Run the full pipeline on an input and write the sharpened image."""
    input_path = Path(input_path)
    out = Path(output_path) if output_path else input_path.with_name(f"{input_path.stem}_luckystack.tif")

    try:
        source = open_source(input_path)
    except LuckyStackError as e:
        print_error(e.message)
        return EXIT_FAILED

    token = CancellationToken()
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: token.cancel())
    try:
        with TqdmProgressSink(disable=quiet) as sink:
            result = LuckyStacker(source).process(params, progress=sink, cancellation=token)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        close = getattr(source, "close", None)
        if callable(close):
            close()

    for warning in result.warnings:
        print_warning(warning)

    outputs = {}
    if result.ok:
        write_image(out, result.image)
        outputs["image"] = str(out)

    if write_report:
        report = build_report(result, params, input_name=input_path.name, outputs=outputs)
        for name, path in write_all_reports(report, out.parent).items():
            print_path(f"Report ({name})", str(path))

    if result.outcome is Outcome.CANCELLED:
        print_warning("Processing cancelled")
        return EXIT_CANCELLED
    if not result.ok:
        print_error(f"Stacking failed ({result.error_kind.value}): {result.message}")
        return EXIT_FAILED

    analysis = result.analysis
    print_summary_box(
        [
            f"Frames analysed: {len(analysis.scores)}/{analysis.total_frames}",
            f"Frames stacked: {result.stack_stats.n_frames}",
            f"Rejected: {len(result.rejected)} ({format_rejections(result.rejected)})",
            f"Clipped samples: {100 * result.stack_stats.mean_clipped_fraction:.2f}%",
            f"Time: {format_duration(result.elapsed_s)}",
        ],
        title="Stacking complete",
    )
    print_path("Output", str(out))
    print_success("Done")
    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="luckystack",
        description="Lucky-imaging stacker for planetary, lunar and solar video",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"luckystack {get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Analyze command
    analyze_parser = subparsers.add_parser(
        "analyze",
        help="Score frame quality without stacking",
    )
    analyze_parser.add_argument(
        "input",
        type=str,
        help="Video file, image directory or FITS directory",
    )
    analyze_parser.add_argument(
        "--step",
        type=int,
        default=1,
        help="Analyse every Nth frame (default: 1)",
    )
    analyze_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of worker threads (default: auto = CPU count - 1)",
    )
    analyze_parser.add_argument(
        "--json",
        type=str,
        default=None,
        metavar="PATH",
        help="Write per-frame scores to a JSON file",
    )
    analyze_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    # Stack command
    stack_parser = subparsers.add_parser(
        "stack",
        help="Select, align, stack and sharpen the best frames",
    )
    stack_parser.add_argument(
        "input",
        type=str,
        help="Video file, image directory or FITS directory",
    )
    stack_parser.add_argument(
        "--out",
        type=str,
        default=None,
        help="Output image (.png, .tif or .fits; default: <input>_luckystack.tif)",
    )
    stack_parser.add_argument(
        "--preset",
        type=str,
        choices=sorted(TARGET_PRESETS),
        default=None,
        help="Target preset applied before the other options",
    )
    stack_parser.add_argument(
        "--keep",
        type=float,
        default=None,
        help="Fraction of frames to keep (default: 0.25)",
    )
    stack_parser.add_argument(
        "--min-frames",
        type=int,
        default=None,
        help="Minimum number of frames to stack (default: 50)",
    )
    stack_parser.add_argument(
        "--max-frames",
        type=int,
        default=None,
        help="Maximum number of frames to stack (default: 500)",
    )
    stack_parser.add_argument(
        "--no-local-align",
        action="store_true",
        help="Disable tile-based local alignment",
    )
    stack_parser.add_argument(
        "--tile-size",
        type=int,
        default=None,
        help="Local alignment tile size, power of two (default: 32)",
    )
    stack_parser.add_argument(
        "--sigma",
        type=float,
        default=None,
        help="Sigma-clipping threshold (default: 2.5)",
    )
    stack_parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Sigma-clipping iterations, 0 for a plain mean (default: 2)",
    )
    stack_parser.add_argument(
        "--wavelets",
        type=parse_wavelets,
        default=None,
        metavar="GAINS",
        help="Five comma-separated layer gains, finest first, or a preset name "
             f"({', '.join(WAVELET_PRESETS)})",
    )
    stack_parser.add_argument(
        "--rotation",
        action="store_true",
        help="Estimate field rotation/scale in addition to translation",
    )
    stack_parser.add_argument(
        "--step",
        type=int,
        default=None,
        help="Analyse every Nth frame (default: 2)",
    )
    stack_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of worker threads (default: auto = CPU count - 1)",
    )
    stack_parser.add_argument(
        "--report",
        action="store_true",
        help="Write report.json and report.md next to the output",
    )
    stack_parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress progress bar and informational logging",
    )
    stack_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_FAILED

    setup_terminal()

    if args.command == "analyze":
        setup_logging(args.verbose)
        logger.info(get_version_banner())
        return analyze_input(args.input, step=args.step, workers=args.workers, json_path=args.json)

    if args.command == "stack":
        setup_logging(args.verbose, args.quiet)
        if not args.quiet:
            print_banner(get_version())

        try:
            params = build_params(args)
            params.validate()
        except LuckyStackError as e:
            print_error(f"Invalid parameters: {e.message}")
            return EXIT_FAILED

        return stack_input(
            args.input,
            params,
            output_path=args.out,
            write_report=args.report,
            quiet=args.quiet,
        )

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
