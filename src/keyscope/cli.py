"""
Command-line interface: estimate BPM and key of an audio file.

Usage:
    keyscope track.mp3
    keyscope track.mp3 --max-seconds 30 --min-bpm 70 --max-bpm 140
    keyscope track.mp3 -o track_analysis.json --debug
"""

import argparse
import logging
import sys
from pathlib import Path

from keyscope.config import DEFAULT_MAX_BPM, DEFAULT_MAX_SECONDS, DEFAULT_MIN_BPM, AnalysisOptions
from keyscope.io.exporter import ResultExporter
from keyscope.pipeline import AnalysisPipeline


def _format_summary(result) -> str:
    bpm = result.bpm if result.bpm is not None else "?"
    key = result.key or "?"
    line = f"BPM: {bpm}  Key: {key}  Confidence: {result.confidence:.2f}"
    reason = result.debug.get("reason")
    if reason:
        line += f"  ({reason})"
    return line


def main(argv=None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="keyscope",
        description="Estimate the tempo (BPM) and musical key of an audio file",
    )

    parser.add_argument(
        "audio",
        type=Path,
        help="Path to audio file (wav, mp3, flac, ogg, ...)",
    )

    parser.add_argument(
        "-o", "--output",
        type=Path,
        default=None,
        help="Write the result as JSON to this path",
    )

    parser.add_argument(
        "--max-seconds",
        type=float,
        default=DEFAULT_MAX_SECONDS,
        help=f"Analyze only the first N seconds (default: {DEFAULT_MAX_SECONDS:g}, 0 = whole file)",
    )

    parser.add_argument(
        "--min-bpm",
        type=float,
        default=DEFAULT_MIN_BPM,
        help=f"Lowest tempo to report (default: {DEFAULT_MIN_BPM:g})",
    )

    parser.add_argument(
        "--max-bpm",
        type=float,
        default=DEFAULT_MAX_BPM,
        help=f"Highest tempo to report (default: {DEFAULT_MAX_BPM:g})",
    )

    parser.add_argument(
        "--no-engine",
        action="store_true",
        help="Skip librosa and use only the numpy estimators",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Include diagnostic details in JSON output",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug)",
    )

    args = parser.parse_args(argv)

    level = logging.WARNING - 10 * min(args.verbose, 2)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if not args.audio.exists():
        print(f"Error: Audio file not found: {args.audio}", file=sys.stderr)
        return 1

    try:
        options = AnalysisOptions(
            max_seconds=args.max_seconds if args.max_seconds > 0 else None,
            min_bpm=args.min_bpm,
            max_bpm=args.max_bpm,
        )
    except ValueError as exc:
        parser.error(str(exc))

    pipeline = AnalysisPipeline(options, use_engine=not args.no_engine)
    result = pipeline.analyze(args.audio)

    print(_format_summary(result))

    if args.output is not None:
        exporter = ResultExporter(include_debug=args.debug)
        path = exporter.export_json(result, args.output)
        print(f"Wrote {path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
