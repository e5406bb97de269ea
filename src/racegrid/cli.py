"""Command line entry point: read the placements off one result screenshot.

Usage:
    racegrid screenshot.png
    racegrid https://example.com/result.jpg --json
    racegrid screenshot.png --date 2026-10-18   # also build the race record
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from racegrid import __version__
from racegrid.engine import EasyOCREngine, EngineHandle
from racegrid.errors import EngineUnavailable, ImageLoadError, ReadFailed, UnresolvedPlacementError
from racegrid.imaging import GridLayout
from racegrid.pipeline import PipelineConfig, PipelineContext, PipelineResult, Stage, read_placements
from racegrid.placements import GRID_COLS, PlacementSet
from racegrid.records import RaceRecord, finalize_placements

EXIT_OK = 0
EXIT_UNREADABLE = 2
EXIT_UNRESOLVED = 3


def format_grid(placements: PlacementSet) -> str:
    """Render placements as the on-screen 5x3 grid, '?' for unknown."""
    rows = []
    for start in range(0, len(placements), GRID_COLS):
        rows.append(" ".join(f"{str(p):>3}" for p in placements[start:start + GRID_COLS]))
    return "\n".join(rows)


def _print_progress(stage: Stage, done: int, total: int) -> None:
    print(f"\r  {stage.value}: {done}/{total}", end="", file=sys.stderr, flush=True)
    if done == total:
        print(file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="racegrid",
        description="Read race placements from a result screen screenshot",
    )
    parser.add_argument("image", help="Screenshot path or http(s) URL")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument(
        "--date",
        type=str,
        default=None,
        help="Race date (YYYY-MM-DD); finalizes the placements into a race record",
    )
    parser.add_argument(
        "--accept-threshold",
        type=int,
        default=5,
        help="Resolved cells needed to accept the per-cell pass (default: 5)",
    )
    parser.add_argument(
        "--grid-top",
        type=float,
        default=0.45,
        help="Top of the placement grid as a fraction of the height",
    )
    parser.add_argument(
        "--grid-bottom",
        type=float,
        default=0.86,
        help="Bottom of the placement grid as a fraction of the height",
    )
    parser.add_argument(
        "--clamp-overflow",
        action="store_true",
        help="Clamp overflowing 1-2 digit reads into 1-18 instead of dropping them",
    )
    parser.add_argument(
        "--sequential",
        action="store_true",
        help="Read grid cells one after another instead of concurrently",
    )
    parser.add_argument("--timeout", type=float, default=30.0, help="Seconds per OCR call")
    parser.add_argument("--gpu", action="store_true", help="Run EasyOCR on the GPU")
    parser.add_argument("--progress", action="store_true", help="Show progress on stderr")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _report(result: PipelineResult, as_json: bool, record: Optional[RaceRecord] = None) -> None:
    if as_json:
        data = result.to_dict()
        if record is not None:
            data["record"] = record.to_dict()
        print(json.dumps(data, indent=2))
        return
    print(format_grid(result.placements))
    print(f"\nRead via {result.stage.value} stage: {result.resolved}/15 placements")
    if result.needs_review:
        slots = ", ".join(str(s + 1) for s in result.unknown_slots)
        print(f"Check and fill in participant(s): {slots}")
    if record is not None:
        print(json.dumps(record.to_dict()))


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        layout = GridLayout(top=args.grid_top, bottom=args.grid_bottom)
    except ValueError as e:
        parser.error(str(e))

    config = PipelineConfig(
        layout=layout,
        accept_threshold=args.accept_threshold,
        clamp_overflow=args.clamp_overflow,
        concurrent_regions=not args.sequential,
    )
    engine = EngineHandle(
        factory=lambda: EasyOCREngine(gpu=args.gpu),
        call_timeout=args.timeout,
    )
    context = PipelineContext(
        engine=engine,
        config=config,
        on_progress=_print_progress if args.progress else None,
    )

    try:
        result = asyncio.run(read_placements(args.image, context))
    except (ImageLoadError, EngineUnavailable, ReadFailed) as e:
        print(f"Error: {e}", file=sys.stderr)
        if not isinstance(e, ReadFailed):
            print(ReadFailed.USER_MESSAGE, file=sys.stderr)
        return EXIT_UNREADABLE
    finally:
        engine.close()

    record = None
    status = EXIT_OK
    if args.date:
        try:
            record = finalize_placements(result.placements, args.date)
        except UnresolvedPlacementError as e:
            print(f"Not recorded: {e}", file=sys.stderr)
            status = EXIT_UNRESOLVED
        except ValueError as e:
            print(f"Not recorded: {e}", file=sys.stderr)
            status = EXIT_UNREADABLE

    _report(result, args.json, record)
    return status


if __name__ == "__main__":
    sys.exit(main())
