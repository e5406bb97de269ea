#!/usr/bin/env python3
"""Evaluate the placement pipeline on labelled result screenshots.

Metrics:
- Exact screen accuracy (all 15 placements correct)
- Slot accuracy (correct placements / all slots)
- Unknown rate (slots left for manual entry)
- Wrong rate (slots filled with a wrong number - the costly error)
- Breakdown by the ladder stage that produced each result
- Time per screenshot

Labels file (TSV, one screenshot per row):
    filename<TAB>placements
    race_0412.png<TAB>3,1,7,12,5,18,2,9,4,11,6,15,8,10,13

Usage:
    python scripts/evaluate_screens.py --dataset data/screens
    python scripts/evaluate_screens.py --dataset data/screens --sequential --limit 20
"""

import argparse
import asyncio
import csv
import sys
import time
from collections import Counter, defaultdict
from pathlib import Path

import numpy as np

from racegrid.engine import EasyOCREngine, EngineHandle
from racegrid.errors import RaceGridError
from racegrid.pipeline import PipelineConfig, PipelineContext, read_placements
from racegrid.placements import SLOT_COUNT, UNKNOWN


def load_labels(dataset_dir: Path) -> list[dict]:
    """Load screenshots and their expected placements."""
    tsv_path = dataset_dir / "labels.tsv"
    if not tsv_path.exists():
        print(f"ERROR: {tsv_path} not found")
        sys.exit(1)

    samples = []
    with open(tsv_path, "r") as f:
        reader = csv.DictReader(f, delimiter="\t")
        for row in reader:
            expected = [int(v) for v in row["placements"].split(",")]
            if len(expected) != SLOT_COUNT:
                print(f"  Skipping {row['filename']}: {len(expected)} placements")
                continue
            samples.append({
                "img_path": str(dataset_dir / row["filename"]),
                "expected": expected,
            })
    return samples


def compare(predicted: list, expected: list[int]) -> dict:
    """Per-screen slot counts."""
    correct = sum(1 for p, e in zip(predicted, expected) if p == e)
    unknown = sum(1 for p in predicted if p is UNKNOWN)
    return {
        "correct": correct,
        "unknown": unknown,
        "wrong": SLOT_COUNT - correct - unknown,
    }


async def evaluate(samples: list[dict], context: PipelineContext) -> tuple[dict, list[dict]]:
    """Run the pipeline over every sample; return metrics and per-slot errors."""
    totals = Counter()
    stages = Counter()
    stage_correct = defaultdict(int)
    times = []
    errors = []
    failed = 0

    for i, sample in enumerate(samples):
        t0 = time.perf_counter()
        try:
            result = await read_placements(sample["img_path"], context)
        except RaceGridError as e:
            print(f"  [{i + 1}/{len(samples)}] {Path(sample['img_path']).name}: FAILED ({e})")
            failed += 1
            totals["unknown"] += SLOT_COUNT
            continue
        times.append((time.perf_counter() - t0) * 1000)

        counts = compare(result.placements, sample["expected"])
        totals.update(counts)
        if counts["correct"] == SLOT_COUNT:
            totals["exact"] += 1
        stages[result.stage.value] += 1
        stage_correct[result.stage.value] += counts["correct"]

        for slot, (pred, exp) in enumerate(zip(result.placements, sample["expected"])):
            if pred != exp:
                errors.append({
                    "img_path": sample["img_path"],
                    "slot": slot,
                    "expected": exp,
                    "predicted": "" if pred is UNKNOWN else pred,
                    "stage": result.stage.value,
                })

        print(
            f"  [{i + 1}/{len(samples)}] {Path(sample['img_path']).name}: "
            f"{counts['correct']}/15 correct, {counts['unknown']} unknown "
            f"({result.stage.value})"
        )

    n_slots = len(samples) * SLOT_COUNT
    metrics = {
        "screens": len(samples),
        "failed": failed,
        "exact_screen_accuracy": totals["exact"] / len(samples) if samples else 0.0,
        "slot_accuracy": totals["correct"] / n_slots if n_slots else 0.0,
        "unknown_rate": totals["unknown"] / n_slots if n_slots else 0.0,
        "wrong_rate": totals["wrong"] / n_slots if n_slots else 0.0,
        "stages": {
            stage: {
                "count": count,
                "slot_accuracy": stage_correct[stage] / (count * SLOT_COUNT),
            }
            for stage, count in sorted(stages.items())
        },
        "avg_ms": float(np.mean(times)) if times else 0.0,
        "p95_ms": float(np.percentile(times, 95)) if times else 0.0,
    }
    return metrics, errors


def format_report(metrics: dict) -> str:
    """Format metrics as a markdown report."""
    lines = ["# Placement Pipeline Evaluation\n"]
    lines.append("| Metric | Value |")
    lines.append("|--------|-------|")
    lines.append(f"| Screens | {metrics['screens']} ({metrics['failed']} failed) |")
    lines.append(f"| Exact Screen Accuracy | {metrics['exact_screen_accuracy']:.1%} |")
    lines.append(f"| Slot Accuracy | {metrics['slot_accuracy']:.1%} |")
    lines.append(f"| Unknown Rate | {metrics['unknown_rate']:.1%} |")
    lines.append(f"| Wrong Rate | {metrics['wrong_rate']:.1%} |")
    lines.append(f"| Avg Time (ms) | {metrics['avg_ms']:.0f} |")
    lines.append(f"| P95 Time (ms) | {metrics['p95_ms']:.0f} |")

    lines.append("\n### By Stage\n")
    lines.append("| Stage | Screens | Slot Accuracy |")
    lines.append("|-------|---------|---------------|")
    for stage, m in metrics["stages"].items():
        lines.append(f"| {stage} | {m['count']} | {m['slot_accuracy']:.1%} |")
    return "\n".join(lines)


def write_errors(errors: list[dict], output_dir: Path) -> None:
    if not errors:
        return
    with open(output_dir / "slot_errors.csv", "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=["img_path", "slot", "expected", "predicted", "stage"])
        writer.writeheader()
        writer.writerows(errors)


def main():
    parser = argparse.ArgumentParser(description="Evaluate placement reading on labelled screenshots")
    parser.add_argument("--dataset", type=str, required=True, help="Directory with labels.tsv and images")
    parser.add_argument("--output", type=str, default="runs/evaluate_screens", help="Report directory")
    parser.add_argument("--limit", type=int, default=0, help="Limit to first N screenshots (0=all)")
    parser.add_argument("--sequential", action="store_true", help="Read grid cells sequentially")
    parser.add_argument("--gpu", action="store_true", help="Run EasyOCR on the GPU")
    args = parser.parse_args()

    dataset_dir = Path(args.dataset)
    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    print(f"Loading labels from {dataset_dir}...")
    samples = load_labels(dataset_dir)
    if args.limit > 0:
        samples = samples[:args.limit]
    print(f"  {len(samples)} screenshots")

    engine = EngineHandle(factory=lambda: EasyOCREngine(gpu=args.gpu))
    context = PipelineContext(
        engine=engine,
        config=PipelineConfig(concurrent_regions=not args.sequential),
    )
    try:
        metrics, errors = asyncio.run(evaluate(samples, context))
    finally:
        engine.close()

    report = format_report(metrics)
    report_path = output_dir / "report.md"
    with open(report_path, "w") as f:
        f.write(report)
    write_errors(errors, output_dir)

    print("\n" + "=" * 60)
    print(f"  Slot accuracy: {metrics['slot_accuracy']:.1%}")
    print(f"  Unknown rate:  {metrics['unknown_rate']:.1%}")
    print(f"  Wrong rate:    {metrics['wrong_rate']:.1%}")
    print(f"\nReport: {report_path}")


if __name__ == "__main__":
    main()
