"""Placement reading pipeline: screenshot in, 15 placements out.

Fallback ladder, each stage only reached when the previous one falls short:

    1. REGIONS      - OCR every grid cell separately, trying several
                      sub-bands, upscale factors and modes per cell.
                      Accepted outright once enough slots resolve.
    2. WHOLE_IMAGE  - One whole-page OCR pass with word boxes; every
                      candidate is mapped to a slot by its position.
    3. TEXT_ONLY    - No word boxes: ordinals are read line by line and
                      assigned to slots in reading order.

Failures inside a stage (tiny crops, engine errors, timeouts) are absorbed
and only decide which stage produces the answer. Callers see exactly one of:
a ``PipelineResult``, ``EngineUnavailable``, or ``ReadFailed``.

Classes:
    Stage            - Ladder stages
    PipelineConfig   - Tunables for every stage
    PipelineContext  - Engine handle + config + progress callback
    PipelineResult   - Placements plus how they were obtained
    PlacementPipeline - The ladder itself
    ReadSession      - Last-write-wins wrapper for interactive use
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from racegrid.candidates import extract_candidates, extract_from_words, scan_ordinals_by_line
from racegrid.engine import (
    DEFAULT_WHITELIST,
    EngineHandle,
    RecognitionMode,
    RecognitionOptions,
    RecognitionResult,
)
from racegrid.errors import ReadFailed, RecognitionFailure
from racegrid.imaging import (
    DEFAULT_BANDS,
    CellBand,
    GridLayout,
    GridRegion,
    ImageSource,
    compute_regions,
    image_fingerprint,
    iter_cell_crops,
    load_image,
)
from racegrid.placements import UNKNOWN, Candidate, CandidateType, PlacementSet
from racegrid.resolver import (
    best_candidate,
    map_candidates,
    resolve_in_scan_order,
    resolve_slots,
    resolved_count,
)

log = logging.getLogger(__name__)


class Stage(Enum):
    REGIONS = "regions"
    WHOLE_IMAGE = "whole-image"
    TEXT_ONLY = "text-only"


ProgressCallback = Callable[[Stage, int, int], None]


@dataclass
class PipelineConfig:
    """Tunables for the placement pipeline.

    Args:
        layout: Position of the grid on screen.
        bands: Vertical sub-bands tried inside each cell.
        scales: Upscale factors tried for each band.
        region_modes: Recognition modes tried for each crop.
        keep_width: Horizontal fraction of a cell kept (cuts neighbour bleed).
        min_region_size: Crops narrower or shorter than this are skipped.
        accept_threshold: Resolved slots needed to accept the per-cell pass.
        clamp_overflow: Clamp overflowing 1-2 digit tokens into [1, 18]
            instead of discarding them.
        grid_margin: Whole-image candidates further than this fraction of
            the height outside the grid band are ignored.
        concurrent_regions: Issue per-cell reads as concurrent tasks.
        char_whitelist: Characters the engine may emit.
    """

    layout: GridLayout = field(default_factory=GridLayout)
    bands: Tuple[CellBand, ...] = DEFAULT_BANDS
    scales: Tuple[float, ...] = (2.0, 3.0)
    region_modes: Tuple[RecognitionMode, ...] = (
        RecognitionMode.SINGLE_LINE,
        RecognitionMode.SPARSE,
    )
    keep_width: float = 0.7
    min_region_size: int = 20
    accept_threshold: int = 5
    clamp_overflow: bool = False
    grid_margin: float = 0.05
    concurrent_regions: bool = True
    char_whitelist: str = DEFAULT_WHITELIST


@dataclass
class PipelineContext:
    """Everything a pipeline run needs, passed explicitly."""

    engine: EngineHandle
    config: PipelineConfig = field(default_factory=PipelineConfig)
    on_progress: Optional[ProgressCallback] = None


@dataclass
class PipelineResult:
    """Outcome of one pipeline run, handed to the review step."""

    placements: PlacementSet
    stage: Stage
    resolved: int
    attempts: int = 0  # Recognize calls issued
    failures: int = 0  # Recognize calls that raised or timed out
    fingerprint: str = ""

    @property
    def unknown_slots(self) -> List[int]:
        return [i for i, p in enumerate(self.placements) if p is UNKNOWN]

    @property
    def needs_review(self) -> bool:
        return bool(self.unknown_slots)

    def to_dict(self) -> Dict:
        """JSON-ready form; unknown slots become None."""
        return {
            "placements": [None if p is UNKNOWN else p for p in self.placements],
            "stage": self.stage.value,
            "resolved": self.resolved,
            "unknown_slots": self.unknown_slots,
            "attempts": self.attempts,
            "failures": self.failures,
            "fingerprint": self.fingerprint,
        }


@dataclass
class _StageOutcome:
    stage: Stage
    placements: Optional[PlacementSet] = None
    attempts: int = 0
    failures: int = 0
    error: Optional[Exception] = None

    @property
    def completed(self) -> bool:
        return self.placements is not None

    @property
    def resolved(self) -> int:
        return resolved_count(self.placements) if self.placements is not None else 0


@dataclass
class _RegionRead:
    candidates: List[Candidate] = field(default_factory=list)
    attempts: int = 0
    failures: int = 0
    error: Optional[Exception] = None


class PlacementPipeline:
    """Runs the fallback ladder for one image at a time.

    Args:
        context: Engine handle, configuration and progress callback.
    """

    def __init__(self, context: PipelineContext):
        self.context = context
        self.config = context.config
        self.engine = context.engine

    def _progress(self, stage: Stage, done: int, total: int) -> None:
        if self.context.on_progress is not None:
            self.context.on_progress(stage, done, total)

    def _options(self, mode: RecognitionMode, want_words: bool) -> RecognitionOptions:
        return RecognitionOptions(
            mode=mode,
            char_whitelist=self.config.char_whitelist,
            want_words=want_words,
        )

    async def run(self, image: np.ndarray) -> PipelineResult:
        """Read the placements of one decoded screenshot.

        Raises:
            EngineUnavailable: The recognition engine cannot be loaded.
            ImageLoadError: *image* is not an 8-bit image array.
            ReadFailed: No stage managed a single successful recognition.
        """
        image = load_image(image)
        fingerprint = image_fingerprint(image)
        log.info("Reading placements from %dx%d image %s", image.shape[1], image.shape[0], fingerprint[:10])

        with self.engine:
            outcomes = [await self._read_regions(image)]
            first = outcomes[0]
            if first.completed and first.resolved >= self.config.accept_threshold:
                return self._finish(first, outcomes, fingerprint)

            log.info(
                "Per-cell pass resolved %d/15 (need %d), trying whole image",
                first.resolved,
                self.config.accept_threshold,
            )
            whole, text = await self._read_whole_image(image)
            outcomes.append(whole)

            if not whole.completed:
                outcomes.append(await self._read_text_only(image, text))

        return self._finish(self._select(outcomes), outcomes, fingerprint)

    @staticmethod
    def _select(outcomes: List[_StageOutcome]) -> _StageOutcome:
        completed = [o for o in outcomes if o.completed]
        if not completed:
            errors = [o.error for o in outcomes if o.error is not None]
            raise ReadFailed() from (errors[-1] if errors else None)
        # Deepest stage wins ties; an earlier stage only with strictly more slots
        return max(reversed(completed), key=lambda o: o.resolved)

    def _finish(
        self,
        chosen: _StageOutcome,
        outcomes: List[_StageOutcome],
        fingerprint: str,
    ) -> PipelineResult:
        attempts = sum(o.attempts for o in outcomes)
        failures = sum(o.failures for o in outcomes)
        if failures:
            log.warning("%d of %d recognition calls failed", failures, attempts)
        log.info("Result from %s stage: %d/15 resolved", chosen.stage.value, chosen.resolved)
        return PipelineResult(
            placements=list(chosen.placements),
            stage=chosen.stage,
            resolved=chosen.resolved,
            attempts=attempts,
            failures=failures,
            fingerprint=fingerprint,
        )

    # -----------------------------------------------------------------------
    # Stage 1: per-cell reads
    # -----------------------------------------------------------------------

    async def _read_region(self, image: np.ndarray, region: GridRegion) -> _RegionRead:
        cfg = self.config
        read = _RegionRead()
        crops = iter_cell_crops(
            image,
            region,
            bands=cfg.bands,
            scales=cfg.scales,
            keep_width=cfg.keep_width,
            min_size=cfg.min_region_size,
        )
        for band, scale, crop in crops:
            for mode in cfg.region_modes:
                read.attempts += 1
                try:
                    result = await self.engine.recognize(crop, self._options(mode, want_words=False))
                except RecognitionFailure as e:
                    read.failures += 1
                    read.error = e
                    log.debug("Slot %d band=%s scale=%s %s: %s", region.slot, band, scale, mode.value, e)
                    continue

                found = extract_candidates(result.text, clamp_overflow=cfg.clamp_overflow)
                read.candidates.extend(found)
                if any(c.kind is CandidateType.ORDINAL for c in found):
                    return read
        return read

    async def _read_regions(self, image: np.ndarray) -> _StageOutcome:
        height, width = image.shape[:2]
        regions = compute_regions(width, height, self.config.layout)
        total = len(regions)
        done = 0
        self._progress(Stage.REGIONS, 0, total)

        async def read_one(region: GridRegion) -> _RegionRead:
            nonlocal done
            read = await self._read_region(image, region)
            done += 1
            self._progress(Stage.REGIONS, done, total)
            return read

        if self.config.concurrent_regions:
            reads = await asyncio.gather(*(read_one(r) for r in regions))
        else:
            reads = [await read_one(r) for r in regions]

        outcome = _StageOutcome(
            stage=Stage.REGIONS,
            attempts=sum(r.attempts for r in reads),
            failures=sum(r.failures for r in reads),
        )
        errors = [r.error for r in reads if r.error is not None]
        outcome.error = errors[-1] if errors else None

        if outcome.attempts > outcome.failures:
            per_slot = {}
            for region, read in zip(regions, reads):
                best = best_candidate(read.candidates)
                per_slot[region.slot] = [best] if best is not None else []
            outcome.placements = resolve_slots(per_slot)
        else:
            log.warning("Per-cell pass produced no usable recognition")
        return outcome

    # -----------------------------------------------------------------------
    # Stage 2: whole image with word boxes
    # -----------------------------------------------------------------------

    async def _read_whole_image(self, image: np.ndarray) -> Tuple[_StageOutcome, Optional[str]]:
        """Returns the outcome and, when the engine gave no boxes, its text."""
        outcome = _StageOutcome(stage=Stage.WHOLE_IMAGE, attempts=1)
        self._progress(Stage.WHOLE_IMAGE, 0, 1)
        try:
            result = await self.engine.recognize(
                image, self._options(RecognitionMode.SPARSE, want_words=True)
            )
        except RecognitionFailure as e:
            log.warning("Whole-image pass failed: %s", e)
            outcome.failures = 1
            outcome.error = e
            return outcome, None
        finally:
            self._progress(Stage.WHOLE_IMAGE, 1, 1)

        if not result.has_words:
            log.info("Engine returned no word boxes, falling back to line order")
            return outcome, result.text

        height, width = image.shape[:2]
        candidates = extract_from_words(result.words, clamp_overflow=self.config.clamp_overflow)
        per_slot = map_candidates(
            candidates,
            width,
            height,
            layout=self.config.layout,
            margin=self.config.grid_margin,
        )
        outcome.placements = resolve_slots(per_slot)
        return outcome, None

    # -----------------------------------------------------------------------
    # Stage 3: line-ordered text
    # -----------------------------------------------------------------------

    async def _read_text_only(self, image: np.ndarray, text: Optional[str]) -> _StageOutcome:
        outcome = _StageOutcome(stage=Stage.TEXT_ONLY)
        self._progress(Stage.TEXT_ONLY, 0, 1)
        if text is None:
            outcome.attempts = 1
            try:
                result: RecognitionResult = await self.engine.recognize(
                    image, self._options(RecognitionMode.SPARSE, want_words=False)
                )
            except RecognitionFailure as e:
                log.warning("Text-only pass failed: %s", e)
                outcome.failures = 1
                outcome.error = e
                self._progress(Stage.TEXT_ONLY, 1, 1)
                return outcome
            text = result.text

        candidates = scan_ordinals_by_line(text, clamp_overflow=self.config.clamp_overflow)
        outcome.placements = resolve_in_scan_order(candidates)
        self._progress(Stage.TEXT_ONLY, 1, 1)
        return outcome


async def read_placements(source: ImageSource, context: PipelineContext) -> PipelineResult:
    """Load *source* and read its placements.

    Raises:
        ImageLoadError: The source is not a readable image.
        EngineUnavailable: The recognition engine cannot be loaded.
        ReadFailed: Every stage of the ladder failed.
    """
    image = await asyncio.to_thread(load_image, source)
    return await PlacementPipeline(context).run(image)


class ReadSession:
    """Last-write-wins reader for an interactive upload flow.

    Each ``submit`` supersedes the ones before it: a run that finishes after
    a newer upload started is discarded and never replaces ``current``.
    In-flight engine calls are not cancelled.
    """

    def __init__(self, context: PipelineContext):
        self.context = context
        self.current: Optional[PipelineResult] = None
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    async def submit(self, source: ImageSource) -> Optional[PipelineResult]:
        """Read *source*; None if a newer submission overtook this one."""
        self._generation += 1
        generation = self._generation
        self.current = None

        try:
            result = await read_placements(source, self.context)
        except Exception:
            if generation != self._generation:
                log.info("Dropping failure of superseded read #%d", generation)
                return None
            raise

        if generation != self._generation:
            log.info("Discarding stale result of read #%d", generation)
            return None
        self.current = result
        return result
