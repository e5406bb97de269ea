"""Spatial mapping of candidates to grid slots and per-slot resolution.

Resolution order is strict: ordinal > bracket-like > bare number, and the
first candidate found wins among equals. The resolver always returns
exactly 15 placements; slots nobody could read are ``UNKNOWN``, never a
made-up number.
"""

import logging
import math
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from racegrid.imaging import GridLayout
from racegrid.placements import (
    SLOT_COUNT,
    UNKNOWN,
    Candidate,
    PlacementSet,
    empty_placements,
)

log = logging.getLogger(__name__)

SlotCandidates = Union[Mapping[int, Sequence[Candidate]], Sequence[Sequence[Candidate]]]


# ---------------------------------------------------------------------------
# Spatial mapping
# ---------------------------------------------------------------------------


def slot_for_point(
    x: float,
    y: float,
    width: float,
    grid_top: float,
    grid_bottom: float,
    rows: int = 3,
    cols: int = 5,
) -> int:
    """Grid slot for a pixel position.

    Row and column are clamped separately, so a point just above the grid
    lands in the top row of its own column, not in slot 0.
    """
    col = min(max(math.floor((x / width) * cols), 0), cols - 1)
    row = min(max(math.floor(((y - grid_top) / (grid_bottom - grid_top)) * rows), 0), rows - 1)
    return min(max(row * cols + col, 0), rows * cols - 1)


def map_candidates(
    candidates: Iterable[Candidate],
    width: int,
    height: int,
    layout: GridLayout = GridLayout(),
    margin: float = 0.05,
) -> Dict[int, List[Candidate]]:
    """Group positioned candidates by grid slot, preserving input order.

    Candidates without a centre, or lying more than ``margin * height``
    above or below the grid band, are dropped (titles, fan counts and the
    like live there).
    """
    top, bottom = layout.band(height)
    slack = margin * height

    per_slot: Dict[int, List[Candidate]] = defaultdict(list)
    for cand in candidates:
        if cand.center is None:
            continue
        x, y = cand.center
        if y < top - slack or y > bottom + slack:
            log.debug("Dropping %r at y=%.0f, outside grid band", cand.source, y)
            continue
        slot = slot_for_point(x, y, width, top, bottom, layout.rows, layout.cols)
        per_slot[slot].append(cand)
    return dict(per_slot)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def best_candidate(candidates: Sequence[Candidate]) -> Optional[Candidate]:
    """Highest-ranked candidate; the earliest one wins ties."""
    best = None
    for cand in candidates:
        if best is None or cand.kind.rank > best.kind.rank:
            best = cand
    return best


def resolve_slots(per_slot: SlotCandidates) -> PlacementSet:
    """Pick one placement per slot.

    Args:
        per_slot: ``{slot: candidates}`` or a sequence indexed by slot.
            Slots outside 0-14 are ignored; missing slots become UNKNOWN.
    """
    if isinstance(per_slot, Mapping):
        items = per_slot.items()
    else:
        items = enumerate(per_slot)

    placements = empty_placements()
    for slot, cands in items:
        if not 0 <= slot < SLOT_COUNT:
            continue
        best = best_candidate(cands or ())
        if best is not None:
            placements[slot] = best.value
    return placements


def resolve_in_scan_order(candidates: Sequence[Candidate]) -> PlacementSet:
    """Assign the first 15 candidates to slots 0-14 in order."""
    placements = empty_placements()
    for slot, cand in enumerate(candidates[:SLOT_COUNT]):
        placements[slot] = cand.value
    return placements


def resolved_count(placements: PlacementSet) -> int:
    """Number of slots holding a real placement."""
    return sum(1 for p in placements if p is not UNKNOWN)
