"""
Placement data model shared by every pipeline stage.

A result screen shows 15 participants in a fixed grid of 5 columns and
3 rows. Each slot holds a finishing position in [1, 18], or ``UNKNOWN`` when
nothing trustworthy could be read for it.

Slot index = row * 5 + col (row-major, top-to-bottom, left-to-right).
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

GRID_ROWS = 3
GRID_COLS = 5
SLOT_COUNT = GRID_ROWS * GRID_COLS

MIN_PLACEMENT = 1
MAX_PLACEMENT = 18


class Unknown(Enum):
    """Sentinel type for a slot with no determinable placement."""

    UNKNOWN = "unknown"

    def __repr__(self) -> str:
        return "Unknown"

    def __str__(self) -> str:
        return "?"


UNKNOWN = Unknown.UNKNOWN

Placement = Union[int, Unknown]
PlacementSet = List[Placement]


def is_valid_placement(value: int) -> bool:
    """True if *value* is a real finishing position."""
    return MIN_PLACEMENT <= value <= MAX_PLACEMENT


def empty_placements() -> PlacementSet:
    """A fresh placement set with every slot unknown."""
    return [UNKNOWN] * SLOT_COUNT


def slot_index(row: int, col: int) -> int:
    return row * GRID_COLS + col


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


class CandidateType(Enum):
    """How a candidate was matched. Higher rank wins during resolution."""

    ORDINAL = "ordinal"  # "3rd", "12 th"
    BRACKET = "bracket-like"  # "3]", "12)!" - misread ordinal suffix
    BARE = "bare-number"  # "3"

    @property
    def rank(self) -> int:
        return _TYPE_RANK[self]

    @property
    def confidence(self) -> float:
        return _TYPE_CONFIDENCE[self]


_TYPE_RANK = {
    CandidateType.ORDINAL: 3,
    CandidateType.BRACKET: 2,
    CandidateType.BARE: 1,
}

_TYPE_CONFIDENCE = {
    CandidateType.ORDINAL: 1.0,
    CandidateType.BRACKET: 0.8,
    CandidateType.BARE: 0.6,
}


@dataclass(frozen=True)
class Candidate:
    """A tentative placement read from OCR text."""

    value: int  # Always within [1, 18]
    kind: CandidateType
    confidence: float
    center: Optional[Tuple[float, float]] = None  # (x, y) in source image pixels
    source: str = ""  # Matched text
    clamped: bool = False  # Value was pulled into range from an overflowing token

    @classmethod
    def of(
        cls,
        value: int,
        kind: CandidateType,
        center: Optional[Tuple[float, float]] = None,
        source: str = "",
        clamped: bool = False,
    ) -> "Candidate":
        """Build a candidate with the standard confidence for its type."""
        return cls(
            value=value,
            kind=kind,
            confidence=kind.confidence,
            center=center,
            source=source,
            clamped=clamped,
        )
