"""Finalized race records: the only shape the race log accepts.

Unknown placements must be fixed by a human before a record exists.
Statistics consumers that work on raw placement sets should go through
``known_values`` and leave unknown slots out of sums and averages.
"""

from dataclasses import dataclass
from datetime import date as date_cls
from typing import Dict, List, Optional, Sequence, Union

from racegrid.errors import UnresolvedPlacementError
from racegrid.placements import SLOT_COUNT, UNKNOWN, Placement, is_valid_placement


@dataclass(frozen=True)
class RaceRecord:
    """One logged race: ISO-8601 date and 15 placements in [1, 18]."""

    date: str
    placements: List[int]

    def to_dict(self) -> Dict:
        return {"date": self.date, "placements": list(self.placements)}


def finalize_placements(
    placements: Sequence[Placement],
    date: Optional[Union[str, date_cls]] = None,
) -> RaceRecord:
    """Turn reviewed placements into a race record.

    Args:
        placements: 15 placements, all resolved.
        date: Race date (``YYYY-MM-DD`` string or ``date``); today if omitted.

    Raises:
        UnresolvedPlacementError: Some slots are still UNKNOWN.
        ValueError: Wrong length, non-integer or out-of-range values, or a
            malformed date.
    """
    if len(placements) != SLOT_COUNT:
        raise ValueError(f"Expected {SLOT_COUNT} placements, got {len(placements)}")

    unresolved = [i for i, p in enumerate(placements) if p is UNKNOWN]
    if unresolved:
        raise UnresolvedPlacementError(unresolved)

    values = []
    for i, p in enumerate(placements):
        if isinstance(p, bool) or not isinstance(p, int) or not is_valid_placement(p):
            raise ValueError(f"Placement {i + 1} must be a number between 1 and 18, got {p!r}")
        values.append(p)

    if date is None:
        iso = date_cls.today().isoformat()
    elif isinstance(date, date_cls):
        iso = date.isoformat()
    else:
        iso = date_cls.fromisoformat(date).isoformat()

    return RaceRecord(date=iso, placements=values)


def known_values(placements: Sequence[Placement]) -> List[int]:
    """Resolved placements only, for aggregation."""
    return [p for p in placements if p is not UNKNOWN]
