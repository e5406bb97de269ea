"""
Placement candidate extraction from OCR text.

Matching priority for one text unit (a word, a cell crop's text, or a
whole page), first pattern with any hit wins:

1. Ordinal      "3rd", "12 th"      -> CandidateType.ORDINAL
2. Bracket-like "3]", "12)", "7!|"  -> CandidateType.BRACKET
   (OCR reads "st"/"nd"/"rd"/"th" as brackets and bars surprisingly often)
3. Bare number  "3"                 -> CandidateType.BARE
   Numbers touching "+" are fan counts, not placements.

Parsed values outside [1, 18] are discarded. With ``clamp_overflow`` a
1-2 digit token that overflows (0, 19-99) is clamped into range instead and
flagged on the candidate; this is off by default.
"""

import re
from typing import Iterator, List, Optional, Sequence, Tuple

from racegrid.engine import Word
from racegrid.placements import (
    MAX_PLACEMENT,
    MIN_PLACEMENT,
    Candidate,
    CandidateType,
)

ORDINAL_RE = re.compile(r"(?<!\d)(\d{1,2})\s*(?:st|nd|rd|th)", re.IGNORECASE)
BRACKET_RE = re.compile(r"(?<!\d)(\d{1,2})[\]\)\}!|]+")
BARE_TOKEN_RE = re.compile(r"^(\d{1,2})$")
BARE_TEXT_RE = re.compile(r"(?<![\d+])(\d{1,2})(?![\d+])")

_PATTERNS = (
    (CandidateType.ORDINAL, ORDINAL_RE),
    (CandidateType.BRACKET, BRACKET_RE),
)


def normalize_value(digits: str, clamp_overflow: bool = False) -> Tuple[Optional[int], bool]:
    """Parse a 1-2 digit string into a placement.

    Returns:
        (value, clamped) - value is None when out of range and not clamped.
    """
    value = int(digits)
    if MIN_PLACEMENT <= value <= MAX_PLACEMENT:
        return value, False
    if clamp_overflow and len(digits) <= 2:
        return min(max(value, MIN_PLACEMENT), MAX_PLACEMENT), True
    return None, False


def _iter_matches(text: str) -> Iterator[Tuple[CandidateType, "re.Match"]]:
    """Matches of the highest-priority pattern that hits *text* at all."""
    for kind, pattern in _PATTERNS:
        matches = list(pattern.finditer(text))
        if matches:
            for m in matches:
                yield kind, m
            return

    token = BARE_TOKEN_RE.match(text.strip())
    if token:
        yield CandidateType.BARE, token
        return
    for m in BARE_TEXT_RE.finditer(text):
        yield CandidateType.BARE, m


def extract_candidates(
    text: str,
    center: Optional[Tuple[float, float]] = None,
    clamp_overflow: bool = False,
) -> List[Candidate]:
    """All candidates in one text unit, in match order.

    Args:
        text: Recognized text.
        center: Pixel centre to attach to every candidate (if known).
        clamp_overflow: Clamp overflowing 1-2 digit tokens instead of
            discarding them.
    """
    if not text:
        return []

    candidates = []
    for kind, m in _iter_matches(text):
        value, clamped = normalize_value(m.group(1), clamp_overflow)
        if value is None:
            continue
        candidates.append(
            Candidate.of(value, kind, center=center, source=m.group(0), clamped=clamped)
        )
    return candidates


def _match_center(word: Word, start: int, end: int) -> Tuple[float, float]:
    """Interpolate a match's centre along the word box by character offset."""
    x0, _, x1, _ = word.box
    _, cy = word.center
    length = max(len(word.text), 1)
    mid = (start + end) / 2.0 / length
    return x0 + (x1 - x0) * mid, cy


def extract_from_words(
    words: Sequence[Word],
    clamp_overflow: bool = False,
) -> List[Candidate]:
    """Candidates from word-level OCR output, each carrying a pixel centre.

    Each word is its own text unit. Engines sometimes merge neighbouring
    cells into one word ("1st 2nd"); every match then gets a centre
    interpolated along the box.
    """
    candidates = []
    for word in words:
        for kind, m in _iter_matches(word.text):
            value, clamped = normalize_value(m.group(1), clamp_overflow)
            if value is None:
                continue
            candidates.append(
                Candidate.of(
                    value,
                    kind,
                    center=_match_center(word, m.start(), m.end()),
                    source=m.group(0),
                    clamped=clamped,
                )
            )
    return candidates


def scan_ordinals_by_line(text: str, clamp_overflow: bool = False) -> List[Candidate]:
    """Ordinal candidates in reading order: by line, then by offset in line.

    Used when the engine gives no word boxes. Only ordinals are trusted
    here; without positions there is nothing to tell a stray number from a
    placement.
    """
    found = []
    for line_no, line in enumerate(text.splitlines()):
        for m in ORDINAL_RE.finditer(line):
            value, clamped = normalize_value(m.group(1), clamp_overflow)
            if value is None:
                continue
            found.append(
                (
                    line_no,
                    m.start(),
                    Candidate.of(value, CandidateType.ORDINAL, source=m.group(0), clamped=clamped),
                )
            )
    found.sort(key=lambda item: (item[0], item[1]))
    return [c for _, _, c in found]
