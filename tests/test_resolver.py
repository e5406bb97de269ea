"""Tests for racegrid.resolver (spatial mapping and placement resolution)."""

import random

import pytest

from racegrid.candidates import scan_ordinals_by_line
from racegrid.imaging import GridLayout
from racegrid.placements import UNKNOWN, Candidate, CandidateType
from racegrid.resolver import (
    best_candidate,
    map_candidates,
    resolve_in_scan_order,
    resolve_slots,
    resolved_count,
    slot_for_point,
)


def ordinal(value, center=None):
    return Candidate.of(value, CandidateType.ORDINAL, center=center)


def bracket(value, center=None):
    return Candidate.of(value, CandidateType.BRACKET, center=center)


def bare(value, center=None):
    return Candidate.of(value, CandidateType.BARE, center=center)


# ---------------------------------------------------------------------------
# Spatial mapping
# ---------------------------------------------------------------------------


class TestSlotForPoint:
    # 1000 px wide, grid band from y=100 to y=400 -> rows 100 px tall
    def test_top_left(self):
        assert slot_for_point(10, 110, 1000, 100, 400) == 0

    def test_bottom_right(self):
        assert slot_for_point(990, 390, 1000, 100, 400) == 14

    def test_middle(self):
        # col 2, row 1
        assert slot_for_point(500, 250, 1000, 100, 400) == 7

    def test_row_major_order(self):
        assert slot_for_point(10, 210, 1000, 100, 400) == 5
        assert slot_for_point(210, 110, 1000, 100, 400) == 1

    def test_clamped_above_and_below(self):
        """Each axis is clamped on its own; the column survives."""
        assert slot_for_point(10, 0, 1000, 100, 400) == 0
        assert slot_for_point(990, 95, 1000, 100, 400) == 4
        assert slot_for_point(500, 50, 1000, 100, 400) == 2
        assert slot_for_point(10, 599, 1000, 100, 400) == 10
        assert slot_for_point(990, 599, 1000, 100, 400) == 14

    def test_clamped_left_and_right(self):
        assert slot_for_point(-5, 250, 1000, 100, 400) == 5
        assert slot_for_point(1000, 250, 1000, 100, 400) == 9


class TestMapCandidates:
    def test_groups_by_slot(self):
        layout = GridLayout(top=0.2, bottom=0.8)  # 600 px: band 120..480
        cands = [
            ordinal(1, (100, 150)),  # slot 0
            bare(9, (110, 160)),  # slot 0
            ordinal(4, (900, 450)),  # slot 14
        ]
        per_slot = map_candidates(cands, 1000, 600, layout=layout)
        assert [c.value for c in per_slot[0]] == [1, 9]
        assert [c.value for c in per_slot[14]] == [4]

    def test_drops_unpositioned(self):
        assert map_candidates([ordinal(3)], 1000, 600) == {}

    def test_drops_far_outside_band(self):
        """Text well above the grid (titles, headers) is ignored."""
        layout = GridLayout(top=0.5, bottom=0.9)
        cands = [ordinal(1, (100, 50)), ordinal(2, (100, 290))]
        per_slot = map_candidates(cands, 1000, 600, layout=layout, margin=0.05)
        assert list(per_slot) == [0]
        assert per_slot[0][0].value == 2

    def test_word_just_above_grid_keeps_its_column(self):
        """A slightly high word in column 4 must not overwrite slot 0."""
        layout = GridLayout(top=0.45, bottom=0.86)  # 600 px: band 270..516
        cands = [
            ordinal(5, (900, 265)),  # column 4, 5 px above the band
            ordinal(1, (100, 311)),  # centred in slot 0
        ]
        per_slot = map_candidates(cands, 1000, 600, layout=layout)
        assert sorted(per_slot) == [0, 4]

        placements = resolve_slots(per_slot)
        assert placements[:5] == [1, UNKNOWN, UNKNOWN, UNKNOWN, 5]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestBestCandidate:
    def test_empty(self):
        assert best_candidate([]) is None

    def test_ordinal_beats_bare(self):
        assert best_candidate([bare(9), ordinal(3)]).value == 3
        assert best_candidate([ordinal(3), bare(9)]).value == 3

    def test_full_priority_order(self):
        assert best_candidate([bare(1), bracket(2), ordinal(3)]).value == 3
        assert best_candidate([bare(1), bracket(2)]).value == 2

    def test_first_found_wins_ties(self):
        assert best_candidate([bare(5), bare(6)]).value == 5
        assert best_candidate([ordinal(7), ordinal(8)]).value == 7


class TestResolveSlots:
    def test_no_candidates(self):
        placements = resolve_slots({})
        assert len(placements) == 15
        assert all(p is UNKNOWN for p in placements)

    def test_mapping_input(self):
        placements = resolve_slots({0: [ordinal(4)], 14: [bare(2), ordinal(11)]})
        assert placements[0] == 4
        assert placements[14] == 11
        assert resolved_count(placements) == 2

    def test_sequence_input(self):
        per_slot = [[ordinal(i + 1)] for i in range(15)]
        assert resolve_slots(per_slot) == list(range(1, 16))

    def test_short_sequence_padded(self):
        placements = resolve_slots([[ordinal(3)], []])
        assert len(placements) == 15
        assert placements[0] == 3
        assert placements[1] is UNKNOWN

    def test_out_of_range_slots_ignored(self):
        placements = resolve_slots({-1: [ordinal(1)], 15: [ordinal(2)], 3: [ordinal(3)]})
        assert len(placements) == 15
        assert placements[3] == 3
        assert resolved_count(placements) == 1

    def test_duplicates_tolerated(self):
        placements = resolve_slots({0: [ordinal(5)], 1: [ordinal(5)]})
        assert placements[:2] == [5, 5]

    def test_always_fifteen(self):
        rng = random.Random(7)
        for _ in range(200):
            per_slot = {
                rng.randint(-3, 20): [ordinal(rng.randint(1, 18))]
                for _ in range(rng.randint(0, 30))
            }
            placements = resolve_slots(per_slot)
            assert len(placements) == 15
            assert all(p is UNKNOWN or 1 <= p <= 18 for p in placements)


class TestResolveInScanOrder:
    def test_partial(self):
        placements = resolve_in_scan_order([ordinal(8), ordinal(3)])
        assert placements[:2] == [8, 3]
        assert placements[2:] == [UNKNOWN] * 13

    def test_truncates_after_fifteen(self):
        placements = resolve_in_scan_order([ordinal(1 + i % 18) for i in range(20)])
        assert placements == [1 + i % 18 for i in range(15)]

    def test_empty(self):
        assert resolve_in_scan_order([]) == [UNKNOWN] * 15

    def test_clean_grid_round_trip(self):
        """Any placement set rendered as a clean 5x3 ordinal grid reads back exactly."""
        rng = random.Random(1234)

        def suffix(n):
            if 10 <= n % 100 <= 20:
                return "th"
            return {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")

        for _ in range(100):
            expected = [rng.randint(1, 18) for _ in range(15)]
            rows = [expected[r * 5:(r + 1) * 5] for r in range(3)]
            text = "\n".join("  ".join(f"{n}{suffix(n)}" for n in row) for row in rows)
            assert resolve_in_scan_order(scan_ordinals_by_line(text)) == expected


@pytest.mark.parametrize(
    "placements,count",
    [([UNKNOWN] * 15, 0), ([1] * 15, 15), ([1, UNKNOWN] + [UNKNOWN] * 13, 1)],
)
def test_resolved_count(placements, count):
    assert resolved_count(placements) == count
