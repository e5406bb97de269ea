"""Shared fixtures: a scripted recognition engine and synthetic screens."""

import time

import numpy as np
import pytest

from racegrid.engine import EngineHandle, RecognitionMode, RecognitionResult, Word
from racegrid.imaging import CellBand, GridLayout
from racegrid.pipeline import PipelineConfig, PipelineContext

SCREEN_H = 600
SCREEN_W = 1000


class FakeEngine:
    """Deterministic engine that answers by call kind.

    A call on an image with the full screen shape is a whole-page call
    (``page`` when words are wanted, ``page_text`` otherwise); anything else
    is a cell crop and gets ``cell``. Each answer may be a string, a
    ``RecognitionResult``, an exception to raise, or a callable taking the
    options and returning one of those.
    """

    def __init__(self, cell="", page=None, page_text=None, screen_shape=(SCREEN_H, SCREEN_W), delay=0.0):
        self.cell = cell
        self.page = page
        self.page_text = page_text
        self.screen_shape = screen_shape
        self.delay = delay
        self.calls = []

    def _answer(self, answer, options):
        if callable(answer):
            answer = answer(options)
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, RecognitionResult):
            return answer
        text = answer or ""
        return RecognitionResult(text=text, words=None)

    def recognize(self, image, options):
        self.calls.append((image.shape[:2], options))
        if self.delay:
            time.sleep(self.delay)
        if image.shape[:2] == self.screen_shape:
            if options.want_words:
                if self.page is None:
                    return RecognitionResult(text="", words=[])
                return self._answer(self.page, options)
            return self._answer(self.page_text, options)
        return self._answer(self.cell, options)

    @property
    def cell_calls(self):
        return [c for c in self.calls if c[0] != self.screen_shape]

    @property
    def page_calls(self):
        return [c for c in self.calls if c[0] == self.screen_shape]


def grid_words(texts, width=SCREEN_W, height=SCREEN_H, layout=GridLayout()):
    """Word boxes centred in each grid cell, one per entry of *texts*.

    ``None`` entries leave the cell empty.
    """
    top, bottom = layout.band(height)
    col_w = width / layout.cols
    row_h = (bottom - top) / layout.rows
    words = []
    for slot, text in enumerate(texts):
        if text is None:
            continue
        row, col = divmod(slot, layout.cols)
        cx = (col + 0.5) * col_w
        cy = top + (row + 0.5) * row_h
        words.append(Word(text=text, box=(cx - 20, cy - 10, cx + 20, cy + 10)))
    return words


@pytest.fixture
def screen():
    """Blank synthetic result screen."""
    return np.full((SCREEN_H, SCREEN_W, 3), 40, dtype=np.uint8)


@pytest.fixture
def single_pass_config():
    """One crop and one mode per cell, cells read in slot order."""
    return PipelineConfig(
        bands=(CellBand(0.0, 1.0),),
        scales=(1.0,),
        region_modes=(RecognitionMode.SINGLE_LINE,),
        concurrent_regions=False,
    )


@pytest.fixture
def make_context():
    """Build a pipeline context around a FakeEngine."""

    def _make(engine, config=None, on_progress=None):
        return PipelineContext(
            engine=EngineHandle.for_engine(engine, call_timeout=5.0),
            config=config or PipelineConfig(),
            on_progress=on_progress,
        )

    return _make
