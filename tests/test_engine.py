"""Tests for racegrid.engine (result normalization and the shared handle)."""

import asyncio
import time

import numpy as np
import pytest

from racegrid.engine import (
    EngineHandle,
    RecognitionMode,
    RecognitionOptions,
    RecognitionResult,
    normalize_easyocr,
)
from racegrid.errors import EngineUnavailable, RecognitionFailure


def quad(x0, y0, x1, y1):
    return [[x0, y0], [x1, y0], [x1, y1], [x0, y1]]


# ---------------------------------------------------------------------------
# EasyOCR output normalization
# ---------------------------------------------------------------------------


class TestNormalizeEasyOCR:
    def test_lines_in_reading_order(self):
        raw = [
            (quad(300, 100, 340, 120), "3rd", 0.9),
            (quad(0, 10, 40, 30), "1st", 0.9),
            (quad(60, 12, 100, 32), "2nd", 0.8),
        ]
        result = normalize_easyocr(raw, preserve_spacing=False)
        assert result.text == "1st 2nd\n3rd"
        assert [w.text for w in result.words] == ["1st", "2nd", "3rd"]

    def test_word_boxes(self):
        result = normalize_easyocr([(quad(10, 20, 50, 40), "5th", 0.7)])
        word = result.words[0]
        assert word.box == (10.0, 20.0, 50.0, 40.0)
        assert word.center == (30.0, 30.0)
        assert word.confidence == pytest.approx(0.7)

    def test_without_words(self):
        result = normalize_easyocr([(quad(0, 0, 40, 20), "1st", 0.9)], want_words=False)
        assert result.text == "1st"
        assert result.words is None
        assert not result.has_words

    def test_wide_gap_preserved(self):
        raw = [
            (quad(0, 0, 40, 20), "1st", 0.9),
            (quad(50, 0, 90, 20), "2nd", 0.9),
            (quad(400, 0, 440, 20), "3rd", 0.9),
        ]
        assert normalize_easyocr(raw, preserve_spacing=True).text == "1st 2nd  3rd"
        assert normalize_easyocr(raw, preserve_spacing=False).text == "1st 2nd 3rd"

    def test_blank_words_dropped(self):
        raw = [(quad(0, 0, 40, 20), "  ", 0.9), (quad(0, 50, 40, 70), "9th", 0.9)]
        result = normalize_easyocr(raw)
        assert result.text == "9th"
        assert len(result.words) == 1

    def test_empty(self):
        result = normalize_easyocr([])
        assert result.text == ""
        assert result.words == []


# ---------------------------------------------------------------------------
# EngineHandle
# ---------------------------------------------------------------------------


class EchoEngine:
    def __init__(self, text="1st"):
        self.text = text
        self.closed = False

    def recognize(self, image, options):
        return RecognitionResult(text=self.text, words=None)

    def close(self):
        self.closed = True


class TestEngineHandle:
    @pytest.fixture
    def image(self):
        return np.zeros((40, 40), dtype=np.uint8)

    def test_lazy_single_init(self, image):
        built = []

        def factory():
            built.append(1)
            return EchoEngine()

        handle = EngineHandle(factory)
        assert not handle.loaded

        async def go():
            for _ in range(3):
                await handle.recognize(image, RecognitionOptions())

        asyncio.run(go())
        assert handle.loaded
        assert len(built) == 1

    def test_handle_survives_event_loops(self, image):
        """One cached engine serves several independent runs."""
        handle = EngineHandle.for_engine(EchoEngine("7th"))
        for _ in range(2):
            result = asyncio.run(handle.recognize(image))
            assert result.text == "7th"

    def test_reference_counting(self):
        engine = EchoEngine()
        handle = EngineHandle.for_engine(engine, keep_alive=False)
        with handle:
            with handle:
                assert handle.refs == 2
            assert handle.refs == 1
            assert handle.loaded
        assert handle.refs == 0
        assert not handle.loaded
        assert engine.closed

    def test_keep_alive(self):
        engine = EchoEngine()
        handle = EngineHandle.for_engine(engine)
        with handle:
            pass
        assert handle.loaded
        handle.close()
        assert not handle.loaded
        assert engine.closed

    def test_factory_failure_is_unavailable(self):
        def factory():
            raise RuntimeError("no model files")

        handle = EngineHandle(factory)
        with pytest.raises(EngineUnavailable):
            handle.acquire()

    def test_unavailable_propagates_from_recognize(self, image):
        def factory():
            raise EngineUnavailable("not installed")

        handle = EngineHandle(factory)
        with pytest.raises(EngineUnavailable):
            asyncio.run(handle.recognize(image))

    def test_engine_error_is_recognition_failure(self, image):
        class Broken:
            def recognize(self, image, options):
                raise ValueError("bad crop")

        handle = EngineHandle.for_engine(Broken())
        with pytest.raises(RecognitionFailure):
            asyncio.run(handle.recognize(image))

    def test_timeout_is_recognition_failure(self, image):
        class Slow:
            def recognize(self, image, options):
                time.sleep(0.5)
                return RecognitionResult(text="")

        handle = EngineHandle.for_engine(Slow(), call_timeout=0.05)
        with pytest.raises(RecognitionFailure, match="timed out"):
            asyncio.run(handle.recognize(image))

    def test_queued_calls_do_not_time_out(self, image):
        """Waiting behind other calls does not count against call_timeout."""

        class Steady:
            def recognize(self, image, options):
                time.sleep(0.05)
                return RecognitionResult(text="2nd")

        handle = EngineHandle.for_engine(Steady(), call_timeout=0.2)

        async def go():
            return await asyncio.gather(*(handle.recognize(image) for _ in range(10)))

        results = asyncio.run(go())
        assert [r.text for r in results] == ["2nd"] * 10

    def test_wrong_result_type(self, image):
        class Raw:
            def recognize(self, image, options):
                return "1st"

        handle = EngineHandle.for_engine(Raw())
        with pytest.raises(RecognitionFailure):
            asyncio.run(handle.recognize(image))

    def test_options_reach_engine(self, image):
        seen = []

        class Recorder:
            def recognize(self, image, options):
                seen.append(options)
                return RecognitionResult(text="")

        handle = EngineHandle.for_engine(Recorder())
        opts = RecognitionOptions(mode=RecognitionMode.SINGLE_LINE, want_words=False)
        asyncio.run(handle.recognize(image, opts))
        assert seen == [opts]
