"""Text recognition adapter.

The pipeline never talks to an OCR library directly. It calls
``EngineHandle.recognize`` with a ``RecognitionOptions`` and always gets a
``RecognitionResult`` back, whatever shape the engine itself produces.

Classes:
    RecognitionMode    - Whole-page sparse text vs. a single line crop
    RecognitionOptions - Per-call hints (mode, whitelist, spacing, words)
    Word               - One recognized word with its pixel box
    RecognitionResult  - Normalized engine output
    TextEngine         - Protocol every engine implements
    EasyOCREngine      - EasyOCR-backed engine
    EngineHandle       - Lazily loaded, shared, reference counted engine

Usage:
    handle = EngineHandle()
    with handle:
        result = await handle.recognize(image, RecognitionOptions())
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from statistics import median
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from racegrid.errors import EngineUnavailable, RecognitionFailure

log = logging.getLogger(__name__)

# Digits, ordinal suffix letters, the punctuation OCR tends to read
# ordinal suffixes as, and "+" so fan counts ("+12") stay recognizable.
DEFAULT_WHITELIST = "0123456789stndrhSTNDRH[](){}!|+ "


class RecognitionMode(Enum):
    """Layout hint for the engine."""

    SPARSE = "sparse"  # Whole page, text scattered anywhere
    SINGLE_LINE = "single-line"  # Cropped cell holding one word/line


@dataclass(frozen=True)
class RecognitionOptions:
    """Options for one recognize call."""

    mode: RecognitionMode = RecognitionMode.SPARSE
    char_whitelist: str = DEFAULT_WHITELIST
    language: str = "en"
    preserve_spacing: bool = True
    want_words: bool = True


@dataclass(frozen=True)
class Word:
    """A recognized word and its axis-aligned box (x0, y0, x1, y1)."""

    text: str
    box: Tuple[float, float, float, float]
    confidence: float = 1.0

    @property
    def center(self) -> Tuple[float, float]:
        x0, y0, x1, y1 = self.box
        return (x0 + x1) / 2.0, (y0 + y1) / 2.0

    @property
    def height(self) -> float:
        return self.box[3] - self.box[1]


@dataclass(frozen=True)
class RecognitionResult:
    """Normalized engine output. ``words`` is None when unavailable."""

    text: str
    words: Optional[List[Word]] = None

    @property
    def has_words(self) -> bool:
        return self.words is not None


class TextEngine(Protocol):
    """Anything that can turn an image into a ``RecognitionResult``."""

    def recognize(self, image: np.ndarray, options: RecognitionOptions) -> RecognitionResult:
        ...


# ---------------------------------------------------------------------------
# EasyOCR
# ---------------------------------------------------------------------------


def _quad_to_box(quad: Sequence[Sequence[float]]) -> Tuple[float, float, float, float]:
    xs = [float(p[0]) for p in quad]
    ys = [float(p[1]) for p in quad]
    return min(xs), min(ys), max(xs), max(ys)


def _group_lines(words: List[Word]) -> List[List[Word]]:
    """Cluster words into reading-order lines by vertical centre."""
    lines: List[List[Word]] = []
    for word in sorted(words, key=lambda w: w.center[1]):
        if lines:
            line = lines[-1]
            line_cy = sum(w.center[1] for w in line) / len(line)
            line_h = median(w.height for w in line)
            if abs(word.center[1] - line_cy) <= max(line_h, word.height) / 2.0:
                line.append(word)
                continue
        lines.append([word])
    return [sorted(line, key=lambda w: w.box[0]) for line in lines]


def _join_line(line: List[Word], preserve_spacing: bool) -> str:
    parts = [line[0].text]
    line_h = median(w.height for w in line)
    for prev, word in zip(line, line[1:]):
        gap = word.box[0] - prev.box[2]
        # A gap wider than the text is tall separates columns, not words
        parts.append("  " if preserve_spacing and gap > line_h else " ")
        parts.append(word.text)
    return "".join(parts)


def normalize_easyocr(
    raw: Sequence[Any],
    want_words: bool = True,
    preserve_spacing: bool = True,
) -> RecognitionResult:
    """Convert EasyOCR ``(quad, text, confidence)`` triples to a result.

    Args:
        raw: Output of ``Reader.readtext`` / ``Reader.recognize`` with
            ``detail=1``.
        want_words: Keep the word list; otherwise ``words`` is None.
        preserve_spacing: Mark wide horizontal gaps with a double space.
    """
    words = []
    for item in raw:
        quad, text, conf = item[0], item[1], item[2]
        text = str(text).strip()
        if not text:
            continue
        words.append(Word(text=text, box=_quad_to_box(quad), confidence=float(conf)))

    lines = _group_lines(words) if words else []
    text = "\n".join(_join_line(line, preserve_spacing) for line in lines)

    if not want_words:
        return RecognitionResult(text=text, words=None)
    ordered = [w for line in lines for w in line]
    return RecognitionResult(text=text, words=ordered)


class EasyOCREngine:
    """EasyOCR-backed ``TextEngine``.

    ``SPARSE`` runs detection + recognition (``Reader.readtext``).
    ``SINGLE_LINE`` treats the whole crop as one text line and skips
    detection (``Reader.recognize``), which is far more reliable on small
    cell crops.

    Args:
        languages: EasyOCR language codes.
        gpu: Run the models on the GPU.
    """

    def __init__(self, languages: Sequence[str] = ("en",), gpu: bool = False):
        try:
            import easyocr
        except ImportError as e:
            raise EngineUnavailable("easyocr is not installed") from e

        log.info("Initializing EasyOCR (%s, gpu=%s)", ",".join(languages), gpu)
        try:
            self.reader = easyocr.Reader(list(languages), gpu=gpu, verbose=False)
        except Exception as e:
            raise EngineUnavailable(f"EasyOCR failed to initialize: {e}") from e

    def recognize(self, image: np.ndarray, options: RecognitionOptions) -> RecognitionResult:
        allowlist = options.char_whitelist or None
        if options.mode is RecognitionMode.SINGLE_LINE:
            if image.ndim == 3:
                image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
            raw = self.reader.recognize(image, allowlist=allowlist, detail=1, paragraph=False)
        else:
            raw = self.reader.readtext(image, allowlist=allowlist, detail=1, paragraph=False)
        return normalize_easyocr(raw, options.want_words, options.preserve_spacing)

    def close(self) -> None:
        self.reader = None


# ---------------------------------------------------------------------------
# Shared handle
# ---------------------------------------------------------------------------


class EngineHandle:
    """Shared, lazily initialized recognition engine.

    The engine is built on first use and kept until ``close()`` (or until
    the last ``release()`` when ``keep_alive`` is False), so one handle can
    serve every image a process reads. Calls are serialized: OCR readers
    are not safe to enter from several threads at once. Callers queue on
    the event loop, and ``call_timeout`` only starts counting once a call
    holds the queue, so waiting behind other cells never times a call out.

    Args:
        factory: Zero-argument callable that builds the engine.
        call_timeout: Upper bound in seconds for one recognize call.
        keep_alive: Keep the engine loaded when the reference count drops
            to zero.
    """

    def __init__(
        self,
        factory: Callable[[], TextEngine] = EasyOCREngine,
        call_timeout: float = 30.0,
        keep_alive: bool = True,
    ):
        self.factory = factory
        self.call_timeout = call_timeout
        self.keep_alive = keep_alive

        self._engine: Optional[TextEngine] = None
        self._refs = 0
        self._init_lock = threading.Lock()
        self._call_lock = threading.Lock()
        self._queue: Optional[asyncio.Lock] = None
        self._queue_loop: Optional[asyncio.AbstractEventLoop] = None

    @classmethod
    def for_engine(cls, engine: TextEngine, **kwargs) -> "EngineHandle":
        """Wrap an already constructed engine."""
        return cls(factory=lambda: engine, **kwargs)

    @property
    def loaded(self) -> bool:
        return self._engine is not None

    @property
    def refs(self) -> int:
        return self._refs

    def _load(self) -> TextEngine:
        with self._init_lock:
            if self._engine is None:
                try:
                    self._engine = self.factory()
                except EngineUnavailable:
                    raise
                except Exception as e:
                    raise EngineUnavailable(f"Recognition engine failed to load: {e}") from e
            return self._engine

    def acquire(self) -> TextEngine:
        """Take a reference, loading the engine if needed.

        Raises:
            EngineUnavailable: If the engine cannot be built.
        """
        engine = self._load()
        self._refs += 1
        return engine

    def release(self) -> None:
        """Drop a reference; tears the engine down at zero unless kept alive."""
        if self._refs > 0:
            self._refs -= 1
        if self._refs == 0 and not self.keep_alive:
            self.close()

    def close(self) -> None:
        """Tear the engine down now."""
        with self._init_lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            log.debug("Closing recognition engine")
            closer = getattr(engine, "close", None)
            if callable(closer):
                closer()

    def __enter__(self) -> "EngineHandle":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def _call(self, image: np.ndarray, options: RecognitionOptions) -> RecognitionResult:
        engine = self._load()
        with self._call_lock:
            return engine.recognize(image, options)

    def _queue_lock(self) -> asyncio.Lock:
        # asyncio locks belong to one loop; the handle outlives asyncio.run calls
        loop = asyncio.get_running_loop()
        if self._queue is None or self._queue_loop is not loop:
            self._queue = asyncio.Lock()
            self._queue_loop = loop
        return self._queue

    async def recognize(
        self,
        image: np.ndarray,
        options: RecognitionOptions = RecognitionOptions(),
    ) -> RecognitionResult:
        """Recognize text without blocking the event loop.

        Raises:
            EngineUnavailable: The engine could not be loaded.
            RecognitionFailure: The call raised or exceeded ``call_timeout``.
        """
        try:
            async with self._queue_lock():
                result = await asyncio.wait_for(
                    asyncio.to_thread(self._call, image, options),
                    timeout=self.call_timeout,
                )
        except EngineUnavailable:
            raise
        except asyncio.TimeoutError as e:
            raise RecognitionFailure(
                f"Recognition timed out after {self.call_timeout:.0f}s"
            ) from e
        except Exception as e:
            raise RecognitionFailure(f"Recognition failed: {e}") from e

        if not isinstance(result, RecognitionResult):
            raise RecognitionFailure(f"Engine returned {type(result).__name__}")
        return result
