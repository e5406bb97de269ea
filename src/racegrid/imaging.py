"""Image acquisition and grid region extraction.

Functions:
    load_image         - Decode a path, URL, bytes or array into a BGR image
    image_fingerprint  - Stable hash of the decoded pixels
    compute_regions    - The 15 grid cells of a result screen

Classes:
    GridLayout  - Fractional position of the placement grid on screen
    GridRegion  - Pixel bounds of one grid cell
    CellBand    - Vertical sub-band to try inside a cell
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Sequence, Tuple, Union
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import cv2
import numpy as np

from racegrid.errors import ImageLoadError, RegionTooSmall
from racegrid.placements import GRID_COLS, GRID_ROWS, slot_index

log = logging.getLogger(__name__)

ImageSource = Union[str, Path, bytes, bytearray, np.ndarray]

USER_AGENT = "RaceGrid/0.1"


# ---------------------------------------------------------------------------
# Image acquisition
# ---------------------------------------------------------------------------


def _fetch_url(url: str, timeout: float) -> bytes:
    try:
        req = Request(url, headers={"User-Agent": USER_AGENT})
        with urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except (URLError, HTTPError, TimeoutError, OSError) as e:
        raise ImageLoadError(f"Could not download {url}: {e}") from e


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded JPEG/PNG bytes into a BGR array."""
    if not data:
        raise ImageLoadError("Empty image data")
    buf = np.frombuffer(bytes(data), dtype=np.uint8)
    image = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if image is None:
        raise ImageLoadError("Data is not a decodable image")
    return image


def load_image(source: ImageSource, timeout: float = 30.0) -> np.ndarray:
    """Load a result screenshot as a BGR ``ndarray``.

    Args:
        source: File path, ``http(s)://`` URL, encoded bytes, or an already
            decoded 8-bit array (grayscale arrays are converted to BGR).
        timeout: Download timeout in seconds for URLs.

    Raises:
        ImageLoadError: If the source cannot be read or decoded.
    """
    if isinstance(source, np.ndarray):
        if source.size == 0:
            raise ImageLoadError("Empty image array")
        if source.dtype != np.uint8:
            raise ImageLoadError(f"Expected an 8-bit image array, got {source.dtype}")
        if source.ndim == 3 and source.shape[2] == 1:
            source = source[:, :, 0]
        if source.ndim == 2:
            return cv2.cvtColor(source, cv2.COLOR_GRAY2BGR)
        if source.ndim != 3 or source.shape[2] not in (3, 4):
            raise ImageLoadError(f"Expected a gray, BGR or BGRA image array, got shape {source.shape}")
        if source.shape[2] == 4:
            return cv2.cvtColor(source, cv2.COLOR_BGRA2BGR)
        return source

    if isinstance(source, (bytes, bytearray)):
        return decode_image(source)

    text = str(source)
    if text.startswith(("http://", "https://")):
        log.info("Downloading %s", text)
        return decode_image(_fetch_url(text, timeout))

    path = Path(text)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ImageLoadError(f"Could not read {path}: {e}") from e
    return decode_image(data)


def image_fingerprint(image: np.ndarray) -> str:
    """SHA-1 of the pixel buffer and shape."""
    digest = hashlib.sha1()
    digest.update(str(image.shape).encode())
    digest.update(np.ascontiguousarray(image).tobytes())
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# Grid layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GridLayout:
    """Where the placement grid sits, as fractions of the screen height.

    The grid spans the full width in equal columns. The default band was
    calibrated on full-screen captures of the result screen.
    """

    top: float = 0.45
    bottom: float = 0.86
    rows: int = GRID_ROWS
    cols: int = GRID_COLS

    def __post_init__(self):
        if not 0.0 <= self.top < self.bottom <= 1.0:
            raise ValueError(f"Invalid grid band: top={self.top}, bottom={self.bottom}")

    def band(self, height: int) -> Tuple[int, int]:
        """Pixel (top, bottom) of the grid for an image *height* pixels tall."""
        return int(self.top * height), int(self.bottom * height)


@dataclass(frozen=True)
class GridRegion:
    """Pixel bounds of one grid cell."""

    row: int
    col: int
    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def slot(self) -> int:
        return slot_index(self.row, self.col)

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0


def compute_regions(
    width: int,
    height: int,
    layout: GridLayout = GridLayout(),
) -> List[GridRegion]:
    """Split the grid band into cells, returned in slot order."""
    top, bottom = layout.band(height)
    col_w = width // layout.cols
    row_h = (bottom - top) // layout.rows

    regions = []
    for row in range(layout.rows):
        y0 = top + row * row_h
        for col in range(layout.cols):
            x0 = col * col_w
            regions.append(GridRegion(row, col, x0, y0, x0 + col_w, y0 + row_h))
    return regions


# ---------------------------------------------------------------------------
# Cell crops
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CellBand:
    """Vertical slice of a cell: offset and height as fractions of the cell."""

    offset: float
    height: float


# The placement text moves around inside a cell between screen variants,
# so several slices are tried: top half, middle, bottom half, whole cell.
DEFAULT_BANDS: Tuple[CellBand, ...] = (
    CellBand(0.0, 0.5),
    CellBand(0.25, 0.5),
    CellBand(0.5, 0.5),
    CellBand(0.0, 1.0),
)


def crop_band(
    image: np.ndarray,
    region: GridRegion,
    band: CellBand,
    keep_width: float = 0.7,
    min_size: int = 20,
) -> np.ndarray:
    """Crop one sub-band of a cell, keeping only its horizontal centre.

    Raises:
        RegionTooSmall: If the crop is narrower or shorter than *min_size*.
    """
    img_h, img_w = image.shape[:2]

    margin = int(region.width * (1.0 - keep_width) / 2)
    x0 = max(0, region.x0 + margin)
    x1 = min(img_w, region.x1 - margin)

    y0 = max(0, region.y0 + int(region.height * band.offset))
    y1 = min(img_h, y0 + int(region.height * band.height), region.y1)

    w, h = x1 - x0, y1 - y0
    if w < min_size or h < min_size:
        raise RegionTooSmall(max(w, 0), max(h, 0), min_size)
    return image[y0:y1, x0:x1]


def enhance_crop(crop: np.ndarray, scale: float = 2.0) -> np.ndarray:
    """Grayscale, upscale and lift contrast of a cell crop for OCR.

    Steps:
    1. Convert to grayscale
    2. Upscale (cubic)
    3. CLAHE contrast enhancement
    4. Mild brightness/contrast stretch
    """
    if crop.ndim == 3:
        gray = cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY)
    else:
        gray = crop

    if scale != 1.0:
        gray = cv2.resize(gray, None, fx=scale, fy=scale, interpolation=cv2.INTER_CUBIC)

    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    enhanced = clahe.apply(gray)
    return cv2.convertScaleAbs(enhanced, alpha=1.2, beta=10)


def iter_cell_crops(
    image: np.ndarray,
    region: GridRegion,
    bands: Sequence[CellBand] = DEFAULT_BANDS,
    scales: Sequence[float] = (2.0, 3.0),
    keep_width: float = 0.7,
    min_size: int = 20,
) -> Iterator[Tuple[CellBand, float, np.ndarray]]:
    """Yield ``(band, scale, enhanced_crop)`` for every usable combination.

    Bands that come out below *min_size* are skipped.
    """
    for band in bands:
        try:
            crop = crop_band(image, region, band, keep_width, min_size)
        except RegionTooSmall as e:
            log.debug("Slot %d band %s skipped: %s", region.slot, band, e)
            continue
        for scale in scales:
            yield band, scale, enhance_crop(crop, scale)
