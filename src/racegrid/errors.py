"""Error kinds raised by the placement reading pipeline.

Only ``EngineUnavailable`` and ``ReadFailed`` ever reach callers of the
pipeline. ``RegionTooSmall`` and ``RecognitionFailure`` are absorbed by the
fallback ladder and only decide which stage produces the result.
"""

from typing import List


class RaceGridError(Exception):
    """Base class for all racegrid errors."""


class ImageLoadError(RaceGridError):
    """The input could not be read or decoded as an image."""


class EngineUnavailable(RaceGridError):
    """The text recognition engine could not be loaded or initialized."""


class RegionTooSmall(RaceGridError):
    """A computed crop is below the minimum usable size."""

    def __init__(self, width: int, height: int, min_size: int):
        super().__init__(f"Crop {width}x{height}px is below {min_size}px")
        self.width = width
        self.height = height
        self.min_size = min_size


class RecognitionFailure(RaceGridError):
    """A single recognize call raised or timed out."""


class ReadFailed(RaceGridError):
    """Every stage of the fallback ladder failed for one image."""

    USER_MESSAGE = "Could not read the result screen - enter the placements manually."

    def __init__(self, message: str = USER_MESSAGE):
        super().__init__(message)


class UnresolvedPlacementError(RaceGridError, ValueError):
    """A placement set still contains unknown slots at the persistence boundary."""

    def __init__(self, slots: List[int]):
        listed = ", ".join(str(s + 1) for s in slots)
        super().__init__(f"Placements still unknown for participant(s): {listed}")
        self.slots = slots
