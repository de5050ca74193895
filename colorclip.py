# colorclip.py
# ColorClip core: replaces pixels with any channel > threshold with the mean
# of the 3x3 neighbours whose channels are all <= threshold.
# Used by ColorClip_siril.py, but works on any (H, W, C) float numpy array.

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.25
THRESHOLD_MIN = 0.01
THRESHOLD_MAX = 1.0
THRESHOLD_DECIMALS = 3

PROGRESS_LABEL = "ColorClip"


class ColorClipError(Exception):
    """Base class for errors raised before or during a ColorClip run."""


class NoTargetSelected(ColorClipError):
    pass


class UnsupportedImageKind(ColorClipError):
    pass


class DeclipCancelled(ColorClipError):
    pass


class ProgressSink(Protocol):
    def initialize(self, label: str, total: int) -> None: ...

    def advance(self, units: int) -> None: ...


def normalize_threshold(value):
    """Clamp a user supplied threshold to the allowed range, 3 decimals."""
    value = min(max(float(value), THRESHOLD_MIN), THRESHOLD_MAX)
    scale = 10 ** THRESHOLD_DECIMALS
    return round(scale * value) / scale


@dataclass(frozen=True)
class ColorClipParams:
    threshold: float = DEFAULT_THRESHOLD
    cascade: bool = True

    def __post_init__(self):
        _check_threshold(self.threshold)


def _check_threshold(threshold):
    if not math.isfinite(threshold) or threshold <= 0.0:
        raise ValueError(f"threshold must be a finite positive number, got {threshold!r}")


def _check_raster(raster):
    if raster is None:
        raise NoTargetSelected("No image selected")
    arr = np.asarray(raster)
    if arr.ndim != 3 or arr.shape[2] < 3:
        raise UnsupportedImageKind(
            "Expected a color image of shape (H, W, 3+), got {}".format(arr.shape))
    if not np.issubdtype(arr.dtype, np.floating):
        raise UnsupportedImageKind(
            "Expected floating point samples, got {}".format(arr.dtype))
    return arr


def _declip_cascade(rgb, threshold, clipped, progress, abort):
    """
    rgb: (H, W, 3) view into the working copy, modified in place.
    clipped: (H-2, W-2) bool mask of interior pixels over threshold.
    Returns the number of pixels that fell back to the threshold.
    """
    h, w = rgb.shape[:2]
    fallback = 0
    for y in range(1, h - 1):
        for x in np.flatnonzero(clipped[y - 1]) + 1:
            # full 3x3 window, centre included, read from the working copy
            window = rgb[y - 1:y + 2, x - 1:x + 2].reshape(9, 3)
            valid = np.all(window <= threshold, axis=1)
            good = int(valid.sum())
            if good > 0:
                rgb[y, x] = window[valid].sum(axis=0, dtype=np.float64) / good
            else:
                rgb[y, x] = threshold
                fallback += 1
        if progress is not None:
            progress.advance(w)
        if abort is not None and abort():
            raise DeclipCancelled("ColorClip aborted at row {}".format(y))
    return fallback


def _declip_snapshot(rgb, threshold, clipped, progress, abort):
    """Same rule as _declip_cascade, but every window reads the original pixels."""
    h, w = rgb.shape[:2]
    neighs = []
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            neighs.append(rgb[1 + dy:h - 1 + dy, 1 + dx:w - 1 + dx])
    neighs = np.stack(neighs, axis=0)   # shape (9, H-2, W-2, 3)

    valid = np.all(neighs <= threshold, axis=-1)
    sums = np.where(valid[..., None], neighs, 0.0).sum(axis=0, dtype=np.float64)
    counts = valid.sum(axis=0)

    with np.errstate(divide='ignore', invalid='ignore'):
        means = np.where(counts[..., None] > 0, sums / counts[..., None], threshold)

    interior = rgb[1:h - 1, 1:w - 1]
    interior[clipped] = means[clipped]

    for _ in range(h - 2):
        if progress is not None:
            progress.advance(w)
        if abort is not None and abort():
            raise DeclipCancelled("ColorClip aborted")
    return int(np.count_nonzero(clipped & (counts == 0)))


def declip(raster, threshold=DEFAULT_THRESHOLD, *, cascade=True,
           progress: Optional[ProgressSink] = None,
           abort: Optional[Callable[[], bool]] = None):
    """
    Replace clipped pixels with the mean of their in-range 3x3 neighbours.

    raster: numpy array (H, W, C) float, C >= 3; channels 0-2 are R, G, B.
    threshold: a pixel is clipped when any of R, G, B is > threshold.
    cascade: scan top-down, left-to-right and write each correction before
        the next pixel is read, so corrected pixels above and to the left
        count as valid neighbours. With cascade=False every window reads
        the untouched input.
    progress: optional sink, advanced by W after every interior row.
    abort: optional callable checked after every row; returning True
        raises DeclipCancelled.

    The outer one-pixel ring is never changed. Returns a new array with the
    same shape and dtype; the input is not modified.
    """
    arr = _check_raster(raster)
    _check_threshold(threshold)
    h, w = arr.shape[:2]

    work = arr.copy()
    if h < 3 or w < 3:
        logger.debug("ColorClip: %dx%d image has no interior, nothing to do", w, h)
        return work

    logger.debug("ColorClip: %dx%d, threshold=%.3f, %s",
                 w, h, threshold, "cascade" if cascade else "snapshot")

    rgb = work[..., :3]
    # A pixel is only written when it is itself evaluated, so its clipping
    # state can be read from the input before the scan.
    clipped = np.any(rgb[1:h - 1, 1:w - 1] > threshold, axis=-1)

    if progress is not None:
        progress.initialize(PROGRESS_LABEL, w * (h - 2))

    if cascade:
        fallback = _declip_cascade(rgb, threshold, clipped, progress, abort)
    else:
        fallback = _declip_snapshot(rgb, threshold, clipped, progress, abort)

    logger.info("ColorClip: replaced %d pixels (%d saturated to threshold)",
                int(np.count_nonzero(clipped)), fallback)
    return work


def declip_with_params(raster, params, progress=None, abort=None):
    """declip() driven by a ColorClipParams instance."""
    return declip(raster, params.threshold, cascade=params.cascade,
                  progress=progress, abort=abort)
