# ColorClip_siril.py
# ColorClip for Siril 1.4: replaces pixels with any channel > threshold with the
# mean of the 3x3 neighbours that are below threshold on every channel.
# Repairs blown-out (typically magenta) star cores left by debayering in
# one-shot color images. Works best in the linear (pre-stretched) state.
# Save this file in a folder of your choice and add the folder to Siril
# (Preferences -> Scripts).
#
# Usage from the Siril script console:
#   pyscript ColorClip_siril.py                  (asks for the threshold)
#   pyscript ColorClip_siril.py -t 0.3           (no dialog)
#   pyscript ColorClip_siril.py -t 0.3 --snapshot

import argparse
import logging
import sys
import time

import numpy as np
import sirilpy as s
from sirilpy import LogColor

from colorclip import (
    DEFAULT_THRESHOLD,
    PROGRESS_LABEL,
    THRESHOLD_MAX,
    THRESHOLD_MIN,
    ColorClipError,
    ColorClipParams,
    NoTargetSelected,
    UnsupportedImageKind,
    declip_with_params,
    normalize_threshold,
)

VERSION = "1.0"
TITLE = "ColorClip"

UINT16_MAX = 65535.0


# optional: simple tkinter dialog to ask for the threshold (if present in the venv)
def ask_threshold(default=DEFAULT_THRESHOLD):
    try:
        import tkinter as tk
        from tkinter import simpledialog
    except ImportError:
        return default
    try:
        root = tk.Tk()
    except tk.TclError:
        # no display available -> default value
        return default
    root.withdraw()
    try:
        val = simpledialog.askfloat(
            TITLE,
            "Color clip threshold ({} - {}):".format(THRESHOLD_MIN, THRESHOLD_MAX),
            initialvalue=default, minvalue=THRESHOLD_MIN, maxvalue=THRESHOLD_MAX)
    finally:
        root.destroy()
    return normalize_threshold(val) if val is not None else default


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog=TITLE,
        description="Replace over-threshold pixels with the mean of surrounding valid pixels.")
    parser.add_argument("-t", "--threshold", type=float, default=None,
                        help="Color clip threshold, {} to {} (default {})".format(
                            THRESHOLD_MIN, THRESHOLD_MAX, DEFAULT_THRESHOLD))
    parser.add_argument("--snapshot", action="store_true",
                        help="Read neighbours from the original image instead of "
                             "the progressively corrected one")
    parser.add_argument("--no-dialog", action="store_true",
                        help="Never show the threshold dialog")
    return parser.parse_args(argv)


def params_from_args(args, asker=ask_threshold):
    if args.threshold is not None:
        threshold = normalize_threshold(args.threshold)
    elif args.no_dialog:
        threshold = DEFAULT_THRESHOLD
    else:
        threshold = asker(DEFAULT_THRESHOLD)
    return ColorClipParams(threshold=threshold, cascade=not args.snapshot)


def to_working(pixeldata):
    """
    pixeldata: numpy array as returned by Siril, (C, H, W) or (H, W),
    float32 in [0, 1] or uint16.
    Returns a channels-last float32 array normalized to [0, 1].
    """
    data = np.asarray(pixeldata)
    if data.ndim == 2:
        data = data[np.newaxis]
    if data.ndim != 3:
        raise UnsupportedImageKind("Unexpected image dimensions: {}".format(data.shape))
    data = data.transpose(1, 2, 0)
    if np.issubdtype(data.dtype, np.integer):
        return data.astype(np.float32) / UINT16_MAX
    return data.astype(np.float32)


def from_working(raster, dtype):
    """Inverse of to_working(): back to (C, H, W) in the original dtype."""
    data = np.ascontiguousarray(raster.transpose(2, 0, 1))
    if np.issubdtype(np.dtype(dtype), np.integer):
        return np.clip(np.rint(data * UINT16_MAX), 0, UINT16_MAX).astype(dtype)
    return data.astype(dtype)


class SirilProgress:
    """Progress sink reporting to Siril's progress bar."""

    def __init__(self, siril):
        self.siril = siril
        self.label = PROGRESS_LABEL
        self.total = 0
        self.done = 0

    def initialize(self, label, total):
        self.label = label
        self.total = total
        self.done = 0
        self.siril.update_progress(label, 0.0)

    def advance(self, units):
        self.done += units
        fraction = self.done / self.total if self.total > 0 else 1.0
        self.siril.update_progress(self.label, min(fraction, 1.0))

    def finish(self):
        self.siril.reset_progress()


class SirilLogHandler(logging.Handler):
    """Forwards log records to the Siril console."""

    COLORS = {
        logging.WARNING: LogColor.SALMON,
        logging.ERROR: LogColor.RED,
        logging.CRITICAL: LogColor.RED,
    }

    def __init__(self, siril, level=logging.INFO):
        super().__init__(level)
        self.siril = siril

    def emit(self, record):
        try:
            msg = self.format(record)
            self.siril.log(msg, color=self.COLORS.get(record.levelno, LogColor.DEFAULT))
        except Exception:
            self.handleError(record)


def run(siril, params):
    """Apply ColorClip to the image currently loaded in Siril."""
    if not siril.is_image_loaded():
        raise NoTargetSelected("Needs an active image")

    channels = siril.get_image_shape()[0]
    if channels < 3:
        raise UnsupportedImageKind("This script only works on color images")

    siril.log("{} v{}: threshold = {:.3f}{}".format(
        TITLE, VERSION, params.threshold, "" if params.cascade else " (snapshot)"))

    progress = SirilProgress(siril)
    t0 = time.perf_counter()
    try:
        with siril.image_lock():
            data = siril.get_image_pixeldata()
            if data is None:
                raise NoTargetSelected("Cannot load image data")
            raster = to_working(data)
            siril.undo_save_state("{} threshold={:.3f}".format(TITLE, params.threshold))
            corrected = declip_with_params(raster, params, progress=progress)
            siril.set_image_pixeldata(from_working(corrected, data.dtype))
    finally:
        progress.finish()
    t1 = time.perf_counter()

    siril.log("{}: {:.2f} s".format(TITLE, t1 - t0))
    siril.log("{}: done".format(TITLE), color=LogColor.GREEN)


def main(argv=None):
    args = parse_args(argv)

    siril = s.SirilInterface()
    try:
        siril.connect()
    except s.SirilConnectionError as e:
        print("Connection error with Siril:", e)
        return 1

    handler = SirilLogHandler(siril)
    core_logger = logging.getLogger("colorclip")
    core_logger.addHandler(handler)
    core_logger.setLevel(logging.INFO)
    try:
        params = params_from_args(args)
        run(siril, params)
    except (ColorClipError, s.SirilError) as e:
        siril.log("{}: {}".format(TITLE, e), color=LogColor.RED)
        siril.error_messagebox(str(e))
        return 1
    finally:
        core_logger.removeHandler(handler)
        siril.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(main())
