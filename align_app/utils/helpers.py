"""Common utility functions for the FFT alignment engine."""

import logging
import numpy as np
import matplotlib.pyplot as plt
import matplotlib.colors as mcolors


def setup_logger(name, log_file=None, level=logging.INFO):
    """Configure a named logger with console and optional file handler."""
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        fmt = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')
        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        logger.addHandler(ch)
        if log_file:
            fh = logging.FileHandler(log_file)
            fh.setFormatter(fmt)
            logger.addHandler(fh)
    return logger


# ---------------------------------------------------------------------------
# Image conversion
# ---------------------------------------------------------------------------

def to_float_image(image):
    """Promote a 2D image of any numeric dtype to a float64 copy."""
    return np.asarray(image, dtype=np.float64).copy()


def has_signal(image):
    """Return True if the image holds at least two distinct sample values."""
    if image.size == 0:
        return False
    return bool(image.max() != image.min())


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

def buffer_to_rgba(buffer, vmin=None, vmax=None, cmap='viridis',
                   symmetric=False):
    """Convert a scalar buffer (correlation surface, canvas) to RGBA uint8.

    Canvases and correlation surfaces are signed and centred on zero; with
    ``symmetric`` the colour range is ``[-m, m]`` where ``m`` is the largest
    finite magnitude, so zero always maps to the middle of the colormap.
    NaN and infinite cells are fully transparent.

    Parameters
    ----------
    buffer : np.ndarray (H, W), float
    vmin, vmax : optional explicit range, overriding the data range
    cmap : str, matplotlib colormap name
    symmetric : centre the data range on zero

    Returns
    -------
    np.ndarray (H, W, 4) uint8 RGBA image
    """
    data = np.ma.masked_invalid(np.asarray(buffer, dtype=np.float64))
    if data.count():
        lo, hi = float(data.min()), float(data.max())
    else:
        lo, hi = 0.0, 1.0
    if symmetric:
        limit = max(abs(lo), abs(hi)) or 1.0
        lo, hi = -limit, limit
    if vmin is not None:
        lo = vmin
    if vmax is not None:
        hi = vmax
    if hi <= lo:
        hi = lo + 1.0

    colormap = plt.get_cmap(cmap).with_extremes(bad=(0, 0, 0, 0))
    return colormap(mcolors.Normalize(vmin=lo, vmax=hi)(data), bytes=True)


class IntermediateRecorder:
    """Collects intermediate buffers passed to an ``on_intermediate`` hook.

    Usage::

        recorder = IntermediateRecorder()
        result = align(context, target, params, on_intermediate=recorder)
        surface = recorder.latest('correlation')
    """

    def __init__(self):
        self.buffers = {}

    def __call__(self, name, buffer):
        self.buffers.setdefault(name, []).append(np.array(buffer, copy=True))

    def latest(self, name):
        """Return the most recent buffer recorded under *name* (or None)."""
        items = self.buffers.get(name)
        return items[-1] if items else None

    def names(self):
        return sorted(self.buffers)

    def render(self, name, cmap='RdBu_r', limit=None):
        """Render the most recent buffer under *name* as RGBA uint8.

        Recorded buffers are signed, so a diverging colormap centred
        on zero is used.  Pass ``limit`` (e.g. 1.1 for a normalised
        correlation surface) to fix the range to ``[-limit, limit]``.
        """
        buf = self.latest(name)
        if buf is None:
            raise KeyError(name)
        if limit is None:
            return buffer_to_rgba(buf, cmap=cmap, symmetric=True)
        return buffer_to_rgba(buf, vmin=-limit, vmax=limit, cmap=cmap)
