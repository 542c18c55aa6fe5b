"""Window functions for reducing spectral leakage at hard image edges.

Each window kind maps to a pure weight function of the fractional distance
``t`` in [0, 1] across the image.  Weights are applied separably by default
(``w(x, y) = wx[x] * wy[y]``); a radial, non-separable form is available for
callers who prefer direction-independent corners.

Before weighting, the window-weighted mean of the image is subtracted so the
windowed result integrates to (near) zero and no DC bias dominates the
frequency-domain correlation.
"""

from enum import Enum

import numpy as np

from align_app.core.errors import ConfigurationError
from align_app.utils.helpers import to_float_image

# Fraction of the Tukey window that is cosine-tapered (split between edges)
TUKEY_ALPHA = 0.5


class WindowFunction(Enum):
    NONE = "none"
    HANNING = "hanning"
    COSINE = "cosine"
    TUKEY = "tukey"


def _hanning(t):
    return 0.5 * (1.0 - np.cos(2.0 * np.pi * t))


def _cosine(t):
    return np.sin(np.pi * t)


def _tukey(t, alpha=TUKEY_ALPHA):
    t = np.asarray(t, dtype=np.float64)
    w = np.ones_like(t)
    lo = t < alpha / 2
    hi = t > 1 - alpha / 2
    w[lo] = 0.5 * (1 + np.cos(np.pi * (2 * t[lo] / alpha - 1)))
    w[hi] = 0.5 * (1 + np.cos(np.pi * (2 * t[hi] / alpha - 2 / alpha + 1)))
    return w


_WEIGHT_FUNCTIONS = {
    WindowFunction.HANNING: _hanning,
    WindowFunction.COSINE: _cosine,
    WindowFunction.TUKEY: _tukey,
}


def as_window_function(value) -> WindowFunction:
    """Coerce an enum member or its string value to a WindowFunction."""
    if isinstance(value, WindowFunction):
        return value
    try:
        return WindowFunction(value)
    except ValueError:
        raise ConfigurationError(f"Unsupported window function: {value!r}") from None


def window_weights(kind, n: int) -> np.ndarray:
    """Return ``n`` window weights in [0, 1] for the given window kind.

    ``t = i / (n - 1)``.  Lengths of one or less (and ``NONE``) give
    weights of 1.
    """
    kind = as_window_function(kind)
    if n <= 1 or kind == WindowFunction.NONE:
        return np.ones(max(n, 0), dtype=np.float64)
    t = np.arange(n, dtype=np.float64) / (n - 1)
    return _WEIGHT_FUNCTIONS[kind](t)


def _mean_corrected(image, weights):
    """(image - shift) * weights, where shift is the weighted mean."""
    total_weight = weights.sum()
    if total_weight <= 0:
        return np.zeros_like(image)
    shift = float((image * weights).sum() / total_weight)
    return (image - shift) * weights


def apply_window(image: np.ndarray, kind) -> np.ndarray:
    """Apply a separable window with mean correction.

    Parameters
    ----------
    image : np.ndarray (H, W), any numeric dtype
    kind : WindowFunction or its string value

    Returns
    -------
    np.ndarray (H, W) float64.  ``NONE`` returns an unweighted float copy.
    """
    kind = as_window_function(kind)
    img = to_float_image(image)
    if kind == WindowFunction.NONE:
        return img

    h, w = img.shape
    wy = window_weights(kind, h)
    wx = window_weights(kind, w)
    return _mean_corrected(img, np.outer(wy, wx))


def apply_window_radial(image: np.ndarray, kind) -> np.ndarray:
    """Apply a non-separable (radial) window with mean correction.

    The weight of each pixel is the window evaluated at
    ``0.5 - distance / max_distance`` where distance is measured from the
    image centre and ``max_distance`` is the image diagonal.
    """
    kind = as_window_function(kind)
    img = to_float_image(image)
    if kind == WindowFunction.NONE:
        return img

    h, w = img.shape
    cy, cx = h * 0.5, w * 0.5
    max_distance = np.sqrt(w * w + h * h)
    yy, xx = np.mgrid[0:h, 0:w]
    distance = np.sqrt((xx - cx) ** 2 + (yy - cy) ** 2)
    weights = _WEIGHT_FUNCTIONS[kind](0.5 - distance / max_distance)
    return _mean_corrected(img, weights)
