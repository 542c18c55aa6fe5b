"""Embed images into square power-of-two canvases for the FFT.

The image is windowed (optionally), shifted to zero mean and placed in the
middle of a zero canvas so correlation is centre-to-centre.  The insertion
rectangle is recorded so canvas coordinates can be mapped back to image
coordinates by the normaliser.
"""

from dataclasses import dataclass, field

import numpy as np

from align_app.core.window import (
    WindowFunction, apply_window, apply_window_radial, as_window_function,
)
from align_app.utils.helpers import to_float_image


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle: origin (x, y) and size (width, height)."""
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    @property
    def x_end(self) -> int:
        return self.x + self.width

    @property
    def y_end(self) -> int:
        return self.y + self.height

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def union(self, other: 'Rect') -> 'Rect':
        x0 = min(self.x, other.x)
        y0 = min(self.y, other.y)
        x1 = max(self.x_end, other.x_end)
        y1 = max(self.y_end, other.y_end)
        return Rect(x0, y0, x1 - x0, y1 - y0)

    def intersection(self, other: 'Rect') -> 'Rect':
        x0 = max(self.x, other.x)
        y0 = max(self.y, other.y)
        x1 = min(self.x_end, other.x_end)
        y1 = min(self.y_end, other.y_end)
        return Rect(x0, y0, max(0, x1 - x0), max(0, y1 - y0))


@dataclass(frozen=True)
class PaddedCanvas:
    """Square zero-padded canvas holding a windowed, mean-shifted image."""
    data: np.ndarray = field(repr=False)
    rect: Rect = Rect()

    @property
    def size(self) -> int:
        return self.data.shape[0]


def next_power_of_two(n: int) -> int:
    """Smallest power of two >= n (minimum 2)."""
    size = 2
    while size < n:
        size *= 2
    return size


def canvas_size_for(*shapes) -> int:
    """Canvas side covering the larger dimension of every (h, w) shape."""
    return next_power_of_two(max(max(s[0], s[1]) for s in shapes))


def pad_and_center(image: np.ndarray, max_n: int,
                   window=WindowFunction.NONE,
                   separable: bool = True) -> PaddedCanvas:
    """Centre an image on zero inside a square power-of-two canvas.

    Parameters
    ----------
    image : np.ndarray (H, W)
    max_n : int, the largest dimension to cover; rounded up to a power of two
    window : WindowFunction applied before padding
    separable : use the separable window (False = radial window)

    Returns
    -------
    PaddedCanvas with the float64 canvas and the insertion rectangle.
    """
    window = as_window_function(window)
    h, w = image.shape
    size = next_power_of_two(max_n)

    if window == WindowFunction.NONE:
        windowed = to_float_image(image)
    elif separable:
        windowed = apply_window(image, window)
    else:
        windowed = apply_window_radial(image, window)

    # The window shift leaves a small residual mean; remove it so the
    # inserted region averages to zero.
    av = float(windowed.mean())

    if size == w and size == h:
        return PaddedCanvas(data=windowed - av, rect=Rect(0, 0, w, h))

    x = (size - w) // 2
    y = (size - h) // 2
    data = np.zeros((size, size), dtype=np.float64)
    data[y:y + h, x:x + w] = windowed - av
    return PaddedCanvas(data=data, rect=Rect(x, y, w, h))


def normalize_unit_length(data: np.ndarray) -> np.ndarray:
    """Scale to unit Euclidean length; an all-zero input stays zero."""
    sum_sq = float(np.sum(data * data))
    if sum_sq > 0:
        return data / np.sqrt(sum_sq)
    return np.zeros_like(data)
