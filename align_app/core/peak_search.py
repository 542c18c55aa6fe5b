"""Bounded peak search and sub-pixel refinement on a correlation surface."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np
from scipy.interpolate import RectBivariateSpline

from align_app.core.errors import ConfigurationError
from align_app.core.padding import Rect
from align_app.utils.helpers import setup_logger

logger = setup_logger(__name__)

# Half-size of the neighbourhood used for the bicubic spline
CUBIC_PATCH_RADIUS = 3
# Number of step-halving iterations of the cubic surface search
CUBIC_FIT_ITERATIONS = 10


class SubPixelMethod(Enum):
    NONE = "none"
    CUBIC = "cubic"
    GAUSSIAN = "gaussian"


def as_subpixel_method(value) -> SubPixelMethod:
    if isinstance(value, SubPixelMethod):
        return value
    try:
        return SubPixelMethod(value)
    except ValueError:
        raise ConfigurationError(f"Unsupported sub-pixel method: {value!r}") from None


@dataclass(frozen=True)
class SearchBounds:
    """Inclusive rectangle of allowed shifts ``[min_x, max_x] x [min_y, max_y]``."""
    min_x: int
    max_x: int
    min_y: int
    max_y: int

    def validate(self) -> 'SearchBounds':
        if self.max_x < self.min_x or self.max_y < self.min_y:
            raise ConfigurationError(
                f"Invalid translation bounds: x [{self.min_x}, {self.max_x}], "
                f"y [{self.min_y}, {self.max_y}]")
        return self

    def contains(self, dx: float, dy: float) -> bool:
        return self.min_x <= dx <= self.max_x and self.min_y <= dy <= self.max_y

    def to_surface_rect(self, origin_x: int, origin_y: int) -> Rect:
        """Bounds as a rectangle of surface cells around the given origin."""
        return Rect(origin_x + self.min_x, origin_y + self.min_y,
                    self.max_x - self.min_x + 1, self.max_y - self.min_y + 1)

    def to_dict(self) -> dict:
        return {
            'min_x': self.min_x,
            'max_x': self.max_x,
            'min_y': self.min_y,
            'max_y': self.max_y,
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'SearchBounds':
        return cls(
            min_x=int(d['min_x']),
            max_x=int(d['max_x']),
            min_y=int(d['min_y']),
            max_y=int(d['max_y']),
        ).validate()


def half_max_bounds(width1: int, height1: int,
                    width2: int, height2: int) -> SearchBounds:
    """Default bounds keeping at least half of the smaller image overlapped.

    Restricts translation so that at least half of the smaller image
    width/height is within the larger image (half-max translation).
    """
    mx = max(width1, width2) // 2
    my = max(height1, height2) // 2
    return SearchBounds(-mx, mx, -my, my)


def search_window(surface_shape: Tuple[int, int],
                  bounds: Optional[SearchBounds]) -> Rect:
    """Surface cells to search: bounds around the centre, clipped to the surface."""
    h, w = surface_shape
    full = Rect(0, 0, w, h)
    if bounds is None:
        return full
    requested = bounds.to_surface_rect(w // 2, h // 2)
    window = full.intersection(requested)
    if window.is_empty():
        raise ConfigurationError(
            f"Translation bounds {bounds.to_dict()} do not overlap the "
            f"{w}x{h} correlation surface")
    if window != requested:
        logger.debug(f"Translation bounds {bounds.to_dict()} clipped to the "
                     f"{w}x{h} correlation surface")
    return window


def find_peak(surface: np.ndarray, window: Rect) -> Tuple[int, int]:
    """Integer (x, y) of the maximum inside *window*.

    The scan is row-major; ties resolve to the first cell encountered.
    """
    sub = surface[window.y:window.y_end, window.x:window.x_end]
    idx = int(np.argmax(sub))
    iy, ix = divmod(idx, sub.shape[1])
    return window.x + ix, window.y + iy


# ----------------------------------------------------------------------
# Sub-pixel refinement
# ----------------------------------------------------------------------

def local_spline(surface: np.ndarray, ix: int, iy: int,
                 radius: int = CUBIC_PATCH_RADIUS) -> Optional[RectBivariateSpline]:
    """Bicubic spline over the neighbourhood of (ix, iy), or None near edges."""
    h, w = surface.shape
    y0, y1 = max(0, iy - radius), min(h, iy + radius + 1)
    x0, x1 = max(0, ix - radius), min(w, ix + radius + 1)
    if y1 - y0 < 4 or x1 - x0 < 4:
        return None
    patch = surface[y0:y1, x0:x1].astype(np.float64)
    return RectBivariateSpline(np.arange(y0, y1, dtype=np.float64),
                               np.arange(x0, x1, dtype=np.float64),
                               patch, kx=3, ky=3)


def cubic_fit(spline: RectBivariateSpline, ix: int, iy: int) -> Tuple[float, float]:
    """Iteratively search the cubic spline surface around (ix, iy).

    Each iteration samples a 3x3 grid around the current centre and moves to
    the best sample; the step starts at 0.5 and is halved every iteration.
    """
    cx, cy = float(ix), float(iy)
    step = 0.5
    offsets = np.array([-1.0, 0.0, 1.0])
    for _ in range(CUBIC_FIT_ITERATIONS):
        xs = np.repeat(cx + offsets * step, 3)
        ys = np.tile(cy + offsets * step, 3)
        values = spline.ev(ys, xs)
        best = int(np.argmax(values))
        cx, cy = float(xs[best]), float(ys[best])
        step /= 2
    return cx, cy


def gaussian_fit(surface: np.ndarray, ix: int, iy: int) -> Optional[Tuple[float, float]]:
    """Three-point Gaussian peak fit along each axis.

    See Raffel, Willert, Kompenhans; Particle Image Velocimetry, p.131.
    Returns None when the fit is not possible (border peak, non-positive
    neighbours) or the result is not finite.
    """
    h, w = surface.shape
    if ix <= 0 or ix >= w - 1 or iy <= 0 or iy >= h - 1:
        return None

    def _axis(left, centre, right):
        if left <= 0 or centre <= 0 or right <= 0:
            return None
        ln_l, ln_c, ln_r = np.log(left), np.log(centre), np.log(right)
        denom = 2 * ln_l - 4 * ln_c + 2 * ln_r
        if denom == 0:
            return None
        return (ln_l - ln_r) / denom

    ox = _axis(surface[iy, ix - 1], surface[iy, ix], surface[iy, ix + 1])
    oy = _axis(surface[iy - 1, ix], surface[iy, ix], surface[iy + 1, ix])
    if ox is None or oy is None or not (np.isfinite(ox) and np.isfinite(oy)):
        return None
    return ix + float(ox), iy + float(oy)


@dataclass
class PeakEstimate:
    """Peak location on the surface (continuous coordinates) and scores."""
    x: float
    y: float
    ix: int
    iy: int
    score: float
    interpolated_score: Optional[float] = None
    fitted: bool = False


def refine_peak(surface: np.ndarray, ix: int, iy: int, method,
                window: Rect) -> PeakEstimate:
    """Refine an integer peak to sub-pixel accuracy.

    A rejected fit is not an error: the integer peak is returned.
    """
    method = as_subpixel_method(method)
    estimate = PeakEstimate(x=float(ix), y=float(iy), ix=ix, iy=iy,
                            score=float(surface[iy, ix]))
    if method == SubPixelMethod.NONE:
        return estimate

    spline = local_spline(surface, ix, iy)

    if method == SubPixelMethod.CUBIC:
        if spline is None:
            logger.debug(f"Cubic fit rejected at ({ix}, {iy}): peak too close "
                         f"to the surface edge")
            return estimate
        centre = cubic_fit(spline, ix, iy)
    else:
        centre = gaussian_fit(surface, ix, iy)
        # Check the centre has not moved too far
        if centre is not None and not (abs(centre[0] - ix) < window.width / 2
                                       and abs(centre[1] - iy) < window.height / 2):
            centre = None
        if centre is None:
            logger.debug(f"Gaussian fit rejected at ({ix}, {iy}); "
                         f"using integer peak")
            return estimate

    estimate.x, estimate.y = centre
    estimate.fitted = True
    if spline is not None:
        estimate.interpolated_score = float(spline.ev(centre[1], centre[0]))
    return estimate
