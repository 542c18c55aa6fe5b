"""Exhaustive spatial-domain translation search.

Scores every integer shift inside the bounds with the Pearson correlation
of the overlapping pixels.  Slower than the FFT engine but supports a
reference mask and ignores clipped (zero or saturated) samples.  The sign
convention matches the FFT engine: translating the target by the reported
(dx, dy) aligns it with the reference.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from align_app.core.errors import InvalidInputError
from align_app.core.padding import Rect
from align_app.core.peak_search import (
    SearchBounds, SubPixelMethod, as_subpixel_method, refine_peak,
)
from align_app.core.translator import (
    InterpolationMethod, as_interpolation_method, translate,
)
from align_app.utils.helpers import setup_logger

logger = setup_logger(__name__)

# Bit depths whose full-scale value marks a saturated (clipped) sample
_CLIPPED_BIT_DEPTHS = (8, 16, 10, 12)


@dataclass
class SpatialAlignmentResult:
    """Result of an exhaustive spatial alignment."""
    dx: float = 0.0
    dy: float = 0.0
    score: float = 0.0
    interpolated_score: Optional[float] = None
    at_bounds_edge: bool = False
    scores: Optional[np.ndarray] = field(default=None, repr=False)  # [y, x] over bounds
    aligned: Optional[np.ndarray] = field(default=None, repr=False)
    computation_time_s: float = 0.0


def bit_clipped_max(image: np.ndarray) -> Optional[float]:
    """The image maximum if it equals a full-scale 8/10/12/16-bit value.

    The maximum is truncated to an integer first, for any dtype.
    """
    peak = float(image.max())
    if not np.isfinite(peak):
        return None
    peak = int(peak)
    for bits in _CLIPPED_BIT_DEPTHS:
        if peak == 2 ** bits - 1:
            return float(peak)
    return None


def pearson_score(ref_values: np.ndarray, target_values: np.ndarray) -> float:
    """Pearson correlation of paired samples; NaN when there are none."""
    n = ref_values.size
    if n == 0:
        return float('nan')
    x = ref_values.astype(np.float64)
    y = target_values.astype(np.float64)
    sum_x, sum_y = x.sum(), y.sum()
    sum_xy = float(np.dot(x, y))
    sum_xx = float(np.dot(x, x))
    sum_yy = float(np.dot(y, y))

    p1 = sum_xy - sum_x * sum_y / n
    p2 = sum_xx - sum_x * sum_x / n
    p3 = sum_yy - sum_y * sum_y / n
    if p2 == 0 or p3 == 0:
        # Flat data: perfect only if both sides are identical
        if sum_xx == sum_yy and sum_xx == sum_xy and sum_xx > 0:
            return 1.0
        return 0.0
    return float(p1 / np.sqrt(p2 * p3))


def shift_score(ref: np.ndarray, target: np.ndarray, dx: int, dy: int,
                mask: Optional[np.ndarray] = None,
                ref_max: Optional[float] = None,
                target_max: Optional[float] = None) -> float:
    """Correlation of the reference with the target translated by (dx, dy)."""
    rh, rw = ref.shape
    th, tw = target.shape
    # The smaller of the two images, shifted, constrained to the reference
    region = Rect(dx, dy, min(rw, tw), min(rh, th)).intersection(Rect(0, 0, rw, rh))
    if region.is_empty():
        return float('nan')

    r = ref[region.y:region.y_end, region.x:region.x_end]
    t = target[region.y - dy:region.y_end - dy, region.x - dx:region.x_end - dx]

    # Ignore clipped values
    valid = (r != 0) & (t != 0)
    if ref_max is not None:
        valid &= r != ref_max
    if target_max is not None:
        valid &= t != target_max
    if mask is not None:
        valid &= mask[region.y:region.y_end, region.x:region.x_end] > 0
    return pearson_score(r[valid], t[valid])


def align_spatial(reference: np.ndarray, target: np.ndarray,
                  bounds: SearchBounds,
                  mask: Optional[np.ndarray] = None,
                  subpixel_method=SubPixelMethod.NONE,
                  interpolation_method=InterpolationMethod.NONE,
                  clip_output: bool = False) -> SpatialAlignmentResult:
    """Align *target* to *reference* by scoring every shift in *bounds*.

    Parameters
    ----------
    reference, target : (H, W) images
    bounds : SearchBounds, inclusive shift range to test
    mask : optional (H, W) reference mask, non-zero = use
    subpixel_method : SubPixelMethod applied to the score grid
    interpolation_method : InterpolationMethod for the translated output
    clip_output : clamp interpolation overshoot to the target range

    Returns
    -------
    SpatialAlignmentResult
    """
    if reference is None or target is None:
        raise InvalidInputError("Reference and target images are required")
    ref = np.asarray(reference)
    tgt = np.asarray(target)
    if ref.ndim != 2 or tgt.ndim != 2 or ref.size == 0 or tgt.size == 0:
        raise InvalidInputError("Images must be non-empty 2D arrays")
    if mask is not None and np.shape(mask) != ref.shape:
        raise InvalidInputError(
            f"Mask shape {np.shape(mask)} does not match reference {ref.shape}")
    bounds = bounds.validate()
    subpixel_method = as_subpixel_method(subpixel_method)
    interpolation_method = as_interpolation_method(interpolation_method)

    t0 = time.time()
    ref_max = bit_clipped_max(ref)
    target_max = bit_clipped_max(tgt)

    xs = range(bounds.min_x, bounds.max_x + 1)
    ys = range(bounds.min_y, bounds.max_y + 1)
    scores = np.full((len(ys), len(xs)), np.nan, dtype=np.float64)
    for j, dy in enumerate(ys):
        for i, dx in enumerate(xs):
            scores[j, i] = shift_score(ref, tgt, dx, dy, mask, ref_max, target_max)

    result = SpatialAlignmentResult(scores=scores)
    finite = np.where(np.isfinite(scores), scores, -np.inf)
    best = int(np.argmax(finite))
    bj, bi = divmod(best, scores.shape[1])
    score_max = finite[bj, bi]

    if not score_max > 0:
        logger.warning("No positive correlation within the translation bounds; "
                       "offset (0, 0)")
    else:
        result.score = float(score_max)
        x, y = float(bi), float(bj)
        if subpixel_method != SubPixelMethod.NONE and score_max != 1.0:
            grid = np.where(np.isfinite(scores), scores, -1.0)
            estimate = refine_peak(grid, bi, bj, subpixel_method,
                                   Rect(0, 0, grid.shape[1], grid.shape[0]))
            x, y = estimate.x, estimate.y
            if estimate.interpolated_score is not None:
                result.interpolated_score = float(
                    np.clip(estimate.interpolated_score, -1.0, 1.0))
        result.dx = x + bounds.min_x
        result.dy = y + bounds.min_y

    result.at_bounds_edge = (result.dx in (bounds.min_x, bounds.max_x)
                             or result.dy in (bounds.min_y, bounds.max_y))
    warning = "***" if result.at_bounds_edge else ""
    estimated = ""
    if result.interpolated_score is not None:
        estimated = f" (interpolated score {result.interpolated_score:g})"
    logger.info(f"Best shift{warning} x {result.dx:g}  y {result.dy:g} = "
                f"{result.score:g}{estimated}")

    result.aligned = translate(tgt, result.dx, result.dy,
                               interpolation_method, clip_output)
    result.computation_time_s = time.time() - t0
    return result
