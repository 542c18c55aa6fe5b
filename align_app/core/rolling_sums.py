"""Integral images (rolling sums) for fast normalised cross-correlation.

Following the computation of the correlation, each offset (u, v) should be
divided by the energy of the reference under the target footprint:

    sqrt( Sum(x,y) [ f(x,y) - f_(u,v) ]^2 )

where f_(u,v) is the mean of the region under the target.  With the tables

    s(u,v)  = f(u,v)   + s(u-1,v)  + s(u,v-1)  - s(u-1,v-1)
    ss(u,v) = f(u,v)^2 + ss(u-1,v) + ss(u,v-1) - ss(u-1,v-1)

the sum and sum of squares of any rectangle come from four lookups.
Reference: J.P. Lewis, "Fast Normalized Cross-Correlation".
"""

from dataclasses import dataclass, field
from typing import Tuple

import numpy as np

from align_app.core.padding import Rect
from align_app.utils.helpers import setup_logger

logger = setup_logger(__name__)

# Normalised scores are clamped to +/- this value
NORMALIZED_SCORE_LIMIT = 1.1


@dataclass(frozen=True)
class RollingSums:
    """Cumulative sum (S) and sum-of-squares (SS) tables over a canvas.

    ``s[y, x]`` is the sum over the inclusive rectangle [0, x] x [0, y].
    """
    s: np.ndarray = field(repr=False)
    ss: np.ndarray = field(repr=False)
    # Tables with a leading row/column of zeros so index -1 reads 0
    _s_ext: np.ndarray = field(repr=False, compare=False)
    _ss_ext: np.ndarray = field(repr=False, compare=False)

    @classmethod
    def from_canvas(cls, canvas: np.ndarray) -> 'RollingSums':
        """Build both tables in a single pass, O(N^2) time and space.

        Each row is a running sum along x added to the table row above.
        """
        data = np.asarray(canvas, dtype=np.float64)
        s = np.cumsum(np.cumsum(data, axis=1), axis=0)
        ss = np.cumsum(np.cumsum(data * data, axis=1), axis=0)

        s_ext = np.zeros((s.shape[0] + 1, s.shape[1] + 1), dtype=np.float64)
        ss_ext = np.zeros_like(s_ext)
        s_ext[1:, 1:] = s
        ss_ext[1:, 1:] = ss
        for arr in (s, ss, s_ext, ss_ext):
            arr.setflags(write=False)
        return cls(s=s, ss=ss, _s_ext=s_ext, _ss_ext=ss_ext)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.s.shape

    def _lookup(self, table, u, v):
        # Shift by one into the extended table; clamp to [-1, max]
        h, w = self.s.shape
        ui = np.clip(np.asarray(u) + 1, 0, w)
        vi = np.clip(np.asarray(v) + 1, 0, h)
        return table[vi, ui]

    def query(self, min_u, max_u, min_v, max_v):
        """Sum and sum of squares over the inclusive rectangle.

        ``u`` indexes columns (x) and ``v`` rows (y).  Arguments may be
        scalars or broadcastable arrays.  Out-of-range indices read the
        nearest edge value; anything below 0 reads 0.

        Returns
        -------
        (sum, sum_squares) : float or np.ndarray
        """
        lo_u = np.asarray(min_u) - 1
        lo_v = np.asarray(min_v) - 1
        results = []
        for table in (self._s_ext, self._ss_ext):
            total = (self._lookup(table, max_u, max_v)
                     - self._lookup(table, lo_u, max_v)
                     - self._lookup(table, max_u, lo_v)
                     + self._lookup(table, lo_u, lo_v))
            if np.ndim(total) == 0:
                total = float(total)
            results.append(total)
        return results[0], results[1]


def normalize_surface(surface: np.ndarray, sums: RollingSums,
                      ref_rect: Rect, target_rect: Rect) -> np.ndarray:
    """Divide a raw correlation surface by the reference energy per shift.

    Only cells within the union of the reference and target insertion
    rectangles are normalised; the score further from zero shift is
    increasingly affected by summation error, so everything else is 0.

    Parameters
    ----------
    surface : (N, N) raw correlation, zero shift at (N/2, N/2)
    sums : RollingSums over the padded reference canvas
    ref_rect, target_rect : insertion rectangles of the two canvases

    Returns
    -------
    (N, N) float64 normalised surface, clamped to +/-NORMALIZED_SCORE_LIMIT
    """
    maxy, maxx = surface.shape
    nu = target_rect.width
    nv = target_rect.height

    # Assume a full size target relative to the reference, then compensate
    # with the location the target was inserted at.
    half_nu = maxx // 2 - target_rect.x
    half_nv = maxy // 2 - target_rect.y

    union = ref_rect.union(target_rect).intersection(Rect(0, 0, maxx, maxy))
    out = np.zeros((maxy, maxx), dtype=np.float64)
    if union.is_empty():
        return out

    xs = np.arange(union.x, union.x_end)
    ys = np.arange(union.y, union.y_end)

    # Reference columns/rows covered by the target footprint at each shift
    min_u = (xs - half_nu)[np.newaxis, :]
    max_u = min_u + nu - 1
    min_v = (ys - half_nv)[:, np.newaxis]
    max_v = min_v + nv - 1

    total, total_sq = sums.query(min_u, max_u, min_v, max_v)

    # Overlap pixel count within the canvas
    n_u = np.clip(np.minimum(max_u, maxx - 1) - np.maximum(min_u, 0) + 1, 0, None)
    n_v = np.clip(np.minimum(max_v, maxy - 1) - np.maximum(min_v, 0) + 1, 0, None)
    n = (n_v * n_u).astype(np.float64)

    with np.errstate(divide='ignore', invalid='ignore'):
        residuals = np.where(n >= 1, total_sq - total * total / n, 0.0)
    normalisation = np.where(residuals > 0, np.sqrt(np.maximum(residuals, 0)), 0.0)

    raw = surface[union.y:union.y_end, union.x:union.x_end]
    valid = normalisation > 0
    block = np.zeros_like(raw, dtype=np.float64)
    block[valid] = raw[valid] / normalisation[valid]
    np.clip(block, -NORMALIZED_SCORE_LIMIT, NORMALIZED_SCORE_LIMIT, out=block)
    out[union.y:union.y_end, union.x:union.x_end] = block

    n_degenerate = int(np.count_nonzero(~valid))
    if n_degenerate:
        logger.debug(f"Normalisation: {n_degenerate} shifts with no usable "
                     f"signal set to zero")
    return out
