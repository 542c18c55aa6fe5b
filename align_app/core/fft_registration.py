"""Translation registration by frequency-domain cross-correlation.

Aligns a target image to a reference using the XY translation that
maximises the (optionally normalised) correlation between them:

    1. Reference  - windowed, padded to a power-two canvas, transformed and
                    summarised by rolling sums once (ReferenceContext)
    2. Target     - windowed and padded the same way, scaled to unit length
    3. Correlate  - conjugate multiplication in frequency space
    4. Normalise  - divide each shift by the reference energy under the
                    target footprint (fast normalised cross-correlation)
    5. Peak       - bounded search plus optional sub-pixel refinement
    6. Translate  - shift the target by the reported offset

By default translation is restricted so that at least half of the smaller
image width/height stays within the larger image (half-max translation).

The reported (dx, dy) is the translation that, applied to the target,
aligns it with the reference; the translated output uses exactly that
offset.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from align_app.core.correlator import correlate, forward_transform
from align_app.core.errors import InvalidInputError
from align_app.core.padding import (
    PaddedCanvas, canvas_size_for, normalize_unit_length, pad_and_center,
)
from align_app.core.peak_search import (
    SearchBounds, SubPixelMethod, as_subpixel_method, find_peak,
    half_max_bounds, refine_peak, search_window,
)
from align_app.core.rolling_sums import RollingSums, normalize_surface
from align_app.core.translator import (
    InterpolationMethod, as_interpolation_method, translate as translate_image,
)
from align_app.core.window import WindowFunction, as_window_function
from align_app.utils.helpers import has_signal, setup_logger

logger = setup_logger(__name__)

# Largest canvas side accepted (memory is O(N^2) per buffer)
MAX_CANVAS_SIZE = 4096

IntermediateCallback = Callable[[str, np.ndarray], None]


# ======================================================================
# Parameters & Results
# ======================================================================

@dataclass
class AlignmentParameters:
    """Configuration for FFT alignment.

    ``window_function``, ``normalized`` and ``separable_window`` describe
    how the reference context is built; ``align`` always pads the target
    with the context's own window so both canvases match.
    """
    window_function: WindowFunction = WindowFunction.TUKEY
    bounds: Optional[SearchBounds] = None        # None = half-max translation
    subpixel_method: SubPixelMethod = SubPixelMethod.GAUSSIAN
    interpolation_method: InterpolationMethod = InterpolationMethod.NONE
    normalized: bool = True
    clip_output: bool = False                    # Clamp interpolation overshoot
    translate: bool = True                       # Produce the translated image
    separable_window: bool = True

    def to_dict(self) -> dict:
        return {
            'window_function': self.window_function.value,
            'bounds': self.bounds.to_dict() if self.bounds is not None else None,
            'subpixel_method': self.subpixel_method.value,
            'interpolation_method': self.interpolation_method.value,
            'normalized': self.normalized,
            'clip_output': self.clip_output,
            'translate': self.translate,
            'separable_window': self.separable_window,
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'AlignmentParameters':
        bounds = d.get('bounds')
        return cls(
            window_function=as_window_function(d.get('window_function', 'tukey')),
            bounds=SearchBounds.from_dict(bounds) if bounds else None,
            subpixel_method=as_subpixel_method(d.get('subpixel_method', 'gaussian')),
            interpolation_method=as_interpolation_method(
                d.get('interpolation_method', 'none')),
            normalized=d.get('normalized', True),
            clip_output=d.get('clip_output', False),
            translate=d.get('translate', True),
            separable_window=d.get('separable_window', True),
        )


@dataclass(frozen=True)
class ReferenceContext:
    """Immutable reference-side state shared by any number of alignments."""
    canvas: PaddedCanvas = field(repr=False)
    spectrum: np.ndarray = field(repr=False)
    sums: Optional[RollingSums] = field(repr=False)
    window: WindowFunction = WindowFunction.TUKEY
    separable_window: bool = True
    ref_shape: Tuple[int, int] = (0, 0)            # (h, w)

    @property
    def size(self) -> int:
        return self.canvas.size

    @property
    def normalized(self) -> bool:
        return self.sums is not None


@dataclass
class OffsetResult:
    """Result of aligning one target."""
    dx: float = 0.0
    dy: float = 0.0
    score: float = 0.0
    interpolated_score: Optional[float] = None
    integer_peak: Tuple[int, int] = (0, 0)       # surface cell (x, y)
    subpixel_fitted: bool = False
    aligned: Optional[np.ndarray] = field(default=None, repr=False)
    correlation: Optional[np.ndarray] = field(default=None, repr=False)
    normalized_target: Optional[np.ndarray] = field(default=None, repr=False)
    index: Optional[int] = None
    computation_time_s: float = 0.0

    def to_dict(self) -> dict:
        return {
            'dx': self.dx,
            'dy': self.dy,
            'score': self.score,
            'interpolated_score': self.interpolated_score,
            'integer_peak': list(self.integer_peak),
            'subpixel_fitted': self.subpixel_fitted,
            'index': self.index,
            'computation_time_s': self.computation_time_s,
        }


# ======================================================================
# Validation
# ======================================================================

def _check_image(image, name: str) -> np.ndarray:
    if image is None:
        raise InvalidInputError(f"{name} image is missing")
    arr = np.asarray(image)
    if arr.ndim != 2:
        raise InvalidInputError(
            f"{name} image must be 2D single-channel, got shape {arr.shape}")
    if arr.size == 0:
        raise InvalidInputError(f"{name} image must not be empty")
    if not (np.issubdtype(arr.dtype, np.number) or arr.dtype == np.bool_):
        raise InvalidInputError(f"{name} image has non-numeric dtype {arr.dtype}")
    if np.issubdtype(arr.dtype, np.floating) and not np.all(np.isfinite(arr)):
        raise InvalidInputError(f"{name} image contains NaN or infinite values")
    return arr


def _emit(callback: Optional[IntermediateCallback], name: str, buffer):
    if callback is not None:
        callback(name, buffer)


# ======================================================================
# Reference context
# ======================================================================

def create_reference_context(reference: np.ndarray,
                             window=WindowFunction.TUKEY,
                             normalized: bool = True,
                             target_shape: Optional[Tuple[int, int]] = None,
                             separable_window: bool = True,
                             on_intermediate: Optional[IntermediateCallback] = None
                             ) -> ReferenceContext:
    """Initialise the reference for alignment.

    Parameters
    ----------
    reference : (H, W) reference image
    window : WindowFunction applied before padding
    normalized : build rolling sums for normalised correlation
    target_shape : (h, w) of the largest target to be aligned; the canvas
                   covers both images.  Targets must not exceed the canvas.
    separable_window : separable (True) or radial window
    on_intermediate : optional callback(name, buffer) for diagnostics

    Returns
    -------
    ReferenceContext
    """
    ref = _check_image(reference, "Reference")
    window = as_window_function(window)
    if not has_signal(ref):
        raise InvalidInputError("Reference image has no signal; "
                                "no correlation is possible")

    shapes = [ref.shape] if target_shape is None else [ref.shape, tuple(target_shape)]
    size = canvas_size_for(*shapes)
    if size > MAX_CANVAS_SIZE:
        raise InvalidInputError(
            f"Canvas size {size} exceeds the maximum of {MAX_CANVAS_SIZE}")

    t0 = time.time()
    canvas = pad_and_center(ref, size, window, separable_window)
    canvas.data.setflags(write=False)
    _emit(on_intermediate, "normalized_reference", canvas.data)

    sums = RollingSums.from_canvas(canvas.data) if normalized else None
    spectrum = forward_transform(canvas.data)
    spectrum.setflags(write=False)

    logger.info(f"Reference context {ref.shape[1]}x{ref.shape[0]} -> "
                f"{size}x{size} canvas ({window.value} window, "
                f"normalized={normalized}) in {time.time() - t0:.3f}s")
    return ReferenceContext(canvas=canvas, spectrum=spectrum, sums=sums,
                            window=window, separable_window=separable_window,
                            ref_shape=ref.shape)


# ======================================================================
# Alignment
# ======================================================================

def align(context: ReferenceContext, target: np.ndarray,
          params: Optional[AlignmentParameters] = None,
          on_intermediate: Optional[IntermediateCallback] = None,
          keep_intermediates: bool = False) -> OffsetResult:
    """Align *target* to the reference held by *context*.

    Pure with respect to *context*: every buffer is private to the call,
    so one context can serve concurrent alignments.

    Parameters
    ----------
    context : ReferenceContext from create_reference_context
    target : (H, W) image no larger than the context canvas
    params : AlignmentParameters (bounds, sub-pixel, interpolation, clip)
    on_intermediate : optional callback(name, buffer)
    keep_intermediates : store correlation / normalised target on the result

    Returns
    -------
    OffsetResult
    """
    if context is None:
        raise InvalidInputError("Reference context is missing; "
                                "call create_reference_context first")
    params = params or AlignmentParameters()
    tgt = _check_image(target, "Target")
    t0 = time.time()

    size = context.size
    th, tw = tgt.shape
    if tw > size or th > size:
        raise InvalidInputError(
            f"Target {tw}x{th} does not fit the {size}x{size} reference canvas")

    subpixel = as_subpixel_method(params.subpixel_method)
    interpolation = as_interpolation_method(params.interpolation_method)
    rh, rw = context.ref_shape
    if params.bounds is not None:
        bounds = params.bounds.validate()
    else:
        bounds = half_max_bounds(rw, rh, tw, th)
    window = search_window((size, size), bounds)
    origin = size // 2

    if not has_signal(tgt):
        logger.warning("Target image has no signal; offset (0, 0), score 0")
        return _no_signal_result(tgt, size, params, on_intermediate,
                                 keep_intermediates, t0)

    padded = pad_and_center(tgt, size, context.window, context.separable_window)
    normalized_target = normalize_unit_length(padded.data)
    if not np.any(normalized_target):
        # Every sample sits where the window weight is zero
        logger.warning(f"Target image has no signal after the "
                       f"{context.window.value} window; offset (0, 0), score 0")
        return _no_signal_result(tgt, size, params, on_intermediate,
                                 keep_intermediates, t0)
    _emit(on_intermediate, "normalized_target", normalized_target)

    surface = correlate(context.spectrum, forward_transform(normalized_target), size)
    if context.sums is not None:
        surface = normalize_surface(surface, context.sums,
                                    context.canvas.rect, padded.rect)
    _emit(on_intermediate, "correlation", surface)

    ix, iy = find_peak(surface, window)
    estimate = refine_peak(surface, ix, iy, subpixel, window)

    # Keep the fitted centre inside the searched cells
    fx = min(max(estimate.x, window.x), window.x_end - 1)
    fy = min(max(estimate.y, window.y), window.y_end - 1)
    dx = fx - origin
    dy = fy - origin

    interpolated = ""
    if estimate.interpolated_score is not None:
        interpolated = f" (interpolated score {estimate.interpolated_score:g})"
    logger.info(f"Best offset x {dx:g}  y {dy:g} = {estimate.score:g}{interpolated}")

    aligned = None
    if params.translate:
        aligned = translate_image(tgt, dx, dy, interpolation, params.clip_output)

    return OffsetResult(
        dx=float(dx),
        dy=float(dy),
        score=estimate.score,
        interpolated_score=estimate.interpolated_score,
        integer_peak=(ix, iy),
        subpixel_fitted=estimate.fitted,
        aligned=aligned,
        correlation=surface if keep_intermediates else None,
        normalized_target=normalized_target if keep_intermediates else None,
        computation_time_s=time.time() - t0,
    )


def _no_signal_result(tgt, size, params, on_intermediate, keep_intermediates,
                      t0) -> OffsetResult:
    # Zero correlation with an empty image
    origin = size // 2
    empty = np.zeros((size, size), dtype=np.float64)
    _emit(on_intermediate, "normalized_target", empty)
    _emit(on_intermediate, "correlation", empty)
    return OffsetResult(
        integer_peak=(origin, origin),
        aligned=tgt.copy() if params.translate else None,
        correlation=empty if keep_intermediates else None,
        normalized_target=empty.copy() if keep_intermediates else None,
        computation_time_s=time.time() - t0,
    )


def align_images(reference: np.ndarray, target: np.ndarray,
                 params: Optional[AlignmentParameters] = None,
                 on_intermediate: Optional[IntermediateCallback] = None,
                 keep_intermediates: bool = False) -> OffsetResult:
    """One-shot alignment: build a context covering both images and align."""
    params = params or AlignmentParameters()
    tgt = _check_image(target, "Target")
    context = create_reference_context(
        reference, params.window_function, params.normalized,
        target_shape=tgt.shape, separable_window=params.separable_window,
        on_intermediate=on_intermediate)
    return align(context, tgt, params, on_intermediate, keep_intermediates)


# ======================================================================
# Stack alignment
# ======================================================================

class StackAligner:
    """Align a sequence of targets (e.g. stack slices) to one reference.

    Usage::

        ctx = create_reference_context(ref, WindowFunction.TUKEY, True)
        aligner = StackAligner(ctx, AlignmentParameters())
        results = aligner.run(slices)
    """

    def __init__(self, context: ReferenceContext,
                 params: Optional[AlignmentParameters] = None):
        if context is None:
            raise InvalidInputError("Reference context is missing")
        self.context = context
        self.params = params or AlignmentParameters()
        self._progress_callback: Optional[Callable] = None
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()

    def set_progress_callback(self, callback: Callable):
        """Set callback: callback(percent: int, message: str)"""
        self._progress_callback = callback

    def cancel(self):
        """Request cancellation; checked between individual alignments."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _report_progress(self, percent, message=""):
        with self._lock:
            cb = self._progress_callback
        if cb:
            cb(int(percent), message)

    def _align_one(self, index: int, target: np.ndarray) -> OffsetResult:
        result = align(self.context, target, self.params)
        result.index = index
        logger.info(f"Slice {index + 1}: x {result.dx:g}  y {result.dy:g} "
                    f"= {result.score:g}")
        return result

    def run(self, targets: Sequence[np.ndarray],
            max_workers: int = 1) -> List[OffsetResult]:
        """Align every target; returns results in input order.

        On cancellation the results already produced are returned.
        """
        self._cancel_event.clear()
        n_targets = len(targets)
        t0 = time.time()
        if max_workers <= 1:
            results = self._run_sequential(targets)
        else:
            results = self._run_parallel(targets, max_workers)

        if self.cancelled:
            logger.warning(f"Stack alignment cancelled after "
                           f"{len(results)}/{n_targets} images")
        else:
            self._report_progress(100, "Stack alignment complete")
        logger.info(f"Aligned {len(results)} images in {time.time() - t0:.2f}s")
        return results

    def _run_sequential(self, targets):
        results = []
        n_targets = len(targets)
        for i, target in enumerate(targets):
            if self.cancelled:
                break
            self._report_progress((i / max(n_targets, 1)) * 100,
                                  f"Aligning image {i + 1}/{n_targets}")
            results.append(self._align_one(i, target))
        return results

    def _run_parallel(self, targets, max_workers):
        n_targets = len(targets)
        done_count = 0

        def job(i, target):
            if self.cancelled:
                return None
            return self._align_one(i, target)

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [pool.submit(job, i, t) for i, t in enumerate(targets)]
            results = []
            for future in futures:
                if self.cancelled:
                    for pending in futures:
                        pending.cancel()
                if future.cancelled():
                    continue
                result = future.result()
                if result is None:
                    continue
                results.append(result)
                done_count += 1
                self._report_progress((done_count / max(n_targets, 1)) * 100,
                                      f"Aligned image {result.index + 1}/{n_targets}")
        return results
