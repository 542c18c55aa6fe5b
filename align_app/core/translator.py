"""Apply a translation to an image with a chosen interpolation."""

from enum import Enum

import cv2
import numpy as np

from align_app.core.errors import ConfigurationError


class InterpolationMethod(Enum):
    NONE = "none"
    LINEAR = "linear"
    CUBIC = "cubic"


_CV2_FLAGS = {
    InterpolationMethod.NONE: cv2.INTER_NEAREST,
    InterpolationMethod.LINEAR: cv2.INTER_LINEAR,
    InterpolationMethod.CUBIC: cv2.INTER_CUBIC,
}


def as_interpolation_method(value) -> InterpolationMethod:
    if isinstance(value, InterpolationMethod):
        return value
    try:
        return InterpolationMethod(value)
    except ValueError:
        raise ConfigurationError(f"Unsupported interpolation method: {value!r}") from None


def _restore_dtype(values: np.ndarray, dtype) -> np.ndarray:
    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(values), info.min, info.max).astype(dtype)
    return values.astype(dtype)


def translate(image: np.ndarray, dx: float, dy: float,
              method=InterpolationMethod.NONE,
              clip_output: bool = False) -> np.ndarray:
    """Return a copy of *image* with its content moved by (+dx, +dy).

    Pixels whose source falls outside the image are zero.  Integral offsets
    need no interpolation and always use nearest-neighbour.

    Parameters
    ----------
    image : np.ndarray (H, W)
    dx, dy : float, translation in pixels
    method : InterpolationMethod
    clip_output : clamp interpolated pixels to the [min, max] of the input,
                  removing the overshoot of cubic interpolation

    Returns
    -------
    np.ndarray (H, W) with the dtype of the input
    """
    method = as_interpolation_method(method)
    src = np.asarray(image)
    if src.ndim != 2:
        raise ValueError("translate expects a single-channel 2D image")
    h, w = src.shape

    if float(dx).is_integer() and float(dy).is_integer():
        method = InterpolationMethod.NONE
    if dx == 0 and dy == 0:
        return src.copy()

    M = np.float64([[1, 0, dx], [0, 1, dy]])
    work = src.astype(np.float64)
    warped = cv2.warpAffine(work, M, (w, h),
                            flags=_CV2_FLAGS[method],
                            borderMode=cv2.BORDER_CONSTANT,
                            borderValue=0)

    if clip_output and method != InterpolationMethod.NONE and src.size:
        # Validity mask: only clamp pixels sampled from inside the image
        ones = np.full((h, w), 255, dtype=np.uint8)
        vmask = cv2.warpAffine(ones, M, (w, h),
                               flags=cv2.INTER_NEAREST,
                               borderMode=cv2.BORDER_CONSTANT,
                               borderValue=0)
        valid = vmask > 127
        del ones, vmask
        lo, hi = float(work.min()), float(work.max())
        warped[valid] = np.clip(warped[valid], lo, hi)

    return _restore_dtype(warped, src.dtype)
