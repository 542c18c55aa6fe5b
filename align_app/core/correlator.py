"""Frequency-domain cross-correlation.

Correlation is computed in Fourier space (A and B transform to F and G)
using the complex conjugate of G multiplied by F:

    C(u,v) = F(u,v) G*(u,v)

which is the spatial cross-correlation of the two canvases.  After the
inverse transform the quadrants are swapped so that zero shift sits at the
canvas centre (N/2, N/2).
"""

import numpy as np

from align_app.core.errors import InvalidInputError


def forward_transform(canvas: np.ndarray) -> np.ndarray:
    """Real 2D FFT of a square canvas (half spectrum)."""
    return np.fft.rfft2(np.asarray(canvas, dtype=np.float64))


def correlate(ref_spectrum: np.ndarray, target_spectrum: np.ndarray,
              size: int) -> np.ndarray:
    """Raw correlation surface of two spectra over an N x N canvas.

    ``surface[N/2 + dy, N/2 + dx]`` is ``sum f(x + dx, y + dy) * g(x, y)``,
    i.e. the target translated by (dx, dy) laid over the reference.
    """
    if ref_spectrum.shape != target_spectrum.shape:
        raise InvalidInputError(
            f"Spectra must come from canvases of the same size, got "
            f"{ref_spectrum.shape} and {target_spectrum.shape}")
    product = ref_spectrum * np.conj(target_spectrum)
    surface = np.fft.irfft2(product, s=(size, size))
    return np.fft.fftshift(surface)
