import numpy as np
import pytest
from scipy.ndimage import gaussian_filter


def make_textured(shape, seed=0, sigma=2.0):
    """Smooth random texture with a bright localized feature, float64."""
    rng = np.random.default_rng(seed)
    noise = gaussian_filter(rng.normal(size=shape), sigma)
    noise = (noise - noise.min()) / (noise.max() - noise.min())
    h, w = shape
    yy, xx = np.mgrid[0:h, 0:w]
    blob = np.exp(-((xx - w * 0.4) ** 2 + (yy - h * 0.6) ** 2) / (2 * 4.0 ** 2))
    return 100.0 + 800.0 * noise + 400.0 * blob


@pytest.fixture
def textured():
    return make_textured((128, 128))


@pytest.fixture
def textured_factory():
    return make_textured
