"""Pytest configuration and fixtures for the chromatic aberration reduction tests."""

import pytest
import numpy as np

from config import AlignmentConfig
from alignment.models import Detection


# ============================================================================
# Synthetic star fields
# ============================================================================

PSF_SIGMA = 1.5
SKY_LEVEL = 0.05
NOISE_SIGMA = 0.005


def star_positions(n_stars, shape, seed=0, margin=24, min_separation=15.0):
    """Uniformly scattered star positions (x, y) with a minimum mutual separation."""
    rng = np.random.default_rng(seed)
    height, width = shape
    positions = []
    attempts = 0
    while len(positions) < n_stars:
        attempts += 1
        if attempts > 100000:
            raise RuntimeError(f"Could not place {n_stars} stars in a {width}x{height} field")
        candidate = rng.uniform([margin, margin], [width - 1 - margin, height - 1 - margin])
        if all(np.hypot(*(candidate - p)) >= min_separation for p in positions):
            positions.append(candidate)
    return np.array(positions, dtype=np.float64)


def star_amplitudes(n_stars, seed=0):
    rng = np.random.default_rng(seed + 1000)
    return rng.uniform(0.2, 1.0, n_stars)


def render_stars(positions, amplitudes, shape, noise_seed=None, sky=SKY_LEVEL,
                 noise=NOISE_SIGMA, sigma=PSF_SIGMA):
    """
    Renders circular Gaussian stars sampled at pixel centres, on a flat sky.
    Positions are rendered analytically, so shifted fields need no resampling.
    """
    height, width = shape
    image = np.full(shape, sky, dtype=np.float64)
    half = int(np.ceil(5 * sigma))
    for (x0, y0), amplitude in zip(positions, amplitudes):
        xc, yc = int(round(x0)), int(round(y0))
        x_lo, x_hi = max(0, xc - half), min(width, xc + half + 1)
        y_lo, y_hi = max(0, yc - half), min(height, yc + half + 1)
        if x_lo >= x_hi or y_lo >= y_hi:
            continue
        yy, xx = np.mgrid[y_lo:y_hi, x_lo:x_hi]
        image[y_lo:y_hi, x_lo:x_hi] += amplitude * np.exp(-((xx - x0) ** 2 + (yy - y0) ** 2) / (2 * sigma ** 2))
    if noise_seed is not None and noise > 0:
        image += np.random.default_rng(noise_seed).normal(0.0, noise, shape)
    return image


@pytest.fixture(scope="session")
def render_field():
    """
    Factory: render_field(shape, n_stars, shift=(0, 0), seed=0, noise_seed=None)
    returns (image, positions). The stars sit at reference positions minus shift,
    so the target -> reference translation of the rendered field is +shift.
    """
    def _render(shape=(256, 256), n_stars=30, shift=(0.0, 0.0), seed=0, noise_seed=None, **kwargs):
        positions = star_positions(n_stars, shape, seed=seed)
        amplitudes = star_amplitudes(n_stars, seed=seed)
        shifted = positions - np.asarray(shift, dtype=np.float64)
        return render_stars(shifted, amplitudes, shape, noise_seed=noise_seed, **kwargs), shifted
    return _render


@pytest.fixture
def star_field(render_field):
    """A 256x256 reference field with 30 stars and seeded noise."""
    image, positions = render_field((256, 256), 30, seed=3, noise_seed=11)
    return image, positions


@pytest.fixture
def config():
    return AlignmentConfig()


def make_detections(points, fluxes=None):
    """Detections at the given (x, y) points; brighter first unless fluxes are given."""
    points = np.asarray(points, dtype=np.float64)
    if fluxes is None:
        fluxes = np.linspace(100.0, 10.0, len(points))
    return [Detection(x=float(x), y=float(y), flux=float(f), radius=2.0) for (x, y), f in zip(points, fluxes)]


@pytest.fixture
def detections_factory():
    return make_detections


@pytest.fixture(scope="session")
def stars_renderer():
    """render_stars itself, for fields with hand-placed stars."""
    return render_stars
