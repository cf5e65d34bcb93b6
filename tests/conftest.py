"""
Pytest configuration and fixtures.
"""

import numpy as np
import pytest
from scipy import ndimage

from luckystack.io import ArrayFrameSource


def _planet(
    height=128,
    width=128,
    radius=30.0,
    center=None,
    shift=(0.0, 0.0),
    blur=0.0,
    noise=0.0,
    seed=0,
    rgb=False,
):
    """
    Render a banded, limb-darkened planetary disc on a black sky.

    ``shift`` is (dy, dx) in pixels and moves the whole disc, bands included,
    so a shifted frame is the reference displaced by exactly that amount.
    """
    if center is None:
        center = ((height - 1) / 2.0, (width - 1) / 2.0)
    cy = center[0] + shift[0]
    cx = center[1] + shift[1]

    yy, xx = np.mgrid[0:height, 0:width].astype(np.float64)
    ry = yy - cy
    rx = xx - cx
    r = np.hypot(rx, ry)

    disc = np.clip(radius + 0.5 - r, 0.0, 1.0)
    limb = np.sqrt(np.clip(1.0 - (r / radius) ** 2, 0.0, 1.0))
    bands = 0.6 + 0.25 * np.sin(2 * np.pi * ry / (radius / 2.5))
    spot = 0.3 * np.exp(
        -((rx - 0.3 * radius) ** 2 + (ry + 0.25 * radius) ** 2) / (2 * (0.12 * radius) ** 2)
    )
    image = disc * (bands * (0.4 + 0.6 * limb) + spot)

    if blur > 0:
        image = ndimage.gaussian_filter(image, blur)
    if noise > 0:
        rng = np.random.default_rng(seed)
        image = image + rng.normal(0.0, noise, image.shape)
    image = np.clip(image, 0.0, 1.0).astype(np.float32)

    if rgb:
        image = np.stack([image, 0.85 * image, 0.7 * image], axis=-1).astype(np.float32)
    return image


@pytest.fixture
def planet_frame():
    """Create a synthetic planetary frame."""
    return _planet


@pytest.fixture
def planet_source():
    """Create an in-memory source of jittered planetary frames."""
    def _create(n_frames=12, height=96, width=96, radius=24.0, jitter=3.0, seed=7,
                rgb=False, failing=()):
        rng = np.random.default_rng(seed)
        frames = []
        for i in range(n_frames):
            shift = (0.0, 0.0) if i == 0 else tuple(rng.uniform(-jitter, jitter, 2))
            frames.append(
                _planet(height, width, radius=radius, shift=shift, noise=0.005, seed=seed + i, rgb=rgb)
            )
        return ArrayFrameSource(frames, failing=failing)

    return _create


@pytest.fixture
def mixed_quality_source():
    """Create a source where a few frames are badly blurred by seeing."""
    def _create(n_sharp=95, n_blurred=5, size=64, seed=3):
        rng = np.random.default_rng(seed)
        n_frames = n_sharp + n_blurred
        blurred = set(rng.choice(n_frames, size=n_blurred, replace=False).tolist())
        frames = []
        for i in range(n_frames):
            shift = tuple(rng.uniform(-1.0, 1.0, 2))
            frames.append(
                _planet(size, size, radius=16.0, shift=shift, blur=3.0 if i in blurred else 0.0)
            )
        return ArrayFrameSource(frames), sorted(blurred)

    return _create


def _displace_columns(reference, amplitude):
    """
    Move each column horizontally by ``amplitude * cos(pi * x / (width - 1))``.

    The left edge moves by ``+amplitude``, the centre stays put and the right
    edge moves by ``-amplitude``, the way seeing distorts separate parts of a
    disc by different amounts.
    """
    height, width = reference.shape
    yy, xx = np.mgrid[0:height, 0:width].astype(np.float64)
    dx = amplitude * np.cos(np.pi * xx / (width - 1))
    return ndimage.map_coordinates(reference, [yy, xx - dx], order=3, mode="nearest").astype(
        np.float32
    )


@pytest.fixture
def displaced_frame():
    """Create a column-displaced copy of a frame."""
    return _displace_columns


@pytest.fixture
def seeing_source():
    """
    Create a source whose frames differ from a sharp first frame by a smooth
    per-column displacement of alternating sign and a slight blur.
    """
    def _create(n_frames=7, size=96, radius=30.0, amplitude=1.5, blur=0.7, noise=0.003, seed=11):
        rng = np.random.default_rng(seed)
        reference = _planet(size, size, radius=radius)
        frames = []
        for i in range(n_frames):
            frame = reference
            if i > 0:
                sign = 1.0 if i % 2 else -1.0
                frame = ndimage.gaussian_filter(_displace_columns(reference, sign * amplitude), blur)
            frame = frame + rng.normal(0.0, noise, frame.shape)
            frames.append(np.clip(frame, 0.0, 1.0).astype(np.float32))
        return ArrayFrameSource(frames), reference

    return _create


class RecordingSink:
    """Progress sink that keeps every notification."""

    def __init__(self):
        self.events = []

    def notify(self, percent, message):
        self.events.append((percent, message))

    @property
    def percents(self):
        return [p for p, _ in self.events]


@pytest.fixture
def recording_sink():
    return RecordingSink()
