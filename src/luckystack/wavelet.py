"""
Multi-scale wavelet sharpening.

The stacked image is split into five detail bands with the à trous
("with holes") B3-spline transform: each level smooths the previous one
with the kernel (1, 4, 6, 4, 1)/16 dilated by 2**level, and the detail
band is the difference between consecutive smoothings. Scaling each band
and summing back sharpens selected spatial frequencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy import ndimage

from .config import WaveletLayers
from .errors import InvalidInputError

logger = logging.getLogger(__name__)

B3_KERNEL = np.array([1.0, 4.0, 6.0, 4.0, 1.0]) / 16.0

N_LAYERS = 5


@dataclass
class WaveletDecomposition:
    """Detail bands (finest first) and the low-pass residual of a 2D image."""

    details: list[np.ndarray]
    residual: np.ndarray

    @property
    def n_layers(self) -> int:
        return len(self.details)


def _dilated_kernel(level: int) -> np.ndarray:
    spacing = 2 ** level
    kernel = np.zeros(4 * spacing + 1)
    kernel[::spacing] = B3_KERNEL
    return kernel


def _smooth(plane: np.ndarray, level: int) -> np.ndarray:
    kernel = _dilated_kernel(level)
    out = ndimage.correlate1d(plane, kernel, axis=0, mode="mirror")
    return ndimage.correlate1d(out, kernel, axis=1, mode="mirror")


def atrous_decompose(plane: np.ndarray, n_layers: int = N_LAYERS) -> WaveletDecomposition:
    """
    Decompose a 2D image into ``n_layers`` detail bands plus a residual.

    The bands and the residual sum back to the input exactly (up to float
    rounding).
    """
    if plane.ndim != 2:
        raise InvalidInputError(f"atrous_decompose expects a 2D plane, got shape {plane.shape}")
    current = plane.astype(np.float64)
    details = []
    for level in range(n_layers):
        smoothed = _smooth(current, level)
        details.append(current - smoothed)
        current = smoothed
    return WaveletDecomposition(details=details, residual=current)


def reconstruct(decomposition: WaveletDecomposition, gains: Sequence[float]) -> np.ndarray:
    """``residual + sum(gain_i * detail_i)``."""
    if len(gains) != decomposition.n_layers:
        raise InvalidInputError(
            f"Expected {decomposition.n_layers} gains, got {len(gains)}"
        )
    out = decomposition.residual.copy()
    for gain, detail in zip(gains, decomposition.details):
        out += gain * detail
    return out


def sharpen(
    image: np.ndarray,
    layers: WaveletLayers | Sequence[float],
    white_level: float = 1.0,
) -> np.ndarray:
    """
    Sharpen an image with per-band wavelet gains.

    Parameters
    ----------
    image : np.ndarray
        (H, W) or (H, W, C) image, normally float in [0, white_level].
    layers : WaveletLayers or sequence of 5 floats
        Gains, finest band first. 1.0 leaves a band unchanged.
    white_level : float, default 1.0
        Upper clamp of the output range.

    Returns
    -------
    np.ndarray
        float32 image of the same shape, clamped to [0, white_level].
        Colour channels are processed independently.
    """
    gains = layers.gains if isinstance(layers, WaveletLayers) else tuple(float(g) for g in layers)
    if len(gains) != N_LAYERS:
        raise InvalidInputError(f"Expected {N_LAYERS} wavelet gains, got {len(gains)}")
    if any(g < 0 for g in gains):
        raise InvalidInputError(f"Wavelet gains must be >= 0, got {gains}")
    if image.ndim not in (2, 3) or image.size == 0:
        raise InvalidInputError(f"Unsupported image shape {image.shape}")

    logger.info("Wavelet sharpening with gains %s", ", ".join(f"{g:.2f}" for g in gains))

    if image.ndim == 2:
        out = reconstruct(atrous_decompose(image), gains)
    else:
        out = np.empty(image.shape, dtype=np.float64)
        for c in range(image.shape[2]):
            out[..., c] = reconstruct(atrous_decompose(image[..., c]), gains)

    return np.clip(out, 0.0, white_level).astype(np.float32)
