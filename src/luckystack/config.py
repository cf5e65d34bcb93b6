"""
Configuration and result dataclasses for the luckystack pipeline.

Processing parameters are immutable once built; presets for the usual
planetary, lunar and solar targets are provided as classmethods.
"""

from __future__ import annotations

import os
import statistics
from dataclasses import dataclass, field, replace
from enum import Enum

from .errors import InvalidInputError

# Default number of workers for parallel processing
DEFAULT_WORKERS = max(1, os.cpu_count() - 1) if os.cpu_count() else 4


class RejectionReason(Enum):
    """Reason codes for frame rejection."""

    DECODE_FAILED = "decode_failed"  # Source could not deliver the frame
    LOW_QUALITY_SCORE = "low_quality_score"  # Below the keep cut
    ALIGNMENT_FAILED = "alignment_failed"  # Correlation confidence too low


@dataclass
class RejectedFrame:
    """Record of a rejected frame with reason."""

    frame_index: int
    reason: RejectionReason
    detail: str = ""  # Optional additional info (e.g., score value)


@dataclass(frozen=True)
class Rect:
    """Axis-aligned integer rectangle (x, y, width, height)."""

    x: int
    y: int
    width: int
    height: int

    @classmethod
    def full(cls, width: int, height: int) -> Rect:
        return cls(0, 0, int(width), int(height))

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def center(self) -> tuple[float, float]:
        """Centre as (cx, cy)."""
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    def clip(self, width: int, height: int) -> Rect:
        """Clip to a width x height frame, keeping at least one pixel."""
        x = max(0, min(width - 1, int(self.x)))
        y = max(0, min(height - 1, int(self.y)))
        w = max(1, min(width - x, int(self.width)))
        h = max(1, min(height - y, int(self.height)))
        return Rect(x, y, w, h)

    def slices(self) -> tuple[slice, slice]:
        """Row/column slices for indexing an (H, W, ...) array."""
        return slice(self.y, self.y + self.height), slice(self.x, self.x + self.width)

    def __str__(self) -> str:
        return f"Rect(x={self.x}, y={self.y}, w={self.width}, h={self.height})"


@dataclass(frozen=True)
class FrameScore:
    """Quality metrics for a single analysed frame."""

    frame_index: int
    quality_score: float  # Normalised sharpness in [0, 1] (higher = sharper)
    roi: Rect  # Tracked subject bounding box
    raw_sharpness: float = 0.0  # Laplacian variance before normalisation


@dataclass(frozen=True)
class QualityStats:
    """Summary of normalised quality scores."""

    min: float
    max: float
    mean: float
    median: float


@dataclass
class AnalysisResult:
    """
    Result of the quality analysis pass.

    ``scores`` is sorted by quality_score descending, ties broken by
    ascending frame_index.
    """

    total_frames: int
    scores: list[FrameScore] = field(default_factory=list)
    sample_step: int = 1
    decode_failures: int = 0

    @property
    def indices(self) -> list[int]:
        return [s.frame_index for s in self.scores]

    def top_fraction(self, fraction: float) -> list[FrameScore]:
        """Best ``fraction`` of the analysed frames (at least one)."""
        if not self.scores:
            return []
        count = max(1, min(len(self.scores), int(round(len(self.scores) * fraction))))
        return self.scores[:count]

    def top_n(self, n: int) -> list[FrameScore]:
        """Best ``n`` analysed frames (at least one)."""
        if not self.scores:
            return []
        return self.scores[: max(1, min(n, len(self.scores)))]

    @property
    def stats(self) -> QualityStats:
        if not self.scores:
            return QualityStats(min=0.0, max=0.0, mean=0.0, median=0.0)
        values = [s.quality_score for s in self.scores]
        return QualityStats(
            min=min(values),
            max=max(values),
            mean=statistics.fmean(values),
            median=statistics.median(values),
        )

    def __str__(self) -> str:
        return (
            f"AnalysisResult(analyzed={len(self.scores)}, total={self.total_frames}, "
            f"step={self.sample_step}, decode_failures={self.decode_failures})"
        )


WAVELET_PRESETS: dict[str, tuple[float, float, float, float, float]] = {
    "aggressive": (0.6, 2.0, 2.5, 2.2, 1.5),
    "moderate": (0.8, 1.5, 2.0, 1.8, 1.2),
    "conservative": (0.5, 1.2, 1.5, 1.3, 1.0),
    "solar": (0.7, 1.8, 2.2, 1.5, 1.0),
    "lunar": (0.6, 1.3, 1.8, 1.5, 1.2),
    "none": (1.0, 1.0, 1.0, 1.0, 1.0),
}


@dataclass(frozen=True)
class WaveletLayers:
    """
    Per-band gains for wavelet sharpening, finest to coarsest.

    A gain above 1 boosts the band, below 1 attenuates it.
    """

    layer0: float = 0.8
    """Finest details (1-2 px), mostly noise."""

    layer1: float = 1.5
    """Fine details (2-4 px), surface texture."""

    layer2: float = 2.0
    """Medium details (4-8 px), cloud bands."""

    layer3: float = 1.8
    """Coarse details (8-16 px), major features."""

    layer4: float = 1.2
    """Very coarse (16-32 px), limb and large shadows."""

    @property
    def gains(self) -> tuple[float, float, float, float, float]:
        return (self.layer0, self.layer1, self.layer2, self.layer3, self.layer4)

    @classmethod
    def from_gains(cls, gains) -> WaveletLayers:
        gains = [float(g) for g in gains]
        if len(gains) != 5:
            raise InvalidInputError(f"Expected 5 wavelet gains, got {len(gains)}")
        return cls(*gains)

    @classmethod
    def from_preset(cls, name: str) -> WaveletLayers:
        try:
            return cls(*WAVELET_PRESETS[name])
        except KeyError:
            raise InvalidInputError(
                f"Unknown wavelet preset '{name}' (choose from {', '.join(WAVELET_PRESETS)})"
            ) from None

    @classmethod
    def aggressive(cls) -> WaveletLayers:
        """Good seeing."""
        return cls.from_preset("aggressive")

    @classmethod
    def moderate(cls) -> WaveletLayers:
        return cls.from_preset("moderate")

    @classmethod
    def conservative(cls) -> WaveletLayers:
        """Noisy data."""
        return cls.from_preset("conservative")

    @classmethod
    def solar(cls) -> WaveletLayers:
        return cls.from_preset("solar")

    @classmethod
    def lunar(cls) -> WaveletLayers:
        return cls.from_preset("lunar")

    def validate(self) -> None:
        for i, gain in enumerate(self.gains):
            if not gain >= 0.0:
                raise InvalidInputError(f"wavelet layer{i} gain must be >= 0, got {gain}")


@dataclass(frozen=True)
class ProcessingParams:
    """
    Configuration for the stacking pipeline.

    All parameters are explicitly documented and have sensible defaults.
    """

    # --- Frame selection ---
    keep_percentage: float = 0.25
    """Fraction of the video's frames to keep (0.0-1.0)."""

    min_frames: int = 50
    """Minimum number of frames to stack."""

    max_frames: int = 500
    """Maximum number of frames to stack."""

    sample_step: int = 2
    """Analyse every Nth frame of the source."""

    # --- Quality analysis ---
    roi_max_jump: float = 0.1
    """Largest accepted ROI centre move, as a fraction of the frame's larger
    side per sample step. Larger jumps fall back to the previous ROI."""

    roi_smoothing: float = 0.5
    """Weight of the previous ROI when blending with a new detection."""

    # --- Registration ---
    min_correlation_ratio: float = 6.0
    """Phase-correlation peak height over background, in background sigmas,
    below which a frame (or tile) is considered unaligned."""

    min_usable_frames: int = 2
    """Abort when fewer frames survive alignment."""

    estimate_rotation: bool = False
    """Try a rotation/scale refinement when translation leaves a residual."""

    residual_tolerance: float = 0.02
    """Normalised RMS residual above which rotation/scale is attempted."""

    enable_local_align: bool = True
    """Tile-based local alignment. Slower but better for large discs."""

    tile_size: int = 32
    """Tile size for local alignment (power of two: 16, 32, 64...)."""

    local_search_radius: float | None = None
    """Largest accepted per-tile residual in pixels. None = tile_size / 4."""

    # --- Stacking ---
    sigma_clip_threshold: float = 2.5
    """Reject samples beyond this many standard deviations."""

    sigma_iterations: int = 2
    """Number of sigma-clipping iterations (0 = plain mean)."""

    # --- Sharpening ---
    wavelet_layers: WaveletLayers = field(default_factory=WaveletLayers)
    """Wavelet sharpening layer strengths."""

    # --- Parallelism / reporting ---
    workers: int | None = None
    """Worker threads for analysis, alignment and stacking. None = CPU count - 1."""

    progress_interval: int = 10
    """Report progress every N frames inside long stages."""

    @property
    def search_radius(self) -> float:
        if self.local_search_radius is None:
            return self.tile_size / 4.0
        return float(self.local_search_radius)

    def with_changes(self, **changes) -> ProcessingParams:
        """Return a copy with some fields replaced."""
        return replace(self, **changes)

    def validate(self) -> None:
        """Validate configuration parameters."""
        if not 0.0 <= self.keep_percentage <= 1.0:
            raise InvalidInputError(f"keep_percentage must be in [0, 1], got {self.keep_percentage}")
        if self.min_frames < 1:
            raise InvalidInputError(f"min_frames must be >= 1, got {self.min_frames}")
        if self.min_frames > self.max_frames:
            raise InvalidInputError(
                f"min_frames ({self.min_frames}) must not exceed max_frames ({self.max_frames})"
            )
        if self.sample_step < 1:
            raise InvalidInputError(f"sample_step must be >= 1, got {self.sample_step}")
        if self.tile_size < 8 or self.tile_size & (self.tile_size - 1):
            raise InvalidInputError(f"tile_size must be a power of two >= 8, got {self.tile_size}")
        if not self.sigma_clip_threshold > 0:
            raise InvalidInputError(
                f"sigma_clip_threshold must be positive, got {self.sigma_clip_threshold}"
            )
        if self.sigma_iterations < 0:
            raise InvalidInputError(f"sigma_iterations must be >= 0, got {self.sigma_iterations}")
        if self.min_usable_frames < 1:
            raise InvalidInputError(f"min_usable_frames must be >= 1, got {self.min_usable_frames}")
        if not 0.0 <= self.roi_smoothing < 1.0:
            raise InvalidInputError(f"roi_smoothing must be in [0, 1), got {self.roi_smoothing}")
        if self.roi_max_jump <= 0:
            raise InvalidInputError(f"roi_max_jump must be positive, got {self.roi_max_jump}")
        if self.min_correlation_ratio < 0:
            raise InvalidInputError(
                f"min_correlation_ratio must be >= 0, got {self.min_correlation_ratio}"
            )
        if self.local_search_radius is not None and self.local_search_radius <= 0:
            raise InvalidInputError(
                f"local_search_radius must be positive, got {self.local_search_radius}"
            )
        if self.workers is not None and self.workers < 1:
            raise InvalidInputError(f"workers must be >= 1, got {self.workers}")
        if self.progress_interval < 1:
            raise InvalidInputError(f"progress_interval must be >= 1, got {self.progress_interval}")
        self.wavelet_layers.validate()

    # --- Target presets ---

    @classmethod
    def _preset(cls, fields: dict, overrides: dict) -> ProcessingParams:
        # Overrides win over the preset's own values
        return cls(**{**fields, **overrides})

    @classmethod
    def for_jupiter_saturn(cls, **overrides) -> ProcessingParams:
        """Fast-rotating gas giants."""
        return cls._preset(
            dict(keep_percentage=0.25, tile_size=32, wavelet_layers=WaveletLayers.aggressive()),
            overrides,
        )

    @classmethod
    def for_mars(cls, **overrides) -> ProcessingParams:
        return cls._preset(
            dict(keep_percentage=0.30, tile_size=32, wavelet_layers=WaveletLayers.moderate()),
            overrides,
        )

    @classmethod
    def for_moon(cls, **overrides) -> ProcessingParams:
        """Large field, strong local distortion."""
        return cls._preset(
            dict(keep_percentage=0.15, tile_size=64, wavelet_layers=WaveletLayers.conservative()),
            overrides,
        )

    @classmethod
    def for_sun(cls, **overrides) -> ProcessingParams:
        return cls._preset(
            dict(keep_percentage=0.20, tile_size=32, wavelet_layers=WaveletLayers.solar()),
            overrides,
        )


TARGET_PRESETS = {
    "jupiter": ProcessingParams.for_jupiter_saturn,
    "saturn": ProcessingParams.for_jupiter_saturn,
    "mars": ProcessingParams.for_mars,
    "moon": ProcessingParams.for_moon,
    "sun": ProcessingParams.for_sun,
}
