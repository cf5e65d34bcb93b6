"""
luckystack - Lucky-imaging stacking pipeline.

Selects the sharpest frames of a turbulence-degraded planetary, lunar or
solar video, aligns them globally and per tile, combines them with
streaming sigma clipping and sharpens the result with à trous wavelets.

Example
-------
>>> from luckystack import ProcessingParams, open_source, process_video
>>> source = open_source("jupiter.avi")
>>> result = process_video(source, ProcessingParams.for_jupiter_saturn())
>>> if result.ok:
...     write_image("jupiter.tif", result.image)

Example (analysis only)
-----------------------
>>> outcome = analyze_frames_safe(open_source("moon.mp4"), sample_step=4)
>>> print(outcome.analysis.stats)
"""

from .config import (
    TARGET_PRESETS,
    WAVELET_PRESETS,
    AnalysisResult,
    FrameScore,
    ProcessingParams,
    QualityStats,
    Rect,
    RejectedFrame,
    RejectionReason,
    WaveletLayers,
)
from .errors import (
    AlignmentError,
    DecodeError,
    ErrorKind,
    InsufficientFramesError,
    InvalidInputError,
    LuckyStackError,
    NumericError,
    PipelineCancelled,
)
from .utils import __version__, __version_info__, get_version_banner

# Primary entry points
from .pipeline import (
    AnalysisOutcome,
    LuckyStacker,
    Outcome,
    PipelineResult,
    PipelineStage,
    analyze_frames_safe,
    process_video,
)
from .progress import CancellationToken, ProgressReporter, ProgressSink

# I/O
from .io import (
    ArrayFrameSource,
    FitsSequenceSource,
    FrameSource,
    ImageSequenceSource,
    VideoFileSource,
    open_source,
    to_float01,
    write_fits,
    write_image,
)

# Quality assessment and selection
from .quality import (
    SelectionResult,
    analyze_frames,
    detect_roi,
    laplacian_variance,
    score_frame,
    select_frames,
    to_luminance,
    track_roi,
)

# Alignment
from .align import (
    AlignmentResult,
    AlignmentTransform,
    GlobalTransform,
    align_frames,
    estimate_polar_rotation,
    estimate_rotation_scale,
    phase_correlate,
    register_global,
    warp_frame,
)
from .local_align import (
    LocalField,
    TileGrid,
    align_local,
    build_tile_grid,
    dense_field,
    estimate_local_field,
)

# Stacking
from .stack import StackAccumulator, StackStatistics, mean_stack, row_bands, sigma_clip_stack

# Sharpening
from .wavelet import WaveletDecomposition, atrous_decompose, reconstruct, sharpen

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Config
    "ProcessingParams",
    "WaveletLayers",
    "TARGET_PRESETS",
    "WAVELET_PRESETS",
    "Rect",
    "FrameScore",
    "AnalysisResult",
    "QualityStats",
    "RejectedFrame",
    "RejectionReason",
    # Errors
    "ErrorKind",
    "LuckyStackError",
    "InvalidInputError",
    "DecodeError",
    "AlignmentError",
    "InsufficientFramesError",
    "NumericError",
    "PipelineCancelled",
    # Pipeline
    "LuckyStacker",
    "PipelineResult",
    "PipelineStage",
    "AnalysisOutcome",
    "Outcome",
    "analyze_frames_safe",
    "process_video",
    "CancellationToken",
    "ProgressReporter",
    "ProgressSink",
    # I/O
    "FrameSource",
    "ArrayFrameSource",
    "ImageSequenceSource",
    "FitsSequenceSource",
    "VideoFileSource",
    "open_source",
    "to_float01",
    "write_image",
    "write_fits",
    # Quality
    "to_luminance",
    "detect_roi",
    "track_roi",
    "laplacian_variance",
    "score_frame",
    "analyze_frames",
    "select_frames",
    "SelectionResult",
    # Alignment
    "GlobalTransform",
    "AlignmentTransform",
    "AlignmentResult",
    "phase_correlate",
    "estimate_rotation_scale",
    "estimate_polar_rotation",
    "register_global",
    "align_frames",
    "warp_frame",
    "TileGrid",
    "LocalField",
    "build_tile_grid",
    "estimate_local_field",
    "dense_field",
    "align_local",
    # Stacking
    "StackAccumulator",
    "StackStatistics",
    "row_bands",
    "sigma_clip_stack",
    "mean_stack",
    # Sharpening
    "WaveletDecomposition",
    "atrous_decompose",
    "reconstruct",
    "sharpen",
]
