"""
Frame quality assessment and frame selection.

Provides fast, explainable, deterministic quality metrics for lucky imaging:
the subject is located by a brightness threshold, tracked from frame to
frame, and scored by the variance of its Laplacian response.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np
from scipy import ndimage
from skimage.filters import threshold_otsu

from .config import (
    DEFAULT_WORKERS,
    AnalysisResult,
    FrameScore,
    ProcessingParams,
    Rect,
    RejectedFrame,
    RejectionReason,
)
from .errors import DecodeError, InvalidInputError
from .io import FrameSource, to_float01
from .progress import CancellationToken, StageProgress, check_cancelled
from .utils import round_half_up

logger = logging.getLogger(__name__)

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)

# Padding added around the detected blob, per side, as a fraction of its size
ROI_PADDING = 0.10


def to_luminance(frame: np.ndarray) -> np.ndarray:
    """
    Convert a frame to a float32 luminance plane.

    Parameters
    ----------
    frame : np.ndarray
        (H, W) mono or (H, W, 3) RGB frame.

    Returns
    -------
    np.ndarray
        (H, W) float32 luminance.
    """
    if frame.ndim == 2:
        return frame.astype(np.float32, copy=False)
    return np.tensordot(frame[..., :3], LUMA_WEIGHTS, axes=([-1], [0])).astype(np.float32)


def detect_roi(luma: np.ndarray, padding: float = ROI_PADDING) -> Rect:
    """
    Locate the subject as the largest bright blob.

    Parameters
    ----------
    luma : np.ndarray
        Luminance plane.
    padding : float, default 0.10
        Margin added on each side, as a fraction of the blob size.

    Returns
    -------
    Rect
        Padded bounding box of the largest connected component above the
        Otsu threshold, clipped to the frame. The full frame when the image
        is flat or nothing stands out.
    """
    height, width = luma.shape
    full = Rect.full(width, height)

    if float(luma.max()) - float(luma.min()) < 1e-6:
        return full

    threshold = threshold_otsu(luma)
    mask = luma > threshold
    labeled, n_features = ndimage.label(mask)
    if n_features == 0:
        return full

    sizes = ndimage.sum_labels(mask, labeled, index=np.arange(1, n_features + 1))
    largest = int(np.argmax(sizes))
    rows, cols = ndimage.find_objects(labeled)[largest]

    blob_h = rows.stop - rows.start
    blob_w = cols.stop - cols.start
    pad_y = int(math.ceil(blob_h * padding))
    pad_x = int(math.ceil(blob_w * padding))

    x0 = max(0, cols.start - pad_x)
    y0 = max(0, rows.start - pad_y)
    x1 = min(width, cols.stop + pad_x)
    y1 = min(height, rows.stop + pad_y)
    return Rect(x0, y0, x1 - x0, y1 - y0)


def track_roi(
    detected: Rect,
    prior: Rect | None,
    frame_shape: tuple[int, int],
    sample_step: int = 1,
    max_jump: float = 0.1,
    smoothing: float = 0.5,
) -> tuple[Rect, bool]:
    """
    Smooth a detected ROI against the previous frame's ROI.

    Parameters
    ----------
    detected : Rect
        ROI found in the current frame.
    prior : Rect or None
        ROI of the previously analysed frame.
    frame_shape : tuple[int, int]
        (H, W) of the frame.
    sample_step : int, default 1
        Distance in frames between the two analysed frames.
    max_jump : float, default 0.1
        Largest accepted centre motion as a fraction of max(H, W), per step.
    smoothing : float, default 0.5
        Weight of ``prior`` in the blend.

    Returns
    -------
    tuple[Rect, bool]
        (roi, rejected). ``rejected`` is True when the motion was too large
        and the prior ROI was kept.

    Notes
    -----
    A full-frame prior means nothing was tracked yet; the detection is then
    taken as-is.
    """
    height, width = frame_shape
    if prior is None or prior.area >= width * height:
        return detected, False

    (pcx, pcy), (dcx, dcy) = prior.center, detected.center
    jump = math.hypot(dcx - pcx, dcy - pcy)
    limit = max_jump * max(height, width) * sample_step
    if jump > limit:
        return prior, True

    w_new = 1.0 - smoothing

    def blend(a: int, b: int) -> int:
        return round_half_up(smoothing * a + w_new * b)

    roi = Rect(
        blend(prior.x, detected.x),
        blend(prior.y, detected.y),
        blend(prior.width, detected.width),
        blend(prior.height, detected.height),
    )
    return roi.clip(width, height), False


def laplacian_variance(luma: np.ndarray, roi: Rect | None = None) -> float:
    """
    Sharpness statistic: variance of the Laplacian over the ROI.

    Returns 0.0 for regions smaller than 3x3.
    """
    region = luma if roi is None else luma[roi.slices()]
    if min(region.shape) < 3:
        return 0.0
    response = ndimage.laplace(region.astype(np.float64))
    return float(response.var())


def score_frame(
    frame: np.ndarray,
    index: int,
    prior_roi: Rect | None = None,
    sample_step: int = 1,
    max_jump: float = 0.1,
    smoothing: float = 0.5,
) -> FrameScore:
    """
    Score a single frame.

    The returned ``quality_score`` is the raw sharpness clipped to [0, 1];
    ``normalize_scores`` rescales a whole pass once all raw values are known.
    """
    luma = to_luminance(to_float01(frame))
    roi, _ = track_roi(detect_roi(luma), prior_roi, luma.shape, sample_step, max_jump, smoothing)
    raw = laplacian_variance(luma, roi)
    return FrameScore(
        frame_index=index,
        quality_score=min(1.0, max(0.0, raw)),
        roi=roi,
        raw_sharpness=raw,
    )


def normalize_scores(scores: list[FrameScore]) -> list[FrameScore]:
    """
    Min/max-normalise raw sharpness to [0, 1] and sort best first.

    Ties are broken by ascending frame index. When every frame has the same
    sharpness they all score 1.0.
    """
    if not scores:
        return []
    raw = np.array([s.raw_sharpness for s in scores], dtype=np.float64)
    lo, hi = float(raw.min()), float(raw.max())
    span = hi - lo

    normalized = []
    for s in scores:
        value = 1.0 if span <= 0.0 else (s.raw_sharpness - lo) / span
        normalized.append(
            FrameScore(
                frame_index=s.frame_index,
                quality_score=min(1.0, max(0.0, value)),
                roi=s.roi,
                raw_sharpness=s.raw_sharpness,
            )
        )
    normalized.sort(key=lambda s: (-s.quality_score, s.frame_index))
    return normalized


def _decode_luma(
    source: FrameSource,
    index: int,
    cancellation: CancellationToken | None,
) -> tuple[int, np.ndarray | None, Rect | None]:
    check_cancelled(cancellation)
    try:
        frame = source.decode(index)
        try:
            frame = to_float01(frame)
        except InvalidInputError as exc:
            raise DecodeError(index, exc.message, exc) from exc
        luma = to_luminance(frame)
    except DecodeError as exc:
        logger.warning("Skipping frame: %s", exc.message)
        return index, None, None
    return index, luma, detect_roi(luma)


def analyze_frames(
    source: FrameSource,
    sample_step: int = 1,
    roi_max_jump: float = 0.1,
    roi_smoothing: float = 0.5,
    workers: int | None = None,
    progress: StageProgress | None = None,
    progress_interval: int = 10,
    cancellation: CancellationToken | None = None,
) -> AnalysisResult:
    """
    Score every ``sample_step``-th frame of a source.

    Parameters
    ----------
    source : FrameSource
        Frames to analyse.
    sample_step : int, default 1
        Analyse frames 0, step, 2*step, ...
    roi_max_jump, roi_smoothing : float
        ROI tracking parameters (see ``track_roi``).
    workers : int or None, default None
        Number of worker threads. None uses CPU count - 1.
    progress : callable, optional
        Called as ``progress(done, total)`` from the calling thread.
    progress_interval : int, default 10
        Report every N analysed frames.
    cancellation : CancellationToken, optional
        Checked per frame.

    Returns
    -------
    AnalysisResult
        Normalised scores sorted best first.

    Raises
    ------
    InvalidInputError
        If the source is missing or empty, or ``sample_step < 1``.
    PipelineCancelled
        If cancellation was requested.

    Notes
    -----
    Frames are processed in batches of ``2 * workers``: decoding, luminance
    and blob detection run in the pool; ROI tracking then runs in frame
    order; sharpness runs in the pool again. Only one batch of luminance
    planes is held at a time.
    """
    if source is None:
        raise InvalidInputError("No frame source given")
    if sample_step < 1:
        raise InvalidInputError(f"sample_step must be >= 1, got {sample_step}")
    total = int(source.total_frames())
    if total <= 0:
        raise InvalidInputError("Frame source is empty")

    if workers is None:
        workers = DEFAULT_WORKERS

    indices = list(range(0, total, sample_step))
    n_sampled = len(indices)
    batch_size = max(1, 2 * workers)

    raw_scores: list[FrameScore] = []
    failures = 0
    roi_rejections = 0
    prior_roi: Rect | None = None
    done = 0
    last_reported = 0

    logger.info(
        "Analyzing %d/%d frames (step %d, %d workers)", n_sampled, total, sample_step, workers
    )

    with ThreadPoolExecutor(max_workers=workers) as executor:
        for start in range(0, n_sampled, batch_size):
            check_cancelled(cancellation)
            batch = indices[start:start + batch_size]
            decoded = list(executor.map(lambda i: _decode_luma(source, i, cancellation), batch))

            tracked = []
            for index, luma, detected in decoded:
                if luma is None:
                    failures += 1
                    continue
                roi, rejected = track_roi(
                    detected, prior_roi, luma.shape, sample_step, roi_max_jump, roi_smoothing
                )
                if rejected:
                    roi_rejections += 1
                    logger.debug("Frame %d: ROI jump rejected, keeping %s", index, roi)
                prior_roi = roi
                tracked.append((index, luma, roi))
            del decoded

            sharpness = executor.map(lambda item: laplacian_variance(item[1], item[2]), tracked)
            for (index, _, roi), raw in zip(tracked, sharpness):
                raw_scores.append(
                    FrameScore(
                        frame_index=index,
                        quality_score=0.0,
                        roi=roi,
                        raw_sharpness=raw,
                    )
                )
            del tracked

            done += len(batch)
            if progress is not None and (
                done - last_reported >= progress_interval or done == n_sampled
            ):
                progress(done, n_sampled)
                last_reported = done

    scores = normalize_scores(raw_scores)
    if failures:
        logger.warning("Failed to decode %d of %d sampled frames", failures, n_sampled)
    if roi_rejections:
        logger.info("ROI tracking rejected %d jumps", roi_rejections)
    if scores:
        logger.info(
            "Analyzed %d frames. Best: #%d (%.3g), Worst: #%d (%.3g)",
            len(scores),
            scores[0].frame_index,
            scores[0].raw_sharpness,
            scores[-1].frame_index,
            scores[-1].raw_sharpness,
        )

    return AnalysisResult(
        total_frames=total,
        scores=scores,
        sample_step=sample_step,
        decode_failures=failures,
    )


@dataclass
class SelectionResult:
    """Frames kept for stacking (best first) and the ones left out."""

    selected: list[FrameScore] = field(default_factory=list)
    rejected: list[RejectedFrame] = field(default_factory=list)
    warning: str | None = None

    @property
    def indices(self) -> list[int]:
        return [s.frame_index for s in self.selected]

    def __len__(self) -> int:
        return len(self.selected)


def target_frame_count(total_frames: int, params: ProcessingParams) -> int:
    """``clamp(round(total_frames * keep_percentage), min_frames, max_frames)``."""
    n = round_half_up(total_frames * params.keep_percentage)
    return max(params.min_frames, min(params.max_frames, n))


def select_frames(analysis: AnalysisResult, params: ProcessingParams) -> SelectionResult:
    """
    Select the best frames for stacking.

    Parameters
    ----------
    analysis : AnalysisResult
        Scores sorted best first.
    params : ProcessingParams
        Uses keep_percentage, min_frames and max_frames.

    Returns
    -------
    SelectionResult
        Top-n scores where ``n`` is the clamped target count, never more
        than were analysed. When fewer than ``min_frames`` frames were
        analysed, all are selected and ``warning`` says so.
    """
    available = len(analysis.scores)
    target = target_frame_count(analysis.total_frames, params)
    warning = None

    if available < params.min_frames:
        n_keep = available
        warning = (
            f"Only {available} frames analysed, fewer than min_frames={params.min_frames}; "
            "using all of them"
        )
        logger.warning(warning)
    else:
        n_keep = min(target, available)

    selected = analysis.scores[:n_keep]
    rejected = [
        RejectedFrame(
            frame_index=s.frame_index,
            reason=RejectionReason.LOW_QUALITY_SCORE,
            detail=f"score={s.quality_score:.4f}",
        )
        for s in analysis.scores[n_keep:]
    ]

    logger.info(
        "Selected %d/%d analysed frames (%.1f%%), rejected %d",
        n_keep,
        available,
        100 * n_keep / available if available > 0 else 0,
        len(rejected),
    )

    return SelectionResult(selected=selected, rejected=rejected, warning=warning)
