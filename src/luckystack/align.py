"""
Global frame registration by phase correlation.

Each selected frame is registered to the reference (the best-scored frame)
with a sub-pixel translation, optionally refined by a rotation/scale
estimate from the log-polar magnitude spectrum. Frames whose correlation
peak does not stand out from the background are excluded from stacking.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import numpy as np
from scipy import fft, ndimage
from skimage.filters import difference_of_gaussians, window
from skimage.registration import phase_cross_correlation
from skimage.transform import AffineTransform, warp, warp_polar

from .config import DEFAULT_WORKERS, ProcessingParams, RejectedFrame, RejectionReason
from .errors import AlignmentError, DecodeError, InvalidInputError, PipelineCancelled
from .io import FrameSource, to_float01
from .progress import CancellationToken, StageProgress, check_cancelled
from .quality import to_luminance

logger = logging.getLogger(__name__)

# Half-width of the neighbourhood excluded from the background statistics
PEAK_EXCLUSION = 2

# Prepared-image standard deviation below which there is nothing to correlate
MIN_SIGNAL = 1e-9


@dataclass(frozen=True)
class GlobalTransform:
    """
    Whole-frame registration of a frame relative to the reference.

    The frame is approximately the reference rotated by ``rotation`` degrees
    and scaled by ``scale`` about the image centre, then displaced by
    (dx, dy) pixels.
    """

    dx: float = 0.0
    dy: float = 0.0
    rotation: float = 0.0
    scale: float = 1.0
    confidence: float = math.inf

    @classmethod
    def identity(cls) -> GlobalTransform:
        return cls()

    @property
    def is_translation(self) -> bool:
        return self.rotation == 0.0 and self.scale == 1.0

    def inverse_matrix(self, shape: tuple[int, ...]) -> np.ndarray:
        """
        3x3 map from reference (x, y) to frame (x, y) coordinates.

        This is the inverse map ``skimage.transform.warp`` expects to bring
        the frame onto the reference grid.
        """
        height, width = shape[:2]
        cx, cy = (width - 1) / 2.0, (height - 1) / 2.0
        theta = math.radians(self.rotation)
        a = self.scale * math.cos(theta)
        b = self.scale * math.sin(theta)
        linear = np.array([[a, -b], [b, a]])
        offset = np.array([cx + self.dx, cy + self.dy]) - linear @ np.array([cx, cy])
        matrix = np.eye(3)
        matrix[:2, :2] = linear
        matrix[:2, 2] = offset
        return matrix


@dataclass
class AlignmentTransform:
    """Record of a frame's registration."""

    frame_index: int
    global_: GlobalTransform = field(default_factory=GlobalTransform)
    # Per-tile residual field, set by local alignment
    local: object | None = None
    success: bool = True
    error_message: str = ""
    reason: RejectionReason | None = None


@dataclass
class AlignmentResult:
    """Transforms for the selected frames, in selection order."""

    reference_index: int
    transforms: list[AlignmentTransform] = field(default_factory=list)
    rejected: list[RejectedFrame] = field(default_factory=list)

    @property
    def usable(self) -> list[AlignmentTransform]:
        return [t for t in self.transforms if t.success]

    @property
    def n_usable(self) -> int:
        return sum(1 for t in self.transforms if t.success)


def _parabolic_offset(minus: float, center: float, plus: float) -> float:
    """Vertex offset of the parabola through three equally spaced samples."""
    denom = minus - 2.0 * center + plus
    if denom >= 0.0:
        return 0.0
    offset = 0.5 * (minus - plus) / denom
    return float(np.clip(offset, -0.5, 0.5))


def _prepare(image: np.ndarray, apply_window: bool, highpass: float | None) -> np.ndarray:
    data = image.astype(np.float64)
    if highpass:
        data = difference_of_gaussians(data, 1.0, highpass)
    if not apply_window:
        return data - float(data.mean())
    taper = window("hann", data.shape)
    # Window-weighted mean, so the taper adds no component shared by both inputs
    return (data - float((data * taper).sum() / taper.sum())) * taper


def phase_correlate(
    reference: np.ndarray,
    moving: np.ndarray,
    apply_window: bool = True,
    highpass: float | None = None,
) -> tuple[float, float, float]:
    """
    Estimate the translation of ``moving`` relative to ``reference``.

    Parameters
    ----------
    reference, moving : np.ndarray
        2D images of identical shape.
    apply_window : bool, default True
        Taper both images with a Hann window before the FFT.
    highpass : float, optional
        Band-pass both images with a difference of Gaussians (sigmas 1 and
        ``highpass``) first. Small tiles need it: their mean level and
        large-scale gradient do not move with the content and would otherwise
        correlate at zero shift.

    Returns
    -------
    tuple[float, float, float]
        (dy, dx, confidence). ``moving`` is approximately ``reference``
        displaced by (dy, dx). ``confidence`` is the height of the
        correlation peak above the mean of the surface, in standard
        deviations of the surface away from the peak. It is 0 when either
        prepared image carries no signal.

    Notes
    -----
    The normalised cross-power spectrum F_mov * conj(F_ref) / |...| is
    inverse-transformed; its maximum sits at the displacement. Sub-pixel
    precision comes from a 3-point parabola fitted along each axis.
    """
    if reference.shape != moving.shape or reference.ndim != 2:
        raise InvalidInputError(
            f"phase_correlate needs two 2D images of equal shape, got {reference.shape} and {moving.shape}"
        )

    ref = _prepare(reference, apply_window, highpass)
    mov = _prepare(moving, apply_window, highpass)
    if ref.std() < MIN_SIGNAL or mov.std() < MIN_SIGNAL:
        return 0.0, 0.0, 0.0

    cross = fft.fft2(mov) * np.conj(fft.fft2(ref))
    magnitude = np.abs(cross)
    cross /= np.maximum(magnitude, 1e-12 * max(float(magnitude.max()), 1e-300))
    corr = fft.ifft2(cross).real

    height, width = corr.shape
    py, px = np.unravel_index(int(np.argmax(corr)), corr.shape)
    peak = float(corr[py, px])

    sub_y = _parabolic_offset(corr[(py - 1) % height, px], peak, corr[(py + 1) % height, px])
    sub_x = _parabolic_offset(corr[py, (px - 1) % width], peak, corr[py, (px + 1) % width])

    dy = py + sub_y
    dx = px + sub_x
    if dy > height / 2:
        dy -= height
    if dx > width / 2:
        dx -= width

    # Background: everything outside a small neighbourhood of the peak
    background = np.ones(corr.shape, dtype=bool)
    rows = np.arange(py - PEAK_EXCLUSION, py + PEAK_EXCLUSION + 1) % height
    cols = np.arange(px - PEAK_EXCLUSION, px + PEAK_EXCLUSION + 1) % width
    background[np.ix_(rows, cols)] = False
    values = corr[background]

    if values.size == 0:
        confidence = 0.0
    else:
        spread = float(values.std())
        height_above = peak - float(values.mean())
        if height_above <= 0.0:
            confidence = 0.0
        elif spread <= 1e-12:
            confidence = math.inf
        else:
            confidence = height_above / spread

    return float(dy), float(dx), float(confidence)


def warp_frame(
    frame: np.ndarray,
    transform: GlobalTransform,
    flow: np.ndarray | None = None,
    order: int = 1,
) -> np.ndarray:
    """
    Resample a frame onto the reference grid.

    Parameters
    ----------
    frame : np.ndarray
        (H, W) or (H, W, C) float frame.
    transform : GlobalTransform
        Global registration of the frame.
    flow : np.ndarray, optional
        (2, H, W) residual displacement (dy, dx) per output pixel, from local
        alignment. Composed with the global map so the frame is resampled
        only once.
    order : int, default 1
        Interpolation order (1 = bilinear).

    Returns
    -------
    np.ndarray
        Warped float32 frame, same shape as the input. Samples outside the
        source are taken from the nearest edge.
    """
    matrix = transform.inverse_matrix(frame.shape)

    if flow is not None:
        height, width = frame.shape[:2]
        rows, cols = np.mgrid[0:height, 0:width].astype(np.float64)
        ys = rows + flow[0]
        xs = cols + flow[1]
        coords = np.stack([
            matrix[1, 0] * xs + matrix[1, 1] * ys + matrix[1, 2],
            matrix[0, 0] * xs + matrix[0, 1] * ys + matrix[0, 2],
        ])
        del rows, cols, ys, xs
        if frame.ndim == 2:
            return ndimage.map_coordinates(frame, coords, order=order, mode="nearest").astype(np.float32)
        warped = np.empty(frame.shape, dtype=np.float32)
        for c in range(frame.shape[2]):
            warped[..., c] = ndimage.map_coordinates(frame[..., c], coords, order=order, mode="nearest")
        return warped

    if transform.is_translation and transform.dx == 0.0 and transform.dy == 0.0:
        return frame.astype(np.float32, copy=True)
    inverse_map = AffineTransform(matrix=matrix)

    if frame.ndim == 2:
        return warp(
            frame, inverse_map, order=order, mode="edge", preserve_range=True
        ).astype(np.float32)

    warped = np.empty(frame.shape, dtype=np.float32)
    for c in range(frame.shape[2]):
        warped[..., c] = warp(
            frame[..., c], inverse_map, order=order, mode="edge", preserve_range=True
        )
    return warped


def alignment_residual(
    reference: np.ndarray,
    moving: np.ndarray,
    transform: GlobalTransform,
    margin: float = 0.1,
) -> float:
    """
    Normalised RMS difference between the reference and the aligned frame.

    Computed over the central region (``margin`` trimmed per side) and
    divided by the reference's dynamic range.
    """
    aligned = warp_frame(moving, transform)
    height, width = reference.shape
    my, mx = int(height * margin), int(width * margin)
    diff = aligned[my:height - my, mx:width - mx] - reference[my:height - my, mx:width - mx]
    span = float(reference.max() - reference.min())
    if span <= 0.0 or diff.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(diff.astype(np.float64) ** 2))) / span


def _log_polar_spectrum(image: np.ndarray, radius: int) -> np.ndarray:
    # Band-pass first: the low-frequency lobe of a disc is rotation-symmetric
    # and would otherwise pin the estimate at zero rotation
    sigma = max(2.0, min(image.shape) / 16.0)
    data = difference_of_gaussians(image.astype(np.float64), 1.0, sigma)
    data *= window("hann", data.shape)
    magnitude = np.abs(fft.fftshift(fft.fft2(data)))
    center = (magnitude.shape[0] // 2, magnitude.shape[1] // 2)
    return warp_polar(
        magnitude, center=center, radius=radius, output_shape=(360, radius), scaling="log", order=1
    )


def estimate_rotation_scale(
    reference: np.ndarray,
    moving: np.ndarray,
) -> tuple[float, float]:
    """
    Estimate rotation (degrees) and scale of ``moving`` relative to ``reference``.

    Uses the translation-invariant FFT magnitude of the band-passed images
    resampled on a log-polar grid, where rotation and scale become shifts
    recovered by ``skimage.registration.phase_cross_correlation``.

    Returns
    -------
    tuple[float, float]
        (rotation, scale), rotation folded into [-90, 90). The magnitude
        spectrum cannot tell the sign convention apart, so
        ``register_global`` tries both signs.
    """
    radius = min(reference.shape) // 4
    if radius < 8:
        return 0.0, 1.0
    polar_ref = _log_polar_spectrum(reference, radius)
    polar_mov = _log_polar_spectrum(moving, radius)
    shifts, _, _ = phase_cross_correlation(
        polar_ref, polar_mov, upsample_factor=10, normalization=None
    )
    # The magnitude spectrum is point-symmetric: angles are known modulo 180
    angle = (float(shifts[0]) * 360.0 / polar_ref.shape[0] + 90.0) % 180.0 - 90.0
    klog = radius / math.log(radius)
    scale = math.exp(float(shifts[1]) / klog)
    return angle, scale


def estimate_polar_rotation(reference: np.ndarray, aligned: np.ndarray) -> float:
    """
    Rotation (degrees) of a translation-aligned frame about the image centre.

    Both images are resampled on a polar grid centred where
    ``GlobalTransform`` rotates, so a rotation becomes a shift along the
    angle axis. Unlike ``estimate_rotation_scale`` this needs the
    translation removed first, but it uses the detail of the disc itself
    rather than its spectrum.
    """
    radius = min(reference.shape) // 2 - 1
    if radius < 8:
        return 0.0
    polar_ref = warp_polar(reference.astype(np.float64), radius=radius, output_shape=(360, radius), order=1)
    polar_mov = warp_polar(aligned.astype(np.float64), radius=radius, output_shape=(360, radius), order=1)
    shifts, _, _ = phase_cross_correlation(polar_ref, polar_mov, upsample_factor=10)
    return float(shifts[0]) * 360.0 / polar_ref.shape[0]


def _refine_rotation_scale(
    reference: np.ndarray,
    moving: np.ndarray,
    translation: GlobalTransform,
    residual: float,
) -> tuple[GlobalTransform, float]:
    angle, scale = estimate_rotation_scale(reference, moving)
    polar_angle = estimate_polar_rotation(reference, warp_frame(moving, translation))
    candidates = {(a, s) for a in (angle, -angle) for s in (scale, 1.0 / scale)}
    candidates |= {(polar_angle, 1.0), (-polar_angle, 1.0)}

    best, best_residual = translation, residual
    for cand_angle, cand_scale in sorted(candidates):
        if abs(cand_angle) < 1e-3 and abs(cand_scale - 1.0) < 1e-4:
            continue
        rs_only = GlobalTransform(rotation=cand_angle, scale=cand_scale)
        derotated = warp_frame(moving, rs_only)
        dy, dx, confidence = phase_correlate(reference, derotated)
        # Translation measured on the de-rotated grid, mapped back to the frame
        theta = math.radians(cand_angle)
        a = cand_scale * math.cos(theta)
        b = cand_scale * math.sin(theta)
        candidate = GlobalTransform(
            dx=a * dx - b * dy,
            dy=b * dx + a * dy,
            rotation=cand_angle,
            scale=cand_scale,
            confidence=confidence,
        )
        cand_residual = alignment_residual(reference, moving, candidate)
        if cand_residual < best_residual:
            best, best_residual = candidate, cand_residual
    return best, best_residual


def register_global(
    reference: np.ndarray,
    moving: np.ndarray,
    min_correlation_ratio: float = 6.0,
    estimate_rotation: bool = False,
    residual_tolerance: float = 0.02,
) -> GlobalTransform:
    """
    Register a luminance frame to the reference luminance.

    Parameters
    ----------
    reference, moving : np.ndarray
        2D luminance planes of identical shape.
    min_correlation_ratio : float, default 6.0
        Minimum peak confidence (see ``phase_correlate``).
    estimate_rotation : bool, default False
        Attempt a rotation/scale refinement when the translation-only
        residual exceeds ``residual_tolerance``.
    residual_tolerance : float, default 0.02
        Normalised RMS residual threshold.

    Returns
    -------
    GlobalTransform

    Raises
    ------
    AlignmentError
        If the correlation peak is not distinct enough.
    """
    if reference.shape != moving.shape:
        raise AlignmentError(f"Shape mismatch: {moving.shape} vs reference {reference.shape}")

    dy, dx, confidence = phase_correlate(reference, moving)
    if confidence < min_correlation_ratio:
        raise AlignmentError(
            f"Low correlation confidence {confidence:.2f} < {min_correlation_ratio:.2f}"
        )
    transform = GlobalTransform(dx=dx, dy=dy, confidence=confidence)

    if estimate_rotation:
        residual = alignment_residual(reference, moving, transform)
        if residual > residual_tolerance:
            refined, refined_residual = _refine_rotation_scale(reference, moving, transform, residual)
            if refined is not transform:
                logger.debug(
                    "Rotation refinement: %.3f deg, scale %.4f (residual %.4f -> %.4f)",
                    refined.rotation,
                    refined.scale,
                    residual,
                    refined_residual,
                )
                transform = refined

    return transform


def load_luminance(source: FrameSource, index: int) -> np.ndarray:
    """Decode a frame and return its float32 luminance."""
    frame = source.decode(index)
    try:
        return to_luminance(to_float01(frame))
    except InvalidInputError as exc:
        raise DecodeError(index, exc.message, exc) from exc


def _align_single_frame(
    source: FrameSource,
    index: int,
    reference: np.ndarray,
    params: ProcessingParams,
    cancellation: CancellationToken | None,
) -> AlignmentTransform:
    check_cancelled(cancellation)
    try:
        luma = load_luminance(source, index)
        transform = register_global(
            reference,
            luma,
            min_correlation_ratio=params.min_correlation_ratio,
            estimate_rotation=params.estimate_rotation,
            residual_tolerance=params.residual_tolerance,
        )
    except DecodeError as exc:
        return AlignmentTransform(
            frame_index=index,
            success=False,
            error_message=exc.message,
            reason=RejectionReason.DECODE_FAILED,
        )
    except AlignmentError as exc:
        return AlignmentTransform(
            frame_index=index,
            success=False,
            error_message=exc.message,
            reason=RejectionReason.ALIGNMENT_FAILED,
        )
    return AlignmentTransform(frame_index=index, global_=transform)


def _select_reference(
    source: FrameSource,
    indices: list[int],
    rejected: list[RejectedFrame],
) -> tuple[int, np.ndarray]:
    for position, index in enumerate(indices):
        try:
            return position, load_luminance(source, index)
        except DecodeError as exc:
            logger.warning("Reference candidate unusable: %s", exc.message)
            rejected.append(RejectedFrame(index, RejectionReason.DECODE_FAILED, exc.message))
    raise AlignmentError("No selected frame could be decoded as reference")


def align_frames(
    source: FrameSource,
    indices: list[int],
    params: ProcessingParams,
    workers: int | None = None,
    progress: StageProgress | None = None,
    cancellation: CancellationToken | None = None,
) -> AlignmentResult:
    """
    Register every selected frame to the reference.

    Parameters
    ----------
    source : FrameSource
        Frame provider.
    indices : list[int]
        Selected frame indices, best first. The first decodable one is the
        reference.
    params : ProcessingParams
        Uses min_correlation_ratio, estimate_rotation, residual_tolerance
        and progress_interval.
    workers : int or None, default None
        Number of worker threads. None uses CPU count - 1.
    progress : callable, optional
        Called as ``progress(done, total)`` from the calling thread.
    cancellation : CancellationToken, optional
        Checked per frame.

    Returns
    -------
    AlignmentResult
        One transform per selected frame in selection order. Failed frames
        have ``success=False`` and a matching entry in ``rejected``.
    """
    if not indices:
        raise InvalidInputError("No frames to align")
    if workers is None:
        workers = DEFAULT_WORKERS

    rejected: list[RejectedFrame] = []
    ref_position, reference = _select_reference(source, indices, rejected)
    ref_index = indices[ref_position]
    candidates = indices[ref_position + 1:]
    total = len(candidates) + 1

    results: dict[int, AlignmentTransform] = {
        ref_index: AlignmentTransform(frame_index=ref_index, global_=GlobalTransform.identity())
    }

    logger.info(
        "Aligning %d frames to reference #%d (%d workers)", len(candidates), ref_index, workers
    )

    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = {
            executor.submit(_align_single_frame, source, index, reference, params, cancellation): index
            for index in candidates
        }
        done = 1
        for future in as_completed(futures):
            result = future.result()
            results[result.frame_index] = result
            done += 1
            if progress is not None and (done % params.progress_interval == 0 or done == total):
                progress(done, total)
    except PipelineCancelled:
        executor.shutdown(wait=True, cancel_futures=True)
        raise
    finally:
        executor.shutdown(wait=True)

    transforms = []
    for index in indices[ref_position:]:
        transform = results[index]
        transforms.append(transform)
        if not transform.success:
            rejected.append(RejectedFrame(index, transform.reason, transform.error_message))
            logger.warning("Frame %d excluded: %s", index, transform.error_message)

    result = AlignmentResult(reference_index=ref_index, transforms=transforms, rejected=rejected)
    logger.info(
        "Global alignment: %d/%d frames usable, %d excluded",
        result.n_usable,
        len(indices),
        len(rejected),
    )
    return result
