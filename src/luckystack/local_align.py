"""
Tile-based local alignment.

After global registration, residual atmospheric distortion varies across
the disc. Each frame is split into tiles that are phase-correlated against
the reference independently; the per-tile residuals are then interpolated
into a smooth dense displacement field so the final warp has no seams.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace

import numpy as np
from scipy import ndimage

from .align import AlignmentResult, AlignmentTransform, load_luminance, phase_correlate, warp_frame
from .config import DEFAULT_WORKERS, ProcessingParams, Rect, RejectedFrame, RejectionReason
from .errors import DecodeError, PipelineCancelled
from .io import FrameSource
from .progress import CancellationToken, StageProgress, check_cancelled

logger = logging.getLogger(__name__)

# Tiles smaller than this (after clipping at the frame edge) are not correlated
MIN_TILE_SIDE = 8

# Luminance standard deviation below which a tile is considered featureless
MIN_TILE_CONTRAST = 1e-3

# Coarse band-pass sigma per tile side; removes the tile's mean level and
# limb gradient, which do not move with the detail
TILE_HIGHPASS = 1.0 / 8.0


@dataclass(frozen=True)
class TileGrid:
    """Non-overlapping tiles covering a frame, starting at (0, 0)."""

    height: int
    width: int
    tile_size: int

    @property
    def n_rows(self) -> int:
        return math.ceil(self.height / self.tile_size)

    @property
    def n_cols(self) -> int:
        return math.ceil(self.width / self.tile_size)

    @property
    def shape(self) -> tuple[int, int]:
        return self.n_rows, self.n_cols

    def tile(self, row: int, col: int) -> Rect:
        """Tile (row, col), clipped to the frame."""
        x = col * self.tile_size
        y = row * self.tile_size
        return Rect(x, y, min(self.tile_size, self.width - x), min(self.tile_size, self.height - y))

    def centers_y(self) -> np.ndarray:
        return np.array([self.tile(r, 0).center[1] - 0.5 for r in range(self.n_rows)])

    def centers_x(self) -> np.ndarray:
        return np.array([self.tile(0, c).center[0] - 0.5 for c in range(self.n_cols)])


def build_tile_grid(shape: tuple[int, ...], tile_size: int) -> TileGrid:
    """Tile grid for a frame of the given (H, W[, C]) shape."""
    height, width = shape[:2]
    return TileGrid(height=int(height), width=int(width), tile_size=int(tile_size))


@dataclass
class LocalField:
    """
    Per-tile residual displacement of a globally warped frame.

    ``dy``/``dx`` hold the residual of each tile (zero where the tile
    inherited the global offset), ``confidence`` the correlation confidence
    and ``inherited`` flags tiles that were not trusted.
    """

    grid: TileGrid
    dy: np.ndarray
    dx: np.ndarray
    confidence: np.ndarray
    inherited: np.ndarray

    @property
    def n_tiles(self) -> int:
        return int(self.inherited.size)

    @property
    def n_inherited(self) -> int:
        return int(self.inherited.sum())

    def displacements(self) -> dict[tuple[int, int], tuple[float, float]]:
        """Accepted tile residuals keyed by (row, col), as (dy, dx)."""
        return {
            (int(r), int(c)): (float(self.dy[r, c]), float(self.dx[r, c]))
            for r, c in zip(*np.nonzero(~self.inherited))
        }

    def max_displacement(self) -> float:
        if self.n_tiles == 0:
            return 0.0
        return float(np.hypot(self.dy, self.dx).max())


def estimate_local_field(
    reference: np.ndarray,
    warped: np.ndarray,
    tile_size: int,
    min_correlation_ratio: float = 6.0,
    search_radius: float | None = None,
    cancellation: CancellationToken | None = None,
) -> LocalField:
    """
    Measure the residual displacement of each tile.

    Parameters
    ----------
    reference : np.ndarray
        Reference luminance.
    warped : np.ndarray
        Luminance of the frame after global alignment.
    tile_size : int
        Tile side in pixels.
    min_correlation_ratio : float, default 6.0
        Minimum correlation confidence for a tile to be trusted.
    search_radius : float, optional
        Largest accepted residual in pixels. Defaults to ``tile_size / 4``.
    cancellation : CancellationToken, optional
        Checked per tile.

    Returns
    -------
    LocalField
        Untrusted tiles (low confidence, too large a residual, featureless
        or too small) keep a zero residual and are flagged as inherited.
    """
    if search_radius is None:
        search_radius = tile_size / 4.0
    grid = build_tile_grid(reference.shape, tile_size)
    dy = np.zeros(grid.shape, dtype=np.float64)
    dx = np.zeros(grid.shape, dtype=np.float64)
    confidence = np.zeros(grid.shape, dtype=np.float64)
    inherited = np.ones(grid.shape, dtype=bool)

    for row in range(grid.n_rows):
        for col in range(grid.n_cols):
            check_cancelled(cancellation)
            rect = grid.tile(row, col)
            if min(rect.width, rect.height) < MIN_TILE_SIDE:
                continue
            ref_tile = reference[rect.slices()]
            mov_tile = warped[rect.slices()]
            if ref_tile.std() < MIN_TILE_CONTRAST or mov_tile.std() < MIN_TILE_CONTRAST:
                continue

            highpass = max(2.0, min(rect.width, rect.height) * TILE_HIGHPASS)
            tile_dy, tile_dx, tile_conf = phase_correlate(ref_tile, mov_tile, highpass=highpass)
            confidence[row, col] = tile_conf
            if tile_conf < min_correlation_ratio:
                logger.debug("Tile (%d, %d): low confidence %.2f", row, col, tile_conf)
                continue
            if math.hypot(tile_dy, tile_dx) > search_radius:
                logger.debug(
                    "Tile (%d, %d): residual (%.2f, %.2f) beyond search radius",
                    row, col, tile_dy, tile_dx,
                )
                continue
            dy[row, col] = tile_dy
            dx[row, col] = tile_dx
            inherited[row, col] = False

    return LocalField(grid=grid, dy=dy, dx=dx, confidence=confidence, inherited=inherited)


def dense_field(field: LocalField) -> np.ndarray:
    """
    Interpolate the tile residuals into a per-pixel field.

    Tile centres are the control points; values in between are bilinear,
    and pixels beyond the outermost centres take the nearest value.

    Returns
    -------
    np.ndarray
        (2, H, W) float32 array of (dy, dx).
    """
    grid = field.grid
    rows = np.arange(grid.height, dtype=np.float64)
    cols = np.arange(grid.width, dtype=np.float64)
    # Fractional tile coordinates of every pixel row/column
    frac_y = np.interp(rows, grid.centers_y(), np.arange(grid.n_rows, dtype=np.float64))
    frac_x = np.interp(cols, grid.centers_x(), np.arange(grid.n_cols, dtype=np.float64))
    coords = np.stack(np.meshgrid(frac_y, frac_x, indexing="ij"))

    flow = np.empty((2, grid.height, grid.width), dtype=np.float32)
    flow[0] = ndimage.map_coordinates(field.dy, coords, order=1, mode="nearest")
    flow[1] = ndimage.map_coordinates(field.dx, coords, order=1, mode="nearest")
    return flow


def _align_local_single(
    source: FrameSource,
    transform: AlignmentTransform,
    reference: np.ndarray,
    params: ProcessingParams,
    cancellation: CancellationToken | None,
) -> AlignmentTransform:
    check_cancelled(cancellation)
    try:
        luma = load_luminance(source, transform.frame_index)
    except DecodeError as exc:
        return replace(
            transform,
            success=False,
            error_message=exc.message,
            reason=RejectionReason.DECODE_FAILED,
        )
    warped = warp_frame(luma, transform.global_)
    del luma
    field = estimate_local_field(
        reference,
        warped,
        params.tile_size,
        min_correlation_ratio=params.min_correlation_ratio,
        search_radius=params.search_radius,
        cancellation=cancellation,
    )
    return replace(transform, local=field)


def align_local(
    source: FrameSource,
    alignment: AlignmentResult,
    params: ProcessingParams,
    workers: int | None = None,
    progress: StageProgress | None = None,
    cancellation: CancellationToken | None = None,
) -> AlignmentResult:
    """
    Add a per-tile residual field to every usable non-reference frame.

    Parameters
    ----------
    source : FrameSource
        Frame provider.
    alignment : AlignmentResult
        Output of global alignment.
    params : ProcessingParams
        Uses tile_size, min_correlation_ratio, search_radius and
        progress_interval.
    workers : int or None, default None
        Number of worker threads. None uses CPU count - 1.
    progress : callable, optional
        Called as ``progress(done, total)`` from the calling thread.
    cancellation : CancellationToken, optional
        Checked per frame and per tile.

    Returns
    -------
    AlignmentResult
        Copy of ``alignment`` with ``local`` filled in. The reference
        keeps no local field.
    """
    if workers is None:
        workers = DEFAULT_WORKERS

    reference = load_luminance(source, alignment.reference_index)
    pending = [
        t for t in alignment.transforms
        if t.success and t.frame_index != alignment.reference_index
    ]
    total = len(pending)
    results: dict[int, AlignmentTransform] = {}

    logger.info(
        "Local alignment of %d frames (tile %d px, %d workers)", total, params.tile_size, workers
    )

    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = [
            executor.submit(_align_local_single, source, t, reference, params, cancellation)
            for t in pending
        ]
        done = 0
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

    transforms = [results.get(t.frame_index, t) for t in alignment.transforms]
    rejected = list(alignment.rejected)
    n_tiles = 0
    n_inherited = 0
    for t in transforms:
        if t.frame_index in results and not t.success:
            rejected.append(RejectedFrame(t.frame_index, t.reason, t.error_message))
            logger.warning("Frame %d excluded: %s", t.frame_index, t.error_message)
        elif isinstance(t.local, LocalField):
            n_tiles += t.local.n_tiles
            n_inherited += t.local.n_inherited

    logger.info(
        "Local alignment: %d tiles measured, %d inherited the global offset (%.1f%%)",
        n_tiles,
        n_inherited,
        100 * n_inherited / n_tiles if n_tiles else 0,
    )

    return AlignmentResult(
        reference_index=alignment.reference_index,
        transforms=transforms,
        rejected=rejected,
    )
