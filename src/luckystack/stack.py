"""
Streaming sigma-clipped stacking.

Frames are never held together in memory: each pass re-streams the aligned
frames through a per-pixel Welford accumulator. Pass 0 takes every sample;
each clipping iteration re-streams the frames and keeps only samples within
``threshold`` standard deviations of the previous pass's mean.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable

import numpy as np

from .config import DEFAULT_WORKERS
from .errors import InvalidInputError
from .progress import CancellationToken, StageProgress, check_cancelled

logger = logging.getLogger(__name__)

# Rows per band below which splitting a frame update is not worth a task
MIN_BAND_ROWS = 16

FrameFactory = Callable[[], Iterable[np.ndarray]]


@dataclass
class StackStatistics:
    """Statistics from a stacking operation."""

    n_frames: int
    iterations_run: int
    mean_clipped_fraction: float  # Average fraction of samples rejected per pixel
    fallback_pixels: int  # Pixels where a clipping iteration would have rejected everything
    snr_proxy: float  # Simple SNR estimate


def row_bands(height: int, n_bands: int) -> list[slice]:
    """
    Split ``height`` rows into at most ``n_bands`` disjoint, contiguous bands.

    Example
    -------
    >>> row_bands(10, 3)
    [slice(0, 3, None), slice(3, 7, None), slice(7, 10, None)]
    """
    n_bands = max(1, min(n_bands, height))
    edges = np.linspace(0, height, n_bands + 1).round().astype(int)
    return [slice(int(a), int(b)) for a, b in zip(edges[:-1], edges[1:]) if b > a]


class StackAccumulator:
    """
    Per-pixel running mean and variance (Welford's algorithm).

    ``update`` only touches the rows it is given, so disjoint row bands of
    the same frame can be added from different threads without locking.
    """

    def __init__(self, shape: tuple[int, ...]):
        self.shape = tuple(shape)
        self.count = np.zeros(self.shape, dtype=np.int32)
        self.mean = np.zeros(self.shape, dtype=np.float64)
        self.m2 = np.zeros(self.shape, dtype=np.float64)

    def update(
        self,
        frame: np.ndarray,
        rows: slice = slice(None),
        center: np.ndarray | None = None,
        limit: np.ndarray | None = None,
    ) -> None:
        """
        Add the samples of ``frame[rows]``.

        When ``center`` and ``limit`` are given, only samples with
        ``|x - center| <= limit`` are added.
        """
        x = frame[rows].astype(np.float64)
        count = self.count[rows]
        mean = self.mean[rows]
        m2 = self.m2[rows]

        if center is None:
            count += 1
            delta = x - mean
            mean += delta / count
            m2 += delta * (x - mean)
            return

        keep = np.abs(x - center[rows]) <= limit[rows]
        count += keep
        delta = np.where(keep, x - mean, 0.0)
        mean += np.divide(delta, count, out=np.zeros_like(delta), where=keep)
        m2 += delta * (x - mean)

    @property
    def variance(self) -> np.ndarray:
        """Population variance (``m2 / count``), zero where no sample was added."""
        return np.divide(self.m2, self.count, out=np.zeros_like(self.m2), where=self.count > 0)

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(np.maximum(self.variance, 0.0))


def _check_frame(frame: np.ndarray, shape: tuple[int, ...] | None) -> np.ndarray:
    frame = np.asarray(frame)
    if frame.size == 0:
        raise InvalidInputError("Cannot stack an empty frame")
    if shape is not None and frame.shape != shape:
        raise InvalidInputError(f"Frame shape {frame.shape} differs from {shape}")
    if not np.isfinite(frame).all():
        raise InvalidInputError("Frame contains non-finite values")
    return frame


def sigma_clip_stack(
    frames: FrameFactory,
    n_frames: int,
    threshold: float = 2.5,
    iterations: int = 2,
    workers: int | None = None,
    progress: StageProgress | None = None,
    progress_interval: int = 10,
    cancellation: CancellationToken | None = None,
) -> tuple[np.ndarray, np.ndarray, StackStatistics]:
    """
    Sigma-clipped mean of a stream of aligned frames.

    Parameters
    ----------
    frames : callable
        Zero-argument factory returning a fresh iterable of aligned frames.
        It is called once per pass (``1 + iterations`` times at most).
    n_frames : int
        Number of frames each pass yields, for progress reporting.
    threshold : float, default 2.5
        Clipping threshold in standard deviations.
    iterations : int, default 2
        Number of clipping iterations. 0 gives the plain mean.
    workers : int or None, default None
        Threads used for the row-band split of each frame update.
    progress : callable, optional
        Called as ``progress(done, total)`` with frame-pass counts.
    progress_interval : int, default 10
        Report every N frames.
    cancellation : CancellationToken, optional
        Checked per frame.

    Returns
    -------
    tuple[np.ndarray, np.ndarray, StackStatistics]
        (stacked float32, contributing sample count int32, statistics).

    Notes
    -----
    The standard deviation is the population form. At pixels where an
    iteration would keep no sample, that iteration is skipped and the
    previous mean, deviation and count are kept, so every pixel has a
    defined value. Iterations stop early once the statistics no longer
    change.
    """
    if threshold <= 0:
        raise InvalidInputError(f"threshold must be positive, got {threshold}")
    if iterations < 0:
        raise InvalidInputError(f"iterations must be >= 0, got {iterations}")
    if workers is None:
        workers = DEFAULT_WORKERS

    total_work = max(1, n_frames * (1 + iterations))
    done = 0

    def run_pass(executor, center=None, limit=None) -> tuple[StackAccumulator, int]:
        nonlocal done
        acc = None
        bands = None
        seen = 0
        for frame in frames():
            check_cancelled(cancellation)
            frame = _check_frame(frame, acc.shape if acc is not None else None)
            if acc is None:
                acc = StackAccumulator(frame.shape)
                n_bands = frame.shape[0] // MIN_BAND_ROWS
                bands = row_bands(frame.shape[0], min(workers, max(1, n_bands)))
            if len(bands) == 1:
                acc.update(frame, bands[0], center, limit)
            else:
                list(executor.map(lambda rows: acc.update(frame, rows, center, limit), bands))
            del frame
            seen += 1
            done += 1
            if progress is not None and done % progress_interval == 0:
                progress(min(done, total_work), total_work)
        if acc is None:
            raise InvalidInputError("No frames to stack")
        return acc, seen

    with ThreadPoolExecutor(max_workers=workers) as executor:
        logger.info("Stack pass 1/%d: mean and variance", 1 + iterations)
        acc, n_seen = run_pass(executor)
        mean, std, count = acc.mean, acc.std, acc.count
        del acc

        fallback = np.zeros(mean.shape, dtype=bool)
        iterations_run = 0
        for k in range(1, iterations + 1):
            logger.info(
                "Stack pass %d/%d: sigma clipping (threshold=%.2f)", k + 1, 1 + iterations, threshold
            )
            acc, _ = run_pass(executor, center=mean, limit=threshold * std)
            iterations_run = k
            empty = acc.count == 0
            fallback |= empty
            new_mean = np.where(empty, mean, acc.mean)
            new_std = np.where(empty, std, acc.std)
            new_count = np.where(empty, count, acc.count)
            del acc
            converged = np.array_equal(new_mean, mean) and np.array_equal(new_std, std)
            mean, std, count = new_mean, new_std, new_count
            if converged:
                logger.debug("Sigma clipping converged after %d iterations", k)
                break

    if progress is not None:
        progress(total_work, total_work)

    stacked = mean.astype(np.float32)
    count = count.astype(np.int32)

    clipped_fraction = 1.0 - float(count.mean()) / n_seen if n_seen else 0.0
    signal = float(np.median(stacked))
    noise = 1.4826 * float(np.median(np.abs(stacked - signal)))
    stats = StackStatistics(
        n_frames=n_seen,
        iterations_run=iterations_run,
        mean_clipped_fraction=clipped_fraction,
        fallback_pixels=int(fallback.any(axis=-1).sum() if fallback.ndim == 3 else fallback.sum()),
        snr_proxy=signal / noise if noise > 0 else 0.0,
    )

    logger.info(
        "Stacked %d frames: %.2f%% samples clipped, %d fallback pixels",
        n_seen,
        100.0 * stats.mean_clipped_fraction,
        stats.fallback_pixels,
    )
    return stacked, count, stats


def mean_stack(frames: list[np.ndarray]) -> np.ndarray:
    """Plain per-pixel mean of in-memory frames."""
    stacked, _, _ = sigma_clip_stack(lambda: iter(frames), len(frames), iterations=0, workers=1)
    return stacked
