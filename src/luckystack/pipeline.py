"""
Pipeline orchestration.

Runs the stages strictly in order on the calling thread, fanning the heavy
work out to worker threads inside each stage:

    ANALYZE -> SELECT -> GLOBAL_ALIGN -> LOCAL_ALIGN (optional) -> STACK -> SHARPEN -> DONE

Every public entry point returns an explicit outcome (success, failure with
an error kind, or cancellation) instead of raising.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .align import AlignmentResult, align_frames, warp_frame
from .config import AnalysisResult, ProcessingParams, RejectedFrame, RejectionReason
from .errors import (
    DecodeError,
    ErrorKind,
    InsufficientFramesError,
    InvalidInputError,
    LuckyStackError,
    PipelineCancelled,
)
from .io import FrameSource, to_float01
from .local_align import LocalField, align_local, dense_field
from .progress import CancellationToken, ProgressReporter, ProgressSink
from .quality import SelectionResult, analyze_frames, select_frames
from .stack import StackStatistics, sigma_clip_stack
from .utils import format_duration
from .wavelet import sharpen

logger = logging.getLogger(__name__)

__all__ = [
    "PipelineStage",
    "Outcome",
    "PipelineResult",
    "AnalysisOutcome",
    "CancellationToken",
    "ProgressReporter",
    "ProgressSink",
    "LuckyStacker",
    "analyze_frames_safe",
    "process_video",
]


class PipelineStage(Enum):
    """Pipeline stages, in execution order."""

    IDLE = "idle"
    ANALYZE = "analyze"
    SELECT = "select"
    GLOBAL_ALIGN = "global_align"
    LOCAL_ALIGN = "local_align"
    STACK = "stack"
    SHARPEN = "sharpen"
    DONE = "done"


# Progress range (percent) allotted to each stage
STAGE_RANGES = {
    PipelineStage.ANALYZE: (0, 35),
    PipelineStage.SELECT: (35, 37),
    PipelineStage.GLOBAL_ALIGN: (37, 55),
    PipelineStage.LOCAL_ALIGN: (55, 70),
    PipelineStage.STACK: (70, 92),
    PipelineStage.SHARPEN: (92, 99),
    PipelineStage.DONE: (100, 100),
}

STAGE_MESSAGES = {
    PipelineStage.ANALYZE: "Analyzing frame quality",
    PipelineStage.SELECT: "Selecting best frames",
    PipelineStage.GLOBAL_ALIGN: "Aligning frames",
    PipelineStage.LOCAL_ALIGN: "Local tile alignment",
    PipelineStage.STACK: "Stacking frames",
    PipelineStage.SHARPEN: "Wavelet sharpening",
    PipelineStage.DONE: "Complete",
}


class Outcome(Enum):
    """Terminal state of a pipeline call."""

    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PipelineResult:
    """
    Outcome of ``process_video``.

    ``image`` is set only on success. Intermediate products are kept even
    when a later stage fails, for reporting.
    """

    outcome: Outcome = Outcome.FAILED
    image: np.ndarray | None = None
    error_kind: ErrorKind | None = None
    message: str = ""
    stage: PipelineStage = PipelineStage.IDLE
    analysis: AnalysisResult | None = None
    selection: SelectionResult | None = None
    alignment: AlignmentResult | None = None
    rejected: list[RejectedFrame] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stack_stats: StackStatistics | None = None
    coverage: np.ndarray | None = None
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def cancelled(self) -> bool:
        return self.outcome is Outcome.CANCELLED


@dataclass
class AnalysisOutcome:
    """Outcome of ``analyze_frames_safe``."""

    outcome: Outcome
    analysis: AnalysisResult | None = None
    error_kind: ErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS


class LuckyStacker:
    """
    Lucky-imaging pipeline bound to one frame source.

    Example
    -------
    >>> stacker = LuckyStacker(open_source("jupiter.avi"))
    >>> result = stacker.process(ProcessingParams.for_jupiter_saturn(), progress=print)
    >>> if not result.ok:
    ...     print(stacker.last_error)
    """

    def __init__(self, source: FrameSource | None):
        self.source = source
        self._last_error: str | None = None

    @property
    def last_error(self) -> str | None:
        """Description of the last failed call, None after a successful one."""
        return self._last_error

    # ------------------------------------------------------------------
    # Analysis only
    # ------------------------------------------------------------------

    def analyze(
        self,
        sample_step: int = 1,
        workers: int | None = None,
        cancellation: CancellationToken | None = None,
    ) -> AnalysisOutcome:
        """Score the source's frames without stacking."""
        try:
            if self.source is None:
                raise InvalidInputError("No frame source given")
            analysis = analyze_frames(
                self.source, sample_step, workers=workers, cancellation=cancellation
            )
        except PipelineCancelled as exc:
            self._last_error = exc.message
            return AnalysisOutcome(Outcome.CANCELLED, error_kind=exc.kind, message=exc.message)
        except LuckyStackError as exc:
            logger.error("Analysis failed: %s", exc.message)
            self._last_error = exc.message
            return AnalysisOutcome(Outcome.FAILED, error_kind=exc.kind, message=exc.message)
        except Exception as exc:
            logger.exception("Unexpected error during analysis")
            self._last_error = f"Internal error: {exc}"
            return AnalysisOutcome(Outcome.FAILED, error_kind=ErrorKind.INTERNAL, message=self._last_error)

        self._last_error = None
        return AnalysisOutcome(Outcome.SUCCESS, analysis=analysis)

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------

    def process(
        self,
        params: ProcessingParams | None,
        progress: ProgressSink | None = None,
        cancellation: CancellationToken | None = None,
    ) -> PipelineResult:
        """
        Run the full pipeline.

        Parameters
        ----------
        params : ProcessingParams
            Processing configuration; validated before any work.
        progress : callable or ProgressSink, optional
            Receives ``(percent, message)`` with non-decreasing percent.
        cancellation : CancellationToken, optional
            Checked before each stage and per frame/tile inside stages.

        Returns
        -------
        PipelineResult
            ``outcome`` is SUCCESS (with ``image``), FAILED (with
            ``error_kind`` and ``message``) or CANCELLED (no image).
        """
        result = PipelineResult()
        start = time.perf_counter()
        try:
            self._run(result, params, progress, cancellation)
        except PipelineCancelled as exc:
            logger.info("Processing cancelled during %s", result.stage.value)
            result.outcome = Outcome.CANCELLED
            result.error_kind = exc.kind
            result.message = exc.message
        except LuckyStackError as exc:
            logger.error("Processing failed during %s: %s", result.stage.value, exc.message)
            result.outcome = Outcome.FAILED
            result.error_kind = exc.kind
            result.message = exc.message
        except Exception as exc:
            logger.exception("Unexpected error during %s", result.stage.value)
            result.outcome = Outcome.FAILED
            result.error_kind = ErrorKind.INTERNAL
            result.message = f"Internal error: {exc}"
        else:
            result.outcome = Outcome.SUCCESS
        result.elapsed_s = time.perf_counter() - start

        if result.ok:
            self._last_error = None
        else:
            result.image = None
            self._last_error = result.message
        return result

    def _run(
        self,
        result: PipelineResult,
        params: ProcessingParams | None,
        progress: ProgressSink | None,
        cancellation: CancellationToken | None,
    ) -> None:
        source = self.source
        if source is None:
            raise InvalidInputError("No frame source given")
        if params is None:
            raise InvalidInputError("No processing parameters given")
        params.validate()
        try:
            reporter = ProgressReporter(progress)
        except TypeError as exc:
            raise InvalidInputError(str(exc)) from exc
        token = cancellation if cancellation is not None else CancellationToken()
        workers = params.workers

        def enter(stage: PipelineStage):
            token.raise_if_cancelled()
            result.stage = stage
            lo, hi = STAGE_RANGES[stage]
            return reporter.stage(lo, hi, STAGE_MESSAGES[stage])

        # --- Analyze ---
        step = enter(PipelineStage.ANALYZE)
        analysis = analyze_frames(
            source,
            params.sample_step,
            roi_max_jump=params.roi_max_jump,
            roi_smoothing=params.roi_smoothing,
            workers=workers,
            progress=step,
            progress_interval=params.progress_interval,
            cancellation=token,
        )
        result.analysis = analysis
        if analysis.decode_failures:
            result.warnings.append(f"{analysis.decode_failures} frames could not be decoded")
        if not analysis.scores:
            raise InsufficientFramesError("No frame could be analysed")

        # --- Select ---
        enter(PipelineStage.SELECT)
        selection = select_frames(analysis, params)
        result.selection = selection
        result.rejected = list(selection.rejected)
        if selection.warning:
            result.warnings.append(selection.warning)
        self._require_frames(len(selection), params, "after selection")

        # --- Global alignment ---
        step = enter(PipelineStage.GLOBAL_ALIGN)
        alignment = align_frames(
            source, selection.indices, params, workers=workers, progress=step, cancellation=token
        )
        result.alignment = alignment
        result.rejected = selection.rejected + alignment.rejected
        self._require_frames(alignment.n_usable, params, "after global alignment")

        # --- Local alignment ---
        if params.enable_local_align:
            step = enter(PipelineStage.LOCAL_ALIGN)
            alignment = align_local(
                source, alignment, params, workers=workers, progress=step, cancellation=token
            )
            result.alignment = alignment
            result.rejected = selection.rejected + alignment.rejected
            self._require_frames(alignment.n_usable, params, "after local alignment")

        n_excluded = len(selection) - alignment.n_usable
        if n_excluded:
            result.warnings.append(f"{n_excluded} selected frames excluded during alignment")

        # --- Stack ---
        step = enter(PipelineStage.STACK)
        stacked, coverage, stats = self._stack(alignment, params, result, step, token)
        result.stack_stats = stats
        result.coverage = coverage

        # --- Sharpen ---
        enter(PipelineStage.SHARPEN)
        image = sharpen(stacked, params.wavelet_layers)
        del stacked
        token.raise_if_cancelled()

        result.stage = PipelineStage.DONE
        reporter.notify(100, STAGE_MESSAGES[PipelineStage.DONE])
        result.image = image
        logger.info(
            "Pipeline complete: %d frames stacked from %d",
            stats.n_frames,
            analysis.total_frames,
        )

    def _stack(self, alignment, params, result, step, token):
        source = self.source
        usable = alignment.usable
        failed: set[int] = set()
        decoded: set[int] = set()

        def aligned_frames():
            for transform in usable:
                index = transform.frame_index
                if index in failed:
                    continue
                token.raise_if_cancelled()
                try:
                    frame = to_float01(source.decode(index))
                except DecodeError as exc:
                    failed.add(index)
                    result.rejected.append(
                        RejectedFrame(index, RejectionReason.DECODE_FAILED, exc.message)
                    )
                    if index in decoded:
                        # Earlier passes already hold this frame's samples
                        raise
                    logger.warning("Skipping frame in stack: %s", exc.message)
                    continue
                decoded.add(index)
                flow = dense_field(transform.local) if isinstance(transform.local, LocalField) else None
                yield warp_frame(frame, transform.global_, flow)

        # Each restart drops one more frame, so the loop ends
        while True:
            decoded.clear()
            try:
                stacked, coverage, stats = sigma_clip_stack(
                    aligned_frames,
                    len(usable) - len(failed),
                    threshold=params.sigma_clip_threshold,
                    iterations=params.sigma_iterations,
                    workers=params.workers,
                    progress=step,
                    progress_interval=params.progress_interval,
                    cancellation=token,
                )
            except DecodeError as exc:
                logger.warning("Restarting stack without the failed frame: %s", exc.message)
                continue
            except InvalidInputError:
                if len(failed) < len(usable):
                    raise
                raise InsufficientFramesError("No aligned frame could be decoded for stacking") from None
            break
        self._require_frames(stats.n_frames, params, "during stacking")
        return stacked, coverage, stats

    @staticmethod
    def _require_frames(n_usable: int, params: ProcessingParams, when: str) -> None:
        if n_usable < params.min_usable_frames:
            raise InsufficientFramesError(
                f"Only {n_usable} usable frames {when}, need at least {params.min_usable_frames}"
            )


def analyze_frames_safe(
    source: FrameSource | None,
    sample_step: int = 1,
    workers: int | None = None,
) -> AnalysisOutcome:
    """Analyse a source; never raises."""
    return LuckyStacker(source).analyze(sample_step, workers=workers)


def process_video(
    source: FrameSource | None,
    params: ProcessingParams | None,
    progress: ProgressSink | None = None,
    cancellation: CancellationToken | None = None,
) -> PipelineResult:
    """
    Run the full pipeline on a source; never raises.

    See ``LuckyStacker.process``.
    """
    stacker = LuckyStacker(source)
    result = stacker.process(params, progress=progress, cancellation=cancellation)
    if result.ok:
        logger.info("Processed in %s", format_duration(result.elapsed_s))
    return result
