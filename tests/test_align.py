"""
Tests for the align module.

Tests cover:
- Phase correlation (integer and sub-pixel shifts, confidence)
- Global registration and its failure mode
- Transform matrices and frame warping
- Rotation/scale estimation and refinement
- Parallel alignment of a selection, including excluded frames
"""

import math

import numpy as np
import pytest
from skimage.transform import rotate

from luckystack.align import (
    GlobalTransform,
    align_frames,
    alignment_residual,
    estimate_polar_rotation,
    estimate_rotation_scale,
    phase_correlate,
    register_global,
    warp_frame,
)
from luckystack.config import ProcessingParams, RejectionReason
from luckystack.errors import AlignmentError, InvalidInputError, PipelineCancelled
from luckystack.io import ArrayFrameSource
from luckystack.progress import CancellationToken


class TestPhaseCorrelate:
    """Tests for phase correlation."""

    def test_identical_images(self, planet_frame):
        reference = planet_frame()
        dy, dx, confidence = phase_correlate(reference, reference)

        assert abs(dy) < 1e-6
        assert abs(dx) < 1e-6
        assert confidence > 6.0

    def test_integer_shift(self, planet_frame):
        reference = planet_frame()
        moving = planet_frame(shift=(5.0, -7.0))
        dy, dx, _ = phase_correlate(reference, moving)

        assert dy == pytest.approx(5.0, abs=0.5)
        assert dx == pytest.approx(-7.0, abs=0.5)

    def test_subpixel_shift(self, planet_frame):
        reference = planet_frame()
        moving = planet_frame(shift=(2.3, -1.6))
        dy, dx, _ = phase_correlate(reference, moving)

        assert dy == pytest.approx(2.3, abs=0.5)
        assert dx == pytest.approx(-1.6, abs=0.5)

    def test_band_passed_tile_shift(self, planet_frame):
        reference = planet_frame(96, 96, radius=30.0)
        moving = planet_frame(96, 96, radius=30.0, shift=(1.0, -1.0))
        tile = (slice(32, 64), slice(32, 64))
        dy, dx, confidence = phase_correlate(reference[tile], moving[tile], highpass=4.0)

        assert dy == pytest.approx(1.0, abs=0.5)
        assert dx == pytest.approx(-1.0, abs=0.5)
        assert confidence > 6.0

    def test_band_passed_identical_tiles(self, planet_frame):
        tile = planet_frame(96, 96, radius=30.0)[32:64, 32:64]
        dy, dx, _ = phase_correlate(tile, tile, highpass=4.0)
        assert abs(dy) < 1e-6 and abs(dx) < 1e-6

    def test_flat_images_have_no_confidence(self):
        flat = np.full((32, 32), 0.5, dtype=np.float32)
        assert phase_correlate(flat, flat) == (0.0, 0.0, 0.0)

    def test_shape_mismatch(self, planet_frame):
        with pytest.raises(InvalidInputError):
            phase_correlate(planet_frame(64, 64), planet_frame(64, 32))


class TestRegisterGlobal:
    """Tests for global registration."""

    def test_recovers_translation(self, planet_frame):
        transform = register_global(planet_frame(), planet_frame(shift=(-3.0, 4.0)))

        assert transform.dy == pytest.approx(-3.0, abs=0.5)
        assert transform.dx == pytest.approx(4.0, abs=0.5)
        assert transform.is_translation
        assert transform.confidence >= 6.0

    def test_low_confidence_raises(self, planet_frame):
        noise = np.random.default_rng(1).random((128, 128)).astype(np.float32)
        with pytest.raises(AlignmentError, match="Low correlation confidence"):
            register_global(planet_frame(), noise, min_correlation_ratio=6.0)

    def test_shape_mismatch_raises(self, planet_frame):
        with pytest.raises(AlignmentError):
            register_global(planet_frame(64, 64), planet_frame(64, 80))

    def test_rotation_refinement(self, planet_frame):
        reference = planet_frame()
        rotated = rotate(reference, 4.0, order=1, preserve_range=True).astype(np.float32)

        translation_only = register_global(reference, rotated)
        refined = register_global(
            reference, rotated, estimate_rotation=True, residual_tolerance=0.0
        )

        assert abs(abs(refined.rotation) - 4.0) < 1.0
        assert alignment_residual(reference, rotated, refined) < alignment_residual(
            reference, rotated, translation_only
        )


class TestRotationEstimates:
    """Tests for the rotation and scale estimators."""

    def test_polar_rotation(self, planet_frame):
        reference = planet_frame()
        rotated = rotate(reference, 4.0, order=1, preserve_range=True).astype(np.float32)

        assert abs(estimate_polar_rotation(reference, rotated)) == pytest.approx(4.0, abs=0.75)
        assert estimate_polar_rotation(reference, reference) == pytest.approx(0.0, abs=0.2)

    def test_spectrum_rotation(self, planet_frame):
        reference = planet_frame()
        rotated = rotate(reference, 10.0, order=1, preserve_range=True).astype(np.float32)
        angle, scale = estimate_rotation_scale(reference, rotated)

        assert 7.0 < abs(angle) < 13.0
        assert 0.9 < scale < 1.1

    def test_small_images_skip_estimation(self, planet_frame):
        small = planet_frame(16, 16, radius=5.0)
        assert estimate_rotation_scale(small, small) == (0.0, 1.0)
        assert estimate_polar_rotation(small, small) == 0.0


class TestGlobalTransform:
    """Tests for transform matrices."""

    def test_identity_matrix(self):
        assert np.allclose(GlobalTransform.identity().inverse_matrix((10, 10)), np.eye(3))

    def test_translation_matrix(self):
        matrix = GlobalTransform(dx=2.5, dy=-1.0).inverse_matrix((10, 20))
        assert np.allclose(matrix[:2, :2], np.eye(2))
        assert np.allclose(matrix[:2, 2], [2.5, -1.0])

    def test_rotation_about_centre(self):
        matrix = GlobalTransform(rotation=90.0).inverse_matrix((5, 5))
        assert np.allclose(matrix @ [2.0, 2.0, 1.0], [2.0, 2.0, 1.0])
        assert np.allclose(matrix @ [4.0, 2.0, 1.0], [2.0, 4.0, 1.0])


class TestWarpFrame:
    """Tests for frame resampling."""

    def test_undoes_integer_shift(self, planet_frame):
        reference = planet_frame()
        moving = planet_frame(shift=(3.0, -4.0))
        warped = warp_frame(moving, GlobalTransform(dx=-4.0, dy=3.0))

        assert warped.dtype == np.float32
        assert np.allclose(warped, reference, atol=1e-5)

    def test_identity_returns_copy(self, planet_frame):
        frame = planet_frame(32, 32, radius=8.0)
        warped = warp_frame(frame, GlobalTransform.identity())
        assert np.array_equal(warped, frame)
        assert warped is not frame

    def test_zero_flow_matches_global_warp(self, planet_frame):
        frame = planet_frame(64, 64, radius=16.0)
        transform = GlobalTransform(dx=1.5, dy=-0.5)
        flow = np.zeros((2, 64, 64), dtype=np.float32)

        with_flow = warp_frame(frame, transform, flow)
        without = warp_frame(frame, transform)
        assert np.allclose(with_flow[8:-8, 8:-8], without[8:-8, 8:-8], atol=1e-4)

    def test_constant_flow_acts_as_translation(self, planet_frame):
        frame = planet_frame(64, 64, radius=16.0)
        flow = np.zeros((2, 64, 64), dtype=np.float32)
        flow[0] = 2.0

        via_flow = warp_frame(frame, GlobalTransform.identity(), flow)
        via_global = warp_frame(frame, GlobalTransform(dy=2.0))
        assert np.allclose(via_flow, via_global, atol=1e-4)

    def test_rgb_frame(self, planet_frame):
        frame = planet_frame(48, 48, radius=12.0, rgb=True)
        warped = warp_frame(frame, GlobalTransform(dx=1.0, dy=1.0))
        assert warped.shape == frame.shape
        assert warped.dtype == np.float32


class TestAlignFrames:
    """Tests for alignment of a frame selection."""

    SHIFTS = [(0.0, 0.0), (2.0, -1.0), (-3.0, 1.5), (1.2, 2.7)]

    def _source(self, planet_frame, failing=(), noise_index=None):
        frames = [planet_frame(96, 96, radius=24.0, shift=s) for s in self.SHIFTS]
        if noise_index is not None:
            frames[noise_index] = np.random.default_rng(5).random((96, 96)).astype(np.float32)
        return ArrayFrameSource(frames, failing=failing)

    def test_transforms_in_selection_order(self, planet_frame):
        indices = [2, 0, 3, 1]
        result = align_frames(self._source(planet_frame), indices, ProcessingParams(), workers=2)

        assert result.reference_index == 2
        assert [t.frame_index for t in result.transforms] == indices
        assert result.n_usable == 4
        assert not result.rejected

        reference = result.transforms[0].global_
        assert (reference.dx, reference.dy) == (0.0, 0.0)

        ref_dy, ref_dx = self.SHIFTS[2]
        for transform in result.transforms[1:]:
            dy, dx = self.SHIFTS[transform.frame_index]
            assert transform.global_.dy == pytest.approx(dy - ref_dy, abs=0.5)
            assert transform.global_.dx == pytest.approx(dx - ref_dx, abs=0.5)

    def test_reference_falls_back_when_undecodable(self, planet_frame):
        result = align_frames(
            self._source(planet_frame, failing={2}), [2, 0, 3, 1], ProcessingParams(), workers=2
        )

        assert result.reference_index == 0
        assert [t.frame_index for t in result.transforms] == [0, 3, 1]
        assert result.rejected[0].frame_index == 2
        assert result.rejected[0].reason is RejectionReason.DECODE_FAILED

    def test_low_confidence_frame_excluded(self, planet_frame):
        result = align_frames(
            self._source(planet_frame, noise_index=3), [0, 1, 2, 3], ProcessingParams(), workers=2
        )

        assert result.n_usable == 3
        failed = [t for t in result.transforms if not t.success]
        assert [t.frame_index for t in failed] == [3]
        assert failed[0].reason is RejectionReason.ALIGNMENT_FAILED
        assert [(r.frame_index, r.reason) for r in result.rejected] == [
            (3, RejectionReason.ALIGNMENT_FAILED)
        ]

    def test_progress_reaches_total(self, planet_frame):
        calls = []
        align_frames(
            self._source(planet_frame), [0, 1, 2, 3], ProcessingParams(progress_interval=1),
            workers=2, progress=lambda done, total: calls.append((done, total)),
        )
        assert calls[-1] == (4, 4)

    def test_empty_selection(self, planet_frame):
        with pytest.raises(InvalidInputError):
            align_frames(self._source(planet_frame), [], ProcessingParams())

    def test_cancellation(self, planet_frame):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(PipelineCancelled):
            align_frames(
                self._source(planet_frame), [0, 1, 2, 3], ProcessingParams(),
                workers=2, cancellation=token,
            )

    def test_confidence_is_finite_or_inf(self, planet_frame):
        result = align_frames(self._source(planet_frame), [0, 1], ProcessingParams(), workers=1)
        confidence = result.transforms[1].global_.confidence
        assert confidence >= 6.0 or math.isinf(confidence)
