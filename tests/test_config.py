"""
Tests for the config module.

Tests cover:
- Rect geometry helpers
- ProcessingParams defaults, presets and validation
- The shared worker default
- WaveletLayers presets and gains
- AnalysisResult summaries
"""

import pytest

from luckystack import align, local_align, quality, stack
from luckystack.config import (
    DEFAULT_WORKERS,
    TARGET_PRESETS,
    AnalysisResult,
    FrameScore,
    ProcessingParams,
    Rect,
    WaveletLayers,
)
from luckystack.errors import ErrorKind, InvalidInputError


class TestRect:
    """Tests for the Rect helper."""

    def test_full_frame(self):
        rect = Rect.full(640, 480)
        assert (rect.x, rect.y, rect.width, rect.height) == (0, 0, 640, 480)
        assert rect.area == 640 * 480

    def test_center(self):
        assert Rect(10, 20, 30, 40).center == (25.0, 40.0)

    def test_slices_index_rows_then_columns(self):
        rows, cols = Rect(5, 2, 3, 4).slices()
        assert rows == slice(2, 6)
        assert cols == slice(5, 8)

    def test_clip_keeps_rect_inside_frame(self):
        clipped = Rect(90, -5, 30, 20).clip(100, 50)
        assert clipped == Rect(90, 0, 10, 20)

    def test_clip_keeps_at_least_one_pixel(self):
        clipped = Rect(200, 200, 5, 5).clip(100, 100)
        assert clipped.width >= 1 and clipped.height >= 1
        assert clipped.x < 100 and clipped.y < 100


class TestProcessingParams:
    """Tests for processing parameters."""

    def test_defaults(self):
        params = ProcessingParams()
        assert params.keep_percentage == 0.25
        assert params.min_frames == 50
        assert params.max_frames == 500
        assert params.sample_step == 2
        assert params.enable_local_align is True
        assert params.tile_size == 32
        assert params.sigma_clip_threshold == 2.5
        assert params.sigma_iterations == 2
        params.validate()

    def test_search_radius_defaults_to_quarter_tile(self):
        assert ProcessingParams(tile_size=64).search_radius == 16.0
        assert ProcessingParams(local_search_radius=3).search_radius == 3.0

    def test_with_changes_returns_copy(self):
        params = ProcessingParams()
        changed = params.with_changes(min_frames=10)
        assert changed.min_frames == 10
        assert params.min_frames == 50

    @pytest.mark.parametrize(
        "changes",
        [
            {"keep_percentage": 1.5},
            {"keep_percentage": -0.1},
            {"min_frames": 0},
            {"min_frames": 600, "max_frames": 500},
            {"sample_step": 0},
            {"tile_size": 48},
            {"tile_size": 4},
            {"sigma_clip_threshold": 0.0},
            {"sigma_iterations": -1},
            {"min_usable_frames": 0},
            {"roi_smoothing": 1.0},
            {"workers": 0},
            {"wavelet_layers": WaveletLayers(layer0=-1.0)},
        ],
    )
    def test_invalid_values_rejected(self, changes):
        params = ProcessingParams().with_changes(**changes)
        with pytest.raises(InvalidInputError) as excinfo:
            params.validate()
        assert excinfo.value.kind is ErrorKind.INVALID_INPUT

    def test_invalid_input_is_value_error(self):
        with pytest.raises(ValueError):
            ProcessingParams(tile_size=33).validate()

    @pytest.mark.parametrize("name", sorted(TARGET_PRESETS))
    def test_presets_are_valid(self, name):
        TARGET_PRESETS[name]().validate()

    def test_preset_values(self):
        assert ProcessingParams.for_jupiter_saturn().wavelet_layers == WaveletLayers.aggressive()
        assert ProcessingParams.for_mars().keep_percentage == 0.30
        assert ProcessingParams.for_moon().tile_size == 64
        assert ProcessingParams.for_sun().wavelet_layers == WaveletLayers.solar()

    def test_preset_overrides(self):
        params = ProcessingParams.for_moon(min_frames=5, max_frames=10)
        assert params.tile_size == 64
        assert params.min_frames == 5

    @pytest.mark.parametrize("name", sorted(TARGET_PRESETS))
    def test_override_replaces_preset_field(self, name):
        params = TARGET_PRESETS[name](tile_size=16, keep_percentage=0.05)
        assert params.tile_size == 16
        assert params.keep_percentage == 0.05

    def test_override_of_preset_wavelets(self):
        params = ProcessingParams.for_mars(wavelet_layers=WaveletLayers.from_preset("none"))
        assert params.wavelet_layers.gains == (1.0,) * 5
        assert params.keep_percentage == 0.30


class TestDefaultWorkers:
    """Tests for the shared worker default."""

    def test_at_least_one(self):
        assert DEFAULT_WORKERS >= 1

    @pytest.mark.parametrize("module", [align, local_align, quality, stack])
    def test_modules_share_default(self, module):
        assert module.DEFAULT_WORKERS == DEFAULT_WORKERS


class TestWaveletLayers:
    """Tests for wavelet gain presets."""

    def test_gains_order_finest_first(self):
        layers = WaveletLayers(1.0, 2.0, 3.0, 4.0, 5.0)
        assert layers.gains == (1.0, 2.0, 3.0, 4.0, 5.0)

    def test_from_gains_requires_five(self):
        with pytest.raises(InvalidInputError):
            WaveletLayers.from_gains([1.0, 1.0])

    def test_unknown_preset(self):
        with pytest.raises(InvalidInputError, match="Unknown wavelet preset"):
            WaveletLayers.from_preset("extreme")

    def test_none_preset_is_identity(self):
        assert WaveletLayers.from_preset("none").gains == (1.0,) * 5


class TestAnalysisResult:
    """Tests for analysis summaries."""

    def _result(self):
        scores = [
            FrameScore(frame_index=i, quality_score=q, roi=Rect.full(10, 10))
            for i, q in [(4, 1.0), (0, 0.75), (2, 0.5), (6, 0.0)]
        ]
        return AnalysisResult(total_frames=8, scores=scores, sample_step=2)

    def test_indices_follow_score_order(self):
        assert self._result().indices == [4, 0, 2, 6]

    def test_top_fraction_and_top_n(self):
        result = self._result()
        assert [s.frame_index for s in result.top_fraction(0.5)] == [4, 0]
        assert len(result.top_fraction(0.0)) == 1
        assert [s.frame_index for s in result.top_n(3)] == [4, 0, 2]

    def test_stats(self):
        stats = self._result().stats
        assert stats.min == 0.0
        assert stats.max == 1.0
        assert stats.mean == pytest.approx(0.5625)
        assert stats.median == pytest.approx(0.625)

    def test_empty_stats(self):
        assert AnalysisResult(total_frames=0).stats.max == 0.0
