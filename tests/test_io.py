"""
Tests for the io module.

Tests cover:
- Conversion of decoded buffers to float [0, 1]
- In-memory, image-sequence and FITS-sequence sources
- Source discovery from a path
- Image writers (PNG, TIFF, FITS)
"""

import imageio.v3 as iio
import numpy as np
import pytest
import tifffile
from astropy.io import fits

from luckystack.errors import DecodeError, InvalidInputError
from luckystack.io import (
    ArrayFrameSource,
    FitsSequenceSource,
    FrameSource,
    ImageSequenceSource,
    open_source,
    to_float01,
    write_fits,
    write_image,
)


class TestToFloat01:
    """Tests for buffer normalisation."""

    def test_uint8(self):
        out = to_float01(np.array([[0, 255]], dtype=np.uint8))
        assert out.dtype == np.float32
        assert out.tolist() == [[0.0, 1.0]]

    def test_uint16(self):
        out = to_float01(np.array([[0, 65535]], dtype=np.uint16))
        assert out.tolist() == [[0.0, 1.0]]

    def test_float_passthrough(self):
        frame = np.array([[0.25, 0.75]], dtype=np.float64)
        out = to_float01(frame)
        assert out.dtype == np.float32
        assert np.allclose(out, frame)

    def test_alpha_dropped(self):
        out = to_float01(np.zeros((4, 4, 4), dtype=np.uint8))
        assert out.shape == (4, 4, 3)

    def test_single_channel_squeezed(self):
        assert to_float01(np.zeros((4, 4, 1), dtype=np.uint8)).shape == (4, 4)

    @pytest.mark.parametrize("shape", [(4,), (2, 2, 2, 2), (0, 4)])
    def test_bad_shapes(self, shape):
        with pytest.raises(InvalidInputError):
            to_float01(np.zeros(shape, dtype=np.uint8))


class TestArrayFrameSource:
    """Tests for the in-memory source."""

    def test_protocol(self):
        assert isinstance(ArrayFrameSource([]), FrameSource)

    def test_decode(self):
        frames = [np.full((2, 2), i, dtype=np.float32) for i in range(3)]
        source = ArrayFrameSource(frames)
        assert source.total_frames() == 3
        assert np.all(source.decode(2) == 2)

    def test_failures(self):
        source = ArrayFrameSource([np.zeros((2, 2))] * 3, failing={1})
        with pytest.raises(DecodeError, match="Frame 1"):
            source.decode(1)
        with pytest.raises(DecodeError):
            source.decode(5)


class TestFileSources:
    """Tests for image and FITS sequences."""

    def test_png_sequence(self, tmp_path, planet_frame):
        for i in range(3):
            iio.imwrite(tmp_path / f"frame_{i:03d}.png", (planet_frame(32, 32, radius=8.0) * 255).astype(np.uint8))
        (tmp_path / "notes.txt").write_text("ignored")

        source = ImageSequenceSource.from_directory(tmp_path)
        assert source.total_frames() == 3
        frame = source.decode(0)
        assert frame.shape == (32, 32)
        assert frame.dtype == np.uint8

    def test_tiff_sequence_keeps_16_bit(self, tmp_path):
        tifffile.imwrite(tmp_path / "a.tif", np.full((8, 8), 40000, dtype=np.uint16))
        source = ImageSequenceSource.from_directory(tmp_path)
        assert source.decode(0).dtype == np.uint16

    def test_unreadable_file(self, tmp_path):
        bad = tmp_path / "broken.png"
        bad.write_bytes(b"not an image")
        with pytest.raises(DecodeError, match="broken.png"):
            ImageSequenceSource([bad]).decode(0)

    def test_fits_sequence(self, tmp_path):
        for i in range(2):
            fits.PrimaryHDU(np.full((6, 5), 1000 * (i + 1), dtype=np.uint16)).writeto(tmp_path / f"f{i}.fits")

        source = FitsSequenceSource.from_directory(tmp_path)
        assert source.total_frames() == 2
        frame = source.decode(1)
        assert frame.shape == (6, 5)
        assert np.allclose(frame, 2000 / 65535.0)

    def test_fits_colour_cube(self, tmp_path):
        cube = np.zeros((3, 4, 5), dtype=np.float32)
        cube[2] = 0.5
        fits.PrimaryHDU(cube).writeto(tmp_path / "rgb.fits")

        frame = FitsSequenceSource.from_directory(tmp_path).decode(0)
        assert frame.shape == (4, 5, 3)
        assert np.allclose(frame[..., 2], 0.5)


class TestOpenSource:
    """Tests for source discovery."""

    def test_missing_path(self, tmp_path):
        with pytest.raises(InvalidInputError, match="not found"):
            open_source(tmp_path / "missing.avi")

    def test_empty_directory(self, tmp_path):
        with pytest.raises(InvalidInputError, match="No image or FITS"):
            open_source(tmp_path)

    def test_unsupported_file(self, tmp_path):
        path = tmp_path / "data.csv"
        path.write_text("1,2,3")
        with pytest.raises(InvalidInputError, match="Unsupported"):
            open_source(path)

    def test_directory_prefers_fits(self, tmp_path):
        fits.PrimaryHDU(np.zeros((4, 4), dtype=np.float32)).writeto(tmp_path / "a.fits")
        iio.imwrite(tmp_path / "b.png", np.zeros((4, 4), dtype=np.uint8))
        assert isinstance(open_source(tmp_path), FitsSequenceSource)

    def test_image_directory(self, tmp_path):
        iio.imwrite(tmp_path / "b.png", np.zeros((4, 4), dtype=np.uint8))
        assert isinstance(open_source(tmp_path), ImageSequenceSource)


class TestWriters:
    """Tests for image writers."""

    def test_png_is_8_bit(self, tmp_path):
        path = write_image(tmp_path / "out.png", np.full((4, 4), 0.5, dtype=np.float32))
        data = iio.imread(path)
        assert data.dtype == np.uint8
        assert np.all(data == 128)

    def test_tiff_is_16_bit(self, tmp_path):
        path = write_image(tmp_path / "sub" / "out.tif", np.ones((4, 4, 3), dtype=np.float32))
        data = tifffile.imread(path)
        assert data.dtype == np.uint16
        assert data.shape == (4, 4, 3)
        assert np.all(data == 65535)

    def test_fits_round_trip_layout(self, tmp_path):
        image = np.zeros((4, 5, 3), dtype=np.float32)
        image[..., 0] = 0.25
        write_image(tmp_path / "out.fits", image)

        with fits.open(tmp_path / "out.fits") as hdul:
            data = hdul[0].data
        assert data.shape == (3, 4, 5)
        assert np.allclose(data[0], 0.25)

    def test_write_fits_header(self, tmp_path):
        header = fits.Header()
        header["OBJECT"] = "Jupiter"
        write_fits(tmp_path / "h.fits", np.zeros((2, 2)), header=header)
        assert fits.getheader(tmp_path / "h.fits")["OBJECT"] == "Jupiter"

    def test_unsupported_output(self, tmp_path):
        with pytest.raises(InvalidInputError):
            write_image(tmp_path / "out.xyz", np.zeros((2, 2)))
