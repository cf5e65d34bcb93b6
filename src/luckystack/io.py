"""
Frame sources and image writers.

Handles:
- Random-access frame sources (video files, image sequences, FITS sequences,
  in-memory arrays) behind a common ``total_frames()`` / ``decode(index)``
  interface
- Conversion of decoded buffers to float32 in [0, 1]
- Writing the final image as PNG/TIFF/FITS
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

import imageio.v3 as iio
import numpy as np
import tifffile
from astropy.io import fits

from .errors import DecodeError, InvalidInputError
from .utils import to_uint8, to_uint16

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".tif", ".tiff", ".jpg", ".jpeg", ".bmp")
FITS_EXTENSIONS = (".fits", ".fit", ".fts")
VIDEO_EXTENSIONS = (".avi", ".mp4", ".mov", ".mkv", ".m4v", ".webm", ".ser")


@runtime_checkable
class FrameSource(Protocol):
    """Random-access provider of decoded frames."""

    def total_frames(self) -> int:
        ...

    def decode(self, index: int) -> np.ndarray:
        """Return frame ``index`` or raise DecodeError."""
        ...


def to_float01(frame: np.ndarray) -> np.ndarray:
    """
    Convert a decoded buffer to float32 in [0, 1].

    Parameters
    ----------
    frame : np.ndarray
        (H, W) or (H, W, C) array. Integer types are scaled by their maximum;
        floats are passed through. A fourth (alpha) channel is dropped.

    Returns
    -------
    np.ndarray
        float32 array of shape (H, W) or (H, W, 3).
    """
    frame = np.asarray(frame)
    if frame.ndim == 3 and frame.shape[2] == 4:
        frame = frame[..., :3]
    elif frame.ndim == 3 and frame.shape[2] == 1:
        frame = frame[..., 0]
    if frame.ndim not in (2, 3) or frame.size == 0:
        raise InvalidInputError(f"Unsupported frame shape {frame.shape}")

    if frame.dtype == np.uint8:
        return frame.astype(np.float32) / 255.0
    if frame.dtype == np.uint16:
        return frame.astype(np.float32) / 65535.0
    if np.issubdtype(frame.dtype, np.integer):
        info = np.iinfo(frame.dtype)
        out = frame.astype(np.float32)
        if info.min < 0:
            out -= info.min
        return out / float(info.max - info.min)
    if frame.dtype == np.bool_:
        return frame.astype(np.float32)
    return frame.astype(np.float32, copy=False)


class ArrayFrameSource:
    """
    Frame source backed by an in-memory sequence of arrays.

    ``failing`` lists indices whose decode raises DecodeError, which is
    useful to exercise the skip path.
    """

    def __init__(self, frames, failing=()):
        self._frames = frames
        self._failing = set(failing)

    def total_frames(self) -> int:
        return len(self._frames)

    def decode(self, index: int) -> np.ndarray:
        if not 0 <= index < len(self._frames):
            raise DecodeError(index, "index out of range")
        if index in self._failing:
            raise DecodeError(index, "simulated decode failure")
        return self._frames[index]


class ImageSequenceSource:
    """Directory (or explicit list) of image files, one frame per file, sorted by name."""

    def __init__(self, paths: list[Path]):
        self.paths = [Path(p) for p in paths]

    @classmethod
    def from_directory(cls, directory: str | Path) -> ImageSequenceSource:
        directory = Path(directory)
        paths = sorted(
            p for p in directory.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS
        )
        logger.info("Discovered %d image frames in %s", len(paths), directory.name)
        return cls(paths)

    def total_frames(self) -> int:
        return len(self.paths)

    def decode(self, index: int) -> np.ndarray:
        try:
            path = self.paths[index]
        except IndexError:
            raise DecodeError(index, "index out of range") from None
        try:
            if path.suffix.lower() in (".tif", ".tiff"):
                return tifffile.imread(path)
            return iio.imread(path)
        except Exception as exc:
            raise DecodeError(index, f"cannot read {path.name}: {exc}", exc) from exc


class FitsSequenceSource:
    """Directory of FITS frames (primary HDU), sorted by name."""

    def __init__(self, paths: list[Path]):
        self.paths = [Path(p) for p in paths]

    @classmethod
    def from_directory(cls, directory: str | Path) -> FitsSequenceSource:
        directory = Path(directory)
        paths = sorted(
            p for p in directory.iterdir() if p.suffix.lower() in FITS_EXTENSIONS
        )
        logger.info("Discovered %d FITS frames in %s", len(paths), directory.name)
        return cls(paths)

    def total_frames(self) -> int:
        return len(self.paths)

    def decode(self, index: int) -> np.ndarray:
        try:
            path = self.paths[index]
        except IndexError:
            raise DecodeError(index, "index out of range") from None
        try:
            with fits.open(path) as hdul:
                # astropy applies BZERO/BSCALE on access
                data = np.array(hdul[0].data, dtype=np.float32)
        except Exception as exc:
            raise DecodeError(index, f"cannot read {path.name}: {exc}", exc) from exc

        if data.ndim == 3 and data.shape[0] in (3, 4):
            data = np.moveaxis(data, 0, -1)
        peak = float(np.nanmax(data)) if data.size else 0.0
        # Integer-valued FITS frames come in ADU; scale to [0, 1]
        if peak > 1.0:
            data /= 65535.0 if peak <= 65535.0 else peak
        return data


class VideoFileSource:
    """
    Video file decoded through imageio's PyAV plugin.

    Random access seeks in the container; a lock serialises decoder access
    so the source can be shared by worker threads.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        if not self.path.is_file():
            raise InvalidInputError(f"Video file not found: {self.path}")
        self._lock = threading.Lock()
        try:
            self._file = iio.imopen(self.path, "r", plugin="pyav")
            props = self._file.properties(index=...)
        except Exception as exc:
            raise InvalidInputError(f"Cannot open video {self.path}: {exc}") from exc
        self._n_frames = int(props.n_images or props.shape[0])
        logger.info("Opened video %s: %d frames", self.path.name, self._n_frames)

    def total_frames(self) -> int:
        return self._n_frames

    def decode(self, index: int) -> np.ndarray:
        if not 0 <= index < self._n_frames:
            raise DecodeError(index, "index out of range")
        with self._lock:
            try:
                return self._file.read(index=index)
            except Exception as exc:
                raise DecodeError(index, str(exc), exc) from exc

    def close(self) -> None:
        with self._lock:
            self._file.close()

    def __enter__(self) -> VideoFileSource:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def open_source(path: str | Path) -> FrameSource:
    """
    Open a video file, an image directory or a FITS directory.

    Raises
    ------
    InvalidInputError
        If the path does not exist or contains no usable frames.
    """
    path = Path(path)
    if not path.exists():
        raise InvalidInputError(f"Input not found: {path}")

    if path.is_dir():
        fits_source = FitsSequenceSource.from_directory(path)
        if fits_source.total_frames() > 0:
            return fits_source
        image_source = ImageSequenceSource.from_directory(path)
        if image_source.total_frames() > 0:
            return image_source
        raise InvalidInputError(f"No image or FITS frames in {path}")

    if path.suffix.lower() in VIDEO_EXTENSIONS:
        return VideoFileSource(path)
    raise InvalidInputError(f"Unsupported input type: {path.suffix}")


def write_image(path: str | Path, image: np.ndarray) -> Path:
    """
    Write a [0, 1] float image; bit depth follows the extension.

    PNG/JPEG are written 8-bit through imageio, TIFF 16-bit through tifffile
    and FITS as float32 through astropy.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()

    if suffix in FITS_EXTENSIONS:
        write_fits(path, image, overwrite=True)
    elif suffix in (".tif", ".tiff"):
        photometric = "rgb" if image.ndim == 3 else "minisblack"
        tifffile.imwrite(path, to_uint16(image), photometric=photometric)
    elif suffix in (".png", ".jpg", ".jpeg", ".bmp"):
        iio.imwrite(path, to_uint8(image))
    else:
        raise InvalidInputError(f"Unsupported output format: {suffix}")

    logger.info("Wrote %s", path)
    return path


def write_fits(
    path: str | Path,
    data: np.ndarray,
    header: fits.Header | None = None,
    overwrite: bool = False,
) -> None:
    """
    Write a FITS file.

    Colour images are stored as (3, H, W) cubes, the FITS convention.

    Parameters
    ----------
    path : str or Path
        Output path.
    data : np.ndarray
        Image data to write.
    header : fits.Header, optional
        Header to include. A minimal header is created if not provided.
    overwrite : bool, default False
        Whether to overwrite existing file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if header is None:
        header = fits.Header()

    data = np.asarray(data, dtype=np.float32)
    if data.ndim == 3:
        data = np.moveaxis(data, -1, 0)

    hdu = fits.PrimaryHDU(data=data, header=header)
    hdu.writeto(path, overwrite=overwrite)
    logger.info("Wrote FITS: %s", path)
