"""Decoded raster images and their format-specific encoding rules."""

from __future__ import annotations

import enum
import io
import logging
import math
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError


LOGGER = logging.getLogger(__name__)

DEFAULT_QUALITY = 85


class MediaError(RuntimeError):
    """Base class for image pipeline errors."""


class DecodeError(MediaError):
    """Raised when image bytes cannot be decoded."""


class UnsupportedFormat(DecodeError):
    """Raised when the data is an image in a format the pipeline does not handle."""


class InvalidImage(DecodeError):
    """Raised when the data is not a readable image."""


class EncodeError(MediaError):
    """Raised when an image cannot be re-encoded."""


class ImageFormat(str, enum.Enum):
    JPEG = "JPEG"
    PNG = "PNG"
    GIF = "GIF"
    WEBP = "WEBP"

    @property
    def supports_transparency(self) -> bool:
        """Formats whose new buffers must start transparent."""

        return self in (ImageFormat.PNG, ImageFormat.GIF)

    @property
    def mime_type(self) -> str:
        return f"image/{self.value.lower()}"


def round_half_up(value: float) -> int:
    """Round *value* to the nearest integer, ties away from zero."""

    if value < 0:
        return -int(math.floor(-value + 0.5))
    return int(math.floor(value + 0.5))


def clamp_quality(quality: int) -> int:
    return max(1, min(100, int(quality)))


def png_compression_level(quality: int) -> int:
    """Map a 1-100 quality value onto PNG's 0-9 compression level.

    Higher quality yields a lower compression level: 85 -> 2, 100 -> 0, 10 -> 9.
    """

    level = round_half_up((100 - clamp_quality(quality)) / 10)
    return max(0, min(9, level))


def working_mode(image_format: ImageFormat, source: Image.Image) -> str:
    """Return the Pillow mode used while a decoded image is being edited."""

    if image_format.supports_transparency:
        return "RGBA"
    if image_format is ImageFormat.WEBP and (
        "A" in source.getbands() or "transparency" in source.info
    ):
        return "RGBA"
    return "RGB"


class RasterImage:
    """In-memory decoded image owned by a single manipulation request.

    ``width``/``height`` always mirror the pixel buffer, ``image_format`` is
    fixed at decode time and ``quality`` is the default encode quality used by
    :meth:`to_bytes` and :meth:`save`.
    """

    def __init__(
        self,
        pixels: Image.Image,
        image_format: ImageFormat,
        *,
        quality: int = DEFAULT_QUALITY,
    ) -> None:
        self._pixels: Optional[Image.Image] = pixels
        self._format = image_format
        self._quality = clamp_quality(quality)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_bytes(cls, data: bytes, *, quality: int = DEFAULT_QUALITY) -> "RasterImage":
        """Decode *data* into a :class:`RasterImage`."""

        try:
            source = Image.open(io.BytesIO(data))
        except UnidentifiedImageError as error:
            raise InvalidImage("Not a valid image file") from error
        except Image.DecompressionBombError as error:
            raise InvalidImage(f"Image exceeds the decoder pixel limit: {error}") from error
        except OSError as error:
            raise InvalidImage(f"Unable to read image: {error}") from error

        try:
            try:
                image_format = ImageFormat(source.format or "")
            except ValueError as error:
                raise UnsupportedFormat(
                    f"Unsupported image type: {source.format or 'unknown'}"
                ) from error

            width, height = source.size
            if width <= 0 or height <= 0:
                raise InvalidImage("Image reports non-positive dimensions")

            try:
                source.load()
                pixels = source.convert(working_mode(image_format, source))
            except (OSError, ValueError) as error:
                raise InvalidImage(f"Unable to decode image data: {error}") from error
        finally:
            source.close()

        LOGGER.debug(
            "Decoded %s image %sx%s (mode=%s)", image_format.value, width, height, pixels.mode
        )
        return cls(pixels, image_format, quality=quality)

    @classmethod
    def open(cls, path: Path, *, quality: int = DEFAULT_QUALITY) -> "RasterImage":
        """Decode the image stored at *path*."""

        try:
            data = Path(path).read_bytes()
        except OSError as error:
            raise InvalidImage(f"File not found or unreadable: {path}") from error
        return cls.from_bytes(data, quality=quality)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def pixels(self) -> Image.Image:
        if self._pixels is None:
            raise MediaError("Image has already been released")
        return self._pixels

    @property
    def width(self) -> int:
        return self.pixels.width

    @property
    def height(self) -> int:
        return self.pixels.height

    @property
    def size(self) -> Tuple[int, int]:
        return self.pixels.size

    @property
    def image_format(self) -> ImageFormat:
        return self._format

    @property
    def quality(self) -> int:
        return self._quality

    @property
    def mode(self) -> str:
        return self.pixels.mode

    def replace_pixels(self, pixels: Image.Image) -> None:
        """Commit a fully built buffer as the new image content."""

        if pixels.width <= 0 or pixels.height <= 0:
            raise MediaError("Refusing to commit an empty pixel buffer")
        previous = self._pixels
        self._pixels = pixels
        if previous is not None and previous is not pixels:
            previous.close()

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------
    def to_bytes(self, quality: Optional[int] = None) -> bytes:
        """Encode the image in its original format."""

        effective = self._quality if quality is None else clamp_quality(quality)
        buffer = io.BytesIO()
        try:
            if self._format is ImageFormat.JPEG:
                self.pixels.convert("RGB").save(buffer, format="JPEG", quality=effective)
            elif self._format is ImageFormat.PNG:
                self.pixels.save(
                    buffer, format="PNG", compress_level=png_compression_level(effective)
                )
            elif self._format is ImageFormat.WEBP:
                self.pixels.save(buffer, format="WEBP", quality=effective)
            else:
                palette_image, transparency = _to_gif_palette(self.pixels)
                options = {} if transparency is None else {"transparency": transparency}
                palette_image.save(buffer, format="GIF", **options)
        except (OSError, ValueError, KeyError) as error:
            raise EncodeError(f"Unable to encode {self._format.value} image: {error}") from error
        return buffer.getvalue()

    def save(self, path: Path, quality: Optional[int] = None) -> None:
        """Encode the image and write it to *path*."""

        data = self.to_bytes(quality)
        try:
            Path(path).write_bytes(data)
        except OSError as error:
            raise EncodeError(f"Unable to write image to {path}: {error}") from error
        LOGGER.debug("Saved %s image (%d bytes) to %s", self._format.value, len(data), path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        if self._pixels is not None:
            self._pixels.close()
            self._pixels = None

    def __enter__(self) -> "RasterImage":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        if self._pixels is None:
            return f"RasterImage(format={self._format.value}, released)"
        return (
            f"RasterImage(format={self._format.value}, size={self.width}x{self.height}, "
            f"quality={self._quality})"
        )


def _to_gif_palette(pixels: Image.Image) -> Tuple[Image.Image, Optional[int]]:
    """Quantise *pixels* for GIF output, reserving index 255 for transparency."""

    if pixels.mode != "RGBA":
        return pixels.convert("RGB").convert("P", palette=Image.Palette.ADAPTIVE), None

    alpha = pixels.getchannel("A")
    palette_image = pixels.convert("RGB").convert(
        "P", palette=Image.Palette.ADAPTIVE, colors=255
    )
    # Pad to a full 256-entry palette so index 255 always exists.
    palette = (palette_image.getpalette() or [])[: 255 * 3]
    palette_image.putpalette(palette + [0] * (768 - len(palette)))
    mask = alpha.point(lambda value: 255 if value <= 128 else 0)
    palette_image.paste(255, mask=mask)
    return palette_image, 255


def read_image_dimensions(path: Path) -> Tuple[int, int]:
    """Return ``(width, height)`` read from the header of the image at *path*."""

    try:
        with Image.open(path) as source:
            return source.size
    except UnidentifiedImageError as error:
        raise InvalidImage(f"Not a valid image file: {path}") from error
    except Image.DecompressionBombError as error:
        raise InvalidImage(f"Image exceeds the decoder pixel limit: {path}") from error
    except OSError as error:
        raise InvalidImage(f"Unable to read image: {path}") from error


__all__ = [
    "DEFAULT_QUALITY",
    "DecodeError",
    "EncodeError",
    "ImageFormat",
    "InvalidImage",
    "MediaError",
    "RasterImage",
    "UnsupportedFormat",
    "clamp_quality",
    "png_compression_level",
    "read_image_dimensions",
    "round_half_up",
    "working_mode",
]
