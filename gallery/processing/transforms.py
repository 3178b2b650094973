"""In-place transforms and filters applied to :class:`RasterImage` objects.

Every public operation builds a complete replacement buffer first and commits
it with :meth:`RasterImage.replace_pixels` only once the buffer is finished, so
a failing operation leaves the image exactly as it was. Destination buffers are
allocated through :func:`new_canvas`, which starts PNG and GIF buffers fully
transparent and copies pixels without alpha blending.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from .raster import ImageFormat, MediaError, RasterImage, round_half_up


LOGGER = logging.getLogger(__name__)

TRANSPARENT = (0, 0, 0, 0)

SHARPEN_KERNEL: Tuple[Tuple[int, ...], ...] = (
    (0, -1, 0),
    (-1, 5, -1),
    (0, -1, 0),
)
GAUSSIAN_KERNEL: Tuple[Tuple[int, ...], ...] = (
    (1, 2, 1),
    (2, 4, 2),
    (1, 2, 1),
)


class TransformError(MediaError):
    """Raised when an operation cannot be applied to an image."""


class InvalidDimensions(TransformError, ValueError):
    """Raised when an operation receives a non-positive target size."""


class UnknownOperation(TransformError, ValueError):
    """Raised when an operation name is not registered."""


class InvalidParameter(TransformError, ValueError):
    """Raised when an operation parameter cannot be interpreted."""


@dataclass(frozen=True)
class Region:
    """Rectangular sub-area of a parent image."""

    x: int
    y: int
    width: int
    height: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


# ----------------------------------------------------------------------
# Geometry helpers
# ----------------------------------------------------------------------
def _require_positive(operation: str, **dimensions: float) -> None:
    for name, value in dimensions.items():
        if value is None or value <= 0:
            raise InvalidDimensions(
                f"{operation} requires a positive {name} (received {value!r})"
            )


def fit_dimensions(
    width: int,
    height: int,
    target_width: float,
    target_height: float,
    maintain_aspect: bool = True,
) -> Tuple[int, int]:
    """Return the integer size ``resize`` produces for the given targets."""

    _require_positive("resize", width=target_width, height=target_height)
    if maintain_aspect:
        ratio = width / height
        if target_width / target_height > ratio:
            target_width = target_height * ratio
        else:
            target_height = target_width / ratio
    return max(1, round_half_up(target_width)), max(1, round_half_up(target_height))


def cover_dimensions(
    width: int,
    height: int,
    thumb_width: int,
    thumb_height: int,
) -> Tuple[int, int]:
    """Return the scaled size that fully covers a ``thumb_width`` x ``thumb_height`` box."""

    _require_positive("thumbnail", width=thumb_width, height=thumb_height)
    original_ratio = width / height
    thumb_ratio = thumb_width / thumb_height
    if original_ratio >= thumb_ratio:
        scaled_width = round_half_up(width / (height / thumb_height))
        return max(thumb_width, scaled_width), thumb_height
    scaled_height = round_half_up(height / (width / thumb_width))
    return thumb_width, max(thumb_height, scaled_height)


def centered_region(
    parent_width: int,
    parent_height: int,
    width: float,
    height: float,
    x: Optional[float] = None,
    y: Optional[float] = None,
) -> Region:
    """Resolve a crop rectangle, centering any origin that is not given."""

    _require_positive("crop", width=width, height=height)
    crop_width = round_half_up(width)
    crop_height = round_half_up(height)
    if crop_width <= 0 or crop_height <= 0:
        raise InvalidDimensions("crop requires a region of at least one pixel")

    origin_x = round_half_up((parent_width - crop_width) / 2) if x is None else round_half_up(x)
    origin_y = round_half_up((parent_height - crop_height) / 2) if y is None else round_half_up(y)
    origin_x = max(0, min(origin_x, max(0, parent_width - crop_width)))
    origin_y = max(0, min(origin_y, max(0, parent_height - crop_height)))
    return Region(origin_x, origin_y, crop_width, crop_height)


# ----------------------------------------------------------------------
# Buffer allocation
# ----------------------------------------------------------------------
def background_color(image_format: ImageFormat, mode: str) -> Tuple[int, ...]:
    if image_format.supports_transparency:
        return TRANSPARENT
    if mode == "RGBA":
        return (0, 0, 0, 255)
    return (0, 0, 0)


def new_canvas(image_format: ImageFormat, mode: str, size: Tuple[int, int]) -> Image.Image:
    """Allocate a destination buffer for an image of *image_format*."""

    width, height = size
    _require_positive("canvas", width=width, height=height)
    if image_format.supports_transparency:
        return Image.new("RGBA", (width, height), TRANSPARENT)
    return Image.new(mode, (width, height), background_color(image_format, mode))


def _copy_onto_canvas(
    image: RasterImage,
    source: Image.Image,
    size: Tuple[int, int],
    offset: Tuple[int, int] = (0, 0),
) -> Image.Image:
    canvas = new_canvas(image.image_format, image.mode, size)
    # Pasting without a mask replaces pixels, alpha included.
    canvas.paste(source.convert(canvas.mode) if source.mode != canvas.mode else source, offset)
    return canvas


def _commit(image: RasterImage, operation: str, build: Callable[[], Image.Image]) -> None:
    before = image.size
    try:
        result = build()
    except MediaError:
        raise
    except (OSError, ValueError, MemoryError) as error:
        raise TransformError(f"{operation} failed: {error}") from error
    image.replace_pixels(result)
    LOGGER.debug("Applied %s: %sx%s -> %sx%s", operation, before[0], before[1], *image.size)


# ----------------------------------------------------------------------
# Pixel helpers
# ----------------------------------------------------------------------
def _map_color_channels(
    pixels: Image.Image,
    transform: Callable[[np.ndarray], np.ndarray],
) -> Image.Image:
    """Apply *transform* to the RGB channels, leaving alpha untouched."""

    array = np.array(pixels, dtype=np.uint8)
    color = array[..., :3].astype(np.float64)
    result = transform(color)
    # Float results are truncated, not rounded.
    array[..., :3] = np.clip(result, 0, 255).astype(np.uint8)
    return Image.fromarray(array)


def _convolve(
    color: np.ndarray,
    kernel: Sequence[Sequence[float]],
    divisor: float,
    offset: float = 0.0,
) -> np.ndarray:
    """3x3 convolution with border-replicated edges."""

    height, width = color.shape[:2]
    padded = np.pad(color, ((1, 1), (1, 1), (0, 0)), mode="edge")
    accumulator = np.zeros_like(color, dtype=np.float64)
    for row, weights in enumerate(kernel):
        for column, weight in enumerate(weights):
            if weight:
                accumulator += weight * padded[row : row + height, column : column + width]
    return accumulator / divisor + offset


# ----------------------------------------------------------------------
# Geometric operations
# ----------------------------------------------------------------------
def _resized(image: RasterImage, width: int, height: int) -> Image.Image:
    scaled = image.pixels.resize((width, height), Image.Resampling.LANCZOS)
    return _copy_onto_canvas(image, scaled, (width, height))


def _cropped(image: RasterImage, region: Region) -> Image.Image:
    parent_width, parent_height = image.size
    box = (
        region.x,
        region.y,
        min(region.x + region.width, parent_width),
        min(region.y + region.height, parent_height),
    )
    return _copy_onto_canvas(image, image.pixels.crop(box), (region.width, region.height))


def resize(
    image: RasterImage,
    width: float,
    height: float,
    maintain_aspect: bool = True,
) -> None:
    """Scale *image* to ``width`` x ``height``, optionally preserving its aspect ratio."""

    target = fit_dimensions(image.width, image.height, width, height, maintain_aspect)
    _commit(image, "resize", lambda: _resized(image, *target))


def crop(
    image: RasterImage,
    width: float,
    height: float,
    x: Optional[float] = None,
    y: Optional[float] = None,
) -> None:
    """Cut a ``width`` x ``height`` rectangle, centered unless an origin is given."""

    region = centered_region(image.width, image.height, width, height, x, y)
    _commit(image, "crop", lambda: _cropped(image, region))


def thumbnail(image: RasterImage, width: int, height: int) -> None:
    """Cover-and-crop *image* to exactly ``width`` x ``height``."""

    thumb_width, thumb_height = round_half_up(width), round_half_up(height)
    scaled_width, scaled_height = cover_dimensions(
        image.width, image.height, thumb_width, thumb_height
    )

    def build() -> Image.Image:
        scaled = image.pixels.resize((scaled_width, scaled_height), Image.Resampling.LANCZOS)
        region = centered_region(scaled_width, scaled_height, thumb_width, thumb_height)
        try:
            return _copy_onto_canvas(
                image, scaled.crop(region.box), (thumb_width, thumb_height)
            )
        finally:
            scaled.close()

    _commit(image, "thumbnail", build)


def rotate(image: RasterImage, degrees: float) -> None:
    """Rotate counter-clockwise, growing the canvas to the rotated bounding box."""

    fill = background_color(image.image_format, image.mode)

    def build() -> Image.Image:
        rotated = image.pixels.rotate(
            float(degrees),
            resample=Image.Resampling.BICUBIC,
            expand=True,
            fillcolor=fill,
        )
        return _copy_onto_canvas(image, rotated, rotated.size)

    _commit(image, "rotate", build)


def flip_horizontal(image: RasterImage) -> None:
    _commit(
        image,
        "flip_horizontal",
        lambda: image.pixels.transpose(Image.Transpose.FLIP_LEFT_RIGHT),
    )


def flip_vertical(image: RasterImage) -> None:
    _commit(
        image,
        "flip_vertical",
        lambda: image.pixels.transpose(Image.Transpose.FLIP_TOP_BOTTOM),
    )


# ----------------------------------------------------------------------
# Filters
# ----------------------------------------------------------------------
def grayscale(image: RasterImage) -> None:
    """Replace every pixel with its luminance, keeping alpha."""

    def transform(color: np.ndarray) -> np.ndarray:
        luminance = np.floor(
            0.299 * color[..., 0] + 0.587 * color[..., 1] + 0.114 * color[..., 2]
        )
        return np.repeat(luminance[..., np.newaxis], 3, axis=2)

    _commit(image, "grayscale", lambda: _map_color_channels(image.pixels, transform))


def brightness(image: RasterImage, level: int) -> None:
    """Add *level* (-255..255) to every color channel."""

    amount = max(-255, min(255, int(level)))
    _commit(
        image,
        "brightness",
        lambda: _map_color_channels(image.pixels, lambda color: color + amount),
    )


def contrast(image: RasterImage, level: int) -> None:
    """Adjust contrast by *level* (-100..100); positive values flatten the image."""

    amount = max(-100, min(100, int(level)))
    factor = ((100.0 - amount) / 100.0) ** 2

    def transform(color: np.ndarray) -> np.ndarray:
        return ((color / 255.0 - 0.5) * factor + 0.5) * 255.0

    _commit(image, "contrast", lambda: _map_color_channels(image.pixels, transform))


def sharpen(image: RasterImage) -> None:
    _commit(
        image,
        "sharpen",
        lambda: _map_color_channels(
            image.pixels, lambda color: _convolve(color, SHARPEN_KERNEL, divisor=1)
        ),
    )


def blur(image: RasterImage, radius: int = 1) -> None:
    """Gaussian blur repeated ``radius`` times (clamped to 1..10)."""

    passes = max(1, min(10, int(radius)))

    def transform(color: np.ndarray) -> np.ndarray:
        for _ in range(passes):
            color = np.floor(np.clip(_convolve(color, GAUSSIAN_KERNEL, divisor=16), 0, 255))
        return color

    _commit(image, "blur", lambda: _map_color_channels(image.pixels, transform))


def color_overlay(image: RasterImage, red: int, green: int, blue: int, opacity: float) -> None:
    """Blend a solid color over the image at ``opacity`` percent."""

    overlay = np.array(
        [max(0, min(255, int(red))), max(0, min(255, int(green))), max(0, min(255, int(blue)))],
        dtype=np.float64,
    )
    alpha = max(0.0, min(100.0, float(opacity))) / 100.0

    def transform(color: np.ndarray) -> np.ndarray:
        return color * (1 - alpha) + overlay * alpha

    _commit(image, "color_overlay", lambda: _map_color_channels(image.pixels, transform))


def sepia(image: RasterImage, intensity: int = 80) -> None:
    """Tint towards sepia; ``intensity`` (0..100) mixes with the original colors."""

    factor = max(0, min(100, int(intensity))) / 100.0

    def transform(color: np.ndarray) -> np.ndarray:
        red, green, blue = color[..., 0], color[..., 1], color[..., 2]
        toned = np.stack(
            [
                (red * 0.393 + green * 0.769 + blue * 0.189) * factor + red * (1 - factor),
                (red * 0.349 + green * 0.686 + blue * 0.168) * factor + green * (1 - factor),
                (red * 0.272 + green * 0.534 + blue * 0.131) * factor + blue * (1 - factor),
            ],
            axis=-1,
        )
        return np.minimum(255, np.floor(toned))

    _commit(image, "sepia", lambda: _map_color_channels(image.pixels, transform))


def vignette(image: RasterImage, strength: int = 50) -> None:
    """Darken pixels in proportion to their distance from the center."""

    factor = max(0, min(100, int(strength))) / 100.0
    width, height = image.size
    center_x, center_y = width / 2, height / 2
    max_radius = math.sqrt(center_x * center_x + center_y * center_y)

    def transform(color: np.ndarray) -> np.ndarray:
        ys, xs = np.mgrid[0:height, 0:width]
        distance = np.sqrt((xs - center_x) ** 2 + (ys - center_y) ** 2)
        weights = np.clip(1.0 - (distance / max_radius) * factor, 0.0, 1.0)
        return np.floor(color * weights[..., np.newaxis])

    _commit(image, "vignette", lambda: _map_color_channels(image.pixels, transform))


# ----------------------------------------------------------------------
# Named operation dispatch
# ----------------------------------------------------------------------
OperationHandler = Callable[[RasterImage, Mapping[str, Any]], None]


def _number(params: Mapping[str, Any], key: str, default: Any, cast: Callable[[Any], Any]) -> Any:
    value = params.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise InvalidParameter(f"Parameter '{key}' must be numeric")
    try:
        result = cast(value)
    except (TypeError, ValueError) as error:
        raise InvalidParameter(f"Parameter '{key}' must be numeric (received {value!r})") from error
    if isinstance(result, float) and not math.isfinite(result):
        raise InvalidParameter(f"Parameter '{key}' must be finite")
    return result


def _int(params: Mapping[str, Any], key: str, default: Optional[int]) -> Optional[int]:
    return _number(params, key, default, lambda value: int(float(value)))


def _float(params: Mapping[str, Any], key: str, default: float) -> float:
    return _number(params, key, default, float)


def _flag(params: Mapping[str, Any], key: str, default: bool) -> bool:
    value = params.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise InvalidParameter(f"Parameter '{key}' must be a boolean (received {value!r})")


OPERATIONS: Dict[str, OperationHandler] = {
    "resize": lambda image, p: resize(
        image,
        _float(p, "width", 800),
        _float(p, "height", 600),
        _flag(p, "maintain_aspect", True),
    ),
    "crop": lambda image, p: crop(
        image,
        _float(p, "width", 200),
        _float(p, "height", 200),
        _int(p, "x", None),
        _int(p, "y", None),
    ),
    "thumbnail": lambda image, p: thumbnail(image, _int(p, "width", 200), _int(p, "height", 200)),
    "rotate": lambda image, p: rotate(image, _float(p, "degrees", 90)),
    "flip_horizontal": lambda image, p: flip_horizontal(image),
    "flip_vertical": lambda image, p: flip_vertical(image),
    "grayscale": lambda image, p: grayscale(image),
    "brightness": lambda image, p: brightness(image, _int(p, "level", 0)),
    "contrast": lambda image, p: contrast(image, _int(p, "level", 0)),
    "sharpen": lambda image, p: sharpen(image),
    "blur": lambda image, p: blur(image, _int(p, "radius", 2)),
    "sepia": lambda image, p: sepia(image, _int(p, "intensity", 80)),
    "vignette": lambda image, p: vignette(image, _int(p, "strength", 50)),
    "color_overlay": lambda image, p: color_overlay(
        image,
        _int(p, "red", 255),
        _int(p, "green", 0),
        _int(p, "blue", 0),
        _float(p, "opacity", 30),
    ),
}

OPERATION_NAMES: Tuple[str, ...] = tuple(OPERATIONS)


def apply_operation(
    image: RasterImage,
    operation: str,
    params: Optional[Mapping[str, Any]] = None,
) -> None:
    """Apply the single named *operation* to *image*."""

    handler = OPERATIONS.get(str(operation or "").strip().lower())
    if handler is None:
        raise UnknownOperation(f"Unknown operation: {operation}")
    handler(image, params or {})


__all__ = [
    "GAUSSIAN_KERNEL",
    "InvalidDimensions",
    "InvalidParameter",
    "OPERATIONS",
    "OPERATION_NAMES",
    "Region",
    "SHARPEN_KERNEL",
    "TransformError",
    "UnknownOperation",
    "apply_operation",
    "background_color",
    "blur",
    "brightness",
    "centered_region",
    "color_overlay",
    "contrast",
    "cover_dimensions",
    "crop",
    "fit_dimensions",
    "flip_horizontal",
    "flip_vertical",
    "grayscale",
    "new_canvas",
    "resize",
    "rotate",
    "sepia",
    "sharpen",
    "thumbnail",
    "vignette",
]
