"""Image and video processing backends for gallery media."""

from .raster import (
    DecodeError,
    EncodeError,
    ImageFormat,
    InvalidImage,
    MediaError,
    RasterImage,
    UnsupportedFormat,
    read_image_dimensions,
)
from .transforms import (
    OPERATION_NAMES,
    InvalidDimensions,
    InvalidParameter,
    TransformError,
    UnknownOperation,
    apply_operation,
)
from .video import CommandResult, CommandRunner, SubprocessRunner, VideoKeyframeExtractor, VideoProbe

__all__ = [
    "CommandResult",
    "CommandRunner",
    "DecodeError",
    "EncodeError",
    "ImageFormat",
    "InvalidDimensions",
    "InvalidImage",
    "InvalidParameter",
    "MediaError",
    "OPERATION_NAMES",
    "RasterImage",
    "SubprocessRunner",
    "TransformError",
    "UnknownOperation",
    "UnsupportedFormat",
    "VideoKeyframeExtractor",
    "VideoProbe",
    "apply_operation",
    "read_image_dimensions",
]
