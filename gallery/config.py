"""Configuration loading utilities for the gallery media pipeline."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".gallery_write_check"

DEFAULT_IMAGE_MIMES: Tuple[str, ...] = ("image/jpeg", "image/png", "image/gif", "image/webp")
DEFAULT_IMAGE_EXTENSIONS: Tuple[str, ...] = ("jpg", "jpeg", "png", "gif", "webp")
DEFAULT_VIDEO_MIMES: Tuple[str, ...] = (
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "video/webm",
)
DEFAULT_VIDEO_EXTENSIONS: Tuple[str, ...] = ("mp4", "mov", "avi", "mkv", "webm")


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The helper attempts to create ``preferred`` and returns it when writable. If
    the preferred location is unavailable, each candidate in ``fallbacks`` is
    tried in order. The first writable fallback is returned along with a flag
    indicating that a fallback was used. When no candidate can be prepared the
    original ``preferred`` path is returned.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _normalize_mimes(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    if not values:
        return ()
    return tuple(str(value).strip().lower() for value in values if str(value).strip())


def _normalize_extensions(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    if not values:
        return ()
    cleaned = (str(value).strip().lower().lstrip(".") for value in values)
    return tuple(value for value in cleaned if value)


def _clamp_quality(value: Any) -> int:
    try:
        quality = int(value)
    except (TypeError, ValueError):
        return 85
    return max(1, min(100, quality))


@dataclass(frozen=True)
class MediaSettings:
    """Validation and thumbnail settings for one kind of uploaded media."""

    allowed_mimes: Tuple[str, ...] = ()
    allowed_extensions: Tuple[str, ...] = ()
    max_file_size: int = 0
    thumbnail_width: int = 200
    thumbnail_height: int = 200
    default_quality: int = 85
    thumbnail_timestamp: float = 1.0
    enabled: bool = True

    @classmethod
    def from_mapping(
        cls,
        mapping: Optional[Mapping[str, Any]],
        *,
        defaults: "MediaSettings",
    ) -> "MediaSettings":
        if not mapping:
            return defaults

        def _value(key: str, fallback: Any) -> Any:
            value = mapping.get(key)
            return fallback if value is None else value

        # Legacy configurations used ``thumb_width``/``allowed_types``.
        width = mapping.get("thumbnail_width", mapping.get("thumb_width"))
        height = mapping.get("thumbnail_height", mapping.get("thumb_height"))
        extensions = mapping.get("allowed_extensions", mapping.get("allowed_types"))

        return cls(
            allowed_mimes=_normalize_mimes(_value("allowed_mimes", defaults.allowed_mimes)),
            allowed_extensions=_normalize_extensions(
                defaults.allowed_extensions if extensions is None else extensions
            ),
            max_file_size=max(0, int(_value("max_file_size", defaults.max_file_size))),
            thumbnail_width=max(1, int(defaults.thumbnail_width if width is None else width)),
            thumbnail_height=max(1, int(defaults.thumbnail_height if height is None else height)),
            default_quality=_clamp_quality(_value("default_quality", defaults.default_quality)),
            thumbnail_timestamp=max(
                0.0, float(_value("thumbnail_timestamp", defaults.thumbnail_timestamp))
            ),
            enabled=bool(_value("enabled", defaults.enabled)),
        )


DEFAULT_IMAGE_SETTINGS = MediaSettings(
    allowed_mimes=DEFAULT_IMAGE_MIMES,
    allowed_extensions=DEFAULT_IMAGE_EXTENSIONS,
    max_file_size=5 * 1024 * 1024,
)

DEFAULT_VIDEO_SETTINGS = MediaSettings(
    allowed_mimes=DEFAULT_VIDEO_MIMES,
    allowed_extensions=DEFAULT_VIDEO_EXTENSIONS,
    max_file_size=100 * 1024 * 1024,
    enabled=False,
)


@dataclass(frozen=True)
class AppConfig:
    """Simple container describing runtime paths and media settings."""

    storage_root: Path
    upload_root: Path
    original_dir: str = "original"
    thumb_dir: str = "thumb"
    pristine_dir: str = "pristine"
    image: MediaSettings = field(default_factory=lambda: DEFAULT_IMAGE_SETTINGS)
    video: MediaSettings = field(default_factory=lambda: DEFAULT_VIDEO_SETTINGS)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".gallery" / "storage"
        storage_root, _ = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        preferred_uploads = (base_path / mapping.get("upload_root", "uploads")).resolve()
        upload_root, _ = _select_writable_directory(
            preferred_uploads,
            label="upload",
            fallbacks=(storage_root / "uploads",),
        )

        return cls(
            storage_root=storage_root,
            upload_root=upload_root,
            original_dir=str(mapping.get("original_dir") or "original"),
            thumb_dir=str(mapping.get("thumb_dir") or "thumb"),
            pristine_dir=str(mapping.get("pristine_dir") or "pristine"),
            image=MediaSettings.from_mapping(mapping.get("image"), defaults=DEFAULT_IMAGE_SETTINGS),
            video=MediaSettings.from_mapping(mapping.get("video"), defaults=DEFAULT_VIDEO_SETTINGS),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = [
    "AppConfig",
    "DEFAULT_IMAGE_SETTINGS",
    "DEFAULT_VIDEO_SETTINGS",
    "MediaSettings",
    "load_config",
]
