"""High level ingestion pipeline for uploaded gallery media."""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any, Dict, List, Optional, Sequence, Tuple

import filetype
from PIL import Image, ImageDraw, ImageFont

from .. import config as config_module
from ..config import AppConfig, MediaSettings
from ..processing.raster import MediaError, RasterImage, read_image_dimensions
from ..processing.transforms import thumbnail
from ..processing.video import VideoKeyframeExtractor
from .events import emit_file_event
from .naming import build_unique_filename, split_upload_name


LOGGER = logging.getLogger(__name__)

SAFE_IMAGE_MIMES: Tuple[str, ...] = ("image/jpeg", "image/png", "image/gif", "image/webp")
SAFE_VIDEO_MIMES: Tuple[str, ...] = (
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "video/webm",
)
VIDEO_THUMBNAIL_SUFFIX = ".jpg"
PLACEHOLDER_BACKGROUND = (45, 45, 45)
PLACEHOLDER_TEXT = "VIDEO"
PRISTINE_RETRY_MODE = 0o775


class IngestionError(RuntimeError):
    """Raised when an upload cannot be ingested."""


class UploadError(IngestionError):
    """Base class for upload failures reported back to the client."""

    def __init__(self, message: str, *, messages: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.messages: List[str] = list(messages) if messages else [message]


class UploadTransportError(UploadError):
    def __init__(self, status: "UploadStatus") -> None:
        super().__init__(status.message)
        self.status = status


class InvalidFileType(UploadError, ValueError):
    """Raised when the upload is not an accepted image or video."""


class FileTooLarge(UploadError, ValueError):
    """Raised when the upload exceeds the configured size limit."""


class InvalidPathError(UploadError, ValueError):
    """Raised when a folder or filename would escape the upload tree."""


class UploadValidationError(UploadError, ValueError):
    """Raised when several validation problems were found at once."""

    def __init__(self, problems: Sequence[UploadError]) -> None:
        messages = [message for problem in problems for message in problem.messages]
        super().__init__("; ".join(messages), messages=messages)
        self.problems: List[UploadError] = list(problems)


class DirectoryCreateError(UploadError):
    """Raised when an asset directory cannot be prepared."""


class MoveError(UploadError):
    """Raised when the working copy cannot be written."""


class ThumbnailError(UploadError):
    """Raised when no thumbnail could be produced for a stored asset."""


class UploadStatus(str, enum.Enum):
    OK = "ok"
    INI_SIZE = "ini_size"
    FORM_SIZE = "form_size"
    PARTIAL = "partial"
    NO_FILE = "no_file"
    NO_TMP_DIR = "no_tmp_dir"
    CANT_WRITE = "cant_write"
    EXTENSION = "extension"

    @property
    def message(self) -> str:
        return _STATUS_MESSAGES[self]


_STATUS_MESSAGES: Dict[UploadStatus, str] = {
    UploadStatus.OK: "The file was uploaded successfully.",
    UploadStatus.INI_SIZE: "The uploaded file exceeds the server's maximum upload size.",
    UploadStatus.FORM_SIZE: "The uploaded file exceeds the maximum size specified by the form.",
    UploadStatus.PARTIAL: "The uploaded file was only partially uploaded.",
    UploadStatus.NO_FILE: "No file was uploaded.",
    UploadStatus.NO_TMP_DIR: "Missing a temporary folder on the server.",
    UploadStatus.CANT_WRITE: "Failed to write file to disk. Check server permissions.",
    UploadStatus.EXTENSION: "A server extension stopped the file upload.",
}


class MediaKind(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"


@dataclass
class UploadedFile:
    """An upload as handed over by the transport layer."""

    original_name: str
    mime_type: str
    data: bytes
    status: UploadStatus = UploadStatus.OK
    extension: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredAsset:
    working_path: Path
    pristine_path: Path
    thumbnail_path: Path

    def paths(self) -> Tuple[Path, Path, Path]:
        return (self.working_path, self.pristine_path, self.thumbnail_path)


@dataclass(frozen=True)
class AssetMetadata:
    filename: str
    original_name: str
    mime_type: str
    byte_size: int
    width: Optional[int]
    height: Optional[int]
    file_type: MediaKind
    thumbnail: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "original_name": self.original_name,
            "mime_type": self.mime_type,
            "byte_size": self.byte_size,
            "width": self.width,
            "height": self.height,
            "file_type": self.file_type.value,
            "thumbnail": self.thumbnail,
        }


@dataclass(frozen=True)
class OperationOutcome:
    success: bool
    message: str


def safe_filename(filename: str) -> str:
    """Return *filename* when it names a single file inside a directory."""

    name = str(filename or "").strip()
    if not name or name in {".", ".."} or PurePath(name.replace("\\", "/")).name != name:
        raise InvalidPathError(f"Invalid filename: {filename!r}")
    return name


def resolve_folder(upload_root: Path, folder: str) -> Path:
    """Resolve the folder segment *folder* below *upload_root*."""

    root = upload_root.resolve()
    segments = [part for part in str(folder or "").replace("\\", "/").split("/") if part]
    if any(part in {".", ".."} for part in segments):
        raise InvalidPathError(f"Invalid folder: {folder!r}")
    resolved = root.joinpath(*segments).resolve()
    if resolved != root and root not in resolved.parents:
        raise InvalidPathError(f"Invalid folder: {folder!r}")
    return resolved


def thumbnail_name(filename: str, kind: MediaKind) -> str:
    if kind is MediaKind.VIDEO:
        return PurePath(filename).stem + VIDEO_THUMBNAIL_SUFFIX
    return filename


@dataclass
class AssetPaths:
    """Directories holding the three copies of every asset in one folder."""

    folder_root: Path
    original_dir: Path
    thumb_dir: Path
    pristine_dir: Path

    @classmethod
    def build(cls, config: AppConfig, folder: str) -> "AssetPaths":
        folder_root = resolve_folder(config.upload_root, folder)
        LOGGER.debug("Resolved asset directories for folder='%s' -> %s", folder, folder_root)
        return cls(
            folder_root=folder_root,
            original_dir=folder_root / config.original_dir,
            thumb_dir=folder_root / config.thumb_dir,
            pristine_dir=folder_root / config.pristine_dir,
        )

    def asset(self, filename: str, kind: MediaKind = MediaKind.IMAGE) -> StoredAsset:
        name = safe_filename(filename)
        return StoredAsset(
            working_path=self.original_dir / name,
            pristine_path=self.pristine_dir / name,
            thumbnail_path=self.thumb_dir / thumbnail_name(name, kind),
        )

    def name_taken(self, filename: str) -> bool:
        video_thumb = thumbnail_name(filename, MediaKind.VIDEO)
        return any(
            path.exists()
            for path in (
                self.original_dir / filename,
                self.thumb_dir / filename,
                self.thumb_dir / video_thumb,
                self.pristine_dir / filename,
            )
        )

    def ensure(self) -> None:
        directories = (
            ("original", self.original_dir),
            ("thumbnail", self.thumb_dir),
            ("pristine", self.pristine_dir),
        )
        for label, path in directories:
            start = time.perf_counter()
            existed_before = path.exists()
            writable = config_module._ensure_writable_directory(path)
            created = path.exists() and not existed_before
            duration_ms = (time.perf_counter() - start) * 1000.0
            event_payload = {
                "label": label,
                "path": str(path),
                "created": created,
                "existed": existed_before,
                "writable": bool(writable),
            }
            if not writable:
                emit_file_event(
                    "ensure_directory_failed",
                    payload={**event_payload, "status": "error"},
                    duration_ms=duration_ms,
                    level=logging.ERROR,
                )
                raise DirectoryCreateError(
                    f"Failed to create {label} directory '{path}'. "
                    "Check parent directory permissions."
                )
            emit_file_event(
                "ensure_directory",
                payload={**event_payload, "status": "ok"},
                duration_ms=duration_ms,
                level=logging.DEBUG,
            )
            LOGGER.debug("Ensured %s path exists and is writable: %s", label, path)


def detect_mime(data: bytes, declared: str) -> str:
    """Return the MIME type sniffed from *data*, or the declared one."""

    guessed = filetype.guess_mime(data) if data else None
    if guessed:
        return guessed.lower()
    return str(declared or "").split(";", 1)[0].strip().lower()


def create_placeholder_thumbnail(
    target: Path,
    *,
    width: int = 200,
    height: int = 200,
    text: str = PLACEHOLDER_TEXT,
) -> None:
    """Write a dark JPEG with *text* centered on it."""

    with Image.new("RGB", (width, height), PLACEHOLDER_BACKGROUND) as canvas:
        draw = ImageDraw.Draw(canvas)
        font = ImageFont.load_default()
        left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
        position = ((width - (right - left)) / 2, (height - (bottom - top)) / 2)
        draw.text(position, text, fill=(255, 255, 255), font=font)
        canvas.save(target, format="JPEG", quality=85)


class UploadIngestor:
    """Validates uploads and persists their working, pristine and thumbnail copies."""

    def __init__(
        self,
        config: AppConfig,
        *,
        extractor: Optional[VideoKeyframeExtractor] = None,
    ) -> None:
        self._config = config
        self._extractor = extractor

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def extractor(self) -> VideoKeyframeExtractor:
        if self._extractor is None:
            self._extractor = VideoKeyframeExtractor()
        return self._extractor

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def ingest(self, upload: UploadedFile, folder: str = "") -> AssetMetadata:
        """Validate *upload* and store it below *folder*."""

        start = time.perf_counter()
        if upload.status is not UploadStatus.OK:
            raise UploadTransportError(upload.status)
        if not upload.data:
            raise UploadTransportError(UploadStatus.NO_FILE)

        kind, detected_mime, settings = self._validate(upload)
        paths = AssetPaths.build(self._config, folder)
        filename = build_unique_filename(
            upload.original_name, paths.name_taken, extension=upload.extension
        )
        LOGGER.debug(
            "Beginning ingestion of '%s' as %s (%s, %d bytes) -> %s",
            upload.original_name,
            filename,
            detected_mime,
            upload.size,
            paths.folder_root,
        )

        paths.ensure()
        asset = paths.asset(filename, kind)
        self._write_working_copy(upload, asset)
        self._backup_pristine(asset)

        try:
            if kind is MediaKind.IMAGE:
                self._create_image_thumbnail(asset, settings)
            else:
                self._create_video_thumbnail(asset, settings)
        except Exception as error:
            self._rollback(asset)
            raise ThumbnailError(f"Failed to create thumbnail: {error}") from error

        width, height = self._read_dimensions(asset, kind)
        metadata = AssetMetadata(
            filename=filename,
            original_name=upload.original_name,
            mime_type=detected_mime,
            byte_size=upload.size,
            width=width,
            height=height,
            file_type=kind,
            thumbnail=asset.thumbnail_path.name,
        )
        emit_file_event(
            "ingest_asset",
            payload={
                "filename": filename,
                "folder": folder,
                "file_type": kind.value,
                "mime_type": detected_mime,
                "bytes": upload.size,
                "status": "ok",
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return metadata

    def delete(self, filename: str, folder: str = "") -> OperationOutcome:
        """Remove every stored copy of *filename*; missing copies are ignored."""

        paths = AssetPaths.build(self._config, folder)
        name = safe_filename(filename)
        candidates = {
            paths.original_dir / name,
            paths.thumb_dir / name,
            paths.thumb_dir / thumbnail_name(name, MediaKind.VIDEO),
            paths.pristine_dir / name,
        }
        removed = 0
        for path in sorted(candidates):
            if not path.exists():
                continue
            try:
                path.unlink()
            except OSError as error:
                LOGGER.error("Unable to delete %s: %s", path, error)
                return OperationOutcome(False, f"Unable to delete {path.name}: {error}")
            removed += 1

        emit_file_event(
            "delete_asset",
            payload={"filename": name, "folder": folder, "removed": removed, "status": "ok"},
        )
        if not removed:
            return OperationOutcome(True, f"No stored files found for {name}")
        return OperationOutcome(True, f"Deleted {removed} file(s) for {name}")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def _classify(self, detected_mime: str) -> Tuple[MediaKind, MediaSettings]:
        if detected_mime.startswith("image/") and self._config.image.enabled:
            return MediaKind.IMAGE, self._config.image
        if detected_mime.startswith("video/") and self._config.video.enabled:
            return MediaKind.VIDEO, self._config.video
        raise InvalidFileType("Unsupported file type. Only images and videos are allowed.")

    def _validate(self, upload: UploadedFile) -> Tuple[MediaKind, str, MediaSettings]:
        declared_mime = str(upload.mime_type or "").split(";", 1)[0].strip().lower()
        detected_mime = detect_mime(upload.data, declared_mime)
        kind, settings = self._classify(detected_mime)
        _, extension = split_upload_name(upload.original_name, upload.extension)

        problems: List[UploadError] = []
        safe_mimes = SAFE_IMAGE_MIMES if kind is MediaKind.IMAGE else SAFE_VIDEO_MIMES
        if detected_mime not in safe_mimes:
            problems.append(
                InvalidFileType(
                    f"File content does not match allowed {kind.value} types. "
                    f"Detected: {detected_mime}"
                )
            )

        mime_ok = (
            not settings.allowed_mimes
            or declared_mime in settings.allowed_mimes
            or detected_mime in settings.allowed_mimes
        )
        extension_ok = not settings.allowed_extensions or extension in settings.allowed_extensions
        if not (mime_ok or extension_ok):
            problems.append(
                InvalidFileType(
                    f"Invalid file type: {declared_mime or 'unknown'} (detected: {detected_mime})"
                )
            )

        if settings.max_file_size > 0 and upload.size > settings.max_file_size:
            limit_mb = settings.max_file_size / 1024 / 1024
            problems.append(FileTooLarge(f"File is too large. Maximum size is {limit_mb:g} MB."))

        if len(problems) == 1:
            raise problems[0]
        if problems:
            raise UploadValidationError(problems)
        return kind, detected_mime, settings

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _write_working_copy(self, upload: UploadedFile, asset: StoredAsset) -> None:
        try:
            asset.working_path.write_bytes(upload.data)
        except OSError as error:
            with contextlib.suppress(OSError):
                asset.working_path.unlink(missing_ok=True)
            emit_file_event(
                "store_working_copy_failed",
                payload={"path": asset.working_path, "status": "error", "error": str(error)},
                level=logging.ERROR,
            )
            raise MoveError(
                "Failed to store uploaded file. Check permissions on the upload directory."
            ) from error
        LOGGER.debug("Working copy written to %s", asset.working_path)

    def _backup_pristine(self, asset: StoredAsset) -> None:
        target = asset.pristine_path
        if target.exists():
            return
        try:
            shutil.copyfile(asset.working_path, target)
        except OSError as first_error:
            LOGGER.debug("Pristine copy failed (%s); relaxing permissions and retrying", first_error)
            with contextlib.suppress(OSError):
                os.chmod(target.parent, PRISTINE_RETRY_MODE)
            try:
                shutil.copyfile(asset.working_path, target)
            except OSError as error:
                with contextlib.suppress(OSError):
                    target.unlink(missing_ok=True)
                LOGGER.warning(
                    "Failed to create pristine backup for %s: %s", asset.working_path, error
                )
                emit_file_event(
                    "pristine_backup_failed",
                    payload={"path": target, "status": "error", "error": str(error)},
                    level=logging.WARNING,
                )
                return
        LOGGER.debug("Pristine backup written to %s", target)

    def _create_image_thumbnail(self, asset: StoredAsset, settings: MediaSettings) -> None:
        with RasterImage.open(asset.working_path, quality=settings.default_quality) as image:
            thumbnail(image, settings.thumbnail_width, settings.thumbnail_height)
            image.save(asset.thumbnail_path)
        LOGGER.debug("Image thumbnail written to %s", asset.thumbnail_path)

    def _create_video_thumbnail(self, asset: StoredAsset, settings: MediaSettings) -> None:
        extractor = self.extractor
        extracted = extractor.is_available() and extractor.extract_thumbnail(
            asset.working_path,
            asset.thumbnail_path,
            timestamp=settings.thumbnail_timestamp,
            width=settings.thumbnail_width,
            height=settings.thumbnail_height,
        )
        if extracted:
            LOGGER.debug("Video keyframe thumbnail written to %s", asset.thumbnail_path)
            return
        LOGGER.info("Using placeholder thumbnail for video %s", asset.working_path.name)
        create_placeholder_thumbnail(
            asset.thumbnail_path,
            width=settings.thumbnail_width,
            height=settings.thumbnail_height,
        )

    def _read_dimensions(
        self, asset: StoredAsset, kind: MediaKind
    ) -> Tuple[Optional[int], Optional[int]]:
        if kind is MediaKind.IMAGE:
            try:
                return read_image_dimensions(asset.working_path)
            except MediaError as error:
                LOGGER.warning("Unable to read dimensions of %s: %s", asset.working_path, error)
                return None, None
        dimensions = self.extractor.probe_dimensions(asset.working_path)
        if dimensions is None:
            return None, None
        return dimensions.width, dimensions.height

    def _rollback(self, asset: StoredAsset) -> None:
        removed = []
        for path in asset.paths():
            with contextlib.suppress(OSError):
                if path.exists():
                    path.unlink()
                    removed.append(path.name)
        emit_file_event(
            "ingest_rollback",
            payload={"path": asset.working_path, "removed": removed, "status": "rolled_back"},
            level=logging.WARNING,
        )


__all__ = [
    "AssetMetadata",
    "AssetPaths",
    "DirectoryCreateError",
    "FileTooLarge",
    "IngestionError",
    "InvalidFileType",
    "InvalidPathError",
    "MediaKind",
    "MoveError",
    "OperationOutcome",
    "StoredAsset",
    "ThumbnailError",
    "UploadError",
    "UploadIngestor",
    "UploadStatus",
    "UploadTransportError",
    "UploadValidationError",
    "UploadedFile",
    "create_placeholder_thumbnail",
    "detect_mime",
    "resolve_folder",
    "safe_filename",
    "thumbnail_name",
]
