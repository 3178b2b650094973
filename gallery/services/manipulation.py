"""Manipulate and revert flows for stored image assets."""

from __future__ import annotations

import contextlib
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ..config import AppConfig
from ..processing.raster import EncodeError, RasterImage
from ..processing.transforms import apply_operation, thumbnail
from .events import emit_media_event
from .ingestion import AssetPaths, IngestionError, OperationOutcome, StoredAsset


LOGGER = logging.getLogger(__name__)


class AssetNotFoundError(IngestionError, LookupError):
    """Raised when the working copy of an asset does not exist."""


@dataclass(frozen=True)
class ManipulationResult:
    filename: str
    operation: str
    width: int
    height: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "operation": self.operation,
            "width": self.width,
            "height": self.height,
        }


class AssetEditor:
    """Applies single named operations to working copies.

    The pristine backup is never written here; :meth:`revert` copies it back
    over the working copy and rebuilds the thumbnail.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def _locate(self, folder: str, filename: str) -> StoredAsset:
        asset = AssetPaths.build(self._config, folder).asset(filename)
        if not asset.working_path.is_file():
            raise AssetNotFoundError(f"Image not found: {filename}")
        return asset

    def manipulate(
        self,
        folder: str,
        filename: str,
        operation: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> ManipulationResult:
        """Apply *operation* to the working copy and refresh its thumbnail."""

        start = time.perf_counter()
        asset = self._locate(folder, filename)
        quality = self._config.image.default_quality
        with RasterImage.open(asset.working_path, quality=quality) as image:
            apply_operation(image, operation, params)
            encoded = image.to_bytes()
            width, height = image.size
        self._write_working_copy(asset, encoded)
        self.regenerate_thumbnail(asset)

        emit_media_event(
            "manipulate",
            payload={
                "filename": asset.working_path.name,
                "folder": folder,
                "operation": operation,
                "params": dict(params or {}),
                "width": width,
                "height": height,
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return ManipulationResult(
            filename=asset.working_path.name,
            operation=str(operation),
            width=width,
            height=height,
        )

    def _write_working_copy(self, asset: StoredAsset, encoded: bytes) -> None:
        staging = asset.working_path.with_name(asset.working_path.name + ".edit")
        try:
            staging.write_bytes(encoded)
            staging.replace(asset.working_path)
        except OSError as error:
            with contextlib.suppress(OSError):
                staging.unlink(missing_ok=True)
            raise EncodeError(
                f"Unable to write edited image {asset.working_path.name}: {error}"
            ) from error

    def revert(self, folder: str, filename: str) -> OperationOutcome:
        """Restore the working copy from its pristine backup."""

        asset = self._locate(folder, filename)
        if not asset.pristine_path.is_file():
            LOGGER.warning("No pristine backup for %s", asset.working_path)
            return OperationOutcome(False, f"No original backup available for {filename}")

        staging = asset.working_path.with_name(asset.working_path.name + ".revert")
        try:
            shutil.copyfile(asset.pristine_path, staging)
            staging.replace(asset.working_path)
        except OSError as error:
            with contextlib.suppress(OSError):
                staging.unlink(missing_ok=True)
            LOGGER.error("Unable to restore %s from pristine copy: %s", filename, error)
            return OperationOutcome(False, f"Unable to restore {filename}: {error}")

        self.regenerate_thumbnail(asset)
        emit_media_event("revert", payload={"filename": filename, "folder": folder})
        return OperationOutcome(True, f"Restored {filename} from its original upload")

    def regenerate_thumbnail(self, asset: StoredAsset) -> Path:
        settings = self._config.image
        with RasterImage.open(asset.working_path, quality=settings.default_quality) as image:
            thumbnail(image, settings.thumbnail_width, settings.thumbnail_height)
            image.save(asset.thumbnail_path)
        LOGGER.debug("Thumbnail refreshed at %s", asset.thumbnail_path)
        return asset.thumbnail_path


__all__ = ["AssetEditor", "AssetNotFoundError", "ManipulationResult"]
