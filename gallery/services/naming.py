"""Utility helpers for collision-free asset naming."""

from __future__ import annotations

import re
import uuid
from pathlib import PurePath
from typing import Callable, Optional

__all__ = [
    "sanitize_stem",
    "split_upload_name",
    "unique_suffix",
    "build_unique_filename",
]

MAX_STEM_LENGTH = 120
MAX_ATTEMPTS = 100


def sanitize_stem(value: str) -> str:
    """Return a filesystem-friendly representation of the stem *value*."""

    value = value.strip()
    value = re.sub(r"[^\w.-]+", "_", value)
    value = re.sub(r"_+", "_", value).strip("._")
    return value[:MAX_STEM_LENGTH] or "file"


def split_upload_name(original_name: str, extension: Optional[str] = None) -> tuple[str, str]:
    """Split a client supplied filename into ``(stem, extension)``.

    Directory components are discarded. *extension* overrides the suffix found in
    the name; the returned extension is lower-case without the leading dot.
    """

    name = PurePath(str(original_name).replace("\\", "/")).name
    path = PurePath(name)
    stem = path.stem if path.suffix else name
    suffix = extension if extension is not None else path.suffix
    return sanitize_stem(stem), suffix.lstrip(".").lower()


def unique_suffix() -> str:
    return uuid.uuid4().hex[:13]


def build_unique_filename(
    original_name: str,
    exists: Callable[[str], bool],
    *,
    extension: Optional[str] = None,
) -> str:
    """Return ``<stem>_<suffix>.<ext>`` for which *exists* reports ``False``."""

    stem, ext = split_upload_name(original_name, extension)
    for _ in range(MAX_ATTEMPTS):
        candidate = f"{stem}_{unique_suffix()}"
        if ext:
            candidate = f"{candidate}.{ext}"
        if not exists(candidate):
            return candidate
    raise RuntimeError(f"Unable to allocate a unique filename for '{original_name}'")
