"""FastAPI application exposing the gallery media pipeline."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi import status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..processing.raster import EncodeError, MediaError
from ..processing.transforms import OPERATION_NAMES
from ..processing.video import VideoKeyframeExtractor
from ..services.events import emit_structured_event
from ..services.ingestion import (
    AssetPaths,
    DirectoryCreateError,
    MoveError,
    ThumbnailError,
    UploadError,
    UploadIngestor,
    UploadStatus,
    UploadedFile,
)
from ..services.manipulation import AssetEditor, AssetNotFoundError

T = TypeVar("T")


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "gallery_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "gallery_actor",
    default=None,
)

_PERSISTENCE_ERRORS = (DirectoryCreateError, MoveError, ThumbnailError)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = _format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor_hint)

        async def send_with_request_id(message: Dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers = list(message.get("headers") or [])
                headers.append((b"x-request-id", request_id.encode("ascii")))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        correlation = _collect_correlation_context()
        for key, value in correlation.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("gallery.web.events"), {})


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event(
        "APP_EVENT",
        message,
        context=context,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class AssetLocks:
    """One lock per stored asset so edits of the same file never overlap.

    Entries are keyed by the resolved working-copy path and dropped once the
    last holder releases them.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._guard = threading.Lock()
        self._locks: Dict[Path, _LockEntry] = {}

    def key_for(self, folder: str, filename: str) -> Path:
        return AssetPaths.build(self._config, folder).asset(filename).working_path

    @contextlib.contextmanager
    def hold(self, folder: str, filename: str) -> Iterator[None]:
        key = self.key_for(folder, filename)
        with self._guard:
            entry = self._locks.setdefault(key, _LockEntry())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class ManipulatePayload(BaseModel):
    folder: str = ""
    filename: str
    operation: str
    params: Dict[str, Any] = Field(default_factory=dict)


class AssetReferencePayload(BaseModel):
    folder: str = ""
    filename: str


def _errors_response(status_code: int, messages: List[str]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"errors": messages})


async def _run_blocking(operation: Callable[[], T]) -> T:
    loop = asyncio.get_running_loop()
    context = contextvars.copy_context()
    return await loop.run_in_executor(None, functools.partial(context.run, operation))


def create_app(
    config: AppConfig,
    *,
    ingestor: Optional[UploadIngestor] = None,
    editor: Optional[AssetEditor] = None,
    extractor: Optional[VideoKeyframeExtractor] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    app = FastAPI(
        title="Gallery Media",
        description="Upload, transform and thumbnail gallery media",
        root_path=(root_path or "").rstrip("/"),
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    video_extractor = extractor or VideoKeyframeExtractor()
    upload_ingestor = ingestor or UploadIngestor(config, extractor=video_extractor)
    asset_editor = editor or AssetEditor(config)
    asset_locks = AssetLocks(config)

    app.state.server = None
    app.state.config = config
    app.state.ingestor = upload_ingestor
    app.state.editor = asset_editor
    app.state.asset_locks = asset_locks

    @app.exception_handler(UploadError)
    async def handle_upload_error(request: Request, error: UploadError) -> JSONResponse:
        if isinstance(error, _PERSISTENCE_ERRORS):
            LOGGER.error("Upload persistence failed: %s", error)
            return _errors_response(status.HTTP_500_INTERNAL_SERVER_ERROR, error.messages)
        LOGGER.info("Upload rejected: %s", "; ".join(error.messages))
        return _errors_response(status.HTTP_400_BAD_REQUEST, error.messages)

    @app.exception_handler(AssetNotFoundError)
    async def handle_missing_asset(request: Request, error: AssetNotFoundError) -> JSONResponse:
        return _errors_response(status.HTTP_404_NOT_FOUND, [str(error)])

    @app.exception_handler(MediaError)
    async def handle_media_error(request: Request, error: MediaError) -> JSONResponse:
        if isinstance(error, EncodeError):
            LOGGER.error("Unable to save image: %s", error)
            return _errors_response(status.HTTP_500_INTERNAL_SERVER_ERROR, [str(error)])
        return _errors_response(status.HTTP_400_BAD_REQUEST, [str(error)])

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "video_toolkit": video_extractor.is_available(),
            "video_enabled": config.video.enabled,
            "operations": list(OPERATION_NAMES),
        }

    @app.post("/api/assets", status_code=status.HTTP_201_CREATED)
    async def upload_asset(
        folder: str = Form(""),
        file: UploadFile = File(...),
    ) -> Dict[str, Any]:
        _log_event("Uploading asset", folder=folder, filename=file.filename)
        try:
            data = await file.read()
        finally:
            await file.close()

        upload = UploadedFile(
            original_name=file.filename or "",
            mime_type=file.content_type or "",
            data=data,
            status=UploadStatus.OK if file.filename else UploadStatus.NO_FILE,
        )
        metadata = await _run_blocking(functools.partial(upload_ingestor.ingest, upload, folder))
        _log_event("Stored asset", folder=folder, filename=metadata.filename)
        return {"success": True, "asset": metadata.to_dict()}

    @app.post("/api/assets/manipulate")
    async def manipulate_asset(payload: ManipulatePayload) -> Dict[str, Any]:
        _log_event(
            "Manipulating asset",
            folder=payload.folder,
            filename=payload.filename,
            operation=payload.operation,
        )

        def _apply() -> Any:
            with asset_locks.hold(payload.folder, payload.filename):
                return asset_editor.manipulate(
                    payload.folder, payload.filename, payload.operation, payload.params
                )

        result = await _run_blocking(_apply)
        return {"success": True, **result.to_dict()}

    @app.post("/api/assets/revert")
    async def revert_asset(payload: AssetReferencePayload) -> Dict[str, Any]:
        _log_event("Reverting asset", folder=payload.folder, filename=payload.filename)

        def _revert() -> Any:
            with asset_locks.hold(payload.folder, payload.filename):
                return asset_editor.revert(payload.folder, payload.filename)

        outcome = await _run_blocking(_revert)
        if not outcome.success:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=outcome.message)
        return {"success": True, "message": outcome.message}

    @app.delete("/api/assets")
    async def delete_asset(
        filename: str = Query(...),
        folder: str = Query(""),
    ) -> Dict[str, Any]:
        _log_event("Deleting asset", folder=folder, filename=filename)

        def _delete() -> Any:
            with asset_locks.hold(folder, filename):
                return upload_ingestor.delete(filename, folder)

        outcome = await _run_blocking(_delete)
        if not outcome.success:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=outcome.message
            )
        return {"success": True, "message": outcome.message}

    @app.get("/api/videos/probe")
    async def probe_video(
        filename: str = Query(...),
        folder: str = Query(""),
    ) -> Dict[str, Any]:
        asset = AssetPaths.build(config, folder).asset(filename)
        if not asset.working_path.is_file():
            raise AssetNotFoundError(f"Video not found: {filename}")
        probe = await _run_blocking(functools.partial(video_extractor.probe, asset.working_path))
        return {"filename": asset.working_path.name, **probe.to_dict()}

    return app


__all__ = [
    "AssetLocks",
    "ContextualLoggerAdapter",
    "RequestContextMiddleware",
    "create_app",
]
