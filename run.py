"""Entry-point for the gallery media pipeline."""

from __future__ import annotations

import json
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import uvicorn

from gallery.bootstrap import initialize_app
from gallery.logging_utils import build_log_handlers, configure_logging
from gallery.processing.raster import MediaError
from gallery.processing.video import VideoKeyframeExtractor
from gallery.services.ingestion import IngestionError, UploadError, UploadIngestor, UploadedFile
from gallery.services.manipulation import AssetEditor
from gallery.web import create_app


LOGGER = logging.getLogger("gallery.cli")


cli = typer.Typer(add_completion=False, help="Gallery media management commands")


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_log_handlers(storage_root))


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _parse_params(values: Optional[List[str]]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for item in values or []:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--param")
        params[key.strip()] = value.strip()
    return params


def _fail(messages: List[str]) -> None:
    for message in messages:
        typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="GALLERY_ROOT_PATH",
    ),
) -> None:
    """Run the FastAPI media service."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    normalized_root = _normalize_root_path(root_path)
    app = create_app(app_config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving gallery media API on http://%s:%s%s/", host, port, normalized_root)
    server.run()


@cli.command()
def ingest(
    source: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Image or video file to ingest",
    ),
    folder: str = typer.Option("", help="Folder segment below the upload root"),
    mime_type: Optional[str] = typer.Option(
        None, "--mime-type", help="Declared MIME type (guessed from the name by default)"
    ),
) -> None:
    """Store a local file as if it had been uploaded."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    declared = mime_type or mimetypes.guess_type(source.name)[0] or ""
    upload = UploadedFile(original_name=source.name, mime_type=declared, data=source.read_bytes())
    try:
        metadata = UploadIngestor(config).ingest(upload, folder)
    except UploadError as error:
        _fail(error.messages)

    typer.echo("Ingestion completed.")
    typer.echo(json.dumps(metadata.to_dict(), indent=2))


@cli.command()
def manipulate(
    filename: str = typer.Argument(..., help="Stored filename of the image"),
    operation: str = typer.Argument(..., help="Operation to apply, e.g. resize or sepia"),
    folder: str = typer.Option("", help="Folder segment below the upload root"),
    param: Optional[List[str]] = typer.Option(
        None, "--param", "-p", help="Operation parameter as KEY=VALUE (repeatable)"
    ),
) -> None:
    """Apply one named operation to a stored image."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    params = _parse_params(param)
    try:
        result = AssetEditor(config).manipulate(folder, filename, operation, params)
    except (IngestionError, MediaError) as error:
        _fail([str(error)])

    typer.echo(f"Applied {result.operation}: now {result.width}x{result.height}")


@cli.command()
def revert(
    filename: str = typer.Argument(..., help="Stored filename of the image"),
    folder: str = typer.Option("", help="Folder segment below the upload root"),
) -> None:
    """Restore a stored image from its pristine backup."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    try:
        outcome = AssetEditor(config).revert(folder, filename)
    except (IngestionError, MediaError) as error:
        _fail([str(error)])
    if not outcome.success:
        _fail([outcome.message])
    typer.echo(outcome.message)


@cli.command()
def delete(
    filename: str = typer.Argument(..., help="Stored filename of the asset"),
    folder: str = typer.Option("", help="Folder segment below the upload root"),
) -> None:
    """Remove the working, thumbnail and pristine copies of an asset."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    try:
        outcome = UploadIngestor(config).delete(filename, folder)
    except UploadError as error:
        _fail(error.messages)
    if not outcome.success:
        _fail([outcome.message])
    typer.echo(outcome.message)


@cli.command("video-probe")
def video_probe(
    video: Path = typer.Argument(
        ..., exists=True, file_okay=True, dir_okay=False, resolve_path=True, help="Video file"
    ),
) -> None:
    """Print the duration and dimensions FFprobe reports for *video*."""

    extractor = VideoKeyframeExtractor()
    if not extractor.is_available():
        typer.echo("FFmpeg is not available; probe results will be empty.", err=True)
    typer.echo(json.dumps(extractor.probe(video).to_dict(), indent=2))


@cli.command("video-thumbnail")
def video_thumbnail(
    video: Path = typer.Argument(
        ..., exists=True, file_okay=True, dir_okay=False, resolve_path=True, help="Video file"
    ),
    output: Path = typer.Argument(..., resolve_path=True, help="Where to write the JPEG"),
    timestamp: float = typer.Option(1.0, help="Seconds into the video"),
    width: int = typer.Option(300, min=1, help="Thumbnail width"),
    height: Optional[int] = typer.Option(None, min=1, help="Crop to this height"),
) -> None:
    """Extract a single frame of *video* into *output*."""

    extractor = VideoKeyframeExtractor()
    if not extractor.extract_thumbnail(video, output, timestamp=timestamp, width=width, height=height):
        _fail([f"Unable to extract a thumbnail from {video.name}"])
    typer.echo(f"Thumbnail saved to: {output}")


if __name__ == "__main__":
    cli()
