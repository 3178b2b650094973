"""Web interface for the gallery media pipeline."""

from .server import create_app

__all__ = ["create_app"]
