"""Web adapter for the syntheme render service."""

from .server import create_app

__all__ = ["create_app"]
