"""HTTP surface exposing gateway status, start and restart."""

from .server import create_app, start_server

__all__ = ["create_app", "start_server"]
