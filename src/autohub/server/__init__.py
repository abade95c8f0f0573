"""HTTP and WebSocket API."""

from autohub.server.app import ApiContext, create_app

__all__ = ["ApiContext", "create_app"]
