"""Administrative HTTP API."""

from khitomer.api.server import create_app

__all__ = ["create_app"]
