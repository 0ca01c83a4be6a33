"""HTTP API for the auction server."""

from adauction.api.app import create_app, render_outcome

__all__ = ["create_app", "render_outcome"]
