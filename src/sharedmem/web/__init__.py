"""HTTP control surface for the shared memory host."""

from .app import app, create_app

__all__ = ["app", "create_app"]
