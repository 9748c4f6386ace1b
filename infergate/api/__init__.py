"""HTTP surface for the inference gateway."""

from .app import create_app

__all__ = ["create_app"]
