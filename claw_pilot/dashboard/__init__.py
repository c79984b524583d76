"""Dashboard JSON API (FastAPI). The HTML/JS front end is served separately."""

from .server import create_app

__all__ = ["create_app"]
