"""CRM workflow automation service exposing the FastAPI application factory."""

from .main import create_app

__all__ = ["create_app"]
