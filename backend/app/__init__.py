"""Trainer billing FastAPI application package."""

from __future__ import annotations


def get_app():
    """Return the FastAPI application without importing it eagerly.

    Alembic and the CLI scripts import this package without needing the API.
    """

    from .main import app as fastapi_app

    return fastapi_app


__all__ = ["get_app"]
