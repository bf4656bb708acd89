"""HTTP inspection surface (FastAPI)."""

from tablespine.api.app import create_app

__all__ = ["create_app"]
