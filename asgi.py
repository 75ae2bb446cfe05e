"""
asgi.py -- ASGI entry point for Warden.

Run with:  uvicorn asgi:app --port 8334
"""

from api.main import app

__all__ = ["app"]
