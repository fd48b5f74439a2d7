"""
asgi.py -- ASGI entry point for Warden.

Run with:  uvicorn asgi:app --reload

api/main.py builds the application; this module only re-exports it so the
server command stays stable if the app grows more routers or mounts.
"""

from api.main import app

__all__ = ["app"]
