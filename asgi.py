"""
asgi.py -- ASGI entry point for Warden.

api/main.py builds the complete app; this module only re-exports it so the
server command stays stable if the app module moves.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
