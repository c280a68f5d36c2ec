"""
asgi.py -- ASGI entry point for Caskbook auth.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so process managers and tests import the same
object without caring where routers are registered.
"""

from api.main import app

__all__ = ["app"]
