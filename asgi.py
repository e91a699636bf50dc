"""
asgi.py -- ASGI entry point for CloudBoard.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 3001 --workers 1

A single worker keeps the credential cache and rate-limit counters in one
process; both are in-memory.
"""

from api.main import app

__all__ = ["app"]
