"""
DeCrown Billing - API Module

FastAPI server for processor webhooks and read-only billing projections.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
