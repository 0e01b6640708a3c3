"""API module for HTTP routes, webhooks and WebSocket handlers.

This module exposes the FastAPI routers for the Relay backend.
"""

from api.errors import register_exception_handlers
from api.routes import router
from api.webhooks import webhook_router
from api.websocket import websocket_router

__all__ = ["register_exception_handlers", "router", "webhook_router", "websocket_router"]
