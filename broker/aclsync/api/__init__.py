"""
API module for mosquitto-sync.

This module provides the external interface:
- HTTP server (FastAPI) over BrokerSync

Invariants:
    - Handlers only call BrokerSync; they never touch files or processes
    - Caller identity comes from request headers
"""

from .http_server import create_http_app

__all__ = ["create_http_app"]
