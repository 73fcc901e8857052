"""
HTTP API layer for AuditStream.

Stream destination management, event ingest, dead-letter operations and
health endpoints, served with aiohttp.
"""

from .http_server import ApiServices, create_http_app, start_http_server

__all__ = ["ApiServices", "create_http_app", "start_http_server"]
