"""Middleware module for Ultra BMS Auth."""

from bms_auth.middleware.security_headers import SecurityHeadersMiddleware
from bms_auth.middleware.session_auth import SessionAuthMiddleware

__all__ = [
    "SecurityHeadersMiddleware",
    "SessionAuthMiddleware",
]
