"""Request utility functions for handling common request operations."""

import ipaddress
import logging

from starlette.requests import HTTPConnection

logger = logging.getLogger(__name__)

# Proxies allowed to set X-Real-IP (a reverse proxy on the same host)
TRUSTED_PROXY_HOSTS = ("127.0.0.1", "::1", "localhost")

# Stored user agents are truncated to the column width
MAX_USER_AGENT_LENGTH = 512


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: HTTPConnection) -> str | None:
    """Get the client IP address from a request.

    X-Real-IP is only honoured when the direct peer is a local reverse
    proxy. X-Forwarded-For is NOT trusted as it can be easily spoofed.

    Args:
        request: The incoming request

    Returns:
        Client IP address or None if not available
    """
    if request.client and request.client.host in TRUSTED_PROXY_HOSTS:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid X-Real-IP: {real_ip}")

    if request.client:
        return request.client.host

    return None


def get_user_agent(request: HTTPConnection) -> str | None:
    """Return the User-Agent header, truncated for storage."""
    user_agent = request.headers.get("User-Agent")
    if not user_agent:
        return None
    return user_agent[:MAX_USER_AGENT_LENGTH]


def get_bearer_token(request: HTTPConnection) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()  # Remove "Bearer " prefix
        return token or None
    return None
