"""
Shared utilities for API routes.
"""

import secrets
from typing import Optional

from fastapi import Request

# Routes that require the bearer token when one is configured
PROTECTED_PREFIXES = ("/v1/",)
PROTECTED_WRITES = {("PUT", "/api/settings")}


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """Extract bearer token from an Authorization header."""
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def token_matches(expected: str, presented: Optional[str]) -> bool:
    """Constant-time comparison of the configured and presented tokens."""
    if not presented:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def requires_auth(request: Request) -> bool:
    """Return True if the request targets a route guarded by the auth token."""
    path = request.url.path
    if path.startswith(PROTECTED_PREFIXES):
        return True
    return (request.method, path) in PROTECTED_WRITES


def sanitize_for_log(value: str, max_length: int = 200) -> str:
    """
    Sanitize user input before logging to prevent log injection attacks.

    Escapes newlines and removes control characters that could interfere
    with log parsing or monitoring systems.

    Args:
        value: The string to sanitize
        max_length: Maximum length before truncation (default: 200)

    Returns:
        Sanitized string safe for logging
    """
    if not value:
        return value

    sanitized = value.replace("\n", "\\n").replace("\r", "\\r")
    sanitized = "".join(c for c in sanitized if c.isprintable() or c in " \t")

    if len(sanitized) > max_length:
        return sanitized[:max_length] + "..."

    return sanitized
