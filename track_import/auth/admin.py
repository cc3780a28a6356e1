"""Request guards and the JSON error type shared by the HTTP adapter.

Mutating import endpoints require an ``X-Admin-Key`` header matching the
ADMIN_API_KEY setting. An unset key rejects every request (fail-closed).
"""

from __future__ import annotations

import hmac

from fastapi import Header

from track_import.settings import settings


class ApiError(Exception):
    """Error rendered as ``{"error": {"code", "message"}}`` by the handler in main.py."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(message)


class AdminAuthError(ApiError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(403, code, message)


async def require_admin_key(
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
) -> None:
    """Verify the admin API key header with a timing-safe comparison.

    Raises:
        AdminAuthError: 403 if the key is missing, wrong, or not configured.
    """
    if not settings.admin_api_key:
        raise AdminAuthError(
            "AUTH_NOT_CONFIGURED",
            "Admin API key not configured. Set ADMIN_API_KEY in environment.",
        )

    if not hmac.compare_digest(x_admin_key or "", settings.admin_api_key):
        raise AdminAuthError("FORBIDDEN", "Invalid or missing admin API key.")
