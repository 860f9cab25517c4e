"""
Gateway error taxonomy.

Domain services raise these; the route layer renders them with one
exception handler (see main.py). Each error knows its HTTP status and the
JSON body the browser client expects:

    {"error": <short label>, "message"?: ..., "redirectUrl"?: ..., "userLabels"?: [...]}

`message_safe` is always safe to show a visitor. Anything diagnostic goes in
`message_debug`, which is logged but never rendered.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base error carrying a status code and a client-safe payload."""

    status_code: int = 500
    default_error: str = "Internal server error"

    def __init__(
        self,
        error: str | None = None,
        message_safe: str | None = None,
        message_debug: str | None = None,
        redirect_url: str | None = None,
        cause: Exception | None = None,
    ):
        self.error = error or self.default_error
        self.message_safe = message_safe
        self.message_debug = message_debug
        self.redirect_url = redirect_url
        self.cause = cause
        super().__init__(self.error)

    def __str__(self) -> str:
        return f"[{self.status_code}] {self.error}"

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.message_safe:
            body["message"] = self.message_safe
        if self.redirect_url:
            body["redirectUrl"] = self.redirect_url
        return body


class ValidationError(GatewayError):
    """Missing or malformed input."""

    status_code = 400
    default_error = "Invalid request"


class UnauthenticatedError(GatewayError):
    """No session, or the session is not authenticated."""

    status_code = 401
    default_error = "Not authenticated"


class PolicyDeniedError(GatewayError):
    """Identity resolved, but none of its labels is on the allow-list."""

    status_code = 403
    default_error = "Access denied"

    def __init__(
        self,
        labels: list[str],
        redirect_url: str,
        message_safe: str = "You need an eligible membership to access this content.",
    ):
        super().__init__(message_safe=message_safe, redirect_url=redirect_url)
        self.labels = list(labels)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["userLabels"] = self.labels
        return body


class NotFoundError(GatewayError):
    """Identity is absent from the member directory."""

    status_code = 404
    default_error = "User not found"


class UpstreamError(GatewayError):
    """Backend or external capability failure (no automatic retry)."""

    status_code = 502
    default_error = "Failed to fetch content"


class DeliveryError(UpstreamError):
    """Verification mail could not be handed to the transport."""

    status_code = 500
    default_error = "Failed to send verification code"


class InternalError(GatewayError):
    """Unexpected failure; never leaks internals to the client."""

    status_code = 500
    default_error = "Internal server error"
