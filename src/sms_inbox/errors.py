"""
Error taxonomy shared by the pipelines and the HTTP layer.

Every error carries the HTTP status it maps to and a stable, user-safe detail
string. The FastAPI exception handler in ``main`` renders them as
``{"error": detail}``.
"""

from __future__ import annotations


class InboxError(Exception):
    status_code: int = 500
    default_detail: str = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class Unauthenticated(InboxError):
    status_code = 401
    default_detail = "Unauthorized - Please sign in"


class Forbidden(InboxError):
    status_code = 403
    default_detail = "Forbidden"


class ValidationFailed(InboxError):
    status_code = 400
    default_detail = "Invalid request"


class NotFound(InboxError):
    status_code = 404
    default_detail = "Not found"


class SignatureInvalid(InboxError):
    status_code = 403
    default_detail = "Invalid signature"


class TranslationFailed(InboxError):
    status_code = 502
    default_detail = "Translation failed"


class DeliveryFailed(InboxError):
    """A single carrier send failed. ``cause`` is the carrier's error text."""

    status_code = 502
    default_detail = "Delivery failed"

    def __init__(self, cause: str) -> None:
        self.cause = cause
        super().__init__(f"Delivery failed: {cause}")


class StorageFailed(InboxError):
    status_code = 500
    default_detail = "Database error"
