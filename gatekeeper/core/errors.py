from __future__ import annotations


class GatekeeperError(Exception):
    """Base class for failures reported back to the caller."""

    kind = "internal"


class NotFound(GatekeeperError):
    """Unknown account or promo code."""

    kind = "not_found"


class Conflict(GatekeeperError):
    """Duplicate registration, promo usage or referral edge."""

    kind = "conflict"


class ValidationError(GatekeeperError):
    kind = "validation"


class UpstreamError(GatekeeperError):
    """Provisioning panel transport failure or non-success response."""

    kind = "upstream"

    def __init__(self, message: str, *, status: int | None = None):
        self.status = status
        super().__init__(message)


class InternalError(GatekeeperError):
    """Storage failure. Never retried."""

    kind = "internal"


__all__ = [
    "GatekeeperError",
    "NotFound",
    "Conflict",
    "ValidationError",
    "UpstreamError",
    "InternalError",
]
