"""
Delivery error taxonomy.

Every failure inside a destination task is one of these (or is converted
into one at the task boundary).  ``retryable`` decides whether the
provider-call retry loop tries again and which ``failed-*`` result the
outcome carries.
"""

from __future__ import annotations

from typing import Optional


class DeliveryError(Exception):
    retryable: bool = False

    def __init__(self, message: str = "", *, status_code: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        self.status_code = status_code
        self.attempts = 1

    @property
    def kind(self) -> str:
        return self.__class__.__name__


class NoConnection(DeliveryError):
    """Destination not configured for this form, or the owner never connected."""


class NoData(DeliveryError):
    """Submission carries nothing this destination can use (no date, no files)."""


class AuthExpired(DeliveryError):
    """Access token rejected by the provider (HTTP 401)."""


class CredentialRevoked(DeliveryError):
    """Refresh token rejected; the owner has to reconnect their Google account."""


class ProviderTransient(DeliveryError):
    """Timeout, network error, 429 or 5xx from a provider."""

    retryable = True


class ProviderRejected(DeliveryError):
    """4xx other than auth, e.g. a deleted spreadsheet or malformed row."""
