"""Exception types raised by adapters and handled at the webhook seam."""

from __future__ import annotations

from typing import Any, Optional


class LeadSmsError(RuntimeError):
    """Base error for the intake engine."""


class AuthError(LeadSmsError):
    """Webhook signature or bearer token did not validate."""


class ValidationError(LeadSmsError):
    """Inbound payload can never be processed (e.g. missing sender)."""


class PersistenceError(LeadSmsError):
    """A datastore read or write failed."""


class ProviderError(LeadSmsError):
    """Custom error that carries HTTP metadata from an external provider."""

    def __init__(
        self,
        message: str,
        *,
        provider: str = "provider",
        status_code: Optional[int] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


class CollaboratorTimeout(LeadSmsError):
    """The assistant run did not finish before the poll deadline."""
