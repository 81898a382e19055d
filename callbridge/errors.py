"""Typed error taxonomy.

Low-level components (portal client, sheet adapter, store) raise these;
the conversation engine is the single place that turns them into
user-facing text.
"""


class CallbridgeError(Exception):
    """Base class for all domain errors."""


class AuthError(CallbridgeError):
    """A credential is invalid or expired; the user must re-authenticate."""


class PortalAuthError(AuthError):
    """The portal rejected the email/password pair."""


class SheetAuthError(AuthError):
    """The spreadsheet OAuth token is missing, expired or revoked."""


class ProtocolError(CallbridgeError):
    """The portal's pages no longer match what the client expects."""


class ExportError(CallbridgeError):
    """The report export request failed; retryable by re-running the fetch."""


class PortalUnavailableError(ExportError):
    """The portal could not be reached at all."""


class SheetWriteError(CallbridgeError):
    """The spreadsheet API failed for a reason other than authorization."""


class DateParseError(CallbridgeError):
    """User input is not a recognised date."""

    def __init__(self, raw: str) -> None:
        super().__init__(f"Could not understand date {raw!r}")
        self.raw = raw


class SessionExpired(CallbridgeError):
    """The chat session is missing; the flow restarts silently."""


class StoreError(CallbridgeError):
    """The external key-value store failed (distinct from "not found")."""


class InvalidTransitionError(CallbridgeError):
    """Raised when a transition is not valid from the current step."""
