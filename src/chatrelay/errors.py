"""Application-level exception types for chatrelay."""

from __future__ import annotations


class ChatRelayError(Exception):
    """Base exception for chatrelay."""


class ConfigurationError(ChatRelayError):
    """Raised for configuration and startup validation errors."""


class TransientTransportError(ChatRelayError):
    """Raised when the transport times out or reports a transient state mismatch."""


class ReadyTimeout(TransientTransportError):
    """Raised when a session does not become stable within the ready timeout."""


class AuthenticationError(ChatRelayError):
    """Raised when the transport rejects the credentials. Requires manual re-authentication."""


class ValidationError(ChatRelayError):
    """Raised when a recipient address cannot be normalized."""


class SessionStateError(ChatRelayError):
    """Raised on a session state transition that is not allowed."""
