"""Error taxonomy shared by the session, transport, decoder and adapters.

Every error raised by mahpy derives from `MahError`. Errors that are safe to
retry with backoff also derive from `TransientError`; errors that need a
caller-side fix derive from `PermanentError`.
"""

from __future__ import annotations

from typing import Optional

# mirai-api-http status codes carried in the `code` field of the envelope.
CODE_OK = 0
CODE_WRONG_VERIFY_KEY = 1
CODE_BOT_NOT_FOUND = 2
CODE_INVALID_SESSION = 3
CODE_UNVERIFIED_SESSION = 4
CODE_TARGET_NOT_FOUND = 5
CODE_FILE_NOT_FOUND = 6
CODE_PERMISSION_DENIED = 10
CODE_BOT_MUTED = 20
CODE_MESSAGE_TOO_LONG = 30
CODE_BAD_REQUEST = 400
CODE_INTERNAL_ERROR = 500

AUTH_FAILURE_CODES = frozenset({CODE_WRONG_VERIFY_KEY, CODE_BOT_NOT_FOUND})
SESSION_FATAL_CODES = frozenset({CODE_INVALID_SESSION, CODE_UNVERIFIED_SESSION})


class MahError(Exception):
    """Base error for the mahpy SDK."""

    recoverable = False
    severity = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(MahError):
    """Failure that may succeed when retried with backoff."""

    recoverable = True
    severity = "warning"


class PermanentError(MahError):
    """Failure that will not go away by retrying."""

    recoverable = False
    severity = "error"


class ConfigError(PermanentError):
    """Invalid or unreadable configuration."""


class AuthError(PermanentError):
    """The server rejected the verify key or the bot account."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        user_message: Optional[str] = None,
    ) -> None:
        if user_message is None:
            user_message = "Authentication failed. Check verify key and account."
        super().__init__(message, user_message=user_message)
        self.code = code


class SessionClosed(PermanentError):
    """The session was released or rejected and cannot be used anymore."""


class TransportError(TransientError):
    """Network-level failure talking to the bot-control server."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        user_message: Optional[str] = None,
    ) -> None:
        if user_message is None:
            user_message = "Bot server unreachable. Retrying with backoff..."
        super().__init__(message, user_message=user_message)
        self.status_code = status_code


class ProtocolError(PermanentError):
    """The server answered with something that does not follow the protocol."""


class DecodeError(ProtocolError):
    """A raw event payload could not be turned into an Event."""

    MISSING_ID = "missing_id"
    INVALID_ID = "invalid_id"
    NOT_AN_OBJECT = "not_an_object"
    INVALID_JSON = "invalid_json"

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class RemoteError(MahError):
    """The server returned a structured error envelope."""

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(f"remote error {code}: {message}" if message else f"remote error {code}")
        self.code = code
        self.message = message

    @property
    def session_fatal(self) -> bool:
        return self.code in SESSION_FATAL_CODES


class AdapterStartError(PermanentError):
    """An adapter could not be started (for example the listener failed to bind)."""


class DispatcherClosed(PermanentError):
    """The dispatcher (or the given source) no longer accepts events."""
