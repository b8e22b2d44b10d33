"""Exception hierarchy for the TwinForge scan pipeline."""
from typing import Optional


class TwinForgeError(Exception):
    """
    Base class for scan pipeline errors.

    Route handlers catch this single type to build the JSON error envelope;
    anything else reaching a handler is treated as an unexpected failure.
    """

    http_status = 500


class UpstreamAIError(TwinForgeError):
    """
    Raised when the vision model call itself fails.

    ``kind`` is one of: auth, rate_limit, format, size, server, timeout,
    empty_reply, other. ``user_message`` is the French text shown to the user.
    """

    http_status = 502

    def __init__(
        self,
        kind: str,
        user_message: str,
        status_code: Optional[int] = None,
        detail: str = "",
    ):
        super().__init__(user_message)
        self.kind = kind
        self.user_message = user_message
        self.status_code = status_code
        self.detail = detail


class ReplyParseError(TwinForgeError):
    """
    Raised when the model reply contains no decodable JSON object.

    Typical causes:
      - Truncated reply (max_tokens reached)
      - Prose answer instead of JSON
    """

    http_status = 500


class ReplyValidationError(TwinForgeError):
    """
    Raised when a decoded reply is structurally invalid.

    ``field`` names the offending top-level field so the caller can report it.
    """

    http_status = 500

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid AI reply: {field} {reason}")
        self.field = field
        self.reason = reason


class ArchetypeDataError(TwinForgeError):
    """Raised when the archetype table has no usable rows for a gender."""

    http_status = 503


class PersistenceError(TwinForgeError):
    """Raised when a scan or profile write fails."""
