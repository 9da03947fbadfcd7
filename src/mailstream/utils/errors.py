"""Error hierarchy for the mailstream client."""

from enum import Enum
from typing import Any, Dict

from .logging import get_logger

logger = get_logger(__name__)


## Error Categories


class ErrorCategory(Enum):
    """Broad area an error belongs to."""

    NETWORK = "network"
    MAILBOX = "mailbox"
    STATE = "state"
    FETCH = "fetch"
    DECODE = "decode"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


## Custom Exceptions


class MailstreamError(Exception):
    """Base exception for all mailstream errors."""

    category = ErrorCategory.UNKNOWN
    user_message = "An error occurred"

    def __init__(
        self, message: str | None = None, details: Dict[str, Any] | None = None
    ):
        self.message = message or self.user_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialisable form used by logs and the CLI."""
        return {
            "error_type": self.__class__.__name__,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


## Session Errors


class ConnectionError(MailstreamError):
    """Transport or authentication failure. The session must be recreated."""

    category = ErrorCategory.NETWORK
    user_message = "Failed to connect to the mail server"


class MailboxError(MailstreamError):
    """Mailbox selection or switch was rejected by the server."""

    category = ErrorCategory.MAILBOX
    user_message = "Failed to select mailbox"


class NotConnectedError(MailstreamError):
    """An operation was attempted while the session is not ready."""

    category = ErrorCategory.STATE
    user_message = "Client not connected"


class NoMailboxError(MailstreamError):
    """An operation needing a selected mailbox was attempted without one."""

    category = ErrorCategory.STATE
    user_message = "No mailbox selected"


## Retrieval Errors


class FetchError(MailstreamError):
    """SEARCH or FETCH failed at the transport or protocol level."""

    category = ErrorCategory.FETCH
    user_message = "Failed to retrieve messages"


class DecodeError(MailstreamError):
    """A single message could not be decoded."""

    category = ErrorCategory.DECODE
    user_message = "Failed to decode message"


class MissingIdentifierError(DecodeError):
    """The server omitted the UID attribute for a fetched message."""

    user_message = "Message was delivered without a UID"


## Configuration Errors


class ConfigurationError(MailstreamError):
    """Settings could not be loaded or are inconsistent."""

    category = ErrorCategory.CONFIGURATION
    user_message = "Invalid mailstream configuration"


class MissingConfigError(ConfigurationError):
    """A required setting such as the password was not supplied."""

    user_message = "A required setting is missing"


class InvalidConfigError(ConfigurationError):
    """A setting failed validation."""

    user_message = "A setting has an invalid value"


## Error Handler


class ErrorHandler:
    """Logs errors at the application boundary."""

    @staticmethod
    def handle(
        error: Exception, context: str = "", log_traceback: bool = True
    ) -> Dict[str, Any]:
        """Log ``error`` and return its serialisable description."""
        if isinstance(error, MailstreamError):
            info = error.to_dict()
        else:
            info = {
                "error_type": type(error).__name__,
                "category": ErrorCategory.UNKNOWN.value,
                "message": str(error),
                "details": {},
            }
        if context:
            info["details"] = {**info["details"], "context": context}

        logger.error(
            "%s: %s",
            context or info["error_type"],
            info["message"],
            extra={"details": info["details"]},
            exc_info=error if log_traceback else None,
        )
        return info


def format_error_message(error: Exception) -> str:
    """Text suitable for showing to a user."""
    if isinstance(error, MailstreamError):
        return error.message
    return f"Unexpected {type(error).__name__}; run with --debug for details"
