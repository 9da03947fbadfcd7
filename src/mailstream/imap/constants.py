"""IMAP constants and configuration values."""

from enum import Enum


class IMAPResponse(str, Enum):
    """Standard IMAP response codes."""

    OK = "OK"
    NO = "NO"
    BAD = "BAD"


class Timeouts:
    """Timeout values for IMAP operations (in seconds)."""

    IMAP_IDLE = 29 * 60.0  # re-issue IDLE before servers drop it (RFC 2177)
    IMAP_IDLE_DONE = 5.0  # waiting for the server to end IDLE
    IMAP_LOGOUT = 5.0


class SearchCriteria:
    """Search keys used by the client."""

    UNSEEN = "UNSEEN"


class FetchParts:
    """Message sections requested for each fetched message."""

    HEADER = "HEADER.FIELDS (FROM TO SUBJECT DATE CONTENT-TYPE CONTENT-TRANSFER-ENCODING)"
    TEXT = "TEXT"

    DEFAULT = (HEADER, TEXT)
