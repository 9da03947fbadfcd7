"""MIME decoding of fetched header and body sections."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional, Tuple

from fast_mail_parser import parse_email

from mailstream.core.models import MailAddress
from mailstream.utils.errors import DecodeError, MailstreamError
from mailstream.utils.logging import get_logger

logger = get_logger(__name__)

_CONTENT_HEADERS = re.compile(
    rb"^content-(?:type|transfer-encoding):.*(?:\r?\n[ \t].*)*",
    re.IGNORECASE | re.MULTILINE,
)


@dataclass(frozen=True)
class DecodedMail:
    """Structured fields extracted from raw MIME bytes."""

    from_: Tuple[MailAddress, ...] = ()
    to: Tuple[MailAddress, ...] = ()
    subject: str = ""
    date: Optional[datetime] = None
    text: Optional[str] = None
    html: Optional[str] = None


class MimeDecoder:
    """Parse MIME messages with fast-mail-parser."""

    def decode(self, raw: bytes) -> DecodedMail:
        """Decode raw message bytes into structured fields.

        Raises:
            DecodeError: If the bytes cannot be parsed
        """
        try:
            parsed = parse_email(self._terminate_headers(raw))
            return self._to_decoded(parsed)

        except MailstreamError:
            raise

        except Exception as e:
            raise DecodeError("Failed to parse MIME content", details={"size": len(raw)}) from e

    def decode_body(self, header: bytes, body: bytes) -> DecodedMail:
        """Decode a TEXT section using the content headers of its message."""
        content = self.content_headers(header)
        prefix = content + b"\r\n" if content else b""
        return self.decode(prefix + b"\r\n" + body)

    @staticmethod
    def content_headers(header: bytes) -> bytes:
        """Return the Content-Type and Content-Transfer-Encoding lines of ``header``."""
        return b"\r\n".join(m.group(0).rstrip(b"\r\n") for m in _CONTENT_HEADERS.finditer(header))

    @staticmethod
    def _terminate_headers(raw: bytes) -> bytes:
        """Header-only input needs the blank line that ends a header block."""
        if b"\r\n\r\n" in raw or b"\n\n" in raw or raw.startswith((b"\r\n", b"\n")):
            return raw
        if raw.endswith(b"\r\n"):
            return raw + b"\r\n"
        if raw.endswith(b"\n"):
            return raw + b"\n"
        return raw + b"\r\n\r\n"

    @classmethod
    def _to_decoded(cls, parsed: Any) -> DecodedMail:
        headers = cls._normalise_headers(getattr(parsed, "headers", None) or {})
        date_value = headers.get("date") or getattr(parsed, "date", None)

        return DecodedMail(
            from_=MailAddress.parse_list(headers.get("from")),
            to=MailAddress.parse_list(headers.get("to")),
            subject=parsed.subject or headers.get("subject") or "",
            date=cls._parse_date(date_value),
            text=cls._join_parts(parsed.text_plain),
            html=cls._join_parts(parsed.text_html),
        )

    @staticmethod
    def _normalise_headers(headers: Dict[str, Any]) -> Dict[str, str]:
        normalised = {}
        for key, value in headers.items():
            if isinstance(value, (list, tuple)):
                value = ", ".join(str(v) for v in value)
            normalised[str(key).lower()] = str(value)
        return normalised

    @staticmethod
    def _join_parts(parts: Any) -> Optional[str]:
        if not parts:
            return None
        if isinstance(parts, str):
            return parts
        return "\n".join(part for part in parts if part) or None

    @staticmethod
    def _parse_date(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            parsed = parsedate_to_datetime(value.strip())
        except (TypeError, ValueError, IndexError):
            logger.debug("Unparseable Date header", extra={"date": value})
            return None
        # "-0000" means the zone is unknown; treat it as UTC
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed
