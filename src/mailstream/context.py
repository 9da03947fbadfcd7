"""Carry a client through plain dict contexts."""

from typing import Any, Dict, Mapping, Optional

from mailstream.client import Client

MAILSTREAM_KEY = "mailstream"


def with_context(ctx: Mapping[str, Any], client: Client) -> Dict[str, Any]:
    """Return a copy of ``ctx`` holding ``client``."""
    return {**ctx, MAILSTREAM_KEY: client}


def from_context(ctx: Mapping[str, Any]) -> Optional[Client]:
    return ctx.get(MAILSTREAM_KEY) or None
