"""Client configuration models and loaders."""

import json
import os
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidConfigError, MissingConfigError
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAILBOX = "INBOX"
ENV_PREFIX = "MAILSTREAM_"


class DebugOptions(BaseModel):
    """Observational debug settings. They never change client behaviour."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    enabled: bool = False
    logger: Optional[Callable[..., Any]] = None
    connection_debug: bool = False  # route aioimaplib protocol traces too


class MailstreamConfig(BaseModel):
    """Pydantic model for a single mailbox connection."""

    host: str
    port: int = 993
    email: str
    password: str = Field(repr=False)
    mailbox: str = DEFAULT_MAILBOX
    tls: bool = True
    verify_certificates: bool = True
    timeout: float = 30.0  # seconds, per IMAP command
    idle: bool = True
    decode_workers: int = 4
    processed_limit: int = 10_000
    debug: DebugOptions = Field(default_factory=DebugOptions)

    @field_validator("host", "email", "password", "mailbox")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError("must be between 1 and 65535")
        return value

    @field_validator("timeout", "decode_workers", "processed_limit")
    @classmethod
    def _positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value


ConfigSource = Union[MailstreamConfig, Mapping[str, Any], str, Path, None]


def load_config(source: ConfigSource = None) -> MailstreamConfig:
    """Build a :class:`MailstreamConfig` from a model, mapping, JSON file or env.

    Args:
        source: An existing config (returned unchanged), a mapping of fields,
            a path to a JSON file, or ``None`` to read ``MAILSTREAM_*``
            environment variables (a ``.env`` file is loaded first).

    Raises:
        MissingConfigError: If the JSON file does not exist or required
            environment variables are absent
        InvalidConfigError: If the values fail validation
    """
    if isinstance(source, MailstreamConfig):
        return source

    if source is None:
        data = _from_env()
    elif isinstance(source, (str, Path)):
        data = _from_file(Path(source))
    else:
        data = dict(source)

    try:
        return MailstreamConfig.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise InvalidConfigError(
            f"Invalid configuration: {', '.join(fields)}",
            details={"fields": fields},
        ) from e


def _from_file(path: Path) -> dict:
    if not path.exists():
        raise MissingConfigError(
            f"Configuration file not found: {path}", details={"path": str(path)}
        )

    try:
        with path.open(encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as e:
        raise InvalidConfigError(
            f"Configuration file is not valid JSON: {path}", details={"path": str(path)}
        ) from e

    logger.debug("Configuration loaded", extra={"path": str(path)})
    return data


def _from_env() -> dict:
    load_dotenv()

    required = ("HOST", "EMAIL", "PASSWORD")
    missing = [ENV_PREFIX + key for key in required if not os.environ.get(ENV_PREFIX + key)]
    if missing:
        raise MissingConfigError(
            f"Missing environment variables: {', '.join(missing)}",
            details={"variables": missing},
        )

    data: dict = {}
    for field_name in MailstreamConfig.model_fields:
        if field_name == "debug":
            continue
        value = os.environ.get(ENV_PREFIX + field_name.upper())
        if value is not None:
            data[field_name] = value

    if os.environ.get(ENV_PREFIX + "DEBUG"):
        data["debug"] = {"enabled": os.environ[ENV_PREFIX + "DEBUG"].lower() in ("1", "true", "yes")}

    return data
