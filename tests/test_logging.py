"""Tests for log redaction, formatting and debug output."""

import json
import logging

import pytest

from mailstream.utils.logging import (
    REDACTED,
    ROOT_LOGGER_NAME,
    CallbackHandler,
    DebugLogging,
    JSONFormatter,
    LogManager,
    SensitiveDataFilter,
    SensitiveDataMasker,
    async_log_call,
    get_logger,
)


def make_record(msg, **extra):
    record = logging.LogRecord("mailstream.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSensitiveDataMasker:
    def test_password_assignment_redacted(self):
        masker = SensitiveDataMasker()

        masked = masker.mask_string("login failed password=hunter2 for user")

        assert "hunter2" not in masked
        assert f"password={REDACTED}" in masked

    def test_address_obscured(self):
        masked = SensitiveDataMasker().mask_string("mail from alice@example.com")

        assert masked == "mail from a***@e***"

    def test_nested_dict(self):
        masked = SensitiveDataMasker().mask_dict(
            {"host": "imap.example.com", "auth": {"Password": "hunter2"}, "port": 993}
        )

        assert masked == {"host": "imap.example.com", "auth": {"Password": REDACTED}, "port": 993}


def test_filter_masks_message_and_extras():
    """Test the filter redacts both the message text and extra fields."""
    record = make_record("token: abc123", password="hunter2", details={"secret": "x"})

    assert SensitiveDataFilter().filter(record) is True
    assert record.getMessage() == f"token: {REDACTED}"
    assert record.password == REDACTED
    assert record.details == {"secret": REDACTED}


def test_json_formatter_includes_context():
    record = make_record("Fetched", mailbox="INBOX")

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "Fetched"
    assert payload["level"] == "INFO"
    assert payload["context"] == {"mailbox": "INBOX"}


def test_callback_handler_passes_extras():
    calls = []
    handler = CallbackHandler(lambda *args: calls.append(args))

    handler.emit(make_record("plain"))
    handler.emit(make_record("with extra", uid=7))

    assert calls == [("plain",), ("with extra", {"uid": 7})]


def test_get_logger_namespaces_names():
    assert get_logger("client").name == "mailstream.client"
    assert get_logger("mailstream.core").name == "mailstream.core"
    assert get_logger().name == ROOT_LOGGER_NAME


def test_context_adapter_merges_extra(caplog):
    logger = get_logger("adapter", mailbox="INBOX")

    with caplog.at_level(logging.INFO, logger=ROOT_LOGGER_NAME):
        logger.info("Selected", extra={"exists": 3})

    record = caplog.records[-1]
    assert record.mailbox == "INBOX"
    assert record.exists == 3


def test_log_manager_rejects_unknown_level():
    with pytest.raises(ValueError):
        LogManager.parse_level("LOUD")


def test_log_manager_set_level_updates_console():
    manager = LogManager("WARNING")

    manager.set_level("debug")

    assert manager.root_logger.level == logging.DEBUG
    assert manager.console_handler.level == logging.DEBUG


@pytest.mark.asyncio
async def test_async_log_call_reraises(caplog):
    """Test a wrapped coroutine's exception propagates and is logged at DEBUG."""

    @async_log_call
    async def explode():
        raise RuntimeError("boom")

    with caplog.at_level(logging.DEBUG):
        with pytest.raises(RuntimeError):
            await explode()

    assert "raised RuntimeError" in caplog.text


def test_debug_logging_restores_levels():
    """Test uninstall removes the handler and restores the previous level."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.WARNING)
    messages = []
    debug = DebugLogging(enabled=True, sink=lambda msg, *args: messages.append(msg))

    debug.install()
    logging.getLogger("mailstream.test").debug("visible")
    debug.uninstall()
    logging.getLogger("mailstream.test").debug("hidden")

    assert messages == ["visible"]
    assert logger.level == logging.WARNING
