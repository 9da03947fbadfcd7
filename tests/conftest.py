"""
Shared test fixtures and configuration for pytest
"""
import logging
import os

import pytest

from mailstream.client import Client
from mailstream.utils.logging import ROOT_LOGGER_NAME

from .test_helpers import ConfigTestHelper, FakeEngine, FakeMessage


@pytest.fixture
def test_config():
    """Connection settings for a fake server"""
    return ConfigTestHelper.create_test_config()


@pytest.fixture
def test_messages():
    """Three messages with distinct UIDs"""
    return [FakeMessage.build(uid) for uid in (1, 2, 3)]


@pytest.fixture
def engine(test_messages):
    """Fake protocol engine holding the test messages in INBOX"""
    return FakeEngine(test_messages)


@pytest.fixture
async def client(test_config, engine):
    """Connected client over the fake engine"""
    client = await Client.create(test_config, engine)
    yield client
    await client.close()


@pytest.fixture
def recorder():
    """Collects published payloads per event"""
    return EventRecorder()


class EventRecorder:
    def __init__(self):
        self.mail = []
        self.flags = []
        self.errors = []

    def attach(self, client):
        client.on("mail", self.mail.append)
        client.on("flags", self.flags.append)
        client.on("error", self.errors.append)
        return self

    @property
    def uids(self):
        return [record.uid for record in self.mail]


@pytest.fixture(autouse=True)
def clear_env_vars():
    """Clear mailstream environment variables before each test"""
    original = {key: value for key, value in os.environ.items() if key.startswith("MAILSTREAM_")}
    for key in original:
        del os.environ[key]

    yield

    for key in [key for key in os.environ if key.startswith("MAILSTREAM_")]:
        del os.environ[key]
    os.environ.update(original)


@pytest.fixture(autouse=True)
def reset_logging():
    """Restore the mailstream logger after tests that change it"""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    level, handlers = logger.level, list(logger.handlers)
    yield
    logger.setLevel(level)
    logger.handlers[:] = handlers
