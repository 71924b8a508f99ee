"""
Shared fixtures. Environment overrides must be in place before ``core.config``
is first imported, since it builds the settings object at import time.
"""
import os

os.environ["SECRET_KEY"] = "test-secret-key-for-the-suite"
os.environ["ENVIRONMENT"] = "development"
os.environ["OTP_HASH_ROUNDS"] = "4"
os.environ["EMAIL_PROVIDER"] = "console"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["CLEANUP_INTERVAL_SECONDS"] = "0"
os.environ.pop("RATE_LIMIT_BACKEND", None)

import re
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from core.config import Settings
from core.email_utils import ConsoleEmailSender
from services.container import build_container

CODE_RE = re.compile(r"code is: (\d+)")


class FakeClock:
    """Manually advanced clock shared by every service under test."""

    def __init__(self, start=None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def latest_code(sender: ConsoleEmailSender, email: str) -> str:
    """Pull the plaintext code out of the last email sent to ``email``."""
    message = sender.last_message_to(email)
    assert message is not None, f"no email sent to {email}"
    return CODE_RE.search(message.text_body).group(1)


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings():
    def _make(**overrides):
        return Settings(_env_file=None, **overrides)
    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def email_sender():
    return ConsoleEmailSender()


@pytest.fixture
def container(settings, clock, email_sender):
    return build_container(settings, clock=clock, email_sender=email_sender)


@pytest.fixture
def auth_service(container):
    return container.auth_service


@pytest.fixture
def client(container):
    from main import app

    app.state.container = container
    with TestClient(app) as test_client:
        yield test_client
    del app.state.container
    app.dependency_overrides.clear()
