# tests/conftest.py

import os
from datetime import datetime, timedelta, timezone

# app.config builds its settings at import time and the signing secret has no
# default
os.environ.setdefault("UNSUBSCRIBE_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient

from app.campaigns.dispatcher import CampaignDispatcher
from app.config import Settings
from app.credits.ledger import CreditLedger
from app.dependencies import build_services
from app.emails.renderer import EmailRenderer
from app.main import create_app
from app.services.email_service import LogEmailDelivery
from app.storage import MemoryBackend
from app.subscribers.service import SubscriberStore
from app.unsubscribe.tokens import UnsubscribeTokenService

TENANT = "tenant_abc"
SECRET = "test-secret"
FRONTEND_URL = "https://app.example.com"


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    return MemoryBackend()


@pytest.fixture
def subscribers(storage, clock):
    return SubscriberStore(storage, clock=clock)


@pytest.fixture
def ledger(storage, clock):
    return CreditLedger(storage, clock=clock)


@pytest.fixture
def tokens(clock):
    return UnsubscribeTokenService(SECRET, FRONTEND_URL, ttl_days=30, clock=clock)


@pytest.fixture
def renderer(tokens, clock):
    return EmailRenderer(
        tokens,
        company_name="Acme Shop",
        company_address="1 Market St, Springfield",
        preferences_url="https://app.example.com/preferences",
        clock=clock,
    )


@pytest.fixture
def delivery():
    return LogEmailDelivery()


@pytest.fixture
def dispatcher(storage, subscribers, ledger, renderer, delivery, clock):
    return CampaignDispatcher(
        storage, subscribers, ledger, renderer, delivery, concurrency=3, clock=clock
    )


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        storage_backend="memory",
        email_delivery="log",
        unsubscribe_secret=SECRET,
        frontend_url=FRONTEND_URL,
        from_email="news@acme.test",
        from_name="Acme Shop",
    )


@pytest.fixture
def services(test_settings):
    return build_services(test_settings, storage=MemoryBackend(), delivery=LogEmailDelivery())


@pytest.fixture
def client(services):
    """
    A test client for the API backed by the in-memory store.
    """
    with TestClient(create_app(services)) as c:
        yield c


@pytest.fixture
def tenant_headers():
    return {"X-Tenant-ID": TENANT}


def assert_counters_consistent(stats):
    assert (
        stats.active_subscribers
        + stats.unsubscribed_subscribers
        + stats.bounced_subscribers
        + stats.complained_subscribers
        == stats.total_subscribers
    )
