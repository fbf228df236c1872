"""Pytest configuration and fixtures."""

import os
import sys
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from campaign_dispatch.compliance.models import ConsentRecord
from campaign_dispatch.config.settings import Settings
from campaign_dispatch.models import Channel, Contact
from campaign_dispatch.providers.mock_provider import MockSender
from campaign_dispatch.runtime import build_runtime
from campaign_dispatch.state.backends import SQLiteBackend
from campaign_dispatch.state.repository import Repository

# Monday 2026-03-02 15:00 UTC (10:00 in New York)
START = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)

_DEFAULT_EMAIL = object()


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def backend():
    """Create a temporary SQLite backend."""
    with tempfile.TemporaryDirectory() as tmpdir:
        backend = SQLiteBackend(db_path=os.path.join(tmpdir, "test.db"))
        yield backend
        backend.close()


@pytest.fixture
def repository(backend):
    return Repository(backend)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def email_sender():
    return MockSender(Channel.EMAIL)


@pytest.fixture
def sms_sender():
    return MockSender(Channel.SMS)


@pytest.fixture
def senders(email_sender, sms_sender):
    return {Channel.EMAIL: email_sender, Channel.SMS: sms_sender}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'settings.db'}",
        batch_size=10,
        retry_jitter=False,
    )


@pytest.fixture
def runtime(settings, repository, senders, clock, sleep):
    """Fully wired engine over the temporary repository and mock senders."""
    return build_runtime(settings, repository=repository, senders=senders, clock=clock, sleep=sleep)


@pytest.fixture
def make_contact(repository):
    """Factory that saves a contact and, optionally, opt-in consent records."""

    def _make(
        contact_id: str,
        store_id: str = "store-1",
        email=_DEFAULT_EMAIL,
        phone: str | None = None,
        consent: tuple[Channel, ...] = (Channel.EMAIL,),
        **fields,
    ) -> Contact:
        if email is _DEFAULT_EMAIL:
            email = f"{contact_id}@example.com"
        contact = Contact(
            id=contact_id,
            store_id=store_id,
            email=email,
            phone=phone,
            created_at=START - timedelta(days=30),
            updated_at=START - timedelta(days=30),
            **fields,
        )
        repository.save_contact(contact)
        for channel in consent:
            repository.append_consent(
                ConsentRecord(
                    contact_id=contact_id,
                    channel=channel,
                    consented=True,
                    source="signup_form",
                    recorded_at=START - timedelta(days=30),
                )
            )
        return repository.get_contact(contact_id)

    return _make
