"""Tests for rendering, retries, the dispatch worker and the unit queue."""

import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest

from campaign_dispatch.dispatch.models import (
    BatchResult,
    DispatchUnit,
    ErrorKind,
    MessageContent,
    MessageStatus,
    OutcomeKind,
    RecipientOutcome,
    RenderedMessage,
    SendResult,
    SourceKind,
    UnitKind,
    UnitStatus,
    can_transition,
)
from campaign_dispatch.dispatch.renderer import render_message, render_template
from campaign_dispatch.dispatch.retry import RetryStrategy
from campaign_dispatch.errors import ConfigurationError, DispatchFailed, RepositoryUnavailable
from campaign_dispatch.models import AccountSettings, Channel, Contact
from campaign_dispatch.providers.base import MessageSender
from campaign_dispatch.providers.mock_provider import MockSender

EMAIL_CONTENT = MessageContent(
    subject="Hi {{contact.first_name}}",
    html="<p>{{campaign.name}} for {{contact.email}}</p>",
    from_email="shop@example.com",
    from_name="Shop",
)


def make_unit(recipient_ids, channel=Channel.EMAIL, source_id="camp-1", clock=None, **fields):
    now = clock() if clock else None
    data = {
        "id": str(uuid.uuid4()),
        "kind": UnitKind.CAMPAIGN_BATCH,
        "source_kind": SourceKind.CAMPAIGN,
        "source_id": source_id,
        "store_id": "store-1",
        "channel": channel,
        "content": EMAIL_CONTENT if channel == Channel.EMAIL else MessageContent(body="Hi"),
        "recipient_ids": list(recipient_ids),
        "variables": {"campaign": {"id": source_id, "name": "Spring Sale"}},
    }
    if now:
        data["available_at"] = now
        data["created_at"] = now
    data.update(fields)
    return DispatchUnit(**data)


class ExplodingSender(MessageSender):
    """Raises for one address and accepts the rest."""

    name = "exploding"

    def __init__(self, bad_address):
        self.channel = Channel.EMAIL
        self.bad_address = bad_address
        self.count = 0

    async def send(self, message: RenderedMessage) -> SendResult:
        if message.to == self.bad_address:
            raise RuntimeError("connection reset by peer")
        self.count += 1
        return SendResult.ok(f"ok-{self.count}")


class TestStatusLattice:
    """Tests for the forward-only message status order."""

    @pytest.mark.parametrize(
        "current,new,allowed",
        [
            (MessageStatus.QUEUED, MessageStatus.SENT, True),
            (MessageStatus.SENT, MessageStatus.DELIVERED, True),
            (MessageStatus.QUEUED, MessageStatus.CLICKED, True),
            (MessageStatus.DELIVERED, MessageStatus.OPENED, True),
            (MessageStatus.OPENED, MessageStatus.CLICKED, True),
            (MessageStatus.DELIVERED, MessageStatus.SENT, False),
            (MessageStatus.DELIVERED, MessageStatus.BOUNCED, False),
            (MessageStatus.CLICKED, MessageStatus.OPENED, False),
            (MessageStatus.BOUNCED, MessageStatus.OPENED, False),
            (MessageStatus.FAILED, MessageStatus.CLICKED, False),
            (MessageStatus.SENT, MessageStatus.SENT, False),
        ],
    )
    def test_can_transition(self, current, new, allowed):
        assert can_transition(current, new) is allowed


class TestRenderer:
    """Tests for template rendering."""

    def test_nested_paths(self):
        context = {"trigger": {"customer": {"first_name": "Ada"}, "total_price": "42.00"}}
        result = render_template(
            "{{ trigger.customer.first_name }} owes {{trigger.total_price}}", context
        )
        assert result == "Ada owes 42.00"

    def test_unknown_and_structured_values_render_empty(self):
        context = {"trigger": {"line_items": [{"title": "Mug"}]}}
        assert render_template("[{{trigger.missing}}][{{trigger.line_items}}]", context) == "[][]"

    def test_none_template(self):
        assert render_template(None, {}) is None

    def test_render_message(self):
        contact = Contact(
            id="c-1",
            store_id="store-1",
            email="ada@example.com",
            first_name="Ada",
            attributes={"loyalty": "gold"},
        )
        content = MessageContent(
            subject="{{contact.firstName}}, a {{contact.loyalty}} offer",
            html="<p>{{workflow.name}}</p>",
            from_email="shop@example.com",
            from_name="Shop",
        )
        message = render_message(
            content,
            Channel.EMAIL,
            contact,
            {"workflow": {"name": "Welcome"}},
            tags={"source_kind": "campaign"},
            idempotency_key="rec-1",
        )
        assert message.to == "ada@example.com"
        assert message.subject == "Ada, a gold offer"
        assert message.html == "<p>Welcome</p>"
        assert message.from_email == "shop@example.com"
        assert message.idempotency_key == "rec-1"
        assert message.tags == {"source_kind": "campaign"}

    def test_render_sms(self):
        contact = Contact(id="c-1", store_id="store-1", phone="+15551230001", first_name="Ada")
        content = MessageContent(body="Hi {{contact.first_name}}", from_number="+15550000000")
        message = render_message(content, Channel.SMS, contact)
        assert message.to == "+15551230001"
        assert message.body == "Hi Ada"
        assert message.from_number == "+15550000000"


class TestRetryStrategy:
    """Tests for RetryStrategy."""

    def _message(self):
        return RenderedMessage(channel=Channel.EMAIL, to="a@example.com", subject="Hi")

    def test_delay_without_jitter(self):
        strategy = RetryStrategy(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [strategy.get_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_delay_with_jitter_stays_in_range(self):
        strategy = RetryStrategy(base_delay=2.0, max_delay=60.0, jitter=True)
        for _ in range(20):
            assert 1.0 <= strategy.get_delay(0) <= 3.0

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, sleep):
        sender = MockSender()
        strategy = RetryStrategy(jitter=False, sleep=sleep)
        result, attempts = await strategy.send(sender, self._message())
        assert result.accepted is True
        assert attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_throttled_three_times_then_success(self, sleep):
        sender = MockSender()
        sender.script(*[ErrorKind.PROVIDER_THROTTLED] * 3)
        strategy = RetryStrategy(max_attempts=5, base_delay=1.0, jitter=False, sleep=sleep)

        result, attempts = await strategy.send(sender, self._message())

        assert result.accepted is True
        assert attempts == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert len(sender.calls) == 4
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, sleep):
        sender = MockSender()
        sender.script(ErrorKind.INVALID_RECIPIENT)
        strategy = RetryStrategy(jitter=False, sleep=sleep)

        result, attempts = await strategy.send(sender, self._message())

        assert result.accepted is False
        assert result.error_kind == ErrorKind.INVALID_RECIPIENT
        assert attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, sleep):
        sender = MockSender()
        sender.script(*[ErrorKind.PROVIDER_UNAVAILABLE] * 3)
        strategy = RetryStrategy(max_attempts=3, jitter=False, sleep=sleep)

        with pytest.raises(DispatchFailed) as exc_info:
            await strategy.send(sender, self._message(), recipient_id="c-1")

        assert exc_info.value.attempts == 3
        assert exc_info.value.error_kind == "provider_unavailable"
        assert exc_info.value.recipient_id == "c-1"
        assert len(sleep.delays) == 2


class TestDispatchWorker:
    """Tests for DispatchWorker."""

    @pytest.fixture
    def worker(self, runtime):
        return runtime.worker

    @pytest.mark.asyncio
    async def test_sends_to_consenting_recipients(
        self, worker, repository, make_contact, email_sender, clock
    ):
        make_contact("c-1", first_name="Ada")
        make_contact("c-2", consent=())
        make_contact("c-3", email=None)

        batch = await worker.process_unit(make_unit(["c-1", "c-2", "c-3", "ghost"], clock=clock))

        assert batch.summary() == {
            "sent": 1,
            "skipped": 3,
            "deferred": 0,
            "failed": 0,
            "duplicate": 0,
        }
        reasons = {o.recipient_id: o.reason for o in batch.outcomes}
        assert reasons["c-2"] == "no_consent"
        assert reasons["c-3"] == "missing_address"
        assert reasons["ghost"] == "missing_address"

        assert [m.to for m in email_sender.sent] == ["c-1@example.com"]
        assert email_sender.sent[0].subject == "Hi Ada"
        assert email_sender.sent[0].html == "<p>Spring Sale for c-1@example.com</p>"

        records = {r.recipient_id: r for r in repository.list_message_records(SourceKind.CAMPAIGN)}
        assert records["c-1"].status == MessageStatus.SENT
        assert records["c-1"].provider_message_id == "mock-email-1"
        assert records["c-1"].attempts == 1
        for skipped in ("c-2", "c-3", "ghost"):
            assert records[skipped].status == MessageStatus.QUEUED
            assert records[skipped].provider_message_id is None

    @pytest.mark.asyncio
    async def test_idempotency_key_is_record_id(
        self, worker, repository, make_contact, email_sender, clock
    ):
        make_contact("c-1")
        batch = await worker.process_unit(make_unit(["c-1"], clock=clock))
        assert email_sender.sent[0].idempotency_key == batch.outcomes[0].record_id
        assert email_sender.sent[0].tags == {"source_kind": "campaign", "source_id": "camp-1"}

    @pytest.mark.asyncio
    async def test_reprocessing_is_duplicate(self, worker, make_contact, email_sender, clock):
        make_contact("c-1")
        unit = make_unit(["c-1"], clock=clock)

        await worker.process_unit(unit)
        batch = await worker.process_unit(unit)

        assert batch.outcomes[0].outcome == OutcomeKind.DUPLICATE
        assert batch.outcomes[0].reason == "sent"
        assert batch.outcomes[0].provider_message_id == "mock-email-1"
        assert len(email_sender.calls) == 1

    @pytest.mark.asyncio
    async def test_in_flight_record_is_duplicate(
        self, worker, repository, make_contact, email_sender, clock
    ):
        make_contact("c-1")
        record = repository.ensure_message_record(
            "store-1", SourceKind.CAMPAIGN, "camp-1", "c-1", Channel.EMAIL, clock()
        )
        assert repository.claim_message_record(record.id, clock()) is True

        batch = await worker.process_unit(make_unit(["c-1"], clock=clock))

        assert batch.outcomes[0].outcome == OutcomeKind.DUPLICATE
        assert batch.outcomes[0].reason == "in_flight"
        assert email_sender.calls == []

    @pytest.mark.asyncio
    async def test_skipped_recipient_sent_after_consent(
        self, worker, repository, make_contact, runtime, email_sender, clock
    ):
        make_contact("c-1", consent=())
        unit = make_unit(["c-1"], clock=clock)
        first = await worker.process_unit(unit)
        assert first.outcomes[0].outcome == OutcomeKind.SKIPPED

        runtime.opt_outs.opt_in("c-1", Channel.EMAIL, source="checkout")
        second = await worker.process_unit(unit)

        assert second.outcomes[0].outcome == OutcomeKind.SENT
        assert len(email_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_throttled_then_success(
        self, worker, repository, make_contact, email_sender, sleep, clock
    ):
        make_contact("c-1")
        email_sender.script(
            ErrorKind.PROVIDER_THROTTLED,
            ErrorKind.PROVIDER_THROTTLED,
            ErrorKind.PROVIDER_THROTTLED,
        )

        batch = await worker.process_unit(make_unit(["c-1"], clock=clock))

        outcome = batch.outcomes[0]
        assert outcome.outcome == OutcomeKind.SENT
        assert outcome.attempts == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        record = repository.get_message_record(outcome.record_id)
        assert record.status == MessageStatus.SENT
        assert record.attempts == 4

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, worker, repository, make_contact, email_sender, clock):
        make_contact("c-1")
        email_sender.script(*[ErrorKind.PROVIDER_UNAVAILABLE] * 5)

        batch = await worker.process_unit(make_unit(["c-1"], clock=clock))

        outcome = batch.outcomes[0]
        assert outcome.outcome == OutcomeKind.FAILED
        assert outcome.reason == "provider_unavailable"
        assert outcome.attempts == 5
        record = repository.get_message_record(outcome.record_id)
        assert record.status == MessageStatus.FAILED
        assert record.error_kind == ErrorKind.PROVIDER_UNAVAILABLE
        assert record.retriable_failure is True

        # A later unit may try again
        retry = await worker.process_unit(make_unit(["c-1"], clock=clock))
        assert retry.outcomes[0].outcome == OutcomeKind.SENT

    @pytest.mark.asyncio
    async def test_permanent_failure_is_final(
        self, worker, repository, make_contact, email_sender, clock
    ):
        make_contact("c-1")
        email_sender.fail_address("c-1@example.com", ErrorKind.INVALID_RECIPIENT)

        batch = await worker.process_unit(make_unit(["c-1"], clock=clock))
        assert batch.outcomes[0].outcome == OutcomeKind.FAILED
        assert batch.outcomes[0].reason == "invalid_recipient"

        again = await worker.process_unit(make_unit(["c-1"], clock=clock))
        assert again.outcomes[0].outcome == OutcomeKind.DUPLICATE
        assert len(email_sender.calls) == 1

    @pytest.mark.asyncio
    async def test_auth_error_logged_critical(
        self, worker, make_contact, email_sender, clock, caplog
    ):
        make_contact("c-1")
        email_sender.script(ErrorKind.AUTH_ERROR)

        batch = await worker.process_unit(make_unit(["c-1"], clock=clock))

        assert batch.outcomes[0].reason == "auth_error"
        assert len(email_sender.calls) == 1
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_email_quota_fails_recipients(
        self, worker, repository, make_contact, email_sender, clock
    ):
        repository.save_account_settings(
            AccountSettings(store_id="store-1", email_monthly_credits=3)
        )
        for i in range(5):
            make_contact(f"c-{i}")

        batch = await worker.process_unit(make_unit([f"c-{i}" for i in range(5)], clock=clock))

        assert batch.count(OutcomeKind.SENT) == 3
        assert batch.count(OutcomeKind.FAILED) == 2
        assert {o.reason for o in batch.outcomes if o.outcome == OutcomeKind.FAILED} == {
            "quota_exceeded"
        }
        assert len(email_sender.sent) == 3

    @pytest.mark.asyncio
    async def test_sms_daily_limit_defers(
        self, worker, repository, make_contact, sms_sender, clock
    ):
        repository.save_account_settings(AccountSettings(store_id="store-1", sms_daily_limit=2))
        for i in range(4):
            make_contact(f"c-{i}", phone=f"+1555123000{i}", consent=(Channel.SMS,))

        batch = await worker.process_unit(
            make_unit([f"c-{i}" for i in range(4)], channel=Channel.SMS, clock=clock)
        )

        assert batch.count(OutcomeKind.SENT) == 2
        assert batch.count(OutcomeKind.DEFERRED) == 2
        assert batch.earliest_deferral == clock().replace(hour=0) + timedelta(days=1)
        for outcome in batch.deferred:
            record = repository.get_message_record(outcome.record_id)
            assert record.status == MessageStatus.QUEUED
            assert record.claimed_at is None
            assert record.deferred_until == batch.earliest_deferral
        assert len(sms_sender.sent) == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_isolated(self, repository, runtime, make_contact, clock):
        make_contact("c-1")
        make_contact("c-2")
        runtime.worker.senders[Channel.EMAIL] = ExplodingSender("c-1@example.com")

        batch = await runtime.worker.process_unit(make_unit(["c-1", "c-2"], clock=clock))

        outcomes = {o.recipient_id: o for o in batch.outcomes}
        assert outcomes["c-1"].outcome == OutcomeKind.FAILED
        assert outcomes["c-1"].reason == "internal_error"
        assert outcomes["c-2"].outcome == OutcomeKind.SENT

    @pytest.mark.asyncio
    async def test_unexpected_error_settles_record(
        self, repository, runtime, make_contact, clock
    ):
        make_contact("c-1")
        runtime.worker.senders[Channel.EMAIL] = ExplodingSender("c-1@example.com")
        unit = make_unit(["c-1"], clock=clock)

        await runtime.worker.process_unit(unit)

        (record,) = repository.list_message_records(SourceKind.CAMPAIGN, "camp-1")
        assert record.status == MessageStatus.FAILED
        assert record.error_kind == ErrorKind.INTERNAL_ERROR
        assert record.last_error == "connection reset by peer"
        assert record.in_flight is False
        assert repository.message_counters(SourceKind.CAMPAIGN, "camp-1").pending_count == 0

        again = await runtime.worker.process_unit(unit)

        assert again.outcomes[0].outcome == OutcomeKind.DUPLICATE
        assert again.outcomes[0].reason == "failed"

    @pytest.mark.asyncio
    async def test_repository_unavailable_aborts_unit(
        self, worker, repository, make_contact, clock
    ):
        make_contact("c-1")
        with patch.object(
            repository,
            "mark_message_sent",
            side_effect=RepositoryUnavailable("database is locked", operation="mark_message_sent"),
        ):
            with pytest.raises(RepositoryUnavailable):
                await worker.process_unit(make_unit(["c-1"], clock=clock))

    @pytest.mark.asyncio
    async def test_missing_sender(self, worker, clock):
        del worker.senders[Channel.SMS]
        with pytest.raises(ConfigurationError):
            await worker.process_unit(make_unit(["c-1"], channel=Channel.SMS, clock=clock))


class TestDispatchQueue:
    """Tests for the unit queue and worker pool."""

    def test_claim_respects_lease(self, runtime, clock):
        queue = runtime.queue
        unit = make_unit(["c-1"], clock=clock)
        queue.enqueue([unit])

        claimed = queue.claim(Channel.EMAIL)
        assert claimed.id == unit.id
        assert claimed.status == UnitStatus.RUNNING
        assert queue.claim(Channel.EMAIL) is None

        clock.advance(seconds=runtime.settings.unit_lease_seconds + 1)
        reclaimed = queue.claim(Channel.EMAIL)
        assert reclaimed.id == unit.id
        assert reclaimed.attempts == 2

    def test_claim_waits_for_available_at(self, runtime, clock):
        unit = make_unit(["c-1"], clock=clock, available_at=clock() + timedelta(minutes=5))
        runtime.queue.enqueue([unit])
        assert runtime.queue.claim(Channel.EMAIL) is None
        clock.advance(minutes=5)
        assert runtime.queue.claim(Channel.EMAIL).id == unit.id

    def test_claim_filters_channel_and_source(self, runtime, clock):
        runtime.queue.enqueue(
            [make_unit(["c-1"], clock=clock), make_unit(["c-2"], source_id="camp-2", clock=clock)]
        )
        assert runtime.queue.claim(Channel.SMS) is None
        assert runtime.queue.claim(Channel.EMAIL, source_id="camp-2").source_id == "camp-2"

    def test_cancel_source(self, runtime, clock):
        runtime.queue.enqueue([make_unit(["c-1"], clock=clock), make_unit(["c-2"], clock=clock)])
        assert runtime.queue.cancel_source("camp-1") == 2
        assert runtime.queue.open_units("camp-1") == (0, None)
        assert runtime.queue.claim(Channel.EMAIL) is None

    def test_requeue_deferred_groups_by_time(self, runtime, clock):
        unit = make_unit(["c-1", "c-2", "c-3"], clock=clock)
        later, latest = clock() + timedelta(hours=1), clock() + timedelta(hours=2)
        batch = BatchResult(
            unit_id=unit.id,
            outcomes=[
                RecipientOutcome(recipient_id="c-1", outcome=OutcomeKind.DEFERRED, retry_at=latest),
                RecipientOutcome(recipient_id="c-2", outcome=OutcomeKind.SENT),
                RecipientOutcome(recipient_id="c-3", outcome=OutcomeKind.DEFERRED, retry_at=later),
            ],
        )

        followups = runtime.queue.requeue_deferred(unit, batch)

        assert [(u.recipient_ids, u.available_at) for u in followups] == [
            (["c-3"], later),
            (["c-1"], latest),
        ]
        assert runtime.queue.open_units("camp-1") == (2, later)

    def test_requeue_ignores_automation_units(self, runtime, clock):
        unit = make_unit(["c-1"], clock=clock, kind=UnitKind.AUTOMATION_SEND)
        batch = BatchResult(
            unit_id=unit.id,
            outcomes=[
                RecipientOutcome(
                    recipient_id="c-1", outcome=OutcomeKind.DEFERRED, retry_at=clock()
                )
            ],
        )
        assert runtime.queue.requeue_deferred(unit, batch) == []

    @pytest.mark.asyncio
    async def test_pool_drains_all_channels(
        self, runtime, make_contact, email_sender, sms_sender, clock
    ):
        make_contact("c-1", phone="+15551230001", consent=(Channel.EMAIL, Channel.SMS))
        runtime.queue.enqueue(
            [
                make_unit(["c-1"], clock=clock),
                make_unit(["c-1"], channel=Channel.SMS, source_id="camp-2", clock=clock),
            ]
        )

        results = await runtime.pool.drain()

        assert len(results) == 2
        assert len(email_sender.sent) == 1
        assert len(sms_sender.sent) == 1
        assert runtime.queue.open_units("camp-1") == (0, None)
