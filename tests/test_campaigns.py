"""Tests for audience resolution, campaign execution and analytics."""

import logging
from datetime import UTC, datetime, time, timedelta
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from campaign_dispatch.campaigns import (
    AudienceDefinition,
    Campaign,
    CampaignCounters,
    CampaignStatus,
    compute_analytics,
)
from campaign_dispatch.campaigns.audience import matches_definition, prefilter
from campaign_dispatch.dispatch.models import (
    ErrorKind,
    MessageContent,
    MessageStatus,
    SourceKind,
    UnitStatus,
)
from campaign_dispatch.errors import (
    CampaignNotFoundError,
    InvalidTransitionError,
    RepositoryUnavailable,
)
from campaign_dispatch.models import AccountSettings, Channel, Contact
from campaign_dispatch.providers.mock_provider import MockSender
from campaign_dispatch.runtime import build_runtime

# 22:00 in New York, inside 21:00-09:00 quiet hours
LATE_EVENING = datetime(2026, 3, 3, 3, 0, tzinfo=UTC)
QUIET_HOURS_OVER = datetime(2026, 3, 3, 14, 0, tzinfo=UTC)


def email_campaign(campaign_id="camp-1", **fields) -> Campaign:
    data = {
        "id": campaign_id,
        "store_id": "store-1",
        "name": "Spring Sale",
        "channel": Channel.EMAIL,
        "content": MessageContent(
            subject="{{contact.first_name}}, spring is here",
            html="<p>{{campaign.name}}</p>",
            from_email="shop@example.com",
            from_name="Shop",
        ),
    }
    data.update(fields)
    return Campaign(**data)


def sms_campaign(campaign_id="camp-sms", **fields) -> Campaign:
    fields.setdefault(
        "content", MessageContent(body="Spring sale starts now. Reply STOP to opt out")
    )
    return email_campaign(campaign_id, channel=Channel.SMS, **fields)


class TestAudience:
    """Tests for audience matching."""

    def _contact(self, **fields):
        return Contact(id="c-1", store_id="store-1", email="a@example.com", **fields)

    def test_empty_definition_matches_everyone(self):
        assert matches_definition(self._contact(), AudienceDefinition()) is True

    def test_tags_any_of(self):
        definition = AudienceDefinition(tags=["vip", "wholesale"])
        assert matches_definition(self._contact(tags=["vip"]), definition) is True
        assert matches_definition(self._contact(tags=["new"]), definition) is False

    def test_spend_and_orders(self):
        definition = AudienceDefinition(min_total_spent=100, max_orders=3)
        assert matches_definition(self._contact(total_spent=150, orders_count=2), definition)
        assert not matches_definition(self._contact(total_spent=50, orders_count=2), definition)
        assert not matches_definition(self._contact(total_spent=150, orders_count=5), definition)

    def test_contact_ids(self):
        definition = AudienceDefinition(contact_ids=["c-9"])
        assert matches_definition(self._contact(), definition) is False

    def test_prefilter(self):
        assert prefilter(self._contact(), Channel.EMAIL) is True
        assert prefilter(self._contact(email_consent=False), Channel.EMAIL) is False
        assert prefilter(self._contact(), Channel.SMS) is False


class TestAnalytics:
    """Tests for compute_analytics."""

    def test_rates(self):
        counters = CampaignCounters(
            recipient_count=10,
            sent_count=8,
            delivered_count=6,
            opened_count=3,
            clicked_count=1,
            bounced_count=2,
            failed_count=1,
        )
        analytics = compute_analytics(email_campaign(), counters)
        assert analytics.delivery_rate == 0.75
        assert analytics.open_rate == 0.5
        assert analytics.click_rate == 0.1667
        assert analytics.bounce_rate == 0.25
        assert analytics.failure_rate == 0.1

    def test_zero_denominators(self):
        analytics = compute_analytics(email_campaign(), CampaignCounters())
        assert analytics.delivery_rate == 0.0
        assert analytics.open_rate == 0.0
        assert analytics.failure_rate == 0.0


class TestCampaignExecution:
    """Tests for CampaignExecutionEngine."""

    @pytest.fixture
    def engine(self, runtime):
        return runtime.campaigns

    @pytest.mark.asyncio
    async def test_hundred_recipients_ten_without_consent(
        self, engine, repository, make_contact, email_sender
    ):
        for i in range(100):
            make_contact(f"c-{i:03d}", consent=() if i % 10 == 0 else (Channel.EMAIL,))
        engine.create(email_campaign())

        result = await engine.execute("camp-1")

        assert result.started is True
        assert result.status == CampaignStatus.SENT
        assert result.recipient_count == 100
        assert result.units_enqueued == 10
        assert result.outcomes["sent"] == 90
        assert result.outcomes["skipped"] == 10
        assert len(email_sender.sent) == 90

        unconsented = {f"c-{i:03d}" for i in range(0, 100, 10)}
        assert not unconsented & {m.to.split("@")[0] for m in email_sender.calls}
        for record in repository.list_message_records(SourceKind.CAMPAIGN, "camp-1"):
            if record.recipient_id in unconsented:
                assert record.status == MessageStatus.QUEUED
                assert record.skip_reason == "no_consent"
            else:
                assert record.status == MessageStatus.SENT

        campaign = repository.get_campaign("camp-1")
        assert campaign.recipient_count == 100
        assert campaign.sent_count == 90
        assert campaign.skipped_count == 10
        assert campaign.started_at is not None
        assert campaign.completed_at is not None

    @pytest.mark.asyncio
    async def test_reexecuting_sent_campaign_is_noop(self, engine, make_contact, email_sender):
        make_contact("c-1")
        engine.create(email_campaign())
        await engine.execute("camp-1")

        again = await engine.execute("camp-1")

        assert again.started is False
        assert again.status == CampaignStatus.SENT
        assert again.recipient_count == 1
        assert len(email_sender.calls) == 1

    @pytest.mark.asyncio
    async def test_audience_snapshot_and_prefilter(self, engine, repository, make_contact):
        make_contact("c-1", tags=["vip"])
        make_contact("c-2", tags=["vip"], consent=(), email_consent=False)
        make_contact("c-3", tags=["new"])
        make_contact("c-4", store_id="store-2", tags=["vip"])
        engine.create(email_campaign(audience=AudienceDefinition(tags=["vip"])))

        result = await engine.execute("camp-1")

        assert result.recipient_count == 1
        records = repository.list_message_records(SourceKind.CAMPAIGN, "camp-1")
        assert [r.recipient_id for r in records] == ["c-1"]

    @pytest.mark.asyncio
    async def test_empty_audience_fails(self, engine, make_contact):
        make_contact("c-1")
        engine.create(email_campaign(audience=AudienceDefinition(tags=["nobody"])))

        result = await engine.execute("camp-1")

        assert result.status == CampaignStatus.FAILED
        assert result.recipient_count == 0
        assert result.units_enqueued == 0

    @pytest.mark.asyncio
    async def test_nothing_sendable_fails(self, engine, make_contact, email_sender):
        make_contact("c-1")
        email_sender.fail_address("c-1@example.com", ErrorKind.INVALID_RECIPIENT)
        engine.create(email_campaign())

        result = await engine.execute("camp-1")

        assert result.status == CampaignStatus.FAILED
        assert result.outcomes["failed"] == 1

    @pytest.mark.asyncio
    async def test_missing_campaign(self, engine):
        with pytest.raises(CampaignNotFoundError):
            await engine.execute("nope")

    @pytest.mark.asyncio
    async def test_sms_quiet_hours_defer_then_send(
        self, runtime, engine, repository, make_contact, sms_sender, clock
    ):
        repository.save_account_settings(
            AccountSettings(
                store_id="store-1",
                timezone="America/New_York",
                quiet_hours_start=time(21, 0),
                quiet_hours_end=time(9, 0),
            )
        )
        for i in range(3):
            make_contact(f"c-{i}", phone=f"+1555123000{i}", consent=(Channel.SMS,))
        engine.create(sms_campaign())
        clock.set(LATE_EVENING)

        result = await engine.execute("camp-sms")

        assert result.status == CampaignStatus.SENDING
        assert result.outcomes["deferred"] == 3
        assert result.next_retry_at == QUIET_HOURS_OVER
        assert sms_sender.calls == []
        pending = [u for u in repository.list_units("camp-sms") if u.status == UnitStatus.PENDING]
        assert len(pending) == 1
        assert pending[0].available_at == QUIET_HOURS_OVER

        clock.set(QUIET_HOURS_OVER - timedelta(minutes=1))
        early = await runtime.scheduler.tick()
        assert early.units_processed == 0
        assert repository.get_campaign("camp-sms").status == CampaignStatus.SENDING

        clock.set(QUIET_HOURS_OVER)
        tick = await runtime.scheduler.tick()

        assert tick.units_processed == 1
        assert tick.campaigns_finalized == 1
        assert len(sms_sender.sent) == 3
        campaign = repository.get_campaign("camp-sms")
        assert campaign.status == CampaignStatus.SENT
        assert campaign.sent_count == 3

    @pytest.mark.asyncio
    async def test_sms_daily_limit_rolls_to_next_day(
        self, runtime, engine, repository, make_contact, sms_sender, clock
    ):
        repository.save_account_settings(AccountSettings(store_id="store-1", sms_daily_limit=2))
        for i in range(5):
            make_contact(f"c-{i}", phone=f"+1555123000{i}", consent=(Channel.SMS,))
        engine.create(sms_campaign())

        result = await engine.execute("camp-sms")

        assert result.outcomes["sent"] == 2
        assert result.outcomes["deferred"] == 3
        assert result.status == CampaignStatus.SENDING
        midnight = datetime(2026, 3, 3, 0, 0, tzinfo=UTC)
        assert result.next_retry_at == midnight

        clock.set(midnight)
        await runtime.scheduler.tick()
        # Two more fit in the new day; the last waits again
        assert len(sms_sender.sent) == 4
        assert repository.get_campaign("camp-sms").status == CampaignStatus.SENDING

        clock.set(midnight + timedelta(days=1))
        await runtime.scheduler.tick()
        assert len(sms_sender.sent) == 5
        assert repository.get_campaign("camp-sms").status == CampaignStatus.SENT

    @pytest.mark.asyncio
    async def test_schedule_then_start(self, runtime, engine, repository, make_contact, clock):
        make_contact("c-1")
        engine.create(email_campaign())
        at = clock() + timedelta(hours=1)

        scheduled = engine.schedule("camp-1", at)
        assert scheduled.status == CampaignStatus.SCHEDULED
        assert scheduled.scheduled_at == at

        first = await runtime.scheduler.tick()
        assert first.campaigns_started == 0

        clock.advance(hours=1)
        second = await runtime.scheduler.tick()
        assert second.campaigns_started == 1
        assert repository.get_campaign("camp-1").status == CampaignStatus.SENT

    @pytest.mark.asyncio
    async def test_schedule_after_send_rejected(self, engine, make_contact, clock):
        make_contact("c-1")
        engine.create(email_campaign())
        await engine.execute("camp-1")

        with pytest.raises(InvalidTransitionError) as exc_info:
            engine.schedule("camp-1", clock() + timedelta(hours=1))
        assert exc_info.value.current == "sent"

    def test_cancel_draft_rejected(self, engine):
        engine.create(email_campaign())
        with pytest.raises(InvalidTransitionError):
            engine.cancel("camp-1")

    @pytest.mark.asyncio
    async def test_cancel_sending_drops_pending_units(
        self, runtime, engine, repository, make_contact, sms_sender, clock
    ):
        repository.save_account_settings(
            AccountSettings(
                store_id="store-1",
                timezone="America/New_York",
                quiet_hours_start=time(21, 0),
                quiet_hours_end=time(9, 0),
            )
        )
        make_contact("c-1", phone="+15551230001", consent=(Channel.SMS,))
        engine.create(sms_campaign())
        clock.set(LATE_EVENING)
        await engine.execute("camp-sms")

        cancelled = engine.cancel("camp-sms")

        assert cancelled.status == CampaignStatus.CANCELLED
        assert cancelled.cancel_requested is True
        assert runtime.queue.open_units("camp-sms") == (0, None)

        clock.set(QUIET_HOURS_OVER)
        await runtime.scheduler.tick()
        assert sms_sender.calls == []
        assert repository.get_campaign("camp-sms").status == CampaignStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_analytics_follow_delivery_events(
        self, runtime, engine, repository, make_contact
    ):
        for i in range(4):
            make_contact(f"c-{i}")
        engine.create(email_campaign())
        await engine.execute("camp-1")

        records = repository.list_message_records(SourceKind.CAMPAIGN, "camp-1")
        at = datetime(2026, 3, 2, 16, 0, tzinfo=UTC)
        for record in records:
            repository.advance_message_status(
                record.provider_message_id, MessageStatus.DELIVERED, at
            )
        repository.advance_message_status(records[0].provider_message_id, MessageStatus.OPENED, at)
        repository.advance_message_status(records[1].provider_message_id, MessageStatus.CLICKED, at)

        analytics = engine.get_analytics("camp-1")

        assert analytics.counters.sent_count == 4
        assert analytics.counters.delivered_count == 4
        assert analytics.counters.opened_count == 2
        assert analytics.counters.clicked_count == 1
        assert analytics.delivery_rate == 1.0
        assert analytics.open_rate == 0.5
        assert analytics.click_rate == 0.25

        campaign = engine.refresh_counters("camp-1")
        assert campaign.opened_count == 2

    @pytest.mark.asyncio
    async def test_cancel_during_send_admits_no_more_batches(
        self, settings, repository, email_sender, make_contact, clock, sleep
    ):
        class CancellingSender(MockSender):
            def __init__(self):
                super().__init__(Channel.SMS)
                self.on_send = None

            async def send(self, message):
                result = await super().send(message)
                if self.on_send is not None:
                    self.on_send()
                    self.on_send = None
                return result

        sms_sender = CancellingSender()
        runtime = build_runtime(
            settings,
            repository=repository,
            senders={Channel.EMAIL: email_sender, Channel.SMS: sms_sender},
            clock=clock,
            sleep=sleep,
        )
        repository.save_account_settings(AccountSettings(store_id="store-1", sms_daily_limit=1))
        for i in range(3):
            make_contact(f"c-{i}", phone=f"+1555123000{i}", consent=(Channel.SMS,))
        runtime.campaigns.create(sms_campaign())
        sms_sender.on_send = lambda: runtime.campaigns.cancel("camp-sms")

        result = await runtime.campaigns.execute("camp-sms")

        assert result.status == CampaignStatus.CANCELLED
        assert len(sms_sender.sent) == 1
        assert runtime.queue.open_units("camp-sms") == (0, None)

        clock.set(datetime(2026, 3, 3, 0, 0, tzinfo=UTC))
        tick = await runtime.scheduler.tick()

        assert tick.units_processed == 0
        assert len(sms_sender.sent) == 1
        assert repository.get_campaign("camp-sms").status == CampaignStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_outage_before_enqueue_is_resumed(
        self, runtime, engine, repository, make_contact, email_sender
    ):
        make_contact("c-1")
        engine.create(email_campaign())
        list_contacts = repository.list_contacts
        calls = []

        def flaky_list_contacts(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RepositoryUnavailable("database is locked", operation="list_contacts")
            return list_contacts(*args, **kwargs)

        with patch.object(repository, "list_contacts", side_effect=flaky_list_contacts):
            with pytest.raises(RepositoryUnavailable):
                await engine.execute("camp-1")

            stranded = repository.get_campaign("camp-1")
            assert stranded.status == CampaignStatus.SENDING
            assert stranded.audience_enqueued_at is None
            assert engine.finalize("camp-1").status == CampaignStatus.SENDING

            tick = await runtime.scheduler.tick()

        assert tick.campaigns_started == 1
        assert len(email_sender.sent) == 1
        campaign = repository.get_campaign("camp-1")
        assert campaign.status == CampaignStatus.SENT
        assert campaign.audience_enqueued_at is not None
        assert campaign.sent_count == 1

    @pytest.mark.asyncio
    async def test_resume_enqueues_audience_once(self, engine, repository, make_contact):
        make_contact("c-1")
        engine.create(email_campaign())
        await engine.execute("camp-1")

        assert await engine.resume_stranded() == []
        assert len(repository.list_units("camp-1")) == 1


class TestPerformanceSummary:
    """Tests for the store-level campaign performance summary."""

    @pytest.fixture
    def engine(self, runtime):
        return runtime.campaigns

    @pytest.mark.asyncio
    async def test_totals_and_rates_per_channel(self, engine, repository, make_contact):
        for i in range(4):
            make_contact(f"c-{i}", phone=f"+1555123000{i}", consent=(Channel.EMAIL, Channel.SMS))
        make_contact("other", store_id="store-2")
        engine.create(email_campaign("camp-a"))
        engine.create(email_campaign("camp-b", audience=AudienceDefinition(tags=["nobody"])))
        engine.create(sms_campaign())
        engine.create(email_campaign("camp-other", store_id="store-2"))
        for campaign_id in ("camp-a", "camp-b", "camp-sms", "camp-other"):
            await engine.execute(campaign_id)

        at = datetime(2026, 3, 2, 16, 0, tzinfo=UTC)
        records = repository.list_message_records(SourceKind.CAMPAIGN, "camp-a")
        for record in records[:2]:
            repository.advance_message_status(
                record.provider_message_id, MessageStatus.DELIVERED, at
            )
        repository.advance_message_status(records[0].provider_message_id, MessageStatus.CLICKED, at)

        summary = engine.get_performance_summary("store-1")

        assert summary.store_id == "store-1"
        assert summary.email.campaign_count == 2
        assert summary.email.recipient_count == 4
        assert summary.email.sent_count == 4
        assert summary.email.delivered_count == 2
        assert summary.email.opened_count == 1
        assert summary.email.clicked_count == 1
        assert summary.email.delivery_rate == 0.5
        assert summary.email.open_rate == 0.5
        assert summary.email.click_rate == 0.5
        assert summary.sms.campaign_count == 1
        assert summary.sms.sent_count == 4
        assert summary.sms.delivery_rate == 0.0

    def test_store_without_campaigns(self, engine):
        summary = engine.get_performance_summary("empty-store")

        assert summary.email.campaign_count == 0
        assert summary.sms.click_rate == 0.0


class TestSmsContent:
    """Tests for SMS body length checks on campaigns."""

    def test_body_over_cap_rejected(self):
        with pytest.raises(ValidationError):
            sms_campaign(content=MessageContent(body="x" * 1601))

    def test_body_at_cap_accepted(self):
        campaign = sms_campaign(content=MessageContent(body="x" * 1600))
        assert len(campaign.content.body) == 1600

    def test_long_email_body_not_checked(self):
        campaign = email_campaign(content=MessageContent(body="x" * 2000, subject="Hi"))
        assert campaign.channel == Channel.EMAIL

    def test_multi_segment_body_warns(self, runtime, caplog):
        with caplog.at_level(logging.WARNING):
            runtime.campaigns.create(sms_campaign(content=MessageContent(body="x" * 161)))

        assert "2 segments" in caplog.text
