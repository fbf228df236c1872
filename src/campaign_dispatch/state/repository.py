"""Durable storage for the dispatch engine.

Every state change that two workers could race on is a single conditional
statement (insert-if-absent or compare-and-set), so correctness never depends
on in-process locking.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, time
from functools import wraps
from typing import Any

from campaign_dispatch.automation.models import RunStatus, Workflow, WorkflowRun
from campaign_dispatch.campaigns.models import (
    AudienceDefinition,
    Campaign,
    CampaignCounters,
    CampaignStatus,
)
from campaign_dispatch.compliance.models import ConsentRecord, OptOutRecord
from campaign_dispatch.dispatch.models import (
    TRANSIENT_ERROR_KINDS,
    DispatchUnit,
    ErrorKind,
    MessageContent,
    MessageRecord,
    MessageStatus,
    SourceKind,
    UnitStatus,
    predecessors,
)
from campaign_dispatch.errors import DispatchEngineError, RepositoryUnavailable
from campaign_dispatch.models import AccountSettings, Channel, Contact, ContactUpdate
from campaign_dispatch.ratelimit.models import CounterCheck, Period, RateCounter

from .backends import DatabaseBackend

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Column written when a record reaches each status
_STATUS_TIMESTAMP_COLUMN = {
    MessageStatus.SENT: "sent_at",
    MessageStatus.DELIVERED: "delivered_at",
    MessageStatus.BOUNCED: "bounced_at",
    MessageStatus.FAILED: "failed_at",
    MessageStatus.OPENED: "opened_at",
    MessageStatus.CLICKED: "clicked_at",
}


def to_db_time(value: datetime | None) -> str | None:
    """Serialize a datetime as a fixed-width UTC string so it sorts lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TS_FORMAT)


def from_db_time(value) -> datetime | None:
    """Parse a datetime from the database (handles both strings and datetime objects)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _json_or_none(value) -> str | None:
    return json.dumps(value) if value is not None else None


def _load_json(value, default=None):
    if value is None or value == "":
        return default
    return json.loads(value)


def _bool_or_none(value) -> bool | None:
    return None if value is None else bool(value)


def _guarded(func: Callable) -> Callable:
    """Translate backend connectivity failures into RepositoryUnavailable."""

    @wraps(func)
    def wrapper(self: Repository, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except DispatchEngineError:
            raise
        except Exception as e:
            if self.backend.is_unavailable_error(e):
                raise RepositoryUnavailable(
                    f"Repository operation '{func.__name__}' failed: {e}",
                    operation=func.__name__,
                    cause=e,
                ) from e
            raise

    return wrapper


class _CounterRejected(Exception):
    """Raised inside a counter transaction to roll back partial increments."""

    def __init__(self, check: CounterCheck):
        super().__init__(check.period.value)
        self.check = check


class Repository:
    """Database-backed store for contacts, consent, counters, messages,
    campaigns, workflows, runs and the dispatch unit queue.

    Supports SQLite and PostgreSQL through ``DatabaseBackend``.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS account_settings (
            store_id TEXT PRIMARY KEY,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            quiet_hours_start TEXT,
            quiet_hours_end TEXT,
            sms_daily_limit INTEGER NOT NULL,
            email_monthly_credits INTEGER NOT NULL,
            sms_monthly_credits INTEGER NOT NULL,
            billing_cycle_anchor_day INTEGER NOT NULL DEFAULT 1
        );

        CREATE TABLE IF NOT EXISTS contacts (
            id TEXT PRIMARY KEY,
            store_id TEXT NOT NULL,
            email TEXT,
            phone TEXT,
            first_name TEXT,
            last_name TEXT,
            email_consent INTEGER,
            sms_consent INTEGER,
            tags TEXT,
            segments TEXT,
            total_spent REAL DEFAULT 0,
            orders_count INTEGER DEFAULT 0,
            attributes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_contacts_store ON contacts(store_id);
        CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(store_id, email);

        CREATE TABLE IF NOT EXISTS consent_records (
            id {serial_pk},
            contact_id TEXT NOT NULL,
            channel TEXT NOT NULL,
            consented INTEGER NOT NULL,
            source TEXT NOT NULL,
            ip_address TEXT,
            recorded_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_consent_contact
        ON consent_records(contact_id, channel, recorded_at);

        CREATE TABLE IF NOT EXISTS opt_outs (
            id {serial_pk},
            contact_id TEXT NOT NULL,
            channel TEXT NOT NULL,
            source TEXT NOT NULL,
            keyword TEXT,
            created_at TEXT NOT NULL,
            revoked_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_opt_outs_contact ON opt_outs(contact_id, channel);

        CREATE TABLE IF NOT EXISTS rate_counters (
            account_id TEXT NOT NULL,
            channel TEXT NOT NULL,
            period TEXT NOT NULL,
            period_key TEXT NOT NULL,
            count INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (account_id, channel, period, period_key)
        );

        CREATE TABLE IF NOT EXISTS message_records (
            id TEXT PRIMARY KEY,
            store_id TEXT NOT NULL,
            source_kind TEXT NOT NULL,
            source_id TEXT NOT NULL,
            recipient_id TEXT NOT NULL,
            channel TEXT NOT NULL,
            status TEXT NOT NULL,
            provider_message_id TEXT UNIQUE,
            claimed_at TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            error_kind TEXT,
            last_error TEXT,
            skip_reason TEXT,
            deferred_until TEXT,
            queued_at TEXT NOT NULL,
            sent_at TEXT,
            delivered_at TEXT,
            bounced_at TEXT,
            failed_at TEXT,
            opened_at TEXT,
            clicked_at TEXT,
            updated_at TEXT NOT NULL,
            UNIQUE (source_kind, source_id, recipient_id, channel)
        );

        CREATE INDEX IF NOT EXISTS idx_message_records_source
        ON message_records(source_kind, source_id);

        CREATE TABLE IF NOT EXISTS campaigns (
            id TEXT PRIMARY KEY,
            store_id TEXT NOT NULL,
            name TEXT NOT NULL,
            channel TEXT NOT NULL,
            content TEXT NOT NULL,
            audience TEXT NOT NULL,
            status TEXT NOT NULL,
            recipient_count INTEGER DEFAULT 0,
            sent_count INTEGER DEFAULT 0,
            delivered_count INTEGER DEFAULT 0,
            bounced_count INTEGER DEFAULT 0,
            opened_count INTEGER DEFAULT 0,
            clicked_count INTEGER DEFAULT 0,
            failed_count INTEGER DEFAULT 0,
            skipped_count INTEGER DEFAULT 0,
            scheduled_at TEXT,
            started_at TEXT,
            completed_at TEXT,
            cancel_requested INTEGER DEFAULT 0,
            audience_enqueued_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_campaigns_status ON campaigns(status, scheduled_at);

        CREATE TABLE IF NOT EXISTS workflows (
            id TEXT PRIMARY KEY,
            store_id TEXT NOT NULL,
            name TEXT NOT NULL,
            trigger_type TEXT NOT NULL,
            conditions TEXT NOT NULL,
            actions TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_workflows_trigger
        ON workflows(store_id, trigger_type, is_active);

        CREATE TABLE IF NOT EXISTS workflow_runs (
            id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL,
            store_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            recipient_id TEXT NOT NULL,
            trigger_payload TEXT,
            cursor INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            resume_at TEXT,
            logical_time TEXT NOT NULL,
            lease_until TEXT,
            delay_done_cursor INTEGER,
            error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT,
            UNIQUE (workflow_id, event_id, recipient_id)
        );

        CREATE INDEX IF NOT EXISTS idx_workflow_runs_status
        ON workflow_runs(status, resume_at);

        CREATE TABLE IF NOT EXISTS dispatch_units (
            id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            source_kind TEXT NOT NULL,
            source_id TEXT NOT NULL,
            store_id TEXT NOT NULL,
            channel TEXT NOT NULL,
            content TEXT NOT NULL,
            recipient_ids TEXT NOT NULL,
            variables TEXT,
            status TEXT NOT NULL,
            available_at TEXT NOT NULL,
            lease_until TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_dispatch_units_ready
        ON dispatch_units(channel, status, available_at);
        CREATE INDEX IF NOT EXISTS idx_dispatch_units_source
        ON dispatch_units(source_id, status);

        CREATE TABLE IF NOT EXISTS delivery_events (
            id {serial_pk},
            provider TEXT NOT NULL,
            provider_message_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            occurred_at TEXT NOT NULL,
            result TEXT NOT NULL,
            payload TEXT,
            received_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_delivery_events_message
        ON delivery_events(provider_message_id);
    """

    def __init__(
        self,
        backend: DatabaseBackend,
        account_defaults: dict[str, Any] | None = None,
    ):
        """Initialize the repository.

        Args:
            backend: Database backend to use
            account_defaults: AccountSettings fields applied to stores with no
                stored settings
        """
        self.backend = backend
        self.account_defaults = account_defaults or {}
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        self.backend.create_schema(self.SCHEMA)

    @_guarded
    def ping(self) -> None:
        self.backend.ping()

    # =========================================================================
    # Account settings
    # =========================================================================

    @_guarded
    def save_account_settings(self, settings: AccountSettings) -> None:
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO account_settings
                (store_id, timezone, quiet_hours_start, quiet_hours_end, sms_daily_limit,
                 email_monthly_credits, sms_monthly_credits, billing_cycle_anchor_day)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (store_id) DO UPDATE SET
                    timezone = excluded.timezone,
                    quiet_hours_start = excluded.quiet_hours_start,
                    quiet_hours_end = excluded.quiet_hours_end,
                    sms_daily_limit = excluded.sms_daily_limit,
                    email_monthly_credits = excluded.email_monthly_credits,
                    sms_monthly_credits = excluded.sms_monthly_credits,
                    billing_cycle_anchor_day = excluded.billing_cycle_anchor_day
                """,
                (
                    settings.store_id,
                    settings.timezone,
                    settings.quiet_hours_start.isoformat() if settings.quiet_hours_start else None,
                    settings.quiet_hours_end.isoformat() if settings.quiet_hours_end else None,
                    settings.sms_daily_limit,
                    settings.email_monthly_credits,
                    settings.sms_monthly_credits,
                    settings.billing_cycle_anchor_day,
                ),
            )

    @_guarded
    def get_account_settings(self, store_id: str) -> AccountSettings:
        """Stored settings for a store, or the configured defaults."""
        row = self.backend.fetchone(
            "SELECT * FROM account_settings WHERE store_id = ?", (store_id,)
        )
        if not row:
            return AccountSettings(store_id=store_id, **self.account_defaults)
        return AccountSettings(
            store_id=row["store_id"],
            timezone=row["timezone"],
            quiet_hours_start=(
                time.fromisoformat(row["quiet_hours_start"]) if row["quiet_hours_start"] else None
            ),
            quiet_hours_end=(
                time.fromisoformat(row["quiet_hours_end"]) if row["quiet_hours_end"] else None
            ),
            sms_daily_limit=row["sms_daily_limit"],
            email_monthly_credits=row["email_monthly_credits"],
            sms_monthly_credits=row["sms_monthly_credits"],
            billing_cycle_anchor_day=row["billing_cycle_anchor_day"],
        )

    # =========================================================================
    # Contacts
    # =========================================================================

    @_guarded
    def save_contact(self, contact: Contact) -> None:
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO contacts
                (id, store_id, email, phone, first_name, last_name, email_consent,
                 sms_consent, tags, segments, total_spent, orders_count, attributes,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    email = excluded.email,
                    phone = excluded.phone,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    email_consent = excluded.email_consent,
                    sms_consent = excluded.sms_consent,
                    tags = excluded.tags,
                    segments = excluded.segments,
                    total_spent = excluded.total_spent,
                    orders_count = excluded.orders_count,
                    attributes = excluded.attributes,
                    updated_at = excluded.updated_at
                """,
                (
                    contact.id,
                    contact.store_id,
                    contact.email,
                    contact.phone,
                    contact.first_name,
                    contact.last_name,
                    None if contact.email_consent is None else int(contact.email_consent),
                    None if contact.sms_consent is None else int(contact.sms_consent),
                    json.dumps(contact.tags),
                    json.dumps(contact.segments),
                    contact.total_spent,
                    contact.orders_count,
                    json.dumps(contact.attributes),
                    to_db_time(contact.created_at),
                    to_db_time(contact.updated_at),
                ),
            )

    def _row_to_contact(self, row: dict) -> Contact:
        return Contact(
            id=row["id"],
            store_id=row["store_id"],
            email=row["email"],
            phone=row["phone"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email_consent=_bool_or_none(row["email_consent"]),
            sms_consent=_bool_or_none(row["sms_consent"]),
            tags=_load_json(row["tags"], []),
            segments=_load_json(row["segments"], []),
            total_spent=row["total_spent"] or 0.0,
            orders_count=row["orders_count"] or 0,
            attributes=_load_json(row["attributes"], {}),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    @_guarded
    def get_contact(self, contact_id: str) -> Contact | None:
        row = self.backend.fetchone("SELECT * FROM contacts WHERE id = ?", (contact_id,))
        return self._row_to_contact(row) if row else None

    @_guarded
    def find_contact_by_email(self, store_id: str, email: str) -> Contact | None:
        row = self.backend.fetchone(
            """
            SELECT * FROM contacts
            WHERE store_id = ? AND LOWER(email) = ?
            ORDER BY created_at
            LIMIT 1
            """,
            (store_id, email.strip().lower()),
        )
        return self._row_to_contact(row) if row else None

    @_guarded
    def find_contact_by_phone(self, phone: str) -> list[Contact]:
        rows = self.backend.fetchall("SELECT * FROM contacts WHERE phone = ?", (phone,))
        return [self._row_to_contact(row) for row in rows]

    @_guarded
    def list_contacts(self, store_id: str) -> list[Contact]:
        rows = self.backend.fetchall(
            "SELECT * FROM contacts WHERE store_id = ? ORDER BY created_at, id", (store_id,)
        )
        return [self._row_to_contact(row) for row in rows]

    @_guarded
    def get_contacts(self, contact_ids: list[str]) -> dict[str, Contact]:
        if not contact_ids:
            return {}
        marks = ", ".join("?" for _ in contact_ids)
        rows = self.backend.fetchall(
            f"SELECT * FROM contacts WHERE id IN ({marks})", tuple(contact_ids)
        )
        return {row["id"]: self._row_to_contact(row) for row in rows}

    @_guarded
    def update_contact_tags(
        self,
        contact_id: str,
        add: list[str] = (),
        remove: list[str] = (),
        now: datetime | None = None,
    ) -> list[str] | None:
        """Add and remove tags on a contact. Returns the resulting tags."""
        with self.backend.transaction():
            row = self.backend.fetchone("SELECT tags FROM contacts WHERE id = ?", (contact_id,))
            if not row:
                return None
            tags = _load_json(row["tags"], [])
            for tag in add:
                if tag not in tags:
                    tags.append(tag)
            tags = [tag for tag in tags if tag not in set(remove)]
            self.backend.execute(
                "UPDATE contacts SET tags = ?, updated_at = ? WHERE id = ?",
                (json.dumps(tags), to_db_time(now or datetime.now(UTC)), contact_id),
            )
        return tags

    @_guarded
    def update_contact_fields(
        self, contact_id: str, update: ContactUpdate, now: datetime | None = None
    ) -> bool:
        """Write the fields set on ``update``; attributes are merged, segments replaced."""
        changes = update.model_dump(exclude_unset=True)
        with self.backend.transaction():
            row = self.backend.fetchone(
                "SELECT attributes, segments FROM contacts WHERE id = ?", (contact_id,)
            )
            if not row:
                return False
            attributes = _load_json(row["attributes"], {})
            attributes.update(changes.pop("attributes", {}))
            segments = _load_json(row["segments"], [])
            if "segments" in changes:
                segments = changes.pop("segments") or []
            assignments = [f"{column} = ?" for column in changes]
            params: list[Any] = list(changes.values())
            assignments += ["segments = ?", "attributes = ?", "updated_at = ?"]
            params += [
                json.dumps(segments),
                json.dumps(attributes),
                to_db_time(now or datetime.now(UTC)),
                contact_id,
            ]
            self.backend.execute(
                f"UPDATE contacts SET {', '.join(assignments)} WHERE id = ?", tuple(params)
            )
        return True

    # =========================================================================
    # Consent ledger and opt-outs
    # =========================================================================

    @_guarded
    def append_consent(self, record: ConsentRecord) -> ConsentRecord:
        """Append a consent record and refresh the contact's denormalised flag."""
        flag_column = "email_consent" if record.channel == Channel.EMAIL else "sms_consent"
        with self.backend.transaction():
            record_id = self.backend.insert(
                """
                INSERT INTO consent_records
                (contact_id, channel, consented, source, ip_address, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.contact_id,
                    record.channel.value,
                    int(record.consented),
                    record.source,
                    record.ip_address,
                    to_db_time(record.recorded_at),
                ),
            )
            self.backend.execute(
                f"UPDATE contacts SET {flag_column} = ? WHERE id = ?",
                (int(record.consented), record.contact_id),
            )
        return record.model_copy(update={"id": record_id})

    @_guarded
    def latest_consent(self, contact_id: str, channel: Channel) -> ConsentRecord | None:
        row = self.backend.fetchone(
            """
            SELECT * FROM consent_records
            WHERE contact_id = ? AND channel = ?
            ORDER BY recorded_at DESC, id DESC
            LIMIT 1
            """,
            (contact_id, channel.value),
        )
        if not row:
            return None
        return ConsentRecord(
            id=row["id"],
            contact_id=row["contact_id"],
            channel=Channel(row["channel"]),
            consented=bool(row["consented"]),
            source=row["source"],
            ip_address=row["ip_address"],
            recorded_at=from_db_time(row["recorded_at"]),
        )

    @_guarded
    def consent_history(self, contact_id: str) -> list[ConsentRecord]:
        rows = self.backend.fetchall(
            "SELECT * FROM consent_records WHERE contact_id = ? ORDER BY recorded_at, id",
            (contact_id,),
        )
        return [
            ConsentRecord(
                id=row["id"],
                contact_id=row["contact_id"],
                channel=Channel(row["channel"]),
                consented=bool(row["consented"]),
                source=row["source"],
                ip_address=row["ip_address"],
                recorded_at=from_db_time(row["recorded_at"]),
            )
            for row in rows
        ]

    @_guarded
    def add_opt_out(self, record: OptOutRecord) -> OptOutRecord:
        with self.backend.transaction():
            record_id = self.backend.insert(
                """
                INSERT INTO opt_outs (contact_id, channel, source, keyword, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.contact_id,
                    record.channel.value,
                    record.source,
                    record.keyword,
                    to_db_time(record.created_at),
                ),
            )
        return record.model_copy(update={"id": record_id})

    @_guarded
    def active_opt_out(self, contact_id: str, channel: Channel) -> OptOutRecord | None:
        row = self.backend.fetchone(
            """
            SELECT * FROM opt_outs
            WHERE contact_id = ? AND channel = ? AND revoked_at IS NULL
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (contact_id, channel.value),
        )
        if not row:
            return None
        return OptOutRecord(
            id=row["id"],
            contact_id=row["contact_id"],
            channel=Channel(row["channel"]),
            source=row["source"],
            keyword=row["keyword"],
            created_at=from_db_time(row["created_at"]),
            revoked_at=from_db_time(row["revoked_at"]),
        )

    @_guarded
    def revoke_opt_outs(self, contact_id: str, channel: Channel, now: datetime) -> int:
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE opt_outs SET revoked_at = ?
                WHERE contact_id = ? AND channel = ? AND revoked_at IS NULL
                """,
                (to_db_time(now), contact_id, channel.value),
            )
        return cursor.rowcount

    # =========================================================================
    # Rate counters
    # =========================================================================

    @_guarded
    def increment_counters(
        self, account_id: str, channel: Channel, checks: list[CounterCheck]
    ) -> CounterCheck | None:
        """Increment every counter below its cap, atomically.

        Each increment is one conditional ``UPDATE ... WHERE count < limit``.
        If any counter is at its cap the whole transaction is rolled back.

        Returns:
            None if all counters were incremented, otherwise the first
            counter that was at its cap
        """
        try:
            with self.backend.transaction():
                for check in checks:
                    self.backend.execute(
                        """
                        INSERT INTO rate_counters (account_id, channel, period, period_key, count)
                        VALUES (?, ?, ?, ?, 0)
                        ON CONFLICT (account_id, channel, period, period_key) DO NOTHING
                        """,
                        (account_id, channel.value, check.period.value, check.period_key),
                    )
                    cursor = self.backend.execute(
                        """
                        UPDATE rate_counters SET count = count + 1
                        WHERE account_id = ? AND channel = ? AND period = ?
                          AND period_key = ? AND count < ?
                        """,
                        (
                            account_id,
                            channel.value,
                            check.period.value,
                            check.period_key,
                            check.limit,
                        ),
                    )
                    if cursor.rowcount != 1:
                        raise _CounterRejected(check)
        except _CounterRejected as rejected:
            return rejected.check
        return None

    @_guarded
    def get_counter(
        self, account_id: str, channel: Channel, period: Period, period_key: str
    ) -> int:
        row = self.backend.fetchone(
            """
            SELECT count FROM rate_counters
            WHERE account_id = ? AND channel = ? AND period = ? AND period_key = ?
            """,
            (account_id, channel.value, period.value, period_key),
        )
        return row["count"] if row else 0

    @_guarded
    def list_counters(self, account_id: str) -> list[RateCounter]:
        rows = self.backend.fetchall(
            """
            SELECT * FROM rate_counters WHERE account_id = ?
            ORDER BY channel, period, period_key
            """,
            (account_id,),
        )
        return [
            RateCounter(
                account_id=row["account_id"],
                channel=Channel(row["channel"]),
                period=Period(row["period"]),
                period_key=row["period_key"],
                count=row["count"],
            )
            for row in rows
        ]

    @_guarded
    def adjust_counter(
        self,
        account_id: str,
        channel: Channel,
        period: Period,
        period_key: str,
        delta: int,
    ) -> int:
        """Administrative correction; the count never goes below zero."""
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO rate_counters (account_id, channel, period, period_key, count)
                VALUES (?, ?, ?, ?, 0)
                ON CONFLICT (account_id, channel, period, period_key) DO NOTHING
                """,
                (account_id, channel.value, period.value, period_key),
            )
            self.backend.execute(
                """
                UPDATE rate_counters
                SET count = CASE WHEN count + ? < 0 THEN 0 ELSE count + ? END
                WHERE account_id = ? AND channel = ? AND period = ? AND period_key = ?
                """,
                (delta, delta, account_id, channel.value, period.value, period_key),
            )
        return self.get_counter(account_id, channel, period, period_key)

    # =========================================================================
    # Message records
    # =========================================================================

    def _row_to_record(self, row: dict) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            store_id=row["store_id"],
            source_kind=SourceKind(row["source_kind"]),
            source_id=row["source_id"],
            recipient_id=row["recipient_id"],
            channel=Channel(row["channel"]),
            status=MessageStatus(row["status"]),
            provider_message_id=row["provider_message_id"],
            claimed_at=from_db_time(row["claimed_at"]),
            attempts=row["attempts"],
            error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
            last_error=row["last_error"],
            skip_reason=row["skip_reason"],
            deferred_until=from_db_time(row["deferred_until"]),
            queued_at=from_db_time(row["queued_at"]),
            sent_at=from_db_time(row["sent_at"]),
            delivered_at=from_db_time(row["delivered_at"]),
            bounced_at=from_db_time(row["bounced_at"]),
            failed_at=from_db_time(row["failed_at"]),
            opened_at=from_db_time(row["opened_at"]),
            clicked_at=from_db_time(row["clicked_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    @_guarded
    def ensure_message_record(
        self,
        store_id: str,
        source_kind: SourceKind,
        source_id: str,
        recipient_id: str,
        channel: Channel,
        now: datetime,
    ) -> MessageRecord:
        """Insert a queued record if none exists for the key; return the stored one."""
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO message_records
                (id, store_id, source_kind, source_id, recipient_id, channel, status,
                 queued_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (source_kind, source_id, recipient_id, channel) DO NOTHING
                """,
                (
                    str(uuid.uuid4()),
                    store_id,
                    source_kind.value,
                    source_id,
                    recipient_id,
                    channel.value,
                    MessageStatus.QUEUED.value,
                    to_db_time(now),
                    to_db_time(now),
                ),
            )
        row = self.backend.fetchone(
            """
            SELECT * FROM message_records
            WHERE source_kind = ? AND source_id = ? AND recipient_id = ? AND channel = ?
            """,
            (source_kind.value, source_id, recipient_id, channel.value),
        )
        return self._row_to_record(row)

    @_guarded
    def get_message_record(self, record_id: str) -> MessageRecord | None:
        row = self.backend.fetchone("SELECT * FROM message_records WHERE id = ?", (record_id,))
        return self._row_to_record(row) if row else None

    @_guarded
    def get_message_record_by_provider_id(self, provider_message_id: str) -> MessageRecord | None:
        row = self.backend.fetchone(
            "SELECT * FROM message_records WHERE provider_message_id = ?",
            (provider_message_id,),
        )
        return self._row_to_record(row) if row else None

    @_guarded
    def list_message_records(
        self, source_kind: SourceKind, source_id: str | None = None
    ) -> list[MessageRecord]:
        if source_id is None:
            rows = self.backend.fetchall(
                "SELECT * FROM message_records WHERE source_kind = ? ORDER BY queued_at, id",
                (source_kind.value,),
            )
        else:
            rows = self.backend.fetchall(
                """
                SELECT * FROM message_records
                WHERE source_kind = ? AND source_id = ?
                ORDER BY queued_at, id
                """,
                (source_kind.value, source_id),
            )
        return [self._row_to_record(row) for row in rows]

    @_guarded
    def claim_message_record(self, record_id: str, now: datetime) -> bool:
        """Mark a record in flight. Only one caller can win the claim.

        Claimable: queued and not in flight, or failed only because
        transient retries were exhausted.
        """
        transient = tuple(kind.value for kind in TRANSIENT_ERROR_KINDS)
        with self.backend.transaction():
            cursor = self.backend.execute(
                f"""
                UPDATE message_records
                SET status = ?, claimed_at = ?, skip_reason = NULL, deferred_until = NULL,
                    error_kind = NULL, last_error = NULL, failed_at = NULL, updated_at = ?
                WHERE id = ?
                  AND ((status = ? AND claimed_at IS NULL)
                       OR (status = ? AND error_kind IN ({", ".join("?" for _ in transient)})))
                """,
                (
                    MessageStatus.QUEUED.value,
                    to_db_time(now),
                    to_db_time(now),
                    record_id,
                    MessageStatus.QUEUED.value,
                    MessageStatus.FAILED.value,
                    *transient,
                ),
            )
        return cursor.rowcount == 1

    @_guarded
    def release_message_claim(
        self, record_id: str, now: datetime, deferred_until: datetime | None, reason: str | None
    ) -> bool:
        """Return an unsent in-flight record to the plain queued state."""
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE message_records
                SET claimed_at = NULL, deferred_until = ?, skip_reason = ?, updated_at = ?
                WHERE id = ? AND status = ? AND claimed_at IS NOT NULL
                """,
                (
                    to_db_time(deferred_until),
                    reason,
                    to_db_time(now),
                    record_id,
                    MessageStatus.QUEUED.value,
                ),
            )
        return cursor.rowcount == 1

    @_guarded
    def mark_message_skipped(self, record_id: str, reason: str, now: datetime) -> bool:
        """Record a consent denial. The record stays queued."""
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE message_records
                SET skip_reason = ?, deferred_until = NULL, updated_at = ?
                WHERE id = ? AND status = ? AND claimed_at IS NULL
                """,
                (reason, to_db_time(now), record_id, MessageStatus.QUEUED.value),
            )
        return cursor.rowcount == 1

    @_guarded
    def mark_message_deferred(
        self, record_id: str, until: datetime, reason: str, now: datetime
    ) -> bool:
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE message_records
                SET deferred_until = ?, skip_reason = ?, updated_at = ?
                WHERE id = ? AND status = ? AND claimed_at IS NULL
                """,
                (to_db_time(until), reason, to_db_time(now), record_id, MessageStatus.QUEUED.value),
            )
        return cursor.rowcount == 1

    @_guarded
    def mark_message_sent(
        self, record_id: str, provider_message_id: str, attempts: int, now: datetime
    ) -> bool:
        """Move an in-flight record to sent, assigning the provider id once."""
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE message_records
                SET status = ?, provider_message_id = ?, attempts = ?, sent_at = ?,
                    updated_at = ?
                WHERE id = ? AND status = ? AND provider_message_id IS NULL
                """,
                (
                    MessageStatus.SENT.value,
                    provider_message_id,
                    attempts,
                    to_db_time(now),
                    to_db_time(now),
                    record_id,
                    MessageStatus.QUEUED.value,
                ),
            )
        return cursor.rowcount == 1

    @_guarded
    def mark_message_failed(
        self,
        record_id: str,
        error_kind: ErrorKind,
        error: str | None,
        attempts: int,
        now: datetime,
    ) -> bool:
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE message_records
                SET status = ?, error_kind = ?, last_error = ?, attempts = ?, failed_at = ?,
                    updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    MessageStatus.FAILED.value,
                    error_kind.value,
                    error,
                    attempts,
                    to_db_time(now),
                    to_db_time(now),
                    record_id,
                    MessageStatus.QUEUED.value,
                ),
            )
        return cursor.rowcount == 1

    @_guarded
    def advance_message_status(
        self, provider_message_id: str, status: MessageStatus, at: datetime
    ) -> bool:
        """Forward-only compare-and-set keyed by provider message id."""
        allowed = [s.value for s in predecessors(status)]
        column = _STATUS_TIMESTAMP_COLUMN[status]
        with self.backend.transaction():
            cursor = self.backend.execute(
                f"""
                UPDATE message_records
                SET status = ?, {column} = ?, updated_at = ?
                WHERE provider_message_id = ?
                  AND status IN ({", ".join("?" for _ in allowed)})
                """,
                (status.value, to_db_time(at), to_db_time(at), provider_message_id, *allowed),
            )
        return cursor.rowcount == 1

    @_guarded
    def message_counters(self, source_kind: SourceKind, source_id: str) -> CampaignCounters:
        """Aggregate record statuses for one source."""
        row = self.backend.fetchone(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN provider_message_id IS NOT NULL THEN 1 ELSE 0 END) AS sent,
                SUM(CASE WHEN status IN ('delivered', 'opened', 'clicked') THEN 1 ELSE 0 END)
                    AS delivered,
                SUM(CASE WHEN status = 'bounced' THEN 1 ELSE 0 END) AS bounced,
                SUM(CASE WHEN status IN ('opened', 'clicked') THEN 1 ELSE 0 END) AS opened,
                SUM(CASE WHEN status = 'clicked' THEN 1 ELSE 0 END) AS clicked,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN status = 'queued' AND claimed_at IS NULL
                          AND skip_reason IS NOT NULL AND deferred_until IS NULL
                         THEN 1 ELSE 0 END) AS skipped,
                SUM(CASE WHEN status = 'queued' AND (claimed_at IS NOT NULL
                          OR skip_reason IS NULL OR deferred_until IS NOT NULL)
                         THEN 1 ELSE 0 END) AS pending
            FROM message_records
            WHERE source_kind = ? AND source_id = ?
            """,
            (source_kind.value, source_id),
        )
        return CampaignCounters(
            recipient_count=row["total"] or 0,
            sent_count=row["sent"] or 0,
            delivered_count=row["delivered"] or 0,
            bounced_count=row["bounced"] or 0,
            opened_count=row["opened"] or 0,
            clicked_count=row["clicked"] or 0,
            failed_count=row["failed"] or 0,
            skipped_count=row["skipped"] or 0,
            pending_count=row["pending"] or 0,
        )

    # =========================================================================
    # Campaigns
    # =========================================================================

    @_guarded
    def save_campaign(self, campaign: Campaign) -> None:
        """Insert or replace a campaign definition (content, audience, schedule)."""
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO campaigns
                (id, store_id, name, channel, content, audience, status, scheduled_at,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    channel = excluded.channel,
                    content = excluded.content,
                    audience = excluded.audience,
                    scheduled_at = excluded.scheduled_at,
                    updated_at = excluded.updated_at
                """,
                (
                    campaign.id,
                    campaign.store_id,
                    campaign.name,
                    campaign.channel.value,
                    campaign.content.model_dump_json(),
                    campaign.audience.model_dump_json(),
                    campaign.status.value,
                    to_db_time(campaign.scheduled_at),
                    to_db_time(campaign.created_at),
                    to_db_time(campaign.updated_at),
                ),
            )

    def _row_to_campaign(self, row: dict) -> Campaign:
        return Campaign(
            id=row["id"],
            store_id=row["store_id"],
            name=row["name"],
            channel=Channel(row["channel"]),
            content=MessageContent.model_validate_json(row["content"]),
            audience=AudienceDefinition.model_validate_json(row["audience"]),
            status=CampaignStatus(row["status"]),
            recipient_count=row["recipient_count"] or 0,
            sent_count=row["sent_count"] or 0,
            delivered_count=row["delivered_count"] or 0,
            bounced_count=row["bounced_count"] or 0,
            opened_count=row["opened_count"] or 0,
            clicked_count=row["clicked_count"] or 0,
            failed_count=row["failed_count"] or 0,
            skipped_count=row["skipped_count"] or 0,
            scheduled_at=from_db_time(row["scheduled_at"]),
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row["completed_at"]),
            cancel_requested=bool(row["cancel_requested"]),
            audience_enqueued_at=from_db_time(row["audience_enqueued_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    @_guarded
    def get_campaign(self, campaign_id: str) -> Campaign | None:
        row = self.backend.fetchone("SELECT * FROM campaigns WHERE id = ?", (campaign_id,))
        return self._row_to_campaign(row) if row else None

    @_guarded
    def list_campaigns(
        self, status: CampaignStatus | None = None, store_id: str | None = None
    ) -> list[Campaign]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if store_id is not None:
            clauses.append("store_id = ?")
            params.append(store_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.backend.fetchall(
            f"SELECT * FROM campaigns {where} ORDER BY created_at", tuple(params)
        )
        return [self._row_to_campaign(row) for row in rows]

    @_guarded
    def is_campaign_sending(self, campaign_id: str) -> bool:
        row = self.backend.fetchone("SELECT status FROM campaigns WHERE id = ?", (campaign_id,))
        return bool(row) and row["status"] == CampaignStatus.SENDING.value

    @_guarded
    def list_due_campaigns(self, now: datetime) -> list[Campaign]:
        rows = self.backend.fetchall(
            """
            SELECT * FROM campaigns
            WHERE status = ? AND scheduled_at IS NOT NULL AND scheduled_at <= ?
            ORDER BY scheduled_at
            """,
            (CampaignStatus.SCHEDULED.value, to_db_time(now)),
        )
        return [self._row_to_campaign(row) for row in rows]

    @_guarded
    def transition_campaign(
        self,
        campaign_id: str,
        expected: list[CampaignStatus],
        new_status: CampaignStatus,
        now: datetime,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the campaign status.

        Extra keyword fields (started_at, completed_at, scheduled_at,
        cancel_requested, recipient_count) are written in the same statement.
        """
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [new_status.value, to_db_time(now)]
        for key, value in fields.items():
            assignments.append(f"{key} = ?")
            if isinstance(value, datetime):
                value = to_db_time(value)
            elif isinstance(value, bool):
                value = int(value)
            params.append(value)
        marks = ", ".join("?" for _ in expected)
        with self.backend.transaction():
            cursor = self.backend.execute(
                f"""
                UPDATE campaigns SET {", ".join(assignments)}
                WHERE id = ? AND status IN ({marks})
                """,
                (*params, campaign_id, *(s.value for s in expected)),
            )
        return cursor.rowcount == 1

    @_guarded
    def update_campaign_counters(
        self, campaign_id: str, counters: CampaignCounters, now: datetime
    ) -> None:
        with self.backend.transaction():
            self.backend.execute(
                """
                UPDATE campaigns
                SET recipient_count = ?, sent_count = ?, delivered_count = ?,
                    bounced_count = ?, opened_count = ?, clicked_count = ?,
                    failed_count = ?, skipped_count = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    counters.recipient_count,
                    counters.sent_count,
                    counters.delivered_count,
                    counters.bounced_count,
                    counters.opened_count,
                    counters.clicked_count,
                    counters.failed_count,
                    counters.skipped_count,
                    to_db_time(now),
                    campaign_id,
                ),
            )

    # =========================================================================
    # Workflows
    # =========================================================================

    @_guarded
    def save_workflow(self, workflow: Workflow) -> None:
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO workflows
                (id, store_id, name, trigger_type, conditions, actions, is_active,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    trigger_type = excluded.trigger_type,
                    conditions = excluded.conditions,
                    actions = excluded.actions,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    workflow.id,
                    workflow.store_id,
                    workflow.name,
                    workflow.trigger_type.value,
                    json.dumps([c.model_dump(mode="json") for c in workflow.conditions]),
                    json.dumps([a.model_dump(mode="json") for a in workflow.actions]),
                    int(workflow.is_active),
                    to_db_time(workflow.created_at),
                    to_db_time(workflow.updated_at),
                ),
            )

    def _row_to_workflow(self, row: dict) -> Workflow:
        return Workflow.model_validate(
            {
                "id": row["id"],
                "store_id": row["store_id"],
                "name": row["name"],
                "trigger_type": row["trigger_type"],
                "conditions": _load_json(row["conditions"], []),
                "actions": _load_json(row["actions"], []),
                "is_active": bool(row["is_active"]),
                "created_at": from_db_time(row["created_at"]),
                "updated_at": from_db_time(row["updated_at"]),
            }
        )

    @_guarded
    def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = self.backend.fetchone("SELECT * FROM workflows WHERE id = ?", (workflow_id,))
        return self._row_to_workflow(row) if row else None

    @_guarded
    def list_active_workflows(self, store_id: str, trigger_type: str) -> list[Workflow]:
        rows = self.backend.fetchall(
            """
            SELECT * FROM workflows
            WHERE store_id = ? AND trigger_type = ? AND is_active = 1
            ORDER BY created_at, id
            """,
            (store_id, trigger_type),
        )
        return [self._row_to_workflow(row) for row in rows]

    @_guarded
    def list_workflows(self, store_id: str) -> list[Workflow]:
        rows = self.backend.fetchall(
            "SELECT * FROM workflows WHERE store_id = ? ORDER BY created_at, id", (store_id,)
        )
        return [self._row_to_workflow(row) for row in rows]

    @_guarded
    def set_workflow_active(self, workflow_id: str, active: bool, now: datetime) -> bool:
        with self.backend.transaction():
            cursor = self.backend.execute(
                "UPDATE workflows SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(active), to_db_time(now), workflow_id),
            )
        return cursor.rowcount == 1

    # =========================================================================
    # Workflow runs
    # =========================================================================

    def _row_to_run(self, row: dict) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            store_id=row["store_id"],
            event_id=row["event_id"],
            recipient_id=row["recipient_id"],
            trigger_payload=_load_json(row["trigger_payload"], {}),
            cursor=row["cursor"],
            status=RunStatus(row["status"]),
            resume_at=from_db_time(row["resume_at"]),
            logical_time=from_db_time(row["logical_time"]),
            lease_until=from_db_time(row["lease_until"]),
            delay_done_cursor=row["delay_done_cursor"],
            error=row["error"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            completed_at=from_db_time(row["completed_at"]),
        )

    @_guarded
    def insert_run_if_absent(self, run: WorkflowRun) -> bool:
        """Insert a run unless one exists for its dedup key. Returns True if inserted."""
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                INSERT INTO workflow_runs
                (id, workflow_id, store_id, event_id, recipient_id, trigger_payload, cursor,
                 status, resume_at, logical_time, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (workflow_id, event_id, recipient_id) DO NOTHING
                """,
                (
                    run.id,
                    run.workflow_id,
                    run.store_id,
                    run.event_id,
                    run.recipient_id,
                    json.dumps(run.trigger_payload, default=str),
                    run.cursor,
                    run.status.value,
                    to_db_time(run.resume_at),
                    to_db_time(run.logical_time),
                    to_db_time(run.created_at),
                    to_db_time(run.updated_at),
                ),
            )
        return cursor.rowcount == 1

    @_guarded
    def get_run(self, run_id: str) -> WorkflowRun | None:
        row = self.backend.fetchone("SELECT * FROM workflow_runs WHERE id = ?", (run_id,))
        return self._row_to_run(row) if row else None

    @_guarded
    def list_runs(self, workflow_id: str) -> list[WorkflowRun]:
        rows = self.backend.fetchall(
            "SELECT * FROM workflow_runs WHERE workflow_id = ? ORDER BY created_at, id",
            (workflow_id,),
        )
        return [self._row_to_run(row) for row in rows]

    @_guarded
    def claim_run(self, run_id: str, now: datetime, lease_until: datetime) -> bool:
        """Compare-and-set a ready run to running under a lease."""
        ts = to_db_time(now)
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE workflow_runs
                SET status = ?, lease_until = ?, updated_at = ?
                WHERE id = ?
                  AND (status = ?
                       OR (status = ? AND (resume_at IS NULL OR resume_at <= ?))
                       OR (status = ? AND lease_until < ?))
                """,
                (
                    RunStatus.RUNNING.value,
                    to_db_time(lease_until),
                    ts,
                    run_id,
                    RunStatus.PENDING.value,
                    RunStatus.WAITING.value,
                    ts,
                    RunStatus.RUNNING.value,
                    ts,
                ),
            )
        return cursor.rowcount == 1

    @_guarded
    def save_run_progress(self, run: WorkflowRun, now: datetime) -> bool:
        """Persist a claimed run's progress. Fails if the run is no longer running."""
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE workflow_runs
                SET cursor = ?, status = ?, resume_at = ?, logical_time = ?, lease_until = ?,
                    delay_done_cursor = ?, error = ?, completed_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    run.cursor,
                    run.status.value,
                    to_db_time(run.resume_at),
                    to_db_time(run.logical_time),
                    to_db_time(run.lease_until),
                    run.delay_done_cursor,
                    run.error,
                    to_db_time(run.completed_at),
                    to_db_time(now),
                    run.id,
                    RunStatus.RUNNING.value,
                ),
            )
        return cursor.rowcount == 1

    @_guarded
    def list_ready_runs(self, now: datetime, limit: int = 500) -> list[WorkflowRun]:
        ts = to_db_time(now)
        rows = self.backend.fetchall(
            """
            SELECT * FROM workflow_runs
            WHERE status = ?
               OR (status = ? AND resume_at <= ?)
               OR (status = ? AND lease_until < ?)
            ORDER BY COALESCE(resume_at, created_at), id
            LIMIT ?
            """,
            (
                RunStatus.PENDING.value,
                RunStatus.WAITING.value,
                ts,
                RunStatus.RUNNING.value,
                ts,
                limit,
            ),
        )
        return [self._row_to_run(row) for row in rows]

    @_guarded
    def cancel_waiting_runs(self, workflow_id: str, now: datetime) -> int:
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE workflow_runs
                SET status = ?, error = ?, completed_at = ?, updated_at = ?
                WHERE workflow_id = ? AND status = ?
                """,
                (
                    RunStatus.CANCELLED.value,
                    "workflow deactivated",
                    to_db_time(now),
                    to_db_time(now),
                    workflow_id,
                    RunStatus.WAITING.value,
                ),
            )
        return cursor.rowcount

    @_guarded
    def run_status_counts(self, workflow_id: str) -> dict[str, int]:
        rows = self.backend.fetchall(
            """
            SELECT status, COUNT(*) AS n FROM workflow_runs
            WHERE workflow_id = ? GROUP BY status
            """,
            (workflow_id,),
        )
        return {row["status"]: row["n"] for row in rows}

    @_guarded
    def count_run_messages_sent(self, workflow_id: str) -> int:
        row = self.backend.fetchone(
            """
            SELECT COUNT(*) AS n FROM message_records m
            JOIN workflow_runs r ON m.source_id LIKE r.id || ':%'
            WHERE m.source_kind = ? AND r.workflow_id = ? AND m.provider_message_id IS NOT NULL
            """,
            (SourceKind.WORKFLOW_RUN.value, workflow_id),
        )
        return row["n"] if row else 0

    # =========================================================================
    # Dispatch unit queue
    # =========================================================================

    def _row_to_unit(self, row: dict) -> DispatchUnit:
        return DispatchUnit(
            id=row["id"],
            kind=row["kind"],
            source_kind=SourceKind(row["source_kind"]),
            source_id=row["source_id"],
            store_id=row["store_id"],
            channel=Channel(row["channel"]),
            content=MessageContent.model_validate_json(row["content"]),
            recipient_ids=_load_json(row["recipient_ids"], []),
            variables=_load_json(row["variables"], {}),
            status=UnitStatus(row["status"]),
            available_at=from_db_time(row["available_at"]),
            lease_until=from_db_time(row["lease_until"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            created_at=from_db_time(row["created_at"]),
        )

    def _insert_unit(self, unit: DispatchUnit) -> None:
        self.backend.execute(
            """
            INSERT INTO dispatch_units
            (id, kind, source_kind, source_id, store_id, channel, content, recipient_ids,
             variables, status, available_at, attempts, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                unit.id,
                unit.kind.value,
                unit.source_kind.value,
                unit.source_id,
                unit.store_id,
                unit.channel.value,
                unit.content.model_dump_json(),
                json.dumps(unit.recipient_ids),
                json.dumps(unit.variables, default=str),
                unit.status.value,
                to_db_time(unit.available_at),
                unit.attempts,
                to_db_time(unit.created_at),
            ),
        )

    @_guarded
    def enqueue_units(self, units: list[DispatchUnit]) -> None:
        if not units:
            return
        with self.backend.transaction():
            for unit in units:
                self._insert_unit(unit)

    @_guarded
    def enqueue_campaign_audience(
        self,
        campaign_id: str,
        units: list[DispatchUnit],
        recipient_count: int,
        now: datetime,
    ) -> bool:
        """Store a sending campaign's batches and mark its audience enqueued.

        Both happen in one transaction. Returns False, writing nothing, if the
        campaign is not sending or its audience was already enqueued.
        """
        with self.backend.transaction():
            cursor = self.backend.execute(
                """
                UPDATE campaigns
                SET audience_enqueued_at = ?, recipient_count = ?, updated_at = ?
                WHERE id = ? AND status = ? AND audience_enqueued_at IS NULL
                """,
                (
                    to_db_time(now),
                    recipient_count,
                    to_db_time(now),
                    campaign_id,
                    CampaignStatus.SENDING.value,
                ),
            )
            if cursor.rowcount != 1:
                return False
            for unit in units:
                self._insert_unit(unit)
        return True

    @_guarded
    def get_unit(self, unit_id: str) -> DispatchUnit | None:
        row = self.backend.fetchone("SELECT * FROM dispatch_units WHERE id = ?", (unit_id,))
        return self._row_to_unit(row) if row else None

    @_guarded
    def list_units(self, source_id: str) -> list[DispatchUnit]:
        rows = self.backend.fetchall(
            "SELECT * FROM dispatch_units WHERE source_id = ? ORDER BY created_at, id",
            (source_id,),
        )
        return [self._row_to_unit(row) for row in rows]

    @_guarded
    def claim_next_unit(
        self,
        channel: Channel,
        now: datetime,
        lease_until: datetime,
        source_id: str | None = None,
    ) -> DispatchUnit | None:
        """Claim the oldest ready unit on a channel.

        Ready means pending and available, or running with an expired lease.
        Units of a campaign that is no longer sending are never claimed.
        Losing a race to another worker moves on to the next candidate.
        """
        ts = to_db_time(now)
        ready = """
            ((status = ? AND available_at <= ?) OR (status = ? AND lease_until < ?))
            AND (source_kind != ? OR source_id IN (SELECT id FROM campaigns WHERE status = ?))
        """
        ready_params = (
            UnitStatus.PENDING.value,
            ts,
            UnitStatus.RUNNING.value,
            ts,
            SourceKind.CAMPAIGN.value,
            CampaignStatus.SENDING.value,
        )
        source_clause = "AND source_id = ?" if source_id else ""
        source_params = (source_id,) if source_id else ()
        candidates = self.backend.fetchall(
            f"""
            SELECT id FROM dispatch_units
            WHERE channel = ? {source_clause} AND {ready}
            ORDER BY available_at, created_at, id
            LIMIT 10
            """,
            (channel.value, *source_params, *ready_params),
        )
        for candidate in candidates:
            with self.backend.transaction():
                cursor = self.backend.execute(
                    f"""
                    UPDATE dispatch_units
                    SET status = ?, lease_until = ?, attempts = attempts + 1
                    WHERE id = ? AND {ready}
                    """,
                    (
                        UnitStatus.RUNNING.value,
                        to_db_time(lease_until),
                        candidate["id"],
                        *ready_params,
                    ),
                )
            if cursor.rowcount == 1:
                return self.get_unit(candidate["id"])
        return None

    @_guarded
    def complete_unit(self, unit_id: str) -> None:
        with self.backend.transaction():
            self.backend.execute(
                "UPDATE dispatch_units SET status = ?, lease_until = NULL WHERE id = ?",
                (UnitStatus.DONE.value, unit_id),
            )

    @_guarded
    def cancel_pending_units(self, source_id: str) -> int:
        with self.backend.transaction():
            cursor = self.backend.execute(
                "UPDATE dispatch_units SET status = ? WHERE source_id = ? AND status = ?",
                (UnitStatus.CANCELLED.value, source_id, UnitStatus.PENDING.value),
            )
        return cursor.rowcount

    @_guarded
    def open_unit_summary(self, source_id: str) -> tuple[int, datetime | None]:
        """Number of pending or running units for a source and the earliest availability."""
        row = self.backend.fetchone(
            """
            SELECT COUNT(*) AS n, MIN(available_at) AS next_at FROM dispatch_units
            WHERE source_id = ? AND status IN (?, ?)
            """,
            (source_id, UnitStatus.PENDING.value, UnitStatus.RUNNING.value),
        )
        return (row["n"] or 0, from_db_time(row["next_at"]))

    # =========================================================================
    # Delivery events
    # =========================================================================

    @_guarded
    def record_delivery_event(
        self,
        provider: str,
        provider_message_id: str,
        event_type: str,
        occurred_at: datetime,
        result: str,
        payload: dict | None,
        received_at: datetime,
    ) -> None:
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO delivery_events
                (provider, provider_message_id, event_type, occurred_at, result, payload,
                 received_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    provider,
                    provider_message_id,
                    event_type,
                    to_db_time(occurred_at),
                    result,
                    _json_or_none(payload),
                    to_db_time(received_at),
                ),
            )

    @_guarded
    def list_delivery_events(self, provider_message_id: str) -> list[dict]:
        rows = self.backend.fetchall(
            """
            SELECT * FROM delivery_events
            WHERE provider_message_id = ? ORDER BY id
            """,
            (provider_message_id,),
        )
        for row in rows:
            row["payload"] = _load_json(row["payload"], {})
        return rows
