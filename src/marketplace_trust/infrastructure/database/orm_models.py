"""SQLAlchemy 2.0 ORM models for the marketplace trust layer.

Four tables:
    1. escrow_accounts      — Holding ledger per payer/provider relationship.
    2. escrow_transactions  — One funded engagement each, with its audit trail.
    3. dispute_cases        — Disputes opened against a transaction.
    4. dispute_events       — Append-only event log of every dispute case.

Design decisions:
    - UUID primary keys for trust-layer entities; platform user ids are integers.
    - Decimal amounts with 4 decimal places (no float rounding).
    - JSON columns (JSONB on PostgreSQL) for metadata and the audit trail.
    - CHECK constraints mirror the domain enums, so an out-of-set value can't be
      persisted even by a caller that bypasses the services.
    - A partial unique index allows one non-closed dispute per transaction.
    - dispute_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from marketplace_trust.domain.enums import (
    AccountStatus,
    ActionType,
    ActorType,
    DisputePriority,
    DisputeStage,
    DisputeStatus,
    TransactionStatus,
    TransactionType,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_check(column: str, values: type) -> str:
    allowed = ", ".join(f"'{member.value}'" for member in values)
    return f"{column} IN ({allowed})"


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamps that always come back in UTC.

    SQLite drops tzinfo on the way in; this restores it on the way out so
    deadline comparisons never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


JSONDocument = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(18, 4)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


# ---------------------------------------------------------------------------
# 1. escrow_accounts
# ---------------------------------------------------------------------------
class EscrowAccount(TimestampMixin, Base):
    """Holding ledger aggregating the transactions of one owner at one provider."""

    __tablename__ = "escrow_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Platform user that owns the account",
    )
    provider: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="Payment provider identifier (e.g. stripe, escrow_com)",
    )
    external_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AccountStatus.PENDING.value,
        comment="Guarded by AccountStateMachine",
    )
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    current_balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    pending_release_total: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0")
    )
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONDocument, nullable=True)
    last_reconciled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Stamped by the external reconciliation batch",
    )

    transactions: Mapped[list[EscrowTransaction]] = relationship(
        "EscrowTransaction",
        back_populates="account",
        lazy="raise",
    )

    __table_args__ = (
        CheckConstraint(_in_check("status", AccountStatus), name="ck_account_valid_status"),
        CheckConstraint("current_balance >= 0", name="ck_account_balance_non_negative"),
        CheckConstraint("pending_release_total >= 0", name="ck_account_pending_non_negative"),
        Index("idx_account_user", "user_id"),
        Index("idx_account_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowAccount id={self.id} user={self.user_id} status={self.status} "
            f"balance={self.current_balance} {self.currency_code}>"
        )


# ---------------------------------------------------------------------------
# 2. escrow_transactions
# ---------------------------------------------------------------------------
class EscrowTransaction(TimestampMixin, Base):
    """One funded engagement whose funds are held until release, refund or cancel."""

    __tablename__ = "escrow_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_accounts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    reference: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    external_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.INITIATED.value,
        comment="Guarded by TransactionStateMachine",
    )

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    initiated_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    counterparty_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gig_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    milestone_label: Mapped[str | None] = mapped_column(String(180), nullable=True)

    scheduled_release_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONDocument, nullable=True)
    audit_trail: Mapped[list] = mapped_column(
        JSONDocument,
        nullable=False,
        default=list,
        comment="Append-only list of {action, from, to, actor_id, ..., at} entries",
    )

    account: Mapped[EscrowAccount] = relationship(
        "EscrowAccount",
        back_populates="transactions",
        lazy="raise",
    )

    __table_args__ = (
        CheckConstraint(_in_check("status", TransactionStatus), name="ck_txn_valid_status"),
        CheckConstraint(_in_check("type", TransactionType), name="ck_txn_valid_type"),
        CheckConstraint("amount > 0", name="ck_txn_positive_amount"),
        CheckConstraint("fee_amount >= 0 AND fee_amount <= amount", name="ck_txn_fee_bounds"),
        CheckConstraint("amount = fee_amount + net_amount", name="ck_txn_net_balanced"),
        Index("idx_txn_account", "account_id"),
        Index("idx_txn_status", "status"),
        Index("idx_txn_initiated_by", "initiated_by_id"),
        Index("idx_txn_counterparty", "counterparty_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowTransaction id={self.id} ref={self.reference} status={self.status} "
            f"amount={self.amount} {self.currency_code}>"
        )


# ---------------------------------------------------------------------------
# 3. dispute_cases
# ---------------------------------------------------------------------------
class DisputeCase(TimestampMixin, Base):
    """A dispute opened against an escrow transaction.

    stage, status, priority, the deadlines, resolution_notes, assigned_to_id
    and resolved_at are a cache of the event log, written only together with
    the event that produced them.
    """

    __tablename__ = "dispute_cases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_transactions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    opened_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    assigned_to_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Mediator handling the case",
    )

    stage: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DisputeStage.INTAKE.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DisputeStatus.OPEN.value
    )
    priority: Mapped[str] = mapped_column(
        String(10), nullable=False, default=DisputePriority.MEDIUM.value
    )
    reason_code: Mapped[str] = mapped_column(String(64), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)

    customer_deadline_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    provider_deadline_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    opened_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONDocument, nullable=True)

    transaction: Mapped[EscrowTransaction] = relationship("EscrowTransaction", lazy="raise")
    events: Mapped[list[DisputeEvent]] = relationship(
        "DisputeEvent",
        back_populates="case",
        order_by="DisputeEvent.event_at.asc()",
        lazy="raise",
    )

    __table_args__ = (
        CheckConstraint(_in_check("stage", DisputeStage), name="ck_case_valid_stage"),
        CheckConstraint(_in_check("status", DisputeStatus), name="ck_case_valid_status"),
        CheckConstraint(_in_check("priority", DisputePriority), name="ck_case_valid_priority"),
        CheckConstraint(
            "(resolved_at IS NOT NULL AND stage = 'resolved' AND status IN ('settled', 'closed'))"
            " OR (resolved_at IS NULL"
            " AND NOT (stage = 'resolved' AND status IN ('settled', 'closed')))",
            name="ck_case_resolved_consistent",
        ),
        Index(
            "uq_case_one_active_per_transaction",
            "escrow_transaction_id",
            unique=True,
            postgresql_where=text("status != 'closed'"),
            sqlite_where=text("status != 'closed'"),
        ),
        Index("idx_case_transaction", "escrow_transaction_id"),
        Index("idx_case_status", "status"),
        Index("idx_case_assigned", "assigned_to_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<DisputeCase id={self.id} txn={self.escrow_transaction_id} "
            f"stage={self.stage} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# 4. dispute_events (Append-Only)
# ---------------------------------------------------------------------------
class DisputeEvent(TimestampMixin, Base):
    """Immutable audit entry of a dispute case.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "dispute_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("dispute_cases.id", ondelete="RESTRICT"),
        nullable=False,
    )
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Evidence is an opaque reference; storage lives elsewhere.
    evidence_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    evidence_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    evidence_file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    evidence_content_type: Mapped[str | None] = mapped_column(String(120), nullable=True)

    event_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONDocument, nullable=True)

    case: Mapped[DisputeCase] = relationship("DisputeCase", back_populates="events")

    __table_args__ = (
        CheckConstraint(_in_check("actor_type", ActorType), name="ck_event_valid_actor_type"),
        CheckConstraint(_in_check("action_type", ActionType), name="ck_event_valid_action_type"),
        Index("idx_event_case_time", "dispute_case_id", "event_at"),
        Index("idx_event_action_type", "action_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<DisputeEvent id={self.id} case={self.dispute_case_id} "
            f"{self.actor_type}:{self.action_type}>"
        )
