"""Domain enumerations for the marketplace trust layer.

These are contract values shared with external dashboards: anything outside
these closed sets is rejected at the boundary and never persisted. They are
framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class AccountStatus(enum.StrEnum):
    """Lifecycle of an escrow account. See AccountStateMachine."""

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class TransactionType(enum.StrEnum):
    PROJECT = "project"
    GIG = "gig"
    MILESTONE = "milestone"
    RETAINER = "retainer"


class TransactionStatus(enum.StrEnum):
    """Lifecycle of an escrow transaction.

    Transitions are enforced by TransactionStateMachine; see
    domain/state_machine.py for the edge table.
    """

    INITIATED = "initiated"
    FUNDED = "funded"
    IN_ESCROW = "in_escrow"
    RELEASED = "released"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TRANSACTION_STATUSES


TERMINAL_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.RELEASED, TransactionStatus.REFUNDED, TransactionStatus.CANCELLED}
)

# Statuses from which a dispute may be opened.
DISPUTABLE_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.FUNDED, TransactionStatus.IN_ESCROW}
)

# Funds for these transactions are counted in the account balance.
HELD_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.FUNDED, TransactionStatus.IN_ESCROW, TransactionStatus.DISPUTED}
)


class DisputeStage(enum.StrEnum):
    """Forward-only progression of a dispute case."""

    INTAKE = "intake"
    MEDIATION = "mediation"
    ARBITRATION = "arbitration"
    RESOLVED = "resolved"

    @property
    def order(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = (
    DisputeStage.INTAKE,
    DisputeStage.MEDIATION,
    DisputeStage.ARBITRATION,
    DisputeStage.RESOLVED,
)


class DisputeStatus(enum.StrEnum):
    OPEN = "open"
    AWAITING_CUSTOMER = "awaiting_customer"
    UNDER_REVIEW = "under_review"
    SETTLED = "settled"
    CLOSED = "closed"


ACTIVE_DISPUTE_STATUSES = frozenset(
    {DisputeStatus.OPEN, DisputeStatus.AWAITING_CUSTOMER, DisputeStatus.UNDER_REVIEW}
)
RESOLVED_DISPUTE_STATUSES = frozenset({DisputeStatus.SETTLED, DisputeStatus.CLOSED})


class DisputePriority(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ActorType(enum.StrEnum):
    """The single authoritative role a caller acts under for one request."""

    CUSTOMER = "customer"
    PROVIDER = "provider"
    MEDIATOR = "mediator"
    ADMIN = "admin"
    SYSTEM = "system"


class ActionType(enum.StrEnum):
    """Kinds of entries in the append-only dispute event log.

    STAGE_OVERRIDE is the admin-only non-adjacent stage jump; it is a
    distinct action so it can never be mistaken for a regular advance.
    """

    COMMENT = "comment"
    EVIDENCE_UPLOAD = "evidence_upload"
    DEADLINE_ADJUSTED = "deadline_adjusted"
    STAGE_ADVANCED = "stage_advanced"
    STATUS_CHANGE = "status_change"
    SYSTEM_NOTICE = "system_notice"
    STAGE_OVERRIDE = "stage_override"


class TransactionResolution(enum.StrEnum):
    """Fund movement requested by a resolving status_change event."""

    RELEASE = "release"
    REFUND = "refund"
    HOLD = "hold"

    @property
    def target_status(self) -> TransactionStatus:
        return {
            TransactionResolution.RELEASE: TransactionStatus.RELEASED,
            TransactionResolution.REFUND: TransactionStatus.REFUNDED,
            TransactionResolution.HOLD: TransactionStatus.IN_ESCROW,
        }[self]


class SlaSeverity(enum.StrEnum):
    """Deadline classification. On-track deadlines have no severity (None)."""

    AT_RISK = "at_risk"
    BREACHED = "breached"


class DeadlineParty(enum.StrEnum):
    CUSTOMER = "customer"
    PROVIDER = "provider"


# Reason codes offered to dashboards; other codes are accepted as free text.
REASON_CODES = (
    "quality_issue",
    "scope_disagreement",
    "missed_deadline",
    "communication_breakdown",
    "fraud_concern",
    "payment_issue",
)


class AlertSeverity(enum.StrEnum):
    """Severity of a dashboard risk alert, most severe first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def order(self) -> int:
        return list(AlertSeverity).index(self)


# Stages a case reaches once it has left intake.
PROGRESSED_STAGES = frozenset(
    {DisputeStage.MEDIATION, DisputeStage.ARBITRATION, DisputeStage.RESOLVED}
)

# Actor types whose event counts as a response to the opener.
RESPONDER_ACTOR_TYPES = frozenset({ActorType.PROVIDER, ActorType.MEDIATOR, ActorType.ADMIN})
