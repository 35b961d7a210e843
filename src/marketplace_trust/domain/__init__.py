"""Domain layer — pure business logic with zero framework dependencies."""

from marketplace_trust.domain.authorization import (
    ActorContext,
    Permission,
    authorize_action,
    build_actor,
    resolve_actor_type,
)
from marketplace_trust.domain.case_projection import (
    CaseChange,
    CaseSnapshot,
    apply_event,
)
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
from marketplace_trust.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    PersistenceError,
    TrustLayerError,
    ValidationError,
)
from marketplace_trust.domain.sla import aggregate, classify_deadline

__all__ = [
    "AccountStatus",
    "ActionType",
    "ActorType",
    "DisputePriority",
    "DisputeStage",
    "DisputeStatus",
    "TransactionStatus",
    "TransactionType",
    "ActorContext",
    "Permission",
    "authorize_action",
    "build_actor",
    "resolve_actor_type",
    "CaseChange",
    "CaseSnapshot",
    "apply_event",
    "aggregate",
    "classify_deadline",
    "TrustLayerError",
    "ValidationError",
    "InvalidStateTransitionError",
    "NotFoundError",
    "AuthorizationError",
    "ConflictError",
    "PersistenceError",
]
