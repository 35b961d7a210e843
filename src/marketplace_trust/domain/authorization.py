"""Authorization guard: role sets to actor types, actor types to permissions.

A caller may hold many platform roles; for the trust layer they collapse to
exactly one ActorType using a fixed priority order:

    admin > mediator > provider > customer > system

The result is computed once per request, frozen into an ActorContext and
passed down explicitly. Nothing below the API layer looks roles up again.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass

from marketplace_trust.domain.enums import ActionType, ActorType
from marketplace_trust.domain.exceptions import AuthorizationError


class Permission(enum.StrEnum):
    """Actions checked by the guard."""

    OPEN_CASE = "open_case"
    COMMENT = "comment"
    UPLOAD_EVIDENCE = "upload_evidence"
    ADJUST_DEADLINE = "adjust_deadline"
    ADVANCE_STAGE = "advance_stage"
    OVERRIDE_STAGE = "override_stage"
    CHANGE_STATUS = "change_status"
    POST_SYSTEM_NOTICE = "post_system_notice"
    RESOLVE_TRANSACTION = "resolve_transaction"
    VIEW_LEDGER = "view_ledger"


ACTOR_PRIORITY: tuple[ActorType, ...] = (
    ActorType.ADMIN,
    ActorType.MEDIATOR,
    ActorType.PROVIDER,
    ActorType.CUSTOMER,
    ActorType.SYSTEM,
)

ROLE_ALIASES: dict[ActorType, frozenset[str]] = {
    ActorType.ADMIN: frozenset({"admin", "super_admin", "platform_admin"}),
    ActorType.MEDIATOR: frozenset({"mediator", "trust", "trust_safety", "arbitrator"}),
    ActorType.PROVIDER: frozenset(
        {"provider", "freelancer", "agency", "service_provider", "seller"}
    ),
    ActorType.CUSTOMER: frozenset({"customer", "client", "buyer", "company", "user"}),
    ActorType.SYSTEM: frozenset({"system", "service"}),
}

_PARTY_PERMISSIONS = frozenset(
    {Permission.OPEN_CASE, Permission.COMMENT, Permission.UPLOAD_EVIDENCE}
)
_MEDIATOR_PERMISSIONS = frozenset(
    {
        Permission.COMMENT,
        Permission.UPLOAD_EVIDENCE,
        Permission.ADJUST_DEADLINE,
        Permission.ADVANCE_STAGE,
        Permission.CHANGE_STATUS,
        Permission.POST_SYSTEM_NOTICE,
        Permission.RESOLVE_TRANSACTION,
        Permission.VIEW_LEDGER,
    }
)

PERMISSIONS: dict[ActorType, frozenset[Permission]] = {
    ActorType.CUSTOMER: _PARTY_PERMISSIONS,
    ActorType.PROVIDER: _PARTY_PERMISSIONS,
    ActorType.MEDIATOR: _MEDIATOR_PERMISSIONS,
    ActorType.ADMIN: _MEDIATOR_PERMISSIONS | {Permission.OPEN_CASE, Permission.OVERRIDE_STAGE},
    ActorType.SYSTEM: frozenset(
        {Permission.COMMENT, Permission.ADJUST_DEADLINE, Permission.POST_SYSTEM_NOTICE}
    ),
}

ACTION_PERMISSIONS: dict[ActionType, Permission] = {
    ActionType.COMMENT: Permission.COMMENT,
    ActionType.EVIDENCE_UPLOAD: Permission.UPLOAD_EVIDENCE,
    ActionType.DEADLINE_ADJUSTED: Permission.ADJUST_DEADLINE,
    ActionType.STAGE_ADVANCED: Permission.ADVANCE_STAGE,
    ActionType.STAGE_OVERRIDE: Permission.OVERRIDE_STAGE,
    ActionType.STATUS_CHANGE: Permission.CHANGE_STATUS,
    ActionType.SYSTEM_NOTICE: Permission.POST_SYSTEM_NOTICE,
}

# Actor types whose visibility is limited to their own transactions.
PARTY_ACTOR_TYPES = frozenset({ActorType.CUSTOMER, ActorType.PROVIDER})


@dataclass(frozen=True)
class ActorContext:
    """The resolved caller for one request.

    Attributes:
        actor_id: Platform user id, or None for the system actor.
        actor_type: The single actor type the caller acts under.
        roles: The normalised role set the actor type was derived from.
    """

    actor_id: int | None
    actor_type: ActorType
    roles: frozenset[str] = frozenset()

    @property
    def is_party(self) -> bool:
        return self.actor_type in PARTY_ACTOR_TYPES


SYSTEM_ACTOR = ActorContext(actor_id=None, actor_type=ActorType.SYSTEM, roles=frozenset({"system"}))


def normalise_roles(roles: Iterable[str] | str | None) -> frozenset[str]:
    """Lower-case and strip a role list; a single comma-separated string is accepted."""
    if roles is None:
        return frozenset()
    if isinstance(roles, str):
        roles = roles.split(",")
    return frozenset(r.strip().lower() for r in roles if r and r.strip())


def resolve_actor_type(roles: Iterable[str] | str | None) -> ActorType:
    """Collapse a role set into exactly one ActorType.

    The highest-priority matching actor type wins. A caller without any
    recognised role is an ordinary customer.
    """
    normalised = normalise_roles(roles)
    for actor_type in ACTOR_PRIORITY:
        if normalised & ROLE_ALIASES[actor_type]:
            return actor_type
    return ActorType.CUSTOMER


def build_actor(actor_id: int | None, roles: Iterable[str] | str | None) -> ActorContext:
    """Resolve the caller once and freeze the result."""
    normalised = normalise_roles(roles)
    return ActorContext(
        actor_id=actor_id,
        actor_type=resolve_actor_type(normalised),
        roles=normalised,
    )


def is_allowed(actor_type: ActorType | str, permission: Permission | str) -> bool:
    return Permission(permission) in PERMISSIONS[ActorType(actor_type)]


def authorize_action(actor_type: ActorType | str, permission: Permission | str) -> None:
    """Raise AuthorizationError unless ``actor_type`` holds ``permission``."""
    if not is_allowed(actor_type, permission):
        raise AuthorizationError(str(actor_type), str(permission))


def authorize_all(actor_type: ActorType | str, permissions: Iterable[Permission]) -> None:
    for permission in permissions:
        authorize_action(actor_type, permission)


def can_view_case(
    actor: ActorContext,
    *,
    account_owner_id: int | None,
    initiated_by_id: int | None,
    counterparty_id: int | None,
    opened_by_id: int | None = None,
    assigned_to_id: int | None = None,
) -> bool:
    """Customers and providers only see cases tied to their own transactions."""
    if not actor.is_party:
        return True
    if actor.actor_id is None:
        return False
    return actor.actor_id in {
        account_owner_id,
        initiated_by_id,
        counterparty_id,
        opened_by_id,
        assigned_to_id,
    }
