"""Escrow Ledger — accounts, transactions and balance arithmetic.

This is the only place where escrow balances change. It coordinates:
    - Domain state machines (transition guards)
    - Repositories (data access, row locks)
    - The transaction audit trail

The ledger records derived state only: funds are captured and paid out by an
external payment rail, and ``transition`` mirrors what happened there.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from marketplace_trust.config import get_settings
from marketplace_trust.domain.enums import (
    AccountStatus,
    TransactionStatus,
    TransactionType,
)
from marketplace_trust.domain.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from marketplace_trust.domain.state_machine import (
    validate_account_transition,
    validate_transaction_transition,
)
from marketplace_trust.infrastructure.database.orm_models import (
    EscrowAccount,
    EscrowTransaction,
)
from marketplace_trust.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from marketplace_trust.domain.authorization import ActorContext
    from marketplace_trust.infrastructure.database.unit_of_work import UnitOfWork

logger = get_logger(__name__)

_CENT_PRECISION = Decimal("0.0001")

_TERMINAL_TIMESTAMPS = {
    TransactionStatus.RELEASED: "released_at",
    TransactionStatus.REFUNDED: "refunded_at",
    TransactionStatus.CANCELLED: "cancelled_at",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def normalise_amount(value: Decimal | int | float | str, field: str) -> Decimal:
    """Parse a monetary value and round it to 4 decimal places."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as err:
        raise ValidationError(f"{field} must be a number, got {value!r}") from err
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return amount.quantize(_CENT_PRECISION)


@dataclass(frozen=True)
class ReconciliationSnapshot:
    """Stored balances next to the balances implied by held transactions."""

    account_id: uuid.UUID
    currency_code: str
    stored_balance: Decimal
    stored_pending_release: Decimal
    computed_balance: Decimal
    computed_pending_release: Decimal
    held_transactions: int
    last_reconciled_at: datetime | None

    @property
    def is_balanced(self) -> bool:
        return (
            self.stored_balance == self.computed_balance
            and self.stored_pending_release == self.computed_pending_release
        )


class EscrowLedger:
    """Manages escrow accounts and the transaction lifecycle."""

    def __init__(
        self,
        uow: UnitOfWork,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow = uow
        self._clock = clock

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def create_account(
        self,
        user_id: int,
        provider: str,
        currency_code: str | None = None,
        external_id: str | None = None,
        metadata: dict | None = None,
    ) -> EscrowAccount:
        """Open an escrow account in PENDING state with zero balances."""
        if not provider or not provider.strip():
            raise ValidationError("provider is required")
        currency = (currency_code or get_settings().default_currency).upper()
        if len(currency) != 3:
            raise ValidationError(f"currency_code must be a 3-letter code, got {currency!r}")

        account = EscrowAccount(
            user_id=user_id,
            provider=provider.strip(),
            external_id=external_id,
            status=AccountStatus.PENDING.value,
            currency_code=currency,
            current_balance=Decimal("0"),
            pending_release_total=Decimal("0"),
            metadata_json=metadata,
        )
        account = await self._uow.accounts.create(account)

        logger.info(
            "ledger.account_created",
            account_id=str(account.id),
            user_id=user_id,
            provider=account.provider,
            currency=currency,
        )
        return account

    async def update_account_status(
        self,
        account_id: uuid.UUID,
        status: AccountStatus | str,
    ) -> EscrowAccount:
        """Move an account along its lifecycle (activate, suspend, close)."""
        account = await self._uow.accounts.get_by_id(account_id, for_update=True)
        if account is None:
            raise NotFoundError("Escrow account", account_id)

        old_status = account.status
        new_status = validate_account_transition(old_status, status)
        account.status = new_status.value
        await self._uow.flush()

        logger.info(
            "ledger.account_status_changed",
            account_id=str(account_id),
            from_status=old_status,
            to_status=new_status.value,
        )
        return account

    async def get_account(self, account_id: uuid.UUID) -> EscrowAccount:
        account = await self._uow.accounts.get_by_id(account_id)
        if account is None:
            raise NotFoundError("Escrow account", account_id)
        return account

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def create_transaction(
        self,
        account_id: uuid.UUID,
        type: TransactionType | str,  # noqa: A002
        amount: Decimal | int | str,
        initiated_by_id: int,
        fee_amount: Decimal | int | str = Decimal("0"),
        counterparty_id: int | None = None,
        reference: str | None = None,
        currency_code: str | None = None,
        project_id: int | None = None,
        gig_id: int | None = None,
        milestone_label: str | None = None,
        scheduled_release_at: datetime | None = None,
        external_id: str | None = None,
        metadata: dict | None = None,
    ) -> EscrowTransaction:
        """Record a new engagement in INITIATED state.

        Raises:
            ValidationError: Unknown type, non-positive amount, a fee outside
                [0, amount], or an account that is not active.
            NotFoundError: The account does not exist.
            ConflictError: The reference is already taken.
        """
        try:
            txn_type = TransactionType(type)
        except ValueError as err:
            raise ValidationError(f"Unknown transaction type '{type}'") from err

        gross = normalise_amount(amount, "amount")
        fee = normalise_amount(fee_amount, "fee_amount")
        if gross <= 0:
            raise ValidationError("amount must be greater than zero")
        if fee < 0:
            raise ValidationError("fee_amount must not be negative")
        if fee > gross:
            raise ValidationError("fee_amount must not exceed amount")

        account = await self._uow.accounts.get_by_id(account_id, for_update=True)
        if account is None:
            raise NotFoundError("Escrow account", account_id)
        if account.status != AccountStatus.ACTIVE.value:
            raise ValidationError(
                f"Escrow account {account_id} is {account.status}; only active accounts "
                "accept transactions"
            )

        currency = (currency_code or account.currency_code).upper()
        if currency != account.currency_code:
            raise ValidationError(
                f"Transaction currency {currency} does not match account currency "
                f"{account.currency_code}"
            )

        reference = reference or f"ESC-{uuid.uuid4().hex[:12].upper()}"
        if await self._uow.transactions.get_by_reference(reference) is not None:
            raise ConflictError(f"Transaction reference '{reference}' already exists")

        now = self._clock()
        txn = EscrowTransaction(
            account_id=account.id,
            reference=reference,
            external_id=external_id,
            type=txn_type.value,
            status=TransactionStatus.INITIATED.value,
            amount=gross,
            currency_code=currency,
            fee_amount=fee,
            net_amount=gross - fee,
            initiated_by_id=initiated_by_id,
            counterparty_id=counterparty_id,
            project_id=project_id,
            gig_id=gig_id,
            milestone_label=milestone_label,
            scheduled_release_at=scheduled_release_at,
            metadata_json=metadata,
            audit_trail=[
                {
                    "action": "created",
                    "from": None,
                    "to": TransactionStatus.INITIATED.value,
                    "actor_id": initiated_by_id,
                    "amount": str(gross),
                    "at": now.isoformat(),
                }
            ],
        )
        txn = await self._uow.transactions.create(txn)

        logger.info(
            "ledger.transaction_created",
            transaction_id=str(txn.id),
            account_id=str(account.id),
            reference=reference,
            amount=str(gross),
            fee=str(fee),
        )
        return txn

    async def transition(
        self,
        transaction_id: uuid.UUID,
        target_status: TransactionStatus | str,
        actor: ActorContext,
        notes: str | None = None,
    ) -> EscrowTransaction:
        """Move a transaction along the edge table and apply its balance effect.

        Funding adds the amount to the account balance and the net amount to
        the pending release total; a terminal move takes both back out. The
        status write, the balance write and the audit entry share the
        caller's unit of work.

        Raises:
            NotFoundError: Unknown transaction.
            InvalidStateTransitionError: The edge is not in the table.
            ValidationError: The balance effect would drive a total negative.
        """
        txn = await self._uow.transactions.get_by_id(transaction_id, for_update=True)
        if txn is None:
            raise NotFoundError("Escrow transaction", transaction_id)

        old_status = TransactionStatus(txn.status)
        new_status = validate_transaction_transition(old_status, target_status)

        account = await self._uow.accounts.get_by_id(txn.account_id, for_update=True)
        if account is None:
            raise NotFoundError("Escrow account", txn.account_id)

        if new_status == TransactionStatus.FUNDED:
            self._apply_balance(account, txn.amount, txn.net_amount)
        elif new_status.is_terminal:
            self._apply_balance(account, -txn.amount, -txn.net_amount)

        now = self._clock()
        timestamp_field = _TERMINAL_TIMESTAMPS.get(new_status)
        if timestamp_field is not None:
            setattr(txn, timestamp_field, now)

        txn.status = new_status.value
        txn.audit_trail = [
            *(txn.audit_trail or []),
            {
                "action": "status_change",
                "from": old_status.value,
                "to": new_status.value,
                "actor_id": actor.actor_id,
                "actor_type": actor.actor_type.value,
                "notes": notes,
                "at": now.isoformat(),
            },
        ]
        await self._uow.flush()

        logger.info(
            "ledger.transaction_transitioned",
            transaction_id=str(transaction_id),
            from_status=old_status.value,
            to_status=new_status.value,
            actor_type=actor.actor_type.value,
            balance=str(account.current_balance),
            pending_release=str(account.pending_release_total),
        )
        return txn

    @staticmethod
    def _apply_balance(account: EscrowAccount, amount: Decimal, net: Decimal) -> None:
        balance = Decimal(account.current_balance) + amount
        pending = Decimal(account.pending_release_total) + net
        if balance < 0 or pending < 0:
            raise ValidationError(
                f"Escrow account {account.id} balance would become negative "
                f"(balance={balance}, pending_release={pending})"
            )
        account.current_balance = balance.quantize(_CENT_PRECISION)
        account.pending_release_total = pending.quantize(_CENT_PRECISION)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: uuid.UUID) -> EscrowTransaction:
        txn = await self._uow.transactions.get_by_id(transaction_id)
        if txn is None:
            raise NotFoundError("Escrow transaction", transaction_id)
        return txn

    async def list_transactions_for_user(self, user_id: int) -> list[EscrowTransaction]:
        return await self._uow.transactions.get_for_user(user_id)

    async def get_reconciliation_snapshot(self, account_id: uuid.UUID) -> ReconciliationSnapshot:
        """Compare stored balances with the sum of held transactions.

        Reconciliation itself is run by an external batch; this only reports.
        """
        account = await self.get_account(account_id)
        held = await self._uow.transactions.get_held_by_account(account_id)
        computed_balance = sum((Decimal(t.amount) for t in held), Decimal("0"))
        computed_pending = sum((Decimal(t.net_amount) for t in held), Decimal("0"))
        return ReconciliationSnapshot(
            account_id=account.id,
            currency_code=account.currency_code,
            stored_balance=Decimal(account.current_balance).quantize(_CENT_PRECISION),
            stored_pending_release=Decimal(account.pending_release_total).quantize(
                _CENT_PRECISION
            ),
            computed_balance=computed_balance.quantize(_CENT_PRECISION),
            computed_pending_release=computed_pending.quantize(_CENT_PRECISION),
            held_transactions=len(held),
            last_reconciled_at=account.last_reconciled_at,
        )
