"""
Ledger Engine Module

Executes deposits, withdrawals and transfers as all-or-nothing units of work.
Balance checks run against the locked row at mutation time, and a
transaction record exists if and only if its balance change committed.
Money is never created or destroyed: a transfer debits and credits in the
same unit.
"""

from decimal import Decimal
from typing import Callable, List, Optional, Union
import uuid

from .access import Actor
from .accounts import AccountRegistry
from .amounts import AmountLike, DEFAULT_SCALE, exact_add, exact_subtract, format_amount, positive_amount
from .audit import AuditTrail, AuditEventType
from .errors import InsufficientFunds, InvalidOperation, LedgerError, NotFound
from .logging_config import get_logger, log_action
from .models import Account, Transaction, TransactionType, utc_now
from .storage import LedgerStorage


class LedgerEngine:
    """
    Posts money movements against accounts resolved through the registry
    """

    def __init__(
        self,
        storage: LedgerStorage,
        registry: AccountRegistry,
        audit_trail: Optional[AuditTrail] = None,
        amount_scale: int = DEFAULT_SCALE
    ):
        self.storage = storage
        self.registry = registry
        self.access_policy = registry.access_policy
        self.audit_trail = audit_trail
        self.amount_scale = amount_scale
        self.logger = get_logger("bank_ledger.ledger")

    def deposit(self, actor: Actor, account_id: str, amount: AmountLike) -> Transaction:
        """
        Credit an account the actor may operate on

        Returns:
            The DEPOSIT transaction record

        Raises:
            InvalidAmount: If amount is not positive or malformed, or the new
                balance would not be exactly representable
            NotFound: If the account is missing or not accessible
        """
        try:
            value = positive_amount(amount, self.amount_scale)
            account = self.registry.resolve_account(actor, account_id)

            def post() -> Transaction:
                credited = self.storage.atomic_update_balance(account_id, self._credit(value))
                return self.storage.append_transaction(
                    self._record(credited, TransactionType.DEPOSIT, value, "Deposit")
                )

            transaction = self.storage.run_atomic(post)
        except LedgerError as e:
            self._log_rejected(actor, "deposit", account_id, e)
            raise

        self._log_posted(actor, "deposit", transaction)
        self._audit(
            AuditEventType.DEPOSIT_POSTED, "transaction", str(transaction.id), actor,
            {"account_id": account_id, "owner_id": account.owner_id, "amount": value}
        )
        return transaction

    def withdraw(self, actor: Actor, account_id: str, amount: AmountLike) -> Transaction:
        """
        Debit an account the actor may operate on

        The sufficiency check runs on the locked row, so two concurrent
        withdrawals can never both pass against the same funds.

        Raises:
            InvalidAmount: If amount is not positive or malformed
            NotFound: If the account is missing or not accessible
            InsufficientFunds: If the balance at commit time is below amount
        """
        try:
            value = positive_amount(amount, self.amount_scale)
            account = self.registry.resolve_account(actor, account_id)

            def post() -> Transaction:
                debited = self.storage.atomic_update_balance(account_id, self._debit(account_id, value))
                return self.storage.append_transaction(
                    self._record(debited, TransactionType.WITHDRAW, value, "Withdraw")
                )

            transaction = self.storage.run_atomic(post)
        except LedgerError as e:
            self._log_rejected(actor, "withdraw", account_id, e)
            raise

        self._log_posted(actor, "withdraw", transaction)
        self._audit(
            AuditEventType.WITHDRAWAL_POSTED, "transaction", str(transaction.id), actor,
            {"account_id": account_id, "owner_id": account.owner_id, "amount": value}
        )
        return transaction

    def transfer(
        self,
        actor: Actor,
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike
    ) -> Transaction:
        """
        Move funds from an account the actor may operate on to any account

        Both balance changes and both TRANSFER records commit as one unit.
        The two records share a ``transfer_id``.

        Returns:
            The receiving-side TRANSFER record

        Raises:
            InvalidAmount: If amount is not positive or malformed
            InvalidOperation: If source and destination are the same account
            NotFound: If the source is not accessible or the destination is missing
            InsufficientFunds: If the source balance at commit time is below amount
        """
        try:
            value = positive_amount(amount, self.amount_scale)
            if from_account_id == to_account_id:
                raise InvalidOperation(f"Cannot transfer from account {from_account_id} to itself")

            self.registry.resolve_account(actor, from_account_id)
            # The destination may belong to anyone
            self.storage.read_account(to_account_id)

            transfer_id = str(uuid.uuid4())

            def post() -> Transaction:
                debited, credited = self.storage.atomic_update_pair(
                    from_account_id, self._debit(from_account_id, value),
                    to_account_id, self._credit(value)
                )
                self.storage.append_transaction(self._record(
                    debited, TransactionType.TRANSFER, value,
                    f"Transfer to account {to_account_id}", transfer_id
                ))
                return self.storage.append_transaction(self._record(
                    credited, TransactionType.TRANSFER, value,
                    f"Transfer from account {from_account_id}", transfer_id
                ))

            transaction = self.storage.run_atomic(post)
        except LedgerError as e:
            self._log_rejected(actor, "transfer", from_account_id, e, to_account_id=to_account_id)
            raise

        self._log_posted(actor, "transfer", transaction, from_account_id=from_account_id)
        self._audit(
            AuditEventType.TRANSFER_POSTED, "transfer", transfer_id, actor,
            {
                "from_account_id": from_account_id,
                "to_account_id": to_account_id,
                "amount": value,
                "credit_transaction_id": transaction.id
            }
        )
        return transaction

    def list_transactions(self, actor: Actor) -> List[Transaction]:
        """Admins receive every transaction, everyone else those on their own accounts"""
        if actor.is_admin:
            candidates = self.storage.list_transactions_by_account_owner()
        else:
            candidates = self.storage.list_transactions_by_account_owner(actor.actor_id)
        return [
            transaction for transaction in candidates
            if self.access_policy.can_access(actor, transaction.owner_id)
        ]

    def get_transaction(self, actor: Actor, transaction_id: Union[int, str]) -> Transaction:
        """Get one transaction visible to the actor; NotFound otherwise"""
        try:
            lookup_id = int(transaction_id)
        except (TypeError, ValueError):
            raise NotFound(f"Transaction {transaction_id} not found")

        transaction = self.storage.find_transaction(lookup_id)
        if not self.access_policy.can_access(actor, transaction.owner_id):
            raise NotFound(f"Transaction {transaction_id} not found")
        return transaction

    def account_history(self, actor: Actor, account_id: str) -> List[Transaction]:
        """Transactions posted against one accessible account, in commit order"""
        self.registry.resolve_account(actor, account_id)
        return self.storage.list_transactions_by_account(account_id)

    @staticmethod
    def _credit(amount: Decimal) -> Callable[[Decimal], Decimal]:
        return lambda balance: exact_add(balance, amount)

    @staticmethod
    def _debit(account_id: str, amount: Decimal) -> Callable[[Decimal], Decimal]:
        def apply(balance: Decimal) -> Decimal:
            if balance < amount:
                raise InsufficientFunds(
                    f"Insufficient funds in account {account_id}: available {balance}, requested {amount}",
                    details={"account_id": account_id, "available": str(balance), "requested": str(amount)}
                )
            return exact_subtract(balance, amount)
        return apply

    @staticmethod
    def _record(
        account: Account,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str,
        transfer_id: Optional[str] = None
    ) -> Transaction:
        return Transaction(
            account_id=account.id,
            owner_id=account.owner_id,
            transaction_type=transaction_type,
            amount=amount,
            description=description,
            created_at=account.updated_at or utc_now(),
            transfer_id=transfer_id
        )

    def _log_posted(self, actor: Actor, action: str, transaction: Transaction, **extra) -> None:
        log_action(
            self.logger, "info", f"{transaction.transaction_type.value} posted",
            user_id=actor.actor_id, action=action,
            resource=f"account:{transaction.account_id}",
            extra={
                "transaction_id": transaction.id,
                "amount": format_amount(transaction.amount, self.amount_scale),
                "transfer_id": transaction.transfer_id,
                **extra
            }
        )

    def _log_rejected(self, actor: Actor, action: str, account_id: str, error: LedgerError, **extra) -> None:
        log_action(
            self.logger, "warning", f"{action} rejected: {error.message}",
            user_id=actor.actor_id, action=action, resource=f"account:{account_id}",
            extra={"kind": error.kind, **extra}
        )

    def _audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        actor: Actor,
        metadata: dict
    ) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata={**metadata, "role": actor.role},
                user_id=actor.actor_id
            )
        except Exception:
            # The posting is already committed; report it rather than fail the caller
            self.logger.exception(f"Failed to record {event_type.value} for {entity_type} {entity_id}")
