"""
Account Registry Module

Manages account lifecycle: creation, retrieval, administrative balance
corrections and deletion. Visibility follows the injected access policy;
accounts the caller may not access are reported exactly like missing ones.
"""

from decimal import Decimal
from typing import List, Optional
import uuid

from .access import AccessPolicy, Actor, OwnershipPolicy
from .amounts import AmountLike, DEFAULT_SCALE, ZERO, format_amount, non_negative_amount
from .audit import AuditTrail, AuditEventType
from .errors import Conflict, Forbidden, LedgerError, NotFound
from .logging_config import get_logger, log_action
from .models import Account, AccountPatch, utc_now
from .storage import LedgerStorage


class AccountRegistry:
    """
    Owns account lifecycle and ownership-based visibility
    """

    def __init__(
        self,
        storage: LedgerStorage,
        audit_trail: Optional[AuditTrail] = None,
        access_policy: Optional[AccessPolicy] = None,
        amount_scale: int = DEFAULT_SCALE,
        allow_owner_balance_edits: bool = True
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.access_policy = access_policy or OwnershipPolicy()
        self.amount_scale = amount_scale
        self.allow_owner_balance_edits = allow_owner_balance_edits
        self.logger = get_logger("bank_ledger.accounts")

    def resolve_account(self, actor: Actor, account_id: str) -> Account:
        """
        Load an account the actor may operate on

        Raises:
            NotFound: If the account is missing or the policy denies access
        """
        try:
            account = self.storage.read_account(account_id)
        except NotFound:
            account = None
        if account is None or not self.access_policy.can_access(actor, account.owner_id):
            raise NotFound(f"Account {account_id} not found")
        return account

    def create_account(self, owner_id: str, initial_balance: AmountLike = ZERO) -> Account:
        """
        Create a new account

        Args:
            owner_id: ID of the owning user
            initial_balance: Opening balance, zero or greater

        Returns:
            Created Account

        Raises:
            InvalidAmount: If the initial balance is negative or malformed
        """
        try:
            balance = non_negative_amount(initial_balance, self.amount_scale)
            now = utc_now()
            account = Account(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                balance=balance,
                created_at=now,
                updated_at=now
            )
            self.storage.run_atomic(lambda: self.storage.insert_account(account))
        except LedgerError as e:
            self._log_rejected(owner_id, "create_account", None, e)
            raise

        log_action(
            self.logger, "info", "Account created",
            user_id=owner_id, action="create_account", resource=f"account:{account.id}",
            extra={"initial_balance": format_amount(balance, self.amount_scale)}
        )
        self._audit(
            AuditEventType.ACCOUNT_CREATED, account.id, owner_id,
            {"owner_id": owner_id, "initial_balance": balance}
        )
        return account

    def get_account(self, actor: Actor, account_id: str) -> Account:
        """Get an account visible to the actor; NotFound otherwise"""
        return self.resolve_account(actor, account_id)

    def list_accounts(self, actor: Actor) -> List[Account]:
        """Admins receive every account, everyone else only their own"""
        if actor.is_admin:
            candidates = self.storage.list_accounts()
        else:
            candidates = self.storage.list_accounts(owner_id=actor.actor_id)
        return [
            account for account in candidates
            if self.access_policy.can_access(actor, account.owner_id)
        ]

    def update_account(self, actor: Actor, account_id: str, patch: AccountPatch) -> Account:
        """
        Apply an administrative correction to an account

        Raises:
            InvalidAmount: If the new balance is negative or malformed
            NotFound: If the account is not accessible to the actor
            Forbidden: If owner balance edits are disabled and the actor is not an admin
        """
        try:
            new_balance: Optional[Decimal] = None
            if patch.balance is not None:
                new_balance = non_negative_amount(patch.balance, self.amount_scale)

            account = self.resolve_account(actor, account_id)
            if new_balance is None:
                return account

            if not actor.is_admin and not self.allow_owner_balance_edits:
                raise Forbidden(f"Balance corrections on account {account_id} require an admin")

            previous = []

            def correct(balance: Decimal) -> Decimal:
                previous.append(balance)
                return new_balance

            updated = self.storage.run_atomic(
                lambda: self.storage.atomic_update_balance(account_id, correct)
            )
        except LedgerError as e:
            self._log_rejected(actor.actor_id, "update_account", account_id, e)
            raise

        log_action(
            self.logger, "info", "Account balance corrected",
            user_id=actor.actor_id, action="update_account", resource=f"account:{account_id}",
            extra={
                "previous_balance": format_amount(previous[-1], self.amount_scale),
                "balance": format_amount(updated.balance, self.amount_scale)
            }
        )
        self._audit(
            AuditEventType.ACCOUNT_UPDATED, account_id, actor.actor_id,
            {"previous_balance": previous[-1], "balance": updated.balance, "role": actor.role}
        )
        return updated

    def delete_account(self, actor: Actor, account_id: str) -> None:
        """
        Delete an account whose balance is zero

        Raises:
            NotFound: If the account is not accessible to the actor
            Conflict: If the balance is not zero at deletion time
        """
        try:
            self.resolve_account(actor, account_id)
            self.storage.run_atomic(
                lambda: self.storage.delete_account(account_id, guard=self._require_zero_balance)
            )
        except LedgerError as e:
            self._log_rejected(actor.actor_id, "delete_account", account_id, e)
            raise

        log_action(
            self.logger, "info", "Account deleted",
            user_id=actor.actor_id, action="delete_account", resource=f"account:{account_id}"
        )
        self._audit(AuditEventType.ACCOUNT_DELETED, account_id, actor.actor_id, {"role": actor.role})

    @staticmethod
    def _require_zero_balance(account: Account) -> None:
        if account.balance != ZERO:
            raise Conflict(
                f"Cannot delete account {account.id} with non-zero balance {account.balance}",
                details={"account_id": account.id, "balance": str(account.balance)}
            )

    def _log_rejected(self, user_id: str, action: str, account_id: Optional[str], error: LedgerError) -> None:
        log_action(
            self.logger, "warning", f"{action} rejected: {error.message}",
            user_id=user_id, action=action,
            resource=f"account:{account_id}" if account_id else None,
            extra={"kind": error.kind}
        )

    def _audit(self, event_type: AuditEventType, account_id: str, user_id: str, metadata: dict) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="account",
                entity_id=account_id,
                metadata=metadata,
                user_id=user_id
            )
        except Exception:
            # The change is already committed; report it rather than fail the caller
            self.logger.exception(f"Failed to record {event_type.value} for account {account_id}")
