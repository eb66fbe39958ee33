"""
Ledger Data Model

Accounts and transaction records. Both are immutable snapshots: storage
backends hand out new instances on every read and every committed write.
All monetary values are Decimal and serialize as decimal strings.
"""

from dataclasses import dataclass, asdict, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .amounts import AmountLike


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(Enum):
    """Kinds of money movement"""
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    TRANSFER = "TRANSFER"


@dataclass(frozen=True)
class Account:
    """
    User-owned account holding a non-negative balance

    ``version`` increases by one with every committed balance mutation.
    """
    id: str
    owner_id: str
    balance: Decimal
    created_at: datetime
    updated_at: datetime
    version: int = 0

    def with_balance(self, balance: Decimal, at: Optional[datetime] = None) -> 'Account':
        """New snapshot carrying ``balance``, a fresh timestamp and the next version"""
        return replace(
            self,
            balance=balance,
            updated_at=at or utc_now(),
            version=self.version + 1
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['balance'] = str(self.balance)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create instance from dictionary"""
        return cls(
            id=str(data['id']),
            owner_id=str(data['owner_id']),
            balance=Decimal(str(data['balance'])),
            created_at=_parse_datetime(data['created_at']),
            updated_at=_parse_datetime(data['updated_at']),
            version=int(data.get('version', 0))
        )


@dataclass(frozen=True)
class Transaction:
    """
    Append-only record of one side of a money movement

    A transfer posts two records, one per account, sharing ``transfer_id``.
    ``id`` is assigned by the storage backend when the record is appended.
    """
    account_id: str
    owner_id: str
    transaction_type: TransactionType
    amount: Decimal
    description: str
    created_at: datetime
    transfer_id: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['transaction_type'] = self.transaction_type.value
        result['amount'] = str(self.amount)
        result['created_at'] = self.created_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        """Create instance from dictionary"""
        return cls(
            id=int(data['id']) if data.get('id') is not None else None,
            account_id=str(data['account_id']),
            owner_id=str(data['owner_id']),
            transaction_type=TransactionType(data['transaction_type']),
            amount=Decimal(str(data['amount'])),
            description=data['description'],
            created_at=_parse_datetime(data['created_at']),
            transfer_id=data.get('transfer_id')
        )


@dataclass(frozen=True)
class AccountPatch:
    """Administrative changes to an account; ``None`` leaves a field untouched"""
    balance: Optional[AmountLike] = None


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
