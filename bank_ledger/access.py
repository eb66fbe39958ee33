"""
Access Policy Module

Caller identity, roles and the capability check that decides which accounts a
caller may operate on. The registry and the ledger engine receive the policy
as a dependency so authorization rules can change without touching ledger
logic.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class Role(Enum):
    """Caller roles"""
    ADMIN = "admin"        # May operate on every account
    CUSTOMER = "customer"  # May operate on own accounts only


@dataclass(frozen=True)
class Actor:
    """Already-authenticated caller identity"""
    actor_id: str
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def admin(cls, actor_id: str) -> 'Actor':
        return cls(actor_id=actor_id, role=Role.ADMIN)

    @classmethod
    def customer(cls, actor_id: str) -> 'Actor':
        return cls(actor_id=actor_id, role=Role.CUSTOMER)


class AccessPolicy(ABC):
    """Capability check consulted once per resolved account"""

    @abstractmethod
    def can_access(self, actor: Actor, owner_id: str) -> bool:
        """Return True if ``actor`` may operate on an account owned by ``owner_id``"""
        pass


class OwnershipPolicy(AccessPolicy):
    """Admins see everything; everyone else sees what they own"""

    def can_access(self, actor: Actor, owner_id: str) -> bool:
        return actor.is_admin or actor.actor_id == owner_id
