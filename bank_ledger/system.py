"""
Ledger System Wiring

Builds the storage backend, audit trail, account registry and ledger engine
from configuration.
"""

from dataclasses import dataclass
from typing import Optional

from .access import AccessPolicy
from .accounts import AccountRegistry
from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .ledger import LedgerEngine
from .logging_config import setup_logging
from .storage import LedgerStorage, open_storage


@dataclass
class LedgerSystem:
    """Fully wired ledger core"""
    config: LedgerConfig
    storage: LedgerStorage
    audit_trail: Optional[AuditTrail]
    registry: AccountRegistry
    engine: LedgerEngine

    def close(self) -> None:
        self.storage.close()


def build_ledger(
    config: Optional[LedgerConfig] = None,
    storage: Optional[LedgerStorage] = None,
    access_policy: Optional[AccessPolicy] = None
) -> LedgerSystem:
    """
    Initialize all ledger components

    Args:
        config: Settings to use; the global configuration when omitted
        storage: Pre-built backend; opened from ``config.database_url`` when omitted
        access_policy: Capability check; ownership-based when omitted
    """
    config = config or get_config()
    setup_logging(config.log_level, config.log_format)

    if storage is None:
        storage = open_storage(
            config.database_url,
            lock_timeout=config.lock_timeout_seconds,
            max_retries=config.max_conflict_retries,
            retry_backoff=config.retry_backoff_seconds
        )

    audit_trail = AuditTrail(storage) if config.enable_audit_logging else None
    registry = AccountRegistry(
        storage,
        audit_trail=audit_trail,
        access_policy=access_policy,
        amount_scale=config.amount_scale,
        allow_owner_balance_edits=config.allow_owner_balance_edits
    )
    engine = LedgerEngine(storage, registry, audit_trail=audit_trail, amount_scale=config.amount_scale)

    return LedgerSystem(
        config=config,
        storage=storage,
        audit_trail=audit_trail,
        registry=registry,
        engine=engine
    )
