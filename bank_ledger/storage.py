"""
Storage Backend Module

Storage port consumed by the account registry and the ledger engine, with
in-memory (testing), SQLite (single node persistence) and PostgreSQL
(production) implementations.

Every backend provides units of work through ``atomic()``: all balance
mutations and transaction appends executed inside one unit commit together or
not at all. Account rows touched by a unit stay locked until it ends, and
two-row updates always lock in ascending account id order.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar, Union
import itertools
import json
import sqlite3
import threading
import time

from .amounts import ZERO
from .errors import Conflict, Busy, InsufficientFunds, InvalidOperation, NotFound
from .logging_config import get_logger
from .models import Account, Transaction

T = TypeVar('T')

BalanceFn = Callable[[Decimal], Decimal]
AccountGuard = Callable[[Account], None]


class StorageContention(Exception):
    """
    A lock or write slot could not be obtained within the backend's policy.
    Internal to storage: ``run_atomic`` retries it and surfaces ``Busy``.
    """
    pass


class LedgerStorage(ABC):
    """Abstract storage port for accounts, transactions and audit events"""

    def __init__(self, max_retries: int = 3, retry_backoff: float = 0.01):
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.logger = get_logger("bank_ledger.storage")
        self._local = threading.local()

    # Units of work

    def in_atomic(self) -> bool:
        """True while the calling thread is inside a unit of work"""
        return getattr(self._local, 'depth', 0) > 0

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Context manager for atomic operations; nested use joins the outer unit"""
        depth = getattr(self._local, 'depth', 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth = depth
            return

        self._begin()
        self._local.depth = 1
        try:
            yield
            self._commit()
        except BaseException:
            self._rollback()
            raise
        finally:
            self._local.depth = 0

    def run_atomic(self, work: Callable[[], T]) -> T:
        """
        Run ``work`` as one unit of work, retrying on storage contention

        Business errors raised by ``work`` propagate immediately. Contention
        is retried ``max_retries`` times before surfacing as ``Busy``.
        Inside an enclosing unit ``work`` simply joins it and contention is
        left to the outermost caller.
        """
        if self.in_atomic():
            return work()

        attempt = 0
        while True:
            attempt += 1
            try:
                with self.atomic():
                    return work()
            except StorageContention as e:
                if attempt > self.max_retries:
                    self.logger.warning(f"Giving up after {attempt} attempts: {e}")
                    raise Busy(
                        f"Storage busy, retry later: {e}",
                        details={"attempts": attempt}
                    )
                self.logger.debug(f"Contention on attempt {attempt}, retrying: {e}")
                time.sleep(self.retry_backoff * attempt)

    @abstractmethod
    def _begin(self) -> None:
        """Start a unit of work for the calling thread"""
        pass

    @abstractmethod
    def _commit(self) -> None:
        """Make the calling thread's unit durable and release its locks"""
        pass

    @abstractmethod
    def _rollback(self) -> None:
        """Discard the calling thread's unit and release its locks"""
        pass

    # Accounts

    @abstractmethod
    def read_account(self, account_id: str) -> Account:
        """Load an account; raises NotFound"""
        pass

    @abstractmethod
    def list_accounts(self, owner_id: Optional[str] = None) -> List[Account]:
        """All accounts, or those of one owner, oldest first"""
        pass

    @abstractmethod
    def insert_account(self, account: Account) -> Account:
        """Persist a new account; raises Conflict if the id is taken"""
        pass

    @abstractmethod
    def atomic_update_balance(self, account_id: str, delta_fn: BalanceFn) -> Account:
        """
        Apply ``delta_fn(current_balance) -> new_balance`` atomically

        ``delta_fn`` runs while the row is locked and sees the committed
        balance, so checks made inside it hold at commit time.
        """
        pass

    @abstractmethod
    def atomic_update_pair(
        self,
        account_id_a: str,
        delta_fn_a: BalanceFn,
        account_id_b: str,
        delta_fn_b: BalanceFn
    ) -> Tuple[Account, Account]:
        """Same guarantee as ``atomic_update_balance`` across two rows"""
        pass

    @abstractmethod
    def delete_account(self, account_id: str, guard: Optional[AccountGuard] = None) -> None:
        """Delete an account; ``guard`` runs on the locked row and may raise to refuse"""
        pass

    # Transactions

    @abstractmethod
    def append_transaction(self, record: Transaction) -> Transaction:
        """Durably insert a record and return it with its assigned id"""
        pass

    @abstractmethod
    def list_transactions_by_account_owner(self, owner_id: Optional[str] = None) -> List[Transaction]:
        """All transactions, or those posted on one owner's accounts, in id order"""
        pass

    @abstractmethod
    def list_transactions_by_account(self, account_id: str) -> List[Transaction]:
        """Transactions posted against one account in id order"""
        pass

    @abstractmethod
    def find_transaction(self, transaction_id: int, owner_id: Optional[str] = None) -> Transaction:
        """Load a transaction, optionally scoped to an owner; raises NotFound"""
        pass

    # Audit events

    @abstractmethod
    def append_audit_event(self, event_id: str, data: Dict[str, Any]) -> None:
        """Insert an audit event; events are never updated"""
        pass

    @abstractmethod
    def list_audit_events(self) -> List[Dict[str, Any]]:
        """All audit events in insertion order"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    # Shared helpers

    def _checked_balance(self, current: Account, new_balance: Decimal) -> Account:
        """Next snapshot of ``current``; a negative balance never commits"""
        if not isinstance(new_balance, Decimal):
            raise TypeError(f"Balance must be Decimal, got {type(new_balance).__name__}")
        if new_balance < ZERO:
            raise InsufficientFunds(
                f"Account {current.id} balance cannot go below zero",
                details={"account_id": current.id, "balance": str(current.balance)}
            )
        return current.with_balance(new_balance)

    @staticmethod
    def _require_new(record: Transaction) -> None:
        if record.id is not None:
            raise InvalidOperation(f"Transaction {record.id} has already been appended")

    @staticmethod
    def _require_distinct(account_id_a: str, account_id_b: str) -> None:
        if account_id_a == account_id_b:
            raise InvalidOperation("A two-row update needs two distinct accounts")


@dataclass
class _UnitOfWork:
    """Per-thread staging area for InMemoryLedgerStorage"""
    locks: List[threading.Lock] = field(default_factory=list)
    locked_ids: List[str] = field(default_factory=list)
    accounts: Dict[str, Optional[Account]] = field(default_factory=dict)
    transactions: List[Transaction] = field(default_factory=list)
    audit_events: List[Dict[str, Any]] = field(default_factory=list)


class InMemoryLedgerStorage(LedgerStorage):
    """
    In-memory storage implementation for testing and single-process use

    Each account row has its own lock, acquired with a bounded wait. Writes
    made inside a unit are staged and published together on commit.
    """

    def __init__(self, lock_timeout: float = 5.0, **kwargs):
        super().__init__(**kwargs)
        self.lock_timeout = lock_timeout
        self._accounts: Dict[str, Account] = {}
        self._transactions: List[Transaction] = []
        self._audit_events: List[Dict[str, Any]] = []
        self._row_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.RLock()
        self._sequence = itertools.count(1)

    def _unit(self) -> _UnitOfWork:
        return self._local.unit

    def _begin(self) -> None:
        self._local.unit = _UnitOfWork()

    def _commit(self) -> None:
        unit = self._unit()
        try:
            with self._lock:
                for account_id, account in unit.accounts.items():
                    if account is None:
                        self._accounts.pop(account_id, None)
                        self._row_locks.pop(account_id, None)
                    else:
                        self._accounts[account_id] = account
                self._transactions.extend(unit.transactions)
                self._audit_events.extend(unit.audit_events)
        finally:
            self._release(unit)

    def _rollback(self) -> None:
        unit = getattr(self._local, 'unit', None)
        if unit is not None:
            self._release(unit)

    def _release(self, unit: _UnitOfWork) -> None:
        self._local.unit = None
        while unit.locks:
            unit.locks.pop().release()
        unit.locked_ids.clear()

    def _lock_rows(self, *account_ids: str) -> None:
        """Lock rows for the current unit in ascending id order"""
        unit = self._unit()
        for account_id in sorted(set(account_ids)):
            if account_id in unit.locked_ids:
                continue
            with self._lock:
                row_lock = self._row_locks.setdefault(account_id, threading.Lock())
            if not row_lock.acquire(timeout=self.lock_timeout):
                raise StorageContention(
                    f"Timed out after {self.lock_timeout}s waiting for account {account_id}"
                )
            unit.locks.append(row_lock)
            unit.locked_ids.append(account_id)

    def _current(self, account_id: str) -> Account:
        unit = getattr(self._local, 'unit', None)
        if unit is not None and account_id in unit.accounts:
            account = unit.accounts[account_id]
        else:
            with self._lock:
                account = self._accounts.get(account_id)
        if account is None:
            raise NotFound(f"Account {account_id} not found")
        return account

    def read_account(self, account_id: str) -> Account:
        return self._current(account_id)

    def list_accounts(self, owner_id: Optional[str] = None) -> List[Account]:
        with self._lock:
            accounts = dict(self._accounts)
        unit = getattr(self._local, 'unit', None)
        if unit is not None:
            for account_id, account in unit.accounts.items():
                if account is None:
                    accounts.pop(account_id, None)
                else:
                    accounts[account_id] = account

        results = [
            account for account in accounts.values()
            if owner_id is None or account.owner_id == owner_id
        ]
        results.sort(key=lambda a: (a.created_at, a.id))
        return results

    def insert_account(self, account: Account) -> Account:
        with self.atomic():
            self._lock_rows(account.id)
            try:
                self._current(account.id)
            except NotFound:
                self._unit().accounts[account.id] = account
                return account
            raise Conflict(f"Account {account.id} already exists")

    def atomic_update_balance(self, account_id: str, delta_fn: BalanceFn) -> Account:
        with self.atomic():
            self._lock_rows(account_id)
            current = self._current(account_id)
            updated = self._checked_balance(current, delta_fn(current.balance))
            self._unit().accounts[account_id] = updated
            return updated

    def atomic_update_pair(
        self,
        account_id_a: str,
        delta_fn_a: BalanceFn,
        account_id_b: str,
        delta_fn_b: BalanceFn
    ) -> Tuple[Account, Account]:
        self._require_distinct(account_id_a, account_id_b)
        with self.atomic():
            self._lock_rows(account_id_a, account_id_b)
            current_a = self._current(account_id_a)
            current_b = self._current(account_id_b)
            updated_a = self._checked_balance(current_a, delta_fn_a(current_a.balance))
            updated_b = self._checked_balance(current_b, delta_fn_b(current_b.balance))
            unit = self._unit()
            unit.accounts[account_id_a] = updated_a
            unit.accounts[account_id_b] = updated_b
            return updated_a, updated_b

    def delete_account(self, account_id: str, guard: Optional[AccountGuard] = None) -> None:
        with self.atomic():
            self._lock_rows(account_id)
            current = self._current(account_id)
            if guard:
                guard(current)
            self._unit().accounts[account_id] = None

    def append_transaction(self, record: Transaction) -> Transaction:
        self._require_new(record)
        with self.atomic():
            # Holding the row lock keeps per-account id order equal to commit order
            self._lock_rows(record.account_id)
            with self._lock:
                stored = replace(record, id=next(self._sequence))
            self._unit().transactions.append(stored)
            return stored

    def list_transactions_by_account_owner(self, owner_id: Optional[str] = None) -> List[Transaction]:
        with self._lock:
            results = [
                txn for txn in self._transactions
                if owner_id is None or txn.owner_id == owner_id
            ]
        results.sort(key=lambda t: t.id)
        return results

    def list_transactions_by_account(self, account_id: str) -> List[Transaction]:
        with self._lock:
            results = [txn for txn in self._transactions if txn.account_id == account_id]
        results.sort(key=lambda t: t.id)
        return results

    def find_transaction(self, transaction_id: int, owner_id: Optional[str] = None) -> Transaction:
        with self._lock:
            for txn in self._transactions:
                if txn.id == transaction_id and (owner_id is None or txn.owner_id == owner_id):
                    return txn
        raise NotFound(f"Transaction {transaction_id} not found")

    def append_audit_event(self, event_id: str, data: Dict[str, Any]) -> None:
        # Deep copy to prevent external mutation
        copy = json.loads(json.dumps(data, default=str))
        if self.in_atomic():
            self._unit().audit_events.append(copy)
        else:
            with self._lock:
                self._audit_events.append(copy)

    def list_audit_events(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [json.loads(json.dumps(event)) for event in self._audit_events]

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteLedgerStorage(LedgerStorage):
    """
    SQLite storage implementation for persistence

    Single-writer serialization: one connection, and every unit of work runs
    inside ``BEGIN IMMEDIATE`` while holding the connection lock. Both the
    lock and SQLite's own busy handler wait at most ``lock_timeout`` seconds.
    Balances are stored as decimal strings.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: float = 5.0, **kwargs):
        super().__init__(**kwargs)
        self.db_path = str(db_path)
        self.lock_timeout = lock_timeout
        # Autocommit mode; units issue BEGIN/COMMIT themselves
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=lock_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Ensure tables exist with proper schema"""
        with self._lock:
            self._connection.executescript("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    balance TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_accounts_owner_id ON accounts(owner_id);

                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    transaction_type TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    description TEXT NOT NULL,
                    transfer_id TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_transactions_account_id ON transactions(account_id);
                CREATE INDEX IF NOT EXISTS idx_transactions_owner_id ON transactions(owner_id);

                CREATE TRIGGER IF NOT EXISTS transactions_no_update
                BEFORE UPDATE ON transactions
                BEGIN
                    SELECT RAISE(ABORT, 'transactions are append-only');
                END;
                CREATE TRIGGER IF NOT EXISTS transactions_no_delete
                BEFORE DELETE ON transactions
                BEGIN
                    SELECT RAISE(ABORT, 'transactions are append-only');
                END;

                CREATE TABLE IF NOT EXISTS audit_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    data TEXT NOT NULL
                );
            """)

    def _execute(self, sql: str, params: Tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise StorageContention(f"SQLite busy: {e}") from e
            raise

    def _begin(self) -> None:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise StorageContention(f"Timed out after {self.lock_timeout}s waiting for the writer slot")
        try:
            self._execute("BEGIN IMMEDIATE")
        except BaseException:
            self._lock.release()
            raise
        self._local.holding = True

    def _commit(self) -> None:
        self._execute("COMMIT")
        self._end()

    def _rollback(self) -> None:
        try:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
        finally:
            self._end()

    def _end(self) -> None:
        if getattr(self._local, 'holding', False):
            self._local.holding = False
            self._lock.release()

    @contextmanager
    def _reading(self) -> Iterator[None]:
        """
        Hold the connection for a read, waiting at most ``lock_timeout``

        Reads run outside ``run_atomic``, so a timeout surfaces as ``Busy``
        directly. Inside a unit the calling thread already owns the lock.
        """
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise Busy(
                f"Timed out after {self.lock_timeout}s waiting for the database",
                details={"lock_timeout": self.lock_timeout}
            )
        try:
            yield
        finally:
            self._lock.release()

    def _select_account(self, account_id: str) -> Account:
        row = self._execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Account {account_id} not found")
        return Account.from_dict(dict(row))

    def _write_balance(self, current: Account, updated: Account) -> None:
        # Version check guards against writers outside this connection
        cursor = self._execute("""
            UPDATE accounts SET balance = ?, version = ?, updated_at = ?
            WHERE id = ? AND version = ?
        """, (
            str(updated.balance), updated.version, updated.updated_at.isoformat(),
            current.id, current.version
        ))
        if cursor.rowcount != 1:
            raise StorageContention(f"Account {current.id} changed concurrently")

    def read_account(self, account_id: str) -> Account:
        with self._reading():
            return self._select_account(account_id)

    def list_accounts(self, owner_id: Optional[str] = None) -> List[Account]:
        with self._reading():
            if owner_id is None:
                cursor = self._execute("SELECT * FROM accounts ORDER BY created_at, id")
            else:
                cursor = self._execute(
                    "SELECT * FROM accounts WHERE owner_id = ? ORDER BY created_at, id",
                    (owner_id,)
                )
            return [Account.from_dict(dict(row)) for row in cursor.fetchall()]

    def insert_account(self, account: Account) -> Account:
        data = account.to_dict()
        with self.atomic():
            try:
                self._execute("""
                    INSERT INTO accounts (id, owner_id, balance, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    data['id'], data['owner_id'], data['balance'], data['version'],
                    data['created_at'], data['updated_at']
                ))
            except sqlite3.IntegrityError as e:
                raise Conflict(f"Account {account.id} already exists") from e
        return account

    def atomic_update_balance(self, account_id: str, delta_fn: BalanceFn) -> Account:
        with self.atomic():
            current = self._select_account(account_id)
            updated = self._checked_balance(current, delta_fn(current.balance))
            self._write_balance(current, updated)
            return updated

    def atomic_update_pair(
        self,
        account_id_a: str,
        delta_fn_a: BalanceFn,
        account_id_b: str,
        delta_fn_b: BalanceFn
    ) -> Tuple[Account, Account]:
        self._require_distinct(account_id_a, account_id_b)
        with self.atomic():
            current_a = self._select_account(account_id_a)
            current_b = self._select_account(account_id_b)
            updated_a = self._checked_balance(current_a, delta_fn_a(current_a.balance))
            updated_b = self._checked_balance(current_b, delta_fn_b(current_b.balance))
            ordered = sorted([(current_a, updated_a), (current_b, updated_b)], key=lambda p: p[0].id)
            for current, updated in ordered:
                self._write_balance(current, updated)
            return updated_a, updated_b

    def delete_account(self, account_id: str, guard: Optional[AccountGuard] = None) -> None:
        with self.atomic():
            current = self._select_account(account_id)
            if guard:
                guard(current)
            self._execute(
                "DELETE FROM accounts WHERE id = ? AND version = ?",
                (account_id, current.version)
            )

    def append_transaction(self, record: Transaction) -> Transaction:
        self._require_new(record)
        data = record.to_dict()
        with self.atomic():
            cursor = self._execute("""
                INSERT INTO transactions
                    (account_id, owner_id, transaction_type, amount, description, transfer_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                data['account_id'], data['owner_id'], data['transaction_type'],
                data['amount'], data['description'], data['transfer_id'], data['created_at']
            ))
            return replace(record, id=cursor.lastrowid)

    def list_transactions_by_account_owner(self, owner_id: Optional[str] = None) -> List[Transaction]:
        with self._reading():
            if owner_id is None:
                cursor = self._execute("SELECT * FROM transactions ORDER BY id")
            else:
                cursor = self._execute(
                    "SELECT * FROM transactions WHERE owner_id = ? ORDER BY id", (owner_id,)
                )
            return [Transaction.from_dict(dict(row)) for row in cursor.fetchall()]

    def list_transactions_by_account(self, account_id: str) -> List[Transaction]:
        with self._reading():
            cursor = self._execute(
                "SELECT * FROM transactions WHERE account_id = ? ORDER BY id", (account_id,)
            )
            return [Transaction.from_dict(dict(row)) for row in cursor.fetchall()]

    def find_transaction(self, transaction_id: int, owner_id: Optional[str] = None) -> Transaction:
        with self._reading():
            row = self._execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
        if row is None or (owner_id is not None and row['owner_id'] != owner_id):
            raise NotFound(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(dict(row))

    def append_audit_event(self, event_id: str, data: Dict[str, Any]) -> None:
        with self.atomic():
            self._execute(
                "INSERT INTO audit_events (id, data) VALUES (?, ?)",
                (event_id, json.dumps(data, default=str))
            )

    def list_audit_events(self) -> List[Dict[str, Any]]:
        with self._reading():
            cursor = self._execute("SELECT data FROM audit_events ORDER BY seq")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLLedgerStorage(LedgerStorage):
    """
    PostgreSQL storage backend with row-level locking

    Each unit of work borrows a pooled connection, sets a local lock timeout
    and locks the rows it touches with ``SELECT ... FOR UPDATE`` in ascending
    id order. Lock timeouts, serialization failures and deadlocks are
    reported as contention.
    """

    CONTENTION_CODES = {
        "55P03",  # lock_not_available
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
    }

    def __init__(
        self,
        connection_string: str,
        lock_timeout: float = 5.0,
        min_connections: int = 1,
        max_connections: int = 10,
        **kwargs
    ):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        super().__init__(**kwargs)
        self.connection_string = connection_string
        self.lock_timeout = lock_timeout
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            min_connections,
            max_connections,
            connection_string,
            cursor_factory=self.extras.RealDictCursor
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Ensure tables exist with proper schema"""
        with self.atomic():
            self._execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    balance NUMERIC NOT NULL CHECK (balance >= 0),
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
            """)
            self._execute("CREATE INDEX IF NOT EXISTS idx_accounts_owner_id ON accounts(owner_id)")
            self._execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id BIGSERIAL PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    transaction_type TEXT NOT NULL,
                    amount NUMERIC NOT NULL CHECK (amount > 0),
                    description TEXT NOT NULL,
                    transfer_id TEXT,
                    created_at TIMESTAMPTZ NOT NULL
                )
            """)
            self._execute("CREATE INDEX IF NOT EXISTS idx_transactions_account_id ON transactions(account_id)")
            self._execute("CREATE INDEX IF NOT EXISTS idx_transactions_owner_id ON transactions(owner_id)")
            self._execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    seq BIGSERIAL PRIMARY KEY,
                    id TEXT NOT NULL UNIQUE,
                    data JSONB NOT NULL
                )
            """)

    def _execute(self, sql: str, params: Optional[Tuple] = None):
        cursor = self._local.connection.cursor()
        try:
            cursor.execute(sql, params)
        except self.psycopg2.Error as e:
            cursor.close()
            if getattr(e, 'pgcode', None) in self.CONTENTION_CODES:
                raise StorageContention(f"PostgreSQL contention ({e.pgcode}): {e}") from e
            raise
        return cursor

    def _begin(self) -> None:
        connection = self._pool.getconn()
        connection.autocommit = False
        self._local.connection = connection
        try:
            self._execute(
                "SET LOCAL lock_timeout = %s", (f"{int(self.lock_timeout * 1000)}ms",)
            ).close()
        except BaseException:
            self._rollback()
            raise

    def _commit(self) -> None:
        connection = self._local.connection
        try:
            connection.commit()
        except self.psycopg2.Error as e:
            if getattr(e, 'pgcode', None) in self.CONTENTION_CODES:
                raise StorageContention(f"PostgreSQL contention on commit ({e.pgcode}): {e}") from e
            raise
        self._return_connection()

    def _rollback(self) -> None:
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            return
        try:
            connection.rollback()
        finally:
            self._return_connection()

    def _return_connection(self) -> None:
        connection = getattr(self._local, 'connection', None)
        self._local.connection = None
        if connection is not None:
            self._pool.putconn(connection)

    def _fetch_one(self, sql: str, params: Tuple) -> Optional[Dict[str, Any]]:
        cursor = self._execute(sql, params)
        try:
            row = cursor.fetchone()
            return dict(row) if row else None
        finally:
            cursor.close()

    def _fetch_all(self, sql: str, params: Optional[Tuple] = None) -> List[Dict[str, Any]]:
        cursor = self._execute(sql, params)
        try:
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def _lock_accounts(self, *account_ids: str) -> Dict[str, Account]:
        rows = self._fetch_all(
            "SELECT * FROM accounts WHERE id = ANY(%s) ORDER BY id FOR UPDATE",
            (sorted(set(account_ids)),)
        )
        locked = {row['id']: Account.from_dict(row) for row in rows}
        for account_id in account_ids:
            if account_id not in locked:
                raise NotFound(f"Account {account_id} not found")
        return locked

    def _write_balance(self, updated: Account) -> None:
        self._execute("""
            UPDATE accounts SET balance = %s, version = %s, updated_at = %s
            WHERE id = %s
        """, (updated.balance, updated.version, updated.updated_at, updated.id)).close()

    def read_account(self, account_id: str) -> Account:
        with self.atomic():
            row = self._fetch_one("SELECT * FROM accounts WHERE id = %s", (account_id,))
        if row is None:
            raise NotFound(f"Account {account_id} not found")
        return Account.from_dict(row)

    def list_accounts(self, owner_id: Optional[str] = None) -> List[Account]:
        with self.atomic():
            if owner_id is None:
                rows = self._fetch_all("SELECT * FROM accounts ORDER BY created_at, id")
            else:
                rows = self._fetch_all(
                    "SELECT * FROM accounts WHERE owner_id = %s ORDER BY created_at, id",
                    (owner_id,)
                )
        return [Account.from_dict(row) for row in rows]

    def insert_account(self, account: Account) -> Account:
        with self.atomic():
            try:
                self._execute("""
                    INSERT INTO accounts (id, owner_id, balance, version, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                """, (
                    account.id, account.owner_id, account.balance, account.version,
                    account.created_at, account.updated_at
                )).close()
            except self.psycopg2.IntegrityError as e:
                raise Conflict(f"Account {account.id} already exists") from e
        return account

    def atomic_update_balance(self, account_id: str, delta_fn: BalanceFn) -> Account:
        with self.atomic():
            current = self._lock_accounts(account_id)[account_id]
            updated = self._checked_balance(current, delta_fn(current.balance))
            self._write_balance(updated)
            return updated

    def atomic_update_pair(
        self,
        account_id_a: str,
        delta_fn_a: BalanceFn,
        account_id_b: str,
        delta_fn_b: BalanceFn
    ) -> Tuple[Account, Account]:
        self._require_distinct(account_id_a, account_id_b)
        with self.atomic():
            locked = self._lock_accounts(account_id_a, account_id_b)
            current_a, current_b = locked[account_id_a], locked[account_id_b]
            updated_a = self._checked_balance(current_a, delta_fn_a(current_a.balance))
            updated_b = self._checked_balance(current_b, delta_fn_b(current_b.balance))
            for updated in sorted([updated_a, updated_b], key=lambda a: a.id):
                self._write_balance(updated)
            return updated_a, updated_b

    def delete_account(self, account_id: str, guard: Optional[AccountGuard] = None) -> None:
        with self.atomic():
            current = self._lock_accounts(account_id)[account_id]
            if guard:
                guard(current)
            self._execute("DELETE FROM accounts WHERE id = %s", (account_id,)).close()

    def append_transaction(self, record: Transaction) -> Transaction:
        self._require_new(record)
        with self.atomic():
            row = self._fetch_one("""
                INSERT INTO transactions
                    (account_id, owner_id, transaction_type, amount, description, transfer_id, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING id
            """, (
                record.account_id, record.owner_id, record.transaction_type.value,
                record.amount, record.description, record.transfer_id, record.created_at
            ))
            return replace(record, id=row['id'])

    def list_transactions_by_account_owner(self, owner_id: Optional[str] = None) -> List[Transaction]:
        with self.atomic():
            if owner_id is None:
                rows = self._fetch_all("SELECT * FROM transactions ORDER BY id")
            else:
                rows = self._fetch_all(
                    "SELECT * FROM transactions WHERE owner_id = %s ORDER BY id", (owner_id,)
                )
        return [Transaction.from_dict(row) for row in rows]

    def list_transactions_by_account(self, account_id: str) -> List[Transaction]:
        with self.atomic():
            rows = self._fetch_all(
                "SELECT * FROM transactions WHERE account_id = %s ORDER BY id", (account_id,)
            )
        return [Transaction.from_dict(row) for row in rows]

    def find_transaction(self, transaction_id: int, owner_id: Optional[str] = None) -> Transaction:
        with self.atomic():
            row = self._fetch_one("SELECT * FROM transactions WHERE id = %s", (transaction_id,))
        if row is None or (owner_id is not None and row['owner_id'] != owner_id):
            raise NotFound(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(row)

    def append_audit_event(self, event_id: str, data: Dict[str, Any]) -> None:
        with self.atomic():
            self._execute(
                "INSERT INTO audit_events (id, data) VALUES (%s, %s)",
                (event_id, json.dumps(data, default=str))
            ).close()

    def list_audit_events(self) -> List[Dict[str, Any]]:
        with self.atomic():
            rows = self._fetch_all("SELECT data FROM audit_events ORDER BY seq")
        return [dict(row['data']) for row in rows]

    def close(self) -> None:
        """Close all pooled PostgreSQL connections"""
        if self._pool:
            self._pool.closeall()
            self._pool = None


def open_storage(
    url: str,
    lock_timeout: float = 5.0,
    max_retries: int = 3,
    retry_backoff: float = 0.01
) -> LedgerStorage:
    """
    Open a storage backend from a database URL

    Supported forms: ``memory://``, ``sqlite:///path/to.db``,
    ``sqlite://:memory:`` and ``postgresql://...``.
    """
    options = {"lock_timeout": lock_timeout, "max_retries": max_retries, "retry_backoff": retry_backoff}

    if not url or url.startswith("memory://"):
        return InMemoryLedgerStorage(**options)
    if url.startswith("sqlite://"):
        path = url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteLedgerStorage(path or ":memory:", **options)
    if url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLLedgerStorage(url, **options)
    raise ValueError(f"Unsupported database URL: {url}")
