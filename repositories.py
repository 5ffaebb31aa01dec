from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
import sqlite3

from starlette.concurrency import run_in_threadpool

from errors import DuplicateDocumentNumber, PersistenceFailure
from models import Account, NewTransaction, OperationType, OperationTypeRecord, Transaction
from storage import Database

# Bounds of an SQLite INTEGER; larger Python ints overflow the driver
SQLITE_MAX_INTEGER = 2 ** 63 - 1
SQLITE_MIN_INTEGER = -(2 ** 63)


class AccountRepository(ABC):
    @abstractmethod
    async def find_by_id(self, account_id: int) -> Optional[Account]:
        """Get account by id. Returns None if it doesn't exist."""
        pass

    @abstractmethod
    async def find_by_document_number(self, document_number: str) -> Optional[Account]:
        """Get account by document number. Returns None if it doesn't exist."""
        pass

    @abstractmethod
    async def create(self, document_number: str, created_at: datetime) -> Account:
        """Create account. Raises DuplicateDocumentNumber if the document is taken."""
        pass


class OperationTypeRepository(ABC):
    @abstractmethod
    async def find_by_id(self, operation_type_id: int) -> Optional[OperationTypeRecord]:
        """Get operation type by id. Returns None if it doesn't exist."""
        pass


class TransactionRepository(ABC):
    @abstractmethod
    async def create(self, transaction: NewTransaction) -> Transaction:
        """Persist transaction and return it with its assigned id."""
        pass

    @abstractmethod
    async def find_by_account_paginated(
        self, account_id: int, limit: int, offset: int
    ) -> Tuple[List[Transaction], int]:
        """Get one page of an account's transactions, newest first, plus the total count."""
        pass


def _account_from_row(row: sqlite3.Row) -> Account:
    return Account(
        account_id=row["id"],
        document_number=row["document_number"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _transaction_from_row(row: sqlite3.Row) -> Transaction:
    return Transaction(
        transaction_id=row["id"],
        account_id=row["account_id"],
        operation_type_id=row["operation_type_id"],
        amount=Decimal(row["amount"]),
        event_date=datetime.fromisoformat(row["event_date"]),
    )


def _fits_integer_column(value: int) -> bool:
    return SQLITE_MIN_INTEGER <= value <= SQLITE_MAX_INTEGER


class SQLiteAccountRepository(AccountRepository):
    """Account storage. Queries run in the threadpool, off the event loop."""

    def __init__(self, db: Database):
        self.db = db

    async def find_by_id(self, account_id: int) -> Optional[Account]:
        if not _fits_integer_column(account_id):
            return None
        return await run_in_threadpool(self._find_by_id, account_id)

    def _find_by_id(self, account_id: int) -> Optional[Account]:
        try:
            with self.db.session() as conn:
                row = conn.execute(
                    "SELECT id, document_number, created_at FROM accounts WHERE id = ?",
                    (account_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailure("find account") from exc
        return _account_from_row(row) if row else None

    async def find_by_document_number(self, document_number: str) -> Optional[Account]:
        return await run_in_threadpool(self._find_by_document_number, document_number)

    def _find_by_document_number(self, document_number: str) -> Optional[Account]:
        try:
            with self.db.session() as conn:
                row = conn.execute(
                    "SELECT id, document_number, created_at FROM accounts WHERE document_number = ?",
                    (document_number,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailure("find account by document") from exc
        return _account_from_row(row) if row else None

    async def create(self, document_number: str, created_at: datetime) -> Account:
        return await run_in_threadpool(self._create, document_number, created_at)

    def _create(self, document_number: str, created_at: datetime) -> Account:
        try:
            with self.db.session() as conn:
                cursor = conn.execute(
                    "INSERT INTO accounts (document_number, created_at) VALUES (?, ?)",
                    (document_number, created_at.isoformat(timespec="microseconds")),
                )
                row = conn.execute(
                    "SELECT id, document_number, created_at FROM accounts WHERE id = ?",
                    (cursor.lastrowid,),
                ).fetchone()
        except sqlite3.IntegrityError as exc:
            raise DuplicateDocumentNumber() from exc
        except sqlite3.Error as exc:
            raise PersistenceFailure("create account") from exc
        return _account_from_row(row)


class SQLiteOperationTypeRepository(OperationTypeRepository):
    def __init__(self, db: Database):
        self.db = db

    async def find_by_id(self, operation_type_id: int) -> Optional[OperationTypeRecord]:
        if not _fits_integer_column(operation_type_id):
            return None
        return await run_in_threadpool(self._find_by_id, operation_type_id)

    def _find_by_id(self, operation_type_id: int) -> Optional[OperationTypeRecord]:
        try:
            with self.db.session() as conn:
                row = conn.execute(
                    "SELECT id, description FROM operation_types WHERE id = ?",
                    (operation_type_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailure("find operation type") from exc
        if row is None:
            return None
        return OperationTypeRecord(operation_type_id=row["id"], description=row["description"])

    def seed(self) -> None:
        """Insert the known operation types if missing. Runs once at startup."""
        try:
            with self.db.session() as conn:
                conn.executemany(
                    "INSERT OR IGNORE INTO operation_types (id, description) VALUES (?, ?)",
                    [(op.value, op.description) for op in OperationType],
                )
        except sqlite3.Error as exc:
            raise PersistenceFailure("seed operation types") from exc


class SQLiteTransactionRepository(TransactionRepository):
    def __init__(self, db: Database):
        self.db = db

    async def create(self, transaction: NewTransaction) -> Transaction:
        return await run_in_threadpool(self._create, transaction)

    def _create(self, transaction: NewTransaction) -> Transaction:
        try:
            with self.db.session() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO transactions (account_id, operation_type_id, amount, event_date)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        transaction.account_id,
                        transaction.operation_type_id,
                        str(transaction.amount),
                        transaction.event_date.isoformat(timespec="microseconds"),
                    ),
                )
                row = conn.execute(
                    "SELECT id, account_id, operation_type_id, amount, event_date FROM transactions WHERE id = ?",
                    (cursor.lastrowid,),
                ).fetchone()
        except (sqlite3.Error, OverflowError) as exc:
            raise PersistenceFailure("create transaction") from exc
        return _transaction_from_row(row)

    async def find_by_account_paginated(
        self, account_id: int, limit: int, offset: int
    ) -> Tuple[List[Transaction], int]:
        if not _fits_integer_column(account_id):
            return [], 0
        # An offset past the largest row id can only select an empty page
        offset = min(offset, SQLITE_MAX_INTEGER)
        return await run_in_threadpool(self._find_by_account_paginated, account_id, limit, offset)

    def _find_by_account_paginated(
        self, account_id: int, limit: int, offset: int
    ) -> Tuple[List[Transaction], int]:
        try:
            with self.db.session() as conn:
                rows = conn.execute(
                    """
                    SELECT id, account_id, operation_type_id, amount, event_date
                    FROM transactions
                    WHERE account_id = ?
                    ORDER BY event_date DESC, id DESC
                    LIMIT ? OFFSET ?
                    """,
                    (account_id, limit, offset),
                ).fetchall()
                total = conn.execute(
                    "SELECT COUNT(*) FROM transactions WHERE account_id = ?",
                    (account_id,),
                ).fetchone()[0]
        except sqlite3.Error as exc:
            raise PersistenceFailure("list transactions") from exc
        return [_transaction_from_row(row) for row in rows], total
