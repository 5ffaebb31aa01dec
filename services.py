import math
from datetime import datetime
from zoneinfo import ZoneInfo
from decimal import Decimal
import structlog

from errors import (
    AccountNotFound,
    DuplicateDocumentNumber,
    InvalidAccountID,
    InvalidOperationType,
    InvalidPagination,
    ZeroAmount,
)
from models import (
    Account,
    EntryKind,
    NewTransaction,
    OperationType,
    PaginationMetadata,
    Transaction,
    TransactionPage,
    TransactionRequest,
)
from repositories import AccountRepository, OperationTypeRepository, TransactionRepository

logger = structlog.get_logger()

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100


def validate_account_id(account_id: int) -> None:
    if account_id <= 0:
        raise InvalidAccountID()


def validate_transaction_request(request: TransactionRequest) -> OperationType:
    """Run the checks that need no storage round-trip; first failure wins."""
    validate_account_id(request.account_id)

    try:
        operation_type = OperationType(request.operation_type_id)
    except ValueError:
        raise InvalidOperationType() from None

    if request.amount == 0:
        raise ZeroAmount()

    return operation_type


def normalize_amount(amount: Decimal, operation_type: OperationType) -> Decimal:
    """Return the amount signed by the operation type; the client's sign is ignored."""
    magnitude = abs(amount)
    if operation_type.kind == EntryKind.debit:
        return -magnitude
    return magnitude


def count_pages(total: int, limit: int) -> int:
    return max(1, math.ceil(total / limit))


class AccountService:
    def __init__(self, account_repo: AccountRepository, timezone: str = "UTC"):
        self.account_repo = account_repo
        self.timezone = ZoneInfo(timezone)

    async def create_account(self, document_number: str) -> Account:
        existing = await self.account_repo.find_by_document_number(document_number)
        if existing is not None:
            logger.warning(
                "Duplicate document number",
                account_id=existing.account_id,
            )
            raise DuplicateDocumentNumber()

        account = await self.account_repo.create(document_number, datetime.now(self.timezone))

        logger.info("Account created", account_id=account.account_id)
        return account

    async def get_account(self, account_id: int) -> Account:
        validate_account_id(account_id)

        account = await self.account_repo.find_by_id(account_id)
        if account is None:
            logger.warning("Account not found", account_id=account_id)
            raise AccountNotFound(account_id)
        return account


class TransactionService:
    def __init__(
        self,
        transaction_repo: TransactionRepository,
        account_repo: AccountRepository,
        operation_type_repo: OperationTypeRepository,
        timezone: str = "UTC",
    ):
        self.transaction_repo = transaction_repo
        self.account_repo = account_repo
        self.operation_type_repo = operation_type_repo
        self.timezone = ZoneInfo(timezone)

    async def create_transaction(self, request: TransactionRequest) -> Transaction:
        """Validate, normalize and persist a transaction."""

        logger.info(
            "Processing transaction",
            account_id=request.account_id,
            operation_type_id=request.operation_type_id,
            amount=str(request.amount),
        )

        operation_type = validate_transaction_request(request)

        account = await self.account_repo.find_by_id(request.account_id)
        if account is None:
            logger.warning("Account not found", account_id=request.account_id)
            raise AccountNotFound(request.account_id)

        if await self.operation_type_repo.find_by_id(operation_type.value) is None:
            logger.error(
                "Operation type missing from storage",
                operation_type_id=operation_type.value,
            )
            raise InvalidOperationType()

        amount = normalize_amount(request.amount, operation_type)

        transaction = await self.transaction_repo.create(
            NewTransaction(
                account_id=request.account_id,
                operation_type_id=operation_type.value,
                amount=amount,
                event_date=datetime.now(self.timezone),
            )
        )

        logger.info(
            "Transaction processed successfully",
            transaction_id=transaction.transaction_id,
            account_id=transaction.account_id,
            kind=operation_type.kind.value,
            amount=str(transaction.amount),
        )

        return transaction

    async def list_transactions(
        self,
        account_id: int,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> TransactionPage:
        validate_account_id(account_id)
        if limit < 1 or limit > MAX_PAGE_LIMIT:
            raise InvalidPagination(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
        if offset < 0:
            raise InvalidPagination("offset must be greater than or equal to 0")

        if await self.account_repo.find_by_id(account_id) is None:
            logger.warning("Account not found", account_id=account_id)
            raise AccountNotFound(account_id)

        transactions, total = await self.transaction_repo.find_by_account_paginated(
            account_id, limit, offset
        )

        logger.debug(
            "Transactions listed",
            account_id=account_id,
            returned=len(transactions),
            total=total,
        )

        return TransactionPage(
            transactions=transactions,
            pagination=PaginationMetadata(
                total=total,
                limit=limit,
                offset=offset,
                pages=count_pages(total, limit),
            ),
        )
