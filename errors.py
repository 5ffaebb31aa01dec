"""Typed failures raised by the services and mapped to HTTP responses in main."""

from typing import Optional


class BankingError(Exception):
    """Base class for every failure the API reports to clients."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


# 400
class ValidationError(BankingError):
    status_code = 400
    error_code = "VALIDATION_ERROR"
    message = "Invalid request"


class InvalidAccountID(ValidationError):
    error_code = "INVALID_ACCOUNT_ID"
    message = "account_id must be greater than 0"


class InvalidOperationType(ValidationError):
    error_code = "INVALID_OPERATION_TYPE"
    message = "operation_type_id must be between 1 and 4"


class ZeroAmount(ValidationError):
    error_code = "ZERO_AMOUNT"
    message = "amount cannot be zero"


class InvalidPagination(ValidationError):
    error_code = "INVALID_PAGINATION"
    message = "Invalid pagination parameters"


class MissingIdempotencyKey(ValidationError):
    error_code = "MISSING_IDEMPOTENCY_KEY"
    message = "Idempotency-Key header is required"


# 404
class NotFoundError(BankingError):
    status_code = 404
    error_code = "NOT_FOUND"
    message = "Resource not found"


class AccountNotFound(NotFoundError):
    error_code = "ACCOUNT_NOT_FOUND"
    message = "Account not found"

    def __init__(self, account_id: int):
        self.account_id = account_id
        super().__init__(f"account with id {account_id} not found")


# 409
class ConflictError(BankingError):
    status_code = 409
    error_code = "CONFLICT"
    message = "Conflict"


class DuplicateDocumentNumber(ConflictError):
    error_code = "DUPLICATE_DOCUMENT_NUMBER"
    message = "account with this document number already exists"


class IdempotencyKeyInUse(ConflictError):
    error_code = "IDEMPOTENCY_KEY_IN_USE"
    message = "A request with this Idempotency-Key is still being processed"


# 500
class PersistenceFailure(BankingError):
    """Storage failure. The message is generic; the driver error is chained."""

    status_code = 500
    error_code = "PERSISTENCE_FAILURE"
    message = "Internal server error"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__()
