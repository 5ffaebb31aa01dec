from pydantic import BaseModel, Field, field_serializer, field_validator
from enum import Enum, IntEnum
from typing import List
from datetime import datetime
from decimal import Decimal
import re


class EntryKind(str, Enum):
    debit = "debit"
    credit = "credit"


class OperationType(IntEnum):
    PURCHASE = 1
    PURCHASE_WITH_INSTALLMENTS = 2
    WITHDRAWAL = 3
    CREDIT_VOUCHER = 4

    @property
    def kind(self) -> EntryKind:
        if self is OperationType.CREDIT_VOUCHER:
            return EntryKind.credit
        return EntryKind.debit

    @property
    def description(self) -> str:
        return _OPERATION_DESCRIPTIONS[self]


_OPERATION_DESCRIPTIONS = {
    OperationType.PURCHASE: "Normal Purchase",
    OperationType.PURCHASE_WITH_INSTALLMENTS: "Purchase with installments",
    OperationType.WITHDRAWAL: "Withdrawal",
    OperationType.CREDIT_VOUCHER: "Credit Voucher",
}


class CreateAccountRequest(BaseModel):
    document_number: str = Field(..., description="Customer document number (11 to 14 digits)")

    @field_validator('document_number')
    @classmethod
    def validate_document_number(cls, v):
        if not v:
            raise ValueError('document_number is required')
        if len(v) < 11 or len(v) > 14:
            raise ValueError('document_number must have between 11 and 14 characters')
        if not re.fullmatch(r'[0-9]+', v):
            raise ValueError('document_number must contain only digits')
        return v


class Account(BaseModel):
    account_id: int = Field(..., description="Account identifier")
    document_number: str = Field(..., description="Customer document number")
    created_at: datetime = Field(..., description="Account creation timestamp")


class OperationTypeRecord(BaseModel):
    operation_type_id: int
    description: str


class TransactionRequest(BaseModel):
    # Range checks live in services.validate_transaction_request so the
    # first failing rule decides the error code.
    account_id: int = Field(..., description="Account identifier")
    operation_type_id: int = Field(..., description="Operation type (1-4)")
    amount: Decimal = Field(..., description="Amount; the sign is derived from the operation type")


class NewTransaction(BaseModel):
    account_id: int
    operation_type_id: int
    amount: Decimal
    event_date: datetime


class Transaction(BaseModel):
    transaction_id: int = Field(..., description="Unique transaction identifier")
    account_id: int = Field(..., description="Account identifier")
    operation_type_id: int = Field(..., description="Operation type")
    amount: Decimal = Field(..., description="Signed amount: negative for debits, positive for credits")
    event_date: datetime = Field(..., description="Transaction timestamp")

    @field_serializer('amount')
    def serialize_amount(self, v: Decimal) -> float:
        return float(v)


class PaginationMetadata(BaseModel):
    total: int
    limit: int
    offset: int
    pages: int


class TransactionPage(BaseModel):
    transactions: List[Transaction]
    pagination: PaginationMetadata


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
