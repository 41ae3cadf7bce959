
from uuid import UUID
from decimal import Decimal
from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field, field_validator

from app.models import UserRole, LoanStatus, TransactionType, TransactionStatus

# User / Account Schemas
class UserCreate(BaseModel):
    """
    Schema for registering a user. An account is opened alongside.
    Requesting the admin role is refused unless ALLOW_ADMIN_SIGNUP is set.
    """
    name: str = Field(..., min_length=1)
    email: EmailStr
    role: UserRole = UserRole.CUSTOMER

class UserResponse(BaseModel):
    id: UUID
    name: str
    email: str
    role: UserRole

    class Config:
        from_attributes = True

class AccountResponse(BaseModel):
    """
    Account details including the current balance and running counters.
    """
    id: UUID
    owner_id: UUID
    account_number: str
    balance: Decimal
    total_transactions_count: int
    total_transactions_amount: Decimal
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class RegistrationResponse(BaseModel):
    user: UserResponse
    account: AccountResponse

class BalanceAdjustment(BaseModel):
    """
    Back-office deposit or withdrawal.
    """
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: Optional[str] = None

# Transaction Schemas
class TransactionResponse(BaseModel):
    """
    A single ledger entry.
    """
    id: UUID
    reference: str
    type: TransactionType
    status: TransactionStatus
    sender_id: UUID
    sender_account_id: Optional[UUID]
    sender_name: str
    receiver_id: Optional[UUID]
    receiver_account_id: Optional[UUID]
    receiver_name: str
    amount: Decimal
    description: str
    loan_id: Optional[UUID]
    created_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True

class TransferCreate(BaseModel):
    """
    Peer-to-peer transfer request. The receiver is addressed by email.
    """
    receiver_email: EmailStr
    amount: Decimal = Field(..., decimal_places=2)
    description: Optional[str] = ""
    idempotency_key: Optional[str] = Field(None, description="Unique key to prevent duplicate transfers")

    @field_validator('amount')
    def amount_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError('Amount must be positive')
        return v

class TransferResponse(BaseModel):
    reference: str
    new_balance: Decimal
    transaction: TransactionResponse

class TransactionPage(BaseModel):
    transactions: List[TransactionResponse]
    total: int
    page: int
    limit: int
    pages: int

# Loan Schemas
class LoanApply(BaseModel):
    amount: Decimal = Field(..., decimal_places=2)
    monthly_income: Decimal = Field(..., ge=0, decimal_places=2)
    reason: str = Field(..., min_length=1)

    @field_validator('reason')
    def reason_not_blank(cls, v):
        if not v.strip():
            raise ValueError('Please provide reason for loan')
        return v.strip()

class LoanPayment(BaseModel):
    amount: Decimal = Field(..., decimal_places=2)

class LoanReject(BaseModel):
    reason: Optional[str] = None

class LoanResponse(BaseModel):
    """
    Loan application and repayment state.
    """
    id: UUID
    borrower_id: UUID
    amount: Decimal
    monthly_income: Decimal
    reason: str
    status: LoanStatus
    interest_rate: Decimal
    term_months: int
    monthly_payment: Decimal
    total_paid_amount: Decimal
    remaining_amount: Decimal
    approved_by: Optional[UUID]
    approved_at: Optional[datetime]
    disbursed_at: Optional[datetime]
    rejection_reason: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True
