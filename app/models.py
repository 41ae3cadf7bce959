
import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    String,
    Enum,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    Uuid,
    CheckConstraint,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import declarative_base

from app.exceptions import LedgerImmutableError

Base = declarative_base()

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"

class LoanStatus(str, enum.Enum):
    PENDING = "pending"
    DISBURSED = "disbursed"
    REJECTED = "rejected"
    CLOSED = "closed"

class TransactionType(str, enum.Enum):
    TRANSFER = "transfer"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_PAYMENT = "loan_payment"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"

class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class User(Base):
    """
    A bank customer or back-office administrator.
    Identity only: credentials and sessions live outside this service.
    """
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    role = Column(Enum(UserRole), default=UserRole.CUSTOMER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

class Account(Base):
    """
    The single checking account owned by a user.
    The balance column is only ever changed through conditional UPDATE
    statements so concurrent debits cannot push it below zero.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, ForeignKey("users.id"), unique=True, nullable=False)
    account_number = Column(String(13), unique=True, index=True, nullable=False)
    balance = Column(Numeric(precision=12, scale=2), nullable=False, default=0)
    total_transactions_count = Column(Integer, nullable=False, default=0)
    total_transactions_amount = Column(Numeric(precision=14, scale=2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

class Loan(Base):
    """
    A loan application and, once approved, its repayment state.
    `version` is an optimistic lock: two concurrent transitions on the same
    loan cannot both commit.
    """
    __tablename__ = "loans"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    borrower_id = Column(Uuid, ForeignKey("users.id"), index=True, nullable=False)
    amount = Column(Numeric(precision=12, scale=2), nullable=False)
    monthly_income = Column(Numeric(precision=12, scale=2), nullable=False)
    reason = Column(String, nullable=False)
    status = Column(Enum(LoanStatus), default=LoanStatus.PENDING, index=True, nullable=False)
    interest_rate = Column(Numeric(precision=5, scale=2), nullable=False)
    term_months = Column(Integer, nullable=False)
    monthly_payment = Column(Numeric(precision=12, scale=2), nullable=False)
    total_paid_amount = Column(Numeric(precision=12, scale=2), nullable=False, default=0)
    remaining_amount = Column(Numeric(precision=12, scale=2), nullable=False)
    approved_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    disbursed_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

class Transaction(Base):
    """
    Ledger entry for one balance-affecting event.
    Entries are append-only: once COMPLETED they can no longer be updated.
    Loan payments are sink entries and carry no receiver.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        UniqueConstraint("sender_id", "idempotency_key", name="uq_transactions_sender_idempotency_key"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    reference = Column(String(32), unique=True, index=True, nullable=False)
    type = Column(Enum(TransactionType), nullable=False)
    status = Column(Enum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False)
    sender_id = Column(Uuid, ForeignKey("users.id"), index=True, nullable=False)
    sender_account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=True)
    sender_name = Column(String, nullable=False)
    receiver_id = Column(Uuid, ForeignKey("users.id"), index=True, nullable=True)
    receiver_account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=True)
    receiver_name = Column(String, nullable=False)
    amount = Column(Numeric(precision=12, scale=2), nullable=False)
    description = Column(String, nullable=False, default="")
    loan_id = Column(Uuid, ForeignKey("loans.id"), nullable=True)
    idempotency_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

@event.listens_for(Transaction, "before_update")
def _reject_completed_entry_updates(mapper, connection, target):
    history = inspect(target).attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous == TransactionStatus.COMPLETED:
        raise LedgerImmutableError(f"Ledger entry {target.reference} is completed and cannot change")
