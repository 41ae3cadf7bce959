
import math
from datetime import datetime
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.db.session import get_db
from app.models import User, TransactionStatus, TransactionType
from app.schemas import (
    AccountResponse,
    BalanceAdjustment,
    LoanApply,
    LoanPayment,
    LoanReject,
    LoanResponse,
    RegistrationResponse,
    TransactionPage,
    TransactionResponse,
    TransferCreate,
    TransferResponse,
    UserCreate,
)
from app.services.accounts import AccountService
from app.services.ledger import LedgerFilter, LedgerRecorder
from app.services.loans import LoanLifecycle
from app.services.transfers import TransferEngine

router = APIRouter()

# Users & accounts

@router.post("/users", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def register_user(user_in: UserCreate, db: AsyncSession = Depends(get_db)):
    service = AccountService(db)
    user, account = await service.sign_up(user_in.name, user_in.email, user_in.role)
    return {"user": user, "account": account}

@router.get("/account", response_model=AccountResponse)
async def get_my_account(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await AccountService(db).get_account(user.id)

@router.get("/account/statement", response_model=List[TransactionResponse])
async def get_statement(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LedgerRecorder(db).statement(user.id, start_date, end_date)

@router.post("/accounts/{owner_id}/deposits", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def create_deposit(
    owner_id: UUID,
    adjustment: BalanceAdjustment,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AccountService(db).deposit(user, owner_id, adjustment.amount, adjustment.description)

@router.post("/accounts/{owner_id}/withdrawals", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def create_withdrawal(
    owner_id: UUID,
    adjustment: BalanceAdjustment,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AccountService(db).withdraw(user, owner_id, adjustment.amount, adjustment.description)

# Transfers & ledger

@router.post("/transfers", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
async def create_transfer(
    transfer: TransferCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await TransferEngine(db).transfer(
        user,
        transfer.receiver_email,
        transfer.amount,
        transfer.description,
        transfer.idempotency_key,
    )
    return {"reference": result.reference, "new_balance": result.new_balance, "transaction": result.transaction}

@router.get("/transactions", response_model=TransactionPage)
async def get_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[TransactionStatus] = None,
    type: Optional[TransactionType] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    ledger_filter = LedgerFilter(
        participant_id=user.id,
        status=status,
        type=type,
        start_date=start_date,
        end_date=end_date,
    )
    items, total = await LedgerRecorder(db).query(ledger_filter, page=page, limit=limit)
    return {
        "transactions": items,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit),
    }

@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LedgerRecorder(db).get(transaction_id, user)

# Loans

@router.post("/loans", response_model=LoanResponse, status_code=status.HTTP_201_CREATED)
async def apply_loan(loan_in: LoanApply, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await LoanLifecycle(db).apply(user, loan_in.amount, loan_in.monthly_income, loan_in.reason)

@router.get("/loans", response_model=List[LoanResponse])
async def get_my_loans(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await LoanLifecycle(db).list_loans(user)

@router.get("/loans/{loan_id}", response_model=LoanResponse)
async def get_loan(loan_id: UUID, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await LoanLifecycle(db).get_loan(loan_id, user)

@router.post("/loans/{loan_id}/payments", response_model=LoanResponse)
async def pay_loan(
    loan_id: UUID,
    payment: LoanPayment,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LoanLifecycle(db).pay(loan_id, user, payment.amount)

@router.post("/admin/loans/{loan_id}/approve", response_model=LoanResponse)
async def approve_loan(loan_id: UUID, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await LoanLifecycle(db).approve(loan_id, user)

@router.post("/admin/loans/{loan_id}/reject", response_model=LoanResponse)
async def reject_loan(
    loan_id: UUID,
    rejection: LoanReject,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LoanLifecycle(db).reject(loan_id, user, rejection.reason)
