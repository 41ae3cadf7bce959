import logging
from decimal import Decimal
from typing import List
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings as default_settings
from app.core.money import to_money, monthly_payment
from app.core.permissions import can_manage_loans, can_pay_loan, can_view_loan
from app.db.unit_of_work import unit_of_work
from app.exceptions import (
    DuplicatePendingError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransitionError,
    LoanNotFoundError,
    UnauthorizedError,
)
from app.models import Loan, LoanStatus, TransactionType, User, utcnow
from app.services.accounts import AccountService, credit, debit
from app.services.ledger import LedgerRecorder, Party

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "Application rejected by admin"

class LoanLifecycle:
    """
    State machine for a loan:

        pending -> disbursed -> closed
        pending -> rejected

    Every transition runs in one unit of work. A transition that is refused
    raises before anything is written, and concurrent transitions on the same
    loan are caught by the row version and surface as ConflictError.
    """

    def __init__(self, db: AsyncSession, settings=None):
        self.db = db
        self.settings = settings or default_settings
        self.accounts = AccountService(db, self.settings)
        self.ledger = LedgerRecorder(db, self.settings)

    async def _load(self, loan_id: UUID) -> Loan:
        query = select(Loan).where(Loan.id == loan_id).execution_options(populate_existing=True)
        loan = (await self.db.execute(query)).scalar_one_or_none()
        if not loan:
            logger.warning(f"Loan lookup failed: {loan_id}")
            raise LoanNotFoundError()
        return loan

    async def find_pending(self, borrower_id: UUID):
        query = select(Loan).where(Loan.borrower_id == borrower_id, Loan.status == LoanStatus.PENDING)
        return (await self.db.execute(query)).scalars().first()

    async def apply(self, borrower: User, amount, monthly_income, reason: str) -> Loan:
        amount = to_money(amount)
        monthly_income = to_money(monthly_income)
        if amount < self.settings.LOAN_MIN_AMOUNT or amount > self.settings.LOAN_MAX_AMOUNT:
            raise InvalidAmountError(
                f"Loan amount must be between {self.settings.LOAN_MIN_AMOUNT} and {self.settings.LOAN_MAX_AMOUNT}"
            )
        if monthly_income < self.settings.LOAN_MIN_MONTHLY_INCOME:
            raise InvalidAmountError(f"Monthly income must be at least {self.settings.LOAN_MIN_MONTHLY_INCOME}")

        rate = Decimal(self.settings.LOAN_ANNUAL_INTEREST_RATE)
        term = self.settings.LOAN_TERM_MONTHS
        async with unit_of_work(self.db):
            if await self.find_pending(borrower.id):
                raise DuplicatePendingError()
            await self.accounts.get_account(borrower.id)

            loan = Loan(
                borrower_id=borrower.id,
                amount=amount,
                monthly_income=monthly_income,
                reason=reason,
                status=LoanStatus.PENDING,
                interest_rate=rate,
                term_months=term,
                monthly_payment=monthly_payment(amount, rate, term),
                total_paid_amount=Decimal("0.00"),
                remaining_amount=amount,
            )
            self.db.add(loan)
        logger.info(f"Loan application {loan.id} submitted by {borrower.email}: {amount} over {term} months")
        return loan

    async def approve(self, loan_id: UUID, approver: User) -> Loan:
        """
        Approves a pending loan and disburses the principal into the
        borrower's account, recording a LOAN_DISBURSEMENT entry.
        """
        if not can_manage_loans(approver):
            raise UnauthorizedError("Only administrators can approve loans")

        async with unit_of_work(self.db):
            loan = await self._load(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidTransitionError(f"Loan is {loan.status.value}, only pending loans can be approved")

            borrower = await self.accounts.get_user(loan.borrower_id)
            account = await self.accounts.get_account(loan.borrower_id)

            now = utcnow()
            loan.status = LoanStatus.DISBURSED
            loan.approved_by = approver.id
            loan.approved_at = now
            loan.disbursed_at = now
            loan.remaining_amount = loan.amount
            await self.db.flush()

            amount = to_money(loan.amount)
            entry = await self.ledger.record(
                TransactionType.LOAN_DISBURSEMENT,
                amount,
                sender=Party(approver),
                receiver=Party(borrower, account),
                description=f"Loan disbursement of {amount}",
                loan_id=loan.id,
            )
            await credit(self.db, account.id, amount)
            await self.ledger.complete(entry)
        logger.info(f"Loan {loan.id} approved by {approver.email}, disbursed {amount} (TX: {entry.reference})")
        return loan

    async def reject(self, loan_id: UUID, approver: User, reason: str = None) -> Loan:
        if not can_manage_loans(approver):
            raise UnauthorizedError("Only administrators can reject loans")

        async with unit_of_work(self.db):
            loan = await self._load(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidTransitionError(f"Loan is {loan.status.value}, only pending loans can be rejected")
            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason or DEFAULT_REJECTION_REASON
            loan.approved_at = utcnow()
            await self.db.flush()
        logger.info(f"Loan {loan.id} rejected by {approver.email}: {loan.rejection_reason}")
        return loan

    async def pay(self, loan_id: UUID, payer: User, amount) -> Loan:
        """
        Repays part or all of a disbursed loan from the payer's balance.
        A payment above the remaining amount is capped at it, so only what is
        owed leaves the account; reaching zero closes the loan.
        """
        amount = to_money(amount)

        async with unit_of_work(self.db):
            loan = await self._load(loan_id)
            if not can_pay_loan(payer, loan):
                raise UnauthorizedError("Not authorized to pay this loan")
            if amount <= 0:
                raise InvalidAmountError()
            if loan.status != LoanStatus.DISBURSED:
                raise InvalidTransitionError(f"Loan is {loan.status.value}, only disbursed loans accept payments")
            if amount > loan.remaining_amount:
                logger.info(f"Payment of {amount} on {loan.id} capped at remaining {loan.remaining_amount}")
                amount = to_money(loan.remaining_amount)

            account = await self.accounts.get_account(payer.id)
            if account.balance < amount:
                raise InsufficientBalanceError()

            loan.total_paid_amount = to_money(loan.total_paid_amount + amount)
            loan.remaining_amount = to_money(loan.amount - loan.total_paid_amount)
            if loan.remaining_amount <= 0:
                loan.status = LoanStatus.CLOSED
            await self.db.flush()

            entry = await self.ledger.record(
                TransactionType.LOAN_PAYMENT,
                amount,
                sender=Party(payer, account),
                receiver_name="Loan Payment",
                description=f"Loan payment for loan {loan.id}",
                loan_id=loan.id,
            )
            await debit(self.db, account.id, amount)
            await self.ledger.complete(entry)
        logger.info(
            f"Loan payment of {amount} on {loan.id} (TX: {entry.reference}), "
            f"remaining {loan.remaining_amount}, status {loan.status.value}"
        )
        return loan

    async def get_loan(self, loan_id: UUID, actor: User) -> Loan:
        loan = await self._load(loan_id)
        if not can_view_loan(actor, loan):
            raise UnauthorizedError("Not authorized to view this loan")
        return loan

    async def list_loans(self, borrower: User) -> List[Loan]:
        query = select(Loan).where(Loan.borrower_id == borrower.id).order_by(Loan.created_at.desc())
        result = await self.db.execute(query)
        return list(result.scalars().all())
