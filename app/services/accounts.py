import logging
import secrets
from decimal import Decimal
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings as default_settings
from app.core.money import to_money
from app.core.permissions import can_adjust_balances, can_self_register
from app.db.unit_of_work import unit_of_work
from app.exceptions import (
    AccountNotFoundError,
    DuplicateEmailError,
    InsufficientBalanceError,
    InvalidAmountError,
    UnauthorizedError,
    UserNotFoundError,
)
from app.models import Account, Transaction, TransactionType, User, UserRole, utcnow
from app.services.ledger import LedgerRecorder, Party

logger = logging.getLogger(__name__)

def generate_account_number() -> str:
    return "ACC" + str(1_000_000_000 + secrets.randbelow(9_000_000_000))

async def debit(db: AsyncSession, account_id: UUID, amount: Decimal) -> Decimal:
    """
    Compare-and-swap debit: the balance check and the decrement are one
    statement, so a concurrent debit that got there first makes this one
    match zero rows instead of overdrawing. Returns the new balance.
    """
    stmt = (
        update(Account)
        .where(Account.id == account_id, Account.balance >= amount)
        .values(
            balance=Account.balance - amount,
            total_transactions_count=Account.total_transactions_count + 1,
            total_transactions_amount=Account.total_transactions_amount + amount,
            updated_at=utcnow(),
        )
        .returning(Account.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = (await db.execute(stmt)).scalar_one_or_none()
    if new_balance is None:
        raise InsufficientBalanceError()
    return to_money(new_balance)

async def credit(db: AsyncSession, account_id: UUID, amount: Decimal) -> Decimal:
    stmt = (
        update(Account)
        .where(Account.id == account_id)
        .values(
            balance=Account.balance + amount,
            total_transactions_count=Account.total_transactions_count + 1,
            total_transactions_amount=Account.total_transactions_amount + amount,
            updated_at=utcnow(),
        )
        .returning(Account.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = (await db.execute(stmt)).scalar_one_or_none()
    if new_balance is None:
        raise AccountNotFoundError()
    return to_money(new_balance)

class AccountService:
    def __init__(self, db: AsyncSession, settings=None):
        self.db = db
        self.settings = settings or default_settings
        self.ledger = LedgerRecorder(db, self.settings)

    async def register_user(self, name: str, email: str, role: UserRole = UserRole.CUSTOMER) -> Tuple[User, Account]:
        """
        Creates a user together with their single checking account,
        funded with the configured opening balance.
        """
        email = email.strip().lower()
        async with unit_of_work(self.db):
            if await self.find_user_by_email(email):
                raise DuplicateEmailError()

            user = User(name=name, email=email, role=role)
            self.db.add(user)
            await self.db.flush()

            account_number = generate_account_number()
            while await self._account_number_taken(account_number):
                account_number = generate_account_number()

            account = Account(
                owner_id=user.id,
                account_number=account_number,
                balance=to_money(self.settings.OPENING_BALANCE),
                total_transactions_count=0,
                total_transactions_amount=Decimal("0.00"),
            )
            self.db.add(account)
        logger.info(f"Registered user {user.email} with account {account.account_number} (ID: {account.id})")
        return user, account

    async def sign_up(self, name: str, email: str, role: UserRole = UserRole.CUSTOMER) -> Tuple[User, Account]:
        """Public registration; the admin role is only granted when ALLOW_ADMIN_SIGNUP is on."""
        if not can_self_register(role, self.settings.ALLOW_ADMIN_SIGNUP):
            logger.warning(f"Refused admin self-registration for {email}")
            raise UnauthorizedError("Administrator accounts cannot be self-registered")
        return await self.register_user(name, email, role)

    async def _account_number_taken(self, account_number: str) -> bool:
        result = await self.db.execute(select(Account.id).where(Account.account_number == account_number))
        return result.scalar_one_or_none() is not None

    async def find_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email.strip().lower()))
        return result.scalar_one_or_none()

    async def get_user(self, user_id: UUID) -> User:
        result = await self.db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            logger.warning(f"User lookup failed: {user_id}")
            raise UserNotFoundError()
        return user

    async def get_account(self, owner_id: UUID) -> Account:
        """
        Retrieves the account owned by a user, always reading the current row.
        Raises AccountNotFoundError if the user has no account.
        """
        query = (
            select(Account)
            .where(Account.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        account = result.scalar_one_or_none()
        if not account:
            logger.warning(f"Account lookup failed for owner {owner_id}")
            raise AccountNotFoundError()
        return account

    async def deposit(self, actor: User, owner_id: UUID, amount, description: str = "") -> Transaction:
        """
        Back-office credit to a customer's account, recorded as a DEPOSIT entry.
        """
        if not can_adjust_balances(actor):
            raise UnauthorizedError()
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError()

        async with unit_of_work(self.db):
            owner = await self.get_user(owner_id)
            account = await self.get_account(owner_id)
            entry = await self.ledger.record(
                TransactionType.DEPOSIT,
                amount,
                sender=Party(actor),
                receiver=Party(owner, account),
                description=description or "Balance adjustment",
            )
            await credit(self.db, account.id, amount)
            await self.ledger.complete(entry)
        logger.info(f"Deposit successful: {amount} to {account.account_number} (TX: {entry.reference})")
        return entry

    async def withdraw(self, actor: User, owner_id: UUID, amount, description: str = "") -> Transaction:
        """
        Back-office debit from a customer's account, recorded as a WITHDRAWAL sink entry.
        """
        if not can_adjust_balances(actor):
            raise UnauthorizedError()
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError()

        async with unit_of_work(self.db):
            owner = await self.get_user(owner_id)
            account = await self.get_account(owner_id)
            if account.balance < amount:
                raise InsufficientBalanceError()
            entry = await self.ledger.record(
                TransactionType.WITHDRAWAL,
                amount,
                sender=Party(owner, account),
                receiver_name="Withdrawal",
                description=description or "Balance adjustment",
            )
            await debit(self.db, account.id, amount)
            await self.ledger.complete(entry)
        logger.info(f"Withdrawal successful: {amount} from {account.account_number} (TX: {entry.reference})")
        return entry
