import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.money import to_money
from app.db.unit_of_work import unit_of_work
from app.exceptions import ConflictError, InsufficientBalanceError, InvalidAmountError, UserNotFoundError
from app.models import Transaction, TransactionType, User
from app.services.accounts import AccountService, credit, debit
from app.services.ledger import LedgerRecorder, Party

logger = logging.getLogger(__name__)

@dataclass
class TransferResult:
    reference: str
    new_balance: Decimal
    transaction: Transaction

class TransferEngine:
    def __init__(self, db: AsyncSession, settings=None):
        self.db = db
        self.accounts = AccountService(db, settings)
        self.ledger = LedgerRecorder(db, settings)

    async def transfer(
        self,
        sender: User,
        receiver_email: str,
        amount,
        description: str = "",
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        """
        Moves money from the sender's account to the account of the user
        registered under receiver_email.

        Both balance updates and the ledger entry commit as one unit; on any
        failure nothing is written. A sender repeating an idempotency key gets the
        original transfer back without moving money again; reusing the key for
        a different receiver or amount raises ConflictError.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError()

        if idempotency_key:
            existing = await self.ledger.find_by_idempotency_key(sender.id, idempotency_key)
            if existing:
                receiver = await self.accounts.find_user_by_email(receiver_email)
                if existing.amount != amount or receiver is None or existing.receiver_id != receiver.id:
                    logger.warning(f"Idempotency key {idempotency_key} reused for a different transfer by {sender.email}")
                    raise ConflictError("Idempotency key already used for a different transfer")
                account = await self.accounts.get_account(sender.id)
                logger.info(f"Replayed transfer {existing.reference} for idempotency key {idempotency_key}")
                return TransferResult(existing.reference, to_money(account.balance), existing)

        async with unit_of_work(self.db):
            sender_account = await self.accounts.get_account(sender.id)

            receiver = await self.accounts.find_user_by_email(receiver_email)
            if not receiver:
                logger.warning(f"Transfer receiver not found: {receiver_email}")
                raise UserNotFoundError("Receiver not found")
            receiver_account = await self.accounts.get_account(receiver.id)

            # Fast path; debit() re-checks atomically
            if sender_account.balance < amount:
                raise InsufficientBalanceError()

            entry = await self.ledger.record(
                TransactionType.TRANSFER,
                amount,
                sender=Party(sender, sender_account),
                receiver=Party(receiver, receiver_account),
                description=description,
                idempotency_key=idempotency_key,
            )
            # Row locks are taken in account id order so opposite transfers cannot deadlock
            if receiver_account.id < sender_account.id:
                credited_balance = await credit(self.db, receiver_account.id, amount)
                new_balance = await debit(self.db, sender_account.id, amount)
            else:
                new_balance = await debit(self.db, sender_account.id, amount)
                credited_balance = await credit(self.db, receiver_account.id, amount)
            await self.ledger.complete(entry)

        if sender_account.id == receiver_account.id:
            new_balance = credited_balance
        logger.info(
            f"Transfer successful: {amount} from {sender_account.account_number} "
            f"to {receiver_account.account_number} (TX: {entry.reference})"
        )
        return TransferResult(entry.reference, new_balance, entry)
