import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings as default_settings
from app.core.permissions import can_view_transaction
from app.exceptions import TransactionNotFoundError, UnauthorizedError
from app.models import Account, Transaction, TransactionStatus, TransactionType, User, utcnow

# Setup Logger
logger = logging.getLogger(__name__)

REFERENCE_PREFIXES = {
    TransactionType.TRANSFER: "TXN",
    TransactionType.LOAN_DISBURSEMENT: "LOAN",
    TransactionType.LOAN_PAYMENT: "LPY",
    TransactionType.DEPOSIT: "DEP",
    TransactionType.WITHDRAWAL: "WDR",
}

def generate_reference(entry_type: TransactionType) -> str:
    """Type prefix + epoch milliseconds + random hex suffix, e.g. TXN1760870400123A1B2C3."""
    return f"{REFERENCE_PREFIXES[entry_type]}{int(time.time() * 1000)}{secrets.token_hex(3).upper()}"

@dataclass
class Party:
    """One side of a ledger entry."""
    user: User
    account: Optional[Account] = None

@dataclass
class LedgerFilter:
    participant_id: Optional[UUID] = None
    status: Optional[TransactionStatus] = None
    type: Optional[TransactionType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

class LedgerRecorder:
    """
    Append-only record of balance-affecting events.

    Entries are created PENDING inside the caller's unit of work and marked
    COMPLETED once the matching balance updates have been issued; both land
    in the same commit.
    """

    def __init__(self, db: AsyncSession, settings=None):
        self.db = db
        self.settings = settings or default_settings

    async def record(
        self,
        entry_type: TransactionType,
        amount: Decimal,
        sender: Party,
        receiver: Optional[Party] = None,
        description: str = "",
        loan_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
        receiver_name: Optional[str] = None,
    ) -> Transaction:
        entry = Transaction(
            reference=generate_reference(entry_type),
            type=entry_type,
            status=TransactionStatus.PENDING,
            sender_id=sender.user.id,
            sender_account_id=sender.account.id if sender.account else None,
            sender_name=sender.user.name,
            receiver_id=receiver.user.id if receiver else None,
            receiver_account_id=receiver.account.id if receiver and receiver.account else None,
            receiver_name=receiver.user.name if receiver else (receiver_name or ""),
            amount=amount,
            description=description or "",
            loan_id=loan_id,
            idempotency_key=idempotency_key,
        )
        self.db.add(entry)
        await self.db.flush()  # Get ID
        logger.debug(f"Recorded pending {entry_type.value} entry {entry.reference} for {amount}")
        return entry

    async def complete(self, entry: Transaction) -> Transaction:
        entry.status = TransactionStatus.COMPLETED
        entry.completed_at = utcnow()
        await self.db.flush()
        return entry

    async def find_by_idempotency_key(self, sender_id: UUID, key: str) -> Optional[Transaction]:
        """Keys are scoped to the sender; two users may reuse the same key."""
        query = select(Transaction).where(Transaction.sender_id == sender_id, Transaction.idempotency_key == key)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get(self, transaction_id: UUID, actor: User) -> Transaction:
        """
        Fetches a single entry. Only its sender, its receiver or an admin may read it.
        """
        result = await self.db.execute(select(Transaction).where(Transaction.id == transaction_id))
        entry = result.scalar_one_or_none()
        if not entry:
            logger.warning(f"Transaction lookup failed: {transaction_id}")
            raise TransactionNotFoundError()
        if not can_view_transaction(actor, entry):
            raise UnauthorizedError("Not authorized to view this transaction")
        return entry

    def _apply_filter(self, query, ledger_filter: LedgerFilter):
        if ledger_filter.participant_id:
            query = query.where(or_(
                Transaction.sender_id == ledger_filter.participant_id,
                Transaction.receiver_id == ledger_filter.participant_id,
            ))
        if ledger_filter.status:
            query = query.where(Transaction.status == ledger_filter.status)
        if ledger_filter.type:
            query = query.where(Transaction.type == ledger_filter.type)
        if ledger_filter.start_date:
            query = query.where(Transaction.created_at >= ledger_filter.start_date)
        if ledger_filter.end_date:
            query = query.where(Transaction.created_at <= ledger_filter.end_date)
        return query

    async def query(
        self,
        ledger_filter: LedgerFilter,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        """
        Returns one page of matching entries, newest first, plus the total match count.
        """
        page = max(page, 1)
        count_query = self._apply_filter(select(func.count(Transaction.id)), ledger_filter)
        total = (await self.db.execute(count_query)).scalar_one()

        items_query = (
            self._apply_filter(select(Transaction), ledger_filter)
            .order_by(Transaction.created_at.desc(), Transaction.reference.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = (await self.db.execute(items_query)).scalars().all()
        logger.debug(f"Ledger query returned {len(items)} of {total} entries")
        return list(items), total

    async def statement(
        self,
        owner_id: UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[Transaction]:
        """
        Most recent entries touching a user, capped at STATEMENT_LIMIT.
        """
        items, _ = await self.query(
            LedgerFilter(participant_id=owner_id, start_date=start_date, end_date=end_date),
            limit=self.settings.STATEMENT_LIMIT,
        )
        return items
