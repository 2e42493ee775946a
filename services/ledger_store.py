"""
Ledger Store - append-only wallet transaction log with a running balance

The only writer of wallet_transactions rows. Every append:
- rejects non-positive amounts and any move that would take the balance below zero
- bumps the wallet row through a version-checked update
- self-checks balance_after against the previous entry and the wallet row
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from models import Wallet, WalletTransaction, WalletTransactionType, ReferenceKind, signed_amount, CREDIT_TYPES
from utils.datetime_helpers import utc_now
from utils.error_handler import InvalidAmount, InsufficientBalance, LedgerIntegrityError
from utils.optimistic_locking import OptimisticLockingError, apply_versioned

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerReference:
    kind: ReferenceKind
    id: str

    @classmethod
    def payment(cls, payment_id) -> "LedgerReference":
        return cls(ReferenceKind.PAYMENT, str(payment_id))

    @classmethod
    def withdrawal(cls, payment_id) -> "LedgerReference":
        return cls(ReferenceKind.WITHDRAWAL, str(payment_id))

    @classmethod
    def adjustment(cls, ref_id) -> "LedgerReference":
        return cls(ReferenceKind.ADJUSTMENT, str(ref_id))


@dataclass(frozen=True)
class LedgerEntry:
    """Read-only view of one wallet transaction"""

    id: int
    sequence: int
    type: str
    amount: int
    signed_amount: int
    description: Optional[str]
    reference_id: Optional[str]
    reference_kind: Optional[str]
    balance_after: int
    created_at: datetime

    @classmethod
    def from_row(cls, row: WalletTransaction) -> "LedgerEntry":
        return cls(
            id=row.id,
            sequence=row.sequence,
            type=row.type,
            amount=row.amount,
            signed_amount=signed_amount(WalletTransactionType(row.type), row.amount),
            description=row.description,
            reference_id=row.reference_id,
            reference_kind=row.reference_kind,
            balance_after=row.balance_after,
            created_at=row.created_at,
        )


def ensure_positive_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive whole number, got {amount!r}", amount=str(amount))
    return amount


class LedgerStore:
    """Wallet rows and their transaction log"""

    async def get_wallet(self, session: AsyncSession, user_id: str) -> Optional[Wallet]:
        result = await session.execute(select(Wallet).where(Wallet.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_or_create_wallet(self, session: AsyncSession, user_id: str) -> Wallet:
        wallet = await self.get_wallet(session, user_id)
        if wallet is not None:
            return wallet

        wallet = Wallet(
            user_id=user_id,
            currency=Config.CURRENCY,
            balance=0,
            pending_withdrawals=0,
            total_earned=0,
            total_withdrawn=0,
            transaction_count=0,
            is_blocked=False,
            version=1,
        )
        session.add(wallet)
        try:
            await session.flush()
        except IntegrityError as e:
            # Another unit of work created it first; retry the whole unit
            raise OptimisticLockingError(f"Wallet for {user_id} created concurrently") from e

        logger.info(f"👛 LEDGER: Wallet created for {user_id}")
        return wallet

    async def last_entry(self, session: AsyncSession, wallet_id: int) -> Optional[WalletTransaction]:
        result = await session.execute(
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet_id)
            .order_by(WalletTransaction.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def append(
        self,
        session: AsyncSession,
        wallet: Wallet,
        transaction_type: WalletTransactionType,
        amount: int,
        description: str,
        reference: Optional[LedgerReference] = None,
        wallet_updates: Optional[Dict[str, Any]] = None,
    ) -> WalletTransaction:
        """Append one entry and move the wallet balance by its signed amount"""
        amount = ensure_positive_amount(amount)
        delta = signed_amount(transaction_type, amount)

        previous = await self.last_entry(session, wallet.id)
        previous_balance = previous.balance_after if previous is not None else 0
        previous_sequence = previous.sequence if previous is not None else 0

        if previous_balance != wallet.balance:
            logger.critical(
                f"🚨 LEDGER_DRIFT: wallet {wallet.user_id} balance={wallet.balance} "
                f"but last entry balance_after={previous_balance}"
            )
            raise LedgerIntegrityError(
                f"Wallet {wallet.user_id} balance does not match its ledger",
                user_id=wallet.user_id,
                wallet_balance=wallet.balance,
                ledger_balance=previous_balance,
            )

        new_balance = wallet.balance + delta
        if new_balance < 0:
            logger.warning(
                f"⚠️ INSUFFICIENT_BALANCE: {wallet.user_id} has {wallet.balance}, "
                f"{transaction_type.value} needs {amount}"
            )
            raise InsufficientBalance(
                f"Insufficient balance: available {wallet.balance}, required {amount}",
                user_id=wallet.user_id,
                available=wallet.balance,
                required=amount,
            )

        now = utc_now()
        updates = dict(wallet_updates or {})
        updates.update(
            balance=new_balance,
            transaction_count=wallet.transaction_count + 1,
            last_transaction_at=now,
        )
        if transaction_type == WalletTransactionType.CREDIT:
            updates["total_earned"] = wallet.total_earned + amount

        await apply_versioned(session, wallet, **updates)

        entry = WalletTransaction(
            wallet_id=wallet.id,
            sequence=previous_sequence + 1,
            type=transaction_type.value,
            amount=amount,
            description=description,
            reference_id=reference.id if reference else None,
            reference_kind=reference.kind.value if reference else None,
            balance_after=new_balance,
            created_at=now,
        )
        session.add(entry)
        try:
            await session.flush()
        except IntegrityError as e:
            raise OptimisticLockingError(
                f"Ledger sequence {entry.sequence} for wallet {wallet.id} taken concurrently"
            ) from e

        if entry.balance_after != previous_balance + delta or entry.balance_after != wallet.balance:
            raise LedgerIntegrityError(
                f"Ledger self-check failed for wallet {wallet.user_id}",
                user_id=wallet.user_id,
                balance_after=entry.balance_after,
                expected=previous_balance + delta,
            )

        direction = "+" if transaction_type in CREDIT_TYPES else "-"
        logger.info(
            f"📒 LEDGER_{transaction_type.value.upper()}: {wallet.user_id} {direction}{amount} "
            f"→ balance {new_balance} ({description})"
        )
        return entry

    async def recompute_balance(self, session: AsyncSession, wallet_id: int) -> int:
        """Signed sum of every entry in the log"""
        result = await session.execute(
            select(WalletTransaction.type, func.coalesce(func.sum(WalletTransaction.amount), 0))
            .where(WalletTransaction.wallet_id == wallet_id)
            .group_by(WalletTransaction.type)
        )
        return sum(
            signed_amount(WalletTransactionType(tx_type), int(total))
            for tx_type, total in result.all()
        )

    async def audit(self, session: AsyncSession, wallet: Wallet) -> int:
        """Raise LedgerIntegrityError unless wallet.balance equals the recomputed sum"""
        computed = await self.recompute_balance(session, wallet.id)
        if computed != wallet.balance:
            logger.critical(
                f"🚨 LEDGER_AUDIT_FAILED: {wallet.user_id} stored={wallet.balance} computed={computed}"
            )
            raise LedgerIntegrityError(
                f"Wallet {wallet.user_id} balance {wallet.balance} != ledger sum {computed}",
                user_id=wallet.user_id,
                stored=wallet.balance,
                computed=computed,
            )
        logger.info(f"✅ LEDGER_AUDIT: {wallet.user_id} balance {computed} verified")
        return computed

    async def entries(
        self,
        session: AsyncSession,
        wallet_id: int,
        limit: int = 50,
        skip: int = 0,
        transaction_type: Optional[WalletTransactionType] = None,
    ) -> List[LedgerEntry]:
        """Newest first"""
        stmt = select(WalletTransaction).where(WalletTransaction.wallet_id == wallet_id)
        if transaction_type is not None:
            stmt = stmt.where(WalletTransaction.type == transaction_type.value)
        stmt = stmt.order_by(WalletTransaction.sequence.desc()).offset(skip).limit(limit)

        result = await session.execute(stmt)
        return [LedgerEntry.from_row(row) for row in result.scalars().all()]
