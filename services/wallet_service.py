"""
Wallet Service - wallet operations on top of the append-only ledger

Public operations open their own unit of work (retried on version conflicts)
and publish events after commit. The *_in_session variants and the split
helpers join the caller's transaction so escrow settlement stays atomic.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database import Database
from models import (
    Payment, PaymentStatus, PaymentType, ParticipantRole, Wallet, WalletTransactionType,
)
from services import payment_records
from services.event_bus import EventBus
from services.ledger_store import LedgerStore, LedgerReference, LedgerEntry, ensure_positive_amount
from services.payment_gateway import PaymentGateway, PayoutDestination
from utils.datetime_helpers import utc_now, rolling_window_start
from utils.error_handler import (
    ExternalServiceError, GatewayTimeout, InvalidAmount, InvalidTransition, RoleNotAllowed,
    WalletBlocked, WalletNotFound, WithdrawalLimitExceeded,
)
from utils.fee_calculator import FeeCalculator, CommissionSplit
from utils.identity import Actor
from utils.optimistic_locking import apply_versioned, with_async_optimistic_locking

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletSummary:
    user_id: str
    balance: int
    currency: str
    pending_withdrawals: int
    total_earned: int
    total_withdrawn: int
    is_blocked: bool
    blocked_reason: Optional[str]
    last_transaction_at: Optional[datetime]

    @classmethod
    def from_wallet(cls, wallet: Wallet) -> "WalletSummary":
        return cls(
            user_id=wallet.user_id,
            balance=wallet.balance,
            currency=wallet.currency,
            pending_withdrawals=wallet.pending_withdrawals,
            total_earned=wallet.total_earned,
            total_withdrawn=wallet.total_withdrawn,
            is_blocked=wallet.is_blocked,
            blocked_reason=wallet.blocked_reason,
            last_transaction_at=wallet.last_transaction_at,
        )


@dataclass(frozen=True)
class WithdrawalHistory:
    withdrawals: payment_records.Page
    stats: payment_records.StatusTotals


class WalletService:
    """Service for handling wallet operations with atomic guarantees"""

    def __init__(
        self,
        db: Database,
        event_bus: EventBus,
        gateway: Optional[PaymentGateway] = None,
        ledger: Optional[LedgerStore] = None,
    ):
        self.db = db
        self.event_bus = event_bus
        self.gateway = gateway
        self.ledger = ledger or LedgerStore()

    # ------------------------------------------------------------------
    # In-transaction primitives
    # ------------------------------------------------------------------

    async def post_in_session(
        self,
        session: AsyncSession,
        user_id: str,
        transaction_type: WalletTransactionType,
        amount: int,
        description: str,
        reference: Optional[LedgerReference] = None,
        **wallet_updates,
    ) -> LedgerEntry:
        """Append one typed entry to user_id's wallet inside the caller's transaction"""
        wallet = await self.ledger.get_or_create_wallet(session, user_id)
        if wallet.is_blocked:
            logger.warning(f"🚫 WALLET_BLOCKED: {transaction_type.value} of {amount} refused for {user_id}")
            raise WalletBlocked(f"Wallet of {user_id} is blocked", user_id=user_id, reason=wallet.blocked_reason)

        entry = await self.ledger.append(
            session, wallet, transaction_type, amount, description, reference, wallet_updates or None
        )
        return LedgerEntry.from_row(entry)

    async def collect_platform_fee(
        self, session: AsyncSession, payer_user_id: str, fee: int, reference: LedgerReference
    ) -> int:
        """Move a platform fee from payer to platform revenue"""
        if fee <= 0:
            return 0
        await self.post_in_session(
            session, payer_user_id, WalletTransactionType.COMMISSION_DEDUCTED, fee,
            "Platform fee", reference,
        )
        await self.post_in_session(
            session, Config.PLATFORM_REVENUE_ACCOUNT, WalletTransactionType.COMMISSION_EARNED, fee,
            f"Platform fee from {payer_user_id}", reference,
        )
        logger.info(f"🏦 PLATFORM_FEE: {fee} collected from {payer_user_id} (ref {reference.id})")
        return fee

    async def record_commission(
        self,
        session: AsyncSession,
        payer_user_id: str,
        payee_user_id: str,
        gross_amount: int,
        commission_rate: Optional[Decimal],
        reference: LedgerReference,
    ) -> CommissionSplit:
        """
        Pay gross_amount from payer to payee, withholding the platform commission.

        Entries: payer commission_deducted + revenue commission_earned (commission),
        then payer debit + payee credit (net).
        """
        ensure_positive_amount(gross_amount)
        split = FeeCalculator.split_commission(gross_amount, commission_rate)

        if split.commission > 0:
            await self.post_in_session(
                session, payer_user_id, WalletTransactionType.COMMISSION_DEDUCTED, split.commission,
                f"Platform commission on payment to {payee_user_id}", reference,
            )
            await self.post_in_session(
                session, Config.PLATFORM_REVENUE_ACCOUNT, WalletTransactionType.COMMISSION_EARNED,
                split.commission, f"Commission on payment to {payee_user_id}", reference,
            )

        if split.net > 0:
            await self.post_in_session(
                session, payer_user_id, WalletTransactionType.DEBIT, split.net,
                f"Payment to {payee_user_id}", reference,
            )
            await self.post_in_session(
                session, payee_user_id, WalletTransactionType.CREDIT, split.net,
                f"Payment received from {payer_user_id}", reference,
            )

        logger.info(
            f"💸 COMMISSION_SPLIT: {payer_user_id} → {payee_user_id} gross={split.gross} "
            f"commission={split.commission} net={split.net}"
        )
        return split

    # ------------------------------------------------------------------
    # Typed movements, each its own unit of work
    # ------------------------------------------------------------------

    @with_async_optimistic_locking()
    async def _post(
        self, user_id: str, transaction_type: WalletTransactionType, amount: int,
        description: str, reference: Optional[LedgerReference],
    ) -> LedgerEntry:
        async with self.db.managed_session() as session:
            return await self.post_in_session(session, user_id, transaction_type, amount, description, reference)

    async def credit(
        self, user_id: str, amount: int, description: str, reference: Optional[LedgerReference] = None
    ) -> LedgerEntry:
        entry = await self._post(user_id, WalletTransactionType.CREDIT, amount, description, reference)
        logger.info(f"✅ WALLET_CREDIT: {user_id} +{amount} → {entry.balance_after}")
        return entry

    async def debit(
        self, user_id: str, amount: int, description: str, reference: Optional[LedgerReference] = None
    ) -> LedgerEntry:
        entry = await self._post(user_id, WalletTransactionType.DEBIT, amount, description, reference)
        logger.info(f"✅ WALLET_DEBIT: {user_id} -{amount} → {entry.balance_after}")
        return entry

    async def refund_credit(
        self, user_id: str, amount: int, description: str, reference: Optional[LedgerReference] = None
    ) -> LedgerEntry:
        return await self._post(user_id, WalletTransactionType.REFUND, amount, description, reference)

    async def apply_penalty(
        self, user_id: str, amount: int, description: str, reference: Optional[LedgerReference] = None
    ) -> LedgerEntry:
        return await self._post(user_id, WalletTransactionType.PENALTY, amount, description, reference)

    async def grant_bonus(
        self, user_id: str, amount: int, description: str, reference: Optional[LedgerReference] = None
    ) -> LedgerEntry:
        return await self._post(user_id, WalletTransactionType.BONUS, amount, description, reference)

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    async def _withdrawals_in_window(self, session: AsyncSession, user_id: str) -> int:
        result = await session.execute(
            select(func.count(Payment.id)).where(
                Payment.payer_id == user_id,
                Payment.type == PaymentType.WITHDRAWAL.value,
                Payment.status != PaymentStatus.FAILED.value,
                Payment.created_at >= rolling_window_start(24),
            )
        )
        return result.scalar() or 0

    @with_async_optimistic_locking()
    async def _request_withdrawal_txn(self, actor: Actor, amount: int, payout: PayoutDestination) -> Payment:
        async with self.db.managed_session() as session:
            used = await self._withdrawals_in_window(session, actor.user_id)
            if used >= Config.DAILY_WITHDRAWAL_LIMIT:
                logger.warning(f"🚫 WITHDRAWAL_LIMIT: {actor.user_id} already made {used} withdrawals in 24h")
                raise WithdrawalLimitExceeded(
                    f"Daily withdrawal limit of {Config.DAILY_WITHDRAWAL_LIMIT} reached",
                    limit=Config.DAILY_WITHDRAWAL_LIMIT,
                )

            wallet = await self.ledger.get_wallet(session, actor.user_id)
            if wallet is None:
                raise WalletNotFound(f"No wallet for {actor.user_id}", user_id=actor.user_id)

            payment = Payment(
                payer_id=actor.user_id,
                payee_id=actor.user_id,
                amount=amount,
                platform_fee=0,
                commission=0,
                total_amount=amount,
                currency=wallet.currency,
                type=PaymentType.WITHDRAWAL.value,
                status=PaymentStatus.PENDING.value,
                description=f"Withdrawal via {payout.mode}",
                payout_destination=payout.to_dict(),
                transfer_mode=payout.mode,
                created_at=utc_now(),
                version=1,
            )
            await payment_records.record_created(session, payment, "Withdrawal requested")

            await self.post_in_session(
                session, actor.user_id, WalletTransactionType.WITHDRAWAL, amount,
                f"Withdrawal request #{payment.id}", LedgerReference.withdrawal(payment.id),
                pending_withdrawals=wallet.pending_withdrawals + amount,
            )
            return payment

    async def request_withdrawal(self, actor: Actor, amount: int, payout: PayoutDestination) -> Payment:
        """Reserve funds for a payout; the transfer itself happens in complete_withdrawal"""
        if actor.role != ParticipantRole.FREELANCER:
            raise RoleNotAllowed("Only freelancers can withdraw", role=actor.role.value)
        ensure_positive_amount(amount)
        if amount < Config.MIN_WITHDRAWAL_AMOUNT:
            raise InvalidAmount(
                f"Minimum withdrawal is {Config.MIN_WITHDRAWAL_AMOUNT} {Config.CURRENCY}",
                minimum=Config.MIN_WITHDRAWAL_AMOUNT,
            )
        payout.validate()

        payment = await self._request_withdrawal_txn(actor, amount, payout)
        logger.info(f"🏧 WITHDRAWAL_REQUESTED: {actor.user_id} {amount} (payment {payment.id})")
        await self.event_bus.publish("wallet.withdrawal_requested", {
            "payment_id": payment.id, "user_id": actor.user_id, "amount": amount, "mode": payout.mode,
        })
        return payment

    @with_async_optimistic_locking()
    async def _start_withdrawal_txn(self, payment_id: int) -> Payment:
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment(session, payment_id)
            if payment.type != PaymentType.WITHDRAWAL.value:
                raise InvalidTransition(f"Payment {payment_id} is not a withdrawal", payment_id=payment_id)
            if payment.status != PaymentStatus.PENDING.value:
                raise InvalidTransition(
                    f"Withdrawal {payment_id} is {payment.status}, expected pending", payment_id=payment_id
                )
            await payment_records.transition(session, payment, PaymentStatus.PROCESSING, "Payout submitted")
            return payment

    @with_async_optimistic_locking()
    async def _finish_withdrawal_txn(self, payment_id: int, transfer_id: str, transfer_mode: str) -> Payment:
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment(session, payment_id)
            now = utc_now()
            await payment_records.transition(
                session, payment, PaymentStatus.COMPLETED, f"Transfer {transfer_id}",
                transfer_id=transfer_id, transfer_mode=transfer_mode, transferred_at=now, completed_at=now,
            )
            wallet = await self.ledger.get_wallet(session, payment.payer_id)
            await apply_versioned(
                session, wallet,
                pending_withdrawals=wallet.pending_withdrawals - payment.amount,
                total_withdrawn=wallet.total_withdrawn + payment.amount,
            )
            return payment

    async def complete_withdrawal(self, payment_id: int) -> Payment:
        """Send a pending withdrawal to the payee's bank account or UPI id"""
        if self.gateway is None:
            raise RuntimeError("WalletService was built without a payment gateway")

        payment = await self._start_withdrawal_txn(payment_id)
        destination = PayoutDestination.from_dict(payment.payout_destination)

        try:
            transfer = await self.gateway.transfer_to_payee(
                destination, FeeCalculator.to_minor_units(payment.amount), f"withdrawal_{payment.id}"
            )
        except GatewayTimeout:
            # Outcome unknown: stays processing until the gateway reports back
            logger.error(f"⏰ WITHDRAWAL_TIMEOUT: payout for withdrawal {payment_id} timed out, left processing")
            raise
        except ExternalServiceError as e:
            await self.fail_withdrawal(payment_id, str(e))
            raise

        payment = await self._finish_withdrawal_txn(payment_id, transfer.transfer_id, transfer.mode)
        logger.info(f"✅ WITHDRAWAL_COMPLETED: {payment.payer_id} {payment.amount} via {transfer.mode} ({transfer.transfer_id})")
        await self.event_bus.publish("wallet.withdrawal_completed", {
            "payment_id": payment.id, "user_id": payment.payer_id, "amount": payment.amount,
            "transfer_id": transfer.transfer_id,
        })
        return payment

    @with_async_optimistic_locking()
    async def _fail_withdrawal_txn(self, payment_id: int, reason: str) -> Payment:
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment(session, payment_id)
            if payment.type != PaymentType.WITHDRAWAL.value:
                raise InvalidTransition(f"Payment {payment_id} is not a withdrawal", payment_id=payment_id)
            await payment_records.transition(
                session, payment, PaymentStatus.FAILED, reason, failure_reason=reason
            )
            wallet = await self.ledger.get_or_create_wallet(session, payment.payer_id)
            # Restoring reserved funds is allowed even on a blocked wallet
            await self.ledger.append(
                session, wallet, WalletTransactionType.REFUND, payment.amount,
                f"Withdrawal #{payment.id} failed", LedgerReference.withdrawal(payment.id),
                {"pending_withdrawals": wallet.pending_withdrawals - payment.amount},
            )
            return payment

    async def fail_withdrawal(self, payment_id: int, reason: str) -> Payment:
        payment = await self._fail_withdrawal_txn(payment_id, reason)
        logger.error(f"❌ WITHDRAWAL_FAILED: withdrawal {payment_id} for {payment.payer_id}: {reason}")
        await self.event_bus.publish("wallet.withdrawal_failed", {
            "payment_id": payment.id, "user_id": payment.payer_id, "amount": payment.amount, "reason": reason,
        })
        return payment

    async def withdrawal_history(
        self,
        actor: Actor,
        status: Optional[PaymentStatus] = None,
        limit: int = 10,
        skip: int = 0,
    ) -> WithdrawalHistory:
        """Newest first; the stats always cover every withdrawal the user made"""
        if actor.role != ParticipantRole.FREELANCER:
            raise RoleNotAllowed("Only freelancers can view withdrawal history", role=actor.role.value)

        everything = [Payment.payer_id == actor.user_id, Payment.type == PaymentType.WITHDRAWAL.value]
        conditions = list(everything)
        if status is not None:
            conditions.append(Payment.status == status.value)

        async with self.db.managed_session() as session:
            rows, total = await payment_records.page(session, conditions, limit, skip)
            stats = await payment_records.status_totals(session, everything)
        return WithdrawalHistory(
            withdrawals=payment_records.Page(items=rows, total=total, limit=limit, skip=skip),
            stats=stats,
        )

    # ------------------------------------------------------------------
    # Admin controls and reads
    # ------------------------------------------------------------------

    @with_async_optimistic_locking()
    async def block_wallet(self, user_id: str, reason: str) -> WalletSummary:
        async with self.db.managed_session() as session:
            wallet = await self.ledger.get_or_create_wallet(session, user_id)
            await apply_versioned(session, wallet, is_blocked=True, blocked_reason=reason, blocked_at=utc_now())
            logger.warning(f"🔒 WALLET_BLOCKED: {user_id} ({reason})")
            return WalletSummary.from_wallet(wallet)

    @with_async_optimistic_locking()
    async def unblock_wallet(self, user_id: str) -> WalletSummary:
        async with self.db.managed_session() as session:
            wallet = await self._require_wallet(session, user_id)
            await apply_versioned(session, wallet, is_blocked=False, blocked_reason=None, blocked_at=None)
            logger.info(f"🔓 WALLET_UNBLOCKED: {user_id}")
            return WalletSummary.from_wallet(wallet)

    async def _require_wallet(self, session: AsyncSession, user_id: str) -> Wallet:
        wallet = await self.ledger.get_wallet(session, user_id)
        if wallet is None:
            raise WalletNotFound(f"No wallet for {user_id}", user_id=user_id)
        return wallet

    async def get_wallet(self, user_id: str) -> WalletSummary:
        async with self.db.managed_session() as session:
            return WalletSummary.from_wallet(await self._require_wallet(session, user_id))

    async def history(
        self,
        user_id: str,
        limit: int = 50,
        skip: int = 0,
        type: Optional[WalletTransactionType] = None,
    ) -> List[LedgerEntry]:
        """Newest first"""
        async with self.db.managed_session() as session:
            wallet = await self._require_wallet(session, user_id)
            return await self.ledger.entries(session, wallet.id, limit=limit, skip=skip, transaction_type=type)

    async def audit_balance(self, user_id: str) -> int:
        async with self.db.managed_session() as session:
            wallet = await self._require_wallet(session, user_id)
            return await self.ledger.audit(session, wallet)
