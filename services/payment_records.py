"""Payment row helpers shared by the escrow orchestrator and the wallet service"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Payment, PaymentStatus, PaymentStatusHistory, PaymentType
from utils.datetime_helpers import utc_now
from utils.error_handler import PaymentNotFound
from utils.optimistic_locking import apply_versioned
from utils.state_machines import ensure_transition

logger = logging.getLogger(__name__)


async def load_payment(session: AsyncSession, payment_id: int) -> Payment:
    payment = await session.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found", payment_id=payment_id)
    return payment


async def load_payment_by_order(session: AsyncSession, gateway_order_id: str) -> Payment:
    result = await session.execute(select(Payment).where(Payment.gateway_order_id == gateway_order_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise PaymentNotFound(f"No payment for gateway order {gateway_order_id}", gateway_order_id=gateway_order_id)
    return payment


async def record_created(session: AsyncSession, payment: Payment, note: Optional[str] = None) -> Payment:
    """Insert a new payment and its first history row"""
    ensure_transition("payment", None, payment.status, entity_id=payment.id)
    session.add(payment)
    await session.flush()
    session.add(PaymentStatusHistory(
        payment_id=payment.id, status=payment.status, note=note, created_at=utc_now()
    ))
    await session.flush()
    return payment


async def transition(
    session: AsyncSession, payment: Payment, new_status: PaymentStatus, note: Optional[str] = None, **updates
) -> Payment:
    """Version-checked status change plus an appended history row"""
    ensure_transition("payment", payment.status, new_status.value, entity_id=payment.id)
    previous = payment.status
    await apply_versioned(session, payment, status=new_status.value, **updates)
    session.add(PaymentStatusHistory(
        payment_id=payment.id, status=new_status.value, note=note, created_at=utc_now()
    ))
    await session.flush()
    logger.info(f"💳 PAYMENT_STATUS: payment {payment.id} {previous} → {new_status.value}" + (f" ({note})" if note else ""))
    return payment


async def abandon_reservations(session: AsyncSession, conversation_id: int, note: str) -> List[int]:
    """Fail the conversation's pending payments that never got a gateway order"""
    result = await session.execute(
        select(Payment).where(
            Payment.conversation_id == conversation_id,
            Payment.status == PaymentStatus.PENDING.value,
            Payment.gateway_order_id.is_(None),
        )
    )
    abandoned = []
    for payment in result.scalars().all():
        await transition(session, payment, PaymentStatus.FAILED, note, failure_reason="abandoned", order_requested_at=None)
        abandoned.append(payment.id)
    if abandoned:
        logger.info(f"🗑️ PAYMENT_ABANDONED: conversation {conversation_id} reservations {abandoned} ({note})")
    return abandoned


@dataclass(frozen=True)
class Page:
    """One page of a newest-first listing"""
    items: List[Any]
    total: int
    limit: int
    skip: int

    @property
    def has_next(self) -> bool:
        return self.skip + len(self.items) < self.total

    @property
    def has_prev(self) -> bool:
        return self.skip > 0


@dataclass(frozen=True)
class StatusTotals:
    """Counts and gross amounts of a set of payments, split by status"""
    total_count: int = 0
    total_amount: int = 0
    completed_count: int = 0
    completed_amount: int = 0
    pending_count: int = 0
    pending_amount: int = 0
    failed_count: int = 0
    failed_amount: int = 0


async def page(session: AsyncSession, conditions: Sequence[Any], limit: int, skip: int) -> Tuple[List[Payment], int]:
    """Newest first; returns the requested slice and the unpaginated total"""
    total = await session.scalar(select(func.count(Payment.id)).where(*conditions))
    result = await session.execute(
        select(Payment)
        .where(*conditions)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset(skip)
        .limit(limit)
    )
    return list(result.scalars().all()), total or 0


def _sum_where(status: PaymentStatus):
    return func.coalesce(func.sum(case((Payment.status == status.value, Payment.amount), else_=0)), 0)


def _count_where(status: PaymentStatus):
    return func.coalesce(func.sum(case((Payment.status == status.value, 1), else_=0)), 0)


async def status_totals(session: AsyncSession, conditions: Sequence[Any]) -> StatusTotals:
    row = (await session.execute(
        select(
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount), 0),
            _count_where(PaymentStatus.COMPLETED),
            _sum_where(PaymentStatus.COMPLETED),
            _count_where(PaymentStatus.PENDING),
            _sum_where(PaymentStatus.PENDING),
            _count_where(PaymentStatus.FAILED),
            _sum_where(PaymentStatus.FAILED),
        ).where(*conditions)
    )).one()
    return StatusTotals(*(int(value) for value in row))


async def totals_by_type(session: AsyncSession, conditions: Sequence[Any]) -> Dict[PaymentType, Tuple[int, int]]:
    """(count, gross amount) per payment type"""
    result = await session.execute(
        select(Payment.type, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
        .where(*conditions)
        .group_by(Payment.type)
    )
    return {PaymentType(row[0]): (int(row[1]), int(row[2])) for row in result.all()}


async def history(session: AsyncSession, payment_id: int) -> List[PaymentStatusHistory]:
    result = await session.execute(
        select(PaymentStatusHistory)
        .where(PaymentStatusHistory.payment_id == payment_id)
        .order_by(PaymentStatusHistory.id)
    )
    return list(result.scalars().all())
