"""
Escrow Payment Orchestrator
Turns an agreed negotiation into a captured, settled escrow payment.

Payment states: pending -> processing -> completed -> refunded, and
pending|processing -> failed. Gateway calls happen outside database
transactions; capture settlement (escrow, platform revenue, payee) is a
single unit of work and never runs without a verified signature.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database import Database
from models import (
    ApplicationStatus, Conversation, ConversationStatus, NegotiationStatus, Negotiation, ParticipantRole,
    Payment, PaymentStatus, PaymentType, WalletTransactionType,
)
from services import payment_records
from services.application_tracker import ApplicationTracker
from services.event_bus import EventBus
from services.ledger_store import LedgerReference, ensure_positive_amount
from services.negotiation_engine import ensure_participant, load_conversation
from services.payment_gateway import PaymentGateway
from services.wallet_service import WalletService
from utils.datetime_helpers import ensure_aware_utc, utc_now
from utils.error_handler import (
    ConversationClosed, ExternalServiceError, GatewayTimeout, InvalidSignature, InvalidTransition,
    InvalidWebhookPayload, NoAgreedAmount, NotAParticipant, PaymentAlreadyInFlight, RoleNotAllowed,
)
from utils.fee_calculator import FeeCalculator
from utils.identity import Actor
from utils.optimistic_locking import apply_versioned, with_async_optimistic_locking
from utils.state_machines import is_conversation_terminal

logger = logging.getLogger(__name__)


class WebhookAction(Enum):
    """What a gateway webhook resulted in"""
    PROCESSING = "processing"
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentContext:
    """Snapshot of an escrow payment handed back to callers"""
    payment_id: int
    conversation_id: Optional[int]
    payer_id: str
    payee_id: Optional[str]
    amount: int
    platform_fee: int
    commission: int
    total_payable: int
    total_minor_units: int
    currency: str
    receipt: Optional[str]
    gateway_order_id: Optional[str]
    gateway_payment_id: Optional[str]
    status: PaymentStatus
    type: PaymentType
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentContext":
        return cls(
            payment_id=payment.id,
            conversation_id=payment.conversation_id,
            payer_id=payment.payer_id,
            payee_id=payment.payee_id,
            amount=payment.amount,
            platform_fee=payment.platform_fee,
            commission=payment.commission,
            total_payable=payment.total_amount,
            total_minor_units=FeeCalculator.to_minor_units(payment.total_amount),
            currency=payment.currency,
            receipt=payment.receipt,
            gateway_order_id=payment.gateway_order_id,
            gateway_payment_id=payment.gateway_payment_id,
            status=PaymentStatus(payment.status),
            type=PaymentType(payment.type),
            completed_at=payment.completed_at,
            refunded_at=payment.refunded_at,
        )


@dataclass(frozen=True)
class StatusHistoryEntry:
    status: PaymentStatus
    note: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class WebhookResult:
    event: str
    action: WebhookAction
    payment: Optional[PaymentContext] = None


@dataclass(frozen=True)
class _Settlement:
    context: PaymentContext
    settled: bool
    project_started: bool = False
    gig_id: Optional[str] = None


@dataclass(frozen=True)
class TypeTotals:
    count: int
    total_amount: int


@dataclass(frozen=True)
class PaymentStats:
    timeframe: str
    since: datetime
    summary: payment_records.StatusTotals
    by_type: Dict[PaymentType, TypeTotals]
    recent: List[PaymentContext]


IN_FLIGHT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)

# Stats window lengths in days
STATS_TIMEFRAMES = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
DEFAULT_STATS_TIMEFRAME = "30d"
RECENT_PAYMENTS = 5


class EscrowOrchestrator:
    """Escrow payment state machine on top of the wallet ledger"""

    def __init__(
        self,
        db: Database,
        event_bus: EventBus,
        gateway: PaymentGateway,
        wallet_service: WalletService,
        application_tracker: ApplicationTracker,
    ):
        self.db = db
        self.event_bus = event_bus
        self.gateway = gateway
        self.wallets = wallet_service
        self.applications = application_tracker

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    async def _in_flight_payment(self, session: AsyncSession, conversation_id: int) -> Optional[Payment]:
        result = await session.execute(
            select(Payment).where(
                Payment.conversation_id == conversation_id,
                Payment.status.in_(IN_FLIGHT_STATUSES),
            )
        )
        return result.scalars().first()

    async def _agreed_amount(self, session: AsyncSession, conversation: Conversation) -> int:
        if (
            conversation.status != ConversationStatus.PAYMENT_PENDING.value
            or conversation.agreed_amount is None
            or conversation.current_negotiation_id is None
        ):
            raise NoAgreedAmount(f"Conversation {conversation.id} has no accepted proposal")

        negotiation = await session.get(Negotiation, conversation.current_negotiation_id)
        if negotiation is None or negotiation.status != NegotiationStatus.ACCEPTED.value:
            raise NoAgreedAmount(f"Conversation {conversation.id} has no accepted proposal")
        return negotiation.proposed_price

    @staticmethod
    def _order_call_outstanding(payment: Payment) -> bool:
        requested_at = ensure_aware_utc(payment.order_requested_at)
        if requested_at is None:
            return False
        return utc_now() - requested_at < timedelta(seconds=Config.GATEWAY_TIMEOUT_SECONDS)

    @with_async_optimistic_locking()
    async def _reserve_txn(self, conversation_id: int, actor: Actor, amount_override: Optional[int]) -> PaymentContext:
        async with self.db.managed_session() as session:
            conversation = await load_conversation(session, conversation_id)
            ensure_participant(conversation, actor)

            if is_conversation_terminal(conversation.status):
                raise ConversationClosed(f"Conversation {conversation_id} is {conversation.status}")

            existing = await self._in_flight_payment(session, conversation_id)
            if existing is not None and (
                existing.status == PaymentStatus.PROCESSING.value or existing.gateway_order_id
            ):
                logger.warning(
                    f"🚫 PAYMENT_IN_FLIGHT: conversation {conversation_id} already has payment "
                    f"{existing.id} ({existing.status})"
                )
                raise PaymentAlreadyInFlight(
                    f"Conversation {conversation_id} already has payment {existing.id} in flight",
                    payment_id=existing.id,
                )

            if existing is not None and self._order_call_outstanding(existing):
                logger.warning(
                    f"🚫 PAYMENT_IN_FLIGHT: order for payment {existing.id} is already being created"
                )
                raise PaymentAlreadyInFlight(
                    f"Conversation {conversation_id} already has payment {existing.id} in checkout",
                    payment_id=existing.id,
                )

            amount = amount_override if amount_override is not None else await self._agreed_amount(session, conversation)
            fees = FeeCalculator.calculate_platform_fee(amount)
            now = utc_now()

            if existing is not None:
                # Reservation left behind by a timed-out order call: claim it and reuse its receipt.
                # A concurrent claimer fails the version check and retries into the branch above.
                await apply_versioned(
                    session, existing,
                    amount=fees.amount, platform_fee=fees.platform_fee, total_amount=fees.total_payable,
                    order_requested_at=now,
                )
                logger.info(f"♻️ ESCROW_ORCHESTRATOR: Reusing reservation {existing.id} ({existing.receipt})")
                return PaymentContext.from_payment(existing)

            payment = Payment(
                payer_id=conversation.hiring_id,
                payee_id=conversation.freelancer_id,
                conversation_id=conversation.id,
                gig_id=conversation.gig_id,
                amount=fees.amount,
                platform_fee=fees.platform_fee,
                commission=0,
                total_amount=fees.total_payable,
                currency=Config.CURRENCY,
                type=PaymentType.GIG_ESCROW.value,
                status=PaymentStatus.PENDING.value,
                description=f"Escrow for conversation {conversation.id}" + (f": {conversation.title}" if conversation.title else ""),
                receipt=f"rcpt_{conversation.id}_{uuid.uuid4().hex[:12]}",
                order_requested_at=now,
                created_at=now,
                version=1,
            )
            try:
                await payment_records.record_created(session, payment, "Payment reserved")
            except IntegrityError as e:
                raise PaymentAlreadyInFlight(
                    f"Conversation {conversation_id} already has a payment in flight"
                ) from e

            logger.info(
                f"💳 ESCROW_ORCHESTRATOR: Reserved payment {payment.id} for conversation {conversation_id}: "
                f"amount={fees.amount} fee={fees.platform_fee} total={fees.total_payable}"
            )
            return PaymentContext.from_payment(payment)

    @with_async_optimistic_locking()
    async def _release_claim_txn(self, payment_id: int) -> None:
        """Let the next initiate retry a reservation whose order call timed out"""
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment(session, payment_id)
            if payment.status == PaymentStatus.PENDING.value and payment.gateway_order_id is None:
                await apply_versioned(session, payment, order_requested_at=None)

    @with_async_optimistic_locking()
    async def _fail_reservation_txn(self, payment_id: int, reason: str) -> PaymentContext:
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment(session, payment_id)
            if payment.status == PaymentStatus.PENDING.value:
                await payment_records.transition(
                    session, payment, PaymentStatus.FAILED, f"Order creation failed: {reason}", failure_reason=reason
                )
            return PaymentContext.from_payment(payment)

    @with_async_optimistic_locking()
    async def _attach_order_txn(
        self, payment_id: int, gateway_order_id: str, uses_agreed_amount: bool
    ) -> Tuple[PaymentContext, bool]:
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment(session, payment_id)
            conversation = await load_conversation(session, payment.conversation_id)

            if payment.gateway_order_id is not None:
                raise PaymentAlreadyInFlight(
                    f"Payment {payment_id} already has order {payment.gateway_order_id}", payment_id=payment_id
                )
            if payment.status != PaymentStatus.PENDING.value:
                # Reservation was abandoned while the order was being created
                return PaymentContext.from_payment(payment), False

            if uses_agreed_amount:
                moved_on = (
                    conversation.status != ConversationStatus.PAYMENT_PENDING.value
                    or conversation.agreed_amount != payment.amount
                )
            else:
                moved_on = (
                    is_conversation_terminal(conversation.status)
                    or conversation.status == ConversationStatus.PAYMENT_PROCESSING.value
                )

            if moved_on:
                # Conversation moved on while the order was being created
                await payment_records.transition(
                    session, payment, PaymentStatus.FAILED,
                    f"Conversation became {conversation.status} during checkout",
                    failure_reason="conversation_changed",
                )
                return PaymentContext.from_payment(payment), False

            await apply_versioned(session, payment, gateway_order_id=gateway_order_id, order_requested_at=None)
            await apply_versioned(
                session, conversation,
                status=ConversationStatus.PAYMENT_PROCESSING.value,
                agreed_amount=payment.amount,
                platform_fee=payment.platform_fee,
                total_payable=payment.total_amount,
                gateway_order_id=gateway_order_id,
                payment_initiated_at=utc_now(),
            )
            return PaymentContext.from_payment(payment), True

    async def initiate(
        self, conversation_id: int, actor: Actor, amount_override: Optional[int] = None
    ) -> PaymentContext:
        """Reserve a payment, create the gateway order, and lock the conversation for checkout"""
        if actor.role != ParticipantRole.HIRING:
            raise RoleNotAllowed("Only the hiring party can initiate payment", role=actor.role.value)
        if amount_override is not None:
            ensure_positive_amount(amount_override)

        reserved = await self._reserve_txn(conversation_id, actor, amount_override)

        try:
            order = await asyncio.wait_for(
                self.gateway.create_order(
                    reserved.total_minor_units,
                    reserved.currency,
                    reserved.receipt,
                    {
                        "conversation_id": conversation_id,
                        "payment_id": reserved.payment_id,
                        "payer_id": reserved.payer_id,
                        "payee_id": reserved.payee_id,
                    },
                ),
                timeout=Config.GATEWAY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"⏰ ESCROW_ORCHESTRATOR: Order creation timed out for payment {reserved.payment_id}, left pending")
            await self._release_claim_txn(reserved.payment_id)
            raise GatewayTimeout(f"Gateway order creation timed out for payment {reserved.payment_id}") from e
        except GatewayTimeout:
            logger.error(f"⏰ ESCROW_ORCHESTRATOR: Order creation timed out for payment {reserved.payment_id}, left pending")
            await self._release_claim_txn(reserved.payment_id)
            raise
        except ExternalServiceError as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: Order creation failed for payment {reserved.payment_id}: {e}")
            await self._fail_reservation_txn(reserved.payment_id, str(e))
            await self.event_bus.publish("payment.failed", {
                "payment_id": reserved.payment_id, "conversation_id": conversation_id, "reason": str(e),
            })
            raise

        context, attached = await self._attach_order_txn(
            reserved.payment_id, order.order_id, amount_override is None
        )
        if not attached:
            raise InvalidTransition(
                f"Conversation {conversation_id} changed during checkout; payment {context.payment_id} abandoned",
                payment_id=context.payment_id,
            )

        logger.info(
            f"✅ ESCROW_ORCHESTRATOR: Payment {context.payment_id} initiated, order {order.order_id} "
            f"for {context.total_payable} {context.currency}"
        )
        await self.event_bus.publish("payment.initiated", {
            "payment_id": context.payment_id,
            "conversation_id": conversation_id,
            "gateway_order_id": order.order_id,
            "amount": context.amount,
            "platform_fee": context.platform_fee,
            "total_payable": context.total_payable,
        })
        return context

    # ------------------------------------------------------------------
    # Gateway progress
    # ------------------------------------------------------------------

    @with_async_optimistic_locking()
    async def mark_processing(self, gateway_order_id: str, gateway_payment_id: Optional[str] = None) -> PaymentContext:
        """Gateway reported authorization; idempotent"""
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment_by_order(session, gateway_order_id)
            if payment.status == PaymentStatus.PENDING.value:
                updates = {"gateway_payment_id": gateway_payment_id} if gateway_payment_id else {}
                await payment_records.transition(
                    session, payment, PaymentStatus.PROCESSING, "Payment authorized", **updates
                )
            else:
                logger.info(f"ℹ️ ESCROW_ORCHESTRATOR: mark_processing no-op, payment {payment.id} is {payment.status}")
            return PaymentContext.from_payment(payment)

    @with_async_optimistic_locking()
    async def _settle_txn(
        self,
        gateway_order_id: str,
        gateway_payment_id: Optional[str],
        signature: Optional[str],
        source: str,
    ) -> _Settlement:
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment_by_order(session, gateway_order_id)

            if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
                logger.info(f"ℹ️ ESCROW_ORCHESTRATOR: Capture replay for payment {payment.id} ignored")
                return _Settlement(PaymentContext.from_payment(payment), settled=False)

            if payment.status == PaymentStatus.FAILED.value:
                logger.error(f"🚨 ESCROW_ORCHESTRATOR: Capture reported for failed payment {payment.id}")
                raise InvalidTransition(
                    f"Payment {payment.id} is failed and cannot be captured", payment_id=payment.id
                )

            gateway_fields = {}
            if gateway_payment_id:
                gateway_fields["gateway_payment_id"] = gateway_payment_id

            if payment.status == PaymentStatus.PENDING.value:
                await payment_records.transition(
                    session, payment, PaymentStatus.PROCESSING, f"Payment authorized ({source})", **gateway_fields
                )

            reference = LedgerReference.payment(payment.id)
            escrow = Config.PLATFORM_ESCROW_ACCOUNT

            await self.wallets.post_in_session(
                session, escrow, WalletTransactionType.CREDIT, payment.total_amount,
                f"Escrow funded by {payment.payer_id} (payment #{payment.id})", reference,
            )
            await self.wallets.collect_platform_fee(session, escrow, payment.platform_fee, reference)
            split = await self.wallets.record_commission(
                session, escrow, payment.payee_id, payment.amount, Config.PLATFORM_COMMISSION_RATE, reference,
            )

            now = utc_now()
            completed_fields = dict(gateway_fields, commission=split.commission, completed_at=now)
            if signature:
                completed_fields["gateway_signature"] = signature
            await payment_records.transition(
                session, payment, PaymentStatus.COMPLETED, f"Payment captured ({source})", **completed_fields
            )

            project_started = False
            gig_id = None
            if payment.conversation_id is not None:
                conversation = await load_conversation(session, payment.conversation_id)
                await apply_versioned(
                    session, conversation,
                    status=ConversationStatus.COMPLETED.value,
                    payment_completed_at=now,
                )
                gig_id = conversation.gig_id
                if gig_id:
                    application = await self.applications.find_application(
                        session, gig_id, conversation.freelancer_id
                    )
                    if application is not None and application.application_status == ApplicationStatus.ACCEPTED.value:
                        project_started = await self.applications.start_project_in_session(session, application)
                    else:
                        logger.warning(
                            f"⚠️ ESCROW_ORCHESTRATOR: No accepted application for gig {gig_id} / "
                            f"{conversation.freelancer_id}; project not started"
                        )

            return _Settlement(PaymentContext.from_payment(payment), True, project_started, gig_id)

    async def _publish_settlement(self, settlement: _Settlement) -> None:
        context = settlement.context
        logger.info(
            f"✅ ESCROW_ORCHESTRATOR: Payment {context.payment_id} settled: payee {context.payee_id} "
            f"+{context.amount - context.commission}, fee {context.platform_fee}, commission {context.commission}"
        )
        await self.event_bus.publish("payment.completed", {
            "payment_id": context.payment_id,
            "conversation_id": context.conversation_id,
            "payer_id": context.payer_id,
            "payee_id": context.payee_id,
            "amount": context.amount,
            "platform_fee": context.platform_fee,
            "commission": context.commission,
            "net_to_payee": context.amount - context.commission,
        })
        if settlement.project_started:
            await self.event_bus.publish("project.started", {
                "gig_id": settlement.gig_id, "freelancer_id": context.payee_id,
            })

    async def confirm_capture(
        self, gateway_order_id: str, signature: Optional[str], gateway_payment_id: Optional[str] = None
    ) -> PaymentContext:
        """Checkout callback: verify the signature, then settle the payment through the ledger"""
        if not self.gateway.verify_capture(gateway_order_id, signature, gateway_payment_id):
            logger.warning(f"🚫 ESCROW_ORCHESTRATOR: Invalid capture signature for order {gateway_order_id}")
            raise InvalidSignature(
                f"Capture signature mismatch for order {gateway_order_id}", gateway_order_id=gateway_order_id
            )

        settlement = await self._settle_txn(gateway_order_id, gateway_payment_id, signature, "checkout")
        if settlement.settled:
            await self._publish_settlement(settlement)
        return settlement.context

    @with_async_optimistic_locking()
    async def _mark_failed_txn(self, gateway_order_id: str, reason: str) -> Tuple[PaymentContext, bool]:
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment_by_order(session, gateway_order_id)
            if payment.status == PaymentStatus.FAILED.value:
                return PaymentContext.from_payment(payment), False

            await payment_records.transition(
                session, payment, PaymentStatus.FAILED, reason, failure_reason=reason
            )
            if payment.conversation_id is not None:
                conversation = await load_conversation(session, payment.conversation_id)
                if conversation.status == ConversationStatus.PAYMENT_PROCESSING.value:
                    await apply_versioned(session, conversation, status=ConversationStatus.PAYMENT_PENDING.value)
            return PaymentContext.from_payment(payment), True

    async def mark_failed(self, gateway_order_id: str, reason: str) -> PaymentContext:
        """pending|processing -> failed; the conversation goes back to payment_pending"""
        context, changed = await self._mark_failed_txn(gateway_order_id, reason)
        if changed:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: Payment {context.payment_id} failed: {reason}")
            await self.event_bus.publish("payment.failed", {
                "payment_id": context.payment_id, "conversation_id": context.conversation_id, "reason": reason,
            })
        return context

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_webhook(body: bytes) -> Tuple[str, Optional[str], Optional[str], Dict[str, Any]]:
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise InvalidWebhookPayload(f"Webhook body is not JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("event"), str):
            raise InvalidWebhookPayload("Webhook body has no event name")

        payload = data.get("payload") or {}
        payment_entity = (payload.get("payment") or {}).get("entity") or {}
        order_entity = (payload.get("order") or {}).get("entity") or {}

        order_id = payment_entity.get("order_id") or order_entity.get("id")
        payment_id = payment_entity.get("id")
        return data["event"], order_id, payment_id, payment_entity

    async def handle_webhook(self, body: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify and dispatch a gateway webhook"""
        if not self.gateway.verify_webhook(body, signature):
            logger.warning("🚫 ESCROW_ORCHESTRATOR: Webhook signature rejected")
            raise InvalidSignature("Webhook signature mismatch")

        event, order_id, payment_id, payment_entity = self._parse_webhook(body)
        handled = {"payment.authorized", "payment.captured", "order.paid", "payment.failed"}

        if event not in handled:
            logger.info(f"ℹ️ ESCROW_ORCHESTRATOR: Webhook event {event} acknowledged and ignored")
            return WebhookResult(event=event, action=WebhookAction.IGNORED)

        if not order_id:
            raise InvalidWebhookPayload(f"Webhook {event} carries no order id")

        logger.info(f"📨 ESCROW_ORCHESTRATOR: Webhook {event} for order {order_id}")

        if event == "payment.authorized":
            context = await self.mark_processing(order_id, payment_id)
            return WebhookResult(event=event, action=WebhookAction.PROCESSING, payment=context)

        if event == "payment.failed":
            reason = payment_entity.get("error_description") or payment_entity.get("error_code") or "Payment failed at gateway"
            context = await self.mark_failed(order_id, reason)
            return WebhookResult(event=event, action=WebhookAction.FAILED, payment=context)

        settlement = await self._settle_txn(order_id, payment_id, None, f"webhook {event}")
        if settlement.settled:
            await self._publish_settlement(settlement)
            return WebhookResult(event=event, action=WebhookAction.SETTLED, payment=settlement.context)
        return WebhookResult(event=event, action=WebhookAction.ALREADY_SETTLED, payment=settlement.context)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    @with_async_optimistic_locking()
    async def _refund_txn(self, payment_id: int, actor: Actor, reason: Optional[str]) -> Tuple[PaymentContext, PaymentContext]:
        async with self.db.managed_session() as session:
            payment = await payment_records.load_payment(session, payment_id)

            if not actor.is_admin and actor.user_id != payment.payer_id:
                raise NotAParticipant(f"{actor.user_id} cannot refund payment {payment_id}", payment_id=payment_id)
            if payment.status != PaymentStatus.COMPLETED.value:
                raise InvalidTransition(
                    f"Payment {payment_id} is {payment.status}; only completed payments can be refunded",
                    payment_id=payment_id,
                )

            reference = LedgerReference.payment(payment.id)
            net = payment.amount - payment.commission
            note = reason or "Refund"

            # Payee gives back what it received; InsufficientBalance aborts the whole refund
            if net > 0:
                await self.wallets.post_in_session(
                    session, payment.payee_id, WalletTransactionType.DEBIT, net,
                    f"Refund of payment #{payment.id}", reference,
                )
            if payment.commission > 0:
                await self.wallets.post_in_session(
                    session, Config.PLATFORM_REVENUE_ACCOUNT, WalletTransactionType.COMMISSION_DEDUCTED,
                    payment.commission, f"Commission reversed on refund of payment #{payment.id}", reference,
                )
            await self.wallets.post_in_session(
                session, payment.payer_id, WalletTransactionType.REFUND, payment.amount,
                f"Refund of payment #{payment.id}", reference,
            )

            now = utc_now()
            await payment_records.transition(session, payment, PaymentStatus.REFUNDED, note, refunded_at=now)

            refund_record = Payment(
                payer_id=payment.payee_id,
                payee_id=payment.payer_id,
                conversation_id=payment.conversation_id,
                gig_id=payment.gig_id,
                original_payment_id=payment.id,
                amount=payment.amount,
                platform_fee=0,
                commission=0,
                total_amount=payment.amount,
                currency=payment.currency,
                type=PaymentType.REFUND.value,
                status=PaymentStatus.PENDING.value,
                description=f"Refund of payment #{payment.id}" + (f": {reason}" if reason else ""),
                created_at=now,
                version=1,
            )
            await payment_records.record_created(session, refund_record, "Refund recorded")
            await payment_records.transition(session, refund_record, PaymentStatus.PROCESSING, "Refund posted to ledger")
            await payment_records.transition(
                session, refund_record, PaymentStatus.COMPLETED, "Refund credited to wallet", completed_at=now
            )
            return PaymentContext.from_payment(payment), PaymentContext.from_payment(refund_record)

    async def refund(self, payment_id: int, actor: Actor, reason: Optional[str] = None) -> PaymentContext:
        """Reverse a completed payment; the platform fee is retained"""
        original, refund_record = await self._refund_txn(payment_id, actor, reason)
        logger.info(
            f"↩️ ESCROW_ORCHESTRATOR: Payment {payment_id} refunded to {original.payer_id} "
            f"({original.amount}) by {actor.user_id}"
        )
        await self.event_bus.publish("payment.refunded", {
            "payment_id": payment_id,
            "refund_payment_id": refund_record.payment_id,
            "conversation_id": original.conversation_id,
            "payer_id": original.payer_id,
            "payee_id": original.payee_id,
            "amount": original.amount,
            "reason": reason,
        })
        return original

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: int) -> PaymentContext:
        async with self.db.managed_session() as session:
            return PaymentContext.from_payment(await payment_records.load_payment(session, payment_id))

    async def status_history(self, payment_id: int) -> List[StatusHistoryEntry]:
        async with self.db.managed_session() as session:
            await payment_records.load_payment(session, payment_id)
            rows = await payment_records.history(session, payment_id)
            return [StatusHistoryEntry(PaymentStatus(row.status), row.note, row.created_at) for row in rows]

    async def list_payments(
        self,
        user_id: str,
        as_payee: bool = False,
        type: Optional[PaymentType] = None,
        status: Optional[PaymentStatus] = None,
        limit: int = 10,
        skip: int = 0,
    ) -> payment_records.Page:
        """Payments the user made (or received, with as_payee), newest first"""
        party = Payment.payee_id if as_payee else Payment.payer_id
        conditions = [party == user_id]
        if type is not None:
            conditions.append(Payment.type == type.value)
        if status is not None:
            conditions.append(Payment.status == status.value)

        async with self.db.managed_session() as session:
            rows, total = await payment_records.page(session, conditions, limit, skip)
            items = [PaymentContext.from_payment(row) for row in rows]
        return payment_records.Page(items=items, total=total, limit=limit, skip=skip)

    async def payment_stats(self, user_id: str, timeframe: str = DEFAULT_STATS_TIMEFRAME) -> PaymentStats:
        """
        Totals over the user's payments, as payer or payee, created within the timeframe.

        Unknown timeframes fall back to the default window.
        """
        if timeframe not in STATS_TIMEFRAMES:
            timeframe = DEFAULT_STATS_TIMEFRAME
        since = utc_now() - timedelta(days=STATS_TIMEFRAMES[timeframe])
        conditions = [
            or_(Payment.payer_id == user_id, Payment.payee_id == user_id),
            Payment.created_at >= since,
        ]

        async with self.db.managed_session() as session:
            summary = await payment_records.status_totals(session, conditions)
            by_type = await payment_records.totals_by_type(session, conditions)
            recent, _ = await payment_records.page(session, conditions, limit=RECENT_PAYMENTS, skip=0)
            recent_contexts = [PaymentContext.from_payment(row) for row in recent]

        return PaymentStats(
            timeframe=timeframe,
            since=since,
            summary=summary,
            by_type={payment_type: TypeTotals(count, amount) for payment_type, (count, amount) in by_type.items()},
            recent=recent_contexts,
        )
