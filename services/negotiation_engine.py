"""
Negotiation Engine - proposal / counter-proposal / accept cycle inside a conversation

Each conversation holds at most one live (pending or accepted) negotiation.
A new proposal supersedes the live one; an accepted proposal fixes the agreed
amount and moves the conversation to payment_pending.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database import Database
from models import (
    Conversation, ConversationStatus, Negotiation, NegotiationStatus, ParticipantRole, Payment,
    PaymentStatus, PriceChangeType,
)
from services import payment_records
from services.event_bus import EventBus
from services.ledger_store import ensure_positive_amount
from utils.datetime_helpers import utc_now, is_past
from utils.error_handler import (
    ConversationClosed, ConversationNotFound, NegotiationExpired, NegotiationLocked, NoActiveNegotiation,
    NotAParticipant, PaymentAlreadyInFlight, SelfAcceptanceForbidden, SelfCounterForbidden, ValidationError,
)
from utils.fee_calculator import FeeCalculator
from utils.identity import Actor
from utils.optimistic_locking import apply_versioned, with_async_optimistic_locking
from utils.state_machines import ensure_transition, is_conversation_terminal

logger = logging.getLogger(__name__)

LIVE_STATUSES = (NegotiationStatus.PENDING.value, NegotiationStatus.ACCEPTED.value)


@dataclass(frozen=True)
class PriceChange:
    amount: int
    percentage: float
    type: PriceChangeType

    @classmethod
    def between(cls, previous: Optional[int], new: int) -> "PriceChange":
        if previous is None:
            return cls(0, 0.0, PriceChangeType.SAME)
        diff = new - previous
        if diff > 0:
            change_type = PriceChangeType.INCREASE
        elif diff < 0:
            change_type = PriceChangeType.DECREASE
        else:
            change_type = PriceChangeType.SAME
        return cls(abs(diff), FeeCalculator.price_change_percentage(previous, new), change_type)


@dataclass(frozen=True)
class NegotiationSnapshot:
    id: int
    conversation_id: int
    sequence: int
    proposed_price: int
    timeline: Optional[str]
    terms: Optional[str]
    proposed_by: ParticipantRole
    proposed_by_user_id: str
    status: NegotiationStatus
    previous_price: Optional[int]
    price_change: PriceChange
    proposed_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None
    responded_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_row(cls, row: Negotiation) -> "NegotiationSnapshot":
        return cls(
            id=row.id,
            conversation_id=row.conversation_id,
            sequence=row.sequence,
            proposed_price=row.proposed_price,
            timeline=row.timeline,
            terms=row.terms,
            proposed_by=ParticipantRole(row.proposed_by),
            proposed_by_user_id=row.proposed_by_user_id,
            status=NegotiationStatus(row.status),
            previous_price=row.previous_price,
            price_change=PriceChange(
                row.price_change_amount, float(row.price_change_percentage), PriceChangeType(row.price_change_type)
            ),
            proposed_at=row.proposed_at,
            expires_at=row.expires_at,
            responded_at=row.responded_at,
            responded_by=row.responded_by,
            rejection_reason=row.rejection_reason,
        )


@dataclass(frozen=True)
class ConversationSnapshot:
    id: int
    freelancer_id: str
    hiring_id: str
    gig_id: Optional[str]
    title: Optional[str]
    status: ConversationStatus
    current_negotiation_id: Optional[int]
    total_negotiations: int
    agreed_amount: Optional[int]
    platform_fee: Optional[int]
    total_payable: Optional[int]
    gateway_order_id: Optional[str]

    @classmethod
    def from_row(cls, row: Conversation) -> "ConversationSnapshot":
        return cls(
            id=row.id,
            freelancer_id=row.freelancer_id,
            hiring_id=row.hiring_id,
            gig_id=row.gig_id,
            title=row.title,
            status=ConversationStatus(row.status),
            current_negotiation_id=row.current_negotiation_id,
            total_negotiations=row.total_negotiations,
            agreed_amount=row.agreed_amount,
            platform_fee=row.platform_fee,
            total_payable=row.total_payable,
            gateway_order_id=row.gateway_order_id,
        )


async def load_conversation(session: AsyncSession, conversation_id: int) -> Conversation:
    conversation = await session.get(Conversation, conversation_id)
    if conversation is None:
        raise ConversationNotFound(f"Conversation {conversation_id} not found", conversation_id=conversation_id)
    return conversation


def ensure_participant(conversation: Conversation, actor: Actor, allow_admin: bool = False) -> None:
    """The actor must be the participant bound to actor.role"""
    if actor.is_admin and allow_admin:
        return
    bound_user = {
        ParticipantRole.FREELANCER: conversation.freelancer_id,
        ParticipantRole.HIRING: conversation.hiring_id,
    }.get(actor.role)
    if bound_user is None or bound_user != actor.user_id:
        logger.warning(
            f"🚫 NOT_A_PARTICIPANT: {actor.user_id} ({actor.role.value}) on conversation {conversation.id}"
        )
        raise NotAParticipant(
            f"{actor.user_id} is not the {actor.role.value} of conversation {conversation.id}",
            conversation_id=conversation.id,
        )


class NegotiationEngine:
    """Proposal protocol embedded in a conversation"""

    def __init__(self, db: Database, event_bus: EventBus):
        self.db = db
        self.event_bus = event_bus

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------

    async def open_conversation(
        self, freelancer_id: str, hiring_id: str, gig_id: Optional[str] = None, title: Optional[str] = None
    ) -> ConversationSnapshot:
        if freelancer_id == hiring_id:
            raise ValidationError("A conversation needs two different participants")

        async with self.db.managed_session() as session:
            conversation = Conversation(
                freelancer_id=freelancer_id,
                hiring_id=hiring_id,
                gig_id=gig_id,
                title=title,
                status=ConversationStatus.ACTIVE.value,
                total_negotiations=0,
                version=1,
            )
            session.add(conversation)
            await session.flush()
            snapshot = ConversationSnapshot.from_row(conversation)

        logger.info(f"💬 CONVERSATION_OPENED: {snapshot.id} freelancer={freelancer_id} hiring={hiring_id}")
        return snapshot

    async def get_conversation(self, conversation_id: int) -> ConversationSnapshot:
        async with self.db.managed_session() as session:
            return ConversationSnapshot.from_row(await load_conversation(session, conversation_id))

    @with_async_optimistic_locking()
    async def close_conversation(self, conversation_id: int, actor: Actor) -> ConversationSnapshot:
        async with self.db.managed_session() as session:
            conversation = await load_conversation(session, conversation_id)
            ensure_participant(conversation, actor, allow_admin=True)

            if is_conversation_terminal(conversation.status):
                raise ConversationClosed(f"Conversation {conversation_id} is already {conversation.status}")

            await payment_records.abandon_reservations(
                session, conversation_id, f"Conversation closed by {actor.user_id}"
            )
            in_flight = await session.execute(
                select(Payment.id).where(
                    Payment.conversation_id == conversation_id,
                    Payment.status.in_((PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)),
                )
            )
            if conversation.status == ConversationStatus.PAYMENT_PROCESSING.value or in_flight.first():
                raise PaymentAlreadyInFlight(
                    f"Conversation {conversation_id} has a payment in flight", conversation_id=conversation_id
                )

            await apply_versioned(session, conversation, status=ConversationStatus.CLOSED.value)

            current = await self._current_row(session, conversation)
            if current is not None and current.status == NegotiationStatus.PENDING.value:
                current.status = NegotiationStatus.REJECTED.value
                current.responded_at = utc_now()
                current.responded_by = actor.user_id
                current.rejection_reason = "Conversation closed"

            snapshot = ConversationSnapshot.from_row(conversation)

        logger.info(f"💬 CONVERSATION_CLOSED: {conversation_id} by {actor.user_id}")
        await self.event_bus.publish("conversation.closed", {"conversation_id": conversation_id, "by": actor.user_id})
        return snapshot

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    async def _current_row(self, session: AsyncSession, conversation: Conversation) -> Optional[Negotiation]:
        if conversation.current_negotiation_id is None:
            return None
        return await session.get(Negotiation, conversation.current_negotiation_id)

    async def _last_row(self, session: AsyncSession, conversation_id: int) -> Optional[Negotiation]:
        result = await session.execute(
            select(Negotiation)
            .where(Negotiation.conversation_id == conversation_id)
            .order_by(Negotiation.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @with_async_optimistic_locking()
    async def _propose_txn(
        self,
        conversation_id: int,
        actor: Actor,
        price: int,
        timeline: Optional[str],
        terms: Optional[str],
        is_counter: bool,
    ) -> NegotiationSnapshot:
        async with self.db.managed_session() as session:
            conversation = await load_conversation(session, conversation_id)
            ensure_participant(conversation, actor)

            if is_conversation_terminal(conversation.status):
                raise ConversationClosed(f"Conversation {conversation_id} is {conversation.status}")
            if conversation.status == ConversationStatus.PAYMENT_PROCESSING.value:
                raise NegotiationLocked(
                    f"Conversation {conversation_id} has a payment in progress", conversation_id=conversation_id
                )

            current = await self._current_row(session, conversation)

            if is_counter:
                if current is None or current.status != NegotiationStatus.PENDING.value:
                    raise NoActiveNegotiation(f"Nothing to counter in conversation {conversation_id}")
                if current.proposed_by == actor.role.value:
                    raise SelfCounterForbidden("You cannot counter your own proposal")

            last = await self._last_row(session, conversation_id)
            previous_price = last.proposed_price if last is not None else conversation.agreed_amount

            # Claim the conversation row first; a concurrent proposer loses here
            sequence = conversation.total_negotiations + 1
            await apply_versioned(
                session, conversation,
                status=ConversationStatus.ACTIVE.value,
                total_negotiations=sequence,
                agreed_amount=None,
            )

            now = utc_now()
            if current is not None and current.status == NegotiationStatus.ACCEPTED.value:
                # The agreed price is gone; a reservation made for it can no longer be checked out
                await payment_records.abandon_reservations(
                    session, conversation_id, f"Agreed price superseded by a new proposal from {actor.user_id}"
                )
            if current is not None and current.status in LIVE_STATUSES:
                ensure_transition("negotiation", current.status, NegotiationStatus.SUPERSEDED.value, current.id)
                current.status = NegotiationStatus.SUPERSEDED.value
                current.responded_at = now
                current.responded_by = actor.user_id
                await session.flush()

            change = PriceChange.between(previous_price, price)
            negotiation = Negotiation(
                conversation_id=conversation_id,
                sequence=sequence,
                proposed_price=price,
                timeline=timeline,
                terms=terms,
                proposed_by=actor.role.value,
                proposed_by_user_id=actor.user_id,
                status=NegotiationStatus.PENDING.value,
                previous_price=previous_price,
                price_change_amount=change.amount,
                price_change_percentage=change.percentage,
                price_change_type=change.type.value,
                proposed_at=now,
                expires_at=now + timedelta(days=Config.NEGOTIATION_EXPIRY_DAYS),
            )
            session.add(negotiation)
            await session.flush()

            await apply_versioned(session, conversation, current_negotiation_id=negotiation.id)
            return NegotiationSnapshot.from_row(negotiation)

    async def propose(
        self,
        conversation_id: int,
        actor: Actor,
        price: int,
        timeline: Optional[str] = None,
        terms: Optional[str] = None,
    ) -> NegotiationSnapshot:
        ensure_positive_amount(price)
        snapshot = await self._propose_txn(conversation_id, actor, price, timeline, terms, False)

        logger.info(
            f"🤝 NEGOTIATION_PROPOSED: conversation {conversation_id} #{snapshot.sequence} "
            f"{actor.role.value} {actor.user_id} → {price} ({snapshot.price_change.type.value})"
        )
        await self.event_bus.publish("negotiation.proposed", self._event_payload(snapshot))
        return snapshot

    async def counter(
        self,
        conversation_id: int,
        actor: Actor,
        price: int,
        timeline: Optional[str] = None,
        terms: Optional[str] = None,
    ) -> NegotiationSnapshot:
        ensure_positive_amount(price)
        snapshot = await self._propose_txn(conversation_id, actor, price, timeline, terms, True)

        logger.info(
            f"🤝 NEGOTIATION_COUNTERED: conversation {conversation_id} #{snapshot.sequence} "
            f"{actor.role.value} {actor.user_id} → {price}"
        )
        payload = self._event_payload(snapshot)
        await self.event_bus.publish("negotiation.proposed", payload)
        await self.event_bus.publish("negotiation.countered", payload)
        return snapshot

    @with_async_optimistic_locking()
    async def _accept_txn(self, conversation_id: int, actor: Actor) -> NegotiationSnapshot:
        async with self.db.managed_session() as session:
            conversation = await load_conversation(session, conversation_id)
            ensure_participant(conversation, actor)

            current = await self._current_row(session, conversation)
            if current is not None and current.status == NegotiationStatus.EXPIRED.value:
                raise NegotiationExpired(f"Negotiation {current.id} expired", negotiation_id=current.id)
            if current is None or current.status != NegotiationStatus.PENDING.value:
                raise NoActiveNegotiation(f"No pending proposal in conversation {conversation_id}")
            if is_past(current.expires_at):
                raise NegotiationExpired(f"Negotiation {current.id} expired", negotiation_id=current.id)
            if current.proposed_by == actor.role.value:
                logger.warning(f"🚫 SELF_ACCEPTANCE: {actor.user_id} tried to accept own proposal {current.id}")
                raise SelfAcceptanceForbidden("You cannot accept your own proposal")

            await apply_versioned(
                session, conversation,
                status=ConversationStatus.PAYMENT_PENDING.value,
                agreed_amount=current.proposed_price,
            )
            ensure_transition("negotiation", current.status, NegotiationStatus.ACCEPTED.value, current.id)
            current.status = NegotiationStatus.ACCEPTED.value
            current.responded_at = utc_now()
            current.responded_by = actor.user_id
            await session.flush()
            return NegotiationSnapshot.from_row(current)

    async def accept(self, conversation_id: int, actor: Actor) -> NegotiationSnapshot:
        snapshot = await self._accept_txn(conversation_id, actor)
        logger.info(
            f"✅ NEGOTIATION_ACCEPTED: conversation {conversation_id} agreed at {snapshot.proposed_price} "
            f"by {actor.user_id}"
        )
        await self.event_bus.publish("negotiation.accepted", {
            **self._event_payload(snapshot), "agreed_amount": snapshot.proposed_price,
        })
        return snapshot

    @with_async_optimistic_locking()
    async def _reject_txn(self, conversation_id: int, actor: Actor, reason: Optional[str]) -> NegotiationSnapshot:
        async with self.db.managed_session() as session:
            conversation = await load_conversation(session, conversation_id)
            ensure_participant(conversation, actor)

            current = await self._current_row(session, conversation)
            if current is None or current.status != NegotiationStatus.PENDING.value:
                raise NoActiveNegotiation(f"No pending proposal in conversation {conversation_id}")

            await apply_versioned(
                session, conversation,
                status=ConversationStatus.ACTIVE.value,
                current_negotiation_id=None,
            )
            ensure_transition("negotiation", current.status, NegotiationStatus.REJECTED.value, current.id)
            current.status = NegotiationStatus.REJECTED.value
            current.responded_at = utc_now()
            current.responded_by = actor.user_id
            current.rejection_reason = reason
            await session.flush()
            return NegotiationSnapshot.from_row(current)

    async def reject(self, conversation_id: int, actor: Actor, reason: Optional[str] = None) -> NegotiationSnapshot:
        snapshot = await self._reject_txn(conversation_id, actor, reason)
        logger.info(f"❌ NEGOTIATION_REJECTED: conversation {conversation_id} #{snapshot.sequence} by {actor.user_id}")
        await self.event_bus.publish("negotiation.rejected", {**self._event_payload(snapshot), "reason": reason})
        return snapshot

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def history(self, conversation_id: int, actor: Actor) -> List[NegotiationSnapshot]:
        async with self.db.managed_session() as session:
            conversation = await load_conversation(session, conversation_id)
            ensure_participant(conversation, actor, allow_admin=True)
            result = await session.execute(
                select(Negotiation)
                .where(Negotiation.conversation_id == conversation_id)
                .order_by(Negotiation.sequence)
            )
            return [NegotiationSnapshot.from_row(row) for row in result.scalars().all()]

    async def current(self, conversation_id: int) -> Optional[NegotiationSnapshot]:
        async with self.db.managed_session() as session:
            conversation = await load_conversation(session, conversation_id)
            row = await self._current_row(session, conversation)
            return NegotiationSnapshot.from_row(row) if row is not None else None

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Mark pending negotiations past expires_at as expired; safe to run concurrently"""
        now = now or utc_now()
        async with self.db.managed_session() as session:
            candidates = await session.execute(
                select(Negotiation.id, Negotiation.conversation_id).where(
                    Negotiation.status == NegotiationStatus.PENDING.value,
                    Negotiation.expires_at < now,
                )
            )
            rows = candidates.all()
            if not rows:
                return 0

            result = await session.execute(
                update(Negotiation)
                .where(
                    Negotiation.id.in_([row.id for row in rows]),
                    Negotiation.status == NegotiationStatus.PENDING.value,
                    Negotiation.expires_at < now,
                )
                .values(status=NegotiationStatus.EXPIRED.value, responded_at=now)
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount

        if expired:
            logger.info(f"⏳ NEGOTIATION_EXPIRY: {expired} stale proposals expired")
            await self.event_bus.publish("negotiation.expired", {
                "count": expired,
                "negotiations": [{"id": row.id, "conversation_id": row.conversation_id} for row in rows],
            })
        return expired

    @staticmethod
    def _event_payload(snapshot: NegotiationSnapshot) -> dict:
        return {
            "conversation_id": snapshot.conversation_id,
            "negotiation_id": snapshot.id,
            "sequence": snapshot.sequence,
            "price": snapshot.proposed_price,
            "proposed_by": snapshot.proposed_by.value,
            "proposed_by_user_id": snapshot.proposed_by_user_id,
            "status": snapshot.status.value,
            "price_change": {
                "amount": snapshot.price_change.amount,
                "percentage": snapshot.price_change.percentage,
                "type": snapshot.price_change.type.value,
            },
        }
