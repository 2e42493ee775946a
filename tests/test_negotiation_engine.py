"""
Test Negotiation Engine
Proposal / counter / accept / reject cycle and the one-live-negotiation rule
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from models import ConversationStatus, Negotiation, NegotiationStatus, PriceChangeType
from utils.datetime_helpers import utc_now
from utils.error_handler import (
    ConversationClosed, InvalidAmount, NegotiationExpired, NoActiveNegotiation, NotAParticipant,
    SelfAcceptanceForbidden, SelfCounterForbidden, ValidationError,
)
from tests.ledger_test_foundation import ADMIN, FREELANCER, HIRING, STRANGER


async def live_negotiations(db, conversation_id):
    async with db.managed_session() as session:
        result = await session.execute(
            select(Negotiation).where(
                Negotiation.conversation_id == conversation_id,
                Negotiation.status.in_([NegotiationStatus.PENDING.value, NegotiationStatus.ACCEPTED.value]),
            )
        )
        return result.scalars().all()


class TestProposals:
    """Test propose and counter"""

    @pytest.mark.asyncio
    async def test_first_proposal_has_no_price_change(self, negotiations, conversation, recorder):
        """Test the opening proposal starts the history"""
        snapshot = await negotiations.propose(conversation.id, FREELANCER, 5000, timeline="2 weeks")

        assert snapshot.sequence == 1
        assert snapshot.status == NegotiationStatus.PENDING
        assert snapshot.previous_price is None
        assert snapshot.price_change.type == PriceChangeType.SAME
        assert snapshot.expires_at > snapshot.proposed_at
        assert recorder.names() == ["negotiation.proposed"]

        current = await negotiations.get_conversation(conversation.id)
        assert current.status == ConversationStatus.ACTIVE
        assert current.current_negotiation_id == snapshot.id
        assert current.total_negotiations == 1

    @pytest.mark.asyncio
    async def test_counter_supersedes_and_tracks_price_change(self, negotiations, conversation, recorder):
        """Test a counter-proposal supersedes the previous one"""
        first = await negotiations.propose(conversation.id, FREELANCER, 5000)
        second = await negotiations.counter(conversation.id, HIRING, 4500)

        assert second.previous_price == 5000
        assert second.price_change.amount == 500
        assert second.price_change.percentage == 10.0
        assert second.price_change.type == PriceChangeType.DECREASE

        history = await negotiations.history(conversation.id, HIRING)
        assert [n.status for n in history] == [NegotiationStatus.SUPERSEDED, NegotiationStatus.PENDING]
        assert history[0].id == first.id
        assert "negotiation.countered" in recorder.names()

    @pytest.mark.asyncio
    async def test_non_positive_price_rejected(self, negotiations, conversation):
        """Test prices must be positive whole numbers"""
        for price in (0, -10, 12.5, True):
            with pytest.raises(InvalidAmount):
                await negotiations.propose(conversation.id, FREELANCER, price)

    @pytest.mark.asyncio
    async def test_outsider_cannot_propose(self, negotiations, conversation):
        """Test only the two participants can propose"""
        with pytest.raises(NotAParticipant):
            await negotiations.propose(conversation.id, STRANGER, 1000)

    @pytest.mark.asyncio
    async def test_cannot_counter_own_proposal(self, negotiations, conversation):
        """Test countering your own proposal is refused"""
        await negotiations.propose(conversation.id, FREELANCER, 5000)
        with pytest.raises(SelfCounterForbidden):
            await negotiations.counter(conversation.id, FREELANCER, 4800)

    @pytest.mark.asyncio
    async def test_counter_without_pending_proposal(self, negotiations, conversation):
        """Test counter needs something to counter"""
        with pytest.raises(NoActiveNegotiation):
            await negotiations.counter(conversation.id, HIRING, 4800)

    @pytest.mark.asyncio
    async def test_same_participant_on_both_sides_refused(self, negotiations):
        """Test a conversation needs two different users"""
        with pytest.raises(ValidationError):
            await negotiations.open_conversation("user_1", "user_1")


class TestAcceptReject:
    """Test accept and reject"""

    @pytest.mark.asyncio
    async def test_freelancer_accepts_hiring_counter(self, negotiations, agreed_conversation, recorder):
        """Test accepting the other side's proposal fixes the agreed amount"""
        current = await negotiations.current(agreed_conversation.id)
        conversation = await negotiations.get_conversation(agreed_conversation.id)

        assert current.status == NegotiationStatus.ACCEPTED
        assert current.proposed_price == 4500
        assert conversation.status == ConversationStatus.PAYMENT_PENDING
        assert conversation.agreed_amount == 4500
        assert recorder.of("negotiation.accepted")[0].payload["agreed_amount"] == 4500

    @pytest.mark.asyncio
    async def test_cannot_accept_own_proposal(self, negotiations, conversation):
        """Test self-acceptance is forbidden"""
        await negotiations.propose(conversation.id, HIRING, 4500)
        with pytest.raises(SelfAcceptanceForbidden):
            await negotiations.accept(conversation.id, HIRING)

        current = await negotiations.current(conversation.id)
        assert current.status == NegotiationStatus.PENDING

    @pytest.mark.asyncio
    async def test_accept_without_proposal(self, negotiations, conversation):
        """Test accept needs a pending proposal"""
        with pytest.raises(NoActiveNegotiation):
            await negotiations.accept(conversation.id, FREELANCER)

    @pytest.mark.asyncio
    async def test_accept_twice_fails(self, negotiations, agreed_conversation):
        """Test an accepted proposal cannot be accepted again"""
        with pytest.raises(NoActiveNegotiation):
            await negotiations.accept(agreed_conversation.id, FREELANCER)

    @pytest.mark.asyncio
    async def test_reject_keeps_conversation_active(self, negotiations, conversation, recorder):
        """Test rejection leaves the conversation open for new proposals"""
        await negotiations.propose(conversation.id, FREELANCER, 5000)
        rejected = await negotiations.reject(conversation.id, HIRING, reason="Too expensive")

        assert rejected.status == NegotiationStatus.REJECTED
        assert rejected.rejection_reason == "Too expensive"

        current = await negotiations.get_conversation(conversation.id)
        assert current.status == ConversationStatus.ACTIVE
        assert current.current_negotiation_id is None
        assert await negotiations.current(conversation.id) is None
        assert "negotiation.rejected" in recorder.names()

    @pytest.mark.asyncio
    async def test_new_proposal_after_accept_reopens_negotiation(self, negotiations, agreed_conversation):
        """Test proposing after agreement supersedes the accepted proposal"""
        snapshot = await negotiations.propose(agreed_conversation.id, HIRING, 4000)

        conversation = await negotiations.get_conversation(agreed_conversation.id)
        assert conversation.status == ConversationStatus.ACTIVE
        assert conversation.agreed_amount is None
        assert snapshot.previous_price == 4500

        history = await negotiations.history(agreed_conversation.id, ADMIN)
        assert [n.status for n in history] == [
            NegotiationStatus.SUPERSEDED, NegotiationStatus.SUPERSEDED, NegotiationStatus.PENDING,
        ]

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_history(self, negotiations, conversation):
        """Test history is restricted to participants and admins"""
        with pytest.raises(NotAParticipant):
            await negotiations.history(conversation.id, STRANGER)


class TestConversationClose:
    """Test closing a conversation"""

    @pytest.mark.asyncio
    async def test_close_rejects_pending_and_blocks_proposals(self, negotiations, conversation):
        """Test a closed conversation is terminal"""
        await negotiations.propose(conversation.id, FREELANCER, 5000)
        closed = await negotiations.close_conversation(conversation.id, HIRING)

        assert closed.status == ConversationStatus.CLOSED
        history = await negotiations.history(conversation.id, HIRING)
        assert history[0].status == NegotiationStatus.REJECTED

        with pytest.raises(ConversationClosed):
            await negotiations.propose(conversation.id, FREELANCER, 4000)


class TestExpiry:
    """Test stale proposal expiry"""

    @pytest.mark.asyncio
    async def test_expired_proposal_cannot_be_accepted(self, negotiations, conversation, recorder):
        """Test the sweep expires stale proposals and accept then fails"""
        await negotiations.propose(conversation.id, FREELANCER, 5000)

        expired = await negotiations.expire_stale(now=utc_now() + timedelta(days=8))
        assert expired == 1
        assert recorder.of("negotiation.expired")[0].payload["count"] == 1

        with pytest.raises(NegotiationExpired):
            await negotiations.accept(conversation.id, HIRING)

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, negotiations, conversation):
        """Test running the sweep twice expires nothing new"""
        await negotiations.propose(conversation.id, FREELANCER, 5000)
        later = utc_now() + timedelta(days=8)

        assert await negotiations.expire_stale(now=later) == 1
        assert await negotiations.expire_stale(now=later) == 0

    @pytest.mark.asyncio
    async def test_fresh_proposal_not_expired(self, negotiations, conversation):
        """Test proposals inside their window are left alone"""
        await negotiations.propose(conversation.id, FREELANCER, 5000)
        assert await negotiations.expire_stale() == 0


class TestConcurrentProposals:
    """Test concurrent proposals on one conversation"""

    @pytest.mark.asyncio
    async def test_concurrent_proposals_keep_one_live_negotiation(self, db, negotiations, conversation):
        """Test two simultaneous proposals serialize without a lost update"""
        await asyncio.gather(
            negotiations.propose(conversation.id, FREELANCER, 5000),
            negotiations.propose(conversation.id, HIRING, 4500),
        )

        live = await live_negotiations(db, conversation.id)
        assert len(live) == 1, "Exactly one negotiation may be pending or accepted"

        history = await negotiations.history(conversation.id, ADMIN)
        assert [n.sequence for n in history] == [1, 2]
        assert history[0].status == NegotiationStatus.SUPERSEDED
        assert history[1].previous_price == history[0].proposed_price

        current = await negotiations.get_conversation(conversation.id)
        assert current.total_negotiations == 2
        assert current.current_negotiation_id == history[1].id
