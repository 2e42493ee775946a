"""
Test Optimistic Locking and Transition Tables
Version-checked updates, bounded retries and state machine guards
"""

import pytest
from sqlalchemy import update

from models import Conversation, ConversationStatus, PaymentStatus
from services.negotiation_engine import load_conversation
from utils.error_handler import ConcurrentModification, ErrorResponseBuilder, InvalidTransition, NotAParticipant
from utils.optimistic_locking import (
    OptimisticLockingError, apply_versioned, versioned_update, with_async_optimistic_locking,
)
from utils.state_machines import ensure_transition, is_terminal_state, is_valid_transition


class TestVersionedUpdate:
    """Test conditional writes on the version column"""

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, db, conversation):
        async with db.managed_session() as session:
            new_version = await versioned_update(
                session, Conversation, conversation.id, 1, {"title": "Renamed"}
            )
            assert new_version == 2

        with pytest.raises(OptimisticLockingError):
            async with db.managed_session() as session:
                await versioned_update(session, Conversation, conversation.id, 1, {"title": "Stale"})

        async with db.managed_session() as session:
            row = await load_conversation(session, conversation.id)
            assert (row.title, row.version) == ("Renamed", 2)

    @pytest.mark.asyncio
    async def test_apply_versioned_keeps_entity_in_step(self, db, conversation):
        async with db.managed_session() as session:
            row = await load_conversation(session, conversation.id)
            await apply_versioned(session, row, status=ConversationStatus.PAYMENT_PENDING.value)
            await apply_versioned(session, row, agreed_amount=4500)
            assert row.version == 3
            assert row.agreed_amount == 4500


class TestRetryDecorator:
    """Test whole-unit retries"""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        calls = []

        @with_async_optimistic_locking(max_retries=3, retry_delay=0)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OptimisticLockingError("conflict")
            return "done"

        assert await flaky() == "done"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_concurrent_modification(self):
        @with_async_optimistic_locking(max_retries=2, retry_delay=0)
        async def always_conflicts():
            raise OptimisticLockingError("conflict")

        with pytest.raises(ConcurrentModification):
            await always_conflicts()

    @pytest.mark.asyncio
    async def test_domain_errors_not_retried(self):
        calls = []

        @with_async_optimistic_locking(max_retries=3, retry_delay=0)
        async def refuses():
            calls.append(1)
            raise NotAParticipant("nope")

        with pytest.raises(NotAParticipant):
            await refuses()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_lost_race_is_retried_against_fresh_state(self, db, conversation):
        """Test a unit of work that loses a version race re-reads and wins"""
        attempts = []

        @with_async_optimistic_locking(max_retries=2, retry_delay=0)
        async def rename():
            async with db.managed_session() as session:
                row = await load_conversation(session, conversation.id)
                attempts.append(row.version)
                if len(attempts) == 1:
                    # Another writer commits first; the loaded row still holds the old version
                    await session.execute(
                        update(Conversation).where(Conversation.id == conversation.id).values(version=row.version + 1)
                    )
                    await session.commit()
                await apply_versioned(session, row, title="Renamed")

        await rename()
        assert attempts == [1, 2]


class TestTransitionTables:
    """Test the status machines"""

    def test_payment_transitions(self):
        allowed = [
            (None, "pending"), ("pending", "processing"), ("processing", "completed"),
            ("pending", "failed"), ("processing", "failed"), ("completed", "refunded"),
        ]
        for current, new in allowed:
            assert is_valid_transition("payment", current, new), f"{current} -> {new} should be allowed"

        for current, new in [("pending", "completed"), ("failed", "pending"), ("refunded", "completed"),
                             ("completed", "failed"), ("pending", "refunded")]:
            with pytest.raises(InvalidTransition):
                ensure_transition("payment", current, new)

    def test_terminal_states(self):
        assert is_terminal_state("payment", PaymentStatus.REFUNDED.value)
        assert is_terminal_state("payment", PaymentStatus.FAILED.value)
        assert not is_terminal_state("payment", PaymentStatus.COMPLETED.value)
        assert is_terminal_state("negotiation", "superseded")


class TestErrorResponses:
    """Test error to response mapping"""

    def test_ledger_error_body(self):
        error = ErrorResponseBuilder.from_exception(NotAParticipant("user_9 is not in conversation 3"))
        body = ErrorResponseBuilder.to_response_body(error)

        assert ErrorResponseBuilder.http_status(error) == 403
        assert body["success"] is False
        assert body["error"]["code"] == "3005"
        assert body["error"]["category"] == "authorization"

    def test_unexpected_error_is_system(self):
        error = ErrorResponseBuilder.from_exception(RuntimeError("boom"))
        assert ErrorResponseBuilder.http_status(error) == 500
        assert error.message == "Internal error"
