"""
Test Escrow Payment Orchestrator
Initiate, capture confirmation, webhooks, failure and refund against the wallet ledger
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from config import Config
from models import ConversationStatus, Payment, PaymentStatus, PaymentType, ProjectStatus, WalletTransactionType
from services.escrow_orchestrator import TypeTotals, WebhookAction
from services.payment_gateway import PayoutDestination
from utils.datetime_helpers import utc_now
from utils.error_handler import (
    ConversationNotFound, GatewayTimeout, GatewayUnavailable, InsufficientBalance, InvalidSignature, InvalidTransition,
    InvalidWebhookPayload, NegotiationLocked, NoAgreedAmount, NotAParticipant, PaymentAlreadyInFlight,
    RoleNotAllowed, WalletBlocked, WalletNotFound,
)
from tests.ledger_test_foundation import (
    ADMIN, FREELANCER, HIRING, STRANGER, capture_signature, webhook_body, webhook_signature,
)


async def initiate_and_capture(escrow, conversation_id):
    context = await escrow.initiate(conversation_id, HIRING)
    signature = capture_signature(context.gateway_order_id, "pay_1")
    return await escrow.confirm_capture(context.gateway_order_id, signature, "pay_1")


class TestInitiate:
    """Test payment initiation"""

    @pytest.mark.asyncio
    async def test_initiate_computes_fee_and_creates_order(
        self, escrow, negotiations, gateway, agreed_conversation, recorder
    ):
        """Test 4500 at 5% becomes fee 225 and total 4725, order in minor units"""
        context = await escrow.initiate(agreed_conversation.id, HIRING)

        assert context.amount == 4500
        assert context.platform_fee == 225
        assert context.total_payable == 4725
        assert context.status == PaymentStatus.PENDING
        assert context.payer_id == HIRING.user_id
        assert context.payee_id == FREELANCER.user_id
        assert context.gateway_order_id == gateway.orders[0].order_id
        assert gateway.orders[0].amount_minor == 472500
        assert gateway.orders[0].receipt == context.receipt

        conversation = await negotiations.get_conversation(agreed_conversation.id)
        assert conversation.status == ConversationStatus.PAYMENT_PROCESSING
        assert conversation.agreed_amount == 4500
        assert conversation.platform_fee == 225
        assert conversation.total_payable == 4725
        assert conversation.gateway_order_id == context.gateway_order_id
        assert "payment.initiated" in recorder.names()

    @pytest.mark.asyncio
    async def test_initiate_without_agreement(self, escrow, conversation):
        """Test initiate needs an accepted proposal or an explicit amount"""
        with pytest.raises(NoAgreedAmount):
            await escrow.initiate(conversation.id, HIRING)

    @pytest.mark.asyncio
    async def test_amount_override(self, escrow, conversation):
        """Test an explicit amount bypasses the agreed price"""
        context = await escrow.initiate(conversation.id, HIRING, amount_override=1000)
        assert context.amount == 1000
        assert context.platform_fee == 50
        assert context.total_payable == 1050

    @pytest.mark.asyncio
    async def test_only_hiring_party_initiates(self, escrow, agreed_conversation):
        """Test freelancers and outsiders cannot start a payment"""
        with pytest.raises(RoleNotAllowed):
            await escrow.initiate(agreed_conversation.id, FREELANCER)
        with pytest.raises(NotAParticipant):
            await escrow.initiate(agreed_conversation.id, STRANGER)

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, escrow):
        with pytest.raises(ConversationNotFound):
            await escrow.initiate(999, HIRING)

    @pytest.mark.asyncio
    async def test_second_initiate_while_in_flight(self, escrow, agreed_conversation):
        """Test at most one payment in flight per conversation"""
        await escrow.initiate(agreed_conversation.id, HIRING)
        with pytest.raises(PaymentAlreadyInFlight):
            await escrow.initiate(agreed_conversation.id, HIRING, amount_override=4500)

    @pytest.mark.asyncio
    async def test_negotiation_locked_during_checkout(self, escrow, negotiations, agreed_conversation):
        """Test no new proposals while a payment is processing"""
        await escrow.initiate(agreed_conversation.id, HIRING)
        with pytest.raises(NegotiationLocked):
            await negotiations.propose(agreed_conversation.id, FREELANCER, 6000)

    @pytest.mark.asyncio
    async def test_gateway_unavailable_leaves_conversation_retryable(
        self, escrow, negotiations, gateway, agreed_conversation
    ):
        """Test a failed order creation keeps payment_pending and allows a retry"""
        gateway.order_error = GatewayUnavailable("Gateway returned 502")
        with pytest.raises(GatewayUnavailable):
            await escrow.initiate(agreed_conversation.id, HIRING)

        conversation = await negotiations.get_conversation(agreed_conversation.id)
        assert conversation.status == ConversationStatus.PAYMENT_PENDING

        gateway.order_error = None
        context = await escrow.initiate(agreed_conversation.id, HIRING)
        assert context.status == PaymentStatus.PENDING
        assert context.gateway_order_id is not None

    @pytest.mark.asyncio
    async def test_gateway_timeout_leaves_reservation_pending(self, escrow, gateway, agreed_conversation):
        """Test a timeout is not treated as a failure and the reservation is reused"""
        gateway.order_error = GatewayTimeout("Gateway timed out on /orders")
        with pytest.raises(GatewayTimeout):
            await escrow.initiate(agreed_conversation.id, HIRING)

        gateway.order_error = None
        context = await escrow.initiate(agreed_conversation.id, HIRING)

        history = await escrow.status_history(context.payment_id)
        assert [entry.status for entry in history] == [PaymentStatus.PENDING]
        assert context.payment_id == 1, "The timed-out reservation is reused, not duplicated"

    @pytest.mark.asyncio
    async def test_concurrent_initiates_create_one_order(
        self, escrow, negotiations, gateway, agreed_conversation
    ):
        """Test two simultaneous initiates: one checks out, the other is told a payment is in flight"""
        gateway.order_delay = 0.05

        results = await asyncio.gather(
            escrow.initiate(agreed_conversation.id, HIRING),
            escrow.initiate(agreed_conversation.id, HIRING),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, PaymentAlreadyInFlight)]
        contexts = [r for r in results if not isinstance(r, Exception)]
        assert len(rejected) == 1, f"Expected one rejection, got {results}"
        assert len(contexts) == 1
        assert gateway.order_calls == 1
        assert len(gateway.orders) == 1

        context = contexts[0]
        assert context.status == PaymentStatus.PENDING
        assert context.gateway_order_id == gateway.orders[0].order_id
        conversation = await negotiations.get_conversation(agreed_conversation.id)
        assert conversation.status == ConversationStatus.PAYMENT_PROCESSING

        signature = capture_signature(context.gateway_order_id, "pay_1")
        captured = await escrow.confirm_capture(context.gateway_order_id, signature, "pay_1")
        assert captured.status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_slow_gateway_is_bounded_by_timeout(
        self, escrow, negotiations, gateway, agreed_conversation, monkeypatch
    ):
        """Test an order call slower than the configured timeout raises GatewayTimeout and can be retried"""
        monkeypatch.setattr(Config, "GATEWAY_TIMEOUT_SECONDS", 0.05)
        gateway.order_delay = 0.5

        with pytest.raises(GatewayTimeout):
            await escrow.initiate(agreed_conversation.id, HIRING)

        assert gateway.orders == []
        payment = await escrow.get_payment(1)
        assert payment.status == PaymentStatus.PENDING
        assert payment.gateway_order_id is None
        conversation = await negotiations.get_conversation(agreed_conversation.id)
        assert conversation.status == ConversationStatus.PAYMENT_PENDING

        gateway.order_delay = 0
        context = await escrow.initiate(agreed_conversation.id, HIRING)
        assert context.payment_id == payment.payment_id
        assert context.gateway_order_id == gateway.orders[0].order_id

    @pytest.mark.asyncio
    async def test_order_is_never_attached_twice(self, escrow, agreed_conversation):
        """Test a second order for an already attached payment is refused without touching it"""
        context = await escrow.initiate(agreed_conversation.id, HIRING)

        with pytest.raises(PaymentAlreadyInFlight):
            await escrow._attach_order_txn(context.payment_id, "order_other", True)

        payment = await escrow.get_payment(context.payment_id)
        assert payment.status == PaymentStatus.PENDING
        assert payment.gateway_order_id == context.gateway_order_id

class TestConfirmCapture:
    """Test capture confirmation and settlement"""

    @pytest.mark.asyncio
    async def test_capture_settles_through_ledger(
        self, escrow, wallets, negotiations, agreed_conversation, recorder
    ):
        """Test a verified capture pays the freelancer net of commission"""
        context = await initiate_and_capture(escrow, agreed_conversation.id)

        assert context.status == PaymentStatus.COMPLETED
        assert context.commission == 225
        assert context.completed_at is not None

        freelancer = await wallets.get_wallet(FREELANCER.user_id)
        assert freelancer.balance == 4275
        assert freelancer.total_earned == 4275

        revenue = await wallets.get_wallet(Config.PLATFORM_REVENUE_ACCOUNT)
        assert revenue.balance == 450, "Platform fee plus commission"

        escrow_wallet = await wallets.get_wallet(Config.PLATFORM_ESCROW_ACCOUNT)
        assert escrow_wallet.balance == 0

        for user_id in (FREELANCER.user_id, Config.PLATFORM_REVENUE_ACCOUNT, Config.PLATFORM_ESCROW_ACCOUNT):
            await wallets.audit_balance(user_id)

        conversation = await negotiations.get_conversation(agreed_conversation.id)
        assert conversation.status == ConversationStatus.COMPLETED

        history = await escrow.status_history(context.payment_id)
        assert [entry.status for entry in history] == [
            PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED,
        ]
        completed_event = recorder.of("payment.completed")[0]
        assert completed_event.payload["net_to_payee"] == 4275

    @pytest.mark.asyncio
    async def test_forged_signature_never_credits(self, escrow, wallets, agreed_conversation):
        """Test a mismatched signature leaves the payment pending and no wallet moves"""
        context = await escrow.initiate(agreed_conversation.id, HIRING)

        with pytest.raises(InvalidSignature):
            await escrow.confirm_capture(context.gateway_order_id, "deadbeef" * 8, "pay_1")

        payment = await escrow.get_payment(context.payment_id)
        assert payment.status == PaymentStatus.PENDING
        with pytest.raises(WalletNotFound):
            await wallets.get_wallet(FREELANCER.user_id)

    @pytest.mark.asyncio
    async def test_signature_bound_to_payment_id(self, escrow, agreed_conversation):
        """Test a signature for one gateway payment id does not confirm another"""
        context = await escrow.initiate(agreed_conversation.id, HIRING)
        signature = capture_signature(context.gateway_order_id, "pay_1")

        with pytest.raises(InvalidSignature):
            await escrow.confirm_capture(context.gateway_order_id, signature, "pay_2")

    @pytest.mark.asyncio
    async def test_capture_replay_is_noop(self, escrow, wallets, agreed_conversation, recorder):
        """Test confirming twice credits once"""
        context = await escrow.initiate(agreed_conversation.id, HIRING)
        signature = capture_signature(context.gateway_order_id, "pay_1")

        await escrow.confirm_capture(context.gateway_order_id, signature, "pay_1")
        again = await escrow.confirm_capture(context.gateway_order_id, signature, "pay_1")

        assert again.status == PaymentStatus.COMPLETED
        assert (await wallets.get_wallet(FREELANCER.user_id)).balance == 4275
        assert len(recorder.of("payment.completed")) == 1

    @pytest.mark.asyncio
    async def test_capture_starts_project(self, escrow, applications, agreed_conversation, accepted_application, recorder):
        """Test a captured escrow payment starts the accepted application's project"""
        await initiate_and_capture(escrow, agreed_conversation.id)

        application = await applications.get_application("gig_1", FREELANCER.user_id)
        assert application.project_status == ProjectStatus.IN_PROGRESS
        assert "project.started" in recorder.names()

    @pytest.mark.asyncio
    async def test_blocked_payee_rolls_back_capture(self, escrow, wallets, agreed_conversation):
        """Test settlement is all-or-nothing when the payee wallet is blocked"""
        await wallets.block_wallet(FREELANCER.user_id, "KYC review")
        context = await escrow.initiate(agreed_conversation.id, HIRING)
        signature = capture_signature(context.gateway_order_id, "pay_1")

        with pytest.raises(WalletBlocked):
            await escrow.confirm_capture(context.gateway_order_id, signature, "pay_1")

        payment = await escrow.get_payment(context.payment_id)
        assert payment.status == PaymentStatus.PENDING
        with pytest.raises(WalletNotFound):
            await wallets.get_wallet(Config.PLATFORM_ESCROW_ACCOUNT)


class TestMarkFailed:
    """Test gateway-reported failures"""

    @pytest.mark.asyncio
    async def test_failure_reverts_conversation(self, escrow, negotiations, agreed_conversation, recorder):
        """Test a failed payment sends the conversation back to payment_pending"""
        context = await escrow.initiate(agreed_conversation.id, HIRING)
        failed = await escrow.mark_failed(context.gateway_order_id, "Card declined")

        assert failed.status == PaymentStatus.FAILED
        conversation = await negotiations.get_conversation(agreed_conversation.id)
        assert conversation.status == ConversationStatus.PAYMENT_PENDING
        assert recorder.of("payment.failed")[0].payload["reason"] == "Card declined"

        retry = await escrow.initiate(agreed_conversation.id, HIRING)
        assert retry.payment_id != context.payment_id

    @pytest.mark.asyncio
    async def test_completed_payment_cannot_fail(self, escrow, agreed_conversation):
        """Test completed is not reachable back to failed"""
        context = await initiate_and_capture(escrow, agreed_conversation.id)
        with pytest.raises(InvalidTransition):
            await escrow.mark_failed(context.gateway_order_id, "late failure")


class TestWebhooks:
    """Test gateway webhook dispatch"""

    @pytest.mark.asyncio
    async def test_authorized_then_captured(self, escrow, wallets, agreed_conversation):
        """Test webhook events walk the payment through processing to completed"""
        context = await escrow.initiate(agreed_conversation.id, HIRING)

        body = webhook_body("payment.authorized", context.gateway_order_id)
        result = await escrow.handle_webhook(body, webhook_signature(body))
        assert result.action == WebhookAction.PROCESSING
        assert result.payment.status == PaymentStatus.PROCESSING

        body = webhook_body("payment.captured", context.gateway_order_id)
        result = await escrow.handle_webhook(body, webhook_signature(body))
        assert result.action == WebhookAction.SETTLED
        assert result.payment.status == PaymentStatus.COMPLETED
        assert (await wallets.get_wallet(FREELANCER.user_id)).balance == 4275

        result = await escrow.handle_webhook(body, webhook_signature(body))
        assert result.action == WebhookAction.ALREADY_SETTLED

    @pytest.mark.asyncio
    async def test_failed_webhook(self, escrow, agreed_conversation):
        context = await escrow.initiate(agreed_conversation.id, HIRING)
        body = webhook_body("payment.failed", context.gateway_order_id, error_description="Bank declined")

        result = await escrow.handle_webhook(body, webhook_signature(body))
        assert result.action == WebhookAction.FAILED
        assert result.payment.status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_bad_webhook_signature(self, escrow, agreed_conversation):
        context = await escrow.initiate(agreed_conversation.id, HIRING)
        body = webhook_body("payment.captured", context.gateway_order_id)

        with pytest.raises(InvalidSignature):
            await escrow.handle_webhook(body, "not-a-signature")

        payment = await escrow.get_payment(context.payment_id)
        assert payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, escrow):
        body = b'{"event": "refund.created", "payload": {}}'
        result = await escrow.handle_webhook(body, webhook_signature(body))
        assert result.action == WebhookAction.IGNORED

    @pytest.mark.asyncio
    async def test_malformed_body(self, escrow):
        body = b"not json"
        with pytest.raises(InvalidWebhookPayload):
            await escrow.handle_webhook(body, webhook_signature(body))


class TestRefund:
    """Test refunds of completed payments"""

    @pytest.mark.asyncio
    async def test_refund_reverses_payee_and_credits_payer(self, escrow, wallets, agreed_conversation, recorder):
        """Test refund debits the payee, reverses commission and credits the payer"""
        context = await initiate_and_capture(escrow, agreed_conversation.id)
        refunded = await escrow.refund(context.payment_id, HIRING, reason="Work not delivered")

        assert refunded.status == PaymentStatus.REFUNDED
        assert refunded.refunded_at is not None

        assert (await wallets.get_wallet(FREELANCER.user_id)).balance == 0
        assert (await wallets.get_wallet(HIRING.user_id)).balance == 4500
        assert (await wallets.get_wallet(Config.PLATFORM_REVENUE_ACCOUNT)).balance == 225, "Fee is retained"

        payer_history = await wallets.history(HIRING.user_id)
        assert payer_history[0].type == WalletTransactionType.REFUND.value

        refund_record = await escrow.get_payment(recorder.of("payment.refunded")[0].payload["refund_payment_id"])
        assert refund_record.type == PaymentType.REFUND
        assert refund_record.status == PaymentStatus.COMPLETED

        history = await escrow.status_history(context.payment_id)
        assert history[-1].status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_refund_requires_completed(self, escrow, agreed_conversation):
        context = await escrow.initiate(agreed_conversation.id, HIRING)
        with pytest.raises(InvalidTransition):
            await escrow.refund(context.payment_id, ADMIN)

    @pytest.mark.asyncio
    async def test_refund_twice_fails(self, escrow, agreed_conversation):
        context = await initiate_and_capture(escrow, agreed_conversation.id)
        await escrow.refund(context.payment_id, ADMIN)
        with pytest.raises(InvalidTransition):
            await escrow.refund(context.payment_id, ADMIN)

    @pytest.mark.asyncio
    async def test_payee_cannot_refund(self, escrow, agreed_conversation):
        context = await initiate_and_capture(escrow, agreed_conversation.id)
        with pytest.raises(NotAParticipant):
            await escrow.refund(context.payment_id, FREELANCER)

    @pytest.mark.asyncio
    async def test_refund_all_or_nothing_when_payee_spent_funds(self, escrow, wallets, agreed_conversation):
        """Test a refund the payee cannot cover changes nothing"""
        context = await initiate_and_capture(escrow, agreed_conversation.id)
        await wallets.debit(FREELANCER.user_id, 4000, "Spent")

        with pytest.raises(InsufficientBalance):
            await escrow.refund(context.payment_id, HIRING)

        payment = await escrow.get_payment(context.payment_id)
        assert payment.status == PaymentStatus.COMPLETED
        assert (await wallets.get_wallet(FREELANCER.user_id)).balance == 275


class TestAbandonedReservations:
    """Test reservations whose order call timed out are cleaned up when the conversation moves on"""

    async def _timed_out_reservation(self, escrow, gateway, conversation_id):
        gateway.order_error = GatewayTimeout("Gateway timed out on /orders")
        with pytest.raises(GatewayTimeout):
            await escrow.initiate(conversation_id, HIRING)
        gateway.order_error = None
        return await escrow.get_payment(1)

    @pytest.mark.asyncio
    async def test_new_proposal_abandons_reservation(self, escrow, negotiations, gateway, agreed_conversation):
        """Test superseding the agreed price fails the order-less reservation"""
        reservation = await self._timed_out_reservation(escrow, gateway, agreed_conversation.id)

        await negotiations.propose(agreed_conversation.id, FREELANCER, 6000)

        payment = await escrow.get_payment(reservation.payment_id)
        assert payment.status == PaymentStatus.FAILED
        history = await escrow.status_history(reservation.payment_id)
        assert [entry.status for entry in history] == [PaymentStatus.PENDING, PaymentStatus.FAILED]
        assert "superseded" in history[-1].note

        closed = await negotiations.close_conversation(agreed_conversation.id, FREELANCER)
        assert closed.status == ConversationStatus.CLOSED

    @pytest.mark.asyncio
    async def test_close_abandons_reservation(self, escrow, negotiations, gateway, agreed_conversation):
        """Test a conversation with only an order-less reservation can still be closed"""
        reservation = await self._timed_out_reservation(escrow, gateway, agreed_conversation.id)

        closed = await negotiations.close_conversation(agreed_conversation.id, HIRING)

        assert closed.status == ConversationStatus.CLOSED
        payment = await escrow.get_payment(reservation.payment_id)
        assert payment.status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_close_still_refused_with_live_order(self, escrow, negotiations, agreed_conversation):
        """Test a reservation that reached the gateway keeps blocking close"""
        context = await escrow.initiate(agreed_conversation.id, HIRING)

        with pytest.raises(PaymentAlreadyInFlight):
            await negotiations.close_conversation(agreed_conversation.id, HIRING)

        payment = await escrow.get_payment(context.payment_id)
        assert payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_new_agreement_after_abandonment_checks_out(
        self, escrow, negotiations, gateway, agreed_conversation
    ):
        """Test a fresh agreement gets a fresh reservation after the old one was abandoned"""
        reservation = await self._timed_out_reservation(escrow, gateway, agreed_conversation.id)

        await negotiations.propose(agreed_conversation.id, FREELANCER, 6000)
        await negotiations.accept(agreed_conversation.id, HIRING)
        context = await escrow.initiate(agreed_conversation.id, HIRING)

        assert context.payment_id != reservation.payment_id
        assert context.amount == 6000
        assert context.gateway_order_id is not None


class TestPaymentReads:
    """Test payment listing and statistics"""

    @pytest_asyncio.fixture
    async def three_payments(self, escrow, negotiations, gateway, agreed_conversation):
        """Completed 4500, pending 1000 and failed 2000, all paid by the hiring party, oldest first"""
        completed = await initiate_and_capture(escrow, agreed_conversation.id)

        second = await negotiations.open_conversation(FREELANCER.user_id, HIRING.user_id, gig_id="gig_2")
        pending = await escrow.initiate(second.id, HIRING, amount_override=1000)

        third = await negotiations.open_conversation(FREELANCER.user_id, HIRING.user_id, gig_id="gig_3")
        gateway.order_error = GatewayUnavailable("Gateway returned 502")
        with pytest.raises(GatewayUnavailable):
            await escrow.initiate(third.id, HIRING, amount_override=2000)
        gateway.order_error = None
        failed = (await escrow.list_payments(HIRING.user_id, status=PaymentStatus.FAILED)).items[0]

        return completed, pending, failed

    @pytest.mark.asyncio
    async def test_list_newest_first(self, escrow, three_payments):
        completed, pending, failed = three_payments

        page = await escrow.list_payments(HIRING.user_id)

        assert [p.payment_id for p in page.items] == [failed.payment_id, pending.payment_id, completed.payment_id]
        assert page.total == 3
        assert not page.has_next
        assert not page.has_prev

    @pytest.mark.asyncio
    async def test_list_as_payer_or_payee(self, escrow, three_payments):
        """Test the freelancer sees the payments only when listing as payee"""
        assert (await escrow.list_payments(FREELANCER.user_id)).total == 0
        assert (await escrow.list_payments(FREELANCER.user_id, as_payee=True)).total == 3

    @pytest.mark.asyncio
    async def test_list_filters(self, escrow, three_payments):
        completed, _, failed = three_payments

        completed_page = await escrow.list_payments(HIRING.user_id, status=PaymentStatus.COMPLETED)
        assert [p.payment_id for p in completed_page.items] == [completed.payment_id]

        failed_page = await escrow.list_payments(HIRING.user_id, status=PaymentStatus.FAILED)
        assert failed_page.items[0].amount == 2000
        assert failed_page.total == 1

        assert (await escrow.list_payments(HIRING.user_id, type=PaymentType.GIG_ESCROW)).total == 3
        assert (await escrow.list_payments(HIRING.user_id, type=PaymentType.REFUND)).total == 0

    @pytest.mark.asyncio
    async def test_list_pagination(self, escrow, three_payments):
        completed, _, _ = three_payments

        first = await escrow.list_payments(HIRING.user_id, limit=2)
        assert len(first.items) == 2
        assert first.total == 3
        assert first.has_next

        last = await escrow.list_payments(HIRING.user_id, limit=2, skip=2)
        assert [p.payment_id for p in last.items] == [completed.payment_id]
        assert not last.has_next
        assert last.has_prev

    @pytest.mark.asyncio
    async def test_stats_summary(self, escrow, three_payments):
        completed, pending, failed = three_payments

        stats = await escrow.payment_stats(HIRING.user_id)

        assert stats.timeframe == "30d"
        assert stats.summary.total_count == 3
        assert stats.summary.total_amount == 7500
        assert stats.summary.completed_count == 1
        assert stats.summary.completed_amount == 4500
        assert stats.summary.pending_count == 1
        assert stats.summary.pending_amount == 1000
        assert stats.summary.failed_count == 1
        assert stats.summary.failed_amount == 2000
        assert stats.by_type == {PaymentType.GIG_ESCROW: TypeTotals(3, 7500)}
        assert [p.payment_id for p in stats.recent] == [failed.payment_id, pending.payment_id, completed.payment_id]

    @pytest.mark.asyncio
    async def test_stats_by_type_for_payee(self, escrow, wallets, three_payments):
        """Test a freelancer's withdrawal shows up next to the escrow payments they received"""
        await wallets.request_withdrawal(FREELANCER, 500, PayoutDestination(upi_id="freelancer@upi"))

        stats = await escrow.payment_stats(FREELANCER.user_id)

        assert stats.by_type == {
            PaymentType.GIG_ESCROW: TypeTotals(3, 7500),
            PaymentType.WITHDRAWAL: TypeTotals(1, 500),
        }
        assert stats.summary.total_count == 4
        assert stats.recent[0].type == PaymentType.WITHDRAWAL

    @pytest.mark.asyncio
    async def test_stats_timeframe_window(self, escrow, db, three_payments):
        """Test older payments fall out of short windows and unknown windows use 30 days"""
        completed, _, _ = three_payments
        async with db.managed_session() as session:
            await session.execute(
                update(Payment)
                .where(Payment.id == completed.payment_id)
                .values(created_at=utc_now() - timedelta(days=60))
            )

        assert (await escrow.payment_stats(HIRING.user_id, "7d")).summary.total_count == 2
        assert (await escrow.payment_stats(HIRING.user_id, "90d")).summary.total_count == 3
        assert (await escrow.payment_stats(HIRING.user_id, "1y")).summary.completed_amount == 4500

        fallback = await escrow.payment_stats(HIRING.user_id, "2w")
        assert fallback.timeframe == "30d"
        assert fallback.summary.total_count == 2

    @pytest.mark.asyncio
    async def test_stats_empty(self, escrow):
        stats = await escrow.payment_stats(HIRING.user_id)

        assert stats.summary.total_count == 0
        assert stats.summary.total_amount == 0
        assert stats.by_type == {}
        assert stats.recent == []
