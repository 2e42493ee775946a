"""
Gig Escrow & Wallet Ledger - Database Schema
============================================

Schema for the negotiation -> escrow payment -> wallet ledger pipeline:
- Conversations carrying the proposal / counter-proposal history
- Escrow payments with an append-only status history
- One wallet per user with an append-only transaction log
- Gig applications gating project start and delivery rounds

Every mutable row carries a `version` column used for optimistic concurrency.
Money is stored as whole currency units; the gateway receives minor units.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, String, DateTime, Boolean, Text, Float, JSON,
    UniqueConstraint, Index, CheckConstraint, ForeignKey, func, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _in_values(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class ParticipantRole(Enum):
    """Role an actor plays in a conversation"""
    FREELANCER = "freelancer"
    HIRING = "hiring"
    ADMIN = "admin"


class ConversationStatus(Enum):
    ACTIVE = "active"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_PROCESSING = "payment_processing"
    COMPLETED = "completed"
    CLOSED = "closed"


class NegotiationStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


class PriceChangeType(Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    SAME = "same"


class PaymentType(Enum):
    SUBSCRIPTION = "subscription"
    GIG_PAYMENT = "gig_payment"
    GIG_ESCROW = "gig_escrow"
    MILESTONE_PAYMENT = "milestone_payment"
    REFUND = "refund"
    COMMISSION = "commission"
    PENALTY = "penalty"
    WITHDRAWAL = "withdrawal"


class PaymentStatus(Enum):
    """Escrow payment lifecycle states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class WalletTransactionType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"
    PENALTY = "penalty"
    BONUS = "bonus"
    COMMISSION_EARNED = "commission_earned"
    COMMISSION_DEDUCTED = "commission_deducted"


# Sign applied to the stored (always positive) amount
CREDIT_TYPES = frozenset({
    WalletTransactionType.CREDIT,
    WalletTransactionType.REFUND,
    WalletTransactionType.BONUS,
    WalletTransactionType.COMMISSION_EARNED,
})


def signed_amount(transaction_type: WalletTransactionType, amount: int) -> int:
    return amount if transaction_type in CREDIT_TYPES else -amount


class ReferenceKind(Enum):
    PAYMENT = "payment"
    GIG = "gig"
    PROJECT = "project"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"


class ApplicationStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ProjectStatus(Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    COMPLETED = "completed"


# ============================================================================
# TABLES
# ============================================================================

class Conversation(Base):
    """Two-party conversation carrying the negotiation protocol and payment snapshot"""
    __tablename__ = 'conversations'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    freelancer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    hiring_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    gig_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default=ConversationStatus.ACTIVE.value)
    current_negotiation_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_negotiations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Payment context snapshot
    agreed_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    platform_fee: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_payable: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_initiated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(_in_values('status', ConversationStatus), name='ck_conversation_status_valid'),
        CheckConstraint('freelancer_id <> hiring_id', name='ck_conversation_distinct_participants'),
        CheckConstraint('total_negotiations >= 0', name='ck_conversation_negotiations_positive'),
        Index('ix_conversations_status', 'status'),
    )


class Negotiation(Base):
    """One proposal within a conversation; rows are never deleted"""
    __tablename__ = 'negotiations'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(Integer, ForeignKey('conversations.id'), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    proposed_price: Mapped[int] = mapped_column(Integer, nullable=False)
    timeline: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    proposed_by: Mapped[str] = mapped_column(String(20), nullable=False)
    proposed_by_user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=NegotiationStatus.PENDING.value)

    # Price change versus the previous proposal
    previous_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price_change_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_change_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    price_change_type: Mapped[str] = mapped_column(String(10), nullable=False, default=PriceChangeType.SAME.value)

    proposed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint('conversation_id', 'sequence', name='uq_negotiation_conversation_sequence'),
        CheckConstraint('proposed_price > 0', name='ck_negotiation_price_positive'),
        CheckConstraint("proposed_by IN ('freelancer', 'hiring')", name='ck_negotiation_proposed_by_valid'),
        CheckConstraint(_in_values('status', NegotiationStatus), name='ck_negotiation_status_valid'),
        CheckConstraint(_in_values('price_change_type', PriceChangeType), name='ck_negotiation_change_type_valid'),
        # At most one live (pending/accepted) negotiation per conversation
        Index(
            'uq_negotiations_one_live', 'conversation_id', unique=True,
            sqlite_where=text("status IN ('pending', 'accepted')"),
            postgresql_where=text("status IN ('pending', 'accepted')"),
        ),
        Index('ix_negotiations_status_expires', 'status', 'expires_at'),
    )


class Payment(Base):
    """Escrow, refund and withdrawal payments"""
    __tablename__ = 'payments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    conversation_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('conversations.id'), nullable=True, index=True)
    gig_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    original_payment_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commission: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default='INR')

    type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Gateway correlation
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    receipt: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    # Set while an order call for this reservation is outstanding
    order_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Payout destination and transfer sub-record
    payout_destination: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    transferred_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    transfer_mode: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payment_amount_positive'),
        CheckConstraint('platform_fee >= 0', name='ck_payment_fee_positive'),
        CheckConstraint('commission >= 0', name='ck_payment_commission_positive'),
        CheckConstraint('total_amount = amount + platform_fee', name='ck_payment_total_equals_sum'),
        CheckConstraint(_in_values('type', PaymentType), name='ck_payment_type_valid'),
        CheckConstraint(_in_values('status', PaymentStatus), name='ck_payment_status_valid'),
        # At most one in-flight payment per conversation
        Index(
            'uq_payments_one_in_flight', 'conversation_id', unique=True,
            sqlite_where=text("status IN ('pending', 'processing') AND conversation_id IS NOT NULL"),
            postgresql_where=text("status IN ('pending', 'processing') AND conversation_id IS NOT NULL"),
        ),
        Index('ix_payments_payer_type_created', 'payer_id', 'type', 'created_at'),
        Index('ix_payments_status', 'status'),
    )


class PaymentStatusHistory(Base):
    """Append-only log of payment transitions"""
    __tablename__ = 'payment_status_history'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(Integer, ForeignKey('payments.id'), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(_in_values('status', PaymentStatus), name='ck_payment_history_status_valid'),
    )


class Wallet(Base):
    """One wallet per user; balance always equals the signed sum of its transactions"""
    __tablename__ = 'wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default='INR')

    pending_withdrawals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_withdrawn: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blocked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    blocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_transaction_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_wallet_balance_positive'),
        CheckConstraint('pending_withdrawals >= 0', name='ck_wallet_pending_withdrawals_positive'),
        CheckConstraint('total_earned >= 0', name='ck_wallet_total_earned_positive'),
        CheckConstraint('total_withdrawn >= 0', name='ck_wallet_total_withdrawn_positive'),
    )


class WalletTransaction(Base):
    """Immutable ledger entry; only the ledger store inserts rows"""
    __tablename__ = 'wallet_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(Integer, ForeignKey('wallets.id'), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reference_kind: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('wallet_id', 'sequence', name='uq_wallet_transaction_sequence'),
        CheckConstraint('amount > 0', name='ck_wallet_transaction_amount_positive'),
        CheckConstraint('balance_after >= 0', name='ck_wallet_transaction_balance_positive'),
        CheckConstraint(_in_values('type', WalletTransactionType), name='ck_wallet_transaction_type_valid'),
        CheckConstraint(
            "reference_kind IS NULL OR " + _in_values('reference_kind', ReferenceKind),
            name='ck_wallet_transaction_reference_kind_valid',
        ),
        Index('ix_wallet_transactions_wallet_created', 'wallet_id', 'created_at'),
        Index('ix_wallet_transactions_reference', 'reference_kind', 'reference_id'),
    )


class GigApplication(Base):
    """Freelancer application to a gig plus its delivery-round counters"""
    __tablename__ = 'gig_applications'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    gig_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    freelancer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    proposed_rate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cover_letter: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    application_status: Mapped[str] = mapped_column(String(20), nullable=False, default=ApplicationStatus.PENDING.value)
    project_status: Mapped[str] = mapped_column(String(30), nullable=False, default=ProjectStatus.NOT_STARTED.value)

    total_iterations: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    remaining_iterations: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    used_iterations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    project_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_submission_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('gig_id', 'freelancer_id', name='uq_gig_application_pair'),
        CheckConstraint('total_iterations BETWEEN 1 AND 20', name='ck_application_iterations_range'),
        CheckConstraint('remaining_iterations >= 0', name='ck_application_remaining_positive'),
        CheckConstraint('used_iterations >= 0', name='ck_application_used_positive'),
        CheckConstraint('remaining_iterations + used_iterations = total_iterations', name='ck_application_iterations_sum'),
        CheckConstraint(_in_values('application_status', ApplicationStatus), name='ck_application_status_valid'),
        CheckConstraint(_in_values('project_status', ProjectStatus), name='ck_application_project_status_valid'),
    )
