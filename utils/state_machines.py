"""
Transition tables for payments, negotiations, applications and projects.

Services call ensure_transition() before every status write; anything not
listed here raises InvalidTransition.
"""

import logging
from typing import Dict, Optional, Set

from models import PaymentStatus, NegotiationStatus, ApplicationStatus, ProjectStatus, ConversationStatus
from utils.error_handler import InvalidTransition

logger = logging.getLogger(__name__)


PAYMENT_TRANSITIONS: Dict[Optional[str], Set[str]] = {
    None: {PaymentStatus.PENDING.value},
    PaymentStatus.PENDING.value: {
        PaymentStatus.PROCESSING.value,
        PaymentStatus.FAILED.value,
    },
    PaymentStatus.PROCESSING.value: {
        PaymentStatus.COMPLETED.value,
        PaymentStatus.FAILED.value,
    },
    PaymentStatus.COMPLETED.value: {PaymentStatus.REFUNDED.value},
    PaymentStatus.FAILED.value: set(),
    PaymentStatus.REFUNDED.value: set(),
}

NEGOTIATION_TRANSITIONS: Dict[Optional[str], Set[str]] = {
    None: {NegotiationStatus.PENDING.value},
    NegotiationStatus.PENDING.value: {
        NegotiationStatus.ACCEPTED.value,
        NegotiationStatus.REJECTED.value,
        NegotiationStatus.SUPERSEDED.value,
        NegotiationStatus.EXPIRED.value,
    },
    # An accepted price is replaced when either side proposes again before payment
    NegotiationStatus.ACCEPTED.value: {NegotiationStatus.SUPERSEDED.value},
    NegotiationStatus.REJECTED.value: set(),
    NegotiationStatus.SUPERSEDED.value: set(),
    NegotiationStatus.EXPIRED.value: set(),
}

APPLICATION_TRANSITIONS: Dict[Optional[str], Set[str]] = {
    None: {ApplicationStatus.PENDING.value},
    ApplicationStatus.PENDING.value: {
        ApplicationStatus.ACCEPTED.value,
        ApplicationStatus.REJECTED.value,
    },
    ApplicationStatus.ACCEPTED.value: set(),
    ApplicationStatus.REJECTED.value: set(),
}

PROJECT_TRANSITIONS: Dict[Optional[str], Set[str]] = {
    None: {ProjectStatus.NOT_STARTED.value},
    ProjectStatus.NOT_STARTED.value: {ProjectStatus.IN_PROGRESS.value},
    ProjectStatus.IN_PROGRESS.value: {ProjectStatus.SUBMITTED.value},
    ProjectStatus.SUBMITTED.value: {
        ProjectStatus.APPROVED.value,
        ProjectStatus.REVISION_REQUESTED.value,
    },
    ProjectStatus.REVISION_REQUESTED.value: {ProjectStatus.SUBMITTED.value},
    ProjectStatus.APPROVED.value: {ProjectStatus.COMPLETED.value},
    ProjectStatus.COMPLETED.value: set(),
}

CONVERSATION_TERMINAL_STATES = frozenset({
    ConversationStatus.COMPLETED.value,
    ConversationStatus.CLOSED.value,
})

_TABLES = {
    "payment": PAYMENT_TRANSITIONS,
    "negotiation": NEGOTIATION_TRANSITIONS,
    "application": APPLICATION_TRANSITIONS,
    "project": PROJECT_TRANSITIONS,
}


def is_valid_transition(entity: str, current_status: Optional[str], new_status: str) -> bool:
    """Check if a state transition is valid"""
    return new_status in _TABLES[entity].get(current_status, set())


def ensure_transition(entity: str, current_status: Optional[str], new_status: str, entity_id=None) -> None:
    """Raise InvalidTransition unless current_status -> new_status is allowed"""
    if not is_valid_transition(entity, current_status, new_status):
        logger.warning(
            f"🚫 INVALID_TRANSITION: {entity} {entity_id} {current_status} → {new_status}"
        )
        raise InvalidTransition(
            f"Invalid {entity} transition {current_status} → {new_status}",
            entity=entity,
            entity_id=entity_id,
            current_status=current_status,
            new_status=new_status,
        )


def is_terminal_state(entity: str, status: str) -> bool:
    return not _TABLES[entity].get(status)


def is_conversation_terminal(status: str) -> bool:
    return status in CONVERSATION_TERMINAL_STATES
