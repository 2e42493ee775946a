"""Ledger error taxonomy with standardized responses"""

import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict
from enum import Enum
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error categories for classification"""

    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    STATE_CONFLICT = "state_conflict"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    EXTERNAL_SERVICE = "external_service"
    NOT_FOUND = "not_found"
    INTEGRITY = "integrity"
    SYSTEM = "system"


class ErrorSeverity(Enum):
    """Error severity levels"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class StandardError:
    """Standard error response structure"""

    code: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    user_message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    retry_after: Optional[int] = None
    recoverable: bool = True

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["severity"] = self.severity.value
        return data


class ErrorCodes:
    """Centralized error codes"""

    # Validation Errors (1000-1999)
    INVALID_AMOUNT = "1005"
    INVALID_ITERATIONS = "1007"
    INVALID_PAYOUT_DETAILS = "1008"
    INVALID_WEBHOOK_PAYLOAD = "1009"

    # Authorization Errors (3000-3999)
    NOT_A_PARTICIPANT = "3005"
    ROLE_NOT_ALLOWED = "3006"
    INVALID_SIGNATURE = "3007"

    # Payment Errors (5000-5999)
    INSUFFICIENT_BALANCE = "5001"
    PAYMENT_ALREADY_IN_FLIGHT = "5007"
    WALLET_BLOCKED = "5008"
    WITHDRAWAL_LIMIT_EXCEEDED = "5009"

    # External API Errors (6000-6999)
    GATEWAY_UNAVAILABLE = "6001"
    GATEWAY_TIMEOUT = "6003"

    # Database Errors (7000-7999)
    CONCURRENT_MODIFICATION = "7005"
    LEDGER_INTEGRITY = "7006"

    # System Errors (8000-8999)
    INTERNAL_ERROR = "8001"

    # Business Logic Errors (9000-9999)
    CONVERSATION_NOT_FOUND = "9001"
    PAYMENT_NOT_FOUND = "9006"
    WALLET_NOT_FOUND = "9007"
    APPLICATION_NOT_FOUND = "9008"
    NO_ACTIVE_NEGOTIATION = "9010"
    SELF_ACCEPTANCE_FORBIDDEN = "9011"
    SELF_COUNTER_FORBIDDEN = "9012"
    NEGOTIATION_EXPIRED = "9013"
    NEGOTIATION_LOCKED = "9014"
    CONVERSATION_CLOSED = "9015"
    NO_AGREED_AMOUNT = "9016"
    INVALID_TRANSITION = "9017"
    ALREADY_REJECTED = "9018"
    DUPLICATE_APPLICATION = "9019"
    ITERATIONS_EXHAUSTED = "9020"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base class for every error the ledger core raises on purpose"""

    code = ErrorCodes.INTERNAL_ERROR
    category = ErrorCategory.SYSTEM
    severity = ErrorSeverity.MEDIUM
    user_message = "Something went wrong. Please try again."
    recoverable = False

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.__class__.__name__
        self.details = details or None
        super().__init__(self.message)

    def to_standard_error(self) -> StandardError:
        return StandardError(
            code=self.code,
            message=self.message,
            category=self.category,
            severity=self.severity,
            user_message=self.user_message,
            details=self.details,
            recoverable=self.recoverable,
        )


class ValidationError(LedgerError):
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.LOW
    user_message = "Please check your input and try again."


class InvalidAmount(ValidationError):
    code = ErrorCodes.INVALID_AMOUNT


class InvalidIterations(ValidationError):
    code = ErrorCodes.INVALID_ITERATIONS


class InvalidPayoutDetails(ValidationError):
    code = ErrorCodes.INVALID_PAYOUT_DETAILS
    user_message = "Provide a bank account with IFSC code, or a UPI id."


class InvalidWebhookPayload(ValidationError):
    code = ErrorCodes.INVALID_WEBHOOK_PAYLOAD


class AuthorizationError(LedgerError):
    category = ErrorCategory.AUTHORIZATION
    user_message = "You are not allowed to perform this action."


class NotAParticipant(AuthorizationError):
    code = ErrorCodes.NOT_A_PARTICIPANT


class RoleNotAllowed(AuthorizationError):
    code = ErrorCodes.ROLE_NOT_ALLOWED


class InvalidSignature(AuthorizationError):
    code = ErrorCodes.INVALID_SIGNATURE
    severity = ErrorSeverity.HIGH
    user_message = "Payment could not be verified."


class StateConflictError(LedgerError):
    category = ErrorCategory.STATE_CONFLICT
    user_message = "This action is not possible right now."


class NoActiveNegotiation(StateConflictError):
    code = ErrorCodes.NO_ACTIVE_NEGOTIATION


class SelfAcceptanceForbidden(StateConflictError):
    code = ErrorCodes.SELF_ACCEPTANCE_FORBIDDEN
    user_message = "You cannot accept your own proposal."


class SelfCounterForbidden(StateConflictError):
    code = ErrorCodes.SELF_COUNTER_FORBIDDEN
    user_message = "You cannot counter your own proposal."


class NegotiationExpired(StateConflictError):
    code = ErrorCodes.NEGOTIATION_EXPIRED
    user_message = "This proposal has expired."


class NegotiationLocked(StateConflictError):
    code = ErrorCodes.NEGOTIATION_LOCKED
    user_message = "A payment is in progress for this conversation."


class ConversationClosed(StateConflictError):
    code = ErrorCodes.CONVERSATION_CLOSED


class NoAgreedAmount(StateConflictError):
    code = ErrorCodes.NO_AGREED_AMOUNT


class PaymentAlreadyInFlight(StateConflictError):
    code = ErrorCodes.PAYMENT_ALREADY_IN_FLIGHT


class InvalidTransition(StateConflictError):
    code = ErrorCodes.INVALID_TRANSITION


class AlreadyRejected(StateConflictError):
    code = ErrorCodes.ALREADY_REJECTED


class DuplicateApplication(StateConflictError):
    code = ErrorCodes.DUPLICATE_APPLICATION
    user_message = "You have already applied to this gig."


class IterationsExhausted(StateConflictError):
    code = ErrorCodes.ITERATIONS_EXHAUSTED
    user_message = "No delivery iterations remain for this project."


class WalletBlocked(StateConflictError):
    code = ErrorCodes.WALLET_BLOCKED
    user_message = "This wallet is blocked. Contact support."


class WithdrawalLimitExceeded(StateConflictError):
    code = ErrorCodes.WITHDRAWAL_LIMIT_EXCEEDED
    user_message = "Daily withdrawal limit reached. Try again tomorrow."


class InsufficientBalance(LedgerError):
    code = ErrorCodes.INSUFFICIENT_BALANCE
    category = ErrorCategory.INSUFFICIENT_BALANCE
    user_message = "Insufficient wallet balance."


class ConcurrentModification(LedgerError):
    code = ErrorCodes.CONCURRENT_MODIFICATION
    category = ErrorCategory.CONCURRENT_MODIFICATION
    user_message = "This record changed while you were working on it. Please retry."
    recoverable = True


class ExternalServiceError(LedgerError):
    category = ErrorCategory.EXTERNAL_SERVICE
    severity = ErrorSeverity.HIGH
    user_message = "Payment service is temporarily unavailable. Please try again later."
    recoverable = True


class GatewayUnavailable(ExternalServiceError):
    code = ErrorCodes.GATEWAY_UNAVAILABLE


class GatewayTimeout(ExternalServiceError):
    code = ErrorCodes.GATEWAY_TIMEOUT


class NotFoundError(LedgerError):
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.LOW
    user_message = "Not found."


class ConversationNotFound(NotFoundError):
    code = ErrorCodes.CONVERSATION_NOT_FOUND


class PaymentNotFound(NotFoundError):
    code = ErrorCodes.PAYMENT_NOT_FOUND


class WalletNotFound(NotFoundError):
    code = ErrorCodes.WALLET_NOT_FOUND


class ApplicationNotFound(NotFoundError):
    code = ErrorCodes.APPLICATION_NOT_FOUND


class LedgerIntegrityError(LedgerError):
    code = ErrorCodes.LEDGER_INTEGRITY
    category = ErrorCategory.INTEGRITY
    severity = ErrorSeverity.CRITICAL
    user_message = "System temporarily unavailable. Please try again later."


# ============================================================================
# RESPONSES
# ============================================================================

HTTP_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.STATE_CONFLICT: 409,
    ErrorCategory.INSUFFICIENT_BALANCE: 422,
    ErrorCategory.CONCURRENT_MODIFICATION: 409,
    ErrorCategory.EXTERNAL_SERVICE: 503,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.INTEGRITY: 500,
    ErrorCategory.SYSTEM: 500,
}


class ErrorResponseBuilder:
    """Builder for standardized error responses"""

    @staticmethod
    def from_exception(error: Exception) -> StandardError:
        if isinstance(error, LedgerError):
            return error.to_standard_error()

        logger.error(f"❌ Unhandled {type(error).__name__}: {error}", exc_info=error)
        return StandardError(
            code=ErrorCodes.INTERNAL_ERROR,
            message="Internal error",
            category=ErrorCategory.SYSTEM,
            severity=ErrorSeverity.CRITICAL,
            user_message="System temporarily unavailable. Please try again later.",
            recoverable=False,
        )

    @staticmethod
    def http_status(error: StandardError) -> int:
        return HTTP_STATUS_BY_CATEGORY.get(error.category, 500)

    @staticmethod
    def to_response_body(error: StandardError) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": error.code,
                "message": error.message,
                "category": error.category.value,
                "user_message": error.user_message,
            },
        }
