"""
matchpay/exceptions.py
Typed exceptions for the match payment lifecycle

Error taxonomy:
- Ordering errors: operation invoked while the match is in a stage that
  does not permit it. Never retried.
- Participant errors: surfaced for user-facing messaging.
- Collaborator errors: payment capture / notification delivery failures.

Quorum loss at hard lock is not an exception; see HardLockOutcome.
"""
from typing import Any, Dict, Optional


class PaymentFlowError(Exception):
    """Base exception for match payment errors"""
    status_code: int = 400
    code: str = "PAYMENT_FLOW_ERROR"
    user_message: str = "The operation could not be completed."

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        if code:
            self.code = code
        if user_message:
            self.user_message = user_message
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Ordering errors (409)
# =============================================================================

class OrderingError(PaymentFlowError):
    """Operation called out of turn for the match's current stage."""
    status_code = 409


class QuorumNotMetError(OrderingError):
    code = "QUORUM_NOT_MET"
    user_message = "Not enough players have joined yet to open payments."

    def __init__(self, match_id: str, current: int, required: int):
        super().__init__(
            f"Match {match_id} has {current} players, {required} required",
            details={"current_player_count": current, "min_players": required}
        )


class WindowStillOpenError(OrderingError):
    code = "WINDOW_STILL_OPEN"
    user_message = "The payment window is still open."

    def __init__(self, match_id: str, window_end):
        super().__init__(
            f"Payment window for match {match_id} closes at {window_end.isoformat()}",
            details={"payment_window_end": window_end.isoformat()}
        )


class WindowNotActiveError(OrderingError):
    code = "WINDOW_NOT_ACTIVE"
    user_message = "The payment window has not opened yet."

    def __init__(self, match_id: str, stage: str):
        super().__init__(
            f"Payment window not active for match {match_id} (stage: {stage})",
            details={"stage": stage}
        )
        if stage not in ("free_joining",):
            self.user_message = "Payments are closed for this match."


class IncompletePaymentError(OrderingError):
    code = "INCOMPLETE_PAYMENT"
    user_message = "Not every remaining player has paid yet."

    def __init__(self, match_id: str, detail: str):
        super().__init__(f"Cannot confirm match {match_id}: {detail}")


class InvalidTransitionError(OrderingError):
    code = "STATE_TRANSITION_INVALID"
    user_message = "This action is not available at the match's current stage."

    def __init__(self, match_id: str, current: str, target: str):
        super().__init__(
            f"Match {match_id}: invalid transition {current} → {target}",
            details={"from": current, "to": target}
        )


class MatchClosedError(OrderingError):
    code = "MATCH_CLOSED"
    user_message = "This match is no longer accepting changes."

    def __init__(self, match_id: str, stage: str):
        super().__init__(
            f"Match {match_id} is closed (stage: {stage})",
            details={"stage": stage}
        )


# =============================================================================
# Participant errors (400)
# =============================================================================

class ParticipantError(PaymentFlowError):
    status_code = 400


class AlreadyPaidError(ParticipantError):
    code = "ALREADY_PAID"
    user_message = "You have already paid for this match."

    def __init__(self, match_id: str, user_id: str):
        super().__init__(f"User {user_id} already paid for match {match_id}")


class CannotLeaveAfterPaymentError(ParticipantError):
    code = "CANNOT_LEAVE_AFTER_PAYMENT"
    user_message = "You can't leave a match you've already paid for. Request a refund instead."

    def __init__(self, match_id: str, user_id: str):
        super().__init__(f"User {user_id} has paid and cannot leave match {match_id}")


class AlreadyJoinedError(ParticipantError):
    code = "ALREADY_JOINED"
    user_message = "You're already in this match."

    def __init__(self, match_id: str, user_id: str):
        super().__init__(f"User {user_id} already joined match {match_id}")


class MatchFullError(ParticipantError):
    code = "MATCH_FULL"
    user_message = "This match is full."

    def __init__(self, match_id: str, max_players: int):
        super().__init__(
            f"Match {match_id} is full ({max_players} players)",
            details={"max_players": max_players}
        )


class ParticipantNotFoundError(ParticipantError):
    code = "PARTICIPANT_NOT_FOUND"
    user_message = "You're not part of this match."

    def __init__(self, match_id: str, user_id: str):
        super().__init__(f"User {user_id} is not in match {match_id}")


class InvalidAmountError(ParticipantError):
    code = "INVALID_AMOUNT"
    user_message = "Payment amount must be a positive whole number."

    def __init__(self, amount: Any):
        super().__init__(f"Invalid payment amount: {amount!r}", details={"amount": amount})


class InvalidMatchConfigError(ParticipantError):
    code = "INVALID_MATCH_CONFIG"
    user_message = "The match settings are invalid."

    def __init__(self, message: str):
        super().__init__(message)


# =============================================================================
# Lookup errors (404 / 409)
# =============================================================================

class MatchNotFoundError(PaymentFlowError):
    status_code = 404
    code = "MATCH_NOT_FOUND"
    user_message = "Match not found."

    def __init__(self, match_id: str):
        super().__init__(f"Match {match_id} not found")


class MatchExistsError(PaymentFlowError):
    status_code = 409
    code = "MATCH_EXISTS"
    user_message = "Payments are already set up for this match."

    def __init__(self, match_id: str):
        super().__init__(f"Match {match_id} already has a payment state")


# =============================================================================
# Collaborator errors
# =============================================================================

class PaymentCaptureError(PaymentFlowError):
    """Payment processor rejected or failed a charge/refund."""
    status_code = 502
    code = "PAYMENT_CAPTURE_FAILED"
    user_message = "We couldn't process the payment. You have not been charged."


class NotificationDeliveryError(Exception):
    """Notification transport failed. Logged, never aborts scheduling."""
    pass
