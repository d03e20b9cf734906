"""
Match Payment API Routes

Inbound operations for the match payment lifecycle: create, join, leave,
pay, confirm, cancel, plus read-only state, summary, pricing and reminders.

Caller identity is resolved upstream; user_id arrives in the request body.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from matchpay.config.feature_flags import feature_flags
from matchpay.config.settings import settings
from matchpay.errors import FeatureDisabledError, from_domain_error
from matchpay.exceptions import PaymentFlowError
from matchpay.rate_limit import limiter
from matchpay.services.container import ServiceContainer
from matchpay.services.payment_flow_engine import MatchPaymentSnapshot
from matchpay.services.pricing_service import calculate_pricing


router = APIRouter(prefix="/api/match-payments", tags=["match-payments"])


# =============================================================================
# Pydantic Request/Response Models
# =============================================================================

class CreateMatchRequest(BaseModel):
    match_id: str = Field(..., min_length=1, max_length=64)
    total_cost: int = Field(..., gt=0)
    min_players: int = Field(..., ge=1)
    max_players: int = Field(..., ge=1)
    starts_at: datetime


class ParticipantRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)


class PaymentRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0)
    method: Literal["upi", "card", "wallet"] = "upi"


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)


class PlayerPaymentResponse(BaseModel):
    user_id: str
    stage: str
    amount_due: int
    amount_paid: int
    is_paid: bool
    paid_at: Optional[str]
    payment_deadline: Optional[str]
    joined_at: Optional[str]


class MatchStateResponse(BaseModel):
    match_id: str
    stage: str
    min_players: int
    max_players: int
    current_player_count: int
    total_cost: int
    cost_per_player: int
    match_starts_at: str
    payment_window_start: Optional[str]
    payment_window_end: Optional[str]
    cancel_reason: Optional[str]
    player_payments: List[PlayerPaymentResponse]


class AdjustmentResponse(BaseModel):
    user_id: str
    amount_paid: int
    final_amount: int
    adjustment: int


class ConfirmResponse(BaseModel):
    success: bool
    match: MatchStateResponse
    adjustments: List[AdjustmentResponse]


class PaymentSummaryResponse(BaseModel):
    match_id: str
    stage: str
    total_players: int
    paid_players: int
    unpaid_players: int
    total_cost: int
    cost_per_player: int
    total_collected: int
    payment_window_end: Optional[str]
    is_window_active: bool


class PricingResponse(BaseModel):
    total_cost: int
    current_player_count: int
    min_players: int
    max_players: int
    cost_per_player: Dict[str, int]


class ReminderResponse(BaseModel):
    reminder_id: str
    match_id: str
    user_id: str
    deadline: str
    created_at: str
    status: str
    scheduled: Dict[str, bool]
    triggered: Dict[str, Any]
    next_fire_at: Optional[str]
    next_kind: Optional[str]


# =============================================================================
# Dependencies
# =============================================================================

def check_match_payments_enabled():
    """Check if the match payment API is enabled."""
    if not feature_flags.FEATURE_MATCH_PAYMENTS:
        raise FeatureDisabledError("Match payments")


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def _state_response(snapshot: MatchPaymentSnapshot) -> MatchStateResponse:
    return MatchStateResponse(**snapshot.to_dict())


# =============================================================================
# Routes
# =============================================================================

@router.post("/", response_model=MatchStateResponse, status_code=status.HTTP_201_CREATED)
async def create_match(
    body: CreateMatchRequest,
    services: ServiceContainer = Depends(get_services)
):
    """Register a match for payment tracking in the free-joining stage."""
    check_match_payments_enabled()
    try:
        snapshot = await services.match_payments.create_match(
            match_id=body.match_id,
            total_cost=body.total_cost,
            min_players=body.min_players,
            max_players=body.max_players,
            starts_at=body.starts_at,
        )
    except PaymentFlowError as e:
        raise from_domain_error(e)
    return _state_response(snapshot)


@router.get("/{match_id}", response_model=MatchStateResponse)
async def get_match(match_id: str, services: ServiceContainer = Depends(get_services)):
    check_match_payments_enabled()
    try:
        snapshot = await services.match_payments.get_state(match_id)
    except PaymentFlowError as e:
        raise from_domain_error(e)
    return _state_response(snapshot)


@router.get("/{match_id}/summary", response_model=PaymentSummaryResponse)
async def get_summary(match_id: str, services: ServiceContainer = Depends(get_services)):
    check_match_payments_enabled()
    try:
        summary = await services.match_payments.get_payment_summary(match_id)
    except PaymentFlowError as e:
        raise from_domain_error(e)
    return PaymentSummaryResponse(**summary)


@router.get("/{match_id}/pricing", response_model=PricingResponse)
async def get_pricing(match_id: str, services: ServiceContainer = Depends(get_services)):
    """Per-player cost at the current, minimum and maximum headcount."""
    check_match_payments_enabled()
    try:
        snapshot = await services.match_payments.get_state(match_id)
        breakdown = calculate_pricing(
            snapshot.total_cost,
            snapshot.current_player_count,
            snapshot.min_players,
            snapshot.max_players,
        )
    except PaymentFlowError as e:
        raise from_domain_error(e)
    return PricingResponse(**breakdown.to_dict())


@router.post("/{match_id}/join", response_model=MatchStateResponse)
async def join_match(
    match_id: str,
    body: ParticipantRequest,
    services: ServiceContainer = Depends(get_services)
):
    """
    Join a match.

    The join that reaches the minimum headcount opens the payment window.
    """
    check_match_payments_enabled()
    try:
        snapshot = await services.match_payments.on_participant_join(match_id, body.user_id)
    except PaymentFlowError as e:
        raise from_domain_error(e)
    return _state_response(snapshot)


@router.post("/{match_id}/leave", response_model=MatchStateResponse)
async def leave_match(
    match_id: str,
    body: ParticipantRequest,
    services: ServiceContainer = Depends(get_services)
):
    check_match_payments_enabled()
    try:
        snapshot = await services.match_payments.on_participant_leave(match_id, body.user_id)
    except PaymentFlowError as e:
        raise from_domain_error(e)
    return _state_response(snapshot)


@router.post("/{match_id}/pay", response_model=MatchStateResponse)
@limiter.limit(settings.PAY_RATE_LIMIT)
async def pay(
    request: Request,
    match_id: str,
    body: PaymentRequest,
    services: ServiceContainer = Depends(get_services)
):
    """Capture a payment and record it against the participant's share."""
    check_match_payments_enabled()
    try:
        snapshot = await services.match_payments.on_payment_received(
            match_id, body.user_id, body.amount, method=body.method
        )
    except PaymentFlowError as e:
        raise from_domain_error(e)
    return _state_response(snapshot)


@router.post("/{match_id}/confirm", response_model=ConfirmResponse)
async def confirm_match(match_id: str, services: ServiceContainer = Depends(get_services)):
    """Lock in the final team and settle refunds / top-ups."""
    check_match_payments_enabled()
    try:
        snapshot, adjustments = await services.match_payments.on_confirm(match_id)
    except PaymentFlowError as e:
        raise from_domain_error(e)
    return ConfirmResponse(
        success=True,
        match=_state_response(snapshot),
        adjustments=[
            AdjustmentResponse(
                user_id=a.user_id,
                amount_paid=a.amount_paid,
                final_amount=a.final_amount,
                adjustment=a.adjustment,
            )
            for a in adjustments
        ],
    )


@router.post("/{match_id}/cancel", response_model=MatchStateResponse)
async def cancel_match(
    match_id: str,
    body: CancelRequest,
    services: ServiceContainer = Depends(get_services)
):
    check_match_payments_enabled()
    try:
        snapshot = await services.match_payments.on_organizer_cancel(match_id, body.reason)
    except PaymentFlowError as e:
        raise from_domain_error(e)
    return _state_response(snapshot)


@router.get("/{match_id}/reminders", response_model=List[ReminderResponse])
async def list_reminders(match_id: str, services: ServiceContainer = Depends(get_services)):
    """Active reminders for the match."""
    check_match_payments_enabled()
    reminders = await services.scheduler.list_active_reminders(match_id)
    return [ReminderResponse(**r.to_dict()) for r in reminders]
