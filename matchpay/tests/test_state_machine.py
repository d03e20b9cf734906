"""
Match payment stage machine tests.
"""
import pytest

from matchpay.exceptions import InvalidTransitionError
from matchpay.orm.match_payment import PaymentStage
from matchpay.state_machines.match_payment import MatchPaymentStateMachine


# =============================================================================
# Forward progression
# =============================================================================

class TestForwardTransitions:

    @pytest.mark.parametrize("source,target", [
        (PaymentStage.FREE_JOINING, PaymentStage.SOFT_LOCK),
        (PaymentStage.SOFT_LOCK, PaymentStage.PAYMENT_WINDOW),
        (PaymentStage.PAYMENT_WINDOW, PaymentStage.HARD_LOCK),
        (PaymentStage.HARD_LOCK, PaymentStage.CONFIRMED),
    ])
    def test_canonical_path_is_valid(self, source, target):
        assert MatchPaymentStateMachine.can_transition(source, target) is True

    def test_quorum_lost_reset_is_valid(self):
        assert MatchPaymentStateMachine.can_transition(
            PaymentStage.HARD_LOCK, PaymentStage.FREE_JOINING
        ) is True

    @pytest.mark.parametrize("source", [
        PaymentStage.FREE_JOINING,
        PaymentStage.SOFT_LOCK,
        PaymentStage.PAYMENT_WINDOW,
        PaymentStage.HARD_LOCK,
    ])
    def test_cancel_reachable_from_non_terminal(self, source):
        assert MatchPaymentStateMachine.can_transition(source, PaymentStage.CANCELLED) is True


# =============================================================================
# Regressions and terminal stages
# =============================================================================

class TestRejectedTransitions:

    @pytest.mark.parametrize("source,target", [
        (PaymentStage.PAYMENT_WINDOW, PaymentStage.FREE_JOINING),
        (PaymentStage.PAYMENT_WINDOW, PaymentStage.SOFT_LOCK),
        (PaymentStage.HARD_LOCK, PaymentStage.PAYMENT_WINDOW),
        (PaymentStage.FREE_JOINING, PaymentStage.HARD_LOCK),
        (PaymentStage.FREE_JOINING, PaymentStage.CONFIRMED),
    ])
    def test_backward_or_skipping_transitions_invalid(self, source, target):
        assert MatchPaymentStateMachine.can_transition(source, target) is False

    @pytest.mark.parametrize("terminal", [PaymentStage.CONFIRMED, PaymentStage.CANCELLED])
    def test_terminal_stages_have_no_exits(self, terminal):
        assert MatchPaymentStateMachine.is_terminal(terminal)
        assert MatchPaymentStateMachine.get_allowed_transitions(terminal) == []

    def test_assert_transition_raises_with_stages(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            MatchPaymentStateMachine.assert_transition(
                "m1", PaymentStage.CONFIRMED, PaymentStage.CANCELLED
            )
        assert exc_info.value.code == "STATE_TRANSITION_INVALID"
        assert exc_info.value.details == {"from": "confirmed", "to": "cancelled"}
        assert exc_info.value.status_code == 409
