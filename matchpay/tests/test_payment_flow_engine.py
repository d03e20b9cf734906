"""
Payment Flow Engine Test Suite.

Pure calculations: window policy, share rounding, join/leave, soft lock,
payments, hard lock eviction, confirmation and cancellation.
"""
from datetime import datetime, timedelta

import pytest

from matchpay.exceptions import (
    AlreadyJoinedError,
    AlreadyPaidError,
    CannotLeaveAfterPaymentError,
    IncompletePaymentError,
    InvalidAmountError,
    InvalidTransitionError,
    MatchClosedError,
    MatchFullError,
    ParticipantNotFoundError,
    QuorumNotMetError,
    WindowNotActiveError,
    WindowStillOpenError,
)
from matchpay.orm.match_payment import PaymentStage
from matchpay.services.payment_flow_engine import (
    MatchPaymentSnapshot,
    PaymentFlowEngine,
    SettlementKind,
    split_cost,
)

NOW = datetime(2026, 3, 1, 10, 0, 0)


# =============================================================================
# Helpers
# =============================================================================

def new_match(total_cost=1800, min_players=10, max_players=14, hours_until_start=4):
    return MatchPaymentSnapshot(
        match_id="m1",
        stage=PaymentStage.FREE_JOINING,
        min_players=min_players,
        max_players=max_players,
        total_cost=total_cost,
        match_starts_at=NOW + timedelta(hours=hours_until_start),
    )


def join_all(state, count, start=1):
    for i in range(start, start + count):
        state = PaymentFlowEngine.evaluate_join(state, f"u{i}", NOW).state
    return state


def open_window(players=10, **kwargs):
    state = join_all(new_match(**kwargs), players)
    state = PaymentFlowEngine.enter_soft_lock(state, NOW)
    return PaymentFlowEngine.open_payment_window(state)


def pay_all(state, user_ids, amount=None):
    for user_id in user_ids:
        due = state.find(user_id).amount_due
        state = PaymentFlowEngine.record_payment(state, user_id, amount or due, NOW)
    return state


def after_window(state):
    return state.payment_window_end + timedelta(seconds=1)


# =============================================================================
# Window duration policy
# =============================================================================

class TestWindowDuration:

    @pytest.mark.parametrize("hours,minutes", [
        (-1, 30),
        (0.5, 30),
        (1.99, 30),
        (2, 60),
        (4, 60),
        (6, 60),
        (6.01, 90),
        (48, 90),
    ])
    def test_policy_table(self, hours, minutes):
        assert PaymentFlowEngine.compute_window_duration(hours) == minutes


# =============================================================================
# Share rounding
# =============================================================================

class TestSplitCost:

    def test_exact_split(self):
        assert split_cost(1800, 10) == 180

    def test_rounds_down_below_half(self):
        assert split_cost(1000, 3) == 333

    def test_rounds_up_above_half(self):
        assert split_cost(1000, 6) == 167

    def test_rounds_half_up(self):
        assert split_cost(5, 2) == 3
        assert split_cost(1500, 4) == 375

    def test_no_players_is_zero(self):
        assert split_cost(1800, 0) == 0


# =============================================================================
# Join
# =============================================================================

class TestJoin:

    def test_join_appends_zero_due_status(self):
        outcome = PaymentFlowEngine.evaluate_join(new_match(), "u1", NOW)
        status = outcome.state.find("u1")
        assert status.amount_due == 0
        assert status.is_paid is False
        assert status.joined_at == NOW
        assert outcome.state.current_player_count == 1
        assert outcome.quorum_reached is False

    def test_input_state_not_mutated(self):
        state = new_match()
        PaymentFlowEngine.evaluate_join(state, "u1", NOW)
        assert state.current_player_count == 0

    def test_quorum_signalled_on_tenth_join(self):
        state = join_all(new_match(), 9)
        outcome = PaymentFlowEngine.evaluate_join(state, "u10", NOW)
        assert outcome.quorum_reached is True

    def test_cost_per_player_rederived_on_join(self):
        state = join_all(new_match(), 3)
        assert state.cost_per_player == 600

    def test_duplicate_join_rejected(self):
        state = join_all(new_match(), 1)
        with pytest.raises(AlreadyJoinedError):
            PaymentFlowEngine.evaluate_join(state, "u1", NOW)

    def test_full_match_rejected(self):
        state = join_all(new_match(min_players=2, max_players=3), 3)
        with pytest.raises(MatchFullError):
            PaymentFlowEngine.evaluate_join(state, "u4", NOW)

    def test_late_joiner_owes_soft_lock_price(self):
        state = open_window(players=10)
        outcome = PaymentFlowEngine.evaluate_join(state, "u11", NOW)
        late = outcome.state.find("u11")
        assert outcome.quorum_reached is False
        assert late.amount_due == 180
        assert late.payment_deadline == state.payment_window_end
        assert outcome.state.cost_per_player == split_cost(1800, 11)

    def test_join_rejected_after_hard_lock(self):
        state = pay_all(open_window(players=10), [f"u{i}" for i in range(1, 11)])
        locked = PaymentFlowEngine.enter_hard_lock(state, after_window(state)).state
        with pytest.raises(MatchClosedError):
            PaymentFlowEngine.evaluate_join(locked, "u99", NOW)


# =============================================================================
# Soft lock (Scenario A)
# =============================================================================

class TestSoftLock:

    def test_scenario_a(self):
        state = join_all(new_match(total_cost=1800, min_players=10, max_players=14, hours_until_start=4), 10)
        locked = PaymentFlowEngine.enter_soft_lock(state, NOW)

        assert locked.stage == PaymentStage.SOFT_LOCK
        assert locked.payment_window_start == NOW
        assert locked.payment_window_end == NOW + timedelta(minutes=60)
        assert locked.cost_per_player == 180
        for status in locked.player_payments:
            assert status.amount_due == 180
            assert status.payment_deadline == locked.payment_window_end
            assert status.stage == PaymentStage.SOFT_LOCK

    def test_quorum_not_met(self):
        state = join_all(new_match(), 9)
        with pytest.raises(QuorumNotMetError) as exc_info:
            PaymentFlowEngine.enter_soft_lock(state, NOW)
        assert exc_info.value.details["current_player_count"] == 9

    def test_soft_lock_only_from_free_joining(self):
        state = open_window(players=10)
        with pytest.raises(InvalidTransitionError):
            PaymentFlowEngine.enter_soft_lock(state, NOW)

    def test_imminent_match_gets_short_window(self):
        state = join_all(new_match(hours_until_start=1), 10)
        locked = PaymentFlowEngine.enter_soft_lock(state, NOW)
        assert locked.payment_window_end - locked.payment_window_start == timedelta(minutes=30)

    def test_open_payment_window(self):
        state = open_window(players=10)
        assert state.stage == PaymentStage.PAYMENT_WINDOW
        assert all(p.stage == PaymentStage.PAYMENT_WINDOW for p in state.player_payments)


# =============================================================================
# Payments
# =============================================================================

class TestRecordPayment:

    def test_full_payment_marks_paid(self):
        state = PaymentFlowEngine.record_payment(open_window(), "u1", 180, NOW)
        status = state.find("u1")
        assert status.is_paid is True
        assert status.amount_paid == 180
        assert status.paid_at == NOW

    def test_partial_payment_recorded_but_unpaid(self):
        state = PaymentFlowEngine.record_payment(open_window(), "u1", 100, NOW)
        status = state.find("u1")
        assert status.amount_paid == 100
        assert status.is_paid is False
        assert status.paid_at is None

    def test_partial_payments_accumulate(self):
        state = PaymentFlowEngine.record_payment(open_window(), "u1", 100, NOW)
        state = PaymentFlowEngine.record_payment(state, "u1", 80, NOW)
        assert state.find("u1").amount_paid == 180
        assert state.find("u1").is_paid is True

    def test_already_paid(self):
        state = PaymentFlowEngine.record_payment(open_window(), "u1", 180, NOW)
        with pytest.raises(AlreadyPaidError):
            PaymentFlowEngine.record_payment(state, "u1", 180, NOW)

    def test_window_not_active_before_soft_lock(self):
        state = join_all(new_match(), 3)
        with pytest.raises(WindowNotActiveError) as exc_info:
            PaymentFlowEngine.record_payment(state, "u1", 180, NOW)
        assert exc_info.value.user_message == "The payment window has not opened yet."

    @pytest.mark.parametrize("amount", [0, -10, 1.5, True])
    def test_invalid_amounts(self, amount):
        with pytest.raises(InvalidAmountError):
            PaymentFlowEngine.record_payment(open_window(), "u1", amount, NOW)

    def test_unknown_participant(self):
        with pytest.raises(ParticipantNotFoundError):
            PaymentFlowEngine.record_payment(open_window(), "stranger", 180, NOW)


# =============================================================================
# Leave
# =============================================================================

class TestLeave:

    def test_unpaid_participant_leaves(self):
        state = join_all(new_match(), 3)
        outcome = PaymentFlowEngine.evaluate_leave(state, "u2")
        assert outcome.state.find("u2") is None
        assert outcome.state.current_player_count == 2
        assert outcome.state.cost_per_player == 900
        assert outcome.refunds == []

    def test_paid_participant_cannot_leave(self):
        state = PaymentFlowEngine.record_payment(open_window(), "u1", 180, NOW)
        with pytest.raises(CannotLeaveAfterPaymentError):
            PaymentFlowEngine.evaluate_leave(state, "u1")

    def test_leave_below_quorum_keeps_window_open(self):
        outcome = PaymentFlowEngine.evaluate_leave(open_window(players=10), "u10")
        assert outcome.state.stage == PaymentStage.PAYMENT_WINDOW
        assert outcome.state.current_player_count == 9

    def test_partial_payer_refunded_on_leave(self):
        state = PaymentFlowEngine.record_payment(open_window(), "u1", 50, NOW)
        outcome = PaymentFlowEngine.evaluate_leave(state, "u1")
        assert len(outcome.refunds) == 1
        assert outcome.refunds[0].amount == 50
        assert outcome.refunds[0].kind == SettlementKind.REFUND

    def test_unknown_participant(self):
        with pytest.raises(ParticipantNotFoundError):
            PaymentFlowEngine.evaluate_leave(new_match(), "nobody")


# =============================================================================
# Hard lock (Scenarios B and C)
# =============================================================================

class TestHardLock:

    def test_window_still_open(self):
        state = open_window()
        with pytest.raises(WindowStillOpenError):
            PaymentFlowEngine.enter_hard_lock(state, state.payment_window_end - timedelta(seconds=1))

    def test_window_not_active_in_free_joining(self):
        with pytest.raises(WindowNotActiveError):
            PaymentFlowEngine.enter_hard_lock(join_all(new_match(), 3), NOW)

    def test_scenario_b_quorum_lost(self):
        state = pay_all(open_window(players=10), [f"u{i}" for i in range(1, 9)])
        outcome = PaymentFlowEngine.enter_hard_lock(state, after_window(state))

        assert outcome.quorum_lost is True
        assert sorted(outcome.evicted) == ["u10", "u9"]
        assert len(outcome.released) == 8
        assert len(outcome.refunds) == 8
        assert all(r.amount == 180 and r.reason == "quorum_lost" for r in outcome.refunds)
        assert outcome.state.stage == PaymentStage.FREE_JOINING
        assert outcome.state.current_player_count == 0
        assert outcome.state.payment_window_end is None

    def test_scenario_c_quorum_held(self):
        state = pay_all(open_window(players=10), [f"u{i}" for i in range(1, 11)])
        outcome = PaymentFlowEngine.enter_hard_lock(state, after_window(state))

        assert outcome.quorum_lost is False
        assert outcome.evicted == []
        assert outcome.refunds == []
        assert outcome.state.stage == PaymentStage.HARD_LOCK
        assert outcome.state.current_player_count == 10
        assert outcome.state.cost_per_player == 180

    def test_unpaid_evicted_and_cost_recomputed(self):
        state = open_window(players=12)
        assert state.cost_per_player == 150
        state = pay_all(state, [f"u{i}" for i in range(1, 11)])
        outcome = PaymentFlowEngine.enter_hard_lock(state, after_window(state))

        assert sorted(outcome.evicted) == ["u11", "u12"]
        assert outcome.state.current_player_count == 10
        assert outcome.state.cost_per_player == 180

    def test_evicted_partial_payer_refunded(self):
        state = pay_all(open_window(players=10), [f"u{i}" for i in range(1, 11)])
        state = PaymentFlowEngine.evaluate_join(state, "u11", NOW).state
        state = PaymentFlowEngine.record_payment(state, "u11", 40, NOW)
        outcome = PaymentFlowEngine.enter_hard_lock(state, after_window(state))

        assert outcome.evicted == ["u11"]
        assert [(r.user_id, r.amount) for r in outcome.refunds] == [("u11", 40)]

    def test_reentry_is_noop(self):
        state = pay_all(open_window(players=12), [f"u{i}" for i in range(1, 11)])
        first = PaymentFlowEngine.enter_hard_lock(state, after_window(state))
        second = PaymentFlowEngine.enter_hard_lock(first.state, after_window(state))

        assert second.already_applied is True
        assert second.evicted == []
        assert second.refunds == []
        assert second.state == first.state


# =============================================================================
# Confirmation and cost conservation
# =============================================================================

class TestConfirm:

    def test_scenario_c_zero_adjustments(self):
        state = pay_all(open_window(players=10), [f"u{i}" for i in range(1, 11)])
        locked = PaymentFlowEngine.enter_hard_lock(state, after_window(state)).state
        confirmed, adjustments = PaymentFlowEngine.confirm_final_team(locked)

        assert confirmed.stage == PaymentStage.CONFIRMED
        assert len(adjustments) == 10
        assert all(a.adjustment == 0 for a in adjustments)
        assert all(a.to_settlement() is None for a in adjustments)

    def test_overpayment_refunded(self):
        state = open_window(players=10)
        state = PaymentFlowEngine.record_payment(state, "u1", 200, NOW)
        state = pay_all(state, [f"u{i}" for i in range(2, 11)])
        locked = PaymentFlowEngine.enter_hard_lock(state, after_window(state)).state
        confirmed, adjustments = PaymentFlowEngine.confirm_final_team(locked)

        by_user = {a.user_id: a for a in adjustments}
        settlement = by_user["u1"].to_settlement()
        assert by_user["u1"].adjustment == 20
        assert settlement.kind == SettlementKind.REFUND
        assert settlement.amount == 20
        assert confirmed.find("u1").amount_paid == 180

    def test_shrunk_payer_set_owes_top_up(self):
        state = pay_all(open_window(players=12), [f"u{i}" for i in range(1, 11)])
        locked = PaymentFlowEngine.enter_hard_lock(state, after_window(state)).state
        _, adjustments = PaymentFlowEngine.confirm_final_team(locked)

        assert all(a.adjustment == -30 for a in adjustments)
        settlement = adjustments[0].to_settlement()
        assert settlement.kind == SettlementKind.TOP_UP
        assert settlement.amount == 30

    def test_requires_hard_lock(self):
        with pytest.raises(IncompletePaymentError):
            PaymentFlowEngine.confirm_final_team(open_window())

    def test_terminal_match_rejected(self):
        state, _ = PaymentFlowEngine.cancel(open_window(), "rain")
        with pytest.raises(MatchClosedError):
            PaymentFlowEngine.confirm_final_team(state)

    @pytest.mark.parametrize("total_cost,players", [
        (1800, 10), (1000, 3), (1000, 6), (999, 7), (2500, 13), (7, 4),
    ])
    def test_cost_conservation(self, total_cost, players):
        state = open_window(players=players, total_cost=total_cost, min_players=players, max_players=players)
        state = pay_all(state, [f"u{i}" for i in range(1, players + 1)])
        locked = PaymentFlowEngine.enter_hard_lock(state, after_window(state)).state
        confirmed, _ = PaymentFlowEngine.confirm_final_team(locked)

        collected = sum(p.amount_paid for p in confirmed.player_payments)
        assert abs(collected - total_cost) <= confirmed.current_player_count


# =============================================================================
# Cancellation
# =============================================================================

class TestCancel:

    def test_refunds_everything_collected(self):
        state = open_window(players=10)
        state = pay_all(state, ["u1", "u2"])
        state = PaymentFlowEngine.record_payment(state, "u3", 60, NOW)
        cancelled, refunds = PaymentFlowEngine.cancel(state, "turf unavailable")

        assert cancelled.stage == PaymentStage.CANCELLED
        assert cancelled.cancel_reason == "turf unavailable"
        assert sorted((r.user_id, r.amount) for r in refunds) == [("u1", 180), ("u2", 180), ("u3", 60)]

    def test_cancel_free_joining_has_no_refunds(self):
        cancelled, refunds = PaymentFlowEngine.cancel(join_all(new_match(), 4), "organizer busy")
        assert cancelled.stage == PaymentStage.CANCELLED
        assert refunds == []

    def test_cannot_cancel_twice(self):
        cancelled, _ = PaymentFlowEngine.cancel(new_match(), "x")
        with pytest.raises(MatchClosedError):
            PaymentFlowEngine.cancel(cancelled, "again")


# =============================================================================
# Lifecycle properties
# =============================================================================

STAGE_RANK = {
    PaymentStage.FREE_JOINING: 0,
    PaymentStage.SOFT_LOCK: 1,
    PaymentStage.PAYMENT_WINDOW: 2,
    PaymentStage.HARD_LOCK: 3,
    PaymentStage.CONFIRMED: 4,
}


class TestLifecycleProperties:

    def test_stage_never_regresses_on_happy_path(self):
        stages = []
        state = new_match()
        stages.append(state.stage)
        state = join_all(state, 10)
        state = PaymentFlowEngine.enter_soft_lock(state, NOW)
        stages.append(state.stage)
        state = PaymentFlowEngine.open_payment_window(state)
        stages.append(state.stage)
        state = pay_all(state, [f"u{i}" for i in range(1, 11)])
        state = PaymentFlowEngine.enter_hard_lock(state, after_window(state)).state
        stages.append(state.stage)
        state, _ = PaymentFlowEngine.confirm_final_team(state)
        stages.append(state.stage)

        ranks = [STAGE_RANK[s] for s in stages]
        assert ranks == sorted(ranks)

    def test_quorum_holds_through_payment_window_joins(self):
        state = open_window(players=10)
        for i in range(11, 15):
            state = PaymentFlowEngine.evaluate_join(state, f"u{i}", NOW).state
            assert state.current_player_count >= state.min_players
        state = pay_all(state, [f"u{i}" for i in range(1, 15)])
        assert state.current_player_count == len(state.player_payments) == 14

    def test_summary(self):
        state = pay_all(open_window(players=10), ["u1", "u2", "u3"])
        summary = PaymentFlowEngine.payment_summary(state, NOW)
        assert summary["paid_players"] == 3
        assert summary["unpaid_players"] == 7
        assert summary["total_collected"] == 540
        assert summary["is_window_active"] is True
        assert PaymentFlowEngine.payment_summary(state, after_window(state))["is_window_active"] is False
