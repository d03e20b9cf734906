"""
Pricing Service

Transparent upfront pricing: cost per person = total cost / number of players,
shown at the current, minimum and maximum headcount.
"""
from dataclasses import dataclass
from typing import Any, Dict

from matchpay.exceptions import InvalidMatchConfigError
from matchpay.services.payment_flow_engine import split_cost


@dataclass
class PricingBreakdown:
    total_cost: int
    current_player_count: int
    min_players: int
    max_players: int
    cost_at_current: int
    cost_at_min: int
    cost_at_max: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_cost": self.total_cost,
            "current_player_count": self.current_player_count,
            "min_players": self.min_players,
            "max_players": self.max_players,
            "cost_per_player": {
                "current": self.cost_at_current,
                "at_min": self.cost_at_min,
                "at_max": self.cost_at_max,
            },
        }


def calculate_pricing(
    total_cost: int,
    current_player_count: int,
    min_players: int,
    max_players: int
) -> PricingBreakdown:
    """
    Per-player cost at each headcount, rounded half-up to whole units.

    With nobody joined yet, "current" is priced as a single player.
    """
    if total_cost <= 0:
        raise InvalidMatchConfigError("total_cost must be positive")
    if min_players < 1 or max_players < min_players:
        raise InvalidMatchConfigError("player bounds must satisfy 1 <= min_players <= max_players")

    return PricingBreakdown(
        total_cost=total_cost,
        current_player_count=current_player_count,
        min_players=min_players,
        max_players=max_players,
        cost_at_current=split_cost(total_cost, max(current_player_count, 1)),
        cost_at_min=split_cost(total_cost, min_players),
        cost_at_max=split_cost(total_cost, max_players),
    )
