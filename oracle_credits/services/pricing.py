"""Server-side reading cost table. Clients never send a price."""

from enum import Enum

from oracle_credits.core.config import get_settings


class SpreadType(str, Enum):
    SINGLE = "SINGLE"
    TWO_CARD = "TWO_CARD"
    THREE_CARD = "THREE_CARD"
    FIVE_CARD = "FIVE_CARD"
    LOVE = "LOVE"
    CAREER = "CAREER"
    HORSESHOE = "HORSESHOE"
    CELTIC_CROSS = "CELTIC_CROSS"


SPREAD_COSTS = {
    SpreadType.SINGLE: 1,
    SpreadType.TWO_CARD: 2,
    SpreadType.THREE_CARD: 3,
    SpreadType.FIVE_CARD: 5,
    SpreadType.LOVE: 5,
    SpreadType.CAREER: 5,
    SpreadType.HORSESHOE: 7,
    SpreadType.CELTIC_CROSS: 10,
}


def reading_cost(spread: SpreadType, advanced_style: bool = False, extended_question: bool = False) -> int:
    s = get_settings()
    cost = SPREAD_COSTS[spread]
    if advanced_style:
        cost += s.advanced_style_cost
    if extended_question:
        cost += s.extended_question_cost
    return cost


def get_pricing() -> dict:
    s = get_settings()
    return {
        "spreads": {spread.value: cost for spread, cost in SPREAD_COSTS.items()},
        "advanced_style": s.advanced_style_cost,
        "extended_question": s.extended_question_cost,
        "follow_up": s.follow_up_cost,
    }
