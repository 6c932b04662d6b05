"""
Bonus coordinator: achievement and referral rewards evaluated after a primary action committed.

Each rule's unlock and its credit grant are one ledger write (the rule's once-key is added to
the account together with the balance change), so a rule fires at most once per user.
Nothing here may fail the caller: rule errors are logged and skipped.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from beanie import PydanticObjectId
from pydantic import BaseModel, Field

from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import GrantAlreadyAppliedError
from oracle_credits.core.logging import get_logger
from oracle_credits.models.credit_transaction import CreditTransaction, TransactionKind
from oracle_credits.services import ledger
from oracle_credits.services.pricing import SpreadType

log = get_logger(__name__)

ALL_SPREADS_REQUIRED = frozenset({
    SpreadType.SINGLE.value,
    SpreadType.THREE_CARD.value,
    SpreadType.LOVE.value,
    SpreadType.CAREER.value,
    SpreadType.HORSESHOE.value,
    SpreadType.CELTIC_CROSS.value,
})


class BonusContext(BaseModel):
    """What the primary action knows about the user right after it committed."""

    total_readings: int = 0
    login_streak: int = 0
    spread_type: str | None = None
    spreads_used: list[str] = Field(default_factory=list)
    shared: bool = False
    referee_id: str | None = None  # set when a user redeemed this user's referral code


class BonusGrant(BaseModel):
    rule_id: str
    reward: int


@dataclass(frozen=True)
class BonusRule:
    id: str
    name: str
    reward: int
    satisfied: Callable[[BonusContext], bool]

    @property
    def once_key(self) -> str:
        return f"achievement:{self.id}"


RULES: list[BonusRule] = [
    BonusRule("first_reading", "First Reading", 3, lambda c: c.total_readings >= 1),
    BonusRule("five_readings", "Five Readings", 5, lambda c: c.total_readings >= 5),
    BonusRule("ten_readings", "Ten Readings", 10, lambda c: c.total_readings >= 10),
    BonusRule(
        "celtic_master",
        "Celtic Master",
        5,
        lambda c: c.spread_type == SpreadType.CELTIC_CROSS.value or SpreadType.CELTIC_CROSS.value in c.spreads_used,
    ),
    BonusRule("all_spreads", "Explorer", 10, lambda c: ALL_SPREADS_REQUIRED <= set(c.spreads_used)),
    BonusRule("week_streak", "Week Streak", 10, lambda c: c.login_streak >= 7),
    BonusRule("share_reading", "Sharing Is Caring", 3, lambda c: c.shared),
]


async def _grant(user_id: PydanticObjectId, rule: BonusRule) -> BonusGrant | None:
    try:
        await ledger.add(
            user_id,
            rule.reward,
            TransactionKind.ACHIEVEMENT,
            f"Achievement unlocked: {rule.name}",
            once_key=rule.once_key,
        )
    except GrantAlreadyAppliedError:
        return None
    log.info("achievement_unlocked", user_id=str(user_id), rule_id=rule.id, reward=rule.reward)
    return BonusGrant(rule_id=rule.id, reward=rule.reward)


async def _grant_referral(user_id: PydanticObjectId, referee_id: str) -> BonusGrant | None:
    reward = get_settings().referral_bonus_credits
    try:
        await ledger.add(
            user_id,
            reward,
            TransactionKind.REFERRAL_BONUS,
            "Referral reward: a friend joined with your code",
            once_key=f"referral:{referee_id}",
        )
    except GrantAlreadyAppliedError:
        return None
    log.info("referral_rewarded", user_id=str(user_id), referee_id=referee_id, reward=reward)
    return BonusGrant(rule_id="referral_reward", reward=reward)


async def evaluate(user_id: PydanticObjectId, context: BonusContext) -> list[BonusGrant]:
    """Grant every newly satisfied rule. Never raises; returns [] if evaluation itself fails."""
    try:
        account = await ledger.get_account(user_id)
        granted: list[BonusGrant] = []
        for rule in RULES:
            if rule.once_key in account.applied_keys:
                continue
            try:
                if not rule.satisfied(context):
                    continue
                grant = await _grant(user_id, rule)
            except Exception:
                log.exception("bonus_rule_failed", user_id=str(user_id), rule_id=rule.id)
                continue
            if grant:
                granted.append(grant)
        if context.referee_id:
            try:
                grant = await _grant_referral(user_id, context.referee_id)
            except Exception:
                log.exception("bonus_rule_failed", user_id=str(user_id), rule_id="referral_reward")
                grant = None
            if grant:
                granted.append(grant)
        return granted
    except Exception:
        log.exception("bonus_evaluation_failed", user_id=str(user_id))
        return []


class AchievementStatus(BaseModel):
    id: str
    name: str
    reward: int
    unlocked: bool
    unlocked_at: datetime | None = None


async def list_achievements(user_id: PydanticObjectId) -> list[AchievementStatus]:
    account = await ledger.get_account(user_id)
    unlocks = await CreditTransaction.find(
        CreditTransaction.user_id == user_id,
        CreditTransaction.kind == TransactionKind.ACHIEVEMENT,
    ).to_list()
    unlocked_at = {t.once_key: t.created_at for t in unlocks if t.once_key}
    return [
        AchievementStatus(
            id=rule.id,
            name=rule.name,
            reward=rule.reward,
            unlocked=rule.once_key in account.applied_keys,
            unlocked_at=unlocked_at.get(rule.once_key),
        )
        for rule in RULES
    ]
