"""Daily login bonus and share rewards."""

from datetime import datetime, timedelta

from beanie import PydanticObjectId
from pydantic import BaseModel, Field

from oracle_credits.core.audit import log_event
from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import ConflictError
from oracle_credits.core.logging import get_logger
from oracle_credits.models.credit_transaction import TransactionKind
from oracle_credits.models.user import User
from oracle_credits.services import bonuses, ledger, users

log = get_logger(__name__)


class DailyBonusResult(BaseModel):
    credits: int
    login_streak: int
    new_balance: int
    achievements: list[bonuses.BonusGrant] = Field(default_factory=list)


def _utc_day(now: datetime | None = None) -> tuple[str, str]:
    """(today, yesterday) as YYYY-MM-DD in UTC."""
    now = now or datetime.utcnow()
    return now.strftime("%Y-%m-%d"), (now - timedelta(days=1)).strftime("%Y-%m-%d")


async def claim_daily_bonus(user_id: PydanticObjectId, now: datetime | None = None) -> DailyBonusResult:
    """
    Once per UTC day. The streak continues if the last claim was yesterday, otherwise restarts at 1.
    The day is claimed on the user document first; if the credit grant fails the claim is reverted.
    """
    user = await users.find_user(user_id)
    today, yesterday = _utc_day(now)
    if user.last_bonus_date == today:
        raise ConflictError("Daily bonus already claimed today", code="ALREADY_CLAIMED")
    streak = user.login_streak + 1 if user.last_bonus_date == yesterday else 1

    users_coll = User.get_motor_collection()
    claimed = await users_coll.update_one(
        {"_id": user.id, "last_bonus_date": user.last_bonus_date},
        {"$set": {"last_bonus_date": today, "login_streak": streak, "updated_at": datetime.utcnow()}},
    )
    if claimed.modified_count != 1:
        raise ConflictError("Daily bonus already claimed today", code="ALREADY_CLAIMED")

    amount = get_settings().daily_bonus_credits
    try:
        result = await ledger.add(user.id, amount, TransactionKind.DAILY_BONUS, f"Daily login bonus (day {streak})")
    except Exception:
        revert = {"$set": {"login_streak": user.login_streak}}
        if user.last_bonus_date is None:
            revert["$unset"] = {"last_bonus_date": ""}
        else:
            revert["$set"]["last_bonus_date"] = user.last_bonus_date
        await users_coll.update_one({"_id": user.id, "last_bonus_date": today}, revert)
        raise

    log.info("daily_bonus_claimed", user_id=str(user.id), streak=streak, credits=amount)
    await log_event(str(user.id), "daily_bonus_claimed", "user", str(user.id), {"streak": streak, "credits": amount})
    achievements = await bonuses.evaluate(
        user.id,
        bonuses.BonusContext(
            total_readings=user.total_readings,
            login_streak=streak,
            spreads_used=user.spreads_used,
        ),
    )
    return DailyBonusResult(
        credits=amount,
        login_streak=streak,
        new_balance=result.new_balance,
        achievements=achievements,
    )


async def record_share(user_id: PydanticObjectId) -> list[bonuses.BonusGrant]:
    user = await users.find_user(user_id)
    return await bonuses.evaluate(
        user.id,
        bonuses.BonusContext(
            total_readings=user.total_readings,
            login_streak=user.login_streak,
            spreads_used=user.spreads_used,
            shared=True,
        ),
    )
