"""Referral codes, redemption and referral stats."""

import secrets

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from oracle_credits.core.audit import log_event
from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import BadRequestError, ConflictError, NotFoundError
from oracle_credits.core.logging import get_logger
from oracle_credits.models.credit_transaction import CreditTransaction, TransactionKind
from oracle_credits.models.user import User
from oracle_credits.services import bonuses, ledger, users

log = get_logger(__name__)

REDEEMED_ONCE_KEY = "referral:redeemed"


async def get_or_create_referral_code(user_id: PydanticObjectId) -> str:
    """Return user's referral code; generate and save if missing."""
    user = await users.find_user(user_id)
    if user.referral_code:
        return user.referral_code
    for _ in range(10):
        code = _generate_code()
        if await User.find_one(User.referral_code == code):
            continue
        try:
            result = await User.get_motor_collection().update_one(
                {"_id": user.id, "referral_code": None},
                {"$set": {"referral_code": code}},
            )
        except DuplicateKeyError:
            continue
        if result.modified_count == 1:
            return code
        return (await users.find_user(user_id)).referral_code
    raise BadRequestError("Could not generate unique referral code")


def _generate_code() -> str:
    return secrets.token_urlsafe(6).upper().replace("-", "").replace("_", "")[:8]


async def redeem_referral_code(user_id: PydanticObjectId, code: str) -> dict:
    """
    Link the current user to the code's owner once and grant the redeemer bonus.
    The referrer's reward then goes through the bonus coordinator (best effort, once per referee).
    """
    user = await users.find_user(user_id)
    code = (code or "").strip().upper()
    if not code:
        raise BadRequestError("Referral code required", code="REFERRAL_CODE_REQUIRED")
    referrer = await User.find_one(User.referral_code == code)
    if not referrer:
        raise NotFoundError("Invalid referral code", code="INVALID_REFERRAL_CODE")
    if referrer.id == user.id:
        raise BadRequestError("Cannot use your own referral code", code="OWN_REFERRAL_CODE")
    if user.referred_by_id is not None:
        raise ConflictError("You have already used a referral code", code="ALREADY_REFERRED")

    users_coll = User.get_motor_collection()
    linked = await users_coll.update_one(
        {"_id": user.id, "referred_by_id": None},
        {"$set": {"referred_by_id": referrer.id}},
    )
    if linked.modified_count != 1:
        raise ConflictError("You have already used a referral code", code="ALREADY_REFERRED")

    amount = get_settings().referral_bonus_credits
    try:
        result = await ledger.add(
            user.id,
            amount,
            TransactionKind.REFERRAL_BONUS,
            "Referral bonus: joined with a friend's code",
            once_key=REDEEMED_ONCE_KEY,
        )
    except Exception:
        await users_coll.update_one({"_id": user.id, "referred_by_id": referrer.id}, {"$unset": {"referred_by_id": ""}})
        raise

    log.info("referral_redeemed", user_id=str(user.id), referrer_id=str(referrer.id))
    await log_event(str(user.id), "referral_redeemed", "user", str(referrer.id), {"code": code, "credits": amount})
    referrer_grants = await bonuses.evaluate(referrer.id, bonuses.BonusContext(referee_id=str(user.id)))
    return {
        "status": "applied",
        "credits": amount,
        "new_balance": result.new_balance,
        "referrer_rewarded": any(g.rule_id == "referral_reward" for g in referrer_grants),
    }


async def referral_stats(user_id: PydanticObjectId) -> dict:
    """Return count of users referred and total referral rewards received."""
    user = await users.find_user(user_id)
    referred_count = await User.find(User.referred_by_id == user.id).count()
    reward_entries = await CreditTransaction.find(
        CreditTransaction.user_id == user.id,
        CreditTransaction.kind == TransactionKind.REFERRAL_BONUS,
    ).to_list()
    total_reward = sum(e.amount for e in reward_entries if e.once_key != REDEEMED_ONCE_KEY)
    return {
        "referral_code": user.referral_code,
        "referred_count": referred_count,
        "total_referral_credits": total_reward,
    }
