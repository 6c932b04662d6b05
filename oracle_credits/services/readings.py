"""Charging for readings and follow-ups, and refunding a failed generation."""

from datetime import datetime

from beanie import PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import BadRequestError, TransactionNotFoundError
from oracle_credits.core.logging import get_logger
from oracle_credits.models.credit_transaction import CreditTransaction, TransactionKind, TransactionStatus
from oracle_credits.models.user import User
from oracle_credits.services import bonuses, ledger, users
from oracle_credits.services.pricing import SpreadType, reading_cost

log = get_logger(__name__)


class ReadingCharge(BaseModel):
    transaction_id: str
    cost: int
    new_balance: int
    achievements: list[bonuses.BonusGrant] = Field(default_factory=list)


async def _record_reading(user: User, spread: SpreadType) -> bonuses.BonusContext:
    """Bump reading counters after the charge. Counters are informational; a failure is logged, not raised."""
    try:
        doc = await User.get_motor_collection().find_one_and_update(
            {"_id": user.id},
            {
                "$inc": {"total_readings": 1},
                "$addToSet": {"spreads_used": spread.value},
                "$set": {"updated_at": datetime.utcnow()},
            },
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError:
        log.exception("reading_counters_failed", user_id=str(user.id))
        doc = None
    if doc is None:
        doc = {
            "total_readings": user.total_readings + 1,
            "spreads_used": sorted(set(user.spreads_used) | {spread.value}),
            "login_streak": user.login_streak,
        }
    return bonuses.BonusContext(
        total_readings=doc.get("total_readings", 0),
        login_streak=doc.get("login_streak", user.login_streak),
        spread_type=spread.value,
        spreads_used=doc.get("spreads_used", []),
    )


async def charge_reading(
    user_id: PydanticObjectId,
    spread: SpreadType,
    advanced_style: bool = False,
    extended_question: bool = False,
) -> ReadingCharge:
    """Deduct the reading cost, then evaluate achievements against the updated counters."""
    user = await users.find_user(user_id)
    cost = reading_cost(spread, advanced_style, extended_question)
    result = await ledger.deduct(user.id, cost, TransactionKind.SPEND, f"Reading: {spread.value}")
    context = await _record_reading(user, spread)
    achievements = await bonuses.evaluate(user.id, context)
    return ReadingCharge(
        transaction_id=result.transaction_id,
        cost=cost,
        new_balance=result.new_balance,
        achievements=achievements,
    )


async def charge_follow_up(user_id: PydanticObjectId) -> ReadingCharge:
    cost = get_settings().follow_up_cost
    result = await ledger.deduct(user_id, cost, TransactionKind.SPEND, "Follow-up question")
    return ReadingCharge(transaction_id=result.transaction_id, cost=cost, new_balance=result.new_balance)


async def refund_reading(user_id: PydanticObjectId, transaction_id: PydanticObjectId, reason: str) -> ledger.LedgerResult:
    """Give back the full charge of a reading whose generation failed. Once per charge."""
    original = await CreditTransaction.get(transaction_id)
    if original is None or original.user_id != user_id:
        raise TransactionNotFoundError()
    if original.kind != TransactionKind.SPEND or original.status != TransactionStatus.COMPLETED:
        raise BadRequestError("Only completed spends can be refunded", code="NOT_REFUNDABLE")
    return await ledger.refund(user_id, -original.amount, reason, original_transaction_id=original.id)
