from beanie import PydanticObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from oracle_credits.core.security import request_fingerprint
from oracle_credits.deps import get_current_user, idempotency_key
from oracle_credits.models.user import User
from oracle_credits.services import readings
from oracle_credits.services.idempotency import scoped_key, with_idempotency
from oracle_credits.services.pricing import SpreadType

router = APIRouter()


class ChargeReadingRequest(BaseModel):
    spread_type: SpreadType
    advanced_style: bool = False
    extended_question: bool = False


class RefundReadingRequest(BaseModel):
    reason: str = "generation_failed"


@router.post("/charge")
async def charge_reading(
    body: ChargeReadingRequest,
    user: User = Depends(get_current_user),
    key: str | None = Depends(idempotency_key),
):
    """Charge for a reading before generation. Retries with the same Idempotency-Key replay the result."""
    return await with_idempotency(
        scoped_key(user.id, key) if key else None,
        lambda: readings.charge_reading(user.id, body.spread_type, body.advanced_style, body.extended_question),
        fingerprint=request_fingerprint("reading", body.spread_type.value, body.advanced_style, body.extended_question),
    )


@router.post("/follow-up")
async def charge_follow_up(
    user: User = Depends(get_current_user),
    key: str | None = Depends(idempotency_key),
):
    return await with_idempotency(
        scoped_key(user.id, key) if key else None,
        lambda: readings.charge_follow_up(user.id),
        fingerprint=request_fingerprint("follow_up"),
    )


@router.post("/{transaction_id}/refund")
async def refund_reading(
    transaction_id: PydanticObjectId,
    body: RefundReadingRequest,
    user: User = Depends(get_current_user),
):
    """Refund a reading whose generation failed. At most once per charge."""
    return await readings.refund_reading(user.id, transaction_id, body.reason)
