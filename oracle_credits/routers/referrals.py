from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from oracle_credits.core.config import get_settings
from oracle_credits.deps import get_current_user
from oracle_credits.models.user import User
from oracle_credits.services import referrals as referrals_service

router = APIRouter()


class RedeemReferralRequest(BaseModel):
    code: str = Field(min_length=1, max_length=32)


@router.get("/me")
async def referral_me(user: User = Depends(get_current_user)):
    """My referral code, a shareable signup link, and what each side earns on redemption."""
    settings = get_settings()
    code = await referrals_service.get_or_create_referral_code(user.id)
    return {
        "referral_code": code,
        "share_url": f"{settings.frontend_url.rstrip('/')}/signup?ref={code}",
        "bonus_credits": settings.referral_bonus_credits,
    }


@router.post("/redeem")
async def referral_redeem(body: RedeemReferralRequest, user: User = Depends(get_current_user)):
    """Redeem another user's code: both sides get referral_bonus_credits. Once per user."""
    return await referrals_service.redeem_referral_code(user.id, body.code)


@router.get("/stats")
async def referral_stats(user: User = Depends(get_current_user)):
    return await referrals_service.referral_stats(user.id)
