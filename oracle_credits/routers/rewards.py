from fastapi import APIRouter, Depends

from oracle_credits.deps import get_current_user
from oracle_credits.models.user import User
from oracle_credits.services import bonuses, rewards

router = APIRouter()


@router.post("/daily-bonus")
async def daily_bonus(user: User = Depends(get_current_user)):
    """Claim today's login bonus (once per UTC day)."""
    return await rewards.claim_daily_bonus(user.id)


@router.post("/share")
async def share(user: User = Depends(get_current_user)):
    return {"achievements": await rewards.record_share(user.id)}


@router.get("/achievements")
async def achievements(user: User = Depends(get_current_user)):
    return {"achievements": await bonuses.list_achievements(user.id)}
