from beanie import PydanticObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from oracle_credits.core.audit import log_event
from oracle_credits.core.pagination import Page, page_of, paginate
from oracle_credits.deps import require_admin
from oracle_credits.models.credit_transaction import CreditTransaction, TransactionKind, TransactionStatus
from oracle_credits.models.user import User
from oracle_credits.routers.credits import transaction_out
from oracle_credits.services import ledger, users

router = APIRouter()


class AdjustCreditsRequest(BaseModel):
    user_id: PydanticObjectId
    amount: int
    reason: str


@router.post("/credits/adjust")
async def admin_adjust_credits(body: AdjustCreditsRequest, admin: User = Depends(require_admin)):
    """Admin: add (positive) or remove (negative) credits with a reason."""
    target = await users.find_user(body.user_id)
    result = await ledger.adjust(target.id, body.amount, body.reason)
    await log_event(
        str(admin.id),
        "admin_credit_adjustment",
        "user",
        str(target.id),
        {"amount": body.amount, "reason": body.reason, "new_balance": result.new_balance},
        severity="warning",
    )
    return result


@router.get("/credits/{user_id}/audit")
async def admin_audit_balance(user_id: PydanticObjectId, admin: User = Depends(require_admin)):
    """Admin: replay the user's log and compare with the cached balance."""
    return await ledger.audit_balance(user_id)


@router.get("/transactions", response_model=Page[dict])
async def admin_transactions(
    admin: User = Depends(require_admin),
    user_id: PydanticObjectId | None = None,
    kind: TransactionKind | None = None,
    status: TransactionStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Admin: transactions filtered by user, kind and status (newest first)."""
    limit, offset = paginate(limit, offset)
    filters = []
    if user_id is not None:
        filters.append(CreditTransaction.user_id == user_id)
    if kind is not None:
        filters.append(CreditTransaction.kind == kind)
    if status is not None:
        filters.append(CreditTransaction.status == status)
    query = CreditTransaction.find(*filters)
    total = await query.count()
    entries = await query.sort(-CreditTransaction.created_at).skip(offset).limit(limit).to_list()
    return page_of([transaction_out(e) for e in entries], limit, offset, total=total)
