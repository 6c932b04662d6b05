from fastapi import APIRouter, Depends, Query

from oracle_credits.core.pagination import Page, page_of, paginate
from oracle_credits.deps import get_current_user
from oracle_credits.models.credit_transaction import TransactionKind
from oracle_credits.models.user import User
from oracle_credits.services import ledger, pricing

router = APIRouter()


def transaction_out(t) -> dict:
    return {
        "id": str(t.id),
        "kind": t.kind.value,
        "amount": t.amount,
        "status": t.status.value,
        "description": t.description,
        "balance_after": t.balance_after,
        "provider": t.provider.value if t.provider else None,
        "related_transaction_id": str(t.related_transaction_id) if t.related_transaction_id else None,
        "created_at": t.created_at.isoformat(),
    }


@router.get("/balance")
async def credits_balance(user: User = Depends(get_current_user)):
    """Return current credit balance and lifetime counters."""
    account = await ledger.get_account(user.id)
    return {
        "balance": account.credits,
        "total_earned": account.total_earned,
        "total_spent": account.total_spent,
    }


@router.get("/check")
async def credits_check(amount: int = Query(..., ge=1), user: User = Depends(get_current_user)):
    """Fast pre-check before starting a paid action. The charge itself re-checks atomically."""
    return await ledger.check_sufficient(user.id, amount)


@router.get("/pricing")
async def credits_pricing():
    return pricing.get_pricing()


@router.get("/ledger", response_model=Page[dict])
async def credits_ledger(
    user: User = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    kind: TransactionKind | None = None,
):
    """Return transactions for current user (newest first)."""
    limit, offset = paginate(limit, offset)
    entries = await ledger.history(user.id, limit=limit, offset=offset, kind=kind)
    return page_of([transaction_out(e) for e in entries], limit, offset)
