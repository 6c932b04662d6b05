"""Credit ledger: the only code allowed to change a balance or append to the transaction log.

Every mutation is a single conditional write on the user's ``accounts`` document,
matched on the version read just before it. That one write sets the new balance
and pushes the log entry into ``pending_entries``, so balance and log can never
diverge. The entry is then copied into ``transactions`` and pulled from the
account. If that copy fails the entry stays on the account and ``flush_pending``
(next ledger call for the user, or the maintenance worker) finishes it.
"""

import asyncio
import random
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from beanie import PydanticObjectId
from bson import ObjectId
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import (
    AccountNotFoundError,
    BadRequestError,
    GrantAlreadyAppliedError,
    InsufficientCreditsError,
    InvalidAmountError,
    LedgerUnavailableError,
    ProviderMismatchError,
    TransactionNotFoundError,
    ZeroAmountError,
)
from oracle_credits.core.logging import get_logger
from oracle_credits.models.credit_account import CreditAccount, PendingEntry
from oracle_credits.models.credit_transaction import (
    CreditTransaction,
    ExternalRef,
    TransactionKind,
    TransactionStatus,
)

log = get_logger(__name__)

# One-shot keys tied to a single transaction. They are held on the account only until the
# log row (which carries the key) is written, then checked against the log instead.
_LOGGED_KEY_PREFIXES = ("refund:", "reversal:")


class LedgerResult(BaseModel):
    transaction_id: str
    amount: int
    new_balance: int
    status: TransactionStatus = TransactionStatus.COMPLETED
    replayed: bool = False


class BalanceCheck(BaseModel):
    sufficient: bool
    balance: int
    required: int


class BalanceAudit(BaseModel):
    user_id: str
    cached_balance: int
    replayed_balance: int
    pending_entries: int
    consistent: bool


def _accounts():
    return CreditAccount.get_motor_collection()


def _transactions():
    return CreditTransaction.get_motor_collection()


@contextmanager
def _storage_errors(operation: str, user_id: PydanticObjectId):
    """Surface driver failures as a retryable ledger error; the conditional write guarantees nothing partial."""
    try:
        yield
    except PyMongoError as e:
        log.error("ledger_storage_error", operation=operation, user_id=str(user_id), error=str(e))
        raise LedgerUnavailableError() from e


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)


def _replay(txn: CreditTransaction) -> LedgerResult:
    return LedgerResult(
        transaction_id=str(txn.id),
        amount=txn.amount,
        new_balance=txn.balance_after if txn.balance_after is not None else 0,
        status=txn.status,
        replayed=True,
    )


async def _backoff(attempt: int) -> None:
    await asyncio.sleep(min(0.2, 0.005 * (2 ** attempt)) * random.uniform(0.5, 1.0))


async def get_account(user_id: PydanticObjectId) -> CreditAccount:
    account = await CreditAccount.find_one(CreditAccount.user_id == user_id)
    if not account:
        raise AccountNotFoundError(user_id)
    return account


async def open_account(user_id: PydanticObjectId) -> CreditAccount:
    """Create the user's account row if missing (idempotent)."""
    existing = await CreditAccount.find_one(CreditAccount.user_id == user_id)
    if existing:
        return existing
    try:
        account = CreditAccount(user_id=user_id)
        await account.insert()
        log.info("account_opened", user_id=str(user_id))
        return account
    except DuplicateKeyError:
        return await get_account(user_id)


async def _key_applied(account: CreditAccount, once_key: str) -> bool:
    if once_key in account.applied_keys:
        return True
    if once_key.startswith(_LOGGED_KEY_PREFIXES):
        return await CreditTransaction.find_one(CreditTransaction.once_key == once_key) is not None
    return False


def _entry_document(entry: PendingEntry) -> dict:
    """Subdocument for $push. Ids stay ObjectIds so the later $pull by transaction_id matches."""
    doc = entry.model_dump()
    doc["transaction_id"] = ObjectId(str(entry.transaction_id))
    if entry.related_transaction_id is not None:
        doc["related_transaction_id"] = ObjectId(str(entry.related_transaction_id))
    return doc


async def _flush_entry(account_id: PydanticObjectId, user_id: PydanticObjectId, entry: PendingEntry) -> None:
    """Copy one pending entry into transactions, then drop it from the account. Safe to repeat."""
    now = datetime.utcnow()
    try:
        if entry.settles_pending:
            before = await _transactions().find_one_and_update(
                {
                    "_id": entry.transaction_id,
                    "status": {"$in": [TransactionStatus.PENDING.value, TransactionStatus.FAILED.value]},
                },
                {
                    "$set": {
                        "status": TransactionStatus.COMPLETED.value,
                        "balance_after": entry.balance_after,
                        "completed_at": now,
                    },
                    "$unset": {"failure_reason": ""},
                },
                return_document=ReturnDocument.BEFORE,
            )
            if before and before.get("status") == TransactionStatus.FAILED.value:
                log.warning(
                    "payment_completed_after_failure",
                    transaction_id=str(entry.transaction_id),
                    user_id=str(user_id),
                )
        else:
            try:
                await CreditTransaction(
                    id=entry.transaction_id,
                    user_id=user_id,
                    kind=entry.kind,
                    amount=entry.amount,
                    description=entry.description,
                    status=TransactionStatus.COMPLETED,
                    balance_after=entry.balance_after,
                    related_transaction_id=entry.related_transaction_id,
                    once_key=entry.once_key,
                    created_at=entry.created_at,
                    completed_at=now,
                ).insert()
            except DuplicateKeyError as e:
                if await CreditTransaction.get(entry.transaction_id) is None:
                    # Collided on another unique index; the row is not written, so keep the entry.
                    log.error(
                        "ledger_flush_conflict",
                        transaction_id=str(entry.transaction_id),
                        user_id=str(user_id),
                        error=str(e),
                    )
                    return
        pull: dict = {"pending_entries": {"transaction_id": entry.transaction_id}}
        if entry.once_key and entry.once_key.startswith(_LOGGED_KEY_PREFIXES):
            pull["applied_keys"] = entry.once_key
        await _accounts().update_one({"_id": account_id}, {"$pull": pull})
    except PyMongoError as e:
        # The balance write already committed; the entry stays on the account until the next flush.
        log.warning("ledger_flush_deferred", transaction_id=str(entry.transaction_id), error=str(e))


async def _apply(
    user_id: PydanticObjectId,
    amount: int,
    kind: TransactionKind,
    description: str,
    *,
    settles: CreditTransaction | None = None,
    related_transaction_id: PydanticObjectId | None = None,
    once_key: str | None = None,
    earned: int | None = None,
    spent: int | None = None,
    before_write: Callable[[CreditAccount], Awaitable[LedgerResult | None]] | None = None,
) -> LedgerResult:
    """Optimistic check-and-write loop. Returns after the single conditional account write succeeds."""
    settings = get_settings()
    transaction_id = settles.id if settles is not None else PydanticObjectId()
    if earned is None:
        earned = max(amount, 0)
    if spent is None:
        spent = max(-amount, 0)

    for attempt in range(settings.ledger_max_attempts):
        if amount > 0:
            account = await open_account(user_id)
        else:
            account = await get_account(user_id)

        for entry in account.pending_entries:
            if entry.transaction_id == transaction_id:
                # A concurrent caller already wrote this settlement; finish its flush and replay it.
                await _flush_entry(account.id, user_id, entry)
                return LedgerResult(
                    transaction_id=str(transaction_id),
                    amount=entry.amount,
                    new_balance=entry.balance_after,
                    replayed=True,
                )
        if once_key and await _key_applied(account, once_key):
            raise GrantAlreadyAppliedError(once_key)
        if before_write is not None:
            early = await before_write(account)
            if early is not None:
                return early

        new_balance = account.credits + amount
        if new_balance < 0:
            raise InsufficientCreditsError(balance=account.credits, required=-amount)

        entry = PendingEntry(
            transaction_id=transaction_id,
            kind=kind,
            amount=amount,
            description=description,
            balance_after=new_balance,
            settles_pending=settles is not None,
            related_transaction_id=related_transaction_id,
            once_key=once_key,
        )
        query: dict = {"_id": account.id, "version": account.version}
        if amount < 0:
            query["credits"] = {"$gte": -amount}
        update: dict = {
            "$set": {"credits": new_balance, "updated_at": datetime.utcnow()},
            "$inc": {"version": 1, "total_earned": earned, "total_spent": spent},
            "$push": {"pending_entries": _entry_document(entry)},
        }
        if once_key:
            update["$addToSet"] = {"applied_keys": once_key}

        result = await _accounts().update_one(query, update)
        if result.modified_count == 1:
            await _flush_entry(account.id, user_id, entry)
            return LedgerResult(transaction_id=str(transaction_id), amount=amount, new_balance=new_balance)

        log.debug("ledger_version_conflict", user_id=str(user_id), attempt=attempt)
        await _backoff(attempt)

    log.warning("ledger_contention_exhausted", user_id=str(user_id), kind=kind.value, amount=amount)
    raise LedgerUnavailableError()


async def get_balance(user_id: PydanticObjectId) -> int:
    account = await get_account(user_id)
    return account.credits


async def check_sufficient(user_id: PydanticObjectId, amount: int) -> BalanceCheck:
    """Fast-fail read for UX. Not a guard: deduct re-checks inside its atomic write."""
    _require_positive(amount)
    account = await CreditAccount.find_one(CreditAccount.user_id == user_id)
    balance = account.credits if account else 0
    return BalanceCheck(sufficient=account is not None and balance >= amount, balance=balance, required=amount)


async def deduct(
    user_id: PydanticObjectId,
    amount: int,
    kind: TransactionKind = TransactionKind.SPEND,
    description: str = "",
) -> LedgerResult:
    """Decrement only if balance >= amount, appending a COMPLETED transaction with -amount."""
    _require_positive(amount)
    try:
        with _storage_errors("deduct", user_id):
            result = await _apply(user_id, -amount, kind, description)
    except InsufficientCreditsError as e:
        log.info("credits_insufficient", user_id=str(user_id), balance=e.balance, required=e.required)
        raise
    log.info(
        "credits_deducted",
        user_id=str(user_id),
        amount=amount,
        kind=kind.value,
        new_balance=result.new_balance,
        transaction_id=result.transaction_id,
    )
    return result


async def add(
    user_id: PydanticObjectId,
    amount: int,
    kind: TransactionKind,
    description: str = "",
    external_ref: ExternalRef | None = None,
    once_key: str | None = None,
) -> LedgerResult:
    """
    Increment the balance and append a COMPLETED transaction.
    With external_ref the grant is keyed on the payment: a repeat call replays the existing result.
    With once_key the grant is applied at most once per account (raises GrantAlreadyAppliedError).
    """
    _require_positive(amount)
    if external_ref is not None:
        txn = await _ref_transaction(user_id, amount, kind, description, external_ref)
        return await settle_pending(txn)
    with _storage_errors("add", user_id):
        result = await _apply(user_id, amount, kind, description, once_key=once_key)
    log.info(
        "credits_added",
        user_id=str(user_id),
        amount=amount,
        kind=kind.value,
        new_balance=result.new_balance,
        transaction_id=result.transaction_id,
    )
    return result


async def _ref_transaction(
    user_id: PydanticObjectId,
    amount: int,
    kind: TransactionKind,
    description: str,
    external_ref: ExternalRef,
) -> CreditTransaction:
    """Find or create the single transaction row for an external payment reference."""
    with _storage_errors("add", user_id):
        txn = await CreditTransaction.find_one(CreditTransaction.external_key == external_ref.key)
        if txn is None:
            txn = CreditTransaction(
                user_id=user_id,
                kind=kind,
                amount=amount,
                description=description,
                status=TransactionStatus.PENDING,
                provider=external_ref.provider,
                provider_payment_id=external_ref.payment_id,
                external_key=external_ref.key,
            )
            try:
                await txn.insert()
            except DuplicateKeyError:
                txn = await CreditTransaction.find_one(CreditTransaction.external_key == external_ref.key)
    if txn.user_id != user_id:
        raise ProviderMismatchError(external_ref.provider.value, external_ref.payment_id, "owner mismatch")
    return txn


async def settle_pending(txn: CreditTransaction) -> LedgerResult:
    """
    Apply a PENDING purchase to the balance and mark it COMPLETED, exactly once.

    The transaction status is re-read after the account snapshot is taken: any settlement
    that committed before the snapshot is then visible either as a pending entry on the
    account or as a COMPLETED status, and any that commits after it bumps the version.
    """
    if txn.status == TransactionStatus.COMPLETED:
        return _replay(txn)

    async def _still_pending(account: CreditAccount) -> LedgerResult | None:
        current = await CreditTransaction.get(txn.id)
        if current is None:
            raise TransactionNotFoundError()
        if current.status == TransactionStatus.COMPLETED:
            return _replay(current)
        if current.status != TransactionStatus.PENDING:
            return LedgerResult(
                transaction_id=str(current.id),
                amount=0,
                new_balance=account.credits,
                status=current.status,
                replayed=True,
            )
        return None

    with _storage_errors("settle", txn.user_id):
        result = await _apply(
            txn.user_id,
            txn.amount,
            txn.kind,
            txn.description,
            settles=txn,
            before_write=_still_pending,
        )
    if not result.replayed:
        log.info(
            "pending_settled",
            user_id=str(txn.user_id),
            transaction_id=result.transaction_id,
            amount=result.amount,
            new_balance=result.new_balance,
        )
    return result


async def refund(
    user_id: PydanticObjectId,
    amount: int,
    reason: str,
    original_transaction_id: PydanticObjectId | None = None,
) -> LedgerResult:
    """Give back spent credits as a REFUND. A linked spend can be refunded once, up to its amount."""
    _require_positive(amount)
    once_key = None
    if original_transaction_id is not None:
        original = await CreditTransaction.get(original_transaction_id)
        if original is None or original.user_id != user_id:
            raise TransactionNotFoundError()
        if original.kind != TransactionKind.SPEND or original.status != TransactionStatus.COMPLETED:
            raise BadRequestError("Only completed spends can be refunded", code="NOT_REFUNDABLE")
        if amount > -original.amount:
            raise BadRequestError(
                "Refund exceeds the original amount",
                code="REFUND_EXCEEDS_ORIGINAL",
                details={"original_amount": -original.amount, "amount": amount},
            )
        once_key = f"refund:{original.id}"
    with _storage_errors("refund", user_id):
        result = await _apply(
            user_id,
            amount,
            TransactionKind.REFUND,
            f"Refund: {reason}",
            related_transaction_id=original_transaction_id,
            once_key=once_key,
        )
    log.info("credits_refunded", user_id=str(user_id), amount=amount, reason=reason, new_balance=result.new_balance)
    return result


async def adjust(user_id: PydanticObjectId, amount: int, reason: str) -> LedgerResult:
    """Administrative correction; positive adds, negative deducts (and can fail on insufficient credits)."""
    if amount == 0:
        raise ZeroAmountError()
    description = f"Admin adjustment: {reason}"
    if amount > 0:
        return await add(user_id, amount, TransactionKind.ADMIN_ADJUSTMENT, description)
    return await deduct(user_id, -amount, TransactionKind.ADMIN_ADJUSTMENT, description)


async def reverse_purchase(purchase: CreditTransaction, reason: str) -> LedgerResult | None:
    """
    Claw back a refunded/charged-back purchase once. Limited to the current balance so it never
    goes negative; returns None when there is nothing left to take back.
    """
    settings = get_settings()
    once_key = f"reversal:{purchase.id}"
    for _ in range(settings.ledger_max_attempts):
        account = await get_account(purchase.user_id)
        if await _key_applied(account, once_key):
            raise GrantAlreadyAppliedError(once_key)
        clawback = min(purchase.amount, account.credits)
        if clawback <= 0:
            log.warning("reversal_nothing_to_claw_back", user_id=str(purchase.user_id), transaction_id=str(purchase.id))
            return None
        try:
            with _storage_errors("reverse", purchase.user_id):
                result = await _apply(
                    purchase.user_id,
                    -clawback,
                    TransactionKind.REFUND,
                    f"Payment reversed: {reason}",
                    related_transaction_id=purchase.id,
                    once_key=once_key,
                    earned=0,
                    spent=0,
                )
        except InsufficientCreditsError:
            continue  # balance moved since the read; recompute the clawback
        log.info(
            "purchase_reversed",
            user_id=str(purchase.user_id),
            transaction_id=str(purchase.id),
            clawback=clawback,
            new_balance=result.new_balance,
        )
        return result
    raise LedgerUnavailableError()


async def flush_pending(user_id: PydanticObjectId, older_than: timedelta | None = None) -> int:
    """Finish copying pending entries for one account. Returns how many were flushed."""
    account = await CreditAccount.find_one(CreditAccount.user_id == user_id)
    if not account or not account.pending_entries:
        return 0
    cutoff = datetime.utcnow() - older_than if older_than else None
    flushed = 0
    for entry in list(account.pending_entries):
        if cutoff and entry.created_at > cutoff:
            continue
        await _flush_entry(account.id, user_id, entry)
        flushed += 1
    return flushed


async def history(
    user_id: PydanticObjectId,
    limit: int = 50,
    offset: int = 0,
    kind: TransactionKind | None = None,
    status: TransactionStatus | None = None,
) -> list[CreditTransaction]:
    """Transactions for user, newest first."""
    await flush_pending(user_id)
    filters = [CreditTransaction.user_id == user_id]
    if kind is not None:
        filters.append(CreditTransaction.kind == kind)
    if status is not None:
        filters.append(CreditTransaction.status == status)
    return (
        await CreditTransaction.find(*filters)
        .sort(-CreditTransaction.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def audit_balance(user_id: PydanticObjectId) -> BalanceAudit:
    """Replay the COMPLETED log (plus unflushed entries) and compare with the cached balance."""
    await flush_pending(user_id)
    account = await get_account(user_id)
    completed = await CreditTransaction.find(
        CreditTransaction.user_id == user_id,
        CreditTransaction.status == TransactionStatus.COMPLETED,
    ).to_list()
    logged = {t.id for t in completed}
    replayed = sum(t.amount for t in completed)
    replayed += sum(e.amount for e in account.pending_entries if e.transaction_id not in logged)
    audit = BalanceAudit(
        user_id=str(user_id),
        cached_balance=account.credits,
        replayed_balance=replayed,
        pending_entries=len(account.pending_entries),
        consistent=replayed == account.credits,
    )
    if not audit.consistent:
        log.error("balance_mismatch", **audit.model_dump())
    return audit


async def flush_stale_entries() -> int:
    """Flush entries left on accounts longer than the grace period (crashed writers). Used by the worker."""
    grace = timedelta(seconds=get_settings().pending_flush_grace_seconds)
    cutoff = datetime.utcnow() - grace
    accounts = await CreditAccount.find({"pending_entries.created_at": {"$lt": cutoff}}).to_list()
    flushed = 0
    for account in accounts:
        flushed += await flush_pending(account.user_id, older_than=grace)
    if flushed:
        log.warning("stale_entries_flushed", count=flushed, accounts=len(accounts))
    return flushed
