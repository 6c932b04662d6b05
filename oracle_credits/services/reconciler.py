"""
Payment reconciliation: drives a PENDING purchase to COMPLETED or FAILED exactly once.

Every entry point (webhook, synchronous capture, redirect verify) funnels into
confirm_payment / fail_payment, keyed on the (provider, payment id) recorded at
checkout. Replays of a terminal transaction return its prior outcome.
"""

from datetime import datetime, timedelta

from beanie import PydanticObjectId
from pydantic import BaseModel
from pymongo import ReturnDocument

from oracle_credits.core.audit import log_event
from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import (
    CaptureFailedError,
    GrantAlreadyAppliedError,
    NoPendingTransactionError,
    ProviderMismatchError,
    ProviderNotConfiguredError,
)
from oracle_credits.core.logging import bind_payment_context, get_logger
from oracle_credits.models.credit_account import CreditAccount
from oracle_credits.models.credit_transaction import (
    CreditTransaction,
    ExternalRef,
    Provider,
    TransactionKind,
    TransactionStatus,
)
from oracle_credits.services import ledger, providers

log = get_logger(__name__)


class PaymentOutcome(BaseModel):
    transaction_id: str
    status: TransactionStatus
    credited: int
    new_balance: int | None = None
    replayed: bool = False


def _prior_outcome(txn: CreditTransaction) -> PaymentOutcome:
    completed = txn.status == TransactionStatus.COMPLETED
    return PaymentOutcome(
        transaction_id=str(txn.id),
        status=txn.status,
        credited=txn.amount if completed else 0,
        new_balance=txn.balance_after if completed else None,
        replayed=True,
    )


async def _reject(exc: NoPendingTransactionError | ProviderMismatchError, **context) -> None:
    """Log and audit a confirmation we refuse to credit, then raise it. Needs manual investigation."""
    reason = getattr(exc, "reason", "no_pending_transaction")
    log.error("payment_rejected", provider=exc.provider, payment_id=exc.payment_id, reason=reason, **context)
    await log_event(
        context.get("user_id"),
        "payment_rejected",
        "payment",
        f"{exc.provider}:{exc.payment_id}",
        {"reason": reason, **context},
        severity="critical",
    )
    raise exc


async def _locate(ref: ExternalRef) -> CreditTransaction:
    """The purchase recorded for this external ref. Raises NoPending / ProviderMismatch."""
    txn = await CreditTransaction.find_one(CreditTransaction.external_key == ref.key)
    if txn is not None:
        return txn
    other = await CreditTransaction.find_one(CreditTransaction.provider_payment_id == ref.payment_id)
    if other is not None:
        await _reject(
            ProviderMismatchError(ref.provider.value, ref.payment_id, "provider mismatch"),
            recorded_provider=other.provider.value if other.provider else None,
            user_id=str(other.user_id),
        )
    await _reject(NoPendingTransactionError(ref.provider.value, ref.payment_id))


async def _check_owner(txn: CreditTransaction, user_id: PydanticObjectId | str | None) -> None:
    if user_id is None or str(user_id) == str(txn.user_id):
        return
    await _reject(
        ProviderMismatchError(txn.provider.value, txn.provider_payment_id, "owner mismatch"),
        user_id=str(txn.user_id),
        claimed_user_id=str(user_id),
    )


async def confirm_payment(
    provider: Provider | str,
    payment_id: str,
    confirmed_credits: int | None = None,
    user_id: PydanticObjectId | str | None = None,
) -> PaymentOutcome:
    """Credit a PENDING purchase once. Duplicate or concurrent confirmations replay the first result."""
    ref = ExternalRef(provider=Provider(provider), payment_id=payment_id)
    txn = await _locate(ref)
    await _check_owner(txn, user_id)
    if txn.status != TransactionStatus.PENDING:
        log.info("payment_confirm_replayed", payment_key=ref.key, status=txn.status.value)
        return _prior_outcome(txn)

    if confirmed_credits is not None and confirmed_credits != txn.amount:
        # The recorded package amount is what gets credited.
        log.warning(
            "payment_credit_mismatch",
            payment_key=ref.key,
            recorded=txn.amount,
            reported=confirmed_credits,
        )
        await log_event(
            str(txn.user_id),
            "payment_credit_mismatch",
            "transaction",
            str(txn.id),
            {"recorded": txn.amount, "reported": confirmed_credits, "payment_key": ref.key},
            severity="warning",
        )

    result = await ledger.settle_pending(txn)
    outcome = PaymentOutcome(
        transaction_id=result.transaction_id,
        status=result.status,
        credited=result.amount if result.status == TransactionStatus.COMPLETED else 0,
        new_balance=result.new_balance if result.status == TransactionStatus.COMPLETED else None,
        replayed=result.replayed,
    )
    if not outcome.replayed:
        log.info(
            "payment_confirmed",
            user_id=str(txn.user_id),
            payment_key=ref.key,
            credited=outcome.credited,
            new_balance=outcome.new_balance,
        )
        await log_event(
            str(txn.user_id),
            "payment_completed",
            "transaction",
            str(txn.id),
            {"payment_key": ref.key, "credits": outcome.credited, "price_cents": txn.price_cents},
        )
    return outcome


async def _settlement(txn: CreditTransaction) -> tuple[CreditTransaction, bool]:
    """
    Finish any settlement already committed to the account but not yet copied, then re-read.
    Returns the current row and whether the purchase has been credited.
    """
    await ledger.flush_pending(txn.user_id)
    current = await CreditTransaction.get(txn.id) or txn
    if current.status == TransactionStatus.COMPLETED:
        return current, True
    account = await CreditAccount.find_one(CreditAccount.user_id == txn.user_id)
    held = account is not None and any(e.transaction_id == txn.id for e in account.pending_entries)
    return current, held


async def fail_payment(provider: Provider | str, payment_id: str, reason: str) -> PaymentOutcome:
    """PENDING -> FAILED without touching the balance. No-op on a terminal or already credited transaction."""
    ref = ExternalRef(provider=Provider(provider), payment_id=payment_id)
    txn = await _locate(ref)
    return await _fail(txn, reason)


async def _fail(txn: CreditTransaction, reason: str) -> PaymentOutcome:
    current, credited = await _settlement(txn)
    if credited:
        log.warning("payment_fail_after_credit", user_id=str(txn.user_id), payment_key=txn.external_key, reason=reason)
        return _prior_outcome(current.model_copy(update={"status": TransactionStatus.COMPLETED}))
    return await _mark_failed(current, reason)


async def _mark_failed(txn: CreditTransaction, reason: str) -> PaymentOutcome:
    doc = await CreditTransaction.get_motor_collection().find_one_and_update(
        {"_id": txn.id, "status": TransactionStatus.PENDING.value},
        {"$set": {
            "status": TransactionStatus.FAILED.value,
            "failure_reason": reason,
            "completed_at": datetime.utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        current = await CreditTransaction.get(txn.id)
        return _prior_outcome(current)
    log.info("payment_failed", user_id=str(txn.user_id), payment_key=txn.external_key, reason=reason)
    await log_event(str(txn.user_id), "payment_failed", "transaction", str(txn.id), {"reason": reason})
    return PaymentOutcome(transaction_id=str(txn.id), status=TransactionStatus.FAILED, credited=0)


async def capture_payment(user_id: PydanticObjectId, order_id: str) -> PaymentOutcome:
    """
    Synchronous capture (PayPal): capture at the provider, then confirm through the normal path.
    The capture always runs first; a repeat call finds the order already captured and replays.
    """
    gateway = providers.get_provider(Provider.PAYPAL)
    if not gateway.is_configured():
        raise ProviderNotConfiguredError(gateway.name.value)
    txn = await _locate(ExternalRef(provider=gateway.name, payment_id=order_id))
    await _check_owner(txn, user_id)
    if txn.status == TransactionStatus.FAILED:
        # Expired or denied checkout: never take money we would not credit.
        return _prior_outcome(txn)

    result = await gateway.capture_payment(order_id)
    if not result.success:
        log.warning("payment_capture_failed", user_id=str(user_id), order_id=order_id, error=result.error)
        await log_event(
            str(user_id), "payment_capture_failed", "transaction", str(txn.id), {"error": result.error}, severity="warning"
        )
        raise CaptureFailedError(result.error or "")
    return await confirm_payment(gateway.name, order_id, result.credits, user_id=user_id)


async def verify_checkout(user_id: PydanticObjectId, provider: Provider | str, session_id: str) -> PaymentOutcome:
    """Redirect-time backup for a missed or late webhook. Unpaid sessions stay PENDING."""
    gateway = providers.get_provider(provider)
    if not gateway.is_configured():
        raise ProviderNotConfiguredError(gateway.name.value)
    txn = await _locate(ExternalRef(provider=gateway.name, payment_id=session_id))
    await _check_owner(txn, user_id)
    if txn.status != TransactionStatus.PENDING:
        return _prior_outcome(txn)

    verification = await gateway.verify_payment(session_id)
    if not verification.success:
        log.info("payment_not_yet_paid", user_id=str(user_id), session_id=session_id, status=verification.status)
        return PaymentOutcome(transaction_id=str(txn.id), status=TransactionStatus.PENDING, credited=0)
    return await confirm_payment(gateway.name, session_id, verification.credits, user_id=user_id)


async def reverse_payment(provider: Provider | str, payment_id: str, reason: str) -> PaymentOutcome:
    """Claw back credits for a refunded or charged-back purchase, once per payment."""
    ref = ExternalRef(provider=Provider(provider), payment_id=payment_id)
    txn = await _locate(ref)
    current, credited = await _settlement(txn)
    if not credited:
        if current.status == TransactionStatus.PENDING:
            return await _mark_failed(current, reason)
        return _prior_outcome(current)
    txn = current
    try:
        result = await ledger.reverse_purchase(txn, reason)
    except GrantAlreadyAppliedError:
        log.info("payment_reversal_replayed", payment_key=ref.key)
        return _prior_outcome(txn).model_copy(update={"credited": 0})
    clawback = result.amount if result else 0
    await log_event(
        str(txn.user_id),
        "payment_reversed",
        "transaction",
        str(txn.id),
        {"payment_key": ref.key, "reason": reason, "clawback": -clawback, "purchased": txn.amount},
        severity="warning",
    )
    return PaymentOutcome(
        transaction_id=result.transaction_id if result else str(txn.id),
        status=TransactionStatus.COMPLETED,
        credited=clawback,
        new_balance=result.new_balance if result else None,
    )


async def handle_webhook(provider: Provider | str, payload: bytes, headers: dict[str, str]) -> PaymentOutcome | None:
    """Verify and dispatch a provider callback. None when the event type is not one we act on."""
    gateway = providers.get_provider(provider)
    event = await gateway.verify_webhook(payload, headers)
    if event is None:
        return None
    bind_payment_context(event.provider.value, event.payment_id)
    log.info("webhook_received", event_type=event.type)
    if event.type == "payment.completed":
        return await confirm_payment(event.provider, event.payment_id, event.credits, user_id=event.user_id)
    if event.type in ("payment.failed", "session.expired"):
        return await fail_payment(event.provider, event.payment_id, event.reason or event.type)
    return await reverse_payment(event.provider, event.payment_id, event.reason or event.type)


async def expire_stale_checkouts(older_than: timedelta | None = None) -> int:
    """Fail PENDING purchases abandoned longer than checkout_expiry_hours. Returns how many."""
    if older_than is None:
        older_than = timedelta(hours=get_settings().checkout_expiry_hours)
    cutoff = datetime.utcnow() - older_than
    stale = await CreditTransaction.find(
        CreditTransaction.status == TransactionStatus.PENDING,
        CreditTransaction.kind == TransactionKind.PURCHASE,
        CreditTransaction.created_at < cutoff,
    ).to_list()
    expired = 0
    for txn in stale:
        outcome = await _fail(txn, "expired")
        if outcome.status == TransactionStatus.FAILED and not outcome.replayed:
            expired += 1
    if expired:
        log.info("checkouts_expired", count=expired)
    return expired
