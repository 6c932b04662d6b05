"""Checkout orchestration and payment reconciliation with in-memory providers."""

import asyncio
from datetime import datetime, timedelta

import pytest
from beanie import PydanticObjectId
from pymongo.errors import AutoReconnect

from oracle_credits.core.exceptions import (
    CaptureFailedError,
    InvalidPackageError,
    NoPendingTransactionError,
    ProviderMismatchError,
    ProviderNotConfiguredError,
    UserNotFoundError,
)
from oracle_credits.models.audit_log import AuditLog
from oracle_credits.models.credit_transaction import CreditTransaction, Provider, TransactionKind, TransactionStatus
from oracle_credits.services import checkout, ledger, reconciler, users
from oracle_credits.services.providers.base import CaptureResult

pytestmark = pytest.mark.asyncio


async def _purchases(user_id):
    return await CreditTransaction.find(
        CreditTransaction.user_id == user_id,
        CreditTransaction.kind == TransactionKind.PURCHASE,
    ).to_list()


async def test_checkout_records_pending_purchase(user, fake_providers):
    result = await checkout.create_checkout(user.id, "basic", Provider.PAYPAL)
    assert result.redirect_url.startswith("https://pay.example/")
    txn = await CreditTransaction.get(PydanticObjectId(result.transaction_id))
    assert txn.status == TransactionStatus.PENDING
    assert txn.amount == 25
    assert txn.price_cents == 1000
    assert txn.external_key == f"paypal:{result.session_id}"
    assert await ledger.get_balance(user.id) == 0


async def test_checkout_rejects_unknown_package(user, fake_providers):
    with pytest.raises(InvalidPackageError):
        await checkout.create_checkout(user.id, "mega", Provider.STRIPE)
    assert await _purchases(user.id) == []


async def test_checkout_rejects_unconfigured_provider(user, fake_providers):
    fake_providers[Provider.STRIPE].configured = False
    with pytest.raises(ProviderNotConfiguredError):
        await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    assert fake_providers[Provider.STRIPE].sessions == 0


async def test_checkout_rejects_unknown_user(fake_providers):
    with pytest.raises(UserNotFoundError):
        await checkout.create_checkout(PydanticObjectId(), "basic", Provider.STRIPE)
    assert fake_providers[Provider.STRIPE].sessions == 0


async def test_duplicate_confirmation_credits_once(user, fake_providers):
    session = await checkout.create_checkout(user.id, "basic", Provider.PAYPAL)

    first = await reconciler.confirm_payment(Provider.PAYPAL, session.session_id)
    assert first.credited == 25 and first.new_balance == 25 and not first.replayed
    txn = await CreditTransaction.get(PydanticObjectId(session.transaction_id))
    assert txn.status == TransactionStatus.COMPLETED

    second = await reconciler.confirm_payment(Provider.PAYPAL, session.session_id)
    assert second.replayed
    assert (second.credited, second.new_balance, second.transaction_id) == (25, 25, first.transaction_id)
    assert await ledger.get_balance(user.id) == 25
    assert len(await _purchases(user.id)) == 1


async def test_concurrent_confirmations_credit_once(user, fake_providers):
    session = await checkout.create_checkout(user.id, "popular", Provider.STRIPE)
    outcomes = await asyncio.gather(
        *[reconciler.confirm_payment(Provider.STRIPE, session.session_id) for _ in range(5)]
    )
    assert sum(not o.replayed for o in outcomes) == 1
    assert all(o.credited == 60 and o.new_balance == 60 for o in outcomes)
    assert await ledger.get_balance(user.id) == 60
    assert (await ledger.audit_balance(user.id)).consistent


async def test_confirm_without_checkout_is_rejected(user, fake_providers):
    with pytest.raises(NoPendingTransactionError) as exc:
        await reconciler.confirm_payment(Provider.STRIPE, "pay_123")
    assert exc.value.message == "Payment could not be processed"
    assert await ledger.get_balance(user.id) == 0
    logged = await AuditLog.find(AuditLog.event_type == "payment_rejected").to_list()
    assert len(logged) == 1
    assert logged[0].severity == "critical"
    assert logged[0].entity_id == "stripe:pay_123"


async def test_confirm_under_other_provider_is_mismatch(user, fake_providers):
    session = await checkout.create_checkout(user.id, "basic", Provider.PAYPAL)
    with pytest.raises(ProviderMismatchError):
        await reconciler.confirm_payment(Provider.STRIPE, session.session_id)
    assert await ledger.get_balance(user.id) == 0


async def test_confirm_for_other_user_is_mismatch(user, fake_providers):
    other = await users.create_user("other@example.com")
    session = await checkout.create_checkout(user.id, "basic", Provider.PAYPAL)
    with pytest.raises(ProviderMismatchError):
        await reconciler.confirm_payment(Provider.PAYPAL, session.session_id, user_id=other.id)
    assert await ledger.get_balance(user.id) == 0
    assert await ledger.get_balance(other.id) == 0


async def test_reported_amount_never_overrides_recorded(user, fake_providers):
    session = await checkout.create_checkout(user.id, "starter", Provider.STRIPE)
    outcome = await reconciler.confirm_payment(Provider.STRIPE, session.session_id, confirmed_credits=500)
    assert outcome.credited == 10
    assert await ledger.get_balance(user.id) == 10
    assert await AuditLog.find(AuditLog.event_type == "payment_credit_mismatch").count() == 1


async def test_fail_then_confirm_returns_prior_outcome(user, fake_providers):
    session = await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    failed = await reconciler.fail_payment(Provider.STRIPE, session.session_id, "card_declined")
    assert failed.status == TransactionStatus.FAILED and failed.credited == 0

    again = await reconciler.fail_payment(Provider.STRIPE, session.session_id, "card_declined")
    assert again.replayed and again.status == TransactionStatus.FAILED

    confirmed = await reconciler.confirm_payment(Provider.STRIPE, session.session_id)
    assert confirmed.status == TransactionStatus.FAILED
    assert confirmed.credited == 0
    assert await ledger.get_balance(user.id) == 0
    txn = await CreditTransaction.get(PydanticObjectId(session.transaction_id))
    assert txn.failure_reason == "card_declined"


async def test_fail_after_completion_is_noop(user, fake_providers):
    session = await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    await reconciler.confirm_payment(Provider.STRIPE, session.session_id)
    outcome = await reconciler.fail_payment(Provider.STRIPE, session.session_id, "late")
    assert outcome.status == TransactionStatus.COMPLETED and outcome.replayed
    assert await ledger.get_balance(user.id) == 25


async def test_paypal_capture_confirms(user, fake_providers):
    session = await checkout.create_checkout(user.id, "value", Provider.PAYPAL)
    outcome = await reconciler.capture_payment(user.id, session.session_id)
    assert outcome.credited == 100 and outcome.new_balance == 100

    fake_providers[Provider.PAYPAL].capture_result = CaptureResult(success=True, already_captured=True)
    replay = await reconciler.capture_payment(user.id, session.session_id)
    assert replay.replayed and replay.new_balance == 100
    # Each call asks the provider first; the repeat finds the order already captured.
    assert fake_providers[Provider.PAYPAL].captures == 2


async def test_paypal_capture_failure_leaves_pending(user, fake_providers):
    fake_providers[Provider.PAYPAL].capture_result = CaptureResult(success=False, error="INSTRUMENT_DECLINED")
    session = await checkout.create_checkout(user.id, "value", Provider.PAYPAL)
    with pytest.raises(CaptureFailedError):
        await reconciler.capture_payment(user.id, session.session_id)
    txn = await CreditTransaction.get(PydanticObjectId(session.transaction_id))
    assert txn.status == TransactionStatus.PENDING
    assert await ledger.get_balance(user.id) == 0


async def test_stripe_verify_backup(user, fake_providers):
    session = await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    fake_providers[Provider.STRIPE].paid = False
    pending = await reconciler.verify_checkout(user.id, Provider.STRIPE, session.session_id)
    assert pending.status == TransactionStatus.PENDING and pending.credited == 0

    fake_providers[Provider.STRIPE].paid = True
    done = await reconciler.verify_checkout(user.id, Provider.STRIPE, session.session_id)
    assert done.status == TransactionStatus.COMPLETED and done.credited == 25

    # The webhook arriving afterwards is a replay.
    late = await reconciler.confirm_payment(Provider.STRIPE, session.session_id)
    assert late.replayed
    assert await ledger.get_balance(user.id) == 25


async def test_reversal_claws_back_once(user, fake_providers):
    session = await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    await reconciler.confirm_payment(Provider.STRIPE, session.session_id)
    await ledger.deduct(user.id, 20)

    reversed_ = await reconciler.reverse_payment(Provider.STRIPE, session.session_id, "charge_refunded")
    assert reversed_.credited == -5
    assert await ledger.get_balance(user.id) == 0

    again = await reconciler.reverse_payment(Provider.STRIPE, session.session_id, "charge_refunded")
    assert again.credited == 0
    refunds = await CreditTransaction.find(
        CreditTransaction.user_id == user.id,
        CreditTransaction.kind == TransactionKind.REFUND,
    ).to_list()
    assert len(refunds) == 1
    assert refunds[0].amount == -5
    assert str(refunds[0].related_transaction_id) == session.transaction_id
    assert (await ledger.audit_balance(user.id)).consistent


async def test_expire_stale_checkouts(user, fake_providers):
    old = await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    fresh = await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    stale = await CreditTransaction.get(PydanticObjectId(old.transaction_id))
    stale.created_at = datetime.utcnow() - timedelta(hours=80)
    await stale.save()

    assert await reconciler.expire_stale_checkouts() == 1
    assert (await CreditTransaction.get(PydanticObjectId(old.transaction_id))).status == TransactionStatus.FAILED
    assert (await CreditTransaction.get(PydanticObjectId(fresh.transaction_id))).status == TransactionStatus.PENDING


async def test_paypal_capture_after_completed_webhook_still_captures(user, fake_providers):
    session = await checkout.create_checkout(user.id, "value", Provider.PAYPAL)
    await reconciler.confirm_payment(Provider.PAYPAL, session.session_id)

    fake_providers[Provider.PAYPAL].capture_result = CaptureResult(success=True, already_captured=True)
    outcome = await reconciler.capture_payment(user.id, session.session_id)
    assert outcome.replayed and outcome.credited == 100
    assert fake_providers[Provider.PAYPAL].captures == 1
    assert await ledger.get_balance(user.id) == 100


async def test_paypal_capture_skipped_for_failed_checkout(user, fake_providers):
    session = await checkout.create_checkout(user.id, "value", Provider.PAYPAL)
    await reconciler.fail_payment(Provider.PAYPAL, session.session_id, "expired")
    outcome = await reconciler.capture_payment(user.id, session.session_id)
    assert outcome.status == TransactionStatus.FAILED and outcome.credited == 0
    assert fake_providers[Provider.PAYPAL].captures == 0


class _StuckSettlement:
    """Transactions collection whose status flip fails, leaving the credit on the account only."""

    def __init__(self, inner):
        self._inner = inner

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def find_one_and_update(self, *args, **kwargs):
        raise AutoReconnect("connection reset")


async def _confirm_without_flush(monkeypatch, session_id):
    real = ledger._transactions
    with monkeypatch.context() as m:
        m.setattr(ledger, "_transactions", lambda: _StuckSettlement(real()))
        return await reconciler.confirm_payment(Provider.STRIPE, session_id)


async def test_refund_webhook_claws_back_unflushed_credit(user, fake_providers, monkeypatch):
    session = await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    await _confirm_without_flush(monkeypatch, session.session_id)
    txn = await CreditTransaction.get(PydanticObjectId(session.transaction_id))
    assert txn.status == TransactionStatus.PENDING
    assert await ledger.get_balance(user.id) == 25

    reversed_ = await reconciler.reverse_payment(Provider.STRIPE, session.session_id, "charge_refunded")
    assert reversed_.credited == -25
    txn = await CreditTransaction.get(PydanticObjectId(session.transaction_id))
    assert txn.status == TransactionStatus.COMPLETED
    assert await ledger.get_balance(user.id) == 0
    assert (await ledger.audit_balance(user.id)).consistent


async def test_fail_after_unflushed_credit_keeps_purchase(user, fake_providers, monkeypatch):
    session = await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    await _confirm_without_flush(monkeypatch, session.session_id)

    outcome = await reconciler.fail_payment(Provider.STRIPE, session.session_id, "late_failure")
    assert outcome.status == TransactionStatus.COMPLETED
    txn = await CreditTransaction.get(PydanticObjectId(session.transaction_id))
    assert txn.status == TransactionStatus.COMPLETED
    assert await ledger.get_balance(user.id) == 25


async def test_reversal_key_leaves_account_once_logged(user, fake_providers):
    session = await checkout.create_checkout(user.id, "basic", Provider.STRIPE)
    await reconciler.confirm_payment(Provider.STRIPE, session.session_id)
    await reconciler.reverse_payment(Provider.STRIPE, session.session_id, "charge_refunded")

    account = await ledger.get_account(user.id)
    assert account.applied_keys == []
    again = await reconciler.reverse_payment(Provider.STRIPE, session.session_id, "charge_refunded")
    assert again.credited == 0
    assert await ledger.get_balance(user.id) == 0
