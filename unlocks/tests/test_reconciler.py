"""
Tests for the entitlement reconciler.

Covers idempotent completion, the completion race between both confirmation
channels, failure ordering and the integrity audit.
"""
import threading
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import insert, update

from unlocks.core.database import feature_entitlements, get_db_session, purchases
from unlocks.core.errors import DataIntegrityError, PurchaseNotFoundError
from unlocks.core.metrics import purchase_reconciliations_total
from unlocks.features.entitlements.service import get_entitlement, upsert_purchased
from unlocks.features.purchases import ledger, reconciler
from unlocks.features.purchases.gateway import ConfirmedPayment
from unlocks.features.purchases.reconciler import ReconciliationOutcome
from unlocks.models.purchase import EntitlementStatus, PurchaseStatus


@pytest.fixture
def upsert_calls(monkeypatch):
    """Count entitlement writes made by the reconciler."""
    calls = []
    lock = threading.Lock()

    def counting_upsert(*args, **kwargs):
        with lock:
            calls.append((args[1], args[2]))
        return upsert_purchased(*args, **kwargs)

    monkeypatch.setattr("unlocks.features.purchases.reconciler.upsert_purchased", counting_upsert)
    return calls


def _confirm(purchase_id, ref="pay_123", channel="webhook"):
    return ConfirmedPayment(purchase_id=purchase_id, provider_reference=ref, channel=channel)


def test_complete_unlocks_scoped_capability(upsert_calls):
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)

    result = reconciler.complete(_confirm(purchase.id))

    assert result.outcome == ReconciliationOutcome.COMPLETED
    assert result.purchase.status == PurchaseStatus.COMPLETED
    assert result.purchase.provider_reference == "pay_123"
    assert result.purchase.completed_at is not None
    assert result.entitlement.status == EntitlementStatus.PURCHASED
    assert result.entitlement.price == 14999
    assert upsert_calls == [("book_1", "book-covers")]
    assert get_entitlement("book_1", "book-covers").is_unlocked


def test_complete_is_idempotent(upsert_calls):
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)

    first = reconciler.complete(_confirm(purchase.id))
    results = [reconciler.complete(_confirm(purchase.id, ref="pay_other", channel="fallback")) for _ in range(3)]

    assert first.outcome == ReconciliationOutcome.COMPLETED
    assert [r.outcome for r in results] == [ReconciliationOutcome.ALREADY_COMPLETED] * 3
    for r in results:
        assert r.purchase == first.purchase
        assert r.entitlement == first.entitlement
    assert len(upsert_calls) == 1
    assert purchase_reconciliations_total.value({"outcome": "already_completed", "channel": "fallback"}) == 3


def test_concurrent_completion_writes_once(upsert_calls):
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    barrier = threading.Barrier(2)
    outcomes = []
    errors = []

    def worker(channel):
        try:
            barrier.wait()
            outcomes.append(reconciler.complete(_confirm(purchase.id, channel=channel)).outcome)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(c,)) for c in ("webhook", "fallback")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert sorted(o.value for o in outcomes) == ["already_completed", "completed"]
    assert len(upsert_calls) == 1
    assert ledger.get_purchase(purchase.id).status == PurchaseStatus.COMPLETED


def test_user_level_purchase_skips_entitlement(upsert_calls):
    purchase = ledger.create_pending("user_1", None, "book-upload", 9999)

    result = reconciler.complete(_confirm(purchase.id))

    assert result.outcome == ReconciliationOutcome.COMPLETED
    assert result.entitlement is None
    assert upsert_calls == []


def test_complete_unknown_purchase_raises():
    with pytest.raises(PurchaseNotFoundError):
        reconciler.complete(_confirm(str(uuid.uuid4())))


def test_fail_after_complete_does_not_resurrect():
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    completed = reconciler.complete(_confirm(purchase.id))

    reconciler.fail(purchase.id)

    after = ledger.get_purchase(purchase.id)
    assert after.status == PurchaseStatus.COMPLETED
    assert after.completed_at == completed.purchase.completed_at
    assert get_entitlement("book_1", "book-covers").is_unlocked


def test_confirmation_after_failure_is_stale(upsert_calls):
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    reconciler.fail(purchase.id)

    result = reconciler.complete(_confirm(purchase.id))

    assert result.outcome == ReconciliationOutcome.STALE
    assert result.purchase.status == PurchaseStatus.FAILED
    assert result.purchase.completed_at is None
    assert not result.entitlement.is_unlocked
    assert upsert_calls == []


def test_confirmation_after_refund_is_stale(upsert_calls):
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(
            update(purchases)
            .where(purchases.c.id == purchase.id)
            .values(status="refunded", updated_at=now)
        )

    result = reconciler.complete(_confirm(purchase.id))

    assert result.outcome == ReconciliationOutcome.STALE
    assert result.purchase.status == PurchaseStatus.REFUNDED
    assert result.purchase.completed_at is None
    assert upsert_calls == []
    assert not get_entitlement("book_1", "book-covers").is_unlocked


def test_complete_racing_fail_settles_consistently(upsert_calls):
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    barrier = threading.Barrier(2)
    outcomes = []
    errors = []

    def run(action):
        try:
            barrier.wait()
            action()
        except Exception as e:
            errors.append(e)

    threads = [
        threading.Thread(target=run, args=(lambda: outcomes.append(reconciler.complete(_confirm(purchase.id)).outcome),)),
        threading.Thread(target=run, args=(lambda: reconciler.fail(purchase.id),)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    final = ledger.get_purchase(purchase.id)
    if outcomes == [ReconciliationOutcome.COMPLETED]:
        assert final.status == PurchaseStatus.COMPLETED
        assert upsert_calls == [("book_1", "book-covers")]
        assert get_entitlement("book_1", "book-covers").is_unlocked
    else:
        assert outcomes == [ReconciliationOutcome.STALE]
        assert final.status == PurchaseStatus.FAILED
        assert upsert_calls == []
        assert not get_entitlement("book_1", "book-covers").is_unlocked


def test_fail_is_repeatable_and_unknown_raises():
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    reconciler.fail(purchase.id)
    reconciler.fail(purchase.id)
    assert ledger.get_purchase(purchase.id).status == PurchaseStatus.FAILED

    with pytest.raises(PurchaseNotFoundError):
        reconciler.fail("missing")


def test_entitlements_are_scoped_per_book():
    first = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    reconciler.complete(_confirm(first.id))

    assert get_entitlement("book_1", "book-covers").is_unlocked
    assert not get_entitlement("book_2", "book-covers").is_unlocked
    assert not get_entitlement("book_1", "landing-page").is_unlocked


def test_second_purchase_for_same_feature_keeps_original_unlock():
    first = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    original = reconciler.complete(_confirm(first.id)).entitlement

    second = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    result = reconciler.complete(_confirm(second.id, ref="pay_456"))

    assert result.outcome == ReconciliationOutcome.COMPLETED
    assert result.entitlement.unlocked_at == original.unlocked_at


def test_completed_without_entitlement_raises_integrity_error():
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    now = datetime.now(timezone.utc)
    # Simulate a row completed outside the reconciler
    with get_db_session() as session:
        session.execute(
            update(purchases)
            .where(purchases.c.id == purchase.id)
            .values(status="completed", completed_at=now, updated_at=now)
        )

    with pytest.raises(DataIntegrityError):
        reconciler.complete(_confirm(purchase.id))

    assert not get_entitlement("book_1", "book-covers").is_unlocked


def test_audit_reports_both_directions():
    healthy = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    reconciler.complete(_confirm(healthy.id))

    broken = ledger.create_pending("user_1", "book_2", "book-covers", 14999)
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(
            update(purchases)
            .where(purchases.c.id == broken.id)
            .values(status="completed", completed_at=now, updated_at=now)
        )
        session.execute(
            insert(feature_entitlements).values(
                id=str(uuid.uuid4()),
                scope_id="book_3",
                capability="landing-page",
                status="purchased",
                unlocked_at=now,
                price=14999,
                created_at=now,
                updated_at=now,
            )
        )

    report = reconciler.audit_integrity()

    assert not report.ok
    assert [p.id for p in report.completed_without_entitlement] == [broken.id]
    assert [(e.scope_id, e.capability) for e in report.entitlements_without_purchase] == [("book_3", "landing-page")]


def test_audit_clean_ledger_is_ok():
    purchase = ledger.create_pending("user_1", "book_1", "book-covers", 14999)
    reconciler.complete(_confirm(purchase.id))
    ledger.create_pending("user_1", "book_2", "book-covers", 14999)

    assert reconciler.audit_integrity().ok
