"""Tests for credit accounting on user-level capabilities."""
import pytest

from unlocks.core.errors import ValidationError
from unlocks.features.credits.service import compute_remaining, get_credit_statement
from unlocks.features.purchases import ledger, reconciler
from unlocks.features.purchases.gateway import ConfirmedPayment


def _completed_upload(owner_id="user_1", ref="pay_1"):
    purchase = ledger.create_pending(owner_id, None, "book-upload", 9999)
    reconciler.complete(ConfirmedPayment(purchase_id=purchase.id, provider_reference=ref, channel="webhook"))
    return purchase


def test_three_purchased_one_consumed_leaves_two():
    for i in range(3):
        _completed_upload(ref=f"pay_{i}")

    summary = compute_remaining("user_1", "book-upload", consumed=1)

    assert summary.purchased == 3
    assert summary.consumed == 1
    assert summary.remaining == 2
    assert summary.has_permission is True


def test_all_consumed_has_no_permission():
    for i in range(3):
        _completed_upload(ref=f"pay_{i}")

    summary = compute_remaining("user_1", "book-upload", consumed=3)

    assert summary.remaining == 0
    assert summary.has_permission is False


def test_over_consumption_clamps_to_zero():
    _completed_upload()
    assert compute_remaining("user_1", "book-upload", consumed=5).remaining == 0


def test_only_completed_user_level_purchases_count():
    _completed_upload()
    ledger.create_pending("user_1", None, "book-upload", 9999)  # still pending
    failed = ledger.create_pending("user_1", None, "book-upload", 9999)
    reconciler.fail(failed.id)
    _completed_upload(owner_id="user_2")

    summary = compute_remaining("user_1", "book-upload", consumed=0)
    assert summary.purchased == 1


def test_credits_recomputed_on_every_read():
    assert compute_remaining("user_1", "book-upload", consumed=0).has_permission is False
    _completed_upload()
    assert compute_remaining("user_1", "book-upload", consumed=0).remaining == 1


def test_negative_consumption_rejected():
    with pytest.raises(ValidationError):
        compute_remaining("user_1", "book-upload", consumed=-1)


def test_statement_lists_purchases_newest_first():
    first = _completed_upload(ref="pay_a")
    second = _completed_upload(ref="pay_b")

    statement = get_credit_statement("user_1", "book-upload", consumed=1)

    assert statement.summary.remaining == 1
    assert statement.total_spent == 2 * 9999
    assert [p.id for p in statement.purchases] == [second.id, first.id]
