import logging
from datetime import timedelta

import pytest

from storefront.application.sweepers import (
    PendingPaymentMonitor, PendingTransactionVerifier, StaleDraftCleanup,
)
from storefront.core.errors import LedgerUnavailable
from storefront.core.timeutils import age_hours, utcnow
from storefront.domain.models import OrderStatus, PaymentRail, VerificationStatus, new_id

from conftest import BUYER

PENDING = OrderStatus.PENDING_PAYMENT.value
BLOCKCHAIN = PaymentRail.BLOCKCHAIN.value


# ---------------------------------------------------------
# Stale draft cleanup
# ---------------------------------------------------------

def test_cleanup_removes_only_drafts_past_threshold(repo, make_order):
    fresh = make_order(age_hours=23 + 59 / 60)
    stale = make_order(age_hours=24 + 1 / 60)
    referenced = make_order(age_hours=30, payment_reference="pi_started")
    pending = make_order(status=PENDING, age_hours=30, payment_reference="pi_1")
    confirmed = make_order(status=OrderStatus.CONFIRMED.value, age_hours=30, payment_reference="pi_2")

    result = StaleDraftCleanup(repo, threshold_hours=24).run()

    assert result.removed_count == 1
    assert result.order_ids == [stale.id]
    assert repo.get_order(stale.id) is None
    for survivor in (fresh, referenced, pending, confirmed):
        assert repo.get_order(survivor.id) is not None


def test_cleanup_dry_run_deletes_nothing(repo, make_order):
    stale = [make_order(age_hours=48), make_order(age_hours=30)]

    preview = StaleDraftCleanup(repo).run(threshold_hours=24, dry_run=True)

    assert preview.dry_run
    assert sorted(preview.order_ids) == sorted(o.id for o in stale)
    assert all(repo.get_order(o.id) is not None for o in stale)


def test_cleanup_preview_honours_limit(repo, make_order):
    for hours in (30, 40, 50):
        make_order(age_hours=hours)

    preview = StaleDraftCleanup(repo).run(threshold_hours=24, dry_run=True, limit=2)

    assert preview.removed_count == 2


def test_cleanup_limit_deletes_the_oldest_drafts_first(repo, make_order):
    newest, middle, oldest = (make_order(age_hours=hours) for hours in (30, 40, 50))

    result = StaleDraftCleanup(repo).run(threshold_hours=24, limit=2)

    assert result.removed_count == 2
    assert result.order_ids == [oldest.id, middle.id]
    assert repo.get_order(newest.id) is not None
    assert repo.get_order(oldest.id) is None


def test_cleanup_with_nothing_to_do(repo, make_order):
    make_order(age_hours=1)

    result = StaleDraftCleanup(repo).run(threshold_hours=24)

    assert result.removed_count == 0
    assert result.order_ids == []


# ---------------------------------------------------------
# Pending payment monitor
# ---------------------------------------------------------

def test_report_groups_stale_pending_orders_by_rail(repo, make_order):
    make_order(status=PENDING, rail="card", age_hours=30)
    make_order(status=PENDING, rail="card", age_hours=26)
    make_order(status=PENDING, rail=BLOCKCHAIN, age_hours=48)
    make_order(status=PENDING, rail="card", age_hours=2)
    make_order(status=PENDING, rail="card", age_hours=100, updated_age_hours=1)
    make_order(status=OrderStatus.DRAFT.value, rail="card", age_hours=30)

    report = PendingPaymentMonitor(repo).run(threshold_hours=24)

    assert report.total == 3
    assert set(report.by_rail) == {"card", BLOCKCHAIN}
    assert report.by_rail["card"].count == 2
    assert report.by_rail["card"].oldest_age_hours == pytest.approx(30, abs=0.01)
    assert report.by_rail["card"].average_age_hours == pytest.approx(28, abs=0.01)
    assert report.by_rail[BLOCKCHAIN].count == 1


def test_report_ages_orders_from_when_they_entered_pending_payment(repo, make_order):
    # Recently touched by a verification write, but waiting for 30 hours
    order = make_order(status=PENDING, age_hours=40, updated_age_hours=0.5, pending_age_hours=30,
                       verification_status=VerificationStatus.FAILED.value)
    make_order(status=PENDING, age_hours=40, updated_age_hours=30, pending_age_hours=2)

    report = PendingPaymentMonitor(repo).run(threshold_hours=24)

    assert [e.order_id for e in report.orders] == [order.id]
    assert report.orders[0].age_hours == pytest.approx(30, abs=0.01)


def test_entering_pending_payment_stamps_pending_since(repo, make_order):
    order = make_order(age_hours=40)

    assert repo.mark_pending_payment(order.id, "pi_1", {})
    assert repo.record_verification(order.id, VerificationStatus.FAILED.value, {})

    stored = repo.get_order(order.id)
    assert stored.pending_since is not None
    assert age_hours(stored.pending_since, utcnow()) < 0.1
    assert repo.list_stale_pending(utcnow() - timedelta(hours=24), 10) == []


def test_report_never_guesses_a_missing_rail(repo, make_order):
    make_order(status=PENDING, rail=None, age_hours=30, payment_reference="5h3x...solana-looking")
    make_order(status=PENDING, rail="paypal", age_hours=30)

    report = PendingPaymentMonitor(repo).run(threshold_hours=24)

    assert set(report.by_rail) == {"unknown"}
    assert report.by_rail["unknown"].count == 2


def test_report_respects_limit(repo, make_order):
    for hours in (30, 31, 32):
        make_order(status=PENDING, age_hours=hours)

    report = PendingPaymentMonitor(repo).run(threshold_hours=24, limit=2)

    assert report.total == 2
    assert report.to_dict()["total"] == 2


# ---------------------------------------------------------
# Pending transaction verifier
# ---------------------------------------------------------

@pytest.fixture
def sweep(repo, verifier, engine):
    return PendingTransactionVerifier(repo, verifier, engine, limit=20)


def blockchain_order(make_order, reference, amount=1.5, payer=BUYER, **kwargs):
    return make_order(status=PENDING, rail=BLOCKCHAIN, payment_reference=reference,
                      amount=amount, payer=payer, **kwargs)


def test_verified_transaction_confirms_the_order(sweep, repo, ledger, make_order):
    order = blockchain_order(make_order, "sig_ok")
    ledger.add_transfer("sig_ok", "1.5")

    result = sweep.run()

    assert result.verified_count == 1
    stored = repo.get_order(order.id)
    assert stored.status == OrderStatus.CONFIRMED.value
    assert stored.verification_status == VerificationStatus.VERIFIED.value
    assert stored.payment_metadata["verification"]["status"] == "verified"
    assert stored.payment_metadata["rail"] == BLOCKCHAIN


def test_amount_within_tolerance_is_accepted(sweep, repo, ledger, make_order):
    order = blockchain_order(make_order, "sig_close")
    ledger.add_transfer("sig_close", "1.500005")

    result = sweep.run()

    assert result.verified_count == 1
    assert repo.get_order(order.id).status == OrderStatus.CONFIRMED.value


def test_amount_outside_tolerance_is_recorded_and_skipped_later(sweep, repo, ledger, make_order, caplog):
    order = blockchain_order(make_order, "sig_short")
    ledger.add_transfer("sig_short", "1.49998")

    with caplog.at_level(logging.WARNING):
        result = sweep.run()

    assert result.failed_count == 1
    stored = repo.get_order(order.id)
    assert stored.status == PENDING
    assert stored.verification_status == VerificationStatus.FAILED.value
    assert "Amount mismatch" in stored.payment_metadata["verification"]["reason"]
    assert any("transaction failed" in r.message for r in caplog.records)

    again = sweep.run()
    assert again.processed == 0
    assert ledger.calls == ["sig_short"]


def test_payer_comparison_ignores_case(sweep, repo, ledger, make_order):
    order = blockchain_order(make_order, "sig_case", payer=BUYER.lower())
    ledger.add_transfer("sig_case", "1.5")

    sweep.run()

    assert repo.get_order(order.id).status == OrderStatus.CONFIRMED.value


def test_wrong_payer_is_a_mismatch(sweep, repo, ledger, make_order):
    order = blockchain_order(make_order, "sig_other", payer="SomebodyElse")
    ledger.add_transfer("sig_other", "1.5")

    result = sweep.run()

    assert result.failed_count == 1
    assert repo.get_order(order.id).verification_status == VerificationStatus.FAILED.value


def test_missing_transaction_is_a_failed_verification(sweep, repo, make_order):
    order = blockchain_order(make_order, "sig_missing")

    result = sweep.run()

    assert result.outcomes[0].error.code == "transaction_not_found"
    assert repo.get_order(order.id).verification_status == VerificationStatus.FAILED.value


def test_ledger_outage_defers_the_order(sweep, repo, ledger, make_order):
    order = blockchain_order(make_order, "sig_later")
    ledger.fail_with("sig_later", LedgerUnavailable("rpc timeout"))

    result = sweep.run()

    assert result.deferred_count == 1
    stored = repo.get_order(order.id)
    assert stored.status == PENDING
    assert stored.verification_status is None

    del ledger.failures["sig_later"]
    ledger.add_transfer("sig_later", "1.5")
    assert sweep.run().verified_count == 1


def test_unexpected_error_on_one_order_does_not_stop_the_scan(sweep, repo, ledger, make_order):
    broken = blockchain_order(make_order, "sig_broken", updated_age_hours=2)
    healthy = blockchain_order(make_order, "sig_fine", updated_age_hours=1)
    ledger.fail_with("sig_broken", RuntimeError("unexpected payload"))
    ledger.add_transfer("sig_fine", "1.5")

    result = sweep.run()

    assert result.processed == 2
    assert result.deferred_count == 1
    assert repo.get_order(broken.id).status == PENDING
    assert repo.get_order(healthy.id).status == OrderStatus.CONFIRMED.value


def test_batch_is_verified_once_against_the_summed_amount(sweep, repo, ledger, make_order):
    batch_id = new_id()
    orders = [
        blockchain_order(make_order, "sig_batch", amount=amount, batch_id=batch_id)
        for amount in ("0.5", "0.25", "0.25")
    ]
    ledger.add_transfer("sig_batch", "1.0")

    result = sweep.run()

    assert ledger.calls == ["sig_batch"]
    assert result.verified_count == 1
    for order in orders:
        assert repo.get_order(order.id).status == OrderStatus.CONFIRMED.value


def test_other_rails_are_not_verified(sweep, ledger, make_order):
    make_order(status=PENDING, rail="card", payment_reference="pi_card", amount=1)

    result = sweep.run()

    assert result.processed == 0
    assert ledger.calls == []


def test_order_without_expectations_is_not_confirmed(sweep, repo, ledger, make_order):
    order = blockchain_order(make_order, "sig_bare", amount=None, payer=None)
    ledger.add_transfer("sig_bare", "1.5")

    result = sweep.run()

    assert result.failed_count == 1
    assert repo.get_order(order.id).status == PENDING


def test_checkout_submit_then_sweep_confirms_the_batch(order_service, engine, sweep, repo, ledger):
    orders = order_service.create_checkout(
        [{"product": "Sourdough", "amount": "0.5"}, {"product": "Croissant", "amount": "0.25"}],
        BLOCKCHAIN, payer_identity=BUYER,
    )
    batch_id = orders[0].batch_id

    submitted = engine.submit_payment(batch_id, "sig_checkout")
    waiting = {o.status for o in repo.list_batch(batch_id)}
    ledger.add_transfer("sig_checkout", "0.75")
    result = sweep.run()

    assert submitted.status.value == "pending_verification"
    assert waiting == {PENDING}
    assert ledger.calls == ["sig_checkout"]
    assert result.verified_count == 1
    for order in repo.list_batch(batch_id):
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.payment_reference == "sig_checkout"
        assert order.verification_status == VerificationStatus.VERIFIED.value
