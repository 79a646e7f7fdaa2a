"""
Reconciliation sweepers.

Each sweeper is a stateless scan that can be re-run at any time: from the
worker CLI on a schedule, or on demand through the HTTP surface. None of them
touches an order past ``pending_payment``.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from storefront.application.confirmation_engine import ConfirmationEngine
from storefront.application.ledger_verifier import LedgerVerifier
from storefront.core.config import settings
from storefront.core.errors import CheckoutError, LedgerUnavailable, TransientError
from storefront.core.timeutils import age_hours, utcnow
from storefront.domain.models import (
    Order, OrderStatus, PaymentRail, VerificationStatus, parse_rail,
)
from storefront.domain.results import (
    CleanupResult, PendingOrderEntry, PendingPaymentReport, RailStats,
    VerificationOutcome, VerificationResult, VerificationSweepResult,
)
from storefront.interfaces.IOrderRepository import IOrderRepository

logger = logging.getLogger(__name__)

UNKNOWN_RAIL = "unknown"


class StaleDraftCleanup:
    """Deletes drafts that never received a payment reference."""

    def __init__(self, order_repo: IOrderRepository, threshold_hours: float | None = None):
        self.repo = order_repo
        self.threshold_hours = threshold_hours if threshold_hours is not None else settings.STALE_DRAFT_HOURS

    def run(self, threshold_hours: float | None = None, dry_run: bool = False,
            limit: Optional[int] = None, now: Optional[datetime] = None) -> CleanupResult:
        hours = threshold_hours if threshold_hours is not None else self.threshold_hours
        cutoff = (now or utcnow()) - timedelta(hours=hours)

        if dry_run:
            orders = self.repo.list_stale_drafts(cutoff, limit)
            ids = [o.id for o in orders]
            logger.info(f"Stale draft preview: {len(ids)} drafts older than {hours}h")
            return CleanupResult(len(ids), ids, hours, dry_run=True)

        ids = self.repo.delete_stale_drafts(cutoff, limit)
        if ids:
            logger.info(f"🧹 Removed {len(ids)} stale drafts older than {hours}h")
        else:
            logger.info(f"No stale drafts older than {hours}h")
        return CleanupResult(len(ids), ids, hours)


class PendingPaymentMonitor:
    """Read-only report of orders stuck in pending_payment, grouped by rail."""

    def __init__(self, order_repo: IOrderRepository, threshold_hours: float | None = None,
                 limit: int | None = None):
        self.repo = order_repo
        self.threshold_hours = threshold_hours if threshold_hours is not None else settings.STALE_PENDING_HOURS
        self.limit = limit or settings.PENDING_REPORT_LIMIT

    def run(self, threshold_hours: float | None = None, limit: int | None = None,
            now: Optional[datetime] = None) -> PendingPaymentReport:
        hours = threshold_hours if threshold_hours is not None else self.threshold_hours
        now = now or utcnow()
        orders = self.repo.list_stale_pending(now - timedelta(hours=hours), limit or self.limit)

        report = PendingPaymentReport(threshold_hours=hours)
        ages: Dict[str, List[float]] = {}
        for order in orders:
            rail = self.rail_of(order)
            age = age_hours(order.pending_started_at, now)
            report.orders.append(PendingOrderEntry(order.id, order.order_number, rail, order.payment_reference, age))
            ages.setdefault(rail, []).append(age)

        for rail, values in ages.items():
            report.by_rail[rail] = RailStats(
                count=len(values),
                oldest_age_hours=max(values),
                average_age_hours=sum(values) / len(values),
            )

        if report.total:
            summary = ", ".join(f"{rail}={s.count}" for rail, s in report.by_rail.items())
            logger.warning(f"⚠️ {report.total} orders pending payment for more than {hours}h ({summary})")
        return report

    @staticmethod
    def rail_of(order: Order) -> str:
        if not order.rail:
            logger.warning(f"⚠️ Pending order {order.id} has no recorded rail")
            return UNKNOWN_RAIL
        try:
            return parse_rail(order.rail).value
        except ValueError:
            logger.warning(f"⚠️ Pending order {order.id} records unknown rail {order.rail!r}")
            return UNKNOWN_RAIL


class PendingTransactionVerifier:
    """
    Verifies pending blockchain payments against the ledger and confirms the
    orders that check out. Mismatches and missing transactions are recorded
    as failed verifications; the order stays in pending_payment for review.
    Ledger outages defer the order to the next run.
    """

    def __init__(self, order_repo: IOrderRepository, verifier: LedgerVerifier,
                 engine: ConfirmationEngine, limit: int | None = None):
        self.repo = order_repo
        self.verifier = verifier
        self.engine = engine
        self.limit = limit or settings.VERIFY_BATCH_LIMIT

    def run(self, limit: int | None = None) -> VerificationSweepResult:
        limit = limit or self.limit
        candidates = self.repo.list_unverified_blockchain_pending(limit)
        logger.info(f"Found {len(candidates)} pending blockchain transactions to verify")

        sweep = VerificationSweepResult()
        seen_references = set()
        for order in candidates:
            # One lookup per transaction, batch siblings share it
            if order.payment_reference in seen_references:
                continue
            seen_references.add(order.payment_reference)
            try:
                sweep.outcomes.append(self.verify_order(order))
            except Exception as e:
                logger.exception(f"❌ Error processing transaction {order.payment_reference}: {e}")
                sweep.outcomes.append(VerificationOutcome(
                    order.id, order.payment_reference, verified=False, deferred=True,
                    error=e if isinstance(e, CheckoutError) else CheckoutError(str(e), order.id),
                ))

        logger.info(
            f"Verification sweep done: {sweep.verified_count} verified, "
            f"{sweep.failed_count} failed, {sweep.deferred_count} deferred"
        )
        return sweep

    def verify_order(self, order: Order) -> VerificationOutcome:
        reference = order.payment_reference
        group = self._payment_group(order)
        expected_amount = self._expected_amount(group)

        try:
            result = self.verifier.verify(reference, expected_amount, order.payer_identity_expected)
        except LedgerUnavailable as e:
            logger.warning(f"⚠️ Ledger unavailable for {reference}, retrying next sweep: {e}")
            return VerificationOutcome(order.id, reference, verified=False, deferred=True, error=e)

        if not result.is_valid:
            self._record(group, VerificationStatus.FAILED, result)
            logger.warning(
                f"⚠️ transaction failed: reference={reference} order={order.id} reason={result.error.message}"
            )
            return VerificationOutcome(order.id, reference, verified=False, error=result.error)

        self._record(group, VerificationStatus.VERIFIED, result)
        logger.info(f"✅ Verified transaction {reference} for order {order.id}")
        confirm = self.engine.confirm(order.id, reference, PaymentRail.BLOCKCHAIN, verified=True)
        if not confirm.ok:
            logger.error(f"❌ Verified {reference} but confirmation ended {confirm.status.value}: {confirm.error}")
        return VerificationOutcome(order.id, reference, verified=True, confirm=confirm,
                                   error=None if confirm.ok else confirm.error)

    def _payment_group(self, order: Order) -> List[Order]:
        """The pending orders this transaction pays for."""
        if not order.batch_id:
            return [order]
        return [
            sibling for sibling in self.repo.list_batch(order.batch_id)
            if sibling.status != OrderStatus.CANCELLED.value
            and sibling.payment_reference in (None, "", order.payment_reference)
        ]

    @staticmethod
    def _expected_amount(group: List[Order]) -> Optional[Decimal]:
        amounts = [o.amount_expected for o in group]
        if any(amount is None for amount in amounts):
            return None
        return sum((Decimal(str(amount)) for amount in amounts), Decimal("0"))

    def _record(self, group: List[Order], status: VerificationStatus, result: VerificationResult):
        checked_at = utcnow().isoformat()
        for order in group:
            if order.status != OrderStatus.PENDING_PAYMENT.value:
                continue
            metadata = dict(order.payment_metadata or {})
            metadata["verification"] = {
                "status": status.value,
                "reason": result.error.message if result.error else None,
                "details": result.details.to_dict() if result.details else None,
                "checked_at": checked_at,
                "automated": True,
            }
            try:
                self.repo.record_verification(order.id, status.value, metadata)
            except TransientError as e:
                logger.error(f"❌ Could not record verification on order {order.id}: {e}")
