import logging
from typing import Dict, List, Optional, Tuple

from storefront.core.errors import InvalidRequest, OrderNotFound, PaymentConflict, StoreUnavailable
from storefront.domain.models import Order, OrderStatus, is_confirmed_or_later
from storefront.domain.results import BatchResult, OrderOutcome, OutcomeKind

logger = logging.getLogger(__name__)


class BatchCoordinator:
    """
    Confirms every order of one checkout with a single payment reference.

    Reference propagation finishes before any sibling is confirmed. The batch
    is then re-read and the reference chosen again, so a caller racing with
    another payment confirms under whichever reference the store kept. A failure
    on one sibling does not stop the others; the result lists a tagged
    outcome per order so callers can retry only what failed.
    """

    def __init__(self, engine):
        self.engine = engine

    @property
    def repo(self):
        return self.engine.repo

    def confirm_batch(self, batch_id: str, payment_reference: str, rail=None,
                      extra_metadata: Optional[dict] = None, verified: bool = False,
                      submit_only: bool = False) -> BatchResult:
        batch_id = (batch_id or "").strip()
        payment_reference = (payment_reference or "").strip()
        if not batch_id or not payment_reference:
            return BatchResult(batch_id, payment_reference or None,
                               error=InvalidRequest("A batch id and a payment reference are required"))

        try:
            siblings = self.repo.list_batch(batch_id)
        except StoreUnavailable as e:
            return BatchResult(batch_id, payment_reference, error=e)
        if not siblings:
            return BatchResult(batch_id, payment_reference,
                               error=OrderNotFound(f"Batch {batch_id} has no orders"))

        reference, reused = self.choose_reference(siblings, payment_reference)
        if reused:
            logger.info(f"Batch {batch_id}: reusing existing reference {reference} instead of {payment_reference}")
        result = BatchResult(batch_id, reference, reference_reused=reused)

        drafts, pending, settled = self.partition(siblings)
        logger.info(
            f"Batch {batch_id}: {len(siblings)} orders "
            f"({len(drafts)} draft, {len(pending)} pending_payment, {len(settled)} other)"
        )

        outcomes: Dict[str, OrderOutcome] = {}

        # 1. Reference propagation
        for order in drafts:
            try:
                metadata = dict(order.payment_metadata or {})
                metadata.update(extra_metadata or {})
                metadata["batch_reference"] = reference
                if not self.repo.mark_pending_payment(order.id, reference, metadata):
                    logger.info(f"Batch {batch_id}: order {order.id} left draft before propagation")
            except StoreUnavailable as e:
                logger.error(f"❌ Batch {batch_id}: could not propagate reference to {order.id}: {e}")
                outcomes[order.id] = OrderOutcome(order.id, OutcomeKind.FAILED, order.status, error=e)

        for order in pending:
            if order.payment_reference == reference:
                continue
            try:
                if not self.repo.assign_reference(order.id, reference, order.payment_reference):
                    logger.info(f"Batch {batch_id}: order {order.id} changed before its reference was realigned")
            except StoreUnavailable as e:
                logger.error(f"❌ Batch {batch_id}: could not realign reference on {order.id}: {e}")
                outcomes[order.id] = OrderOutcome(order.id, OutcomeKind.FAILED, order.status, error=e)

        # 2. Status propagation, against what propagation actually left in the store
        try:
            siblings = self.repo.list_batch(batch_id)
        except StoreUnavailable as e:
            return BatchResult(batch_id, reference, error=e, reference_reused=reused)
        settled_reference, _ = self.choose_reference(siblings, reference)
        if settled_reference != reference:
            logger.warning(
                f"⚠️ Batch {batch_id}: store settled on {settled_reference} while propagating {reference}, following it"
            )
            reference = settled_reference
            result.payment_reference = reference
            result.reference_reused = reference != payment_reference
        drafts, pending, settled = self.partition(siblings)

        for order in drafts + pending:
            if order.id in outcomes:
                continue
            outcomes[order.id] = self.engine.confirm_order(order.id, reference, rail, extra_metadata,
                                                           verified=verified, submit_only=submit_only)

        for order in settled:
            outcomes[order.id] = self._settled_outcome(order, reference)

        result.outcomes = [outcomes[order.id] for order in siblings]

        if result.fully_confirmed:
            logger.info(f"✅ Batch {batch_id}: {result.confirmed_count}/{result.total_count} orders confirmed")
        elif result.pending_order_ids and not result.failed_order_ids:
            logger.info(f"⏳ Batch {batch_id}: {len(result.pending_order_ids)} orders wait for payment verification")
        else:
            logger.warning(
                f"⚠️ Batch {batch_id}: only {result.confirmed_count}/{result.total_count} orders confirmed, "
                f"retry {result.failed_order_ids}"
            )
        return result

    @staticmethod
    def choose_reference(siblings: List[Order], supplied: str) -> Tuple[str, bool]:
        """A reference already on a sibling wins over the caller's, confirmed siblings first."""
        confirmed = [o.payment_reference for o in siblings
                     if o.payment_reference and is_confirmed_or_later(o.status)]
        existing = [o.payment_reference for o in siblings if o.payment_reference]

        if len(set(existing)) > 1:
            logger.warning(f"⚠️ Batch siblings carry divergent references {sorted(set(existing))}")

        if not confirmed and supplied in existing:
            return supplied, False
        chosen = (confirmed or existing or [supplied])[0]
        return chosen, chosen != supplied

    @staticmethod
    def partition(siblings: List[Order]):
        drafts, pending, settled = [], [], []
        for order in siblings:
            if order.status == OrderStatus.DRAFT.value:
                drafts.append(order)
            elif order.status == OrderStatus.PENDING_PAYMENT.value:
                pending.append(order)
            else:
                settled.append(order)
        return drafts, pending, settled

    def _settled_outcome(self, order: Order, reference: str) -> OrderOutcome:
        if order.status == OrderStatus.CANCELLED.value:
            return OrderOutcome(order.id, OutcomeKind.CANCELLED, order.status)
        if is_confirmed_or_later(order.status):
            if order.payment_reference and order.payment_reference != reference:
                error = PaymentConflict(
                    f"Batch sibling {order.id} confirmed with a different reference", order.id,
                    existing_reference=order.payment_reference, supplied_reference=reference,
                )
                logger.error(f"❌ {error.message}")
                return OrderOutcome(order.id, OutcomeKind.CONFLICT, order.status, error=error)
            return OrderOutcome(order.id, OutcomeKind.ALREADY_CONFIRMED, order.status)
        return OrderOutcome(order.id, OutcomeKind.FAILED, order.status)
