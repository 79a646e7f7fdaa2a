"""
Confirmation Engine.

Moves orders from ``draft``/``pending_payment`` to ``confirmed`` for a given
payment reference. Many callers (processor webhook, client fallback,
operator tools, the verifier sweeper) may run it concurrently for the same
order; correctness rests on the Order Store's conditional writes, never on
an in-process lock.

Strategies run in order and each reports a typed TierOutcome:

1. atomic      - one store-side compare-and-set to confirmed
2. two_step    - draft -> pending_payment, then pending_payment|draft -> confirmed
3. forced      - unconditional confirmed write, rate limited and alerted

A later strategy runs only when the previous one is unavailable or failed
after exhausting its retries.

Blockchain payments are only confirmed once the ledger verifier has checked
them. Until then the engine records the reference, leaves the order in
``pending_payment`` and reports ``pending_verification``.
"""
import logging
import time
from typing import Callable, List, Optional

from storefront.application.batch_coordinator import BatchCoordinator
from storefront.core.config import settings
from storefront.core.errors import (
    AtomicPrimitiveUnavailable, CheckoutError, InvalidRequest, OrderCancelled,
    OrderNotFound, OverrideRateLimited, PaymentConflict, StoreUnavailable,
    TransientError, UnknownRail,
)
from storefront.core.timeutils import utcnow
from storefront.domain.models import (
    Order, OrderStatus, PaymentRail, is_confirmed_or_later, parse_rail,
)
from storefront.domain.results import (
    BatchResult, ConfirmResult, ConfirmStatus, OrderOutcome, OutcomeKind,
    Tier, TierOutcome, TierStatus,
)
from storefront.infrastructure.override_guard import OverrideGuard
from storefront.interfaces.INotifier import INotifier
from storefront.interfaces.IOrderRepository import IOrderRepository

logger = logging.getLogger(__name__)


class ConfirmationEngine:
    def __init__(
        self,
        order_repo: IOrderRepository,
        notifier: Optional[INotifier] = None,
        override_guard: Optional[OverrideGuard] = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repo = order_repo
        self.notifier = notifier
        self.override_guard = override_guard or OverrideGuard()
        self.max_attempts = max_attempts or settings.CONFIRM_TIER_ATTEMPTS
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.CONFIRM_RETRY_BACKOFF_SECONDS
        )
        self.sleep = sleep

        self.strategies = [
            (Tier.ATOMIC, self._atomic_confirm),
            (Tier.TWO_STEP, self._two_step_confirm),
            (Tier.FORCED_OVERRIDE, self._forced_override),
        ]
        self.batches = BatchCoordinator(self)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def confirm(self, target_id: str, payment_reference: str, rail=None,
                extra_metadata: Optional[dict] = None, verified: bool = False,
                submit_only: bool = False) -> ConfirmResult:
        """Confirms an order, or every order of a batch, for one payment.

        ``target_id`` may be an order id or a batch id. An order that belongs
        to a batch is confirmed together with its siblings. ``verified`` marks a
        payment already checked against the ledger; ``submit_only`` records the
        reference without confirming.
        """
        target_id = (target_id or "").strip()
        payment_reference = (payment_reference or "").strip()
        if not target_id or not payment_reference:
            return ConfirmResult(
                ConfirmStatus.FAILED,
                error=InvalidRequest("An order or batch id and a payment reference are required"),
            )
        if rail is not None:
            try:
                rail = parse_rail(rail)
            except ValueError:
                return ConfirmResult(ConfirmStatus.FAILED, [target_id],
                                     error=UnknownRail(f"Unknown payment rail {rail!r}"),
                                     payment_reference=payment_reference)

        try:
            order = self.repo.get_order(target_id)
            if order is None:
                if not self.repo.list_batch(target_id):
                    return ConfirmResult(ConfirmStatus.FAILED, [target_id],
                                         error=OrderNotFound(f"No order or batch {target_id}", target_id),
                                         payment_reference=payment_reference)
                batch_id = target_id
            else:
                batch_id = order.batch_id
        except StoreUnavailable as e:
            return ConfirmResult(ConfirmStatus.FAILED, [target_id], error=e, payment_reference=payment_reference)

        if batch_id:
            batch = self.batches.confirm_batch(batch_id, payment_reference, rail, extra_metadata,
                                               verified=verified, submit_only=submit_only)
            return self._from_batch(batch)

        outcome = self.confirm_order(order.id, payment_reference, rail, extra_metadata,
                                     verified=verified, submit_only=submit_only)
        return self._from_outcomes([outcome], payment_reference)

    def submit_payment(self, target_id: str, payment_reference: str, rail=None,
                       extra_metadata: Optional[dict] = None) -> ConfirmResult:
        """Records a submitted payment on an order or batch without confirming it."""
        return self.confirm(target_id, payment_reference, rail, extra_metadata, submit_only=True)

    def confirm_order(self, order_id: str, payment_reference: str, rail=None,
                      extra_metadata: Optional[dict] = None, verified: bool = False,
                      submit_only: bool = False) -> OrderOutcome:
        """Confirms exactly one order. Batch callers go through the coordinator."""
        try:
            order = self.repo.get_order(order_id)
        except StoreUnavailable as e:
            return OrderOutcome(order_id, OutcomeKind.FAILED, error=e)
        if order is None:
            return OrderOutcome(order_id, OutcomeKind.NOT_FOUND, error=OrderNotFound(f"Order {order_id} not found", order_id))

        settled = self._check_snapshot(order, payment_reference)
        if settled is not None:
            return self._finish(order, payment_reference, [settled])

        try:
            rail = self._resolve_rail(order, rail)
            self._check_reference_unused(order, payment_reference)
        except PaymentConflict as e:
            return self._finish(order, payment_reference, [TierOutcome(Tier.ATOMIC, TierStatus.REJECTED, e)])
        except (UnknownRail, StoreUnavailable) as e:
            return OrderOutcome(order.id, OutcomeKind.FAILED, status=order.status, error=e)

        metadata_extra = dict(extra_metadata or {})
        if submit_only or (rail == PaymentRail.BLOCKCHAIN and not verified):
            return self._await_verification(order.id, payment_reference, rail, metadata_extra)

        tried: List[TierOutcome] = []
        for tier, strategy in self.strategies:
            outcome = strategy(order.id, payment_reference, rail, metadata_extra, bool(order.batch_id))
            tried.append(outcome)
            if not outcome.falls_through:
                break
            logger.warning(
                f"⚠️ Tier {tier.value} could not confirm order {order.id} "
                f"({outcome.status.value}: {outcome.error}), falling back"
            )
        return self._finish(order, payment_reference, tried)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _atomic_confirm(self, order_id, payment_reference, rail, extra, keep_reference=False) -> TierOutcome:
        def attempt():
            snapshot = self.repo.get_order(order_id)
            settled = self._check_snapshot(snapshot, payment_reference, order_id)
            if settled is not None:
                return settled
            metadata = self._metadata(snapshot, rail, Tier.ATOMIC, extra)
            if self.repo.atomic_confirm(order_id, payment_reference, metadata, keep_reference):
                return TierOutcome(Tier.ATOMIC, TierStatus.APPLIED)
            return None
        return self._run_with_retries(Tier.ATOMIC, attempt)

    def _two_step_confirm(self, order_id, payment_reference, rail, extra, keep_reference=False) -> TierOutcome:
        def attempt():
            snapshot = self.repo.get_order(order_id)
            settled = self._check_snapshot(snapshot, payment_reference, order_id)
            if settled is not None:
                return settled
            if snapshot.status == OrderStatus.DRAFT.value:
                pending_metadata = self._metadata(snapshot, rail, None, extra)
                # A miss means another caller already advanced it, the next write tolerates both
                self.repo.mark_pending_payment(order_id, payment_reference, pending_metadata)
            metadata = self._metadata(snapshot, rail, Tier.TWO_STEP, extra)
            if self.repo.confirm_if_unpaid(order_id, payment_reference, metadata, keep_reference):
                return TierOutcome(Tier.TWO_STEP, TierStatus.APPLIED)
            return None
        return self._run_with_retries(Tier.TWO_STEP, attempt)

    def _forced_override(self, order_id, payment_reference, rail, extra, keep_reference=False) -> TierOutcome:
        if not self.override_guard.try_acquire():
            error = OverrideRateLimited(f"Forced override budget exhausted, order {order_id} left for retry", order_id)
            logger.critical(f"🚨 {error.message}")
            self._alert("FORCED OVERRIDE BLOCKED", {"order_id": order_id, "reference": payment_reference})
            return TierOutcome(Tier.FORCED_OVERRIDE, TierStatus.FAILED, error, 0)

        def attempt():
            snapshot = self.repo.get_order(order_id)
            settled = self._check_snapshot(snapshot, payment_reference, order_id)
            if settled is not None:
                return settled
            metadata = self._metadata(snapshot, rail, Tier.FORCED_OVERRIDE, extra)
            if self.repo.force_confirm(order_id, payment_reference, metadata, keep_reference):
                logger.critical(
                    f"🚨 FORCED OVERRIDE confirmed order {order_id} with {payment_reference} "
                    f"(was {snapshot.status}), conditional guard bypassed"
                )
                self._alert("FORCED ORDER CONFIRMATION", {
                    "order_id": order_id,
                    "order_number": snapshot.order_number,
                    "previous_status": snapshot.status,
                    "reference": payment_reference,
                })
                return TierOutcome(Tier.FORCED_OVERRIDE, TierStatus.APPLIED)
            return None
        return self._run_with_retries(Tier.FORCED_OVERRIDE, attempt)

    def _await_verification(self, order_id, payment_reference, rail, extra) -> OrderOutcome:
        """Records the reference and leaves the order in pending_payment."""
        order = None
        for _ in range(self.max_attempts):
            try:
                order = self.repo.get_order(order_id)
                if order is None:
                    return OrderOutcome(order_id, OutcomeKind.NOT_FOUND,
                                        error=OrderNotFound(f"Order {order_id} disappeared", order_id))
                settled = self._check_snapshot(order, payment_reference)
                if settled is not None:
                    return self._finish(order, payment_reference, [settled])
                metadata = self._metadata(order, rail, None, extra)
                if order.status == OrderStatus.DRAFT.value:
                    written = self.repo.mark_pending_payment(order_id, payment_reference, metadata)
                elif order.payment_reference == payment_reference:
                    written = True
                else:
                    written = self.repo.assign_reference(order_id, payment_reference, order.payment_reference)
            except StoreUnavailable as e:
                return OrderOutcome(order_id, OutcomeKind.FAILED, order.status if order else None, error=e)
            if written:
                logger.info(f"⏳ Order {order_id} waits for verification of {payment_reference} on {rail.value}")
                return OrderOutcome(order_id, OutcomeKind.PENDING_VERIFICATION, OrderStatus.PENDING_PAYMENT.value)
            # Another caller moved the order between the read and the write

        error = StoreUnavailable(f"Could not record {payment_reference} on order {order_id}")
        logger.error(f"❌ {error.message}")
        return OrderOutcome(order_id, OutcomeKind.FAILED, order.status if order else None, error=error)

    def _run_with_retries(self, tier: Tier, attempt) -> TierOutcome:
        last_error: Optional[CheckoutError] = None
        for number in range(1, self.max_attempts + 1):
            try:
                outcome = attempt()
            except AtomicPrimitiveUnavailable as e:
                return TierOutcome(tier, TierStatus.UNAVAILABLE, e, number)
            except TransientError as e:
                last_error = e
                logger.warning(f"⚠️ Tier {tier.value} attempt {number}/{self.max_attempts} failed: {e}")
                if number < self.max_attempts:
                    self.sleep(self.backoff_seconds * number)
                continue

            if outcome is not None:
                outcome.tier = tier
                outcome.attempts = number
                return outcome
            # The conditional write matched nothing; the next attempt re-reads the order

        return TierOutcome(
            tier, TierStatus.FAILED,
            last_error or StoreUnavailable(f"{tier.value} conditional write kept missing"),
            self.max_attempts,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_snapshot(self, snapshot: Optional[Order], payment_reference: str,
                        order_id: Optional[str] = None) -> Optional[TierOutcome]:
        """Settles the order without writing when it is already past payment."""
        if snapshot is None:
            return TierOutcome(Tier.ATOMIC, TierStatus.REJECTED,
                               OrderNotFound(f"Order {order_id} disappeared", order_id))
        if snapshot.status == OrderStatus.CANCELLED.value:
            return TierOutcome(Tier.ATOMIC, TierStatus.REJECTED,
                               OrderCancelled(f"Order {snapshot.id} is cancelled", snapshot.id))
        if is_confirmed_or_later(snapshot.status):
            existing = snapshot.payment_reference
            if existing and existing != payment_reference:
                return TierOutcome(Tier.ATOMIC, TierStatus.REJECTED, PaymentConflict(
                    f"Order {snapshot.id} is {snapshot.status} with a different payment reference",
                    snapshot.id, existing_reference=existing, supplied_reference=payment_reference,
                ))
            return TierOutcome(Tier.ATOMIC, TierStatus.NOOP)
        existing = snapshot.payment_reference
        if snapshot.batch_id and existing and existing != payment_reference:
            # Batch siblings keep the reference the coordinator propagated
            return TierOutcome(Tier.ATOMIC, TierStatus.REJECTED, PaymentConflict(
                f"Batch order {snapshot.id} already carries a different payment reference",
                snapshot.id, existing_reference=existing, supplied_reference=payment_reference,
            ))
        return None

    def _resolve_rail(self, order: Order, rail) -> PaymentRail:
        recorded = None
        if order.rail:
            try:
                recorded = parse_rail(order.rail)
            except ValueError:
                raise UnknownRail(f"Order {order.id} records unknown rail {order.rail!r}", order.id)
        if rail is None:
            if recorded is None:
                raise UnknownRail(f"Order {order.id} has no rail and none was supplied", order.id)
            return recorded
        try:
            rail = parse_rail(rail)
        except ValueError:
            raise UnknownRail(f"Unknown payment rail {rail!r}", order.id)
        if recorded is not None and recorded != rail:
            raise PaymentConflict(
                f"Order {order.id} was created for {recorded.value}, payment came on {rail.value}", order.id
            )
        return rail

    def _check_reference_unused(self, order: Order, payment_reference: str):
        for other in self.repo.find_by_reference(payment_reference):
            if other.id == order.id or not is_confirmed_or_later(other.status):
                continue
            if order.batch_id and other.batch_id == order.batch_id:
                continue
            raise PaymentConflict(
                f"Payment reference already confirmed order {other.order_number}",
                order.id, existing_reference=order.payment_reference, supplied_reference=payment_reference,
            )

    @staticmethod
    def _metadata(snapshot: Order, rail: PaymentRail, tier: Optional[Tier], extra: dict) -> dict:
        metadata = dict(snapshot.payment_metadata or {})
        metadata.update(extra)
        metadata["rail"] = rail.value
        if tier is not None:
            metadata["confirmed_via"] = tier.value
            metadata["confirmed_at"] = utcnow().isoformat()
        return metadata

    def _finish(self, order: Order, payment_reference: str, tried: List[TierOutcome]) -> OrderOutcome:
        final = tried[-1]
        if final.status == TierStatus.APPLIED:
            logger.info(f"✅ Order {order.id} confirmed via {final.tier.value} with {payment_reference}")
            self._notify_confirmed(order.id)
            return OrderOutcome(order.id, OutcomeKind.CONFIRMED, OrderStatus.CONFIRMED.value,
                                final.tier, tiers_tried=tried)
        if final.status == TierStatus.NOOP:
            logger.info(f"Order {order.id} already confirmed with {payment_reference}, nothing to do")
            return OrderOutcome(order.id, OutcomeKind.ALREADY_CONFIRMED, order.status, tiers_tried=tried)

        error = final.error
        if isinstance(error, PaymentConflict):
            logger.error(f"❌ Payment conflict on order {order.id}: {error.message}")
            self._alert("PAYMENT REFERENCE CONFLICT", error.to_dict())
            return OrderOutcome(order.id, OutcomeKind.CONFLICT, order.status, error=error, tiers_tried=tried)
        if isinstance(error, OrderCancelled):
            logger.warning(f"⚠️ Refusing to confirm cancelled order {order.id}")
            return OrderOutcome(order.id, OutcomeKind.CANCELLED, OrderStatus.CANCELLED.value,
                                error=error, tiers_tried=tried)
        if isinstance(error, OrderNotFound):
            return OrderOutcome(order.id, OutcomeKind.NOT_FOUND, error=error, tiers_tried=tried)

        logger.error(f"❌ Every confirmation tier failed for order {order.id}: {error}")
        return OrderOutcome(order.id, OutcomeKind.FAILED, order.status, error=error, tiers_tried=tried)

    def _notify_confirmed(self, order_id: str):
        if self.notifier is None:
            return
        try:
            order = self.repo.get_order(order_id)
            if order is not None:
                self.notifier.notify_order_confirmed(order)
        except Exception as e:
            logger.error(f"❌ Order confirmed notification failed for {order_id}: {e}")

    def _alert(self, subject: str, details: dict):
        if self.notifier is None:
            return
        try:
            self.notifier.alert_operator(subject, details)
        except Exception as e:
            logger.error(f"❌ Operator alert '{subject}' failed: {e}")

    # ------------------------------------------------------------------
    # Result shaping
    # ------------------------------------------------------------------

    @staticmethod
    def _from_outcomes(outcomes: List[OrderOutcome], payment_reference: str,
                       batch: Optional[BatchResult] = None) -> ConfirmResult:
        order_ids = [o.order_id for o in outcomes]
        conflict = next((o.error for o in outcomes if o.kind == OutcomeKind.CONFLICT), None)
        first_error = next((o.error for o in outcomes if o.error is not None), None)
        succeeded = [o for o in outcomes if o.succeeded]
        waiting = [o for o in outcomes if o.awaiting_verification]

        if conflict is not None:
            status, error = ConfirmStatus.CONFLICT, conflict
        elif outcomes and len(succeeded) == len(outcomes):
            fresh = any(o.kind == OutcomeKind.CONFIRMED for o in outcomes)
            status = ConfirmStatus.CONFIRMED if fresh else ConfirmStatus.ALREADY_CONFIRMED
            error = None
        elif waiting and len(succeeded) + len(waiting) == len(outcomes):
            status, error = ConfirmStatus.PENDING_VERIFICATION, None
        elif succeeded or waiting:
            status, error = ConfirmStatus.PARTIAL, first_error
        else:
            status, error = ConfirmStatus.FAILED, first_error
        return ConfirmResult(status, order_ids, error, payment_reference, outcomes, batch)

    def _from_batch(self, batch: BatchResult) -> ConfirmResult:
        if batch.error is not None:
            return ConfirmResult(ConfirmStatus.FAILED, [batch.batch_id], batch.error,
                                 batch.payment_reference, batch=batch)
        return self._from_outcomes(batch.outcomes, batch.payment_reference, batch)
