import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from storefront.application.confirmation_engine import ConfirmationEngine
from storefront.core.errors import (
    InvalidRequest, InvalidTransition, OrderNotFound, StoreUnavailable, UnknownRail,
)
from storefront.core.timeutils import age_hours, utcnow
from storefront.domain.models import (
    Order, OrderStatus, can_transition, new_id, parse_rail,
)
from storefront.domain.results import PaymentFailureResult, RecoveryResult
from storefront.interfaces.IOrderRepository import IOrderRepository

logger = logging.getLogger(__name__)

RECOVERY_ACTIONS = ("check", "confirm", "cancel")

# Statuses only the payment flow may set
ENGINE_STATUSES = (OrderStatus.DRAFT.value, OrderStatus.PENDING_PAYMENT.value)

# Declines the buyer can fix by retrying with the same checkout
RETRY_ELIGIBLE_CODES = ("authentication_required", "insufficient_funds", "card_declined")


class OrderService:
    def __init__(self, order_repo: IOrderRepository, engine: ConfirmationEngine):
        self.repo = order_repo
        self.engine = engine

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_checkout(self, lines: List[dict], rail, payer_identity: Optional[str] = None,
                        now: Optional[datetime] = None) -> List[Order]:
        """
        Creates one draft order per cart line. Orders from a multi-line
        checkout share a batch id and are confirmed together.

        Each line is a dict with ``amount`` (expected payment for that line)
        and any free-form item details, which land in ``payment_metadata``.
        """
        if not lines:
            raise InvalidRequest("A checkout needs at least one line")
        try:
            rail = parse_rail(rail)
        except ValueError:
            raise UnknownRail(f"Unknown payment rail {rail!r}")

        now = now or utcnow()
        batch_id = new_id() if len(lines) > 1 else None
        prefix = f"SF-{now:%m%d}-{uuid.uuid4().hex[:6].upper()}"

        orders = []
        for index, line in enumerate(lines, start=1):
            item = {k: v for k, v in line.items() if k != "amount"}
            amount = line.get("amount")
            orders.append(Order(
                id=new_id(),
                order_number=f"{prefix}-{index}",
                status=OrderStatus.DRAFT.value,
                batch_id=batch_id,
                rail=rail.value,
                amount_expected=Decimal(str(amount)) if amount is not None else None,
                payer_identity_expected=payer_identity,
                payment_metadata={"rail": rail.value, "item": item, "batch_size": len(lines)},
                created_at=now,
                updated_at=now,
            ))

        created = self.repo.create_orders(orders)
        logger.info(f"🛒 Checkout created {len(created)} draft orders (batch={batch_id}, rail={rail.value})")
        return created

    def find_by_payment_reference(self, payment_reference: str) -> List[Order]:
        if not payment_reference:
            raise InvalidRequest("A payment reference is required")
        return self.repo.find_by_reference(payment_reference)

    # ------------------------------------------------------------------
    # Processor failures
    # ------------------------------------------------------------------

    def record_payment_failure(self, payment_reference: str, code: str, message: str = "",
                               decline_code: Optional[str] = None,
                               payment_method_type: Optional[str] = None,
                               now: Optional[datetime] = None) -> PaymentFailureResult:
        """
        Stores a processor decline on the orders carrying ``payment_reference``.

        Only draft and pending_payment orders are written and their status is
        left alone, so a late failure event never undoes a confirmation.
        """
        payment_reference = (payment_reference or "").strip()
        code = (code or "").strip()
        if not payment_reference or not code:
            raise InvalidRequest("A payment reference and an error code are required")

        orders = self.repo.find_by_reference(payment_reference)
        if not orders:
            raise OrderNotFound(f"No order carries payment reference {payment_reference}")

        retry_eligible = code in RETRY_ELIGIBLE_CODES
        payment_error = {
            "code": code,
            "message": message,
            "decline_code": decline_code,
            "payment_method_type": payment_method_type,
            "timestamp": (now or utcnow()).isoformat(),
        }

        result = PaymentFailureResult(payment_reference, code, retry_eligible)
        for order in orders:
            if order.status not in ENGINE_STATUSES:
                result.skipped_order_ids.append(order.id)
                continue
            metadata = dict(order.payment_metadata or {})
            metadata["payment_error"] = payment_error
            metadata["retry_eligible"] = retry_eligible
            # Expected and new status are equal, the write only lands if the order has not moved
            if self.repo.set_status(order.id, order.status, order.status, metadata):
                result.updated_order_ids.append(order.id)
            else:
                result.skipped_order_ids.append(order.id)

        logger.warning(
            f"⚠️ Payment {payment_reference} failed with {code} on {len(result.updated_order_ids)} orders "
            f"(retry_eligible={retry_eligible})"
        )
        return result

    # ------------------------------------------------------------------
    # Merchant status updates
    # ------------------------------------------------------------------

    def update_status(self, order_id: str, new_status: str) -> Order:
        try:
            new_status = OrderStatus(new_status).value
        except ValueError:
            raise InvalidTransition(f"Invalid order status: {new_status}", order_id)
        if new_status in ENGINE_STATUSES:
            raise InvalidTransition(f"{new_status} is set by payment confirmation only", order_id)

        for _ in range(2):
            order = self.repo.get_order(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", order_id)
            if order.status == new_status:
                return order
            if not can_transition(order.status, new_status):
                raise InvalidTransition(
                    f"Invalid order status transition from {order.status} to {new_status}", order_id
                )
            if self.repo.set_status(order_id, order.status, new_status):
                logger.info(f"Order {order_id} status updated from {order.status} to {new_status}")
                return self.repo.get_order(order_id)
            # status moved underneath us, validate again against the new one

        raise StoreUnavailable(f"Order {order_id} kept changing while updating to {new_status}", order_id)

    # ------------------------------------------------------------------
    # Operator repair tool
    # ------------------------------------------------------------------

    def recover_stale_payment(self, order_id: str, action: str = "check",
                              now: Optional[datetime] = None) -> RecoveryResult:
        if action not in RECOVERY_ACTIONS:
            return RecoveryResult(order_id, action, False, error=InvalidRequest(
                f'Invalid action. Use {", ".join(RECOVERY_ACTIONS)}', order_id))

        order = self.repo.get_order(order_id)
        if order is None or order.status != OrderStatus.PENDING_PAYMENT.value:
            return RecoveryResult(order_id, action, False, status=order.status if order else None,
                                  error=OrderNotFound("Order not found or is not a pending payment", order_id))

        now = now or utcnow()
        hours = age_hours(order.pending_started_at, now)
        recovery_info = {"action": f"manual_{action}", "timestamp": now.isoformat()}

        if action == "check":
            return RecoveryResult(order_id, action, True, status=order.status, hours_pending=hours,
                                  payment_reference=order.payment_reference, message="Order is pending payment")

        if action == "confirm":
            if not order.payment_reference:
                return RecoveryResult(order_id, action, False, status=order.status, hours_pending=hours,
                                      error=InvalidRequest("Order has no payment reference to confirm", order_id))
            # The operator vouches for the payment, so blockchain orders skip the ledger gate
            confirm = self.engine.confirm(order.id, order.payment_reference, order.rail,
                                          extra_metadata={"recovery_info": recovery_info}, verified=True)
            logger.info(f"Operator confirm on order {order_id}: {confirm.status.value}")
            current = self.repo.get_order(order_id)
            return RecoveryResult(
                order_id, action, confirm.ok, status=current.status if current else None,
                hours_pending=hours, payment_reference=order.payment_reference, confirm=confirm,
                error=confirm.error, message="Payment manually confirmed" if confirm.ok else "Confirmation failed",
            )

        metadata = dict(order.payment_metadata or {})
        metadata["recovery_info"] = recovery_info
        cancelled = self.repo.set_status(order_id, OrderStatus.PENDING_PAYMENT.value,
                                         OrderStatus.CANCELLED.value, metadata)
        current = self.repo.get_order(order_id)
        if cancelled:
            logger.warning(f"⚠️ Operator cancelled pending order {order_id}")
        return RecoveryResult(
            order_id, action, cancelled, status=current.status if current else None, hours_pending=hours,
            payment_reference=order.payment_reference,
            message="Payment manually cancelled" if cancelled else "Order left pending_payment before cancel",
        )
