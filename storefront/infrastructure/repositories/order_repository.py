import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import asc, func, or_
from sqlalchemy.exc import SQLAlchemyError

from storefront.core.errors import StoreUnavailable
from storefront.core.timeutils import utcnow
from storefront.domain.models import (
    Order, OrderStatus, PaymentRail, VerificationStatus,
    CONFIRMABLE_STATUSES,
)
from storefront.interfaces.IOrderRepository import IOrderRepository

logger = logging.getLogger(__name__)

FORCE_PROTECTED_STATUSES = (
    OrderStatus.CANCELLED.value,
    OrderStatus.PREPARING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)

# Orders written before pending_since existed fall back to their creation time
PENDING_SINCE = func.coalesce(Order.pending_since, Order.created_at)


class SqlAlchemyOrderRepository(IOrderRepository):

    def __init__(self, session_factory):
        self.SessionLocal = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read(self, label: str, fn):
        session = self.SessionLocal()
        try:
            return fn(session)
        except SQLAlchemyError as e:
            logger.error(f"❌ DB Read Error ({label}): {e}")
            raise StoreUnavailable(f"{label} failed: {e}") from e
        finally:
            session.close()

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._read("get_order", lambda s: s.get(Order, order_id))

    def list_batch(self, batch_id: str) -> List[Order]:
        return self._read(
            "list_batch",
            lambda s: s.query(Order)
            .filter(Order.batch_id == batch_id)
            .order_by(asc(Order.created_at), asc(Order.order_number))
            .all(),
        )

    def find_by_reference(self, payment_reference: str) -> List[Order]:
        return self._read(
            "find_by_reference",
            lambda s: s.query(Order).filter(Order.payment_reference == payment_reference).all(),
        )

    def list_stale_drafts(self, cutoff: datetime, limit: Optional[int] = None) -> List[Order]:
        def query(s):
            q = self._stale_drafts(s, cutoff).order_by(asc(Order.created_at))
            if limit:
                q = q.limit(limit)
            return q.all()
        return self._read("list_stale_drafts", query)

    def list_stale_pending(self, cutoff: datetime, limit: int) -> List[Order]:
        return self._read(
            "list_stale_pending",
            lambda s: s.query(Order)
            .filter(Order.status == OrderStatus.PENDING_PAYMENT.value, PENDING_SINCE < cutoff)
            .order_by(asc(PENDING_SINCE))
            .limit(limit)
            .all(),
        )

    def list_unverified_blockchain_pending(self, limit: int) -> List[Order]:
        return self._read(
            "list_unverified_blockchain_pending",
            lambda s: s.query(Order)
            .filter(
                Order.status == OrderStatus.PENDING_PAYMENT.value,
                Order.rail == PaymentRail.BLOCKCHAIN.value,
                Order.payment_reference.isnot(None),
                Order.payment_reference != "",
                or_(Order.verification_status.is_(None),
                    Order.verification_status != VerificationStatus.FAILED.value),
            )
            .order_by(asc(Order.updated_at))
            .limit(limit)
            .all(),
        )

    @staticmethod
    def _stale_drafts(session, cutoff: datetime):
        return session.query(Order).filter(
            Order.status == OrderStatus.DRAFT.value,
            Order.created_at < cutoff,
            or_(Order.payment_reference.is_(None), Order.payment_reference == ""),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write(self, label: str, fn):
        session = self.SessionLocal()
        try:
            result = fn(session)
            session.commit()
            return result
        except SQLAlchemyError as e:
            logger.error(f"❌ DB Write Error ({label}): {e}")
            session.rollback()
            raise StoreUnavailable(f"{label} failed: {e}") from e
        finally:
            session.close()

    def _conditional_update(self, label: str, order_id: str, conditions: list, values: dict) -> bool:
        values = dict(values)
        values["updated_at"] = utcnow()

        def update(s):
            return s.query(Order).filter(Order.id == order_id, *conditions).update(
                values, synchronize_session=False
            )
        return self._write(label, update) == 1

    @staticmethod
    def _reference_guard(payment_reference: str, keep_reference: bool) -> list:
        """Batch siblings may only be confirmed under the reference they already carry."""
        if not keep_reference:
            return []
        return [or_(
            Order.payment_reference.is_(None),
            Order.payment_reference == "",
            Order.payment_reference == payment_reference,
        )]

    def create_orders(self, orders: List[Order]) -> List[Order]:
        def insert(s):
            now = utcnow()
            for order in orders:
                order.created_at = order.created_at or now
                order.updated_at = order.updated_at or order.created_at
                if order.payment_metadata is None:
                    order.payment_metadata = {}
                s.add(order)
            return orders
        return self._write("create_orders", insert)

    def atomic_confirm(self, order_id: str, payment_reference: str, metadata: dict,
                       keep_reference: bool = False) -> bool:
        return self._conditional_update(
            "atomic_confirm", order_id,
            [Order.status.in_(CONFIRMABLE_STATUSES)] + self._reference_guard(payment_reference, keep_reference),
            {
                "status": OrderStatus.CONFIRMED.value,
                "payment_reference": payment_reference,
                "payment_metadata": metadata,
            },
        )

    def mark_pending_payment(self, order_id: str, payment_reference: str, metadata: dict) -> bool:
        return self._conditional_update(
            "mark_pending_payment", order_id,
            [Order.status == OrderStatus.DRAFT.value],
            {
                "status": OrderStatus.PENDING_PAYMENT.value,
                "payment_reference": payment_reference,
                "payment_metadata": metadata,
                "pending_since": utcnow(),
                "verification_status": None,
            },
        )

    def assign_reference(self, order_id: str, payment_reference: str,
                         expected_reference: Optional[str] = None) -> bool:
        conditions = [Order.status == OrderStatus.PENDING_PAYMENT.value]
        if expected_reference:
            conditions.append(Order.payment_reference == expected_reference)
        else:
            conditions.append(or_(Order.payment_reference.is_(None), Order.payment_reference == ""))
        # A new reference has not been checked against the ledger yet
        return self._conditional_update(
            "assign_reference", order_id, conditions,
            {"payment_reference": payment_reference, "verification_status": None},
        )

    def confirm_if_unpaid(self, order_id: str, payment_reference: str, metadata: dict,
                          keep_reference: bool = False) -> bool:
        return self._conditional_update(
            "confirm_if_unpaid", order_id,
            [Order.status.in_(CONFIRMABLE_STATUSES)] + self._reference_guard(payment_reference, keep_reference),
            {
                "status": OrderStatus.CONFIRMED.value,
                "payment_reference": payment_reference,
                "payment_metadata": metadata,
            },
        )

    def force_confirm(self, order_id: str, payment_reference: str, metadata: dict,
                      keep_reference: bool = False) -> bool:
        # Cancelled and post-confirmation orders are the only rows left alone
        return self._conditional_update(
            "force_confirm", order_id,
            [Order.status.notin_(FORCE_PROTECTED_STATUSES)] + self._reference_guard(payment_reference, keep_reference),
            {
                "status": OrderStatus.CONFIRMED.value,
                "payment_reference": payment_reference,
                "payment_metadata": metadata,
            },
        )

    def set_status(self, order_id: str, expected_status: str, new_status: str,
                   metadata: Optional[dict] = None) -> bool:
        values = {"status": new_status}
        if metadata is not None:
            values["payment_metadata"] = metadata
        return self._conditional_update(
            "set_status", order_id, [Order.status == expected_status], values
        )

    def record_verification(self, order_id: str, verification_status: str, metadata: dict) -> bool:
        return self._conditional_update(
            "record_verification", order_id,
            [Order.status == OrderStatus.PENDING_PAYMENT.value],
            {"verification_status": verification_status, "payment_metadata": metadata},
        )

    def delete_stale_drafts(self, cutoff: datetime, limit: Optional[int] = None) -> List[str]:
        def delete(s):
            q = self._stale_drafts(s, cutoff).with_entities(Order.id).order_by(asc(Order.created_at))
            if limit:
                q = q.limit(limit)
            ids = [row.id for row in q.all()]
            if not ids:
                return []
            # Conditions are repeated so a draft paid in the meantime survives
            self._stale_drafts(s, cutoff).filter(Order.id.in_(ids)).delete(synchronize_session=False)
            survivors = {row.id for row in s.query(Order.id).filter(Order.id.in_(ids)).all()}
            return [order_id for order_id in ids if order_id not in survivors]
        return self._write("delete_stale_drafts", delete)
