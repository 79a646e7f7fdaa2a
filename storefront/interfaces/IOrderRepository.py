from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from storefront.core.errors import AtomicPrimitiveUnavailable
from storefront.domain.models import Order


class IOrderRepository(ABC):
    """
    Order Store port. Every status write is conditioned on the current
    status (compare-and-set) and reports whether a row matched.
    Implementations raise StoreUnavailable when the store cannot be reached.
    """

    @abstractmethod
    def create_orders(self, orders: List[Order]) -> List[Order]:
        pass

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    def list_batch(self, batch_id: str) -> List[Order]:
        pass

    @abstractmethod
    def find_by_reference(self, payment_reference: str) -> List[Order]:
        pass

    def atomic_confirm(self, order_id: str, payment_reference: str, metadata: dict,
                       keep_reference: bool = False) -> bool:
        """
        draft|pending_payment -> confirmed plus reference, in one statement.
        With keep_reference the row must carry no reference or this one.
        """
        raise AtomicPrimitiveUnavailable(f"{type(self).__name__} has no atomic confirm", order_id)

    @abstractmethod
    def mark_pending_payment(self, order_id: str, payment_reference: str, metadata: dict) -> bool:
        """draft -> pending_payment plus reference. Stamps pending_since."""
        pass

    @abstractmethod
    def assign_reference(self, order_id: str, payment_reference: str,
                         expected_reference: Optional[str] = None) -> bool:
        """Rewrite the reference of an order still in pending_payment, if it still carries expected_reference."""
        pass

    @abstractmethod
    def confirm_if_unpaid(self, order_id: str, payment_reference: str, metadata: dict,
                          keep_reference: bool = False) -> bool:
        """draft|pending_payment -> confirmed plus reference."""
        pass

    @abstractmethod
    def force_confirm(self, order_id: str, payment_reference: str, metadata: dict,
                      keep_reference: bool = False) -> bool:
        """Writes confirmed plus reference without the unpaid guard. Cancelled and shipped-side rows are left alone."""
        pass

    @abstractmethod
    def set_status(self, order_id: str, expected_status: str, new_status: str,
                   metadata: Optional[dict] = None) -> bool:
        pass

    @abstractmethod
    def record_verification(self, order_id: str, verification_status: str, metadata: dict) -> bool:
        """Stores a ledger verification outcome on an order still in pending_payment."""
        pass

    @abstractmethod
    def list_stale_drafts(self, cutoff: datetime, limit: Optional[int] = None) -> List[Order]:
        pass

    @abstractmethod
    def delete_stale_drafts(self, cutoff: datetime, limit: Optional[int] = None) -> List[str]:
        pass

    @abstractmethod
    def list_stale_pending(self, cutoff: datetime, limit: int) -> List[Order]:
        """Orders that entered pending_payment before cutoff, oldest first."""
        pass

    @abstractmethod
    def list_unverified_blockchain_pending(self, limit: int) -> List[Order]:
        pass
