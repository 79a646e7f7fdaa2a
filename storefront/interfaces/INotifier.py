from abc import ABC, abstractmethod

from storefront.domain.models import Order


class INotifier(ABC):
    @abstractmethod
    def notify_order_confirmed(self, order: Order) -> None:
        pass

    @abstractmethod
    def alert_operator(self, subject: str, details: dict) -> None:
        pass
