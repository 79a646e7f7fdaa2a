from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Any


@dataclass
class LedgerTransaction:
    signature: str
    err: Optional[Any] = None
    account_keys: List[str] = field(default_factory=list)
    pre_balances: List[int] = field(default_factory=list)
    post_balances: List[int] = field(default_factory=list)


class ILedgerClient(ABC):
    @abstractmethod
    def get_transaction(self, signature: str) -> Optional[LedgerTransaction]:
        """Finalized transaction, or None when the ledger does not know it.

        Raises LedgerUnavailable on timeouts and retryable RPC failures.
        """
        pass
