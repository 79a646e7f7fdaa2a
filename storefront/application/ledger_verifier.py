import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from storefront.core.config import settings
from storefront.core.errors import TransactionNotFound, VerificationMismatch
from storefront.domain.results import TransferDetails, VerificationResult
from storefront.interfaces.ILedgerClient import ILedgerClient, LedgerTransaction

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = Decimal(1_000_000_000)


@dataclass
class BalanceChange:
    address: str
    change: Decimal


def balance_changes(tx: LedgerTransaction) -> List[BalanceChange]:
    changes = []
    for index, address in enumerate(tx.account_keys):
        if index >= len(tx.pre_balances) or index >= len(tx.post_balances):
            break
        delta = Decimal(tx.post_balances[index] - tx.pre_balances[index]) / LAMPORTS_PER_SOL
        changes.append(BalanceChange(address=address, change=delta))
    return changes


class LedgerVerifier:
    """Checks a blockchain payment against what the order expects to receive."""

    def __init__(self, client: ILedgerClient, tolerance: Decimal | None = None,
                 merchant_wallet: str | None = None):
        self.client = client
        self.tolerance = Decimal(str(tolerance)) if tolerance is not None else settings.AMOUNT_TOLERANCE
        self.merchant_wallet = merchant_wallet if merchant_wallet is not None else settings.MERCHANT_WALLET_ADDRESS

    def extract_transfer(self, tx: LedgerTransaction) -> Optional[TransferDetails]:
        changes = balance_changes(tx)
        recipient = next((c for c in changes if c.change > 0), None)
        sender = next((c for c in changes if c.change < 0), None)
        if recipient is None or sender is None:
            return None
        # The sender also pays the fee, so it must have lost at least what was received
        if -sender.change + self.tolerance < recipient.change:
            return None
        return TransferDetails(amount=recipient.change, sender=sender.address, recipient=recipient.address)

    def verify(self, signature: str, expected_amount, expected_payer: Optional[str]) -> VerificationResult:
        """
        Looks up a finalized transaction and checks it pays the expected amount
        from the expected payer. Raises LedgerUnavailable when the ledger
        cannot answer; every other problem comes back as an invalid result.
        """
        tx = self.client.get_transaction(signature)
        if tx is None:
            return VerificationResult(False, TransactionNotFound(f"Transaction {signature} not found"))

        if tx.err:
            reason = f"Transaction failed: {tx.err}" if isinstance(tx.err, str) else "Transaction failed with an error"
            return VerificationResult(False, VerificationMismatch(reason))

        details = self.extract_transfer(tx)
        if details is None:
            return VerificationResult(False, VerificationMismatch("Could not identify transfer details"))

        if expected_amount is None or not expected_payer:
            return VerificationResult(
                False, VerificationMismatch("Order has no expected amount or payer to verify against"), details
            )

        expected_amount = Decimal(str(expected_amount))
        if abs(details.amount - expected_amount) > self.tolerance:
            return VerificationResult(
                False,
                VerificationMismatch(f"Amount mismatch: expected {expected_amount} SOL, got {details.amount} SOL"),
                details,
            )

        if details.sender.lower() != expected_payer.lower():
            return VerificationResult(
                False,
                VerificationMismatch(f"Buyer mismatch: expected {expected_payer}, got {details.sender}"),
                details,
            )

        if self.merchant_wallet and details.recipient.lower() != self.merchant_wallet.lower():
            return VerificationResult(
                False,
                VerificationMismatch(f"Recipient mismatch: expected {self.merchant_wallet}, got {details.recipient}"),
                details,
            )

        return VerificationResult(True, details=details)
