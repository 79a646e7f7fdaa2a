"""
Solana JSON-RPC client used by the Ledger Verifier.

Only ``getTransaction`` at ``finalized`` commitment is needed. Every call
is bounded by a timeout; timeouts, connection errors, HTTP 429 and 5xx are
retried a bounded number of times and then surface as LedgerUnavailable.
"""
import itertools
import logging
import time
from typing import Optional

import requests

from storefront.core.config import settings
from storefront.core.errors import LedgerUnavailable
from storefront.interfaces.ILedgerClient import ILedgerClient, LedgerTransaction

logger = logging.getLogger(__name__)

RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}


class SolanaRpcClient(ILedgerClient):
    def __init__(
        self,
        rpc_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        session: requests.Session | None = None,
    ):
        self.rpc_url = rpc_url or settings.ledger_rpc_url
        self.timeout = timeout if timeout is not None else settings.LEDGER_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.LEDGER_MAX_ATTEMPTS
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.LEDGER_RETRY_BACKOFF_SECONDS
        )
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

        # Never log the API key
        display_url = self.rpc_url.split("?", 1)[0]
        logger.info(f"✅ Ledger client using RPC {display_url}")

    def get_transaction(self, signature: str) -> Optional[LedgerTransaction]:
        result = self._call(
            "getTransaction",
            [signature, {
                "encoding": "json",
                "commitment": "finalized",
                "maxSupportedTransactionVersion": 0,
            }],
        )
        if not result:
            return None

        meta = result.get("meta") or {}
        message = (result.get("transaction") or {}).get("message") or {}
        account_keys = list(message.get("accountKeys") or [])
        # Versioned transactions append lookup-table accounts after the static keys
        loaded = meta.get("loadedAddresses") or {}
        account_keys += list(loaded.get("writable") or []) + list(loaded.get("readonly") or [])

        return LedgerTransaction(
            signature=signature,
            err=meta.get("err"),
            account_keys=account_keys,
            pre_balances=list(meta.get("preBalances") or []),
            post_balances=list(meta.get("postBalances") or []),
        )

    def _call(self, method: str, params: list):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        last_error = ""

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
                if response.status_code in RETRYABLE_HTTP_STATUS:
                    last_error = f"HTTP {response.status_code}"
                else:
                    response.raise_for_status()
                    body = response.json()
                    if body.get("error"):
                        # Node-side errors leave the order for the next sweep
                        raise LedgerUnavailable(f"{method} RPC error: {body['error']}")
                    return body.get("result")
            except (requests.Timeout, requests.ConnectionError) as e:
                last_error = f"{type(e).__name__}: {e}"
            except requests.HTTPError as e:
                raise LedgerUnavailable(f"{method} rejected: {e}") from e
            except ValueError as e:
                last_error = f"invalid JSON: {e}"

            logger.warning(f"⚠️ Ledger {method} attempt {attempt}/{self.max_attempts} failed: {last_error}")
            if attempt < self.max_attempts:
                time.sleep(self.backoff_seconds * attempt)

        raise LedgerUnavailable(f"{method} failed after {self.max_attempts} attempts: {last_error}")
