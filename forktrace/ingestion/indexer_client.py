"""Fetch transactions, receipts and blocks from an Etherscan-compatible proxy API."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from forktrace.core.chains import get_chain_config
from forktrace.core.config import Settings, get_settings
from forktrace.core.errors import (
    BlockNotFound,
    ForkTraceError,
    IndexerError,
    NetworkError,
    ReceiptNotFound,
    TransactionNotFound,
    ValidationError,
)
from forktrace.core.types import TransactionBundle, TransactionRecord
from forktrace.core.validators import require_tx_hash

logger = logging.getLogger(__name__)

ACTION_GET_TRANSACTION = "eth_getTransactionByHash"
ACTION_GET_RECEIPT = "eth_getTransactionReceipt"
ACTION_GET_BLOCK = "eth_getBlockByNumber"

# A null result means "not indexed yet" until the retry ceiling is reached.
_NOT_FOUND: dict[str, type[IndexerError]] = {
    ACTION_GET_TRANSACTION: TransactionNotFound,
    ACTION_GET_RECEIPT: ReceiptNotFound,
    ACTION_GET_BLOCK: BlockNotFound,
}


def is_retryable(exc: ForkTraceError) -> bool:
    """Return True if another attempt at the same query may succeed.

    Semantic indexer errors are permanent unless they report rate limiting.
    """
    if isinstance(exc, ValidationError):
        return False
    if isinstance(exc, NetworkError):
        return True
    if isinstance(exc, (TransactionNotFound, ReceiptNotFound, BlockNotFound)):
        return True
    if isinstance(exc, IndexerError):
        return exc.rate_limited
    return False


class IndexingClient:
    """Async client for the ``module=proxy`` endpoints of an Etherscan-style API.

    Every query is retried with exponential back-off on transient failures
    (transport errors, non-200 responses, rate limiting, null results).
    """

    def __init__(
        self,
        api_key: str | None = None,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._api_key = api_key if api_key is not None else self._settings.etherscan_api_key
        self._api_url = self._resolve_api_url()
        self._max_attempts = max(1, self._settings.etherscan_max_retries)
        self._base_delay = self._settings.etherscan_retry_base_delay
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self._settings.etherscan_request_timeout,
        )

    async def __aenter__(self) -> IndexingClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    @property
    def api_url(self) -> str:
        return self._api_url

    # ── Public API ───────────────────────────────────────────────────────

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        require_tx_hash(tx_hash)
        return await self._proxy_call(
            ACTION_GET_TRANSACTION, {"txhash": tx_hash}, subject=f"Transaction {tx_hash}"
        )

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        require_tx_hash(tx_hash)
        return await self._proxy_call(
            ACTION_GET_RECEIPT, {"txhash": tx_hash}, subject=f"Transaction receipt {tx_hash}"
        )

    async def get_block(self, block_number: int | str) -> dict[str, Any]:
        """Fetch a block header (transaction hashes only, not full objects)."""
        tag = hex(block_number) if isinstance(block_number, int) else block_number
        return await self._proxy_call(
            ACTION_GET_BLOCK, {"tag": tag, "boolean": "false"}, subject=f"Block {tag}"
        )

    async def fetch_transaction_bundle(self, tx_hash: str) -> TransactionBundle:
        """Fetch the transaction, its receipt and its block.

        Transaction and receipt are requested concurrently; the block lookup
        needs the transaction's block number and runs afterwards.

        Raises:
            ValidationError: malformed hash (no request is made)
            TransactionNotFound / ReceiptNotFound / BlockNotFound
            IndexerError / NetworkError: after the retry policy gave up
        """
        require_tx_hash(tx_hash)
        start = time.monotonic()

        tx_result, receipt_result = await asyncio.gather(
            self.get_transaction(tx_hash),
            self.get_transaction_receipt(tx_hash),
            return_exceptions=True,
        )
        for outcome in (tx_result, receipt_result):
            if isinstance(outcome, ForkTraceError):
                raise outcome
            if isinstance(outcome, BaseException):
                raise IndexerError(
                    f"Failed to fetch transaction data: {outcome}", cause=outcome
                ) from outcome

        if tx_result.get("blockNumber") is None:
            raise IndexerError(f"Transaction {tx_hash} is still pending")

        block = await self.get_block(tx_result["blockNumber"])
        transaction = TransactionRecord.from_rpc(tx_result)

        logger.info(
            "Fetched transaction bundle (block %d) in %.0fms",
            transaction.block_number,
            (time.monotonic() - start) * 1000,
            extra={"tx_hash": tx_hash, "fork_block": transaction.block_number - 1},
        )
        return TransactionBundle(transaction=transaction, receipt=receipt_result, block=block)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    # ── Internal Helpers ─────────────────────────────────────────────────

    def _resolve_api_url(self) -> str:
        if self._settings.etherscan_api_url:
            return self._settings.etherscan_api_url
        chain_config = get_chain_config(self._settings.chain)
        if not chain_config:
            raise ValidationError(f"Unsupported chain: {self._settings.chain}")
        return chain_config.explorer_api_url

    async def _proxy_call(self, action: str, params: dict[str, Any], subject: str) -> Any:
        """Issue one logical query, retrying per :func:`is_retryable`.

        Back-off is ``base_delay * 2 ** (attempt - 1)``; exhaustion re-raises
        the last observed error.
        """
        query = {"module": "proxy", "action": action, "apikey": self._api_key, **params}
        last_error: ForkTraceError | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._request_once(action, query, subject)
            except ForkTraceError as exc:
                last_error = exc
                if not is_retryable(exc):
                    raise
                if attempt < self._max_attempts:
                    delay = self._base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "Indexer %s failed (attempt %d/%d), retrying in %.2fs: %s",
                        action, attempt, self._max_attempts, delay, exc,
                        extra={"action": action, "attempt": attempt},
                    )
                    await asyncio.sleep(delay)

        raise last_error  # type: ignore[misc]

    async def _request_once(self, action: str, query: dict[str, Any], subject: str) -> Any:
        try:
            response = await self._client.get(self._api_url, params=query)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Request to indexing API failed: {exc}", cause=exc) from exc

        if response.status_code != 200:
            raise NetworkError(f"HTTP {response.status_code} from indexing API")

        try:
            data = response.json()
        except ValueError as exc:
            raise NetworkError("Indexing API returned a non-JSON body", cause=exc) from exc

        if not isinstance(data, dict):
            raise IndexerError(f"Unexpected response envelope for {action}")

        error = data.get("error")
        if error:
            message = error.get("message", "unknown") if isinstance(error, dict) else str(error)
            raise IndexerError(f"RPC error: {message}")

        result = data.get("result")
        # Explorer-level failures use the REST envelope even on proxy routes.
        if data.get("status") == "0" and isinstance(result, str):
            raise IndexerError(f"{data.get('message') or 'NOTOK'}: {result}")

        if result is None:
            raise _NOT_FOUND.get(action, IndexerError)(
                f"{subject} not found (null result for {action}; may be pending or not indexed yet)"
            )
        return result

