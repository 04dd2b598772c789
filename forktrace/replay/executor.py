"""Replay a mined transaction on the fork from a funded test account."""

from __future__ import annotations

import logging
import re
import time
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.exceptions import TransactionNotFound as Web3TransactionNotFound

from forktrace.core.chains import ChainConfig, get_chain_by_id
from forktrace.core.config import Settings, get_settings
from forktrace.core.errors import ForkConnectionError, ReplayError, ValidationError
from forktrace.core.types import AccountSnapshot, ReplayOutcome, ReplayStatus, to_int
from forktrace.core.validators import is_address, require_tx_hash
from forktrace.replay.state_diff import StateDiffEngine

logger = logging.getLogger(__name__)

DEFAULT_REVERT_REASON = "Transaction reverted"

ERROR_SELECTOR = "08c379a0"  # Error(string)
PANIC_SELECTOR = "4e487b71"  # Panic(uint256)

PANIC_CODES: dict[int, str] = {
    0x00: "generic compiler panic",
    0x01: "assertion failed",
    0x11: "arithmetic overflow or underflow",
    0x12: "division or modulo by zero",
    0x21: "invalid enum value",
    0x22: "invalid storage byte array encoding",
    0x31: "pop on empty array",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "call to zero-initialized internal function",
}

OVERRIDABLE_FIELDS = frozenset(
    {"to", "value", "data", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas"}
)
NUMERIC_FIELDS = frozenset({"value", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas"})
# Always controlled by the executing account.
PROTECTED_FIELDS = frozenset({"from", "nonce"})
FIELD_ALIASES = {
    "gasLimit": "gas",
    "gas_limit": "gas",
    "gas_price": "gasPrice",
    "input": "data",
    "calldata": "data",
}

_DECIMAL_RE = re.compile(r"^[0-9]+$")
_HEX_QUANTITY_RE = re.compile(r"^0[xX][0-9a-fA-F]+$")
_HEX_DATA_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2})*$")


def make_web3(rpc_url: str) -> AsyncWeb3:
    """Create an async web3 connection to a fork endpoint."""
    return AsyncWeb3(AsyncHTTPProvider(rpc_url))


async def close_web3(w3: AsyncWeb3) -> None:
    """Release the provider's cached HTTP session, if it keeps one."""
    disconnect = getattr(w3.provider, "disconnect", None)
    if disconnect is not None:
        await disconnect()


def to_hex(value: Any) -> str:
    """Render bytes-like RPC values as 0x-prefixed hex; pass strings through."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def coerce_quantity(field: str, raw: Any) -> int:
    """Parse a numeric override (int, decimal string or 0x-hex string).

    Raises:
        ReplayError: the value cannot be encoded as a non-negative quantity.
            Malformed input is never coerced to zero.
    """
    if isinstance(raw, bool):
        raise ReplayError(f"Cannot encode override {field}={raw!r} as an integer quantity")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str) and _DECIMAL_RE.match(raw.strip()):
        value = int(raw.strip(), 10)
    elif isinstance(raw, str) and _HEX_QUANTITY_RE.match(raw.strip()):
        value = int(raw.strip(), 16)
    else:
        raise ReplayError(f"Cannot encode override {field}={raw!r} as an integer quantity")
    if value < 0:
        raise ReplayError(f"Override {field} must not be negative (got {value})")
    return value


def decode_revert_reason(data: Any) -> str | None:
    """Decode ``Error(string)`` / ``Panic(uint256)`` revert payloads.

    Returns None for empty data, custom errors and anything undecodable.
    """
    if data is None:
        return None
    try:
        raw = bytes(HexBytes(data))
    except (TypeError, ValueError):
        return None
    if len(raw) < 4:
        return None

    selector, payload = raw[:4].hex(), raw[4:]
    try:
        if selector == ERROR_SELECTOR:
            (reason,) = abi_decode(["string"], payload)
            return reason
        if selector == PANIC_SELECTOR:
            (code,) = abi_decode(["uint256"], payload)
            return f"Panic(0x{code:02x}): {PANIC_CODES.get(code, 'unknown panic code')}"
    except DecodingError:
        return None
    return None


def reason_from_exception(exc: BaseException) -> str | None:
    """Best revert reason carried by a web3 exception."""
    data = getattr(exc, "data", None)
    if isinstance(data, (str, bytes)):
        decoded = decode_revert_reason(data)
        if decoded:
            return decoded
    message = getattr(exc, "message", None) or str(exc)
    prefix = "execution reverted: "
    if message.startswith(prefix):
        return message[len(prefix):]
    return message or None


def normalize_log(log: Any) -> dict[str, Any]:
    return {
        "address": log.get("address"),
        "topics": [to_hex(t) for t in log.get("topics", [])],
        "data": to_hex(log.get("data", "0x")),
        "log_index": to_int(log.get("logIndex")),
    }


class ReplayExecutor:
    """Rebuild a transaction from the fork's view and re-submit it.

    The replay is sent from Anvil's deterministic funded account, so the
    sender and nonce always belong to the executing account. On-chain
    reverts come back as failed outcomes; only submissions that produce no
    receipt raise.
    """

    def __init__(self, w3: AsyncWeb3, settings: Settings | None = None) -> None:
        self._w3 = w3
        self._settings = settings or get_settings()
        self._account = Account.from_key(self._settings.replay_private_key)
        self._connected_block: int | None = None
        self.chain: ChainConfig | None = None

    @property
    def w3(self) -> AsyncWeb3:
        return self._w3

    @property
    def sender(self) -> str:
        """Address of the funded account the replay is sent from."""
        return self._account.address

    async def connect(self) -> int:
        """Verify the fork answers liveness queries; return its block number.

        Raises:
            ForkConnectionError: the endpoint is unreachable or misbehaving.
        """
        try:
            block_number = await self._w3.eth.block_number
            chain_id = await self._w3.eth.chain_id
        except Exception as exc:
            raise ForkConnectionError(f"Fork endpoint is not answering: {exc}", cause=exc) from exc

        self._connected_block = block_number
        self.chain = get_chain_by_id(chain_id)
        logger.info(
            "Connected to fork at block %d (%s, chain id %d)",
            block_number,
            self.chain.name if self.chain else "unknown chain",
            chain_id,
        )
        return block_number

    async def replay(
        self,
        tx_hash: str,
        overrides: dict[str, Any] | None = None,
    ) -> ReplayOutcome:
        """Re-execute ``tx_hash`` on the fork with optional field overrides.

        Raises:
            ValidationError: malformed hash
            ReplayError: the transaction is unknown to the fork, an override
                cannot be encoded, or submission failed without a receipt
        """
        require_tx_hash(tx_hash)
        if self._connected_block is None:
            await self.connect()

        try:
            original = await self._w3.eth.get_transaction(tx_hash)
        except Web3TransactionNotFound as exc:
            raise ReplayError(f"Transaction {tx_hash} is not visible on the fork", cause=exc) from exc

        base = self.reconstruct(original)
        tx_params, applied = self.apply_overrides(base, overrides or {})
        tx_params["from"] = self.sender
        gas_limit = to_int(tx_params.get("gas"))

        start = time.monotonic()
        try:
            sent_hash = await self._w3.eth.send_transaction(tx_params)
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                sent_hash, timeout=self._settings.replay_timeout
            )
        except TimeExhausted as exc:
            raise ReplayError(
                f"Replay was not mined within {self._settings.replay_timeout:.0f}s", cause=exc
            ) from exc
        except Exception as exc:
            receipt = getattr(exc, "receipt", None)
            if receipt is None:
                raise ReplayError(f"Replay submission failed: {exc}", cause=exc) from exc
            logger.info("Replay rejected with a receipt; treating as reverted", extra={"tx_hash": tx_hash})
            return self._normalize(
                receipt,
                ReplayStatus.FAILED,
                gas_limit,
                applied,
                revert_reason=reason_from_exception(exc),
                error=str(exc),
            )

        if receipt.get("status") == 1:
            status, revert_reason = ReplayStatus.SUCCESS, None
        else:
            status = ReplayStatus.FAILED
            revert_reason = await self._probe_revert_reason(tx_params, receipt)

        outcome = self._normalize(receipt, status, gas_limit, applied, revert_reason=revert_reason)
        logger.info(
            "Replay %s, gas used %d",
            outcome.status.value, outcome.gas_used,
            extra={"tx_hash": tx_hash, "duration_ms": round((time.monotonic() - start) * 1000)},
        )
        return outcome

    @staticmethod
    def reconstruct(original: Any) -> dict[str, Any]:
        """Extract the replayable fields of a fork-side transaction."""
        tx: dict[str, Any] = {
            "value": to_int(original.get("value")),
            "data": to_hex(original.get("input")) or "0x",
            "gas": to_int(original.get("gas")),
        }
        if original.get("to"):
            tx["to"] = original["to"]
        if original.get("gasPrice") is not None:
            tx["gasPrice"] = to_int(original.get("gasPrice"))
        return tx

    @staticmethod
    def apply_overrides(
        base: dict[str, Any],
        overrides: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Merge overrides over the reconstructed transaction.

        Returns the merged parameters and the overrides actually applied.
        ``from`` and ``nonce`` are dropped; unknown fields are rejected.

        Malformed numeric values raise ``ReplayError`` here, before anything
        is sent to the fork, rather than surfacing later as a node-side
        encoding error at submission. Either way they never become zero.
        """
        merged = dict(base)
        applied: dict[str, Any] = {}

        for key, raw in overrides.items():
            field = FIELD_ALIASES.get(key, key)
            if field in PROTECTED_FIELDS:
                logger.warning("Ignoring override of %r; the replay account controls it", key)
                continue
            if field not in OVERRIDABLE_FIELDS:
                raise ReplayError(f"Unsupported override field: {key!r}")

            if field in NUMERIC_FIELDS:
                value = coerce_quantity(field, raw)
            elif field == "to":
                if raw is not None and not is_address(raw):
                    raise ReplayError(f"Override to={raw!r} is not a 20-byte hex address")
                value = raw
            else:
                if not isinstance(raw, str) or not _HEX_DATA_RE.match(raw):
                    raise ReplayError(f"Override data={raw!r} is not 0x-prefixed hex bytes")
                value = raw

            if value is None:
                merged.pop(field, None)
            else:
                merged[field] = value
            applied[field] = value

        # Legacy and EIP-1559 fee fields are mutually exclusive.
        if "maxFeePerGas" in applied or "maxPriorityFeePerGas" in applied:
            merged.pop("gasPrice", None)
        elif "gasPrice" in applied:
            merged.pop("maxFeePerGas", None)
            merged.pop("maxPriorityFeePerGas", None)

        return merged, applied

    async def _probe_revert_reason(self, tx_params: dict[str, Any], receipt: Any) -> str:
        """Re-run the failed call against the parent block to recover its reason."""
        block_number = receipt.get("blockNumber")
        block_identifier = block_number - 1 if block_number else "latest"
        try:
            await self._w3.eth.call(dict(tx_params), block_identifier=block_identifier)
        except ContractLogicError as exc:
            return reason_from_exception(exc) or DEFAULT_REVERT_REASON
        except Exception as exc:
            logger.debug("Revert reason probe failed: %s", exc)
        return DEFAULT_REVERT_REASON

    @staticmethod
    def _normalize(
        receipt: Any,
        status: ReplayStatus,
        gas_limit: int,
        applied: dict[str, Any],
        revert_reason: str | None = None,
        error: str | None = None,
    ) -> ReplayOutcome:
        failed = status == ReplayStatus.FAILED
        return ReplayOutcome(
            status=status,
            gas_used=to_int(receipt.get("gasUsed")),
            gas_limit=gas_limit,
            transaction_hash=to_hex(receipt.get("transactionHash")),
            block_number=receipt.get("blockNumber"),
            logs=[normalize_log(log) for log in receipt.get("logs") or []],
            revert_reason=(revert_reason or DEFAULT_REVERT_REASON) if failed else None,
            error=error,
            modifications=dict(applied),
        )

    # ── Inspection helpers ───────────────────────────────────────────────

    async def get_account_state(self, address: str, block_tag: Any = "latest") -> AccountSnapshot:
        if not is_address(address):
            raise ValidationError(f"Invalid address: {address}")
        return await StateDiffEngine(self._w3).snapshot(address, block_tag)

    async def static_call(self, call: dict[str, Any], block_identifier: Any = "latest") -> str:
        """Run ``eth_call`` against the fork; ``data`` must be 0x-prefixed."""
        data = call.get("data", "0x")
        if not isinstance(data, str) or not _HEX_DATA_RE.match(data):
            raise ValidationError("call data must be 0x-prefixed hex bytes")
        result = await self._w3.eth.call(call, block_identifier=block_identifier)
        return to_hex(result)

    async def get_current_block(self) -> Any:
        return await self._w3.eth.get_block("latest")
