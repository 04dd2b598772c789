"""Payload builders and in-memory fakes shared by the tests."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

TX_HASH = "0x" + "ab" * 32
SENDER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x2222222222222222222222222222222222222222"
API_KEY = "ABCDEFGHIJKLMNOPQRSTUVWXYZ1234"  # 30 alphanumerics
RPC_URL = "https://rpc.example.org/v2/secret"


# ── Indexer payloads ─────────────────────────────────────────────────────────


def rpc_transaction(block_number: int = 100, **overrides: Any) -> dict[str, Any]:
    payload = {
        "hash": TX_HASH,
        "from": SENDER,
        "to": RECIPIENT,
        "value": hex(10**18),
        "input": "0x",
        "gas": hex(21_000),
        "gasPrice": hex(30 * 10**9),
        "nonce": "0x5",
        "blockNumber": hex(block_number),
    }
    payload.update(overrides)
    return payload


def rpc_receipt(block_number: int = 100, status: str = "0x1") -> dict[str, Any]:
    return {
        "transactionHash": TX_HASH,
        "blockNumber": hex(block_number),
        "gasUsed": hex(21_000),
        "status": status,
        "logs": [],
    }


def rpc_block(block_number: int = 100) -> dict[str, Any]:
    return {"number": hex(block_number), "timestamp": "0x6553f100", "transactions": [TX_HASH]}


# ── Fake web3 ────────────────────────────────────────────────────────────────


async def _resolve(value: Any) -> Any:
    if isinstance(value, BaseException):
        raise value
    return value


class FakeEth:
    """In-memory stand-in for ``AsyncWeb3.eth``.

    Account state is keyed by ``(lowercase address, block)``; unknown entries
    read as an empty account.
    """

    def __init__(self) -> None:
        self.block_number_value: Any = 99
        self.chain_id_value: Any = 1
        self.accounts: dict[tuple[str, Any], tuple[int, int, bytes]] = {}
        self.get_transaction = AsyncMock()
        self.send_transaction = AsyncMock(return_value=bytes.fromhex("cd" * 32))
        self.wait_for_transaction_receipt = AsyncMock()
        self.call = AsyncMock(return_value=b"")
        self.get_block = AsyncMock(return_value={"number": 100})
        self.state_calls: list[tuple[str, str, Any]] = []

    @property
    def block_number(self):
        return _resolve(self.block_number_value)

    @property
    def chain_id(self):
        return _resolve(self.chain_id_value)

    def set_account(self, address: str, block: Any, balance: int, nonce: int = 0, code: bytes = b"") -> None:
        self.accounts[(address.lower(), block)] = (balance, nonce, code)

    def _account(self, address: str, block: Any) -> tuple[int, int, bytes]:
        return self.accounts.get((address.lower(), block), (0, 0, b""))

    async def get_balance(self, address, block_identifier="latest"):
        self.state_calls.append(("balance", address, block_identifier))
        return self._account(address, block_identifier)[0]

    async def get_transaction_count(self, address, block_identifier="latest"):
        self.state_calls.append(("nonce", address, block_identifier))
        return self._account(address, block_identifier)[1]

    async def get_code(self, address, block_identifier="latest"):
        self.state_calls.append(("code", address, block_identifier))
        return self._account(address, block_identifier)[2]


class FakeWeb3:
    def __init__(self) -> None:
        self.eth = FakeEth()
        self.manager = MagicMock()
        self.manager.coro_request = AsyncMock(return_value="0xdeadbeef")
        self.provider = MagicMock()
        self.provider.disconnect = AsyncMock()


