"""Shared value types used across the engine.

Integers are plain Python ints (arbitrary precision, signed) in memory and
decimal strings in every ``to_dict()`` so balances survive JSON round trips.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

# Code hash recorded for accounts without deployed code. Never a valid digest.
NO_CODE_HASH = "0x"


def to_int(value: Any, default: int = 0) -> int:
    """Convert a JSON-RPC quantity (0x-hex string, decimal string or int) to int."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower().startswith("0x"):
        return int(text, 16) if len(text) > 2 else 0
    return int(text)


# ── Enums ────────────────────────────────────────────────────────────────────


class ForkState(str, enum.Enum):
    """Lifecycle of the forked-chain process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ReplayStatus(str, enum.Enum):
    """Outcome of a replayed transaction."""

    SUCCESS = "success"
    FAILED = "failed"


# ── Indexed data ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TransactionRecord:
    """Canonical description of a mined transaction."""

    hash: str
    sender: str
    recipient: str | None
    value: int
    input: str
    gas_limit: int
    gas_price: int
    nonce: int
    block_number: int

    @classmethod
    def from_rpc(cls, payload: dict[str, Any]) -> TransactionRecord:
        """Build a record from an ``eth_getTransactionByHash`` result."""
        return cls(
            hash=payload.get("hash", ""),
            sender=payload.get("from", ""),
            recipient=payload.get("to") or None,
            value=to_int(payload.get("value")),
            input=payload.get("input") or "0x",
            gas_limit=to_int(payload.get("gas")),
            gas_price=to_int(payload.get("gasPrice")),
            nonce=to_int(payload.get("nonce")),
            block_number=to_int(payload.get("blockNumber")),
        )

    @property
    def is_contract_creation(self) -> bool:
        return self.recipient is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "from": self.sender,
            "to": self.recipient,
            "value": str(self.value),
            "input": self.input,
            "gas_limit": str(self.gas_limit),
            "gas_price": str(self.gas_price),
            "nonce": str(self.nonce),
            "block_number": self.block_number,
        }


@dataclass(frozen=True)
class TransactionBundle:
    """Transaction, receipt and block as returned by the indexing API."""

    transaction: TransactionRecord
    receipt: dict[str, Any] = field(default_factory=dict)
    block: dict[str, Any] = field(default_factory=dict)

    @property
    def block_number(self) -> int:
        return self.transaction.block_number

    @property
    def fork_block(self) -> int:
        """Height to fork at so the transaction's own block is replayed on top."""
        return self.transaction.block_number - 1

    @property
    def participants(self) -> list[str]:
        """Sender and recipient, without duplicates or the creation ``None``."""
        addresses: list[str] = []
        for addr in (self.transaction.sender, self.transaction.recipient):
            if addr and addr.lower() not in {a.lower() for a in addresses}:
                addresses.append(addr)
        return addresses


# ── Fork process ─────────────────────────────────────────────────────────────


@dataclass
class ForkHandle:
    """One running forked-chain process. Owned by ``ForkProcessManager``."""

    port: int
    host: str
    pid: int | None
    fork_block: int | None
    alive: bool = True

    @property
    def rpc_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "host": self.host,
            "pid": self.pid,
            "fork_block": self.fork_block,
            "alive": self.alive,
            "rpc_url": self.rpc_url,
        }


# ── Replay ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ReplayOutcome:
    """Normalized result of re-executing a transaction on the fork."""

    status: ReplayStatus
    gas_used: int
    gas_limit: int
    transaction_hash: str
    block_number: int | None
    logs: list[dict[str, Any]] = field(default_factory=list)
    revert_reason: str | None = None
    error: str | None = None
    modifications: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == ReplayStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "gas_used": str(self.gas_used),
            "gas_limit": str(self.gas_limit),
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "logs": self.logs,
            "revert_reason": self.revert_reason,
            "error": self.error,
            "modifications": {
                k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v
                for k, v in self.modifications.items()
            },
        }


# ── State ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AccountSnapshot:
    """Balance, nonce and code fingerprint of one address at one height."""

    address: str
    balance: int
    nonce: int
    code_hash: str = NO_CODE_HASH
    code_size: int = 0

    @property
    def is_contract(self) -> bool:
        return self.code_hash != NO_CODE_HASH

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "balance": str(self.balance),
            "nonce": str(self.nonce),
            "code_hash": self.code_hash,
            "code_size": str(self.code_size),
            "is_contract": self.is_contract,
        }


@dataclass(frozen=True)
class AccountDiff:
    """Per-address delta between two snapshots of the same account."""

    before: AccountSnapshot
    after: AccountSnapshot
    balance_change: int
    nonce_change: int
    code_changed: bool

    @classmethod
    def between(cls, before: AccountSnapshot, after: AccountSnapshot) -> AccountDiff:
        return cls(
            before=before,
            after=after,
            balance_change=after.balance - before.balance,
            nonce_change=after.nonce - before.nonce,
            code_changed=after.code_hash != before.code_hash,
        )

    @property
    def is_empty(self) -> bool:
        return self.balance_change == 0 and self.nonce_change == 0 and not self.code_changed

    def to_dict(self) -> dict[str, Any]:
        return {
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "balance_change": str(self.balance_change),
            "nonce_change": str(self.nonce_change),
            "code_changed": self.code_changed,
        }
