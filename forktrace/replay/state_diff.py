"""Account-level state diff between two block heights on the fork."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

from web3 import AsyncWeb3, Web3

from forktrace.core.errors import ValidationError
from forktrace.core.types import NO_CODE_HASH, AccountDiff, AccountSnapshot
from forktrace.core.validators import is_address

logger = logging.getLogger(__name__)

WEI_PER_ETHER = 10**18


def code_hash_of(code: bytes) -> str:
    """keccak-256 of deployed code, or ``NO_CODE_HASH`` for an empty account."""
    if not code:
        return NO_CODE_HASH
    return "0x" + bytes(Web3.keccak(bytes(code))).hex()


def unique_addresses(addresses: Iterable[str | None]) -> list[str]:
    """Drop None and case-insensitive duplicates, keeping first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for address in addresses:
        if not address:
            continue
        key = address.lower()
        if key in seen:
            continue
        if not is_address(address):
            raise ValidationError(f"Invalid address: {address}")
        seen.add(key)
        result.append(address)
    return result


def format_wei(amount: int) -> str:
    """Signed wei amount as ETH with six decimals, e.g. ``-0.010000 ETH``."""
    sign = "-" if amount < 0 else "+"
    whole, frac = divmod(abs(amount), WEI_PER_ETHER)
    return f"{sign}{whole}.{frac * 10**6 // WEI_PER_ETHER:06d} ETH"


class StateDiffEngine:
    """Capture balance, nonce and code for a fixed address set and diff them.

    Only the addresses passed in are inspected; accounts touched incidentally
    by the transaction (token holders, pools, etc.) are not discovered.
    """

    def __init__(self, w3: AsyncWeb3) -> None:
        self._w3 = w3

    async def snapshot(self, address: str, block_tag: Any = "latest") -> AccountSnapshot:
        """Fetch balance, nonce and code of one address concurrently."""
        checksum = Web3.to_checksum_address(address)
        balance, nonce, code = await asyncio.gather(
            self._w3.eth.get_balance(checksum, block_identifier=block_tag),
            self._w3.eth.get_transaction_count(checksum, block_identifier=block_tag),
            self._w3.eth.get_code(checksum, block_identifier=block_tag),
        )
        return AccountSnapshot(
            address=address,
            balance=int(balance),
            nonce=int(nonce),
            code_hash=code_hash_of(code),
            code_size=len(code or b""),
        )

    async def capture_state(
        self,
        block_tag: Any,
        addresses: Iterable[str | None],
    ) -> dict[str, AccountSnapshot]:
        """Snapshot every address at ``block_tag``, keyed by the given address."""
        targets = unique_addresses(addresses)
        snapshots = await asyncio.gather(*(self.snapshot(a, block_tag) for a in targets))
        return dict(zip(targets, snapshots))

    async def diff(
        self,
        from_tag: Any,
        to_tag: Any,
        addresses: Iterable[str | None],
    ) -> dict[str, AccountDiff]:
        """Diff the same address set between two heights."""
        targets = unique_addresses(addresses)
        before, after = await asyncio.gather(
            self.capture_state(from_tag, targets),
            self.capture_state(to_tag, targets),
        )
        diffs = {addr: AccountDiff.between(before[addr], after[addr]) for addr in targets}
        logger.debug(
            "State diff %s → %s over %d address(es): %s",
            from_tag, to_tag, len(diffs), self.summarize(diffs),
        )
        return diffs

    @staticmethod
    def summarize(diffs: dict[str, AccountDiff]) -> str:
        changed = {addr: d for addr, d in diffs.items() if not d.is_empty}
        if not changed:
            return "No state changes"
        parts = []
        for addr, d in changed.items():
            fields = []
            if d.balance_change:
                fields.append(f"balance {format_wei(d.balance_change)}")
            if d.nonce_change:
                fields.append(f"nonce {d.nonce_change:+d}")
            if d.code_changed:
                fields.append("code changed")
            parts.append(f"{addr[:10]}…: {', '.join(fields)}")
        return "; ".join(parts)
