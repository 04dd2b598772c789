"""Tests for forktrace.replay.state_diff."""

from __future__ import annotations

import pytest
from web3 import Web3

from forktrace.core.errors import ValidationError
from forktrace.core.types import NO_CODE_HASH
from forktrace.replay.state_diff import (
    StateDiffEngine,
    code_hash_of,
    format_wei,
    unique_addresses,
)

from .factories import RECIPIENT, SENDER


class TestHelpers:
    def test_code_hash_empty(self):
        assert code_hash_of(b"") == NO_CODE_HASH

    def test_code_hash_is_keccak(self):
        code = bytes.fromhex("6080604052")
        assert code_hash_of(code) == "0x" + bytes(Web3.keccak(code)).hex()
        assert len(code_hash_of(code)) == 66

    def test_unique_addresses(self):
        assert unique_addresses([SENDER, None, SENDER.upper().replace("0X", "0x"), RECIPIENT]) == [
            SENDER,
            RECIPIENT,
        ]

    def test_unique_addresses_rejects_garbage(self):
        with pytest.raises(ValidationError):
            unique_addresses(["0x1234"])

    @pytest.mark.parametrize(
        "wei,expected",
        [
            (10**18, "+1.000000 ETH"),
            (-(10**16), "-0.010000 ETH"),
            (1, "+0.000000 ETH"),
            (2**256, f"+{2**256 // 10**18}.{(2**256 % 10**18) * 10**6 // 10**18:06d} ETH"),
        ],
    )
    def test_format_wei(self, wei, expected):
        assert format_wei(wei) == expected


class TestCaptureState:
    @pytest.mark.asyncio
    async def test_capture_keys_by_address(self, fake_w3):
        fake_w3.eth.set_account(SENDER, 99, balance=5, nonce=1)
        fake_w3.eth.set_account(RECIPIENT, 99, balance=0, nonce=1, code=b"\x60\x80")

        state = await StateDiffEngine(fake_w3).capture_state(99, [SENDER, RECIPIENT, None])

        assert list(state) == [SENDER, RECIPIENT]
        assert state[SENDER].balance == 5
        assert not state[SENDER].is_contract
        assert state[RECIPIENT].is_contract
        assert state[RECIPIENT].code_size == 2

    @pytest.mark.asyncio
    async def test_capture_uses_checksum_addresses(self, fake_w3):
        await StateDiffEngine(fake_w3).capture_state("latest", [SENDER])
        queried = {address for _, address, _ in fake_w3.eth.state_calls}
        assert queried == {Web3.to_checksum_address(SENDER)}


class TestDiff:
    @pytest.mark.asyncio
    async def test_diff_sender_and_recipient(self, fake_w3):
        eth = fake_w3.eth
        eth.set_account(SENDER, 99, balance=5 * 10**18, nonce=5)
        eth.set_account(SENDER, 100, balance=4 * 10**18 - 21_000 * 10**9, nonce=6)
        eth.set_account(RECIPIENT, 99, balance=0)
        eth.set_account(RECIPIENT, 100, balance=10**18)

        diffs = await StateDiffEngine(fake_w3).diff(99, 100, [SENDER, RECIPIENT])

        assert diffs[SENDER].balance_change == -(10**18) - 21_000 * 10**9
        assert diffs[SENDER].nonce_change == 1
        assert diffs[RECIPIENT].balance_change == 10**18
        assert diffs[RECIPIENT].nonce_change == 0
        assert not diffs[RECIPIENT].code_changed
        blocks = {block for _, _, block in eth.state_calls}
        assert blocks == {99, 100}

    @pytest.mark.asyncio
    async def test_diff_beyond_64_bits(self, fake_w3):
        fake_w3.eth.set_account(SENDER, 1, balance=2**200)
        fake_w3.eth.set_account(SENDER, 2, balance=3)
        diffs = await StateDiffEngine(fake_w3).diff(1, 2, [SENDER])
        assert diffs[SENDER].balance_change == 3 - 2**200

    @pytest.mark.asyncio
    async def test_contract_deployment_detected(self, fake_w3):
        fake_w3.eth.set_account(RECIPIENT, 2, balance=0, nonce=1, code=b"\x60\x80\x60\x40")
        diffs = await StateDiffEngine(fake_w3).diff(1, 2, [RECIPIENT])
        assert diffs[RECIPIENT].code_changed
        assert diffs[RECIPIENT].before.code_hash == NO_CODE_HASH


class TestSummarize:
    def test_no_changes(self):
        assert StateDiffEngine.summarize({}) == "No state changes"

    def test_summary_line(self, sample_diff):
        summary = StateDiffEngine.summarize(sample_diff)
        assert "balance -1.000000 ETH" in summary
        assert "nonce +1" in summary
