"""Shared fixtures for the ForkTrace test suite."""

from __future__ import annotations

import pytest

from forktrace.core.config import Settings
from forktrace.core.types import AccountDiff, AccountSnapshot, ReplayOutcome, ReplayStatus

from .factories import API_KEY, RPC_URL, SENDER, FakeWeb3


# ── Settings ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Fast, isolated settings: tiny delays and temp directories."""
    return Settings(
        _env_file=None,
        etherscan_api_key=API_KEY,
        etherscan_api_url="https://indexer.test/api",
        etherscan_retry_base_delay=0.1,
        fork_rpc_url=RPC_URL,
        anvil_start_timeout=1.0,
        anvil_probe_interval=0.01,
        anvil_kill_timeout=0.05,
        replay_timeout=1.0,
        llm_retry_base_delay=0.0,
        state_dir=str(tmp_path / "states"),
        export_dir=str(tmp_path / "exports"),
    )


@pytest.fixture
def fake_w3() -> FakeWeb3:
    return FakeWeb3()


# ── Core types ───────────────────────────────────────────────────────────────


@pytest.fixture
def success_outcome() -> ReplayOutcome:
    return ReplayOutcome(
        status=ReplayStatus.SUCCESS,
        gas_used=21_000,
        gas_limit=50_000,
        transaction_hash="0x" + "cd" * 32,
        block_number=100,
    )


@pytest.fixture
def failed_outcome() -> ReplayOutcome:
    return ReplayOutcome(
        status=ReplayStatus.FAILED,
        gas_used=30_000,
        gas_limit=50_000,
        transaction_hash="0x" + "cd" * 32,
        block_number=100,
        revert_reason="Insufficient balance",
        modifications={"value": 0},
    )


@pytest.fixture
def sample_diff() -> dict[str, AccountDiff]:
    before = AccountSnapshot(address=SENDER, balance=5 * 10**18, nonce=5)
    after = AccountSnapshot(address=SENDER, balance=4 * 10**18, nonce=6)
    return {SENDER: AccountDiff.between(before, after)}
