"""Core configuration for ForkTrace."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Anvil's first deterministic dev account (mnemonic "test test ... junk").
ANVIL_DEFAULT_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FORKTRACE_",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "ForkTrace"
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    debug: bool = False

    # ── Indexing service (Etherscan proxy API) ───────────────────────────
    chain: str = "ethereum"
    etherscan_api_key: str = ""
    etherscan_api_url: str = ""  # empty → use the chain registry URL
    etherscan_request_timeout: float = 15.0
    etherscan_max_retries: int = 3
    etherscan_retry_base_delay: float = 0.1

    # ── Fork (Anvil) ─────────────────────────────────────────────────────
    fork_rpc_url: str = Field(
        default="",
        validation_alias=AliasChoices("FORKTRACE_FORK_RPC_URL", "MAINNET_RPC_URL"),
    )
    anvil_host: str = "127.0.0.1"
    anvil_port: int = 8545
    foundry_bin_path: str = "/usr/local/bin"
    anvil_accounts: int = 10
    anvil_balance: int = 10_000
    anvil_hardfork: str | None = None
    anvil_start_timeout: float = 10.0
    anvil_probe_interval: float = 0.5
    anvil_probe_timeout: float = 1.0
    anvil_kill_timeout: float = 3.0

    # ── Replay ───────────────────────────────────────────────────────────
    replay_private_key: str = ANVIL_DEFAULT_PRIVATE_KEY
    replay_timeout: float = 30.0

    # ── AI analysis ──────────────────────────────────────────────────────
    ai_provider: Literal["ollama", "anthropic", "openai"] = "ollama"
    ai_endpoint: str = "http://localhost:11434"
    ai_model: str = "llama3.2"
    ai_timeout: float = 120.0
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    llm_temperature: float = 0.3
    llm_max_tokens: int = 4096
    llm_max_retries: int = 2
    llm_retry_base_delay: float = 1.0

    # ── State snapshots ──────────────────────────────────────────────────
    state_dir: str = "./anvil-states"
    max_saved_states: int = 10

    # ── Export ───────────────────────────────────────────────────────────
    export_dir: str = "./exports"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
