"""Replay orchestrator — fetch, fork, replay, diff, then the optional extras."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from web3 import AsyncWeb3

from forktrace.analysis.explainer import AIExplainer, AnalysisResult, AnalysisUnavailable
from forktrace.core.config import Settings, get_settings
from forktrace.core.logging import replay_context
from forktrace.core.types import AccountDiff, ForkHandle, ReplayOutcome, TransactionBundle
from forktrace.core.validators import (
    parse_export_formats,
    require_api_key,
    require_http_url,
    require_port,
    require_tx_hash,
)
from forktrace.ingestion.indexer_client import IndexingClient
from forktrace.replay.executor import ReplayExecutor, close_web3, make_web3
from forktrace.replay.state_diff import StateDiffEngine
from forktrace.reports.generator import Exporter
from forktrace.sandbox.fork_process import ForkProcessManager
from forktrace.state.manager import StateManager

logger = logging.getLogger(__name__)


@dataclass
class ReplayRequest:
    """Everything one replay run needs besides settings."""

    tx_hash: str
    fork_rpc_url: str | None = None
    port: int | None = None
    api_key: str | None = None
    overrides: dict[str, Any] = field(default_factory=dict)
    ai: bool = False
    ai_gas: bool = False
    export_formats: list[str] = field(default_factory=list)
    output_dir: str | None = None
    save_state: str | None = None
    state_dir: str | None = None


@dataclass
class ReplayReport:
    """Result of one orchestrated replay."""

    tx_hash: str
    bundle: TransactionBundle
    fork: ForkHandle
    outcome: ReplayOutcome
    state_diff: dict[str, AccountDiff]
    analysis: AnalysisResult | None = None
    gas_analysis: AnalysisResult | None = None
    saved_state: Path | None = None
    exported: dict[str, Path] = field(default_factory=dict)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        analysis = self.analysis.to_dict() if self.analysis else None
        if analysis is not None and self.gas_analysis is not None:
            analysis["gas_analysis"] = self.gas_analysis.to_dict()["analysis"]
        return {
            "tx_hash": self.tx_hash,
            "transaction": self.bundle.transaction.to_dict(),
            "fork": self.fork.to_dict(),
            "replay": self.outcome.to_dict(),
            "state_diff": {addr: d.to_dict() for addr, d in self.state_diff.items()},
            "analysis": analysis,
            "saved_state": str(self.saved_state) if self.saved_state else None,
            "exported": {fmt: str(path) for fmt, path in self.exported.items()},
            "duration_ms": self.duration_ms,
        }


class ReplayOrchestrator:
    """Coordinates one replay from hash to report.

    Pipeline:
    1. Validate inputs (no I/O on failure)
    2. Fetch transaction, receipt and block from the indexing API
    3. Start a fork at ``block_number - 1``
    4. Connect and replay with overrides
    5. Diff sender and recipient over ``[fork_block, fork_block + 1]``
    6. Optional AI analysis, state snapshot and export
    7. Close the fork connection and kill the fork exactly once, whatever happened
    """

    def __init__(
        self,
        settings: Settings | None = None,
        indexer: IndexingClient | None = None,
        explainer: AIExplainer | None = None,
        process_factory: Callable[..., ForkProcessManager] = ForkProcessManager,
        web3_factory: Callable[[str], AsyncWeb3] = make_web3,
    ) -> None:
        self._settings = settings or get_settings()
        self._indexer = indexer
        self._explainer = explainer
        self._process_factory = process_factory
        self._web3_factory = web3_factory

    async def run(self, request: ReplayRequest) -> ReplayReport:
        """Run the full replay pipeline.

        Errors from any step propagate unchanged after the fork is killed.
        """
        s = self._settings
        tx_hash = require_tx_hash(request.tx_hash)
        api_key = require_api_key(request.api_key or s.etherscan_api_key)
        fork_url = require_http_url(request.fork_rpc_url or s.fork_rpc_url, "fork RPC URL")
        port = require_port(request.port if request.port is not None else s.anvil_port)
        formats = parse_export_formats(request.export_formats) if request.export_formats else []

        with replay_context(tx_hash=tx_hash, port=port):
            return await self._execute(request, tx_hash, api_key, fork_url, port, formats)

    async def _execute(
        self,
        request: ReplayRequest,
        tx_hash: str,
        api_key: str,
        fork_url: str,
        port: int,
        formats: list[str],
    ) -> ReplayReport:
        s = self._settings
        start = time.monotonic()
        # Step 1: Fetch
        bundle = await self._fetch(tx_hash, api_key)
        fork_block = bundle.fork_block

        manager = self._process_factory(s, port=port)
        w3: AsyncWeb3 | None = None
        try:
            # Step 2: Fork
            handle = await manager.start(fork_url, fork_block)
            w3 = self._web3_factory(handle.rpc_url)

            # Step 3: Replay
            executor = ReplayExecutor(w3, s)
            await executor.connect()
            outcome = await executor.replay(tx_hash, request.overrides or None)

            # Step 4: Diff
            state_diff = await StateDiffEngine(w3).diff(
                fork_block, fork_block + 1, bundle.participants
            )

            report = ReplayReport(
                tx_hash=tx_hash,
                bundle=bundle,
                fork=handle,
                outcome=outcome,
                state_diff=state_diff,
            )

            # Step 5: Collaborators
            if request.ai:
                report.analysis, report.gas_analysis = await self._analyze(
                    outcome, state_diff, request.ai_gas
                )

            if request.save_state:
                state_manager = StateManager(w3, s, state_dir=request.state_dir)
                report.saved_state = await state_manager.save_state(request.save_state)

            report.duration_ms = round((time.monotonic() - start) * 1000)

            if formats:
                exporter = Exporter(request.output_dir or s.export_dir)
                report.exported = exporter.export(report.to_dict(), formats)
        finally:
            if w3 is not None:
                await self._safe_close(w3)
            await self._safe_kill(manager)

        logger.info(
            "Replay finished: %s, gas %d",
            outcome.status.value, outcome.gas_used,
            extra={"tx_hash": tx_hash, "duration_ms": report.duration_ms},
        )
        return report

    async def _fetch(self, tx_hash: str, api_key: str) -> TransactionBundle:
        if self._indexer is not None:
            return await self._indexer.fetch_transaction_bundle(tx_hash)
        async with IndexingClient(api_key=api_key, settings=self._settings) as indexer:
            return await indexer.fetch_transaction_bundle(tx_hash)

    async def _analyze(
        self,
        outcome: ReplayOutcome,
        state_diff: dict[str, AccountDiff],
        include_gas: bool,
    ) -> tuple[AnalysisResult, AnalysisResult | None]:
        """AI analysis never fails the run."""
        explainer = self._explainer or AIExplainer(self._settings)
        try:
            if include_gas:
                return tuple(await asyncio.gather(
                    explainer.analyze_trace(outcome, state_diff),
                    explainer.analyze_gas_usage(outcome),
                ))
            return await explainer.analyze_trace(outcome, state_diff), None
        except Exception as e:
            logger.warning("AI analysis failed: %s", e)
            return AnalysisUnavailable(
                reason=f"AI analysis failed: {e}",
                fallback=AIExplainer.fallback_analysis(outcome),
            ), None
        finally:
            if self._explainer is None:
                await explainer.close()

    @staticmethod
    async def _safe_kill(manager: ForkProcessManager) -> None:
        try:
            await manager.kill()
        except Exception as e:
            logger.error("Failed to stop fork on port %s: %s", manager.port, e)

    @staticmethod
    async def _safe_close(w3: AsyncWeb3) -> None:
        try:
            await close_web3(w3)
        except Exception as e:
            logger.warning("Failed to close fork connection: %s", e)
