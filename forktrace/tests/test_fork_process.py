"""Tests for forktrace.sandbox.fork_process.

Covers:
- Command line construction
- Readiness polling, timeout and early exit
- Port ownership
- Idempotent kill with SIGTERM → SIGKILL escalation
- Kill racing an in-flight start
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from forktrace.core.errors import ProcessStartError, ValidationError
from forktrace.core.types import ForkState
from forktrace.sandbox.fork_process import ForkProcessManager

from .factories import RPC_URL


# ── Fixtures ─────────────────────────────────────────────────────────────────


class FakeProcess:
    """Minimal ``asyncio.subprocess.Process`` double that records signals."""

    def __init__(self, pid: int = 4242, exit_on_terminate: bool = True):
        self.pid = pid
        self.returncode: int | None = None
        self.stdout = None
        self.stderr = None
        self.signals: list[str] = []
        self._exit_on_terminate = exit_on_terminate
        self._exited = asyncio.Event()

    def terminate(self) -> None:
        self.signals.append("TERM")
        if self._exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        self.exit(-9)

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


@pytest.fixture(autouse=True)
def release_ports():
    yield
    ForkProcessManager._claimed_ports.clear()


@pytest.fixture
def spawn():
    """Patch process creation; yields a factory that installs a FakeProcess."""
    with patch.object(ForkProcessManager, "_is_port_free", return_value=True), patch.object(
        ForkProcessManager, "_resolve_executable", return_value="/opt/foundry/anvil"
    ), patch(
        "forktrace.sandbox.fork_process.asyncio.create_subprocess_exec", new_callable=AsyncMock
    ) as create:

        def _install(proc: FakeProcess | None = None) -> FakeProcess:
            proc = proc or FakeProcess()
            create.return_value = proc
            return proc

        _install.create = create
        yield _install


def probe_sequence(*results: bool):
    return patch.object(ForkProcessManager, "_probe_rpc", new=AsyncMock(side_effect=list(results)))


# ── Command line ─────────────────────────────────────────────────────────────


class TestBuildCommand:
    def test_default_args(self, settings):
        manager = ForkProcessManager(settings, port=9545)
        cmd = manager.build_command("anvil", RPC_URL, 99)
        assert cmd[0] == "anvil"
        assert cmd[cmd.index("--fork-url") + 1] == RPC_URL
        assert cmd[cmd.index("--fork-block-number") + 1] == "99"
        assert cmd[cmd.index("--port") + 1] == "9545"
        assert cmd[cmd.index("--host") + 1] == "127.0.0.1"
        assert cmd[cmd.index("--accounts") + 1] == "10"
        assert cmd[cmd.index("--balance") + 1] == "10000"
        assert "--hardfork" not in cmd

    def test_latest_block_and_hardfork(self, settings):
        s = settings.model_copy(update={"anvil_hardfork": "london"})
        cmd = ForkProcessManager(s).build_command("anvil", RPC_URL, None, ["--no-mining"])
        assert "--fork-block-number" not in cmd
        assert cmd[cmd.index("--hardfork") + 1] == "london"
        assert cmd[-1] == "--no-mining"

    def test_invalid_port(self, settings):
        with pytest.raises(ValidationError):
            ForkProcessManager(settings, port=0)


# ── Start ────────────────────────────────────────────────────────────────────


class TestStart:
    @pytest.mark.asyncio
    async def test_start_waits_for_rpc(self, settings, spawn):
        proc = spawn()
        manager = ForkProcessManager(settings, port=9545)
        with probe_sequence(False, False, True) as probe:
            handle = await manager.start(RPC_URL, 99)
        assert probe.await_count == 3
        assert handle.pid == proc.pid
        assert handle.fork_block == 99
        assert handle.rpc_url == "http://127.0.0.1:9545"
        assert manager.state == ForkState.RUNNING
        assert manager.is_running()
        await manager.kill()

    @pytest.mark.asyncio
    async def test_invalid_fork_url(self, settings, spawn):
        with pytest.raises(ValidationError):
            await ForkProcessManager(settings).start("not-a-url", 1)
        spawn.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_timeout_kills_process(self, settings, spawn):
        proc = spawn()
        s = settings.model_copy(update={"anvil_start_timeout": 0.05})
        manager = ForkProcessManager(s, port=9545)
        with patch.object(ForkProcessManager, "_probe_rpc", new=AsyncMock(return_value=False)):
            with pytest.raises(ProcessStartError, match="did not respond"):
                await manager.start(RPC_URL, 99)
        assert proc.signals == ["TERM"]
        assert manager.state == ForkState.STOPPED
        assert 9545 not in ForkProcessManager._claimed_ports

    @pytest.mark.asyncio
    async def test_early_exit(self, settings, spawn):
        proc = spawn()
        proc.returncode = 1
        manager = ForkProcessManager(settings)
        with probe_sequence(True):
            with pytest.raises(ProcessStartError, match="exited with code 1"):
                await manager.start(RPC_URL, 99)
        assert proc.signals == []

    @pytest.mark.asyncio
    async def test_refuses_double_start(self, settings, spawn):
        spawn()
        manager = ForkProcessManager(settings)
        with probe_sequence(True):
            await manager.start(RPC_URL, 99)
        with pytest.raises(ProcessStartError, match="already running"):
            await manager.start(RPC_URL, 99)
        await manager.kill()

    @pytest.mark.asyncio
    async def test_port_owned_by_another_manager(self, settings, spawn):
        spawn()
        first = ForkProcessManager(settings, port=9545)
        second = ForkProcessManager(settings, port=9545)
        with probe_sequence(True):
            await first.start(RPC_URL, 99)
        with pytest.raises(ProcessStartError, match="already owned"):
            await second.start(RPC_URL, 99)
        await first.kill()

    @pytest.mark.asyncio
    async def test_port_bound_by_foreign_listener(self, settings, spawn):
        with patch.object(ForkProcessManager, "_is_port_free", return_value=False):
            with pytest.raises(ProcessStartError, match="already in use"):
                await ForkProcessManager(settings).start(RPC_URL, 99)
        spawn.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_spawn_failure_releases_port(self, settings, spawn):
        spawn.create.side_effect = FileNotFoundError("anvil")
        manager = ForkProcessManager(settings, port=9545)
        with pytest.raises(ProcessStartError, match="Failed to spawn"):
            await manager.start(RPC_URL, 99)
        assert manager.state == ForkState.STOPPED
        assert 9545 not in ForkProcessManager._claimed_ports

    def test_missing_executable(self, settings, tmp_path):
        s = settings.model_copy(update={"foundry_bin_path": str(tmp_path)})
        with patch("forktrace.sandbox.fork_process.shutil.which", return_value=None):
            with pytest.raises(ProcessStartError, match="not found"):
                ForkProcessManager(s)._resolve_executable()


# ── Kill ─────────────────────────────────────────────────────────────────────


class TestKill:
    @pytest.mark.asyncio
    async def test_kill_is_idempotent(self, settings, spawn):
        proc = spawn()
        manager = ForkProcessManager(settings)
        with probe_sequence(True):
            handle = await manager.start(RPC_URL, 99)
        await manager.kill()
        await manager.kill()
        assert proc.signals == ["TERM"]
        assert manager.state == ForkState.STOPPED
        assert handle.alive is False
        assert not manager.is_running()

    @pytest.mark.asyncio
    async def test_kill_before_start_is_noop(self, settings):
        manager = ForkProcessManager(settings)
        await manager.kill()
        assert manager.state == ForkState.STOPPED

    @pytest.mark.asyncio
    async def test_escalates_to_sigkill(self, settings, spawn):
        proc = spawn(FakeProcess(exit_on_terminate=False))
        manager = ForkProcessManager(settings)
        with probe_sequence(True):
            await manager.start(RPC_URL, 99)
        await manager.kill()
        await manager.kill()
        assert proc.signals == ["TERM", "KILL"]

    @pytest.mark.asyncio
    async def test_force_kill(self, settings, spawn):
        proc = spawn()
        manager = ForkProcessManager(settings)
        with probe_sequence(True):
            await manager.start(RPC_URL, 99)
        await manager.kill(force=True)
        assert proc.signals == ["KILL"]

    @pytest.mark.asyncio
    async def test_kill_during_probe_prevents_success(self, settings, spawn):
        proc = spawn()
        manager = ForkProcessManager(settings)

        async def probe(self, client):
            await asyncio.sleep(0.01)
            # Only "answer" once kill has been requested.
            return manager._kill_requested

        with patch.object(ForkProcessManager, "_probe_rpc", new=probe):
            task = asyncio.create_task(manager.start(RPC_URL, 99))
            await asyncio.sleep(0.03)
            await manager.kill()
            with pytest.raises(ProcessStartError, match="kill requested"):
                await task

        assert manager.state == ForkState.STOPPED
        assert proc.signals == ["TERM"]

    @pytest.mark.asyncio
    async def test_kill_during_spawn_reaps_process(self, settings, spawn):
        proc = FakeProcess()
        spawned = asyncio.Event()

        async def create(*args, **kwargs):
            await spawned.wait()
            return proc

        spawn.create.side_effect = create
        manager = ForkProcessManager(settings, port=9545)
        task = asyncio.create_task(manager.start(RPC_URL, 99))
        await asyncio.sleep(0)
        assert manager.state == ForkState.STARTING

        killer = asyncio.create_task(manager.kill())
        await asyncio.sleep(0)
        assert not killer.done()

        spawned.set()
        await killer
        assert proc.signals == ["TERM"]
        assert manager.state == ForkState.STOPPED
        assert 9545 not in ForkProcessManager._claimed_ports
        with pytest.raises(ProcessStartError, match="kill requested"):
            await task

    @pytest.mark.asyncio
    async def test_kill_during_failed_spawn(self, settings, spawn):
        spawned = asyncio.Event()

        async def create(*args, **kwargs):
            await spawned.wait()
            raise FileNotFoundError("anvil")

        spawn.create.side_effect = create
        manager = ForkProcessManager(settings, port=9545)
        task = asyncio.create_task(manager.start(RPC_URL, 99))
        await asyncio.sleep(0)

        killer = asyncio.create_task(manager.kill())
        await asyncio.sleep(0)
        spawned.set()
        await killer
        assert manager.state == ForkState.STOPPED
        with pytest.raises(ProcessStartError, match="Failed to spawn"):
            await task

    @pytest.mark.asyncio
    async def test_context_manager_kills(self, settings, spawn):
        proc = spawn()
        with probe_sequence(True):
            async with ForkProcessManager(settings) as manager:
                await manager.start(RPC_URL, 99)
        assert proc.signals == ["TERM"]


# ── Liveness probe ───────────────────────────────────────────────────────────


class TestProbe:
    @pytest.mark.asyncio
    async def test_probe_ok(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert b"eth_blockNumber" in request.content
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x63"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await ForkProcessManager(settings)._probe_rpc(client) is True

    @pytest.mark.asyncio
    async def test_probe_connection_refused(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await ForkProcessManager(settings)._probe_rpc(client) is False
