"""Anvil fork process manager — spawn, probe and reap a local forked chain."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import socket
import time
from pathlib import Path

import httpx

from forktrace.core.config import Settings, get_settings
from forktrace.core.errors import ProcessStartError
from forktrace.core.types import ForkHandle, ForkState
from forktrace.core.validators import require_http_url, require_port

logger = logging.getLogger(__name__)

_BLOCK_NUMBER_PROBE = {"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []}


class ForkProcessManager:
    """Own exactly one ``anvil`` process bound to one local port.

    Lifecycle: STOPPED → STARTING → RUNNING → STOPPING → STOPPED.

    Readiness is detected by polling ``eth_blockNumber`` rather than by
    matching process output. ``kill()`` is idempotent and may be called from
    any state, including while ``start()`` is still probing; the probe loop
    then aborts instead of reporting success.
    """

    # Ports claimed by live managers in this interpreter.
    _claimed_ports: set[int] = set()

    def __init__(
        self,
        settings: Settings | None = None,
        port: int | None = None,
        host: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.port = require_port(port if port is not None else self._settings.anvil_port)
        self.host = host or self._settings.anvil_host
        self._proc: asyncio.subprocess.Process | None = None
        self._handle: ForkHandle | None = None
        self._state = ForkState.STOPPED
        self._kill_requested = False
        self._kill_lock = asyncio.Lock()
        # Set whenever no spawn is in flight.
        self._spawned = asyncio.Event()
        self._spawned.set()
        self._log_tasks: list[asyncio.Task] = []

    async def __aenter__(self) -> ForkProcessManager:
        return self

    async def __aexit__(self, *args) -> None:
        await self.kill()

    @property
    def state(self) -> ForkState:
        return self._state

    @property
    def handle(self) -> ForkHandle | None:
        return self._handle

    @property
    def rpc_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def is_running(self) -> bool:
        return (
            self._state == ForkState.RUNNING
            and self._proc is not None
            and self._proc.returncode is None
        )

    def build_command(
        self,
        executable: str,
        fork_url: str,
        fork_block: int | None,
        extra_args: list[str] | None = None,
    ) -> list[str]:
        """Build the anvil command line."""
        s = self._settings
        cmd = [
            executable,
            "--fork-url", fork_url,
            "--port", str(self.port),
            "--host", self.host,
            "--accounts", str(s.anvil_accounts),
            "--balance", str(s.anvil_balance),
        ]
        if fork_block is not None:
            cmd.extend(["--fork-block-number", str(fork_block)])
        if s.anvil_hardfork:
            cmd.extend(["--hardfork", s.anvil_hardfork])
        if extra_args:
            cmd.extend(extra_args)
        return cmd

    # ── Start ────────────────────────────────────────────────────────────

    async def start(
        self,
        fork_url: str,
        fork_block: int | None = None,
        extra_args: list[str] | None = None,
    ) -> ForkHandle:
        """Spawn anvil and wait until its JSON-RPC endpoint answers.

        Raises:
            ProcessStartError: already started, port taken, executable
                missing, process died, kill requested, or no answer within
                ``anvil_start_timeout``. The process is reaped before raising.
        """
        if self._state != ForkState.STOPPED:
            raise ProcessStartError(f"Fork is already {self._state.value} on port {self.port}")
        require_http_url(fork_url, "fork RPC URL")

        if self.port in ForkProcessManager._claimed_ports:
            raise ProcessStartError(f"Port {self.port} is already owned by another fork")
        if not self._is_port_free():
            raise ProcessStartError(f"Port {self.port} is already in use")

        executable = self._resolve_executable()
        cmd = self.build_command(executable, fork_url, fork_block, extra_args)

        self._kill_requested = False
        self._state = ForkState.STARTING
        ForkProcessManager._claimed_ports.add(self.port)

        self._spawned.clear()
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._release_port()
            self._state = ForkState.STOPPED
            raise ProcessStartError(f"Failed to spawn anvil: {exc}", cause=exc) from exc
        finally:
            self._spawned.set()

        self._handle = ForkHandle(
            port=self.port, host=self.host, pid=self._proc.pid, fork_block=fork_block
        )
        self._log_tasks = [
            asyncio.create_task(self._drain(stream, name))
            for name, stream in (("stdout", self._proc.stdout), ("stderr", self._proc.stderr))
            if stream is not None
        ]
        logger.info(
            "Starting anvil (pid %s) forked at block %s",
            self._proc.pid, fork_block if fork_block is not None else "latest",
            extra={"port": self.port, "fork_block": fork_block},
        )

        try:
            await self._wait_until_ready()
        except ProcessStartError:
            await self.kill()
            raise

        self._state = ForkState.RUNNING
        return self._handle

    async def _wait_until_ready(self) -> None:
        """Poll ``eth_blockNumber`` until it answers, the deadline passes or kill wins."""
        s = self._settings
        start = time.monotonic()
        deadline = start + s.anvil_start_timeout
        probes = 0

        async with httpx.AsyncClient(timeout=s.anvil_probe_timeout) as client:
            while True:
                if self._kill_requested:
                    raise ProcessStartError("Fork start aborted: kill requested before anvil answered")
                if self._proc is None or self._proc.returncode is not None:
                    code = self._proc.returncode if self._proc else None
                    raise ProcessStartError(
                        f"anvil exited with code {code} before answering on port {self.port}"
                    )

                probes += 1
                ready = await self._probe_rpc(client)
                if self._kill_requested:
                    raise ProcessStartError("Fork start aborted: kill requested before anvil answered")
                if ready:
                    logger.info(
                        "Anvil responding after %d probe(s)",
                        probes,
                        extra={
                            "port": self.port,
                            "duration_ms": round((time.monotonic() - start) * 1000),
                        },
                    )
                    return

                if time.monotonic() >= deadline:
                    break
                await asyncio.sleep(s.anvil_probe_interval)

        raise ProcessStartError(
            f"Anvil did not respond on port {self.port} within {s.anvil_start_timeout:.1f}s"
        )

    async def _probe_rpc(self, client: httpx.AsyncClient) -> bool:
        try:
            response = await client.post(self.rpc_url, json=_BLOCK_NUMBER_PROBE)
        except httpx.HTTPError as exc:
            logger.debug("Liveness probe failed: %s", exc, extra={"port": self.port})
            return False
        return response.status_code == 200

    # ── Kill ─────────────────────────────────────────────────────────────

    async def kill(self, force: bool = False) -> None:
        """Terminate the process: SIGTERM, grace period, then SIGKILL.

        Safe to call repeatedly and from any state; calls after the first
        send no signal. A kill that lands while the process is still being
        spawned waits for the spawn to resolve, then reaps it.
        """
        self._kill_requested = True
        await self._spawned.wait()
        async with self._kill_lock:
            proc = self._proc
            if proc is None:
                return

            self._state = ForkState.STOPPING
            grace = self._settings.anvil_kill_timeout
            try:
                if proc.returncode is None:
                    if force:
                        self._send_kill(proc)
                    else:
                        self._send_terminate(proc)
                        try:
                            await asyncio.wait_for(proc.wait(), timeout=grace)
                        except asyncio.TimeoutError:
                            logger.warning(
                                "Anvil did not exit within %.1fs, sending SIGKILL", grace,
                                extra={"port": self.port},
                            )
                            self._send_kill(proc)
                    try:
                        await asyncio.wait_for(proc.wait(), timeout=grace)
                    except asyncio.TimeoutError:
                        logger.error(
                            "Anvil (pid %s) still running after SIGKILL", proc.pid,
                            extra={"port": self.port},
                        )
            finally:
                await self._stop_log_tasks()
                self._proc = None
                if self._handle is not None:
                    self._handle.alive = False
                self._release_port()
                self._state = ForkState.STOPPED
                logger.info("Anvil stopped", extra={"port": self.port})

    @staticmethod
    def _send_terminate(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.terminate()
        except ProcessLookupError:
            pass  # already exited

    @staticmethod
    def _send_kill(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass  # already exited

    # ── Helpers ──────────────────────────────────────────────────────────

    def _resolve_executable(self) -> str:
        candidate = Path(self._settings.foundry_bin_path) / "anvil"
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        found = shutil.which("anvil")
        if not found:
            raise ProcessStartError(
                "anvil executable not found; install Foundry (https://getfoundry.sh)"
            )
        return found

    def _is_port_free(self) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self.host, self.port))
            except OSError:
                return False
        return True

    def _release_port(self) -> None:
        ForkProcessManager._claimed_ports.discard(self.port)

    async def _drain(self, stream: asyncio.StreamReader, name: str) -> None:
        """Forward process output to the debug log until EOF."""
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug(
                "anvil %s: %s", name, line.decode("utf-8", errors="replace").rstrip(),
                extra={"port": self.port},
            )

    async def _stop_log_tasks(self) -> None:
        for task in self._log_tasks:
            if not task.done():
                task.cancel()
        if self._log_tasks:
            await asyncio.gather(*self._log_tasks, return_exceptions=True)
        self._log_tasks = []
