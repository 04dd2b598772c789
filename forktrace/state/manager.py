"""Persist and restore fork state via ``anvil_dumpState`` / ``anvil_loadState``."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from web3 import AsyncWeb3

from forktrace.core.config import Settings, get_settings
from forktrace.core.errors import StateError

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "checkpoint_"
_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")
STAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"
_STAMP_PATTERN = r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{6}Z"


def sanitize_name(name: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", name)


@dataclass(frozen=True)
class StateFile:
    """A saved snapshot on disk."""

    name: str
    path: Path
    size: int
    modified: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "size": self.size,
            "modified": self.modified.isoformat(),
        }


class StateManager:
    """Save, list, load and prune fork snapshots.

    Snapshots are the opaque blobs returned by ``anvil_dumpState`` written as
    ``<name>-<utc timestamp>.json``. Only the newest ``max_saved_states``
    files are kept.
    """

    def __init__(
        self,
        w3: AsyncWeb3 | None = None,
        settings: Settings | None = None,
        state_dir: str | Path | None = None,
        max_states: int | None = None,
    ) -> None:
        s = settings or get_settings()
        self._w3 = w3
        self.state_dir = Path(state_dir or s.state_dir)
        self.max_states = max_states if max_states is not None else s.max_saved_states

    async def save_state(self, name: str) -> Path:
        """Dump the fork's state to a timestamped file and prune old ones."""
        self._require_w3()
        try:
            blob = await self._w3.manager.coro_request("anvil_dumpState", [])
        except Exception as e:
            raise StateError(f"Failed to save state: {e}", cause=e) from e

        stamp = datetime.now(timezone.utc).strftime(STAMP_FORMAT)
        path = self._ensure_state_dir() / f"{sanitize_name(name)}-{stamp}.json"
        try:
            path.write_text(json.dumps(blob, indent=2), encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to write state file {path}: {e}", cause=e) from e

        logger.info("State saved: %s", path)
        self._prune()
        return path

    async def load_state(self, path: str | Path) -> None:
        """Load a previously saved snapshot into the running fork."""
        self._require_w3()
        path = Path(path)
        if not path.is_file():
            raise StateError(f"State file not found: {path}")
        try:
            blob = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StateError(f"Failed to read state file {path}: {e}", cause=e) from e
        try:
            await self._w3.manager.coro_request("anvil_loadState", [blob])
        except Exception as e:
            raise StateError(f"Failed to load state: {e}", cause=e) from e
        logger.info("State loaded: %s", path)

    def list_states(self) -> list[StateFile]:
        """Saved snapshots, newest first."""
        if not self.state_dir.is_dir():
            return []
        states = []
        for path in self.state_dir.glob("*.json"):
            stat = path.stat()
            states.append(
                StateFile(
                    name=path.stem,
                    path=path,
                    size=stat.st_size,
                    modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return sorted(states, key=lambda s: (s.modified, s.name), reverse=True)

    def delete_state(self, path: str | Path) -> None:
        path = Path(path)
        try:
            path.unlink()
        except OSError as e:
            raise StateError(f"Failed to delete state {path}: {e}", cause=e) from e
        logger.info("State deleted: %s", path)

    async def create_checkpoint(self, name: str) -> Path:
        return await self.save_state(f"{CHECKPOINT_PREFIX}{sanitize_name(name)}")

    async def restore_checkpoint(self, name: str) -> None:
        """Load the newest checkpoint saved under ``name``."""
        pattern = re.compile(
            rf"{re.escape(CHECKPOINT_PREFIX + sanitize_name(name))}-{_STAMP_PATTERN}"
        )
        for state in self.list_states():
            if pattern.fullmatch(state.name):
                await self.load_state(state.path)
                return
        raise StateError(f"Checkpoint not found: {name}")

    # ── Helpers ──────────────────────────────────────────────────────────

    def _require_w3(self) -> None:
        if self._w3 is None:
            raise StateError("A fork connection is required for this operation")

    def _ensure_state_dir(self) -> Path:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateError(f"Cannot create state directory {self.state_dir}: {e}", cause=e) from e
        return self.state_dir

    def _prune(self) -> None:
        for state in self.list_states()[self.max_states:]:
            self.delete_state(state.path)
