"""Error taxonomy for ForkTrace.

Every failure the engine raises is a :class:`ForkTraceError` carrying an
:class:`ErrorCode`, so the CLI can print a consistent envelope:

    {
        "code": "INDEXER_ERROR",
        "message": "Human-readable description",
        "cause": "original exception text, if any",
        "timestamp": "2024-01-01T00:00:00+00:00"
    }

On-chain reverts are not errors; they come back as a failed ``ReplayOutcome``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ── Error Codes ──────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Standard error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    INDEXER_ERROR = "INDEXER_ERROR"
    FORK_ERROR = "FORK_ERROR"
    REPLAY_ERROR = "REPLAY_ERROR"
    AI_ERROR = "AI_ERROR"
    STATE_ERROR = "STATE_ERROR"
    EXPORT_ERROR = "EXPORT_ERROR"
    SYSTEM_ERROR = "SYSTEM_ERROR"


ERROR_HINTS: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_ERROR: "Check your input format and try again",
    ErrorCode.NETWORK_ERROR: "Check your internet connection and try again",
    ErrorCode.INDEXER_ERROR: "Verify your Etherscan API key and rate limits",
    ErrorCode.FORK_ERROR: "Ensure Anvil (Foundry) is installed and the fork RPC URL is reachable",
    ErrorCode.REPLAY_ERROR: "Check the --mod overrides; numeric fields must be decimal or 0x-hex",
    ErrorCode.AI_ERROR: "Check that the AI service is running (ollama serve)",
    ErrorCode.STATE_ERROR: "Check the state directory permissions and that the fork is running",
    ErrorCode.EXPORT_ERROR: "Check the output directory permissions",
    ErrorCode.SYSTEM_ERROR: "Run with --verbose for more details",
}


# ── Exceptions ───────────────────────────────────────────────────────────────


class ForkTraceError(Exception):
    """Base class for every error raised by the engine."""

    code: ErrorCode = ErrorCode.SYSTEM_ERROR

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def hint(self) -> str:
        return ERROR_HINTS.get(self.code, ERROR_HINTS[ErrorCode.SYSTEM_ERROR])

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "cause": str(self.cause) if self.cause else None,
            "timestamp": self.timestamp,
        }


class ValidationError(ForkTraceError):
    """Malformed input detected before any I/O."""

    code = ErrorCode.VALIDATION_ERROR


class NetworkError(ForkTraceError):
    """Transport-level failure or unexpected HTTP status."""

    code = ErrorCode.NETWORK_ERROR


class IndexerError(ForkTraceError):
    """Semantic failure reported by the indexing API."""

    code = ErrorCode.INDEXER_ERROR

    @property
    def rate_limited(self) -> bool:
        return "rate limit" in self.message.lower()


class TransactionNotFound(IndexerError):
    """The indexing API has no transaction for the hash."""


class ReceiptNotFound(IndexerError):
    """The indexing API has no receipt for the hash."""


class BlockNotFound(IndexerError):
    """The indexing API has no block for the number."""


class ForkProcessError(ForkTraceError):
    """The forked-chain process misbehaved."""

    code = ErrorCode.FORK_ERROR


class ProcessStartError(ForkProcessError):
    """The forked-chain process could not be started or never answered."""


class ForkConnectionError(ForkProcessError):
    """The fork endpoint does not answer basic liveness queries."""


class ReplayError(ForkTraceError):
    """The replay could not be submitted (no receipt was produced)."""

    code = ErrorCode.REPLAY_ERROR


class AnalysisError(ForkTraceError):
    """The AI analysis service failed."""

    code = ErrorCode.AI_ERROR


class StateError(ForkTraceError):
    """Fork state could not be saved, loaded or listed."""

    code = ErrorCode.STATE_ERROR


class ExportError(ForkTraceError):
    """Report files could not be written."""

    code = ErrorCode.EXPORT_ERROR
