"""ForkTrace CLI — replay mainnet transactions on a local Anvil fork.

Usage:
    forktrace replay <tx_hash>          Replay a transaction and print the outcome
    forktrace states                    List saved fork state snapshots
    forktrace config                    Show current configuration

Examples:
    forktrace replay 0xabc…def
    forktrace replay 0xabc…def --mod '{"value": "0"}' --export json,md
    forktrace replay 0xabc…def --ai --ai-model llama3.2 --save-state before-fix
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from typing import Any
from urllib.parse import urlparse

from forktrace import __version__
from forktrace.core.config import Settings, get_settings
from forktrace.core.errors import ERROR_HINTS, ErrorCode, ForkTraceError, ValidationError
from forktrace.core.logging import setup_logging
from forktrace.core.validators import require_api_key, require_tx_hash

# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── Banner ───────────────────────────────────────────────────────────────────

BANNER = rf"""
{_BOLD}{_CYAN} ___         _   _____
| __|__ _ _| |_|_   _| _ __ _ __ ___
| _/ _ \ '_| / / | || '_/ _` / _/ -_)
|_|\___/_| |_\_\ |_||_| \__,_\__\___|{_RESET}
  {_DIM}Transaction replay on a local fork — v{__version__}{_RESET}
"""


# ── CLI argument parser ─────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forktrace",
        description="ForkTrace — replay Ethereum transactions on an Anvil fork",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")

    sub = parser.add_subparsers(dest="command")

    # ── replay ───────────────────────────────────────────────────────────────
    replay_p = sub.add_parser("replay", help="Replay a transaction on a local fork")
    replay_p.add_argument("tx_hash", help="Transaction hash (0x + 64 hex characters)")
    replay_p.add_argument("--port", "--anvil-port", type=int, dest="port", help="Anvil port (default: 8545)")
    replay_p.add_argument("--rpc-url", help="Archive RPC URL to fork from (default: $MAINNET_RPC_URL)")
    replay_p.add_argument("--mod", help='JSON overrides, e.g. \'{"value": "0", "gasLimit": 500000}\'')
    replay_p.add_argument("--ai", action="store_true", help="Explain the outcome with an LLM")
    replay_p.add_argument("--ai-gas", action="store_true", help="Also run the gas usage analysis")
    replay_p.add_argument(
        "--ai-provider", choices=["ollama", "anthropic", "openai"], help="LLM backend"
    )
    replay_p.add_argument("--ai-endpoint", help="Ollama endpoint (default: http://localhost:11434)")
    replay_p.add_argument("--ai-model", help="Model name (default: llama3.2)")
    replay_p.add_argument("--export", help="Export formats: json,md,trace,all")
    replay_p.add_argument("--output-dir", help="Export directory (default: ./exports)")
    replay_p.add_argument("--save-state", metavar="NAME", help="Save the fork state after replay")
    replay_p.add_argument("--state-dir", help="State snapshot directory (default: ./anvil-states)")
    replay_p.add_argument("--json", action="store_true", help="Print the full report as JSON")
    replay_p.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    replay_p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    # ── states ───────────────────────────────────────────────────────────────
    states_p = sub.add_parser("states", help="List saved fork state snapshots")
    states_p.add_argument("--state-dir", help="State snapshot directory")

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    return parser


# ── Input helpers ────────────────────────────────────────────────────────────


def resolve_api_key(settings: Settings) -> str:
    """Etherscan key from settings/env, else an interactive prompt on a TTY."""
    if settings.etherscan_api_key:
        return require_api_key(settings.etherscan_api_key)
    if sys.stdin.isatty():
        return require_api_key(getpass.getpass("Etherscan API key: "))
    raise ValidationError(
        "Etherscan API key not configured (set FORKTRACE_ETHERSCAN_API_KEY)"
    )


def parse_overrides(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"--mod is not valid JSON: {exc.msg}", cause=exc) from exc
    if not isinstance(overrides, dict):
        raise ValidationError("--mod must be a JSON object")
    return overrides


def _redact_url(url: str) -> str:
    """Keep scheme and host; RPC URLs often embed API keys in the path."""
    parsed = urlparse(url)
    if not parsed.netloc:
        return url
    return f"{parsed.scheme}://{parsed.netloc}/****" if parsed.path.strip("/") else url


# ── Replay command ───────────────────────────────────────────────────────────


def _print_report(report, quiet: bool = False) -> None:
    from forktrace.replay.state_diff import format_wei

    outcome = report.outcome
    status = _c("SUCCESS", _GREEN) if outcome.succeeded else _c("FAILED", _RED)
    print(f"\n{_BOLD}Replay complete{_RESET} — {report.tx_hash}")
    print(
        f"  Status: {status}"
        f"  |  Gas used: {outcome.gas_used:,} / {outcome.gas_limit:,}"
        f"  |  Fork block: {report.bundle.fork_block}"
    )
    if outcome.revert_reason:
        print(f"  Revert reason: {_c(outcome.revert_reason, _YELLOW)}")
    if outcome.modifications:
        print(f"  {_DIM}Overrides: {json.dumps(outcome.to_dict()['modifications'])}{_RESET}")

    if not quiet:
        print(f"\n{_BOLD}State changes{_RESET}")
        for address, diff in report.state_diff.items():
            if diff.is_empty:
                print(f"  {_DIM}{address}  (no change){_RESET}")
                continue
            parts = [f"balance {format_wei(diff.balance_change)}"]
            if diff.nonce_change:
                parts.append(f"nonce {diff.nonce_change:+d}")
            if diff.code_changed:
                parts.append("code changed")
            print(f"  {_c(address, _CYAN)}  {', '.join(parts)}")

    if report.analysis is not None:
        label = "AI analysis" if report.analysis.available else "AI analysis (unavailable)"
        print(f"\n{_BOLD}{label}{_RESET}")
        print(report.analysis.to_dict()["analysis"])
        if report.gas_analysis is not None:
            print(f"\n{_BOLD}Gas analysis{_RESET}")
            print(report.gas_analysis.to_dict()["analysis"])

    if report.saved_state:
        print(f"\n  State saved to {_c(str(report.saved_state), _CYAN)}")
    for fmt, path in report.exported.items():
        print(f"  Exported {fmt}: {_c(str(path), _CYAN)}")
    print()


async def _run_replay(args: argparse.Namespace, settings: Settings) -> int:
    from forktrace.analysis.explainer import AIExplainer
    from forktrace.pipeline.orchestrator import ReplayOrchestrator, ReplayRequest

    tx_hash = require_tx_hash(args.tx_hash)
    request = ReplayRequest(
        tx_hash=tx_hash,
        fork_rpc_url=args.rpc_url,
        port=args.port,
        api_key=resolve_api_key(settings),
        overrides=parse_overrides(args.mod),
        ai=args.ai,
        ai_gas=args.ai_gas,
        export_formats=args.export.split(",") if args.export else [],
        output_dir=args.output_dir,
        save_state=args.save_state,
        state_dir=args.state_dir,
    )

    explainer = None
    if args.ai:
        explainer = AIExplainer(
            settings,
            provider=args.ai_provider,
            endpoint=args.ai_endpoint,
            model=args.ai_model,
        )

    if not args.quiet:
        print(f"  Replaying {_c(args.tx_hash, _CYAN)}…", file=sys.stderr)

    try:
        report = await ReplayOrchestrator(settings, explainer=explainer).run(request)
    finally:
        if explainer is not None:
            await explainer.close()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report, quiet=args.quiet)
    return 0


# ── States command ───────────────────────────────────────────────────────────


def _run_states(args: argparse.Namespace, settings: Settings) -> int:
    from forktrace.state.manager import StateManager

    states = StateManager(settings=settings, state_dir=args.state_dir).list_states()
    if not states:
        print(_c("  No saved states.", _DIM))
        return 0
    print(f"\n{_BOLD}Saved states{_RESET}\n")
    for state in states:
        print(
            f"  {_c(state.name, _CYAN)}  {_DIM}{state.size:,} bytes  "
            f"{state.modified:%Y-%m-%d %H:%M:%S}  {state.path}{_RESET}"
        )
    print()
    return 0


# ── Config command ───────────────────────────────────────────────────────────


def _run_config(settings: Settings) -> int:
    """Print current settings (redacted)."""
    print(f"\n{_BOLD}ForkTrace Configuration{_RESET}\n")
    for field_name in sorted(type(settings).model_fields.keys()):
        val = getattr(settings, field_name, "")
        if any(kw in field_name for kw in ("password", "secret", "key", "token")):
            val = "****" if val else "(not set)"
        elif field_name.endswith("rpc_url") and val:
            val = _redact_url(val)
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def _print_error(exc: ForkTraceError) -> None:
    print(_c(f"\nError: {exc.message}", _RED), file=sys.stderr)
    print(_c(f"  Tip: {exc.hint}", _YELLOW), file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"forktrace {__version__}")
        return 0

    if not args.no_banner:
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    log_level = settings.log_level
    if getattr(args, "verbose", False):
        log_level = "DEBUG"
    elif getattr(args, "quiet", False):
        log_level = "WARNING"
    setup_logging(settings.app_env, log_level)

    try:
        if args.command == "config":
            return _run_config(settings)
        if args.command == "states":
            return _run_states(args, settings)
        if args.command == "replay":
            return asyncio.run(_run_replay(args, settings))
    except ForkTraceError as exc:
        _print_error(exc)
        if getattr(args, "verbose", False):
            logging.getLogger(__name__).exception("Replay failed")
        return 1
    except KeyboardInterrupt:
        print(_c("\nInterrupted.", _YELLOW), file=sys.stderr)
        return 1
    except Exception as exc:
        print(_c(f"\nUnexpected error: {exc}", _RED), file=sys.stderr)
        print(_c(f"  Tip: {ERROR_HINTS[ErrorCode.SYSTEM_ERROR]}", _YELLOW), file=sys.stderr)
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
