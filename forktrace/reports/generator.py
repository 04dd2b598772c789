"""Report exporter — JSON, Markdown (Jinja2) and raw trace files."""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from jinja2 import Environment, FileSystemLoader

from forktrace import __version__
from forktrace.core.errors import ExportError
from forktrace.core.validators import is_tx_hash, parse_export_formats
from forktrace.replay.state_diff import format_wei

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

JSON_REPORT = "report.json"
MARKDOWN_REPORT = "report.md"
RAW_TRACE = "trace.raw.json"


def _format_balance(value: Any) -> str:
    """Wei change (int or decimal string) as signed ETH."""
    try:
        amount = int(value or 0)
    except (TypeError, ValueError):
        return str(value)
    if amount == 0:
        return "0 ETH"
    return format_wei(amount)


def _thousands(value: Any) -> str:
    try:
        return f"{int(value or 0):,}"
    except (TypeError, ValueError):
        return str(value)


class Exporter:
    """Write a replay report to ``<output_dir>/<tx_hash>/``.

    The payload is the JSON-safe dict produced by ``ReplayReport.to_dict()``:
    integers are already decimal strings.
    """

    def __init__(self, base_dir: str | Path = "./exports") -> None:
        self.base_dir = Path(base_dir)
        self._jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._jinja_env.filters["eth"] = _format_balance
        self._jinja_env.filters["thousands"] = _thousands
        self._jinja_env.filters["tojson_pretty"] = lambda v: json.dumps(v, indent=2)

    def export(
        self,
        payload: dict[str, Any],
        formats: str | Iterable[str] = ("json",),
        output_dir: str | Path | None = None,
    ) -> dict[str, Path]:
        """Write the requested formats and return ``{format: path}``.

        Raises:
            ExportError: missing transaction hash or unwritable directory
            ValidationError: unknown format name
        """
        tx_hash = payload.get("tx_hash")
        if not tx_hash:
            raise ExportError("Transaction hash required for export")

        wanted = set(parse_export_formats(formats if isinstance(formats, str) else list(formats)))
        if "all" in wanted:
            wanted = {"json", "md", "trace"}

        export_path = Path(output_dir or self.base_dir).resolve() / tx_hash
        try:
            export_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExportError(f"Cannot create export directory {export_path}: {e}", cause=e) from e

        outputs: dict[str, Path] = {}
        if "json" in wanted:
            outputs["json"] = self._write(
                export_path / JSON_REPORT, json.dumps(self.build_json_report(payload), indent=2)
            )
        if "md" in wanted:
            outputs["md"] = self._write(export_path / MARKDOWN_REPORT, self.build_markdown_report(payload))
        if "trace" in wanted:
            trace = payload.get("trace") or payload.get("replay")
            if trace:
                outputs["trace"] = self._write(export_path / RAW_TRACE, json.dumps(trace, indent=2))

        for fmt, path in outputs.items():
            logger.info("Exported %s report: %s", fmt, path, extra={"tx_hash": tx_hash})
        return outputs

    def build_json_report(self, payload: dict[str, Any]) -> dict[str, Any]:
        replay = payload.get("replay") or {}
        analysis = payload.get("analysis") or {}
        return {
            "metadata": {
                "tx_hash": payload.get("tx_hash"),
                "generated_at": datetime.now(timezone.utc).isoformat(),
                "tool": "ForkTrace",
                "version": __version__,
            },
            "transaction": payload.get("transaction"),
            "fork": payload.get("fork"),
            "replay": {
                "status": replay.get("status", "unknown"),
                "gas_used": replay.get("gas_used", "0"),
                "gas_limit": replay.get("gas_limit", "0"),
                "logs": replay.get("logs", []),
                "revert_reason": replay.get("revert_reason"),
                "error": replay.get("error"),
                "modifications": replay.get("modifications", {}),
            },
            "state_diff": payload.get("state_diff") or {},
            "ai_analysis": {
                "available": analysis.get("available", False),
                "model": analysis.get("model"),
                "analysis": analysis.get("analysis"),
                "gas_analysis": analysis.get("gas_analysis"),
                "timestamp": analysis.get("timestamp"),
            },
        }

    def build_markdown_report(self, payload: dict[str, Any]) -> str:
        template = self._jinja_env.get_template("report.md.j2")
        return template.render(
            tx_hash=payload.get("tx_hash"),
            generated_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
            transaction=payload.get("transaction") or {},
            replay=payload.get("replay") or {},
            state_diff=payload.get("state_diff") or {},
            analysis=payload.get("analysis") or {},
        )

    def list_exports(self, tx_hash: str) -> list[dict[str, str]]:
        export_path = self.base_dir.resolve() / tx_hash
        if not export_path.is_dir():
            return []
        return [
            {"name": f.name, "path": str(f), "type": f.suffix.lstrip(".") or "unknown"}
            for f in sorted(export_path.iterdir())
        ]

    def cleanup(self, keep_count: int = 10) -> list[Path]:
        """Remove all but the ``keep_count`` most recently modified exports.

        Only directories named after a transaction hash are considered; anything
        else sharing ``base_dir`` is left alone.
        """
        if not self.base_dir.is_dir():
            return []
        dirs = sorted(
            (p for p in self.base_dir.iterdir() if p.is_dir() and is_tx_hash(p.name)),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        removed = []
        for path in dirs[keep_count:]:
            try:
                shutil.rmtree(path)
            except OSError as e:
                logger.warning("Failed to clean up export %s: %s", path, e)
                continue
            logger.info("Cleaned up old export: %s", path)
            removed.append(path)
        return removed

    @staticmethod
    def _write(path: Path, content: str) -> Path:
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ExportError(f"Failed to write {path}: {e}", cause=e) from e
        return path
