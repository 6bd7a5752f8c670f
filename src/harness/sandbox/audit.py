"""Hash-chained, append-only audit trail of bridge calls and run events.

Each record is hashed over its canonical JSON and carries the previous
record's hash, so editing or dropping a line breaks the chain.

Record layout (one JSON object per line, one file per UTC day)::

    {
        "seq": <int>,
        "ts": "<iso8601>",
        "session_id": "<str>",
        "token_hash": "<hex>",     // SHA-256 of the bridge token, never raw
        "event": "bridge_call" | "run_start" | "run_end" | ...,
        "tool": "<str>",
        "input_summary": "<str>",  // tokenized, truncated
        "result_summary": "<str>", // tokenized, truncated
        "status": "ok" | "rejected" | "error",
        "prev_hash": "<hex>",
        "hash": "<hex>"
    }

Summaries are built from what crossed the bridge on the sandbox side,
which is already tokenized, so no detokenized value lands on disk.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

_SUMMARY_MAX = 512
_GENESIS = "0" * 64

AuditStatus = Literal["ok", "rejected", "error"]


def _sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def _summarize(value: object) -> str:
    try:
        text = json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        text = str(value)
    if len(text) > _SUMMARY_MAX:
        return text[:_SUMMARY_MAX] + "…[truncated]"
    return text


class SandboxAuditLogger:
    """Append-only audit log; writes are serialised by an asyncio.Lock."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = log_dir
        self._lock = asyncio.Lock()
        self._seq = 0
        self._prev_hash = _GENESIS

    def _log_file(self) -> Path:
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._log_dir / f"audit-{date_str}.ndjson"

    async def start(self) -> None:
        """Create the log directory and continue today's chain if one exists."""
        self._log_dir.mkdir(parents=True, exist_ok=True)
        log_file = self._log_file()
        if not log_file.exists():
            return
        last_line = ""
        with open(log_file) as fh:
            for line in fh:
                if line.strip():
                    last_line = line.strip()
        if not last_line:
            return
        try:
            entry = json.loads(last_line)
        except json.JSONDecodeError:
            logger.warning("Audit log %s ends with a corrupt line; starting a new chain", log_file)
            return
        self._seq = entry.get("seq", 0)
        self._prev_hash = entry.get("hash", _GENESIS)

    async def _append(self, fields: dict[str, Any]) -> None:
        async with self._lock:
            entry = {
                "seq": self._seq + 1,
                "ts": datetime.now(timezone.utc).isoformat(),
                **fields,
                "prev_hash": self._prev_hash,
            }
            entry["hash"] = _sha256_hex(json.dumps(entry, sort_keys=True))
            try:
                with open(self._log_file(), "a") as fh:
                    fh.write(json.dumps(entry, sort_keys=True) + "\n")
            except OSError:
                logger.error(
                    "Failed to write audit record (session=%s, event=%s)",
                    fields.get("session_id"),
                    fields.get("event"),
                )
                return
            self._seq = entry["seq"]
            self._prev_hash = entry["hash"]

    async def log_bridge_call(
        self,
        session_id: str,
        session_token: str,
        tool: str,
        payload: object,
        result: object,
        status: AuditStatus,
    ) -> None:
        await self._append(
            {
                "session_id": session_id,
                "token_hash": _sha256_hex(session_token) if session_token else "",
                "event": "bridge_call",
                "tool": tool,
                "input_summary": _summarize(payload),
                "result_summary": _summarize(result),
                "status": status,
            }
        )

    async def log_run_event(
        self,
        session_id: str,
        session_token: str,
        event: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record a run lifecycle event (start, end, teardown failure)."""
        await self._append(
            {
                "session_id": session_id,
                "token_hash": _sha256_hex(session_token) if session_token else "",
                "event": event,
                "tool": "",
                "input_summary": _summarize(details or {}),
                "result_summary": "",
                "status": "ok",
            }
        )

    def verify_chain(self, log_file: Path | None = None) -> tuple[bool, str]:
        """Check hashes, links and sequence numbers of one log file."""
        log_file = log_file or self._log_file()
        if not log_file.exists():
            return True, "no log file"

        prev_hash = _GENESIS
        seq = 0
        try:
            with open(log_file) as fh:
                for lineno, line in enumerate(fh, 1):
                    if not line.strip():
                        continue
                    entry = json.loads(line)
                    stored = entry.pop("hash", "")
                    if _sha256_hex(json.dumps(entry, sort_keys=True)) != stored:
                        return False, f"line {lineno}: hash mismatch"
                    if entry.get("prev_hash") != prev_hash:
                        return False, f"line {lineno}: chain broken"
                    if entry.get("seq") != seq + 1:
                        return False, f"line {lineno}: sequence gap (expected {seq + 1})"
                    prev_hash = stored
                    seq = entry["seq"]
        except (json.JSONDecodeError, OSError) as exc:
            return False, f"read error: {exc}"

        return True, f"chain intact ({seq} entries)"
