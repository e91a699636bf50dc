"""
core/audit.py -- Append-only NDJSON audit and access trail.

One JSON object per line, one line per event. The record shape is stable:
consumers must tolerate additional keys, and new keys are only ever added.

  audit:  {"timestamp", "user_id", "action", "details", "ip"}
  access: {"timestamp", "method", "url", "status", "duration_ms", "ip", "user_agent"}

Detail values under sensitive keys (password, secret, token, key...) are replaced
with "[REDACTED]" before they reach disk. Every audit event is also echoed to the
"cloudboard.audit" logger at DEBUG level so it shows up in dev consoles.

Writes are serialized with a lock; the sink is shared by request handlers and
provider branches running on the same loop plus the threadpool FastAPI uses for
sync routes. Coroutines use record_async() so the file write happens on a
worker thread instead of blocking the event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger("cloudboard.audit")

_SENSITIVE_KEY_PATTERNS = ("password", "secret", "token", "authorization", "api_key", "access_key", "private_key")
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    """Recursively scrub sensitive fields while preserving structure."""
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            sanitized[key] = _REDACTED_VALUE if _is_sensitive_key(key) else sanitize_details(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_details(item) for item in value]
    return value


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditLog:
    """Newline-delimited JSON sink for audit and access events.

    Usage:
        audit = AuditLog("logs/audit.log", "logs/access.log")
        audit.record("login_success", {"username": "alice"}, user_id="user-1")
    """

    def __init__(self, audit_path: str | Path, access_path: str | Path | None = None) -> None:
        self.audit_path = Path(audit_path)
        self.access_path = Path(access_path) if access_path is not None else None
        self._lock = threading.Lock()
        self.audit_path.parent.mkdir(parents=True, exist_ok=True)
        if self.access_path is not None:
            self.access_path.parent.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        action: str,
        details: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
        ip: str | None = None,
    ) -> dict[str, Any]:
        """Append one audit event and return the record that was written."""
        entry = {
            "timestamp": _now_iso(),
            "user_id": user_id or "system",
            "action": action,
            "details": sanitize_details(details or {}),
            "ip": ip or "unknown",
        }
        self._append(self.audit_path, entry)
        logger.debug("audit %s user=%s %s", action, entry["user_id"], entry["details"])
        return entry

    async def record_async(
        self,
        action: str,
        details: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
        ip: str | None = None,
    ) -> dict[str, Any]:
        """record() for coroutines: the append runs in the default executor."""
        return await asyncio.to_thread(self.record, action, details, user_id=user_id, ip=ip)

    def access(
        self,
        *,
        method: str,
        url: str,
        status: int,
        duration_ms: float,
        ip: str | None,
        user_agent: str | None,
    ) -> None:
        """Append one access-log line. No-op when no access path is configured."""
        if self.access_path is None:
            return
        self._append(
            self.access_path,
            {
                "timestamp": _now_iso(),
                "method": method,
                "url": url,
                "status": status,
                "duration_ms": round(duration_ms, 1),
                "ip": ip or "unknown",
                "user_agent": user_agent,
            },
        )

    def _append(self, path: Path, entry: dict[str, Any]) -> None:
        line = json.dumps(entry, default=str) + "\n"
        try:
            with self._lock, path.open("a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError:
            # Losing an audit line must not fail the request that produced it.
            logger.exception("Failed to write audit record to %s", path)
