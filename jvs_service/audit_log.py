"""Tamper-evident append-only audit log for manual key actions.

One JSON object per line. Each record carries three hex digests:

- ``event_hash`` covers the canonical JSON of the certificate action event
- ``prev_hash`` repeats the ``entry_hash`` of the record before it
- ``entry_hash`` binds ``prev_hash``, ``event_hash`` and the timestamp

Editing, dropping or reordering records breaks the chain, which
``verify_file`` reports. Records are also emitted on the
``jvs_service.audit`` logger so they reach the regular log pipeline.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .crypto import _safe_hash_encode, _sha256_hex, canonical_json_dumps

AUDIT_VERSION = "JVS_AUDIT_V1"
GENESIS_HASH = "0" * 64

audit_logger = logging.getLogger("jvs_service.audit")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _event_hash(event: Dict[str, Any]) -> str:
    return _sha256_hex(canonical_json_dumps(event).encode("utf-8"))


def _entry_hash(prev_hash: str, event_hash: str, ts: str) -> str:
    return _sha256_hex(_safe_hash_encode([prev_hash, event_hash, ts]))


@dataclass
class AuditLogRecord:
    version: str
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


class AuditLog:
    """Append-only audit log. ``path=None`` logs to the logger only."""

    def __init__(self, path: Optional[str] = None):
        self.path = str(path) if path else None
        self._last_hash = GENESIS_HASH
        self._lock = threading.Lock()

        if self.path:
            p = Path(self.path)
            p.parent.mkdir(parents=True, exist_ok=True)
            if p.exists() and p.stat().st_size > 0:
                last_line = self._read_last_line(p)
                try:
                    self._last_hash = str(json.loads(last_line).get("entry_hash", GENESIS_HASH))
                except ValueError:
                    # Corrupt tail: keep appending from genesis; verify_file will flag it.
                    audit_logger.error("audit log %s has an unreadable last record", self.path)

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            pos = max(0, end - 4096)
            f.seek(pos)
            lines = f.read(end - pos).splitlines()
            return lines[-1].decode("utf-8") if lines else ""

    def append_event(self, event: Dict[str, Any], ts_utc: Optional[str] = None) -> AuditLogRecord:
        """Chain ``event`` onto the log and return the written record."""
        ts = ts_utc or _now_iso()
        with self._lock:
            event_hash = _event_hash(event)
            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                ts_utc=ts,
                prev_hash=self._last_hash,
                event=event,
                event_hash=event_hash,
                entry_hash=_entry_hash(self._last_hash, event_hash, ts),
            )
            if self.path:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(rec.to_json() + "\n")
            self._last_hash = rec.entry_hash
        audit_logger.info("audit %s", canonical_json_dumps(event))
        return rec

    @staticmethod
    def verify_file(path: str) -> Tuple[bool, str, int]:
        """Walk the chain in ``path``; returns ``(ok, reason, records_checked)``."""
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev = GENESIS_HASH
        count = 0
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    rec = json.loads(line)
                except ValueError:
                    return False, "PARSE_ERROR", count
                if not isinstance(rec, dict) or rec.get("version") != AUDIT_VERSION:
                    return False, "BAD_VERSION", count
                if str(rec.get("prev_hash")) != prev:
                    return False, "CHAIN_BROKEN", count
                event = rec.get("event")
                if not isinstance(event, dict):
                    return False, "BAD_EVENT", count
                event_hash = _event_hash(event)
                if event_hash != str(rec.get("event_hash")):
                    return False, "EVENT_HASH_MISMATCH", count
                expected = _entry_hash(prev, event_hash, str(rec.get("ts_utc")))
                if expected != str(rec.get("entry_hash")):
                    return False, "ENTRY_HASH_MISMATCH", count
                prev = expected
        return True, "OK", count
