# ddash
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of ddash.
#
# ddash is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Proxy audit trail.

Records every connection the sandboxed command attempted and what the
proxy did about it. Written on the host, outside the sandbox's write
allow-list.

Log format: JSON Lines (one JSON object per line).
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TextIO

logger = logging.getLogger("ddash.proxy.audit")


@dataclass
class AuditEntry:
    """A single proxied connection attempt."""

    timestamp: float
    event_type: str  # "allowed", "blocked", "error"
    method: str  # HTTP method, or CONNECT
    target: str  # URL or host:port
    domain: str
    decision: str = ""  # allow / deny / always / never
    status_code: int = 0  # Status the proxy answered with (0 if none)
    duration_ms: float = 0.0
    detail: str = ""
    client_ip: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def allowed(
        cls,
        method: str,
        target: str,
        domain: str,
        decision: str,
        status_code: int = 0,
        duration_ms: float = 0.0,
        client_ip: str = "",
    ) -> AuditEntry:
        return cls(
            timestamp=time.time(),
            event_type="allowed",
            method=method,
            target=target,
            domain=domain,
            decision=decision,
            status_code=status_code,
            duration_ms=duration_ms,
            client_ip=client_ip,
        )

    @classmethod
    def blocked(
        cls,
        method: str,
        target: str,
        domain: str,
        decision: str,
        client_ip: str = "",
    ) -> AuditEntry:
        return cls(
            timestamp=time.time(),
            event_type="blocked",
            method=method,
            target=target,
            domain=domain,
            decision=decision,
            status_code=403,
            client_ip=client_ip,
        )

    @classmethod
    def error(
        cls,
        method: str,
        target: str,
        domain: str,
        detail: str,
        status_code: int = 502,
        client_ip: str = "",
    ) -> AuditEntry:
        """Create an entry for a permitted connection that could not be made."""
        return cls(
            timestamp=time.time(),
            event_type="error",
            method=method,
            target=target,
            domain=domain,
            status_code=status_code,
            detail=detail,
            client_ip=client_ip,
        )


class AuditLogger:
    """Thread-safe JSON Lines writer.

    The file is opened lazily on the first entry. Write failures are
    logged and otherwise ignored so that auditing can never take a
    connection down with it. Entries logged after close() are dropped.
    """

    def __init__(self, log_path: str | Path) -> None:
        self._path = Path(log_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._file: TextIO | None = None
        self._entry_count = 0
        self._closed = False

    def _ensure_open(self) -> TextIO:
        if self._file is None or self._file.closed:
            self._file = open(self._path, "a", encoding="utf-8")
        return self._file

    def log(self, entry: AuditEntry) -> None:
        line = entry.to_json() + "\n"
        with self._lock:
            if self._closed:
                logger.debug("Audit log closed, dropping %s entry for %s", entry.event_type, entry.domain)
                return
            try:
                f = self._ensure_open()
                f.write(line)
                f.flush()
                self._entry_count += 1
            except OSError as exc:
                logger.error("Failed to write audit entry: %s", exc)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._file and not self._file.closed:
                self._file.close()
                self._file = None

    @property
    def entry_count(self) -> int:
        """Number of entries written by this logger."""
        return self._entry_count

    @property
    def path(self) -> Path:
        return self._path

    def read_recent(self, n: int = 50) -> list[AuditEntry]:
        """Read the N most recent entries, skipping malformed lines."""
        if not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        try:
            lines = self._path.read_text(encoding="utf-8").strip().splitlines()
            for line in lines[-n:]:
                try:
                    entries.append(AuditEntry(**json.loads(line)))
                except (json.JSONDecodeError, TypeError):
                    continue
        except OSError as exc:
            logger.error("Failed to read audit log: %s", exc)

        return entries

    def get_stats(self) -> dict:
        """Summarize the most recent entries."""
        entries = self.read_recent(1000)
        return {
            "total": len(entries),
            "allowed": sum(1 for e in entries if e.event_type == "allowed"),
            "blocked": sum(1 for e in entries if e.event_type == "blocked"),
            "errors": sum(1 for e in entries if e.event_type == "error"),
            "unique_domains": len({e.domain for e in entries}),
        }

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
