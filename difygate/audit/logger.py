"""Audit logger: append-only JSON Lines with size-based rotation."""

from __future__ import annotations

import os
import threading
from pathlib import Path

from difygate.models import AuditEvent


class AuditLogger:
    """Append-only structured audit trail.

    Relay tasks log from the event loop and the mail service logs from worker
    threads, so every write (and the rotation check before it) runs under one
    lock.
    """

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, log_path: str) -> AuditLogger:
        """Create AuditLogger with rotation limits from environment variables."""
        max_bytes = int(os.environ.get("DIFYGATE_AUDIT_LOG_MAX_BYTES", "10485760"))
        backup_count = int(os.environ.get("DIFYGATE_AUDIT_LOG_BACKUP_COUNT", "5"))
        return cls(log_path=log_path, max_bytes=max_bytes, backup_count=backup_count)

    def backup_path(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _rotate_if_full(self) -> None:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return
        if self._backup_count <= 0:
            self.log_path.unlink()
            return

        self.backup_path(self._backup_count).unlink(missing_ok=True)
        for i in range(self._backup_count - 1, 0, -1):
            older = self.backup_path(i)
            if older.exists():
                older.rename(self.backup_path(i + 1))
        self.log_path.rename(self.backup_path(1))

    def log(self, event: AuditEvent) -> None:
        line = event.model_dump_json()
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._rotate_if_full()
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
