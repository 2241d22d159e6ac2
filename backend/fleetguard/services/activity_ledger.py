"""Bounded in-memory ledger of agent activity (diagnostic trail, never persisted)."""
from __future__ import annotations

import secrets
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

from fleetguard.models.activity import (
    ActivityEntry,
    ActivityKind,
    ActivityReport,
    ActivityStatistics,
    ActivityStatus,
)

ANALYSIS_KINDS = {ActivityKind.ROUTINE_ANALYSIS, ActivityKind.THREAT_ANALYSIS, ActivityKind.THREAT_DETECTED}
DEFAULT_ANALYSIS_MS = 2000.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityLedger:
    """Newest-first ring buffer of activity entries with FIFO eviction."""

    def __init__(self, capacity: int = 50) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = int(capacity)
        self._entries: Deque[ActivityEntry] = deque()
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @staticmethod
    def _new_id() -> str:
        return f"act-{int(time.time() * 1000)}-{secrets.token_hex(3)}"

    def log(self, entry: ActivityEntry) -> ActivityEntry:
        stored = entry.model_copy(
            update={
                "id": entry.id or self._new_id(),
                "timestamp": entry.timestamp or _utcnow(),
            },
            deep=True,
        )
        with self._lock:
            self._entries.appendleft(stored)
            while len(self._entries) > self._capacity:
                self._entries.pop()
        return stored.model_copy(deep=True)

    def update(self, entry_id: str, patch: Dict[str, Any]) -> Optional[ActivityEntry]:
        """Merge ``patch`` into the entry; None when it is unknown or already evicted."""
        with self._lock:
            for index, current in enumerate(self._entries):
                if current.id != entry_id:
                    continue
                changes = {key: value for key, value in patch.items() if key not in {"id", "operator_id"}}
                if "metadata" in changes:
                    changes["metadata"] = {**current.metadata, **(changes["metadata"] or {})}
                merged = ActivityEntry.model_validate({**current.model_dump(), **changes})
                self._entries[index] = merged
                return merged.model_copy(deep=True)
        return None

    def query_by_operator(self, operator_id: str, limit: int = 10) -> List[ActivityEntry]:
        with self._lock:
            matches = [entry for entry in self._entries if entry.operator_id == operator_id]
        return [entry.model_copy(deep=True) for entry in matches[: max(0, int(limit))]]

    def find_recent_in_progress(
        self,
        operator_id: str,
        window_seconds: float,
        now: Optional[datetime] = None,
    ) -> Optional[ActivityEntry]:
        reference = now or _utcnow()
        window = timedelta(seconds=window_seconds)
        with self._lock:
            for entry in self._entries:
                if entry.operator_id != operator_id or entry.status != ActivityStatus.IN_PROGRESS:
                    continue
                if entry.timestamp is not None and reference - entry.timestamp <= window:
                    return entry.model_copy(deep=True)
        return None

    def report(self, operator_id: str, limit: int = 10, window_seconds: float = 10.0) -> ActivityReport:
        recent = self.query_by_operator(operator_id, limit=self._capacity)
        analyses = [entry for entry in recent if entry.kind in ANALYSIS_KINDS]
        threats = [entry for entry in recent if entry.kind == ActivityKind.THREAT_DETECTED]
        avg_ms = 0.0
        if analyses:
            total = sum(entry.duration_ms or DEFAULT_ANALYSIS_MS for entry in analyses)
            avg_ms = round(total / len(analyses), 2)
        return ActivityReport(
            operator_id=operator_id,
            activities=recent[: max(0, int(limit))],
            current_activity=self.find_recent_in_progress(operator_id, window_seconds),
            statistics=ActivityStatistics(
                total_analyses=len(analyses),
                threats_detected=len(threats),
                avg_analysis_ms=avg_ms,
            ),
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
