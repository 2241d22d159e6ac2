"""Unit tests for the bounded activity ledger."""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fleetguard.models.activity import ActivityEntry, ActivityKind, ActivityStatus  # noqa: E402
from fleetguard.services.activity_ledger import ActivityLedger  # noqa: E402


def _entry(operator_id: str = "admin", **overrides) -> ActivityEntry:
    payload = {
        "operator_id": operator_id,
        "kind": ActivityKind.ROUTINE_ANALYSIS,
        "description": "Analyzing shipment timing",
    }
    payload.update(overrides)
    return ActivityEntry(**payload)


def test_capacity_evicts_oldest_and_keeps_newest_first():
    ledger = ActivityLedger(capacity=3)
    for index in range(5):
        ledger.log(_entry(description=f"entry-{index}"))

    assert len(ledger) == 3
    descriptions = [entry.description for entry in ledger.query_by_operator("admin", limit=10)]
    assert descriptions == ["entry-4", "entry-3", "entry-2"]


def test_log_assigns_id_and_timestamp():
    ledger = ActivityLedger()
    stored = ledger.log(_entry())
    assert stored.id and stored.id.startswith("act-")
    assert stored.timestamp is not None


def test_update_merges_metadata_and_reports_missing_ids():
    ledger = ActivityLedger(capacity=2)
    first = ledger.log(_entry(status=ActivityStatus.IN_PROGRESS, metadata={"route_id": "RT-1001"}))

    updated = ledger.update(first.id, {"status": ActivityStatus.COMPLETED, "duration_ms": 120.0, "metadata": {"risk_score": 12}})
    assert updated is not None
    assert updated.status == ActivityStatus.COMPLETED
    assert updated.metadata == {"route_id": "RT-1001", "risk_score": 12}

    assert ledger.update("act-missing", {"status": ActivityStatus.FAILED}) is None

    ledger.log(_entry())
    ledger.log(_entry())
    # Evicted entries are no longer updatable.
    assert ledger.update(first.id, {"status": ActivityStatus.FAILED}) is None


def test_query_by_operator_filters_and_limits():
    ledger = ActivityLedger()
    ledger.log(_entry("admin"))
    ledger.log(_entry("ops-2"))
    ledger.log(_entry("admin"))

    assert len(ledger.query_by_operator("admin", limit=10)) == 2
    assert len(ledger.query_by_operator("admin", limit=1)) == 1
    assert ledger.query_by_operator("nobody") == []


def test_in_progress_window_is_inclusive_at_the_boundary():
    ledger = ActivityLedger()
    started = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    ledger.log(_entry(status=ActivityStatus.IN_PROGRESS, timestamp=started))

    at_edge = ledger.find_recent_in_progress("admin", 10, now=started + timedelta(seconds=10))
    assert at_edge is not None

    past_edge = ledger.find_recent_in_progress(
        "admin", 10, now=started + timedelta(seconds=10, milliseconds=1)
    )
    assert past_edge is None

    assert ledger.find_recent_in_progress("ops-2", 10, now=started) is None


def test_completed_entries_do_not_count_as_in_progress():
    ledger = ActivityLedger()
    ledger.log(_entry(status=ActivityStatus.COMPLETED))
    assert ledger.find_recent_in_progress("admin", 10) is None


def test_report_statistics_use_default_duration_when_missing():
    ledger = ActivityLedger()
    ledger.log(_entry(kind=ActivityKind.SYSTEM_CHECK, description="Normal shipment ingested"))
    ledger.log(_entry(duration_ms=100.0))
    ledger.log(_entry(kind=ActivityKind.THREAT_DETECTED, description="Threat detected: CYBER_ATTACK"))

    report = ledger.report("admin", limit=2)
    assert len(report.activities) == 2
    assert report.current_activity is None
    assert report.statistics.total_analyses == 2
    assert report.statistics.threats_detected == 1
    assert report.statistics.avg_analysis_ms == 1050.0


def test_clear_empties_the_ledger():
    ledger = ActivityLedger()
    ledger.log(_entry())
    ledger.clear()
    assert len(ledger) == 0
