"""API tests for continuous simulation control and analyst feedback."""
from __future__ import annotations

import os
import sys
import tempfile
import time
from pathlib import Path

from fastapi.testclient import TestClient


TMP = Path(tempfile.mkdtemp(prefix="fleetguard_api_"))
os.environ["STATE_DB_PATH"] = str(TMP / "fleetguard.db")
os.environ["OPENROUTER_API_KEY"] = ""
os.environ["POLL_INTERVAL_SECONDS"] = "0.05"
os.environ["TICK_INTERVAL_SECONDS"] = "0.2"
os.environ["TICK_BUDGET_SECONDS"] = "1"
os.environ["SIMULATION_SEED"] = "7"
os.environ["DEFAULT_OPERATOR_ID"] = "admin"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fleetguard.core.config import get_settings  # noqa: E402
from fleetguard.main import app  # noqa: E402

get_settings.cache_clear()

ANALYST = {"X-Operator-ID": "admin", "X-Operator-Role": "analyst"}


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _seed_alert(client: TestClient, context: str = '{"routeId": "RT-7781"}') -> str:
    alert = client.app.state.control.store.insert_alert(
        {
            "analysis_id": None,
            "shipment_id": "SHP-900001",
            "alert_type": "ETA_FRAUD",
            "risk_score": 64,
            "description": "ETA pushed back repeatedly",
            "shipment_context": context,
        }
    )
    return alert["alert_id"]


def test_root_and_health():
    with TestClient(app) as client:
        root = client.get("/")
        assert root.status_code == 200
        assert root.json()["endpoints"]["simulation"] == "/simulation"

        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "healthy"


def test_toggle_on_runs_ticks_and_toggle_off_stops():
    with TestClient(app) as client:
        enabled = client.post("/simulation/toggle", json={"active": True})
        assert enabled.status_code == 200
        assert enabled.json()["continuous_active"] is True
        assert enabled.json()["is_running"] is True

        status = client.get("/simulation/status", headers=ANALYST)
        assert status.status_code == 200
        payload = status.json()
        assert payload["continuous_active"] is True
        assert payload["activated_by"]["id"] == "admin"
        assert payload["runtime"]["interval_seconds"] == 0.2

        assert _wait_for(
            lambda: any(
                entry["status"] == "completed" and entry["kind"] in {"routine_analysis", "threat_analysis"}
                for entry in client.get("/simulation/activity").json()["activities"]
            ),
            timeout=0.5,
        )
        activity = client.get("/simulation/activity", params={"limit": 5}).json()
        assert len(activity["activities"]) <= 5
        assert "avg_analysis_ms" in activity["statistics"]

        disabled = client.post("/simulation/toggle", json={"active": False})
        assert disabled.status_code == 200
        assert disabled.json()["is_running"] is False

        status = client.get("/simulation/status").json()
        assert status["continuous_active"] is False
        assert status["is_running"] is False


def test_intent_survives_restart():
    with TestClient(app) as client:
        assert client.post("/simulation/toggle", json={"active": True}).status_code == 200

    with TestClient(app) as client:
        assert _wait_for(lambda: client.get("/simulation/status").json()["is_running"])
        assert client.get("/simulation/status").json()["runtime"]["active_operator_id"] == "admin"
        assert client.post("/simulation/toggle", json={"active": False}).status_code == 200


def test_toggle_requires_admin_and_known_operator():
    with TestClient(app) as client:
        forbidden = client.post("/simulation/toggle", json={"active": True}, headers=ANALYST)
        assert forbidden.status_code == 403

        bad_role = client.post("/simulation/toggle", json={"active": True}, headers={"X-Operator-Role": "root"})
        assert bad_role.status_code == 400

        unknown = client.post("/simulation/toggle", json={"active": True}, headers={"X-Operator-ID": "ghost"})
        assert unknown.status_code == 404

        invalid = client.post("/simulation/toggle", json={})
        assert invalid.status_code == 422

        client.app.state.control.store.upsert_operator("ops-9", role="analyst")
        analyst_row = client.post(
            "/simulation/toggle",
            json={"active": True},
            headers={"X-Operator-ID": "ops-9", "X-Operator-Role": "admin"},
        )
        assert analyst_row.status_code == 403
        assert client.get("/simulation/status").json()["continuous_active"] is False


def test_alert_feedback_upserts_and_feeds_learning_examples():
    with TestClient(app) as client:
        alert_id = _seed_alert(client)

        first = client.post(
            "/alerts/feedback",
            json={"alert_id": alert_id, "risk_score_accurate": True, "attack_type_correct": True},
            headers=ANALYST,
        )
        assert first.status_code == 200
        second = client.post(
            "/alerts/feedback",
            json={
                "alert_id": alert_id,
                "risk_score_accurate": False,
                "attack_type_correct": False,
                "actual_attack_type": "DRIVER_IMPERSONATION",
                "actual_risk_score": 88,
                "notes": "driver badge mismatch",
            },
            headers=ANALYST,
        )
        assert second.status_code == 200
        assert second.json()["feedback"]["feedback_id"] == first.json()["feedback"]["feedback_id"]

        learning = client.get("/alerts/feedback/learning", params={"limit": 50}).json()
        matching = [
            example for example in learning["learning_examples"] if example["scenario"] == {"routeId": "RT-7781"}
        ]
        assert len(matching) == 1
        assert matching[0]["actual_result"]["attack_type"] == "DRIVER_IMPERSONATION"
        assert matching[0]["feedback_notes"] == "driver badge mismatch"

        accurate_only = client.get("/alerts/feedback/learning", params={"accurate": True, "limit": 50}).json()
        assert all(example["actual_result"]["was_accurate"] for example in accurate_only["learning_examples"])


def test_feedback_for_missing_records_returns_404():
    with TestClient(app) as client:
        missing_alert = client.post(
            "/alerts/feedback",
            json={"alert_id": "ALR-999999", "risk_score_accurate": True, "attack_type_correct": True},
        )
        assert missing_alert.status_code == 404

        missing_analysis = client.post(
            "/analyses/feedback",
            json={"analysis_id": "ANL-999999", "risk_score_accurate": True, "attack_type_correct": True},
        )
        assert missing_analysis.status_code == 404


def test_accuracy_metrics_endpoint():
    with TestClient(app) as client:
        response = client.get("/metrics/accuracy", params={"days": 3})
        assert response.status_code == 200
        payload = response.json()
        assert payload["time_period_days"] == 3
        assert "severity_distribution" in payload
