"""SQLite-backed state store for simulation control and analyst feedback."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, List, Optional

from fleetguard.core.config import get_settings
from fleetguard.core.errors import NotFoundError, OperatorRoleError, TransientStoreError
from fleetguard.core.logging import logger
from fleetguard.models.feedback import AnalysisFeedbackRecord, FeedbackRecord
from fleetguard.models.simulation import (
    ActiveOperator,
    OperatorRecord,
    OperatorRole,
    RiskAssessment,
    ShipmentTelemetry,
    severity_for,
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


JUDGMENT_FIELDS = (
    "risk_score_accurate",
    "attack_type_correct",
    "actual_attack_type",
    "actual_risk_score",
    "notes",
)


class ControlStateStore:
    """Durable desired state, simulation output, and feedback rows."""

    def __init__(self, db_path: str | None = None) -> None:
        settings = get_settings()
        self._db_path = Path(db_path or settings.state_db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._default_operator_id = settings.default_operator_id
        self._default_operator_email = settings.default_operator_email
        self._lock = RLock()
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._initialize_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                with suppress(sqlite3.Error):
                    self._conn.rollback()
                raise TransientStoreError(f"state store failure: {exc}") from exc
            except Exception:
                self._conn.rollback()
                raise

    def _initialize_schema(self) -> None:
        with self._session() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS operators (
                    operator_id TEXT PRIMARY KEY,
                    email TEXT,
                    role TEXT NOT NULL,
                    simulation_active INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_operators_active
                    ON operators (simulation_active, role);

                CREATE TABLE IF NOT EXISTS shipments (
                    shipment_id TEXT PRIMARY KEY,
                    operator_id TEXT NOT NULL,
                    route_id TEXT NOT NULL,
                    route_status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS analyses (
                    analysis_id TEXT PRIMARY KEY,
                    operator_id TEXT NOT NULL,
                    shipment_id TEXT NOT NULL,
                    route_id TEXT NOT NULL,
                    driver_name TEXT NOT NULL,
                    risk_score INTEGER NOT NULL,
                    alert_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    description TEXT NOT NULL,
                    source TEXT,
                    ground_truth_is_attack INTEGER,
                    shipment_context TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_analyses_created ON analyses (created_at DESC);

                CREATE TABLE IF NOT EXISTS alerts (
                    alert_id TEXT PRIMARY KEY,
                    analysis_id TEXT,
                    shipment_id TEXT NOT NULL,
                    alert_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    risk_score INTEGER NOT NULL,
                    description TEXT NOT NULL,
                    shipment_context TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_alerts_created ON alerts (created_at DESC);

                CREATE TABLE IF NOT EXISTS alert_feedback (
                    feedback_id TEXT PRIMARY KEY,
                    alert_id TEXT NOT NULL UNIQUE
                        REFERENCES alerts (alert_id) ON DELETE CASCADE,
                    risk_score_accurate INTEGER NOT NULL,
                    attack_type_correct INTEGER NOT NULL,
                    actual_attack_type TEXT,
                    actual_risk_score INTEGER,
                    notes TEXT,
                    ai_risk_score INTEGER NOT NULL,
                    ai_attack_type TEXT NOT NULL,
                    shipment_context TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_alert_feedback_created
                    ON alert_feedback (created_at DESC);

                CREATE TABLE IF NOT EXISTS analysis_feedback (
                    feedback_id TEXT PRIMARY KEY,
                    analysis_id TEXT NOT NULL UNIQUE
                        REFERENCES analyses (analysis_id) ON DELETE CASCADE,
                    risk_score_accurate INTEGER NOT NULL,
                    attack_type_correct INTEGER NOT NULL,
                    actual_attack_type TEXT,
                    actual_risk_score INTEGER,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._seed_default_operator(conn)

    def _seed_default_operator(self, conn: sqlite3.Connection) -> None:
        if not self._default_operator_id:
            return
        conn.execute(
            """
            INSERT OR IGNORE INTO operators (operator_id, email, role, simulation_active, updated_at)
            VALUES (?, ?, ?, 0, ?)
            """,
            (
                self._default_operator_id,
                self._default_operator_email,
                OperatorRole.ADMIN.value,
                _utc_now_iso(),
            ),
        )

    def _next_sequence(self, conn: sqlite3.Connection, key: str) -> int:
        row = conn.execute(
            "SELECT next_value FROM sequences WHERE key_name = ?",
            (key,),
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                (key, 2),
            )
            return 1
        value = int(row["next_value"])
        conn.execute(
            "UPDATE sequences SET next_value = ? WHERE key_name = ?",
            (value + 1, key),
        )
        return value

    # Operators / desired state

    @staticmethod
    def _operator_from_row(row: sqlite3.Row) -> OperatorRecord:
        return OperatorRecord(
            operator_id=row["operator_id"],
            email=row["email"],
            role=OperatorRole(row["role"]),
            simulation_active=bool(row["simulation_active"]),
            updated_at=row["updated_at"],
        )

    def upsert_operator(
        self,
        operator_id: str,
        *,
        email: Optional[str] = None,
        role: OperatorRole | str = OperatorRole.ADMIN,
    ) -> OperatorRecord:
        role_value = OperatorRole(role).value
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO operators (operator_id, email, role, simulation_active, updated_at)
                VALUES (?, ?, ?, 0, ?)
                ON CONFLICT(operator_id)
                DO UPDATE SET email = COALESCE(excluded.email, operators.email), role = excluded.role
                """,
                (operator_id, email, role_value, _utc_now_iso()),
            )
            row = conn.execute(
                "SELECT * FROM operators WHERE operator_id = ?",
                (operator_id,),
            ).fetchone()
        return self._operator_from_row(row)

    def get_operator(self, operator_id: str) -> Optional[OperatorRecord]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM operators WHERE operator_id = ?",
                (operator_id,),
            ).fetchone()
        if not row:
            return None
        return self._operator_from_row(row)

    def find_active_simulation_operator(self) -> Optional[ActiveOperator]:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT operator_id, email FROM operators
                WHERE simulation_active = 1 AND role = ?
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (OperatorRole.ADMIN.value,),
            ).fetchone()
        if not row:
            return None
        return ActiveOperator(id=row["operator_id"], email=row["email"])

    def set_desired_state(self, operator_id: str, active: bool) -> OperatorRecord:
        """Persist intent; activating one operator deactivates every other."""
        now = _utc_now_iso()
        with self._session() as conn:
            row = conn.execute(
                "SELECT operator_id, role FROM operators WHERE operator_id = ?",
                (operator_id,),
            ).fetchone()
            if not row:
                raise NotFoundError("operator", operator_id)
            # Only admins are visible to find_active_simulation_operator.
            if active and row["role"] != OperatorRole.ADMIN.value:
                raise OperatorRoleError(operator_id, row["role"])
            if active:
                superseded = conn.execute(
                    """
                    UPDATE operators SET simulation_active = 0, updated_at = ?
                    WHERE operator_id != ? AND simulation_active = 1
                    """,
                    (now, operator_id),
                ).rowcount
                if superseded:
                    logger.info("Desired state superseded other operators", operator_id=operator_id, superseded=superseded)
            conn.execute(
                "UPDATE operators SET simulation_active = ?, updated_at = ? WHERE operator_id = ?",
                (1 if active else 0, now, operator_id),
            )
            row = conn.execute(
                "SELECT * FROM operators WHERE operator_id = ?",
                (operator_id,),
            ).fetchone()
        return self._operator_from_row(row)

    # Simulation output

    def insert_shipment(self, operator_id: str, telemetry: ShipmentTelemetry) -> Dict[str, Any]:
        payload = telemetry.model_dump(mode="json")
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO shipments (shipment_id, operator_id, route_id, route_status, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    telemetry.shipment_id,
                    operator_id,
                    telemetry.route_id,
                    telemetry.route_status,
                    _utc_now_iso(),
                    _json_dumps(payload),
                ),
            )
        return payload

    def next_shipment_id(self) -> str:
        with self._session() as conn:
            value = self._next_sequence(conn, "shipment")
        return f"SHP-{value:06d}"

    def insert_analysis(
        self,
        operator_id: str,
        telemetry: ShipmentTelemetry,
        assessment: RiskAssessment,
    ) -> Dict[str, Any]:
        now = _utc_now_iso()
        with self._session() as conn:
            analysis_id = f"ANL-{self._next_sequence(conn, 'analysis'):06d}"
            row = {
                "analysis_id": analysis_id,
                "operator_id": operator_id,
                "shipment_id": telemetry.shipment_id,
                "route_id": telemetry.route_id,
                "driver_name": telemetry.driver_name,
                "risk_score": assessment.risk_score,
                "alert_type": assessment.alert_type,
                "severity": severity_for(assessment.risk_score),
                "description": assessment.description,
                "source": assessment.source,
                "ground_truth_is_attack": 1 if telemetry.is_attack else 0,
                "shipment_context": _json_dumps(telemetry.context()),
                "created_at": now,
            }
            conn.execute(
                f"INSERT INTO analyses ({', '.join(row)}) VALUES ({', '.join('?' for _ in row)})",
                tuple(row.values()),
            )
        return row

    def get_analysis(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM analyses WHERE analysis_id = ?",
                (analysis_id,),
            ).fetchone()
        return dict(row) if row else None

    def list_analyses_since(self, since: datetime) -> List[Dict[str, Any]]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM analyses WHERE created_at >= ? ORDER BY created_at DESC",
                (since.astimezone(timezone.utc).isoformat(),),
            ).fetchall()
        return [dict(row) for row in rows]

    def insert_alert(self, analysis: Dict[str, Any]) -> Dict[str, Any]:
        now = _utc_now_iso()
        with self._session() as conn:
            alert_id = f"ALR-{self._next_sequence(conn, 'alert'):06d}"
            row = {
                "alert_id": alert_id,
                "analysis_id": analysis.get("analysis_id"),
                "shipment_id": analysis["shipment_id"],
                "alert_type": analysis.get("alert_type") or "unknown",
                "severity": analysis.get("severity") or severity_for(int(analysis.get("risk_score") or 0)),
                "risk_score": int(analysis.get("risk_score") or 0),
                "description": analysis.get("description") or "Anomaly detected",
                "shipment_context": analysis.get("shipment_context") or "{}",
                "created_at": now,
            }
            conn.execute(
                f"INSERT INTO alerts ({', '.join(row)}) VALUES ({', '.join('?' for _ in row)})",
                tuple(row.values()),
            )
        return row

    def find_alert_by_id(self, alert_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM alerts WHERE alert_id = ?",
                (alert_id,),
            ).fetchone()
        return dict(row) if row else None

    def count_alerts_since(self, since: datetime) -> int:
        with self._session() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM alerts WHERE created_at >= ?",
                (since.astimezone(timezone.utc).isoformat(),),
            ).fetchone()
        return int(row["total"])

    # Feedback

    @staticmethod
    def _feedback_from_row(row: sqlite3.Row, alert: Optional[Dict[str, Any]] = None) -> FeedbackRecord:
        return FeedbackRecord(
            feedback_id=row["feedback_id"],
            alert_id=row["alert_id"],
            risk_score_accurate=bool(row["risk_score_accurate"]),
            attack_type_correct=bool(row["attack_type_correct"]),
            actual_attack_type=row["actual_attack_type"],
            actual_risk_score=row["actual_risk_score"],
            notes=row["notes"],
            ai_risk_score=int(row["ai_risk_score"]),
            ai_attack_type=row["ai_attack_type"],
            shipment_context=row["shipment_context"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            alert=alert,
        )

    def upsert_feedback(self, alert_id: str, fields: Dict[str, Any]) -> FeedbackRecord:
        """Insert or overwrite the single feedback row for ``alert_id``.

        Judgment fields always take the new values; the AI snapshot
        (score, type, context) is kept from the first submission unless
        the new one supplies it.
        """
        now = _utc_now_iso()
        with self._session() as conn:
            existing = conn.execute(
                "SELECT * FROM alert_feedback WHERE alert_id = ?",
                (alert_id,),
            ).fetchone()
            if existing is None:
                feedback_id = f"FB-{self._next_sequence(conn, 'feedback'):06d}"
                conn.execute(
                    """
                    INSERT INTO alert_feedback (
                        feedback_id, alert_id, risk_score_accurate, attack_type_correct,
                        actual_attack_type, actual_risk_score, notes,
                        ai_risk_score, ai_attack_type, shipment_context,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        feedback_id,
                        alert_id,
                        1 if fields.get("risk_score_accurate") else 0,
                        1 if fields.get("attack_type_correct") else 0,
                        fields.get("actual_attack_type"),
                        fields.get("actual_risk_score"),
                        fields.get("notes"),
                        int(fields.get("ai_risk_score") or 0),
                        fields.get("ai_attack_type") or "unknown",
                        fields.get("shipment_context") or "{}",
                        now,
                        now,
                    ),
                )
            else:
                conn.execute(
                    """
                    UPDATE alert_feedback SET
                        risk_score_accurate = ?,
                        attack_type_correct = ?,
                        actual_attack_type = ?,
                        actual_risk_score = ?,
                        notes = ?,
                        ai_risk_score = COALESCE(?, ai_risk_score),
                        ai_attack_type = COALESCE(?, ai_attack_type),
                        shipment_context = COALESCE(?, shipment_context),
                        updated_at = ?
                    WHERE alert_id = ?
                    """,
                    (
                        1 if fields.get("risk_score_accurate") else 0,
                        1 if fields.get("attack_type_correct") else 0,
                        fields.get("actual_attack_type"),
                        fields.get("actual_risk_score"),
                        fields.get("notes"),
                        fields.get("ai_risk_score"),
                        fields.get("ai_attack_type"),
                        fields.get("shipment_context"),
                        now,
                        alert_id,
                    ),
                )
            row = conn.execute(
                "SELECT * FROM alert_feedback WHERE alert_id = ?",
                (alert_id,),
            ).fetchone()
        return self._feedback_from_row(row)

    def count_feedback(self, alert_id: Optional[str] = None) -> int:
        with self._session() as conn:
            if alert_id:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM alert_feedback WHERE alert_id = ?",
                    (alert_id,),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS total FROM alert_feedback").fetchone()
        return int(row["total"])

    def query_feedback(self, limit: int = 20, only_accurate: bool = False) -> List[FeedbackRecord]:
        """Most recent feedback first, each joined with its alert."""
        where = "WHERE f.risk_score_accurate = 1 AND f.attack_type_correct = 1" if only_accurate else ""
        with self._session() as conn:
            rows = conn.execute(
                f"""
                SELECT f.*,
                       a.alert_id AS a_alert_id, a.analysis_id AS a_analysis_id,
                       a.shipment_id AS a_shipment_id, a.alert_type AS a_alert_type,
                       a.severity AS a_severity, a.risk_score AS a_risk_score,
                       a.description AS a_description, a.created_at AS a_created_at
                FROM alert_feedback f
                JOIN alerts a ON a.alert_id = f.alert_id
                {where}
                ORDER BY f.created_at DESC, f.feedback_id DESC
                LIMIT ?
                """,
                (max(1, min(int(limit), 500)),),
            ).fetchall()
        records = []
        for row in rows:
            alert = {key[2:]: row[key] for key in row.keys() if key.startswith("a_")}
            records.append(self._feedback_from_row(row, alert=alert))
        return records

    def upsert_analysis_feedback(self, analysis_id: str, fields: Dict[str, Any]) -> AnalysisFeedbackRecord:
        now = _utc_now_iso()
        with self._session() as conn:
            existing = conn.execute(
                "SELECT feedback_id FROM analysis_feedback WHERE analysis_id = ?",
                (analysis_id,),
            ).fetchone()
            feedback_id = (
                existing["feedback_id"]
                if existing
                else f"AFB-{self._next_sequence(conn, 'analysis_feedback'):06d}"
            )
            conn.execute(
                """
                INSERT INTO analysis_feedback (
                    feedback_id, analysis_id, risk_score_accurate, attack_type_correct,
                    actual_attack_type, actual_risk_score, notes, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(analysis_id)
                DO UPDATE SET
                    risk_score_accurate = excluded.risk_score_accurate,
                    attack_type_correct = excluded.attack_type_correct,
                    actual_attack_type = excluded.actual_attack_type,
                    actual_risk_score = excluded.actual_risk_score,
                    notes = excluded.notes,
                    updated_at = excluded.updated_at
                """,
                (
                    feedback_id,
                    analysis_id,
                    1 if fields.get("risk_score_accurate") else 0,
                    1 if fields.get("attack_type_correct") else 0,
                    fields.get("actual_attack_type"),
                    fields.get("actual_risk_score"),
                    fields.get("notes"),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM analysis_feedback WHERE analysis_id = ?",
                (analysis_id,),
            ).fetchone()
        return AnalysisFeedbackRecord(
            feedback_id=row["feedback_id"],
            analysis_id=row["analysis_id"],
            risk_score_accurate=bool(row["risk_score_accurate"]),
            attack_type_correct=bool(row["attack_type_correct"]),
            actual_attack_type=row["actual_attack_type"],
            actual_risk_score=row["actual_risk_score"],
            notes=row["notes"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
