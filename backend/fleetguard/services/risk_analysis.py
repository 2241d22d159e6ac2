"""Risk-analysis collaborators invoked once per simulation tick."""
from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol, Sequence

from openai import AsyncOpenAI

from fleetguard.core.config import Settings
from fleetguard.core.logging import logger
from fleetguard.models.feedback import LearningExample
from fleetguard.models.simulation import RiskAssessment, ShipmentTelemetry

FALLBACK_SCORE_CAP = 85


class RiskAnalyzer(Protocol):
    async def analyze(
        self,
        telemetry: ShipmentTelemetry,
        examples: Sequence[LearningExample] = (),
    ) -> RiskAssessment:
        ...


class HeuristicRiskAnalyzer:
    """Deterministic telemetry scoring used offline and as the LLM fallback."""

    async def analyze(
        self,
        telemetry: ShipmentTelemetry,
        examples: Sequence[LearningExample] = (),
    ) -> RiskAssessment:
        return self.assess(telemetry)

    def assess(
        self,
        telemetry: ShipmentTelemetry,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> RiskAssessment:
        delay = abs(telemetry.delay_minutes(now or datetime.now(timezone.utc)))
        score = 0
        alert_type = "NORMAL_OPERATION"
        description = "Normal shipment operation"
        evidence: List[str] = []
        actions: List[str] = []

        if delay > 60:
            score += 40
            alert_type = "SEVERE_DELAY"
            description = f"Severe delay of {round(delay)} minutes detected"
            evidence.append(f"{round(delay)} min delay")
            actions.append("Contact driver immediately")
        elif delay > 30:
            score += 25
            alert_type = "SIGNIFICANT_DELAY"
            description = f"Significant delay of {round(delay)} minutes"
            evidence.append(f"{round(delay)} min delay")
            actions.append("Monitor shipment status")
        elif delay > 15:
            score += 10
            alert_type = "MINOR_DELAY"
            description = f"Minor delay of {round(delay)} minutes"
            evidence.append(f"{round(delay)} min delay")

        if telemetry.gps_online is False:
            score += 30
            alert_type = "GPS_OFFLINE"
            description += "; GPS offline"
            evidence.append("GPS offline")
            actions.append("Verify GPS system")

        if telemetry.speed_kph == 0 and delay > 20:
            score += 25
            alert_type = "UNEXPECTED_STOP"
            description += "; vehicle stopped unexpectedly"
            evidence.append("Vehicle stopped (0 kph)")
            actions.append("Check cargo security")

        if telemetry.route_status in {"critical", "suspicious"}:
            score += 20
            description = f"Suspicious activity detected: {telemetry.route_status} route status"
            evidence.append("Suspicious shipment flagged")
            actions.append("Enhanced monitoring required")

        score = min(score, FALLBACK_SCORE_CAP)
        return RiskAssessment(
            risk_score=score,
            alert_type=alert_type,
            description=description,
            operator_summary=f"Deterministic assessment: {alert_type.replace('_', ' ').lower()}",
            recommended_actions=(actions or ["Monitor shipment"])[:3],
            evidence=(evidence or ["Automated analysis"])[:3],
            source="fallback" if reason else "heuristic",
            using_fallback=reason is not None,
            fallback_reason=reason,
        )


def extract_json_object(text: str) -> dict:
    """Pull the first JSON object out of an LLM reply, tolerating code fences."""
    cleaned = re.sub(r"```(?:json)?\s*", "", text or "")
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if not match:
        raise ValueError("no JSON object in model output")
    payload = json.loads(match.group(0))
    if not isinstance(payload, dict):
        raise ValueError("model output is not a JSON object")
    return payload


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)][:3]


def normalize_assessment(payload: dict, source: str) -> RiskAssessment:
    try:
        score = float(payload.get("riskScore", payload.get("risk_score", 0)))
    except (TypeError, ValueError):
        score = 0.0
    if score != score:  # NaN
        score = 0.0
    alert_type = payload.get("alertType", payload.get("alert_type"))
    description = payload.get("description")
    summary = payload.get("operatorSummary", payload.get("operator_summary"))
    return RiskAssessment(
        risk_score=int(max(0.0, min(100.0, score))),
        alert_type=alert_type if isinstance(alert_type, str) and alert_type else "unknown",
        description=description if isinstance(description, str) else "",
        operator_summary=summary if isinstance(summary, str) else None,
        recommended_actions=_string_list(payload.get("recommendedActions", payload.get("recommended_actions"))),
        evidence=_string_list(payload.get("evidence")),
        source=source,
    )


class OpenRouterRiskAnalyzer:
    """LLM-backed analyzer on an OpenAI-compatible OpenRouter endpoint."""

    def __init__(self, settings: Settings, fallback: Optional[HeuristicRiskAnalyzer] = None) -> None:
        self.settings = settings
        self.model = settings.openrouter_model
        self.fallback = fallback or HeuristicRiskAnalyzer()
        self._client = AsyncOpenAI(
            api_key=settings.resolved_openrouter_key() or "missing",
            base_url=settings.openrouter_base_url,
            timeout=float(settings.openrouter_timeout_seconds),
        )

    def build_prompt(self, telemetry: ShipmentTelemetry, examples: Sequence[LearningExample]) -> str:
        lines = [
            "LOGISTICS SECURITY THREAT ANALYSIS",
            "",
            "Analyze this shipment and assign a risk score (0-100) based on threat indicators.",
            "",
            "SHIPMENT DATA:",
            f"Route: {telemetry.route_id}",
            f"Driver: {telemetry.driver_name}",
            f"Expected ETA: {telemetry.expected_eta.isoformat()}",
            f"Actual ETA: {telemetry.actual_eta.isoformat() if telemetry.actual_eta else 'In transit'}",
            f"Delay: {round(telemetry.delay_minutes())} minutes",
        ]
        if telemetry.origin:
            lines.append(f"- Origin: {telemetry.origin}")
        if telemetry.destination:
            lines.append(f"- Destination: {telemetry.destination}")
        lines.append(f"- GPS Online: {telemetry.gps_online}")
        if telemetry.last_known_lat is not None and telemetry.last_known_lng is not None:
            lines.append(f"- Last Known Location: ({telemetry.last_known_lat:.4f}, {telemetry.last_known_lng:.4f})")
        if telemetry.last_known_at:
            lines.append(f"- Last Seen: {telemetry.last_known_at.isoformat()}")
        if telemetry.speed_kph is not None:
            lines.append(f"- Speed: {telemetry.speed_kph} kph")
        if telemetry.heading_deg is not None:
            lines.append(f"- Heading: {telemetry.heading_deg} deg")
        lines.append(f"- Route Status: {telemetry.route_status}")

        if examples:
            lines += ["", "ANALYST-CORRECTED PAST PREDICTIONS (calibrate against these):"]
            for example in examples:
                lines.append(
                    json.dumps(
                        {
                            "scenario": example.scenario,
                            "aiPrediction": example.ai_prediction.model_dump(),
                            "actualResult": example.actual_result.model_dump(),
                            "notes": example.feedback_notes,
                        },
                        ensure_ascii=True,
                        default=str,
                    )
                )

        lines += [
            "",
            "Attack types: ROUTE_MANIPULATION, GPS_SPOOFING, CARGO_TAMPERING, ETA_FRAUD, "
            "DRIVER_IMPERSONATION, CYBER_ATTACK, NORMAL_OPERATION.",
            "Return JSON only:",
            '{"riskScore": <0-100>, "alertType": "<type>", "description": "<why>", '
            '"operatorSummary": "<action>", "recommendedActions": ["..."], "evidence": ["..."]}',
        ]
        return "\n".join(lines)

    async def analyze(
        self,
        telemetry: ShipmentTelemetry,
        examples: Sequence[LearningExample] = (),
    ) -> RiskAssessment:
        if not self.settings.resolved_openrouter_key():
            return self.fallback.assess(telemetry, reason="missing_api_key")
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": self.build_prompt(telemetry, examples)}],
                temperature=0.4,
                max_tokens=300,
                extra_headers={"X-Title": "FleetGuard Risk Analysis"},
            )
            content = completion.choices[0].message.content or ""
            return normalize_assessment(extract_json_object(content), source="openrouter")
        except Exception as exc:
            logger.warning(
                "OpenRouter analysis failed; using deterministic assessment",
                route_id=telemetry.route_id,
                error=str(exc),
            )
            return self.fallback.assess(telemetry, reason=type(exc).__name__)


def build_risk_analyzer(settings: Settings) -> RiskAnalyzer:
    if settings.resolved_openrouter_key():
        logger.info("Using OpenRouter risk analyzer", model=settings.openrouter_model)
        return OpenRouterRiskAnalyzer(settings)
    logger.info("Using deterministic risk analyzer (OPENROUTER_API_KEY not set)")
    return HeuristicRiskAnalyzer()
