from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import asdict
from typing import Any, Mapping, Sequence

from glasswallet.domain.intelligence import engine
from glasswallet.domain.intelligence.schemas import BatchLeadPayload, LeadFeaturesPayload
from glasswallet.shared.naming import to_camel

logger = logging.getLogger(__name__)

BATCH_CONCURRENCY = 5


def to_features(payload: LeadFeaturesPayload) -> engine.LeadFeatures:
    return engine.LeadFeatures(**payload.model_dump())


def _camel(data: Mapping[str, Any]) -> dict[str, Any]:
    return {to_camel(key): value for key, value in data.items()}


def score_payload(score: engine.LeadScore) -> dict[str, Any]:
    return _camel(asdict(score))


def anomaly_payload(anomaly: engine.AnomalyReport) -> dict[str, Any]:
    return _camel(asdict(anomaly))


async def score_lead(lead_id: str, features: LeadFeaturesPayload) -> dict[str, Any]:
    score = engine.score_lead(lead_id, to_features(features))
    logger.info(
        "ai_lead_scored",
        extra={"extra": {"lead_id": lead_id, "score": score.overall_score, "action": score.recommended_action}},
    )
    return score_payload(score)


async def detect_anomalies(lead_id: str, features: LeadFeaturesPayload) -> dict[str, Any]:
    anomaly = engine.detect_anomalies(lead_id, to_features(features))
    if anomaly.flagged:
        logger.warning(
            "ai_anomaly_flagged",
            extra={"extra": {"lead_id": lead_id, "type": anomaly.anomaly_type, "score": anomaly.anomaly_score}},
        )
    return anomaly_payload(anomaly)


def _action_plan(
    qualification: engine.Qualification, routing: Mapping[str, Any], anomaly: engine.AnomalyReport
) -> list[dict[str, str]]:
    plan: list[dict[str, str]] = []
    if qualification.auto_approved:
        plan.append(
            {
                "action": "Route to sales agent immediately",
                "priority": "urgent",
                "timeline": "within 15 minutes",
                "reasoning": "High-quality auto-approved lead requires immediate attention",
            }
        )
        plan.append(
            {
                "action": f"Contact via {routing['preferredChannel']}",
                "priority": "high",
                "timeline": routing["followUpTiming"],
                "reasoning": "Preferred contact method and timing",
            }
        )
    if qualification.requires_review:
        plan.append(
            {
                "action": "Flag for manual review",
                "priority": "urgent" if anomaly.flagged else "high",
                "timeline": "immediate" if anomaly.flagged else "within 2 hours",
                "reasoning": qualification.reasoning,
            }
        )
        if anomaly.flagged:
            plan.append(
                {
                    "action": "Conduct fraud verification checks",
                    "priority": "urgent",
                    "timeline": "immediate",
                    "reasoning": f"{anomaly.anomaly_type} anomaly detected",
                }
            )
    if qualification.status == "disqualified":
        plan.append(
            {
                "action": "Add to nurture campaign",
                "priority": "low",
                "timeline": "within 24 hours",
                "reasoning": "Keep disqualified leads engaged for future opportunities",
            }
        )
    if qualification.qualified:
        plan.append(
            {
                "action": "Apply recommended tags",
                "priority": "medium",
                "timeline": "immediate",
                "reasoning": "Enable better lead tracking and future optimization",
            }
        )
    return plan


async def auto_qualify(lead_id: str, features: LeadFeaturesPayload, *, bypass_thresholds: bool = False) -> dict[str, Any]:
    lead_features = to_features(features)
    score = engine.score_lead(lead_id, lead_features)
    anomaly = engine.detect_anomalies(lead_id, lead_features)
    qualification = engine.qualify(score, anomaly, lead_features, bypass_thresholds=bypass_thresholds)
    routing = engine.route_lead(score)
    logger.info(
        "ai_lead_auto_qualified",
        extra={"extra": {"lead_id": lead_id, "status": qualification.status, "score": score.overall_score}},
    )
    return {
        "qualification": _camel(asdict(qualification)),
        "leadScore": {
            "overall": score.overall_score,
            "conversionProbability": score.conversion_probability,
            "recommendedAction": score.recommended_action,
            "predictiveInsights": score.predictive_insights,
        },
        "anomalyDetection": {
            "flagged": anomaly.flagged,
            "riskLevel": anomaly.risk_level,
            "anomalyType": anomaly.anomaly_type,
            "explanation": anomaly.explanation,
        },
        "routing": routing,
        "actionPlan": _action_plan(qualification, routing, anomaly),
        "tags": engine.intelligent_tags(score, lead_features),
        "signals": engine.as_signals(score, anomaly),
        "bypassedThresholds": bypass_thresholds,
    }


async def _qualify_one(index: int, lead: BatchLeadPayload, rules: Mapping[str, Any]) -> dict[str, Any]:
    if not lead.lead_id or lead.features is None:
        return {
            "leadId": lead.lead_id or f"unknown_{index}",
            "success": False,
            "error": {"code": "PROCESSING_ERROR", "message": f"Lead {index}: leadId and features are required"},
        }
    features = to_features(lead.features)
    score = engine.score_lead(lead.lead_id, features)
    anomaly = engine.detect_anomalies(lead.lead_id, features)
    qualification = engine.apply_custom_rules(engine.qualify(score, anomaly, features), score, anomaly, rules)
    return {
        "leadId": lead.lead_id,
        "success": True,
        "qualification": _camel(asdict(qualification)),
        "score": {
            "overall": score.overall_score,
            "conversionProbability": score.conversion_probability,
            "fraudRiskScore": score.fraud_risk_score,
            "recommendedAction": score.recommended_action,
        },
        "anomaly": {"flagged": anomaly.flagged, "score": anomaly.anomaly_score, "type": anomaly.anomaly_type},
        "tags": engine.intelligent_tags(score, features),
    }


def _batch_summary(successful: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    if not successful:
        return {"qualificationRate": 0, "averageScore": 0, "topPerformingTags": [], "anomalyRate": 0, "recommendedActions": {}}
    total = len(successful)
    tag_counts: dict[str, int] = {}
    action_counts: dict[str, int] = {}
    for result in successful:
        for tag in result["tags"]:
            tag_counts[tag] = tag_counts.get(tag, 0) + 1
        action = result["score"]["recommendedAction"]
        action_counts[action] = action_counts.get(action, 0) + 1
    top_tags = sorted(tag_counts.items(), key=lambda item: (-item[1], item[0]))[:5]
    overall = [result["score"]["overall"] for result in successful]
    return {
        "qualificationRate": round(sum(1 for r in successful if r["qualification"]["qualified"]) / total * 100),
        "averageScore": round(sum(overall) / total),
        "topPerformingTags": [
            {"tag": tag, "count": count, "percentage": round(count / total * 100)} for tag, count in top_tags
        ],
        "anomalyRate": round(sum(1 for r in successful if r["anomaly"]["flagged"]) / total * 100),
        "recommendedActions": action_counts,
        "qualityDistribution": {
            "highQuality": sum(1 for value in overall if value >= 80),
            "mediumQuality": sum(1 for value in overall if 60 <= value < 80),
            "lowQuality": sum(1 for value in overall if value < 60),
        },
    }


async def batch_qualify(leads: Sequence[BatchLeadPayload], rules: Mapping[str, Any]) -> dict[str, Any]:
    """Qualify up to 50 leads, at most ``BATCH_CONCURRENCY`` at a time.

    A lead that cannot be processed is reported under ``errors``; it never fails the batch.
    """
    started = time.perf_counter()
    results: list[dict[str, Any]] = []
    for offset in range(0, len(leads), BATCH_CONCURRENCY):
        chunk = leads[offset : offset + BATCH_CONCURRENCY]
        results.extend(
            await asyncio.gather(
                *(_qualify_one(offset + index, lead, rules) for index, lead in enumerate(chunk))
            )
        )
    successful = [result for result in results if result["success"]]
    failed = [result for result in results if not result["success"]]
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    batch_id = f"batch_{int(time.time() * 1000)}_{secrets.token_hex(3)}"
    logger.info(
        "ai_batch_qualified",
        extra={"extra": {"batch_id": batch_id, "total": len(leads), "failed": len(failed)}},
    )
    return {
        "batchId": batch_id,
        "results": successful,
        "errors": failed,
        "summary": _batch_summary(successful),
        "batchProcessing": {
            "totalLeads": len(leads),
            "successful": len(successful),
            "failed": len(failed),
            "processingTimeMs": elapsed_ms,
            "averageProcessingTimeMs": round(elapsed_ms / len(leads)) if leads else 0,
            "concurrencyUsed": BATCH_CONCURRENCY,
        },
        "qualificationRules": dict(rules),
    }


def recommendations(context: str) -> list[dict[str, Any]]:
    return engine.recommendations(context)
