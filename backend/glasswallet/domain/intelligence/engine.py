"""Deterministic lead intelligence.

There are no trained models behind these functions. Every output is derived
from the submitted features plus a pseudo-random jitter seeded by the lead id,
so the same lead always gets the same answer and tests can assert on it.
"""

from __future__ import annotations

import hashlib
import random
from dataclasses import dataclass, field
from typing import Any, Mapping

MODEL_VERSION = "2.6.0"

SCORING_WEIGHTS = {
    "creditScore": 0.25,
    "income": 0.20,
    "sourceChannel": 0.15,
    "formCompletion": 0.12,
    "demographics": 0.10,
    "behavioral": 0.10,
    "temporal": 0.08,
}

HIGH_QUALITY_SOURCES = ("organic_search", "referral", "direct")
MEDIUM_QUALITY_SOURCES = ("paid_search", "social_organic")

AUTO_QUALIFY_THRESHOLD = 0.8
MANUAL_REVIEW_THRESHOLD = 0.6


@dataclass(frozen=True)
class LeadFeatures:
    credit_score: int | None = None
    income: int | None = None
    source_channel: str = "direct"
    device_type: str | None = None
    time_of_day: int = 12
    day_of_week: int = 1
    form_completion_time: int = 120
    page_views: int = 1
    session_duration: int = 0
    form_fields_completed: int = 0
    required_fields_completed: int = 0
    optional_fields_completed: int = 0


@dataclass
class LeadScore:
    overall_score: int
    conversion_probability: float
    qualification_confidence: float
    fraud_risk_score: float
    recommended_action: str
    scoring_factors: list[dict[str, Any]]
    predictive_insights: dict[str, Any]
    model_version: str = MODEL_VERSION


@dataclass
class AnomalyReport:
    is_anomalous: bool
    anomaly_score: float
    anomaly_type: str
    confidence: float
    explanation: str
    recommendations: list[str] = field(default_factory=list)
    flagged: bool = False

    @property
    def risk_level(self) -> str:
        if self.anomaly_score > 0.7:
            return "high"
        if self.anomaly_score > 0.4:
            return "medium"
        return "low"


@dataclass
class Qualification:
    status: str
    qualified: bool
    confidence: float
    reasoning: str
    auto_approved: bool
    requires_review: bool


def seeded_rng(lead_id: str, salt: str) -> random.Random:
    digest = hashlib.sha256(f"{lead_id}:{salt}".encode()).hexdigest()
    return random.Random(int(digest[:16], 16))


def _completion_ratio(features: LeadFeatures) -> float:
    total = features.required_fields_completed + features.optional_fields_completed
    if total <= 0:
        return 1.0 if features.required_fields_completed else 0.0
    return features.required_fields_completed / total


def score_lead(lead_id: str, features: LeadFeatures) -> LeadScore:
    rng = seeded_rng(lead_id, "score")
    score = 50
    if features.credit_score:
        if features.credit_score >= 750:
            score += 25
        elif features.credit_score >= 700:
            score += 15
        elif features.credit_score >= 650:
            score += 5
        else:
            score -= 10
    if features.income:
        if features.income >= 75_000:
            score += 15
        elif features.income >= 50_000:
            score += 8
        elif features.income >= 35_000:
            score += 3
    if features.source_channel in HIGH_QUALITY_SOURCES:
        score += 10
    elif features.source_channel in MEDIUM_QUALITY_SOURCES:
        score += 5
    else:
        score -= 5
    ratio = _completion_ratio(features)
    score += round(ratio * 10)
    score += rng.randint(-10, 9)
    score = max(0, min(100, score))

    conversion = round(score / 100 * 0.9, 4)
    if score >= 80:
        action = "auto_approve"
    elif score >= 60:
        action = "manual_review"
    elif score >= 40:
        action = "priority_review"
    else:
        action = "reject"

    if conversion > 0.8:
        timeframe = "within 24 hours"
    elif conversion > 0.6:
        timeframe = "1-3 days"
    elif conversion > 0.4:
        timeframe = "3-7 days"
    else:
        timeframe = "1-2 weeks"
    if 14 <= features.time_of_day <= 18:
        contact_time = "2-6 PM weekdays"
    elif 9 <= features.time_of_day <= 12:
        contact_time = "9-12 AM weekdays"
    else:
        contact_time = "flexible"

    credit_contribution = (features.credit_score - 600) / 250 * 25 if features.credit_score else 0
    return LeadScore(
        overall_score=score,
        conversion_probability=conversion,
        qualification_confidence=round(0.75 + rng.random() * 0.2, 4),
        fraud_risk_score=round(rng.random() * 0.3, 4),
        recommended_action=action,
        scoring_factors=[
            {
                "factor": "Credit Score",
                "weight": SCORING_WEIGHTS["creditScore"],
                "impact": "positive" if (features.credit_score or 0) >= 700 else "negative",
                "contribution": round(credit_contribution, 2),
                "description": "Credit score indicates creditworthiness and loan qualification likelihood",
            },
            {
                "factor": "Source Quality",
                "weight": SCORING_WEIGHTS["sourceChannel"],
                "impact": "positive" if features.source_channel in HIGH_QUALITY_SOURCES else "neutral",
                "contribution": 10 if features.source_channel in HIGH_QUALITY_SOURCES else 0,
                "description": "Traffic source quality correlates with lead conversion rates",
            },
            {
                "factor": "Form Completion",
                "weight": SCORING_WEIGHTS["formCompletion"],
                "impact": "positive" if ratio > 0.8 else "neutral",
                "contribution": round(ratio * 12, 2),
                "description": "Complete form submissions indicate higher intent and engagement",
            },
        ],
        predictive_insights={
            "conversionTimeframe": timeframe,
            "bestContactTime": contact_time,
            "lifetimeValue": round(score / 100 * 15_000 + rng.random() * 5_000),
            "churnRisk": round(max(0.0, 0.3 - score / 100 * 0.25), 4),
            "upsellProbability": round(min(0.9, score / 100 * 0.7 + rng.random() * 0.2), 4),
        },
    )


def detect_anomalies(lead_id: str, features: LeadFeatures) -> AnomalyReport:
    rng = seeded_rng(lead_id, "anomaly")
    anomaly_score = round(rng.random() * 0.4, 4)
    anomaly_type = "behavioral"
    explanation = "Lead behavior appears normal"
    if features.form_completion_time < 30:
        anomaly_type = "fraud_risk"
        explanation = "Unusually fast form completion may indicate bot activity"
        anomaly_score = max(anomaly_score, 0.5)
    elif features.page_views > 20:
        explanation = "Excessive page views could indicate indecision or comparison shopping"
    is_anomalous = anomaly_score > 0.3
    return AnomalyReport(
        is_anomalous=is_anomalous,
        anomaly_score=anomaly_score,
        anomaly_type=anomaly_type,
        confidence=round(0.7 + rng.random() * 0.2, 4),
        explanation=explanation,
        recommendations=(
            ["Flag for manual review", "Verify contact information", "Cross-check with fraud databases"]
            if is_anomalous
            else ["Proceed with normal qualification process"]
        ),
        flagged=is_anomalous and anomaly_score > 0.35,
    )


def intelligent_tags(score: LeadScore, features: LeadFeatures) -> list[str]:
    tags: list[str] = []
    if score.overall_score >= 80:
        tags.append("high_quality")
    elif score.overall_score >= 60:
        tags.append("medium_quality")
    else:
        tags.append("low_quality")
    if features.source_channel == "organic_search":
        tags.append("organic_lead")
    if "paid" in features.source_channel:
        tags.append("paid_lead")
    if features.credit_score and features.credit_score >= 750:
        tags.append("excellent_credit")
    elif features.credit_score and features.credit_score >= 650:
        tags.append("good_credit")
    if features.form_completion_time < 120:
        tags.append("fast_completion")
    if features.page_views > 10:
        tags.append("high_engagement")
    if score.conversion_probability > 0.8:
        tags.append("ai_predicted_convert")
    if score.fraud_risk_score < 0.1:
        tags.append("low_fraud_risk")
    return tags


def qualification_reasoning(score: LeadScore, features: LeadFeatures) -> str:
    reasons = []
    if score.overall_score >= 80:
        reasons.append("High AI confidence score")
    if features.credit_score and features.credit_score >= 700:
        reasons.append("Strong credit profile")
    if score.conversion_probability > 0.7:
        reasons.append("High conversion probability")
    if score.fraud_risk_score < 0.2:
        reasons.append("Low fraud risk assessment")
    if not reasons:
        return "Standard qualification criteria met"
    return f"Qualified based on: {', '.join(reasons)}"


def qualify(
    score: LeadScore, anomaly: AnomalyReport, features: LeadFeatures, *, bypass_thresholds: bool = False
) -> Qualification:
    """Combine score and anomaly into a final status.

    Order matters: severe anomalies and fraud risk override a good score.
    """
    qualified = score.conversion_probability >= AUTO_QUALIFY_THRESHOLD
    manual_review = MANUAL_REVIEW_THRESHOLD <= score.conversion_probability < AUTO_QUALIFY_THRESHOLD
    confidence = score.qualification_confidence

    if anomaly.flagged and anomaly.anomaly_score > 0.8:
        return Qualification("requires_review", False, 0.95, "High-risk anomaly detected - manual review required", False, True)
    if score.fraud_risk_score > 0.6:
        return Qualification("pending_verification", False, 0.85, "Elevated fraud risk - verification required", False, True)
    if score.overall_score >= 85 and score.conversion_probability >= 0.8 and not anomaly.flagged:
        return Qualification("qualified", True, confidence, "High-quality lead with strong conversion indicators", True, False)
    if qualified and not manual_review:
        return Qualification(
            "qualified",
            True,
            confidence,
            qualification_reasoning(score, features),
            not anomaly.is_anomalous,
            anomaly.is_anomalous,
        )
    if manual_review or bypass_thresholds:
        return Qualification("requires_review", False, confidence, "Lead quality indicators suggest manual review", False, True)
    return Qualification(
        "disqualified", False, round(1 - confidence, 4), "Lead does not meet minimum qualification criteria", False, False
    )


def route_lead(score: LeadScore) -> dict[str, Any]:
    if score.overall_score >= 80:
        priority = "urgent"
    elif score.overall_score >= 60:
        priority = "high"
    elif score.overall_score >= 40:
        priority = "medium"
    else:
        priority = "low"
    if score.conversion_probability > 0.8:
        follow_up = "immediate"
    elif score.conversion_probability > 0.6:
        follow_up = "within_1h"
    elif score.conversion_probability > 0.4:
        follow_up = "within_4h"
    else:
        follow_up = "within_24h"
    return {
        "assignToAgent": "top_performer" if priority == "urgent" else "available",
        "priority": priority,
        "followUpTiming": follow_up,
        "preferredChannel": "phone" if score.overall_score >= 70 else "email",
        "estimatedCloseTime": round(score.conversion_probability * 48 + 2, 1),
    }


def apply_custom_rules(
    qualification: Qualification,
    score: LeadScore,
    anomaly: AnomalyReport,
    rules: Mapping[str, Any],
) -> Qualification:
    reasoning = qualification.reasoning
    qualified = qualification.qualified
    requires_review = qualification.requires_review
    minimum_score = rules.get("minimumScore")
    if minimum_score and score.overall_score < minimum_score:
        qualified = False
        reasoning += f" (Below minimum score threshold of {minimum_score})"
    max_fraud = rules.get("maxFraudRisk")
    if max_fraud and score.fraud_risk_score > max_fraud:
        qualified = False
        requires_review = True
        reasoning += f" (Fraud risk {score.fraud_risk_score * 100:.1f}% exceeds limit)"
    min_conversion = rules.get("minimumConversionProbability")
    if min_conversion and score.conversion_probability < min_conversion:
        qualified = False
        reasoning += f" (Conversion probability below {min_conversion * 100:.1f}% threshold)"
    if rules.get("strictAnomalyReview") and anomaly.is_anomalous:
        requires_review = True
        reasoning += " (Strict anomaly review enabled)"
    return Qualification(
        status=qualification.status if qualified == qualification.qualified else "disqualified",
        qualified=qualified,
        confidence=qualification.confidence,
        reasoning=reasoning,
        auto_approved=qualification.auto_approved and qualified,
        requires_review=requires_review,
    )


RECOMMENDATIONS: tuple[dict[str, Any], ...] = (
    {
        "type": "campaign",
        "priority": "high",
        "impact": "increase_conversions",
        "recommendation": 'Increase bid on "credit score check" keywords during peak hours (2-6 PM)',
        "expectedImpact": {"metric": "conversion_rate", "currentValue": 0.12, "projectedValue": 0.16, "confidence": 0.85},
        "implementationEffort": "low",
        "timeline": "1-2 days",
        "reasoning": "Historical data shows 33% higher conversion rates during afternoon hours",
    },
    {
        "type": "pixel",
        "priority": "medium",
        "impact": "reduce_costs",
        "recommendation": "Optimize Meta pixel targeting to exclude low-credit-score audiences",
        "expectedImpact": {
            "metric": "cost_per_qualified_lead",
            "currentValue": 45.2,
            "projectedValue": 38.5,
            "confidence": 0.78,
        },
        "implementationEffort": "medium",
        "timeline": "3-5 days",
        "reasoning": "Audiences above a 650 credit score return a better ROAS",
    },
    {
        "type": "lead_flow",
        "priority": "high",
        "impact": "improve_quality",
        "recommendation": "Add progressive profiling to capture income data earlier in funnel",
        "expectedImpact": {"metric": "lead_quality_score", "currentValue": 72, "projectedValue": 84, "confidence": 0.92},
        "implementationEffort": "medium",
        "timeline": "1 week",
        "reasoning": "Income is the second strongest predictor of qualification success",
    },
)


def recommendations(context: str) -> list[dict[str, Any]]:
    return [dict(item) for item in RECOMMENDATIONS if context == "overall" or item["type"] == context]


def as_signals(score: LeadScore, anomaly: AnomalyReport | None = None) -> dict[str, Any]:
    """Flatten a score into the attribute names auto-tagging rules can reference under ``ai.``."""
    signals: dict[str, Any] = {
        "overallScore": score.overall_score,
        "conversionProbability": score.conversion_probability,
        "qualificationConfidence": score.qualification_confidence,
        "fraudRiskScore": score.fraud_risk_score,
        "recommendedAction": score.recommended_action,
    }
    if anomaly is not None:
        signals.update(
            {
                "isAnomalous": anomaly.is_anomalous,
                "anomalyScore": anomaly.anomaly_score,
                "anomalyFlagged": anomaly.flagged,
            }
        )
    return signals
