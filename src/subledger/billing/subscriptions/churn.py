"""
Churn risk scoring.
"""

from datetime import datetime

from subledger.billing.subscriptions.models import (
    ChurnRisk,
    ChurnRiskLevel,
    Subscription,
    UserActivity,
    utcnow,
)

PAYMENT_ISSUES_WEIGHT = 30
LOW_USAGE_WEIGHT = 25
SUPPORT_ISSUES_WEIGHT = 20
NEW_SUBSCRIBER_WEIGHT = 15

HIGH_RISK_THRESHOLD = 60
MEDIUM_RISK_THRESHOLD = 30


def risk_level_for_score(score: int) -> ChurnRiskLevel:
    if score >= HIGH_RISK_THRESHOLD:
        return ChurnRiskLevel.HIGH
    if score >= MEDIUM_RISK_THRESHOLD:
        return ChurnRiskLevel.MEDIUM
    return ChurnRiskLevel.LOW


def calculate_churn_risk(
    subscription: Subscription,
    activity: UserActivity | None = None,
    now: datetime | None = None,
) -> ChurnRisk:
    """Additive churn score from billing, usage, support and tenure signals."""
    now = now or utcnow()
    activity = activity or UserActivity()

    score = 0
    factors: list[str] = []

    if subscription.billing_attempts > 2:
        score += PAYMENT_ISSUES_WEIGHT
        factors.append("payment_issues")

    if activity.last_login_days is not None and activity.last_login_days > 30:
        score += LOW_USAGE_WEIGHT
        factors.append("low_usage")

    if activity.support_tickets > 3:
        score += SUPPORT_ISSUES_WEIGHT
        factors.append("support_issues")

    if subscription.age_in_days(now) < 30:
        score += NEW_SUBSCRIBER_WEIGHT
        factors.append("new_subscriber")

    score = min(score, 100)
    return ChurnRisk(
        score=score,
        level=risk_level_for_score(score),
        factors=factors,
        last_calculated=now,
    )
