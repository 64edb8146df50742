"""
Subscription tiers, monthly limits and the usage gate.

A limit of -1 means unlimited. The check and the increment are separate
reads/writes; two concurrent requests can both pass the gate.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from models import UserSubscription, UserUsage, utcnow

logger = logging.getLogger(__name__)

UNLIMITED = -1

TIERS = ("free", "starter", "pro", "premium")

SUBSCRIPTION_LIMITS = {
    "free": {
        "transactions": 5,
        "receipts": 2,
        "ai_chats": 0,
        "calendar": False,
        "advanced_insights": False,
        "custom_categories": False,
        "export_data": False,
    },
    "starter": {
        "transactions": 20,
        "receipts": 20,
        "ai_chats": 10,
        "calendar": True,
        "advanced_insights": False,
        "custom_categories": False,
        "export_data": False,
    },
    "pro": {
        "transactions": 50,
        "receipts": 50,
        "ai_chats": 100,
        "calendar": True,
        "advanced_insights": True,
        "custom_categories": True,
        "export_data": False,
    },
    "premium": {
        "transactions": UNLIMITED,
        "receipts": UNLIMITED,
        "ai_chats": UNLIMITED,
        "calendar": True,
        "advanced_insights": True,
        "custom_categories": True,
        "export_data": True,
    },
}

PLAN_DETAILS = {
    "starter": {"name": "Starter", "price": 9.99, "interval": "month"},
    "pro": {"name": "Pro", "price": 24.99, "interval": "month"},
    "premium": {"name": "Premium", "price": 49.99, "interval": "month"},
}

# action name -> counter stored in user_usage.feature_type
ACTION_FEATURES = {
    "transaction": "transactions",
    "receipt": "receipts",
    "ai_chat": "ai_chats",
}


@dataclass
class UsageCheck:
    allowed: bool
    remaining: int
    limit: int
    tier: str
    usage: int


def current_month() -> str:
    return utcnow().strftime("%Y-%m")


def feature_for_action(action: str) -> str:
    try:
        return ACTION_FEATURES[action]
    except KeyError:
        raise ValueError(f"Unknown action: {action}")


def get_user_tier(session: Session, user_id: int) -> str:
    sub = session.query(UserSubscription).filter_by(user_id=user_id).first()
    if sub and sub.status == "active" and sub.subscription_tier in TIERS:
        return sub.subscription_tier
    return "free"


def get_current_usage(session: Session, user_id: int, month: Optional[str] = None) -> dict:
    month = month or current_month()
    usage = {feature: 0 for feature in ACTION_FEATURES.values()}
    rows = (
        session.query(UserUsage)
        .filter(UserUsage.user_id == user_id, UserUsage.month_year == month)
        .all()
    )
    for row in rows:
        if row.feature_type in usage:
            usage[row.feature_type] = row.usage_count
    return usage


def evaluate_limit(limit: int, usage: int):
    """Returns (allowed, remaining) for a usage count against a limit."""
    if limit == UNLIMITED:
        return True, UNLIMITED
    return usage < limit, max(0, limit - usage)


def can_perform_action(session: Session, user_id: int, action: str) -> UsageCheck:
    feature = feature_for_action(action)
    tier = get_user_tier(session, user_id)
    limit = SUBSCRIPTION_LIMITS[tier][feature]
    usage = get_current_usage(session, user_id)[feature]
    allowed, remaining = evaluate_limit(limit, usage)
    return UsageCheck(allowed=allowed, remaining=remaining, limit=limit, tier=tier, usage=usage)


def increment_usage(session: Session, user_id: int, action: str, increment: int = 1) -> bool:
    check = can_perform_action(session, user_id, action)
    if not check.allowed:
        logger.info("Usage limit reached for user %s (%s, tier=%s)", user_id, action, check.tier)
        return False

    feature = feature_for_action(action)
    month = current_month()
    row = (
        session.query(UserUsage)
        .filter_by(user_id=user_id, feature_type=feature, month_year=month)
        .first()
    )
    if row is None:
        row = UserUsage(user_id=user_id, feature_type=feature, month_year=month, usage_count=0)
        session.add(row)
    row.usage_count += increment
    session.commit()
    return True


def has_feature_access(tier: str, feature: str) -> bool:
    limits = SUBSCRIPTION_LIMITS.get(tier)
    if limits is None:
        return False

    if feature in ACTION_FEATURES:
        return limits[ACTION_FEATURES[feature]] != 0
    if feature not in limits:
        raise ValueError(f"Unknown feature: {feature}")
    return bool(limits[feature])


def plan_summary(session: Session, user_id: int) -> dict:
    tier = get_user_tier(session, user_id)
    usage = get_current_usage(session, user_id)
    limits = SUBSCRIPTION_LIMITS[tier]
    return {
        "tier": tier,
        "is_paid": tier != "free",
        "details": PLAN_DETAILS.get(tier),
        "usage": usage,
        "limits": limits,
        "remaining": {
            feature: evaluate_limit(limits[feature], usage[feature])[1] for feature in usage
        },
    }
