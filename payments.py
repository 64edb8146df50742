import logging
import secrets
from datetime import datetime, timedelta, timezone

import stripe
from blinker import Namespace
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from models import User, UserSubscription, utcnow

logger = logging.getLogger(__name__)

_signals = Namespace()

# Sent with user_id, tier and status whenever a subscription row changes.
subscription_changed = _signals.signal("subscription-changed")

# Payment-link amounts in cents
AMOUNT_TIERS = {
    999: "starter",
    2499: "pro",
    4999: "premium",
}

# price id -> tier, filled from STRIPE_PRICE_IDS ("price_x:starter,price_y:pro")
PRICE_TIERS = {}


def configure(secret_key, price_ids=""):
    stripe.api_key = secret_key
    PRICE_TIERS.clear()
    for pair in (price_ids or "").split(","):
        if ":" in pair:
            price_id, tier = pair.split(":", 1)
            PRICE_TIERS[price_id.strip()] = tier.strip()


def tier_from_amount(amount):
    return AMOUNT_TIERS.get(amount, "free")


def tier_from_price_id(price_id):
    return PRICE_TIERS.get(price_id)


def payment_result(args):
    """Read the redirect's query string: ?payment=success|cancelled&session_id=..."""
    status = args.get("payment")
    if status not in ("success", "cancelled"):
        status = None
    return {"payment": status, "session_id": args.get("session_id")}


# ---------------------------
# Checkout
# ---------------------------

def create_checkout_session(user, price_id, app_url, success_url=None, cancel_url=None):
    if not stripe.api_key:
        raise RuntimeError("Stripe is not configured (missing STRIPE_SECRET_KEY).")

    checkout = stripe.checkout.Session.create(
        payment_method_types=["card"],
        line_items=[{"price": price_id, "quantity": 1}],
        mode="subscription",
        customer_email=user.email,
        metadata={"userId": str(user.id)},
        success_url=success_url or f"{app_url}/payment/success?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{app_url}/#pricing?payment=cancelled",
    )
    return checkout.url


def cancel_subscription(session: Session, user_id: int):
    sub = session.query(UserSubscription).filter_by(user_id=user_id).first()
    if sub is None or not sub.stripe_subscription_id:
        raise LookupError("No active subscription found")

    stripe.Subscription.modify(sub.stripe_subscription_id, cancel_at_period_end=True)
    sub.updated_at = utcnow()
    session.commit()
    logger.info("Subscription %s set to cancel at period end", sub.stripe_subscription_id)
    return sub


# ---------------------------
# Webhook
# ---------------------------

def construct_event(payload, signature, secret):
    """Raises ValueError on a bad payload or signature."""
    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        raise ValueError(f"Webhook signature verification failed: {e}")


def _upsert_subscription(session: Session, user_id: int, **fields):
    sub = session.query(UserSubscription).filter_by(user_id=user_id).first()
    if sub is None:
        sub = UserSubscription(user_id=user_id)
        session.add(sub)
    for key, value in fields.items():
        setattr(sub, key, value)
    sub.updated_at = utcnow()
    session.commit()
    subscription_changed.send(None, user_id=user_id, tier=sub.subscription_tier, status=sub.status)
    return sub


def _update_by_stripe_id(session: Session, stripe_subscription_id, **fields):
    sub = session.query(UserSubscription).filter_by(stripe_subscription_id=stripe_subscription_id).first()
    if sub is None:
        logger.warning("No subscription row for %s", stripe_subscription_id)
        return None
    for key, value in fields.items():
        setattr(sub, key, value)
    sub.updated_at = utcnow()
    session.commit()
    subscription_changed.send(None, user_id=sub.user_id, tier=sub.subscription_tier, status=sub.status)
    return sub


def _period(obj):
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    return (
        datetime.fromtimestamp(start, timezone.utc).replace(tzinfo=None) if start else None,
        datetime.fromtimestamp(end, timezone.utc).replace(tzinfo=None) if end else None,
    )


def _first_price_id(subscription):
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def _find_or_create_user(session: Session, checkout):
    metadata = checkout.get("metadata") or {}
    if metadata.get("userId"):
        user = session.get(User, int(metadata["userId"]))
        if user is not None:
            return user

    email = checkout.get("customer_email") or (checkout.get("customer_details") or {}).get("email")
    if not email:
        logger.error("No customer email found in checkout session %s", checkout.get("id"))
        return None

    user = session.query(User).filter_by(email=email).first()
    if user is None:
        name = (checkout.get("customer_details") or {}).get("name") or email.split("@")[0]
        # account created from payment; the user resets the password to log in
        user = User(
            email=email,
            password_hash=generate_password_hash(secrets.token_urlsafe(16)),
            full_name=name,
        )
        session.add(user)
        session.commit()
        logger.info("Created user %s from checkout %s", user.id, checkout.get("id"))
    return user


def handle_checkout_completed(session: Session, checkout):
    user = _find_or_create_user(session, checkout)
    if user is None:
        return None

    tier = None
    if checkout.get("subscription"):
        subscription = stripe.Subscription.retrieve(checkout["subscription"])
        tier = tier_from_price_id(_first_price_id(subscription))
    if tier is None:
        tier = tier_from_amount(checkout.get("amount_total"))

    now = utcnow()
    sub = _upsert_subscription(
        session,
        user.id,
        subscription_tier=tier,
        stripe_customer_id=checkout.get("customer"),
        stripe_subscription_id=checkout.get("subscription"),
        status="active",
        current_period_start=now,
        current_period_end=now + timedelta(days=30),
    )
    logger.info("Subscription activated for user %s, tier: %s", user.id, tier)
    return sub


def handle_subscription_created(session: Session, subscription):
    user_id = (subscription.get("metadata") or {}).get("userId")
    if not user_id:
        logger.error("No user ID found in subscription metadata for %s", subscription.get("id"))
        return None

    start, end = _period(subscription)
    fields = dict(
        stripe_customer_id=subscription.get("customer"),
        stripe_subscription_id=subscription.get("id"),
        status=subscription.get("status"),
        current_period_start=start,
        current_period_end=end,
    )
    tier = tier_from_price_id(_first_price_id(subscription))
    if tier:
        fields["subscription_tier"] = tier
    return _upsert_subscription(session, int(user_id), **fields)


def handle_subscription_updated(session: Session, subscription):
    start, end = _period(subscription)
    fields = dict(status=subscription.get("status"), current_period_start=start, current_period_end=end)
    tier = tier_from_price_id(_first_price_id(subscription))
    if tier:
        fields["subscription_tier"] = tier
    return _update_by_stripe_id(session, subscription.get("id"), **fields)


def handle_subscription_deleted(session: Session, subscription):
    return _update_by_stripe_id(session, subscription.get("id"), status="cancelled", subscription_tier="free")


def handle_invoice(session: Session, invoice, status):
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        return None
    return _update_by_stripe_id(session, subscription_id, status=status)


def handle_event(session: Session, event):
    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type == "checkout.session.completed":
        return handle_checkout_completed(session, obj)
    if event_type == "customer.subscription.created":
        return handle_subscription_created(session, obj)
    if event_type == "customer.subscription.updated":
        return handle_subscription_updated(session, obj)
    if event_type == "customer.subscription.deleted":
        return handle_subscription_deleted(session, obj)
    if event_type == "invoice.payment_succeeded":
        return handle_invoice(session, obj, "active")
    if event_type == "invoice.payment_failed":
        return handle_invoice(session, obj, "past_due")

    logger.info("Unhandled event type %s", event_type)
    return None
