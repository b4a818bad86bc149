"""
Premium subscriptions: Polar.sh checkout links, webhook processing and
premium status checks.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from ..models import Subscription, User

logger = logging.getLogger(__name__)

POLAR_CHECKOUT_URL = "https://polar.sh/checkout"
DEFAULT_PERIOD = timedelta(days=365)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_period_end(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def build_checkout_url(price_id: str, email: str, user_id: int, frontend_url: str) -> str:
    query = urlencode({
        "price": price_id,
        "email": email,
        "success_url": f"{frontend_url}/dashboard?checkout=success",
        "metadata[userId]": str(user_id),
    })
    return f"{POLAR_CHECKOUT_URL}?{query}"


def _upsert_subscription(db: Session, user_id: int, **fields) -> Subscription:
    subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
    if subscription is None:
        subscription = Subscription(user_id=user_id, plan="annual", **fields)
        db.add(subscription)
    else:
        for name, value in fields.items():
            setattr(subscription, name, value)
    db.commit()
    return subscription


def handle_polar_event(db: Session, payload: Dict[str, Any]) -> None:
    event_type = payload.get("type")
    data = payload.get("data") or {}
    logger.info(f"Polar webhook received: {event_type}")

    if event_type == "checkout.created":
        logger.info(f"Checkout created: {data.get('id')}")

    elif event_type == "order.created":
        user_id = (data.get("metadata") or {}).get("userId")
        logger.info(f"Order created: {data.get('id')} (user {user_id})")
        if not user_id:
            return
        period_end = parse_period_end((data.get("subscription") or {}).get("current_period_end"))
        _upsert_subscription(
            db,
            int(user_id),
            status="active",
            polar_subscription_id=data.get("subscription_id") or data.get("id"),
            current_period_end=period_end or _utcnow() + DEFAULT_PERIOD,
        )
        logger.info(f"Subscription activated for user {user_id}")

    elif event_type in ("subscription.created", "subscription.updated"):
        logger.info(f"Subscription event: {data.get('id')} status={data.get('status')}")
        email = data.get("user_email")
        user = db.query(User).filter(User.email == email).first() if email else None
        if user is None:
            logger.warning(f"No user found for subscription {data.get('id')}")
            return
        _upsert_subscription(
            db,
            user.id,
            status=data.get("status") or "active",
            polar_subscription_id=data.get("id"),
            current_period_end=parse_period_end(data.get("current_period_end")),
        )
        logger.info(f"Subscription updated via subscription event for user {user.id}")

    elif event_type in ("subscription.canceled", "subscription.revoked"):
        status = "canceled" if event_type == "subscription.canceled" else "expired"
        logger.info(f"Subscription {status}: {data.get('id')}")
        (
            db.query(Subscription)
            .filter(Subscription.polar_subscription_id == data.get("id"))
            .update({Subscription.status: status}, synchronize_session=False)
        )
        db.commit()

    else:
        logger.info(f"Unhandled webhook event: {event_type}")


def check_premium_status(db: Session, user_id: int) -> Dict[str, Any]:
    subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()

    if subscription is None:
        return {"isPremium": False, "subscription": None, "reason": "No subscription found"}

    if subscription.status != "active":
        return {
            "isPremium": False,
            "subscription": subscription.to_dict(),
            "reason": f"Subscription status: {subscription.status}",
        }

    if subscription.current_period_end and subscription.current_period_end < _utcnow():
        return {"isPremium": False, "subscription": subscription.to_dict(), "reason": "Subscription expired"}

    return {"isPremium": True, "subscription": subscription.to_dict()}
