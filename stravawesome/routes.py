import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import settings
from .container import Services
from .database import get_db
from .deps import get_services, rate_limit, require_strava_token
from .errors import BadRequestError, ServiceUnavailable, StravaUnavailable
from .models import STRAVA_PROVIDER, Goal, User
from .rate_limit import RateLimits
from .responses import success_response
from .services.analytics import build_insights, weekly_chart
from .services.billing import build_checkout_url, check_premium_status, handle_polar_event
from .services.coach import build_system_prompt, build_training_context, sanitize_message, summarize_for_client
from .services.strava_client import is_degraded

router = APIRouter()
logger = logging.getLogger(__name__)

RECENT_ACTIVITY_COUNT = 30
ACTIVITY_LIST_TTL = 15 * 60
PHOTOS_ACTIVITY_COUNT = 20
PHOTOS_ACTIVITIES_CHECKED = 15
MONTH_WINDOW_COUNT = 200
AI_ACTIVITY_COUNT = 100

GoalActivityType = Literal["Run", "Ride", "Walk", "Hike"]

class GoalIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    activity_type: GoalActivityType = Field(..., alias="activityType")
    target_distance: float = Field(..., alias="targetDistance", gt=0)

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)

class CheckoutRequest(BaseModel):
    email: Optional[str] = None

def _log_response(method: str, path: str, started: float, **context) -> None:
    duration_ms = (time.monotonic() - started) * 1000
    extra = " ".join(f"{k}={v}" for k, v in context.items())
    logger.info(f"API Response: {method} {path} 200 in {duration_ms:.0f}ms {extra}".rstrip())

def thirty_days_ago_epoch(now: Optional[datetime] = None) -> int:
    """Midnight UTC thirty days back; day granularity keeps cache keys stable."""
    now = now or datetime.now(timezone.utc)
    start = (now - timedelta(days=30)).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(start.timestamp())

def current_year() -> int:
    return datetime.now(timezone.utc).year

@router.get("/me")
def get_me(user: User = Depends(rate_limit(RateLimits.API))):
    strava = next((a for a in user.accounts if a.provider == STRAVA_PROVIDER), None)
    return success_response({
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "profile_picture": user.profile_picture,
        "strava_connected": strava is not None,
        "strava_id": strava.provider_account_id if strava else None,
    })

@router.get("/strava/activities")
async def get_recent_activities(
    user: User = Depends(rate_limit(RateLimits.DATA)),
    services: Services = Depends(get_services),
):
    """Recent activities with map data, shared across concurrent dashboard requests."""
    started = time.monotonic()
    logger.info("API Request: GET /api/strava/activities")

    async def _fetch():
        token = await require_strava_token(user, services)
        return await services.strava.fetch_activities_with_details(
            token.access_token,
            RECENT_ACTIVITY_COUNT,
            cache_key=f"activities:{user.id}:recent",
            ttl=ACTIVITY_LIST_TTL,
        )

    activities = await services.shared_data.get_or_fetch(str(user.id), _fetch)
    _log_response("GET", "/api/strava/activities", started, activities=len(activities))
    return success_response(activities)

@router.get("/strava/activities/weekly")
async def get_weekly_activities(
    year: Optional[int] = Query(None, ge=2009, le=2100),
    user: User = Depends(rate_limit(RateLimits.DATA)),
    services: Services = Depends(get_services),
):
    year = year or current_year()
    token = await require_strava_token(user, services)

    after = int(datetime(year, 1, 1, tzinfo=timezone.utc).timestamp())
    before = int(datetime(year + 1, 1, 1, tzinfo=timezone.utc).timestamp())
    activities = await services.strava.fetch_activities(
        token.access_token,
        MONTH_WINDOW_COUNT,
        cache_key=f"activities:{user.id}:year:{year}",
        ttl=ACTIVITY_LIST_TTL,
        after=after,
        before=before,
    )
    return success_response(weekly_chart(activities, year))

@router.get("/strava/insights")
async def get_insights(
    user: User = Depends(rate_limit(RateLimits.DATA)),
    services: Services = Depends(get_services),
):
    started = time.monotonic()
    logger.info("API Request: GET /api/strava/insights")

    cache_key = f"insights:{user.id}"
    cached = services.insights_cache.get(cache_key)
    if cached is not None:
        logger.info(f"Serving cached Strava insights for user {user.id}")
        _log_response("GET", "/api/strava/insights", started, cache=True)
        return success_response(cached)

    token = await require_strava_token(user, services)
    after = thirty_days_ago_epoch()
    activities = await services.strava.fetch_activities(
        token.access_token,
        MONTH_WINDOW_COUNT,
        cache_key=f"activities:{user.id}:{after}",
        ttl=ACTIVITY_LIST_TTL,
        after=after,
    )

    payload = build_insights(activities)
    if not is_degraded(activities):
        services.insights_cache.set(cache_key, payload)
    _log_response("GET", "/api/strava/insights", started, activities=len(activities))
    return success_response(payload)

@router.get("/strava/photos")
async def get_photos(
    user: User = Depends(rate_limit(RateLimits.DATA)),
    services: Services = Depends(get_services),
):
    started = time.monotonic()
    logger.info("API Request: GET /api/strava/photos")

    cache_key = f"photos:{user.id}"
    cached = services.photos_cache.get(cache_key)
    if cached is not None:
        logger.info(f"Serving cached Strava photos for user {user.id}")
        _log_response("GET", "/api/strava/photos", started, cache=True)
        return success_response(cached)

    token = await require_strava_token(user, services)
    activities = await services.strava.fetch_activities(
        token.access_token,
        PHOTOS_ACTIVITY_COUNT,
        cache_key=f"activities:{user.id}:photos",
        ttl=10 * 60,
    )

    # photo_count in the list response isn't reliable, so check each recent activity
    activities_with_photos = []
    for activity in activities[:PHOTOS_ACTIVITIES_CHECKED]:
        try:
            photos = await services.queue.enqueue(
                lambda activity_id=activity["id"]: services.strava.fetch_activity_photos(
                    token.access_token, activity_id
                ),
                request_id=f"photos_{activity['id']}",
            )
        except StravaUnavailable as e:
            logger.warning(f"Failed to fetch photos for activity {activity.get('id')}: {e}")
            continue
        if photos:
            activities_with_photos.append({"id": activity["id"], "name": activity.get("name"), "photos": photos})

    total_photos = sum(len(a["photos"]) for a in activities_with_photos)
    logger.info(
        f"Photo fetch summary: checked={min(len(activities), PHOTOS_ACTIVITIES_CHECKED)} "
        f"with_photos={len(activities_with_photos)} total_photos={total_photos}"
    )
    if not is_degraded(activities):
        services.photos_cache.set(cache_key, activities_with_photos)
    _log_response("GET", "/api/strava/photos", started, photos=total_photos)
    return success_response(activities_with_photos)

@router.post("/strava/disconnect")
async def disconnect_strava(
    user: User = Depends(rate_limit(RateLimits.API)),
    services: Services = Depends(get_services),
):
    disconnected = await services.tokens.disconnect(user.id)
    services.forget_user(user.id)
    return success_response({"disconnected": disconnected})

@router.get("/goals")
def get_goals(
    year: Optional[int] = Query(None, ge=2009, le=2100),
    user: User = Depends(rate_limit(RateLimits.API)),
    db: Session = Depends(get_db),
):
    year = year or current_year()
    goals = db.query(Goal).filter(Goal.user_id == user.id, Goal.year == year).all()
    return success_response([g.to_dict() for g in goals])

@router.post("/goals")
def upsert_goals(
    goals: List[GoalIn],
    year: Optional[int] = Query(None, ge=2009, le=2100),
    user: User = Depends(rate_limit(RateLimits.API)),
    db: Session = Depends(get_db),
):
    year = year or current_year()
    saved = []
    for goal in goals:
        row = (
            db.query(Goal)
            .filter(Goal.user_id == user.id, Goal.year == year, Goal.activity_type == goal.activity_type)
            .first()
        )
        if row is None:
            row = Goal(user_id=user.id, year=year, activity_type=goal.activity_type)
            db.add(row)
        row.target_distance = goal.target_distance
        saved.append(row)
    db.commit()
    logger.info(f"Saved {len(saved)} goals for user {user.id} ({year})")
    return success_response([g.to_dict() for g in saved], message="Goals saved")

@router.post("/ai/chat")
async def ai_chat(
    chat: ChatRequest,
    user: User = Depends(rate_limit(RateLimits.AI)),
    services: Services = Depends(get_services),
    db: Session = Depends(get_db),
):
    started = time.monotonic()
    logger.info("API Request: POST /api/ai/chat")

    message = sanitize_message(chat.message)
    if not message:
        raise BadRequestError("Message cannot be empty")

    token = await require_strava_token(user, services)
    after = thirty_days_ago_epoch()
    activities = await services.strava.fetch_activities(
        token.access_token,
        AI_ACTIVITY_COUNT,
        cache_key=f"activities:{user.id}:{after}",
        ttl=ACTIVITY_LIST_TTL,
        after=after,
    )

    year = current_year()
    goals = [g.to_dict() for g in db.query(Goal).filter(Goal.user_id == user.id, Goal.year == year).all()]
    context = build_training_context(activities, goals)

    try:
        llm = services.get_llm()
    except ValueError as e:
        logger.error(f"AI provider not configured: {e}")
        raise ServiceUnavailable("AI")

    try:
        answer = await llm.generate(prompt=message, system_instruction=build_system_prompt(context, year))
    except Exception as e:
        logger.error(f"AI completion failed: {e}", exc_info=True)
        raise ServiceUnavailable("AI") from e

    _log_response("POST", "/api/ai/chat", started, activities=len(activities), response_length=len(answer))
    return success_response({"response": answer, "trainingData": summarize_for_client(context)})

@router.post("/checkout/create")
def create_checkout(
    body: Optional[CheckoutRequest] = None,
    user: User = Depends(rate_limit(RateLimits.API)),
    db: Session = Depends(get_db),
):
    if not settings.POLAR_PRICE_ID:
        logger.error("Polar.sh not configured")
        raise ServiceUnavailable("Payment")

    email = user.email or (body.email if body else None)
    if not email:
        raise BadRequestError("An email address is required for checkout")
    if not user.email:
        # Remember it so Polar subscription events can be matched back to the user
        user.email = email
        db.commit()

    url = build_checkout_url(settings.POLAR_PRICE_ID, email, user.id, settings.FRONTEND_URL)
    logger.info(f"Created checkout URL for user {user.id}")
    return success_response({"url": url})

@router.get("/subscription/status")
def subscription_status(
    user: User = Depends(rate_limit(RateLimits.API)),
    db: Session = Depends(get_db),
):
    status = check_premium_status(db, user.id)
    logger.info(f"Subscription status for user {user.id}: premium={status['isPremium']}")
    return success_response(status)

@router.post("/webhooks/polar")
async def polar_webhook(request: Request, db: Session = Depends(get_db)):
    try:
        payload = await request.json()
        handle_polar_event(db, payload)
    except Exception as e:
        logger.error(f"Error processing Polar webhook: {e}", exc_info=True)
        db.rollback()
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})
    return {"received": True}

@router.get("/health")
def health(db: Session = Depends(get_db)):
    started = time.monotonic()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content={
            "status": "unhealthy",
            "timestamp": timestamp,
            "checks": {"database": "disconnected", "responseTime": f"{(time.monotonic() - started) * 1000:.0f}ms"},
            "error": str(e),
        })
    return {
        "status": "healthy",
        "timestamp": timestamp,
        "checks": {"database": "connected", "responseTime": f"{(time.monotonic() - started) * 1000:.0f}ms"},
        "environment": settings.ENVIRONMENT,
    }
