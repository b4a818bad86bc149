import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from .config import settings
from .container import Services
from .database import get_db
from .deps import get_optional_user, get_services, rate_limit
from .errors import BadRequestError, ServiceUnavailable
from .models import STRAVA_PROVIDER, Account, User
from .rate_limit import RateLimits
from .responses import success_response
from .security import SESSION_COOKIE, create_access_token

router = APIRouter()
logger = logging.getLogger(__name__)

STRAVA_AUTHORIZE_URL = "https://www.strava.com/oauth/authorize"
STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"

@router.post("/strava/start", dependencies=[Depends(rate_limit(RateLimits.AUTH, authenticated=False))])
def start_strava_auth():
    """
    Returns the Strava OAuth URL.
    Frontend should redirect the user to this URL.
    """
    if not settings.STRAVA_CLIENT_ID:
        raise ServiceUnavailable("Strava OAuth")

    params = {
        "client_id": settings.STRAVA_CLIENT_ID,
        "response_type": "code",
        "redirect_uri": settings.REDIRECT_URI,
        "approval_prompt": "auto",
        "scope": settings.STRAVA_SCOPE,
    }
    return success_response({"url": f"{STRAVA_AUTHORIZE_URL}?{urlencode(params)}"})

@router.get("/strava/callback", dependencies=[Depends(rate_limit(RateLimits.AUTH, authenticated=False))])
async def strava_callback(
    code: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: Optional[User] = Depends(get_optional_user),
    services: Services = Depends(get_services),
):
    """
    Handle Strava OAuth callback.
    Exchange code for tokens, link the Strava account, and redirect to the frontend.
    """
    if error or not code:
        logger.warning(f"Strava authorization denied: {error}")
        return RedirectResponse(url=f"{settings.FRONTEND_URL}/dashboard?error=strava_denied")

    if not settings.STRAVA_CLIENT_ID or not settings.STRAVA_CLIENT_SECRET:
        raise ServiceUnavailable("Strava OAuth")

    try:
        response = await services.http.post(
            STRAVA_TOKEN_URL,
            data={
                "client_id": settings.STRAVA_CLIENT_ID,
                "client_secret": settings.STRAVA_CLIENT_SECRET,
                "code": code,
                "grant_type": "authorization_code",
            },
            timeout=10.0,
        )
    except httpx.HTTPError as e:
        logger.error(f"Strava token exchange failed: {e}")
        raise ServiceUnavailable("Strava OAuth")

    if response.status_code != 200:
        logger.error(f"Failed to exchange Strava code: {response.status_code} {response.text}")
        raise BadRequestError("Failed to exchange Strava authorization code")

    token_data = response.json()
    athlete_data = token_data.get("athlete") or {}
    strava_id = athlete_data.get("id")
    if not strava_id:
        raise BadRequestError("Invalid response from Strava")

    account = (
        db.query(Account)
        .filter(Account.provider == STRAVA_PROVIDER, Account.provider_account_id == str(strava_id))
        .first()
    )

    user = current_user or (account.user if account else None)
    full_name = " ".join(p for p in (athlete_data.get("firstname"), athlete_data.get("lastname")) if p)
    if not user:
        user = User(name=full_name or None, profile_picture=athlete_data.get("profile"))
        db.add(user)
        db.flush()
    else:
        user.name = user.name or full_name or None
        user.profile_picture = athlete_data.get("profile") or user.profile_picture

    if not account:
        account = Account(user_id=user.id, provider=STRAVA_PROVIDER, provider_account_id=str(strava_id))
        db.add(account)
    account.user_id = user.id
    account.access_token = token_data.get("access_token")
    account.refresh_token = token_data.get("refresh_token")
    account.expires_at = token_data.get("expires_at")
    account.scope = settings.STRAVA_SCOPE
    db.commit()
    logger.info(f"Linked Strava athlete {strava_id} to user {user.id}")

    # Fresh tokens: anything cached for this user predates the connection
    services.forget_user(user.id)

    session_token = create_access_token(data={"sub": str(user.id)})
    redirect = RedirectResponse(url=f"{settings.FRONTEND_URL}/dashboard?connected=true")
    redirect.set_cookie(
        key=SESSION_COOKIE,
        value=session_token,
        httponly=True,
        secure=not settings.FRONTEND_URL.startswith("http://"),  # False for http://localhost
        samesite="lax",
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )
    return redirect

@router.post("/signout")
def sign_out():
    response = RedirectResponse(url=settings.FRONTEND_URL, status_code=303)
    response.delete_cookie(SESSION_COOKIE)
    return response
