from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from .container import Services
from .database import get_db
from .errors import AuthError, RateLimitedError, StravaNotConnected, StravaReauthRequired
from .models import STRAVA_PROVIDER, User
from .rate_limit import RateLimitConfig, get_client_identifier
from .security import SESSION_COOKIE, decode_access_token
from .services.token_manager import TokenResult

def get_services(request: Request) -> Services:
    return request.app.state.services

def get_optional_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload:
        return None
    try:
        user_id = int(payload.get("sub"))
    except (ValueError, TypeError):
        return None
    return db.query(User).filter(User.id == user_id).first()

def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    # Verify signed JWT from cookie
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        raise AuthError("Not authenticated")

    payload = decode_access_token(token)
    if not payload:
        raise AuthError("Invalid or expired session")

    try:
        user_id = int(payload.get("sub"))
    except (ValueError, TypeError):
        raise AuthError("Invalid user ID in token")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise AuthError("User not found")
    return user

def rate_limit(config: RateLimitConfig, authenticated: bool = True):
    """Dependency enforcing ``config`` per user (or per client IP when anonymous)."""
    if authenticated:
        def _check(request: Request,
                   user: User = Depends(get_current_user),
                   services: Services = Depends(get_services)) -> User:
            _enforce(request, services, config, user.id)
            return user
    else:
        def _check(request: Request, services: Services = Depends(get_services)) -> None:
            _enforce(request, services, config, None)
    return _check

def _enforce(request: Request, services: Services, config: RateLimitConfig, user_id: Optional[int]) -> None:
    identifier = get_client_identifier(request, user_id)
    if not services.rate_limiter.check(identifier, config):
        raise RateLimitedError(retry_after=services.rate_limiter.seconds_until_reset(identifier))

async def require_strava_token(user: User, services: Services) -> TokenResult:
    """Valid Strava token for ``user``, distinguishing 'never connected' from 're-auth needed'."""
    result = await services.tokens.get_valid_access_token(user.id)
    if result is not None:
        return result
    if any(a.provider == STRAVA_PROVIDER for a in user.accounts):
        raise StravaReauthRequired()
    raise StravaNotConnected()
