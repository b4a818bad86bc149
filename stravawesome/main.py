import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import router as auth_router
from .config import settings
from .container import Services, build_services
from .database import Base, SessionLocal, engine
from .errors import ApiError, RateLimitedError
from .responses import error_response
from .routes import router as api_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup
        Base.metadata.create_all(bind=engine)
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings, SessionLocal)
        app.state.services.rate_limiter.start_sweeper()
        logger.info(f"StravAwesome API started ({settings.ENVIRONMENT})")
        yield
        await app.state.services.aclose()

    app = FastAPI(title="StravAwesome API", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        headers = None
        if isinstance(exc, RateLimitedError) and exc.retry_after:
            headers = {"Retry-After": str(exc.retry_after)}
        details = exc.details if settings.is_development else None
        return error_response(exc.message, exc.status_code, exc.code, details, headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(str(exc.detail), exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response("Invalid request", 400, "BAD_REQUEST", jsonable_encoder(exc.errors()))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=exc)
        details = str(exc) if settings.is_development else None
        return error_response("Internal server error", 500, "INTERNAL_ERROR", details)

    app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
    app.include_router(api_router, prefix="/api", tags=["api"])

    @app.get("/")
    def read_root():
        return {"message": "StravAwesome API is running"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("stravawesome.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
