from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./stravawesome.db"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Strava API
    STRAVA_CLIENT_ID: str = ""
    STRAVA_CLIENT_SECRET: str = ""
    REDIRECT_URI: str = "http://localhost:8000/api/auth/strava/callback"
    STRAVA_SCOPE: str = "read,activity:read_all"

    # Strava access tuning
    STRAVA_REQUEST_TIMEOUT: float = 12.0  # seconds, activity list fetch
    STRAVA_QUEUE_DELAY: float = 0.12  # seconds between queued calls
    STRAVA_DETAIL_CONCURRENCY: int = 5
    SHARED_CACHE_TTL_SECONDS: int = 15 * 60

    # URLs
    FRONTEND_URL: str = "http://localhost:3000"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Security
    SECRET_KEY: str = "change_this_to_a_secure_random_key_in_production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 30  # 30 days

    # LLM
    LLM_PROVIDER: str = "openai"  # openai, openrouter, gemini
    LLM_MODEL: str = "gpt-4"
    OPENAI_API_KEY: str = ""
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_REFERER: str = "http://localhost:8000"
    GEMINI_API_KEY: str = ""

    # Polar.sh checkout
    POLAR_ORGANIZATION_ID: str = ""
    POLAR_PRODUCT_ID: str = ""
    POLAR_PRICE_ID: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def allowed_origins(self) -> list:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

settings = Settings()
