from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Meal Subscriptions"
    SECRET_KEY: str = "change-me-in-production"
    DATABASE_URL: str = "sqlite:///data/meal_subscriptions.db"
    DATA_DIR: Path = Path("data")
    CORS_ORIGINS: list[str] = [
        "http://localhost:5173",
        "http://localhost:8080",
    ]
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_HOURS: int = 168
    ADMIN_JWT_EXPIRY_HOURS: int = 12
    ADMIN_USERNAME: str = "kitchenadmin"
    ADMIN_PASSWORD: str = "K1tchen!Admin"
    ADMIN_DISPLAY_NAME: str = "Kitchen Admin"
    SECURITY_HEADERS_ENABLED: bool = True
    SECURITY_CSP: str = (
        "default-src 'self'; "
        "img-src 'self' data: blob:; "
        "style-src 'self' 'unsafe-inline'; "
        "script-src 'self'; "
        "connect-src 'self' https:; "
        "frame-ancestors 'none'; "
        "base-uri 'self';"
    )
    DB_SLOW_QUERY_THRESHOLD_MS: float = 500.0

    # Delivery scheduling is a local-calendar concept: every "today" and every
    # cutoff comparison is evaluated in this timezone.
    APP_TIMEZONE: str = "Asia/Kolkata"
    PAUSE_REQUEST_CUTOFF_MINUTES: int | None = 120
    PAUSE_REQUEST_CUTOFF_HOURS: float | None = None  # legacy, used when minutes is unset
    SKIP_REQUEST_CUTOFF_MINUTES: int | None = 120
    DELIVERY_LIST_MAX_RANGE_DAYS: int = 31
    UPCOMING_DELIVERY_TOPUP_DAYS: int = 14

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    @property
    def pause_cutoff_minutes(self) -> int:
        if self.PAUSE_REQUEST_CUTOFF_MINUTES and self.PAUSE_REQUEST_CUTOFF_MINUTES > 0:
            return int(self.PAUSE_REQUEST_CUTOFF_MINUTES)
        if self.PAUSE_REQUEST_CUTOFF_HOURS and self.PAUSE_REQUEST_CUTOFF_HOURS > 0:
            return int(self.PAUSE_REQUEST_CUTOFF_HOURS * 60)
        return 120

    @property
    def skip_cutoff_minutes(self) -> int:
        if self.SKIP_REQUEST_CUTOFF_MINUTES and self.SKIP_REQUEST_CUTOFF_MINUTES > 0:
            return int(self.SKIP_REQUEST_CUTOFF_MINUTES)
        return 120

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.SECRET_KEY == "change-me-in-production":
            errors.append("SECRET_KEY must be changed from the default value")
        if self.ADMIN_PASSWORD == "K1tchen!Admin":
            errors.append("ADMIN_PASSWORD must be changed from the default value")
        if self.DATABASE_URL.startswith("sqlite") and ":memory:" in self.DATABASE_URL:
            errors.append("DATABASE_URL must point at persistent storage")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
