from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "vc_user"
    postgres_password: str = "changeme"
    postgres_db: str = "visibility_core"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def postgres_url_sync(self) -> str:
        """For Alembic migrations (sync driver)."""
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"

    # App
    app_env: str = "development"
    app_debug: bool = True

    # Status aggregation
    crawl_weight: float = 0.5  # share of overall progress owned by extraction

    # Publish eligibility (lenient policy)
    publish_notable_confidence: float = 0.3
    publish_reference_confidence: float = 0.2
    publish_review_confidence: float = 0.7
    sandbox_mode: bool = False  # forces can_publish; never enable in production

    # Automation
    automation_interval_days: int = 30
    dispatch_batch_size: int = 100

    # Collaborator calls
    extraction_timeout_seconds: float = 300.0
    analysis_timeout_seconds: float = 300.0
    collaborator_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0

    # Collaborator implementations, as "package.module:ClassName"
    extraction_collaborator: str = ""
    analysis_collaborator: str = ""
    notability_collaborator: str = ""
    publish_collaborator: str = ""

    # History retrieval cap (applied at the persistence boundary)
    analysis_history_limit: int = 10

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on worker startup in non-test environments."""
    errors: list[str] = []

    if not 0.0 < settings.crawl_weight <= 1.0:
        errors.append("CRAWL_WEIGHT must be in (0, 1]")

    if settings.publish_reference_confidence > settings.publish_notable_confidence:
        errors.append("PUBLISH_REFERENCE_CONFIDENCE must not exceed PUBLISH_NOTABLE_CONFIDENCE")

    if settings.automation_interval_days < 1:
        errors.append("AUTOMATION_INTERVAL_DAYS must be at least 1")

    for name in ("extraction", "analysis", "notability", "publish"):
        if not getattr(settings, f"{name}_collaborator"):
            errors.append(f"{name.upper()}_COLLABORATOR must be set")

    if settings.app_env == "production":
        if settings.sandbox_mode:
            errors.append("SANDBOX_MODE must be false in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
