from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str

    # Identity provider access tokens (HS256, Supabase style)
    JWT_SECRET: str
    JWT_AUDIENCE: str | None = "authenticated"
    JWT_ACCESS_MINUTES: int = 60

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    API_WORKERS: int = 2
    ALLOWED_HOSTS: str = "localhost,127.0.0.1,testserver"
    SECURITY_HEADERS_ENABLED: bool = True

    # Subscription catalog
    SUBSCRIPTION_PRODUCT_ID: str = "premium_monthly"
    PENDING_PLACEHOLDER_DAYS: int = 30

    # Google Play server-side validation (Play Developer API)
    GOOGLE_PLAY_PACKAGE_NAME: str = "in.recessclub.piggly"
    GOOGLE_PLAY_SERVICE_ACCOUNT_JSON: str | None = None
    GOOGLE_PLAY_SERVICE_ACCOUNT_EMAIL: str | None = None
    GOOGLE_PLAY_SERVICE_ACCOUNT_PRIVATE_KEY_PEM: str | None = None
    GOOGLE_PLAY_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    GOOGLE_PLAY_ANDROID_PUBLISHER_SCOPE: str = "https://www.googleapis.com/auth/androidpublisher"
    GOOGLE_PLAY_API_BASE_URL: str = "https://androidpublisher.googleapis.com/androidpublisher/v3"
    GOOGLE_PLAY_HTTP_TIMEOUT_SECONDS: int = 20

    # Resync job
    RECONCILE_BATCH_LIMIT: int = 500

settings = Settings()
