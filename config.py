from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env.local", env_file_encoding="utf-8", extra="ignore")

    # Firebase
    GOOGLE_APPLICATION_CREDENTIALS: Optional[str] = None
    FIREBASE_CREDENTIALS_JSON_STRING: Optional[str] = None
    ITEMS_COLLECTION: str = "items"
    NOTIFICATIONS_COLLECTION: str = "notifications"

    # Text / evaluation provider (OpenAI chat completions)
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL_NAME: str = "gpt-4o-mini"

    # Vision provider (Google Cloud Vision REST)
    GOOGLE_CLOUD_VISION_API_KEY: Optional[str] = None
    VISION_API_URL: str = "https://vision.googleapis.com/v1/images:annotate"
    VISION_MAX_RESULTS: int = 20

    # Every remote call carries its own timeout (seconds)
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    SIGNATURE_CACHE_TTL_SECONDS: int = 60 * 60 * 24

    # Matching
    MATCH_MAX_CONCURRENCY: int = 4
    SIGNIFICANT_MATCH_SCORE: float = 55.0
    HIGH_CONFIDENCE_SCORE: float = 75.0
    MAX_MATCH_DISTANCE_KM: float = 100.0
    LEXICAL_MATCH_THRESHOLD: float = 0.5

    # Notifications
    NOTIFY_COOLDOWN_SECONDS: float = 5.0
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    SMTP_SENDER: str = "no-reply@example.com"

    # Logging
    LOG_DIR: str = "logs"
    LOG_JSON: bool = False


settings = Settings()
