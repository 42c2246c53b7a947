from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent  # project root
ENV_PATH = BASE_DIR / ".env"

# Load .env into the process environment first so cron jobs see the same values
load_dotenv(dotenv_path=ENV_PATH)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=False,
    )

    DATABASE_URL: str = "sqlite+aiosqlite:///./ticketing.db"
    SQL_ECHO: bool = False
    CREATE_TABLES_ON_STARTUP: bool = True

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"
    JWT_ACCESS_MINUTES: int = 30
    JWT_REFRESH_DAYS: int = 14

    # shared secret for the reconciliation cron endpoint
    CRON_API_KEY: str = "change-me"

    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # transaction lifecycle
    PAYMENT_WINDOW_MINUTES: int = 120
    CONFIRMATION_TIMEOUT_DAYS: int = 3
    PURCHASE_REWARD_RATE: float = 0.02

    # referral rewards
    REFERRAL_BONUS_POINTS: int = 10_000
    REFERRAL_DISCOUNT_PERCENT: int = 10

    # payment proof uploads
    UPLOAD_DIR: str = str(BASE_DIR / "uploads")
    MAX_PROOF_BYTES: int = 5 * 1024 * 1024


settings = Settings()
