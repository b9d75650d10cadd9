
from typing import Annotated, List
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

class Settings(BaseSettings):
    ENV: str = "dev"
    LOG_DIR: str = "logs"
    DATABASE_URL: str = ""  # empty -> sqlite file under ./data

    # 32 bytes as hex (64 chars) or base64 (44 chars)
    TOKEN_ENC_KEY: str = ""
    # falls back to TOKEN_ENC_KEY when unset
    STATE_SECRET: str = ""

    API_INTERNAL_KEY: str = ""
    INTERNAL_ALLOWED_IPS: Annotated[List[str], NoDecode] = []
    CORS_ORIGINS: Annotated[List[str], NoDecode] = []

    PROVIDER_CLIENT_KEY: str = ""
    PROVIDER_CLIENT_SECRET: str = ""
    PROVIDER_REDIRECT_URI: str = ""
    PROVIDER_AUTH_URL: str = "https://www.tiktok.com/v2/auth/authorize/"
    PROVIDER_API_BASE: str = "https://open.tiktokapis.com"
    PROVIDER_SCOPES: Annotated[List[str], NoDecode] = ["user.info.basic", "user.info.stats", "video.list"]
    OAUTH_STATE_TTL_SECONDS: int = 600

    SYNC_CONCURRENCY: int = 20
    VIDEO_SYNC_CONCURRENCY: int = 20
    VIDEO_SYNC_MAX_VIDEOS: int = 500
    TOKEN_REFRESH_WINDOW_HOURS: int = 24

    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_PER_IP: int = 120
    OAUTH_RATE_LIMIT_PER_MINUTE: int = 10
    ADMIN_RATE_LIMIT_PER_MINUTE: int = 100
    STRICT_RATE_LIMIT_PER_MINUTE: int = 5
    AUTH_MAX_ATTEMPTS: int = 5
    AUTH_WINDOW_SECONDS: int = 900
    AUTH_BLOCK_SECONDS: int = 1800
    RATE_LIMIT_CLEANUP_SECONDS: int = 300

    CRON_ENABLED: bool = True
    CRON_REFRESH_TOKENS: str = "30 1 * * *"
    CRON_SYNC_USER_DAILY: str = "0 2 * * *"
    CRON_SYNC_VIDEO_DAILY: str = "30 2 * * *"
    TZ: str = "UTC"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("INTERNAL_ALLOWED_IPS", "CORS_ORIGINS", "PROVIDER_SCOPES", mode="before")
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("SYNC_CONCURRENCY", "VIDEO_SYNC_CONCURRENCY")
    @classmethod
    def positive_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("concurrency must be >= 1")
        return v

    @property
    def state_secret(self) -> str:
        return self.STATE_SECRET or self.TOKEN_ENC_KEY

settings = Settings()
