from __future__ import annotations

import base64
import hashlib
import hmac
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "flyfile-credentials"
    app_env: str = "development"

    database_url: str = "sqlite:///./flyfile.sqlite"

    # JWT (user identity + transfer access sessions)
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_MINUTES: int = 60

    # Base64 of 32 random bytes. Wraps TOTP secrets, file keys and webhook
    # signing keys at rest. Empty means "derive from JWT_SECRET" (dev only).
    MASTER_KEY: str = ""
    SECRET_PEPPER: str = "change-me-too"
    # HMAC key for presigned download links. Empty means "derive from
    # JWT_SECRET" so identity tokens and links never share one key.
    DOWNLOAD_URL_SECRET: str = ""

    # Argon2id for transfer passwords and API keys
    ARGON2_TIME_COST: int = 2
    ARGON2_MEMORY_COST: int = 102400  # KiB, ~100 MB
    ARGON2_PARALLELISM: int = 8

    # TOTP
    TOTP_ISSUER: str = "FlyFile"
    TOTP_VALID_WINDOW: int = 1
    TOTP_MAX_WINDOW: int = 2
    QR_CODE_ENDPOINT: str = "https://api.qrserver.com/v1/create-qr-code/?size=200x200&data="

    # Policy constants
    BACKUP_CODE_COUNT: int = 10
    WEBHOOK_FAILURE_THRESHOLD: int = 5
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    MAX_API_KEYS: int = 10
    MAX_WEBHOOKS: int = 5
    API_KEY_RATE_LIMIT: int = 60

    # Transfers
    ACCESS_SESSION_MINUTES: int = 30
    DOWNLOAD_URL_TTL_SECONDS: int = 3600
    STORAGE_ROOT: str = "./storage"
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Rate limit buckets: "<max requests>/<window seconds>"
    RATE_LIMIT_API: str = "60/60"
    RATE_LIMIT_SENSITIVE: str = "3/60"
    RATE_LIMIT_DOWNLOAD: str = "30/60"
    RATE_LIMIT_PASSWORD: str = "5/300"
    RATE_LIMIT_TWO_FACTOR: str = "5/300"

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def master_key_bytes(self) -> bytes:
        if self.MASTER_KEY:
            key = base64.b64decode(self.MASTER_KEY)
            if len(key) != 32:
                raise ValueError("MASTER_KEY must decode to 32 bytes")
            return key
        if self.is_production:
            raise RuntimeError("MASTER_KEY must be set in production")
        return hashlib.sha256(f"master:{self.JWT_SECRET}".encode("utf-8")).digest()

    @property
    def download_url_key(self) -> bytes:
        if self.DOWNLOAD_URL_SECRET:
            return self.DOWNLOAD_URL_SECRET.encode("utf-8")
        return hmac.new(self.JWT_SECRET.encode("utf-8"), b"flyfile download-url", hashlib.sha256).digest()

    def rate_limit(self, bucket: str) -> tuple[int, int]:
        raw = getattr(self, f"RATE_LIMIT_{bucket.upper()}")
        max_requests, window = raw.split("/", 1)
        return int(max_requests), int(window)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
