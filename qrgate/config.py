from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    supabase_url: str
    supabase_key: str

    # Remote tables; the fallback only exists on older deployments
    primary_table: str = "user_qr_codes"
    fallback_table: str = "event_history"
    audit_table: str = "attendance_log"

    # Origin the invite links point at
    base_url: str = "http://localhost:5173"
    qr_image_endpoint: str = "https://api.qrserver.com/v1/create-qr-code/"
    qr_image_size: int = 200

    cache_dir: str = ".qrgate-cache"
    request_timeout: float = 5.0
    # Attempts per foreign redemption; the first read counts as one
    redeem_retries: int = Field(3, ge=1)
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "QRGATE_"


@lru_cache
def get_settings() -> Settings:
    return Settings()
