import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class PricingPolicy(BaseModel):
    free_shipping_threshold: float = Field(100.0, ge=0)
    flat_shipping_fee: float = Field(10.0, ge=0)
    tax_rate: float = Field(0.08, ge=0, le=1)


class Settings(BaseModel):
    store_name: str = "Storefront"
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    secret_key: str = "supersecretkey"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7
    app_env: str = "production"
    log_level: str = "INFO"
    log_json: bool = False
    upload_dir: str = "uploads"
    max_avatar_bytes: int = 5 * 1024 * 1024
    cors_origins: List[str] = ["*"]
    pricing: PricingPolicy = PricingPolicy()

    @property
    def debug(self) -> bool:
        return self.app_env == "development"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@lru_cache
def get_settings() -> Settings:
    pricing = PricingPolicy(
        free_shipping_threshold=float(os.getenv("FREE_SHIPPING_THRESHOLD", 100)),
        flat_shipping_fee=float(os.getenv("SHIPPING_FEE", 10)),
        tax_rate=float(os.getenv("TAX_RATE", 0.08)),
    )
    origins = os.getenv("CORS_ORIGINS", "*")
    return Settings(
        store_name=os.getenv("STORE_NAME", "Storefront"),
        database_url=os.getenv("DATABASE_URL"),
        database_name=os.getenv("DATABASE_NAME"),
        secret_key=os.getenv("SECRET_KEY", "supersecretkey"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7)),
        app_env=os.getenv("APP_ENV", "production"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=_env_bool("LOG_JSON"),
        upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
        max_avatar_bytes=int(os.getenv("MAX_AVATAR_BYTES", 5 * 1024 * 1024)),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        pricing=pricing,
    )


def get_pricing_policy() -> PricingPolicy:
    """Pricing used at checkout. Override in tests to try other policies."""
    return get_settings().pricing
