import json
from decimal import Decimal
from typing import Any, Dict, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_COMMISSION_TIERS = [
    {"tier_name": "starter", "min_paid_referrals": 0, "rate": "0.10"},
    {"tier_name": "ambassador", "min_paid_referrals": 50, "rate": "0.15"},
    {"tier_name": "elite", "min_paid_referrals": 100, "rate": "0.18"},
]

class Settings(BaseSettings):
    # Database
    DATABASE_USER: str = "postgres"
    DATABASE_PASSWORD: str = "postgres"
    DATABASE_HOST: str = "localhost"
    DATABASE_PORT: int = 5432
    DATABASE_NAME: str = "referral_ledger"
    # Full URL override (tests, local sqlite)
    SQLALCHEMY_DATABASE_URI: str | None = None

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379

    # Admin endpoints are called by the dashboard collaborator with this key
    ADMIN_API_KEY: str = "change-me"

    # Attribution
    ATTRIBUTION_WINDOW_DAYS: int = 30
    ORIGIN_HASH_SALT: str = "referral-ledger-default-salt"
    REFERRAL_COOKIE_NAME: str = "ref_code"
    DEFAULT_REDIRECT_URL: str = "https://whop.com"
    CLICK_RATE_LIMIT: str = "30/minute"
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Commissions
    PLATFORM_RATE: Decimal = Decimal("0.20")
    MAX_SALE_AMOUNT: Decimal = Decimal("1000000")
    CUSTOM_RATE_MIN: Decimal = Decimal("0.10")
    CUSTOM_RATE_MAX: Decimal = Decimal("0.30")
    COMMISSION_TIERS_JSON: str = Field(default=json.dumps(DEFAULT_COMMISSION_TIERS))

    # Parsed from COMMISSION_TIERS_JSON
    COMMISSION_TIERS: List[Dict[str, Any]] = Field(default=[], validate_default=True)

    # Rankings / verification
    TEST_COMPANY_MARKER: str = "_test"
    RANK_RECOMPUTE_INTERVAL_MINUTES: int = 15
    CONSISTENCY_TOLERANCE: Decimal = Decimal("0.01")
    LEADERBOARD_CACHE_TTL_SECONDS: int = 300
    AGGREGATES_CACHE_TTL_SECONDS: int = 120

    SCHEDULER_TIMEZONE: str = "UTC"
    ENABLE_SCHEDULER: bool = True

    @field_validator("COMMISSION_TIERS", mode="before")
    def parse_commission_tiers(cls, v, values):
        json_str = values.data.get("COMMISSION_TIERS_JSON")
        if json_str:
            return json.loads(json_str)
        return v

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    @property
    def DATABASE_URL(self) -> str:
        if self.SQLALCHEMY_DATABASE_URI:
            return self.SQLALCHEMY_DATABASE_URI
        return f"postgresql+psycopg2://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
