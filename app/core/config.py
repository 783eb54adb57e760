import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Campaign Orchestration Backend"
    env: str = "dev"

    # DATABASE
    database_url: str = "sqlite:///./campaigns.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # DELIVERY
    dispatch_batch_size: int = Field(default=50, ge=1, le=1000)
    dispatch_max_workers: int = Field(default=10, ge=1, le=200)
    vendor_provider_default: str = "simulated"
    vendor_success_rate: float = Field(default=0.9, ge=0.0, le=1.0)
    vendor_random_seed: int | None = None
    vendor_api_url: str | None = None
    vendor_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    # SCHEDULER
    scheduler_enabled: bool = True
    scheduler_interval_seconds: float = Field(default=60.0, gt=0, le=3600)
    scheduler_max_concurrent_campaigns: int = Field(default=4, ge=1, le=64)
    progress_poll_seconds: float = Field(default=5.0, gt=0, le=300)

    # AI
    ai_provider: str = "stub"
    ai_model: str = "campaign-summary-v1"
    ai_temperature: float = 0.2
    ai_max_query_chars: int = 500
    openai_api_key: str | None = None
    openai_base_url: str | None = None

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator(
        "vendor_api_url",
        "openai_api_key",
        "openai_base_url",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("vendor_provider_default", "ai_provider", mode="before")
    @classmethod
    def normalize_provider_names(cls, value: str) -> str:
        return str(value or "").strip().lower()

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        if self.vendor_provider_default == "http" and not self.vendor_api_url:
            raise ValueError("VENDOR_API_URL is required when VENDOR_PROVIDER_DEFAULT=http")

        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point at SQLite in production")
        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")
        if self.vendor_random_seed is not None:
            raise ValueError("VENDOR_RANDOM_SEED must not be set in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
