from functools import lru_cache
import json
import os
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


# Comma separated env values; the validator below splits them.
CsvList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    environment: str = Field(default="development", validation_alias=AliasChoices("ENVIRONMENT"))
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL"))

    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: str = ""
    supabase_jwt_secret: str = ""
    supabase_jwt_audience: str = "authenticated"
    supabase_storage_bucket: str = "service-request-photos"
    database_url: str = ""
    auto_create_schema: bool = False

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    allow_insecure_webhooks: bool = Field(
        default=False,
        validation_alias=AliasChoices("ALLOW_INSECURE_WEBHOOKS"),
    )
    public_app_url: str = "http://localhost:5173"
    pending_payment_expiry_minutes: int = 60

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: CsvList = Field(
        default_factory=lambda: [
            "phone",
            "customer_phone",
            "contact_phone",
            "email",
            "contact_email",
            "address",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    dashboard_refresh_seconds: int = 30
    dashboard_sse_max_connections: int = 20
    max_request_images: int = 3
    max_image_bytes: int = 2 * 1024 * 1024

    rate_limit_webhook_enabled: bool = True
    rate_limit_stripe_ip_per_min: int = 120
    rate_limit_auth_ip_per_min: int = 20
    rate_limit_api_enabled: bool = False
    rate_limit_api_per_min: int = 300

    alert_window_seconds: int = 3600
    # Entries of the form ACTION=N override the built-in thresholds; N=0 disables an action.
    alert_thresholds: CsvList = Field(default_factory=list)

    enable_recurring_jobs: bool = False
    enable_chat_assistant: bool = True
    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    admin_ip_allowlist_raw: str = Field(
        default="",
        validation_alias=AliasChoices("ADMIN_IP_ALLOWLIST"),
    )

    trusted_proxy_cidrs: CsvList = Field(default_factory=list)
    cors_allow_origins: CsvList = Field(default_factory=list)
    cors_allow_methods: CsvList = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PUT",
        "PATCH",
        "DELETE",
        "OPTIONS",
    ])
    cors_allow_headers: CsvList = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
        "Stripe-Signature",
    ])

    @field_validator(
        "trusted_proxy_cidrs",
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        "alert_thresholds",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def admin_ip_allowlist(self) -> list[str]:
        return _parse_list_value(self.admin_ip_allowlist_raw)

    @property
    def is_production(self) -> bool:
        env = os.getenv("ENVIRONMENT", self.environment) or ""
        return env.strip().lower() in {"production", "prod"}

    def validate_required_config(self) -> list[str]:
        """Return human readable problems with the current configuration."""
        errors: list[str] = []
        if not self.database_url:
            errors.append("DATABASE_URL is not set")
        if not self.supabase_jwt_secret and not self.supabase_url:
            errors.append("SUPABASE_JWT_SECRET or SUPABASE_URL is required for token verification")
        if self.stripe_secret_key and not self.stripe_webhook_secret and not self.allow_insecure_webhooks:
            errors.append("STRIPE_WEBHOOK_SECRET is required when STRIPE_SECRET_KEY is set")
        if self.allow_insecure_webhooks and self.is_production:
            errors.append("ALLOW_INSECURE_WEBHOOKS must be false in production")
        if self.dashboard_refresh_seconds <= 0:
            errors.append("DASHBOARD_REFRESH_SECONDS must be positive")
        if self.max_request_images <= 0:
            errors.append("MAX_REQUEST_IMAGES must be positive")
        return errors


@lru_cache
def get_settings() -> Settings:
    return Settings()
