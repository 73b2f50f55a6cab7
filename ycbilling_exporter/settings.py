from __future__ import annotations

from pydantic import AliasChoices, Field, ValidationError
from pydantic_settings import BaseSettings

from .errors import ConfigError

IAM_TOKEN_URL = "https://iam.api.cloud.yandex.net/iam/v1/tokens"
BILLING_BASE_URL = "https://billing.api.cloud.yandex.net/billing/v1/billingAccounts"

AUTH_MODES = ("auto", "oauth", "service_account")
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class Settings(BaseSettings):
    billing_account_id: str | None = Field(
        default=None, validation_alias=AliasChoices("ycbillingid", "billing_account_id")
    )
    oauth_token: str | None = Field(default=None, validation_alias=AliasChoices("token", "oauth_token"))
    service_account_id: str | None = None
    key_id: str | None = None
    private_key_file: str | None = None
    auth_mode: str = "auto"

    listen_host: str = "0.0.0.0"
    listen_port: int = 2112
    poll_interval_seconds: float = 3600.0
    http_timeout_seconds: float = 30.0
    token_refresh_margin_seconds: float = 60.0

    iam_token_url: str = IAM_TOKEN_URL
    billing_base_url: str = BILLING_BASE_URL

    log_level: str = "INFO"
    otel_exporter_otlp_endpoint: str | None = None
    otel_service_name: str = "yc-billing-exporter"

    class Config:
        env_prefix = ""
        env_file = ".env"
        case_sensitive = False
        populate_by_name = True
        frozen = True
        extra = "ignore"

    @property
    def request_timeout(self) -> float:
        """Per-request timeout, never longer than the poll interval."""
        return min(self.http_timeout_seconds, self.poll_interval_seconds)

    def resolved_auth_mode(self) -> str:
        mode = self.auth_mode.lower()
        if mode not in AUTH_MODES:
            raise ConfigError(f"AUTH_MODE must be one of {', '.join(AUTH_MODES)}, got {self.auth_mode!r}")
        if mode == "auto":
            if self.private_key_file:
                return "service_account"
            if self.oauth_token:
                return "oauth"
            raise ConfigError("either TOKEN or PRIVATE_KEY_FILE must be set")
        if mode == "oauth" and not self.oauth_token:
            raise ConfigError("TOKEN must be set when AUTH_MODE=oauth")
        if mode == "service_account" and not self.private_key_file:
            raise ConfigError("PRIVATE_KEY_FILE must be set when AUTH_MODE=service_account")
        return mode

    def check(self) -> None:
        """Raise ConfigError listing every problem with the loaded settings."""
        errors: list[str] = []
        if not self.billing_account_id:
            errors.append("YCBILLINGID not set")
        try:
            self.resolved_auth_mode()
        except ConfigError as e:
            errors.append(str(e))
        if self.poll_interval_seconds <= 0:
            errors.append(f"POLL_INTERVAL_SECONDS must be > 0, got {self.poll_interval_seconds}")
        if self.http_timeout_seconds <= 0:
            errors.append(f"HTTP_TIMEOUT_SECONDS must be > 0, got {self.http_timeout_seconds}")
        if self.token_refresh_margin_seconds < 0:
            errors.append(f"TOKEN_REFRESH_MARGIN_SECONDS must be >= 0, got {self.token_refresh_margin_seconds}")
        if self.log_level.upper() not in LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")
        if not (1 <= self.listen_port <= 65535):
            errors.append(f"LISTEN_PORT must be between 1 and 65535, got {self.listen_port}")
        if errors:
            raise ConfigError("; ".join(errors))


def load_settings(**overrides) -> Settings:
    """Load settings from the environment and validate them."""
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"invalid settings: {e}") from e
    settings.check()
    return settings
