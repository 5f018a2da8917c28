"""Application settings powered by Pydantic BaseSettings."""

import math

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.features.api_client.config import ClientConfig, SerializerOptions
from src.features.api_client.constants import (
    DEFAULT_ERROR_PREVIEW_LENGTH,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_RETRY_JITTER_MS,
    DEFAULT_RETRY_WAIT_SECONDS,
    DEFAULT_TOO_MANY_REQUESTS_WAIT_SECONDS,
    DEFAULT_USER_AGENT,
)
from src.features.api_client.retry import RetryPolicy
from src.features.observability.logging import configure_logging


class AppSettings(BaseSettings):
    """Centralized environment configuration.

    Every field is read from an ``API_CLIENT_`` prefixed environment
    variable or from ``.env``.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_CLIENT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    base_url: str = ""
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout_s: float = Field(
        default=DEFAULT_REQUEST_TIMEOUT_SECONDS,
        description="Per-attempt deadline; 0 or a negative value disables it",
    )
    allow_auto_redirect: bool = True
    ignore_server_certificate_errors: bool = False

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_wait_s: float = DEFAULT_RETRY_WAIT_SECONDS
    retry_jitter_ms: int = DEFAULT_RETRY_JITTER_MS
    use_exponential_wait: bool = False
    too_many_requests_wait_s: float = DEFAULT_TOO_MANY_REQUESTS_WAIT_SECONDS
    retry_status_codes: list[int] | None = None
    retry_methods: list[str] | None = None

    always_populate_response_body: bool = False
    populate_response_body_on_parsing_error: bool = True
    error_preview_length: int = DEFAULT_ERROR_PREVIEW_LENGTH

    basic_auth_username: str | None = None
    basic_auth_password: str | None = None
    bearer_token: str | None = None
    cookie: str | None = None

    serializer_include_null_values: bool = False
    serializer_camel_case: bool = False

    log_level: str = "INFO"
    log_json: bool = True

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy from these settings."""
        overrides: dict[str, object] = {}
        if self.retry_status_codes is not None:
            overrides["retry_status_codes"] = frozenset(self.retry_status_codes)
        if self.retry_methods is not None:
            overrides["retry_methods"] = frozenset(self.retry_methods)
        return RetryPolicy(
            max_retries=self.max_retries,
            wait_s=self.retry_wait_s,
            jitter_ms=self.retry_jitter_ms,
            use_exponential_wait=self.use_exponential_wait,
            too_many_requests_wait_s=self.too_many_requests_wait_s,
            **overrides,
        )

    def to_client_config(self) -> ClientConfig:
        """Build an API client configuration from these settings."""
        timeout_s = self.request_timeout_s if self.request_timeout_s > 0 else math.inf
        return ClientConfig(
            base_url=self.base_url,
            user_agent=self.user_agent,
            request_timeout_s=timeout_s,
            allow_auto_redirect=self.allow_auto_redirect,
            ignore_server_certificate_errors=self.ignore_server_certificate_errors,
            retry_policy=self.retry_policy(),
            always_populate_response_body=self.always_populate_response_body,
            populate_response_body_on_parsing_error=(
                self.populate_response_body_on_parsing_error
            ),
            error_preview_length=self.error_preview_length,
            basic_auth_username=self.basic_auth_username,
            basic_auth_password=self.basic_auth_password,
            bearer_token=self.bearer_token,
            cookie=self.cookie,
            serializer=SerializerOptions(
                include_null_values=self.serializer_include_null_values,
                camel_case=self.serializer_camel_case,
            ),
        )

    def configure_logging(self) -> None:
        """Configure structured logging from these settings."""
        configure_logging(level=self.log_level, json_format=self.log_json)


def get_settings() -> AppSettings:
    """Get a settings instance."""
    return AppSettings()
