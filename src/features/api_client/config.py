"""Configuration models for the API client."""

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.features.api_client.codec import JsonCodec
from src.features.api_client.constants import (
    DEFAULT_ERROR_PREVIEW_LENGTH,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
)
from src.features.api_client.redact import CREDENTIAL_HEADERS
from src.features.api_client.retry import RetryPolicy


class SerializerOptions(BaseModel):
    """Options for encoding request bodies as JSON."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    include_null_values: bool = False
    enums_as_strings: bool = True
    camel_case: bool = False
    indented: bool = False

    def build_codec(self) -> JsonCodec:
        """Create a JSON codec with these options."""
        return JsonCodec(
            include_null_values=self.include_null_values,
            enums_as_strings=self.enums_as_strings,
            camel_case=self.camel_case,
            indent=2 if self.indented else None,
        )


class ClientConfig(BaseModel):
    """Configuration for an API client.

    Central configuration for one remote API including timeouts,
    retry policy, body handling and credentials.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = ""
    user_agent: Annotated[str, Field(min_length=1, max_length=500)] = (
        DEFAULT_USER_AGENT
    )
    request_timeout_s: Annotated[
        float, Field(gt=0, description="Per-attempt deadline; math.inf disables it")
    ] = DEFAULT_REQUEST_TIMEOUT_SECONDS
    allow_auto_redirect: bool = True
    ignore_server_certificate_errors: bool = False
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    always_populate_response_body: bool = False
    populate_response_body_on_parsing_error: bool = True
    error_preview_length: Annotated[int, Field(ge=0, le=10000)] = (
        DEFAULT_ERROR_PREVIEW_LENGTH
    )
    basic_auth_username: str | None = None
    basic_auth_password: str | None = None
    bearer_token: str | None = None
    cookie: str | None = None
    default_headers: dict[str, str] = Field(
        default_factory=dict, description="Headers added to every request"
    )
    serializer: SerializerOptions = Field(default_factory=SerializerOptions)

    @field_validator("default_headers")
    @classmethod
    def validate_no_auth_headers(cls, v: dict[str, str]) -> dict[str, str]:
        """Ensure credentials are not passed as plain default headers."""
        for key in v:
            if key.lower() in CREDENTIAL_HEADERS:
                msg = (
                    f"Header '{key}' must not be set as a default header; "
                    "use the credential settings instead"
                )
                raise ValueError(msg)
        return v
