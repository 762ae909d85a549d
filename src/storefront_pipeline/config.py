"""Pipeline configuration loaded from the environment."""

from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_UPLOAD_TYPES: tuple[str, ...] = ("image/png", "image/jpg", "image/jpeg")


class PipelineSettings(BaseSettings):
    """Settings shared by every pipeline stage.

    Values are read from ``STOREFRONT_*`` environment variables (or a
    ``.env`` file) and can be overridden with keyword arguments.
    """

    model_config = SettingsConfigDict(
        env_prefix="STOREFRONT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Sessions
    secret_key: SecretStr = Field(..., description="Key used to sign session cookies and CSRF tokens")
    session_cookie_name: str = Field(default="storefront.sid")
    session_ttl: int = Field(default=60 * 60 * 24 * 14, gt=0, description="Session lifetime in seconds")
    cookie_secure: bool = Field(default=False)
    cookie_samesite: str = Field(default="lax")

    # Backing stores
    store_timeout: float = Field(default=2.0, gt=0, description="Upper bound for a single store call")

    # CSRF
    csrf_field_name: str = Field(default="_csrf")

    # Uploads
    upload_field_name: str = Field(default="image")
    upload_dir: Path = Field(default=Path("images"))
    allowed_upload_types: tuple[str, ...] = Field(default=DEFAULT_ALLOWED_UPLOAD_TYPES)
    images_url_path: str = Field(default="/images")

    @field_validator("secret_key")
    @classmethod
    def _secret_key_not_empty(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("secret_key must not be empty")
        return value

    @field_validator("allowed_upload_types")
    @classmethod
    def _allow_list_not_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("allowed_upload_types must contain at least one MIME type")
        return tuple(v.lower() for v in value)
