"""Configuration validation models using Pydantic."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..aggregator import RankFilters, resolve_ranking_key
from ..errors import ConfigurationError


DEFAULT_RESOURCES = [
    "Images.Primary.Medium",
    "ItemInfo.Title",
    "Offers.Listings.Price",
    "Offers.Listings.SavingBasis",
    "Offers.Listings.Availability.Type",
]


class PaApiConfig(BaseModel):
    """Product Advertising API credentials and request pacing."""

    access_key: str = Field(..., min_length=1, description="PA-API access key")
    secret_key: str = Field(..., min_length=1, description="PA-API secret key")
    partner_tag: str = Field(..., min_length=1, description="Associates tracking tag")
    region: str = Field("us-east-1", description="Signing region")
    marketplace: str = Field("www.amazon.com", description="Target marketplace host")
    endpoint: str = Field("https://webservices.amazon.com/paapi5/getitems", description="GetItems endpoint URL")
    base_url: str = Field("https://www.amazon.com", description="Base for fallback detail page links")
    resources: List[str] = Field(default_factory=lambda: list(DEFAULT_RESOURCES), min_length=1)
    batch_size: int = Field(10, ge=1, le=10, description="ASINs per GetItems call (API cap is 10)")
    retry_attempts: int = Field(3, ge=1, description="Attempts per batch including the first")
    retry_delay_ms: int = Field(1000, ge=0, description="Backoff base delay")
    backoff_multiplier: float = Field(2.0, ge=1.0)
    request_delay_ms: int = Field(1100, ge=1100, description="Minimum spacing between batch requests")
    timeout_seconds: float = Field(10.0, gt=0, description="Per-request timeout")

    @field_validator("access_key", "secret_key", "partner_tag")
    @classmethod
    def strip_credentials(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("endpoint", "base_url")
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(("https://", "http://")):
            raise ValueError("must be an http(s) URL")
        return v.rstrip("/")


class FeedConfig(BaseModel):
    """Ranking and feed output settings."""

    publisher: str = Field("mula", min_length=1)
    credential: str = Field("primary", min_length=1)
    rank_by: str = Field("ordered_items", description="Ranking metric")
    top_n: Optional[int] = Field(None, ge=1, description="Products kept after ranking")
    sales_only: bool = False
    min_success_rate: float = Field(0.95, ge=0, le=1)
    strict: bool = Field(False, description="Record skipped report rows")
    sheet_name: Optional[str] = None
    fuzzy_cutoff: Optional[float] = Field(None, gt=0, le=1)
    filters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("rank_by")
    @classmethod
    def validate_rank_by(cls, v):
        try:
            return resolve_ranking_key(v)
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc


class PathsConfig(BaseModel):
    output_dir: str = "feeds"
    logs_dir: str = "logs"


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file_name: str = "asinfeed.log"

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return str(v).upper() if v is not None else "INFO"


class AppConfig(BaseModel):
    """Complete application configuration."""

    paapi: PaApiConfig
    feed: FeedConfig = Field(default_factory=FeedConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_filters(self):
        """Reject unknown filter keys up front."""
        try:
            RankFilters.from_mapping(self.feed.filters)
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc
        return self


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def load_and_validate_config(config_dict: dict) -> AppConfig:
    """
    Validate a raw configuration mapping.

    Accepts the legacy ``pa_api`` section name and camelCase keys
    (``accessKey``, ``associateTag``...) for backward compatibility.

    Args:
        config_dict: Dictionary loaded from YAML

    Returns:
        Validated AppConfig object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    data = dict(config_dict or {})
    if "paapi" not in data and "pa_api" in data:
        data["paapi"] = data.pop("pa_api")

    paapi = dict(data.get("paapi") or {})
    legacy_keys = {
        "accessKey": "access_key",
        "secretKey": "secret_key",
        "associateTag": "partner_tag",
        "partnerTag": "partner_tag",
        "batchSize": "batch_size",
        "retryAttempts": "retry_attempts",
        "retryDelayMs": "retry_delay_ms",
        "requestDelayMs": "request_delay_ms",
    }
    for old, new in legacy_keys.items():
        if old in paapi and new not in paapi:
            paapi[new] = paapi.pop(old)
    data["paapi"] = paapi

    try:
        return AppConfig(**data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {_format_validation_error(exc)}") from exc


def build_paapi_config(**kwargs: Any) -> PaApiConfig:
    """Construct a PaApiConfig, converting validation failures into ConfigurationError."""

    try:
        return PaApiConfig(**kwargs)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid PA-API configuration: {_format_validation_error(exc)}") from exc
