"""Application settings.

Pydantic-based configuration loaded from environment variables (prefix
``MEMBERBILL_``) and an optional ``.env`` file.

Environment Variables:
- MEMBERBILL_DATABASE_URL: SQLAlchemy URL (default: sqlite:///./memberbill.db)
- MEMBERBILL_SAFETY_BUFFER_AMOUNT: Fixed routing margin (default: 1000.00)
- MEMBERBILL_SAFETY_BUFFER_PERCENT: Margin as percent of threshold (default: 0)
- MEMBERBILL_MAX_PAUSE_DAYS: Longest allowed pause window (default: 90)
- MEMBERBILL_BILLING_API_KEYS: JSON map of billing account ref to secret key
- MEMBERBILL_PLAN_PREFERRED_ENTITIES: JSON map of plan key to entity codes
"""

from decimal import Decimal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from memberbill.utils.logging import get_logger

logger = get_logger(__name__)


class Settings(BaseSettings):
    """Runtime configuration for routing, proration and the daily batch.

    Example:
        >>> settings = Settings(safety_buffer_amount=Decimal("100"))
        >>> settings.safety_buffer_for(Decimal("90000"))
        Decimal('100')
    """

    model_config = SettingsConfigDict(
        env_prefix="MEMBERBILL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Persistence
    database_url: str = Field(
        default="sqlite:///./memberbill.db",
        description="SQLAlchemy database URL",
    )

    # Routing
    safety_buffer_amount: Decimal = Field(
        default=Decimal("1000.00"),
        ge=0,
        description="Fixed money margin kept below every entity's threshold",
    )
    safety_buffer_percent: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        le=100,
        description="Margin as a percentage of threshold; the larger margin wins",
    )
    plan_preferred_entities: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Plan key -> ordered list of preferred entity codes",
    )
    confidence_high_headroom: Decimal = Field(default=Decimal("30000"), ge=0)
    confidence_medium_headroom: Decimal = Field(default=Decimal("15000"), ge=0)
    confidence_low_headroom: Decimal = Field(default=Decimal("5000"), ge=0)

    # Fiscal year
    vat_year_start_month: int = Field(default=4, ge=1, le=12)
    vat_year_start_day: int = Field(default=1, ge=1, le=28)
    default_vat_threshold: Decimal = Field(
        default=Decimal("90000.00"),
        description="Threshold assigned to new entities when none is given",
    )

    # Pauses
    max_pause_days: int = Field(default=90, ge=1, le=366)
    currency: str = Field(default="gbp", min_length=3, max_length=3)

    # External billing collaborator
    billing_call_timeout_seconds: float = Field(default=15.0, gt=0, le=300)
    billing_max_retries: int = Field(default=2, ge=0, le=10)
    billing_retry_base_delay: float = Field(default=0.5, gt=0, le=30)
    billing_api_keys: dict[str, str] = Field(
        default_factory=dict,
        description="Billing account ref -> secret API key",
    )

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)

    @field_validator("currency")
    @classmethod
    def _lowercase_currency(cls, value: str) -> str:
        return value.lower()

    def safety_buffer_for(self, vat_threshold: Decimal) -> Decimal:
        """Return the effective safety buffer for an entity threshold."""
        percent_buffer = (vat_threshold * self.safety_buffer_percent / Decimal("100")).quantize(
            Decimal("0.01")
        )
        return max(self.safety_buffer_amount, percent_buffer)

    def preferred_entities_for(self, plan_key: str | None) -> list[str]:
        """Ordered preferred entity codes for a plan (empty when none)."""
        if not plan_key:
            return []
        return list(self.plan_preferred_entities.get(plan_key, []))


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
        logger.debug(
            "settings_loaded",
            database_url=_settings.database_url,
            safety_buffer_amount=str(_settings.safety_buffer_amount),
            max_pause_days=_settings.max_pause_days,
        )
    return _settings


def reload_settings() -> Settings:
    """Drop the cached instance and re-read the environment."""
    global _settings
    _settings = None
    return get_settings()
