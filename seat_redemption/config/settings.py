"""Application settings using Pydantic for environment-based configuration."""
from dataclasses import dataclass
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_QUERY_INTERVAL_SECONDS = 2.0
MIN_ORDER_EXPIRE_MINUTES = 5


@dataclass(frozen=True)
class GatewayConfig:
    """Merchant credentials for one payment gateway."""

    pid: str = ""
    key: str = ""
    base_url: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.pid and self.key)


@dataclass(frozen=True)
class EngineConfig:
    """
    Feature toggles and bounds injected into the engine at construction.

    Components never read the environment themselves; everything they need
    arrives through this object.
    """

    server_query_enabled: bool = False
    server_refund_enabled: bool = True
    query_min_interval_seconds: float = 8.0
    order_expire_minutes: int = 15
    daily_order_limit: int = 0
    buyer_daily_order_limit: int = 0
    fallback_window_start_hour: int = 0
    fallback_window_end_hour: int = 8
    gateway_timeout_seconds: float = 10.0
    invite_timeout_seconds: float = 15.0
    board_scene: str = "open_accounts_board"

    def in_fallback_window(self, hour: int) -> bool:
        """Whether yesterday's pools may still be drawn at this hour."""
        return self.fallback_window_start_hour <= hour < self.fallback_window_end_hour


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="seat-redemption", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./seat_redemption.db",
        description="SQLAlchemy async connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=1, description="Number of API workers")
    public_base_url: str = Field(
        default="http://localhost:8000", description="Externally reachable base URL for notify callbacks"
    )
    allowed_origins: str = Field(
        default="http://localhost:5173,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )
    admin_api_key: str = Field(default="", description="Shared key for admin endpoints")
    admin_api_key_header: str = Field(default="X-API-Key", description="Admin API key header name")

    # Credit gateway (hosted "credit" orders)
    credit_gateway_pid: str = Field(default="", description="Credit gateway merchant id")
    credit_gateway_key: str = Field(default="", description="Credit gateway shared secret")
    credit_gateway_base_url: str = Field(default="", description="Credit gateway base URL")

    # Purchase gateway (classic QR/link orders)
    purchase_gateway_pid: str = Field(default="", description="Purchase gateway merchant id")
    purchase_gateway_key: str = Field(default="", description="Purchase gateway shared secret")
    purchase_gateway_base_url: str = Field(default="", description="Purchase gateway base URL")

    # Membership collaborator
    membership_api_url: str = Field(default="", description="Seat membership invite API (empty disables)")
    membership_api_token: str = Field(default="", description="Bearer token for the membership API")

    # Engine
    server_query_enabled: bool = Field(default=False, description="Allow active gateway queries")
    server_refund_enabled: bool = Field(default=True, description="Allow server-side refunds")
    query_min_interval_seconds: float = Field(
        default=8.0, description="Minimum seconds between active queries of one order"
    )
    order_expire_minutes: int = Field(default=15, description="Minutes before an unpaid order expires")
    daily_order_limit: int = Field(default=0, description="Orders per day across buyers (0 = unlimited)")
    buyer_daily_order_limit: int = Field(default=0, description="Orders per buyer per day (0 = unlimited)")
    fallback_window_start_hour: int = Field(default=0, description="Yesterday-pool fallback start hour")
    fallback_window_end_hour: int = Field(default=8, description="Yesterday-pool fallback end hour")
    gateway_timeout_seconds: float = Field(default=10.0, description="Gateway HTTP timeout")
    invite_timeout_seconds: float = Field(default=15.0, description="Membership invite timeout")
    board_scene: str = Field(default="open_accounts_board", description="Credit scene that backs codes")

    # Workers
    sweeper_interval_seconds: float = Field(default=60.0, description="Order sweeper period")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("credit_gateway_base_url", "purchase_gateway_base_url", "membership_api_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Strip trailing slashes and require an http(s) scheme."""
        v = v.strip().rstrip("/")
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @field_validator("fallback_window_start_hour", "fallback_window_end_hour")
    @classmethod
    def validate_hour(cls, v: int) -> int:
        """Hours are 0-24 (24 closes the window at midnight)."""
        if not 0 <= v <= 24:
            raise ValueError("Hour must be between 0 and 24")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    def credit_gateway(self) -> GatewayConfig:
        return GatewayConfig(
            pid=self.credit_gateway_pid.strip(),
            key=self.credit_gateway_key.strip(),
            base_url=self.credit_gateway_base_url,
        )

    def purchase_gateway(self) -> GatewayConfig:
        return GatewayConfig(
            pid=self.purchase_gateway_pid.strip(),
            key=self.purchase_gateway_key.strip(),
            base_url=self.purchase_gateway_base_url,
        )

    def engine_config(self) -> EngineConfig:
        """Build the engine configuration, applying the lower bounds."""
        return EngineConfig(
            server_query_enabled=self.server_query_enabled,
            server_refund_enabled=self.server_refund_enabled,
            query_min_interval_seconds=max(MIN_QUERY_INTERVAL_SECONDS, self.query_min_interval_seconds),
            order_expire_minutes=max(MIN_ORDER_EXPIRE_MINUTES, self.order_expire_minutes),
            daily_order_limit=max(0, self.daily_order_limit),
            buyer_daily_order_limit=max(0, self.buyer_daily_order_limit),
            fallback_window_start_hour=self.fallback_window_start_hour,
            fallback_window_end_hour=self.fallback_window_end_hour,
            gateway_timeout_seconds=self.gateway_timeout_seconds,
            invite_timeout_seconds=self.invite_timeout_seconds,
            board_scene=self.board_scene,
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
