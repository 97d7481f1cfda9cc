"""Configuration package for the seat redemption service."""
from .settings import EngineConfig, GatewayConfig, Settings, get_settings

__all__ = ["EngineConfig", "GatewayConfig", "Settings", "get_settings"]
