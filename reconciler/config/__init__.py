"""Configuration package for the reconciler."""
from .settings import ConflictStrategyName, Settings, get_settings, load_settings

__all__ = ["ConflictStrategyName", "Settings", "get_settings", "load_settings"]
