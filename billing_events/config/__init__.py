"""Configuration package for the billing events service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
