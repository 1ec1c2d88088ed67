"""Configuration package for the checkout platform."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
