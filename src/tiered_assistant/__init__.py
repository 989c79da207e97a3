"""Tiered diabetes assistant package."""

from .config import RateLimitConfig, RouterConfig

__version__ = "0.1.0"

__all__ = ["RateLimitConfig", "RouterConfig", "__version__"]
