"""Autonomous action governance for storefront automation."""

__version__ = "1.0.0"
