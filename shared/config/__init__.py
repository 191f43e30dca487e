"""Configuration management for the weighting engine."""

from .base import BaseConfiguration, Environment
from .weighting_config import WeightingSettings

__all__ = [
    "BaseConfiguration",
    "Environment",
    "WeightingSettings",
]
