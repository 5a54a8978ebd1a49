"""TT&C gateway HTTP service."""

from .config import Settings, get_settings
from .web import build_pipeline, create_app

__all__ = ["Settings", "build_pipeline", "create_app", "get_settings"]
