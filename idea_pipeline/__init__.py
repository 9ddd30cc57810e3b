"""Idea pipeline backend package."""

from .app import create_app
from .config import get_settings
from .pipeline import PipelineController

__all__ = ["PipelineController", "create_app", "get_settings"]
