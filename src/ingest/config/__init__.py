"""
Pipeline configuration.
"""

from .config_loader import DEFAULT_CONFIG, PipelineConfig

__all__ = ["DEFAULT_CONFIG", "PipelineConfig"]
