"""
Neutra Engine Configuration

Loads all sections of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    EngineConfig,
    EngineSectionConfig,
    DatabaseConfig,
    SQLiteConfig,
    BatchSectionConfig,
    VenueSectionConfig,
    load_config,
)

__all__ = [
    "EngineConfig",
    "EngineSectionConfig",
    "DatabaseConfig",
    "SQLiteConfig",
    "BatchSectionConfig",
    "VenueSectionConfig",
    "load_config",
]
