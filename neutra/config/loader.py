"""
Neutra TOML Configuration Loader

Loads all sections of config.toml at startup with environment variable
overrides (dataclass + from_dict + from_file per section).

Environment variable mapping:
    [engine] data_dir          → NEUTRA_DATA_DIR
    [engine] log_level         → NEUTRA_LOG_LEVEL
    [engine] escrow_account    → NEUTRA_ESCROW_ACCOUNT
    [database.sqlite] path     → NEUTRA_DB_PATH
    [batch] deposit_limit      → NEUTRA_DEPOSIT_LIMIT
    [batch] operators          → NEUTRA_OPERATORS (comma separated)
    [venue] keeper             → NEUTRA_KEEPER

Amounts in the file are whole principal tokens; they are converted to
18-decimal base units on load.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..address import normalize_address
from ..constants import (
    DEFAULT_DEPOSIT_LIMIT,
    ENGINE_DEFAULTS,
    MAX_PRICE_DEVIATION_BPS,
    MAX_PRICES_PER_BITS,
    TOKEN_UNIT,
)
from ..exceptions import ConfigurationError, InvalidAddressError

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _limit_from_tokens(value: Any) -> Optional[int]:
    """Whole tokens -> base units; 0 disables the limit."""
    try:
        tokens = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"deposit_limit must be a whole number of tokens, got {value!r}") from e
    if tokens < 0:
        raise ConfigurationError(f"deposit_limit must not be negative, got {tokens}")
    return tokens * TOKEN_UNIT if tokens else None


def _split_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


# ---------------------------------------------------------------------------
# Subsection dataclasses: one per [section] of config.example.toml
# ---------------------------------------------------------------------------


@dataclass
class EngineSectionConfig:
    """[engine] section."""
    data_dir: str = ENGINE_DEFAULTS["NEUTRA_DATA_DIR"]
    log_level: str = "INFO"
    escrow_account: str = ENGINE_DEFAULTS["NEUTRA_ESCROW_ACCOUNT"]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineSectionConfig":
        return cls(
            data_dir=data.get("data_dir", ENGINE_DEFAULTS["NEUTRA_DATA_DIR"]),
            log_level=data.get("log_level", "INFO"),
            escrow_account=data.get("escrow_account", ENGINE_DEFAULTS["NEUTRA_ESCROW_ACCOUNT"]),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("NEUTRA_DATA_DIR"):
            self.data_dir = v
        if v := os.environ.get("NEUTRA_LOG_LEVEL"):
            self.log_level = v
        if v := os.environ.get("NEUTRA_ESCROW_ACCOUNT"):
            self.escrow_account = v


# -- Database -----------------------------------------------------------

@dataclass
class SQLiteConfig:
    """[database.sqlite]."""
    path: str = "data/neutra.db"
    wal_mode: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SQLiteConfig":
        return cls(
            path=data.get("path", "data/neutra.db"),
            wal_mode=data.get("wal_mode", True),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("NEUTRA_DB_PATH"):
            self.path = v


@dataclass
class DatabaseConfig:
    """[database] section."""
    sqlite: SQLiteConfig = field(default_factory=SQLiteConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        return cls(sqlite=SQLiteConfig.from_dict(data.get("sqlite", {})))

    def apply_env(self) -> None:
        self.sqlite.apply_env()


# -- Batch --------------------------------------------------------------

@dataclass
class BatchSectionConfig:
    """[batch] section."""
    deposit_sale: bool = False
    withdraw_sale: bool = False
    deposit_limit: Optional[int] = DEFAULT_DEPOSIT_LIMIT
    admin: str = ""
    operators: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchSectionConfig":
        limit = DEFAULT_DEPOSIT_LIMIT
        if "deposit_limit" in data:
            limit = _limit_from_tokens(data["deposit_limit"])
        return cls(
            deposit_sale=data.get("deposit_sale", False),
            withdraw_sale=data.get("withdraw_sale", False),
            deposit_limit=limit,
            admin=data.get("admin", ""),
            operators=list(data.get("operators", [])),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("NEUTRA_DEPOSIT_LIMIT"):
            self.deposit_limit = _limit_from_tokens(v)
        if v := os.environ.get("NEUTRA_OPERATORS"):
            self.operators = _split_list(v)


# -- Venue --------------------------------------------------------------

@dataclass
class VenueSectionConfig:
    """[venue] section. price_tokens order is the lane order of keeper price bits."""
    keeper: str = ""
    price_tokens: List[str] = field(default_factory=list)
    max_price_deviation_bps: int = MAX_PRICE_DEVIATION_BPS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VenueSectionConfig":
        return cls(
            keeper=data.get("keeper", ""),
            price_tokens=list(data.get("price_tokens", [])),
            max_price_deviation_bps=data.get("max_price_deviation_bps", MAX_PRICE_DEVIATION_BPS),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("NEUTRA_KEEPER"):
            self.keeper = v


# -----------------------------------------------------------------------
# Top-level unified config
# -----------------------------------------------------------------------

@dataclass
class EngineConfig:
    """
    Unified engine configuration.

    Loads every section of config.toml and applies environment variable
    overrides. This is the single source of truth at runtime.
    """
    engine: EngineSectionConfig = field(default_factory=EngineSectionConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    batch: BatchSectionConfig = field(default_factory=BatchSectionConfig)
    venue: VenueSectionConfig = field(default_factory=VenueSectionConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create EngineConfig from a parsed TOML dict."""
        return cls(
            engine=EngineSectionConfig.from_dict(data.get("engine", {})),
            database=DatabaseConfig.from_dict(data.get("database", {})),
            batch=BatchSectionConfig.from_dict(data.get("batch", {})),
            venue=VenueSectionConfig.from_dict(data.get("venue", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "EngineConfig":
        """
        Load configuration from a TOML file.

        A missing file yields the defaults (with env overrides).
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        try:
            with open(path, "rb") as f:
                raw = tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigurationError(f"Cannot parse {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.engine.apply_env()
        self.database.apply_env()
        self.batch.apply_env()
        self.venue.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections and normalise addresses.

        Raises:
            ConfigurationError: on invalid config
        """
        if self.engine.log_level.upper() not in _LOG_LEVELS:
            raise ConfigurationError(f"Invalid log_level: {self.engine.log_level}")

        try:
            self.engine.escrow_account = normalize_address(self.engine.escrow_account)
            if self.batch.admin:
                self.batch.admin = normalize_address(self.batch.admin)
            self.batch.operators = [normalize_address(o) for o in self.batch.operators]
            if self.venue.keeper:
                self.venue.keeper = normalize_address(self.venue.keeper)
            self.venue.price_tokens = [normalize_address(t) for t in self.venue.price_tokens]
        except InvalidAddressError as e:
            raise ConfigurationError(str(e)) from e

        if len(self.venue.price_tokens) > MAX_PRICES_PER_BITS:
            raise ConfigurationError(
                f"At most {MAX_PRICES_PER_BITS} price_tokens, got {len(self.venue.price_tokens)}"
            )
        if not 0 < self.venue.max_price_deviation_bps <= 10_000:
            raise ConfigurationError(
                f"max_price_deviation_bps out of range: {self.venue.max_price_deviation_bps}"
            )
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        limit = self.batch.deposit_limit
        return {
            "engine": {
                "data_dir": self.engine.data_dir,
                "log_level": self.engine.log_level,
                "escrow_account": self.engine.escrow_account,
            },
            "database": {
                "sqlite": {
                    "path": self.database.sqlite.path,
                    "wal_mode": self.database.sqlite.wal_mode,
                },
            },
            "batch": {
                "deposit_sale": self.batch.deposit_sale,
                "withdraw_sale": self.batch.withdraw_sale,
                "deposit_limit": None if limit is None else str(limit),
                "admin": self.batch.admin,
                "operators": list(self.batch.operators),
            },
            "venue": {
                "keeper": self.venue.keeper,
                "price_tokens": list(self.venue.price_tokens),
                "max_price_deviation_bps": self.venue.max_price_deviation_bps,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load engine configuration.

    Resolution order:
        1. Explicit *path* argument
        2. NEUTRA_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("NEUTRA_CONFIG", "config.toml")

    return EngineConfig.from_file(path)
