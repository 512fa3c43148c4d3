"""
Neutra Engine Constants

This module consolidates all global constants and environment configuration
used throughout the codebase. Constants are organized by category for easy
reference and maintenance.
"""
import ast
import re
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

ENGINE_DEFAULTS = {
    'NEUTRA_DATA_DIR':                 './data',
    'NEUTRA_ESCROW_ACCOUNT':           '0x000000000000000000000000000000000000ba7c',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# ==================================================================================
# TOKEN UNITS
# ==================================================================================
TOKEN_DECIMALS = 18
TOKEN_UNIT = 10 ** TOKEN_DECIMALS
PRICE_PRECISION = 10 ** 30  # venue USD values and prices
BASIS_POINTS_DIVISOR = 10_000


# ==================================================================================
# BATCH ROUND PARAMETERS
# ==================================================================================
FIRST_ROUND = 1
NO_ROUND = 0  # reservation round number meaning "no active reservation"
DEFAULT_DEPOSIT_LIMIT = 2_000_000 * TOKEN_UNIT
MAX_INSTRUCTIONS_PER_BATCH = 8
ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'


# ==================================================================================
# VENUE / KEEPER PARAMETERS
# ==================================================================================
MAX_PRICES_PER_BITS = 8           # 8 prices packed in 32-bit lanes
PRICE_BITS_LANE_WIDTH = 32
MAX_PRICE_LANE_VALUE = 2 ** 31    # exclusive upper bound per packed price
KEEPER_PRICE_PRECISION = 1000     # packed prices carry 3 decimals
MAX_PRICE_DEVIATION_BPS = 250     # reject keeper prices moving more than 2.5%


# ==================================================================================
# VALIDATION PATTERNS
# ==================================================================================
# Regex pattern for validating EVM-style account addresses
VALID_ADDRESS_PATTERN = re.compile(r'^0x[0-9a-fA-F]{40}$')


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    def __hash__(self):
        return hash(bool(self))


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = ENGINE_DEFAULTS | LOGGER_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        # ast.literal_eval expects "True"/"False"
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    # Parses only boolean-literals. Leaves other values untouched.
    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        # Preserves the original raw string for ConfigString storage.
        namespace[key] = ConfigString(value_raw, default_val)
