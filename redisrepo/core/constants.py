"""
Library-Wide Constants for the Redis Repository Layer

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
SECOND_MS: Final[int] = 1000

# =============================================================================
# CONNECTIONS
# =============================================================================
DEFAULT_HOST: Final[str] = "localhost"
DEFAULT_PORT: Final[int] = 6379
DEFAULT_TOTAL_CONNECTIONS: Final[int] = 2
CONNECT_TIMEOUT_MS: Final[int] = 5 * SECOND_MS
SOCKET_TIMEOUT_MS: Final[int] = 1 * SECOND_MS

# =============================================================================
# RETRY
# =============================================================================
DEFAULT_RETRIES: Final[int] = 5
NO_RETRIES: Final[int] = 1  # single attempt for non-idempotent commands
RETRY_DELAY_MS: Final[int] = 50
TRANSACTION_ATTEMPTS: Final[int] = 5

# =============================================================================
# WIRE FORMAT
# =============================================================================
BOOL_TRUE_WIRE: Final[int] = -1
BOOL_FALSE_WIRE: Final[int] = 0
NULL_MARKER: Final[bytes] = b""

INT32_MIN: Final[int] = -(2 ** 31)
INT32_MAX: Final[int] = 2 ** 31 - 1
INT64_MIN: Final[int] = -(2 ** 63)
INT64_MAX: Final[int] = 2 ** 63 - 1

# =============================================================================
# SCRIPT PARAMETER SLOTS
# =============================================================================
SCRIPT_KEY_SLOTS: Final[int] = 10
SCRIPT_INT_SLOTS: Final[int] = 20
SCRIPT_LONG_SLOTS: Final[int] = 20
SCRIPT_STRING_SLOTS: Final[int] = 20

# =============================================================================
# KEYS
# =============================================================================
SCAN_COUNT: Final[int] = 1000
