"""
Application constants to replace magic numbers throughout the codebase.
"""
from decimal import Decimal

# Comparison tolerances
MONEY_TOLERANCE = Decimal('0.01')
SHARES_TOLERANCE = Decimal('0.0001')

# Quantization
MONEY_PLACES = Decimal('0.01')
SHARES_PLACES = Decimal('0.00000001')

# Percentages
ZERO = Decimal('0')
ONE_HUNDRED = Decimal('100')
MAX_PARTICIPATION_PCT = Decimal('100')

# Duplicate sale detection (percentage points, currency units)
DUPLICATE_SALE_PCT_TOLERANCE = Decimal('0.01')
DUPLICATE_SALE_PRICE_TOLERANCE = Decimal('0.01')

# Policy defaults used when the YAML file omits a value
DEFAULT_POLICY_THRESHOLD_PCT = Decimal('5')
DEFAULT_POLICY_REMEDIATION_PCT = Decimal('4.9')

# Lock
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0

# API query limits
DEFAULT_QUERY_LIMIT = 50
MAX_QUERY_LIMIT = 500
