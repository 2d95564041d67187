from decimal import Decimal

# --- Money ---
# Balances and prices are stored with four decimal places.
CREDIT_SCALE = 4
CREDIT_QUANTUM = Decimal(1).scaleb(-CREDIT_SCALE)
PRICE_ROUNDING_STEP = Decimal("0.01")

# --- Redis Key Prefixes ---
REDIS_RATE_LIMIT_PREFIX = "rate_limit"

# --- Provider setStatus codes ---
PROVIDER_STATUS_READY = 1
PROVIDER_STATUS_REQUEST_ANOTHER = 3
PROVIDER_STATUS_COMPLETE = 6
PROVIDER_STATUS_CANCEL = 8

# --- Provider error codes that reject a request outright ---
# Anything listed here is terminal: retrying the same request will not help.
PROVIDER_REJECTIONS = {
    "NO_NUMBERS": "no numbers available",
    "NO_BALANCE": "insufficient provider balance",
    "BAD_SERVICE": "invalid service",
    "BAD_COUNTRY": "invalid country",
    "WRONG_COUNTRY": "invalid country",
    "BAD_KEY": "invalid credentials",
    "BAD_ACTION": "invalid action",
    "BAD_STATUS": "invalid status",
    "BANNED": "provider account banned",
    "NO_ACTIVATION": "unknown activation",
    "WRONG_ACTIVATION_ID": "unknown activation",
    "EARLY_CANCEL_DENIED": "cancellation not allowed yet",
}

# Provider answers that mean "try again later".
PROVIDER_TRANSIENT_ERRORS = {"ERROR_SQL"}

# --- Pagination ---
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# --- Reasons recorded on terminal rentals ---
REASON_USER_CANCELLED = "cancelled by user"
REASON_PROVIDER_CANCELLED = "cancelled by provider"
REASON_AUTO_EXPIRED = "automatic cancellation: no code received in time"
