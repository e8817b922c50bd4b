import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEBUG = LOG_LEVEL == "DEBUG"

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError("DATABASE_URL must be set in the environment")

# Optional schema for all tables (PostgreSQL only)
DB_SCHEMA = os.getenv("DB_SCHEMA") or None

# Pricing
DEFAULT_PLATFORM_FEE_RATE = Decimal(os.getenv("DEFAULT_PLATFORM_FEE_RATE", "0.15"))
GST_RATE = Decimal(os.getenv("GST_RATE", "0.18"))
PROCESSING_FEE_RATE = Decimal(os.getenv("PROCESSING_FEE_RATE", "0.029"))
PROCESSING_FEE_FIXED = Decimal(os.getenv("PROCESSING_FEE_FIXED", "30"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR")
RATE_CACHE_TTL_SECONDS = int(os.getenv("RATE_CACHE_TTL_SECONDS", "60"))

# Collaborators
PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL")
PAYMENT_GATEWAY_API_KEY = os.getenv("PAYMENT_GATEWAY_API_KEY")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")

# Sweeper
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "180"))
PROCESSING_GRACE_SECONDS = int(os.getenv("PROCESSING_GRACE_SECONDS", "600"))
APPROVAL_SWEEP_INTERVAL_SECONDS = int(os.getenv("APPROVAL_SWEEP_INTERVAL_SECONDS", "1800"))
PENDING_APPROVAL_HOURS = int(os.getenv("PENDING_APPROVAL_HOURS", "24"))
COMPLETION_SWEEP_INTERVAL_SECONDS = int(os.getenv("COMPLETION_SWEEP_INTERVAL_SECONDS", "3600"))

# Listings
DEFAULT_HOST_BUFFER_HOURS = int(os.getenv("DEFAULT_HOST_BUFFER_HOURS", "2"))
