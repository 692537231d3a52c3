import os
from decimal import Decimal

from membella.schemas.payment import PaymentMethod

CURRENCY = os.getenv("PAYMENT_CURRENCY", "THB")

# Smallest currency unit per major unit (satang per baht)
MINOR_UNIT_SCALE = Decimal("100")

# Limits in minor units
MIN_AMOUNT = {
    PaymentMethod.CARD: 100,  # 1 THB
    PaymentMethod.REDIRECT: 2000,  # 20 THB
}
MAX_AMOUNT = {
    PaymentMethod.CARD: 20000000,  # 200,000 THB
    PaymentMethod.REDIRECT: 5000000,  # 50,000 THB
}

# Gateway source type used for the redirect method
REDIRECT_SOURCE_TYPE = os.getenv("PAYMENT_REDIRECT_SOURCE_TYPE", "promptpay")

CARD_TOKEN_PREFIX = "tokn_"

OMISE_API_URL = os.getenv("OMISE_API_URL", "https://api.omise.co")
OMISE_API_VERSION = os.getenv("OMISE_API_VERSION", "2019-05-29")
OMISE_REQUEST_TIMEOUT = float(os.getenv("OMISE_REQUEST_TIMEOUT", "30"))

WEBHOOK_DEDUP_TTL_SECONDS = int(os.getenv("WEBHOOK_DEDUP_TTL_SECONDS", "300"))

POLL_MAX_ATTEMPTS = int(os.getenv("PAYMENT_POLL_MAX_ATTEMPTS", "60"))
POLL_INTERVAL_MS = int(os.getenv("PAYMENT_POLL_INTERVAL_MS", "3000"))
POLL_MIN_INTERVAL_MS = 500
POLL_GATEWAY_CHECK_EVERY = int(os.getenv("PAYMENT_POLL_GATEWAY_CHECK_EVERY", "5"))

CREATED_BY = "membella_platform"
