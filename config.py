"""
Runtime settings for the circulation backend.

Everything is read from the environment once at import time. Policy values
default to the library's current rules: 7 day loans, 10 ETB per day after
the grace period, 24 hour cooldown after a rejected request.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
PORT = int(os.getenv("PORT", 8000))

LOAN_PERIOD_DAYS = int(os.getenv("LOAN_PERIOD_DAYS", 7))
FINE_PER_DAY = int(os.getenv("FINE_PER_DAY", 10))
REJECTION_COOLDOWN_HOURS = int(os.getenv("REJECTION_COOLDOWN_HOURS", 24))
CURRENCY = os.getenv("CURRENCY", "ETB")

# Grace days before fines accrue, per borrower role
GRACE_PERIOD_DAYS = {
    "teacher": 2,
    "student": 1,
}
DEFAULT_GRACE_PERIOD_DAYS = 1

TELEBIRR_MOBILE_PATTERN = os.getenv("TELEBIRR_MOBILE_PATTERN", r"^09\d{8}$")
CHAPA_CHECKOUT_URL = os.getenv(
    "CHAPA_CHECKOUT_URL", "https://checkout.chapa.co/checkout/payment/{tx_ref}"
)

LIBRARIAN_ROLES = ("librarian", "admin")
