import os, re, time, random
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD").upper()
DEFAULT_COMMISSION_RATE = Decimal(os.getenv("DEFAULT_COMMISSION_RATE", "0.15"))
PAYMENT_SUCCESS_RATE = float(os.getenv("PAYMENT_SUCCESS_RATE", "0.9"))

CENTS = Decimal("0.01")


class CardError(ValueError):
    """Card details rejected before any charge is attempted."""


def _dec(x) -> Decimal:
    return Decimal(str(x if x is not None else 0))

def qmoney(x) -> float:
    """Round half-up to cents using Decimal; return float for storage/JSON."""
    return float(_dec(x).quantize(CENTS, rounding=ROUND_HALF_UP))

def compute_commission(amount, rate=None) -> Decimal:
    rate_dec = DEFAULT_COMMISSION_RATE if rate is None else _dec(rate)
    if rate_dec < 0:
        rate_dec = Decimal("0")
    return (_dec(amount) * rate_dec).quantize(CENTS, rounding=ROUND_HALF_UP)

def percent_to_rate(raw):
    """'12.5' (percent, as typed in the admin form) -> 0.125. None when not a 0-100 number."""
    try:
        pct = Decimal(str(raw).strip())
    except (InvalidOperation, AttributeError):
        return None
    if not pct.is_finite() or pct < 0 or pct > 100:
        return None
    return float(pct / Decimal("100"))

def rate_to_percent(rate) -> float:
    return float((_dec(rate) * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))

# ---- Simulated card processor ------------------------------------------------
_EXPIRY = re.compile(r"^(\d{2})\s*/\s*(\d{2})$")

def validate_card(number: str, expiry: str, cvv: str, holder: str, *, now: datetime | None = None):
    if not (number and expiry and cvv and holder):
        raise CardError("Missing required payment information")
    digits = re.sub(r"[\s-]", "", number)
    if not digits.isdigit() or not (13 <= len(digits) <= 19):
        raise CardError("Card number is invalid")
    m = _EXPIRY.match(expiry.strip())
    if not m:
        raise CardError("Expiry date must be MM/YY")
    month, year = int(m.group(1)), 2000 + int(m.group(2))
    if not 1 <= month <= 12:
        raise CardError("Expiry date must be MM/YY")
    now = now or datetime.now(timezone.utc)
    if (year, month) < (now.year, now.month):
        raise CardError("Card has expired")
    if not (cvv.isdigit() and 3 <= len(cvv) <= 4):
        raise CardError("CVV is invalid")
    return digits[-4:]

def simulate_charge(amount, rng=None):
    """
    Demo stand-in for a real processor: approves PAYMENT_SUCCESS_RATE of charges.
    Returns (ok, payment_ref).
    """
    rng = rng or random
    if _dec(amount) <= 0:
        return False, None
    if rng.random() >= PAYMENT_SUCCESS_RATE:
        return False, None
    return True, f"pi_demo_{int(time.time() * 1000)}"

def mask_secret(value: str | None) -> str:
    if not value:
        return ""
    v = str(value)
    if len(v) <= 8:
        return "•" * len(v)
    return v[:4] + "•" * 8 + v[-4:]
