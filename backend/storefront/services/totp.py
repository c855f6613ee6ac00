"""TOTP secret generation, code derivation and verification (RFC 6238).

Codes are 6 digits over a 30 second step, HMAC-SHA1, which is what every
mainstream authenticator app expects.
"""

import base64
import time
from datetime import datetime
from io import BytesIO
from typing import Optional

import pyotp
import qrcode
from pyotp.utils import strings_equal

from storefront.config import settings

SECRET_LENGTH = 32  # base32 chars → 160 bits


def generate_secret() -> str:
    return pyotp.random_base32(length=SECRET_LENGTH)


def _totp(secret: str, interval: int, digits: int) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=digits, interval=interval)


def provisioning_uri(secret: str, email: str) -> str:
    return _totp(secret, settings.totp_interval_seconds, settings.totp_digits).provisioning_uri(
        name=email, issuer_name=settings.totp_issuer,
    )


def qr_png_data_url(text: str) -> str:
    """Render text as a QR code PNG, returned as a data URL."""
    img = qrcode.make(text)
    buf = BytesIO()
    img.save(buf, "PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def derive_code(
    secret: str,
    timestamp: int | float | datetime,
    interval: int = 30,
    digits: int = 6,
) -> str:
    """Code for the step containing ``timestamp``. Pure; no clock access."""
    return _totp(secret, interval, digits).at(timestamp)


def verify_code(
    secret: str,
    code: Optional[str],
    *,
    now: int | float | datetime | None = None,
    window: int = 1,
    interval: int = 30,
    digits: int = 6,
) -> bool:
    """Check ``code`` against the current step and ``window`` steps either side.

    Every candidate is compared in constant time and all of them are
    compared, so timing does not reveal which step (if any) matched.
    """
    if not code:
        return False
    code = code.strip()
    if len(code) != digits or not code.isdigit():
        return False
    if now is None:
        now = time.time()
    elif isinstance(now, datetime):
        now = now.timestamp()

    totp = _totp(secret, interval, digits)
    matched = False
    for offset in range(-window, window + 1):
        candidate = totp.at(now, counter_offset=offset)
        if strings_equal(candidate, code):
            matched = True
    return matched
