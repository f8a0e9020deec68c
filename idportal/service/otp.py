from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlencode

from idportal.logging import get_logger

logger = get_logger(__name__)

_DIGESTS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}


@dataclass(frozen=True)
class OTPSecret:
    """TOTP parameters for one user, as provisioned by the directory."""

    secret: str  # base32, padding optional
    algorithm: str = "sha1"
    digits: int = 6
    period: int = 30


def generate_totp(otp: OTPSecret, timestamp: float) -> str:
    padded = otp.secret + "=" * ((8 - len(otp.secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    digest_fn = _DIGESTS.get(otp.algorithm.lower())
    if digest_fn is None:
        logger.warning("totp_algorithm_unsupported", algorithm=otp.algorithm)
        return ""
    counter = int(timestamp // otp.period).to_bytes(8, "big")
    digest = hmac.new(key, counter, digest_fn).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**otp.digits
    )
    return str(code_int).zfill(otp.digits)


def verify_totp(
    otp: OTPSecret, code: str, *, window: int = 1, now: Optional[float] = None
) -> bool:
    """Check ``code`` against the time steps around ``now``.

    ``window`` adjacent steps on each side absorb minor clock skew.
    """
    code = (code or "").strip()
    if len(code) != otp.digits or not code.isdigit():
        return False
    current = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(otp, current + offset * otp.period)
        # Constant-time comparison
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def new_totp_secret(num_bytes: int = 20) -> str:
    """Fresh base32 secret, unpadded."""
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def provisioning_uri(otp: OTPSecret, account: str, issuer: str) -> str:
    """``otpauth://`` URI understood by authenticator apps."""
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {
            "secret": otp.secret,
            "issuer": issuer,
            "algorithm": otp.algorithm.upper(),
            "digits": otp.digits,
            "period": otp.period,
        }
    )
    return f"otpauth://totp/{label}?{query}"
