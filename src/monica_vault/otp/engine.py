# OTP - Code Generation Engine
#
# One generator per OTP variant, selected through a closed OtpType enum:
#
#   TOTP    counter = floor(t / period), RFC 4226 truncation
#   HOTP    explicit counter, RFC 4226 truncation
#   STEAM   counter = floor(t / 30), 5 chars from the Steam alphabet
#   YANDEX  counter = floor(t / period), always 8 digits
#   MOTP    not implemented, placeholder code
#
# The HMAC algorithm recorded on the entry is honoured for TOTP, HOTP and
# YANDEX. Steam Guard codes are defined over HMAC-SHA1 only.

import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from . import base32

logger = logging.getLogger(__name__)

PLACEHOLDER_CODE = "------"
DEFAULT_PERIOD = 30
DEFAULT_DIGITS = 6
MIN_DIGITS = 5
MAX_DIGITS = 8

STEAM_ALPHABET = "23456789BCDFGHJKMNPQRTVWXY"
STEAM_CODE_LENGTH = 5
STEAM_PERIOD = 30
YANDEX_DIGITS = 8

_DIGESTS = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}


class OtpType(str, Enum):
    """OTP variants; values match the ``otpType`` strings in stored entries."""

    TOTP = "TOTP"
    HOTP = "HOTP"
    STEAM = "STEAM"
    YANDEX = "YANDEX"
    MOTP = "MOTP"

    @classmethod
    def parse(cls, value) -> "OtpType":
        """Lenient lookup; unknown or empty values fall back to TOTP."""
        if isinstance(value, OtpType):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return cls.TOTP

    @property
    def is_time_based(self) -> bool:
        return self in (OtpType.TOTP, OtpType.STEAM, OtpType.YANDEX)


def normalize_algorithm(algorithm: Optional[str]) -> str:
    """Map "sha-256", "HmacSHA256" etc. to SHA1/SHA256/SHA512 (default SHA1)."""
    name = (algorithm or "SHA1").upper().replace("-", "").replace("HMAC", "")
    return name if name in _DIGESTS else "SHA1"


def hmac_digest(key: bytes, counter: int, algorithm: str = "SHA1") -> bytes:
    """HMAC over the 8-byte big-endian counter."""
    message = counter.to_bytes(8, "big")
    return hmac.new(key, message, _DIGESTS[normalize_algorithm(algorithm)]).digest()


def truncate(digest: bytes) -> int:
    """RFC 4226 dynamic truncation to a 31-bit integer."""
    offset = digest[-1] & 0x0F
    return (
        (digest[offset] & 0x7F) << 24
        | (digest[offset + 1] & 0xFF) << 16
        | (digest[offset + 2] & 0xFF) << 8
        | (digest[offset + 3] & 0xFF)
    )


def _numeric_code(key: bytes, counter: int, digits: int, algorithm: str) -> str:
    value = truncate(hmac_digest(key, counter, algorithm))
    return str(value % (10 ** digits)).zfill(digits)


def _unix_time(now: Optional[float]) -> float:
    return time.time() if now is None else now


class OtpGenerator(ABC):
    """Produces a code for one OTP variant from a decoded secret."""

    @abstractmethod
    def generate(
        self,
        key: bytes,
        *,
        period: int,
        digits: int,
        counter: int,
        algorithm: str,
        now: Optional[float],
    ) -> str:
        ...


class TotpGenerator(OtpGenerator):
    def generate(self, key, *, period, digits, counter, algorithm, now):
        step = int(_unix_time(now) // period)
        return _numeric_code(key, step, digits, algorithm)


class HotpGenerator(OtpGenerator):
    def generate(self, key, *, period, digits, counter, algorithm, now):
        return _numeric_code(key, counter, digits, algorithm)


class SteamGenerator(OtpGenerator):
    """Steam Guard: 31-bit truncation spelled out in a 26-char alphabet."""

    def generate(self, key, *, period, digits, counter, algorithm, now):
        step = int(_unix_time(now) // STEAM_PERIOD)
        value = truncate(hmac_digest(key, step, "SHA1"))
        chars = []
        for _ in range(STEAM_CODE_LENGTH):
            chars.append(STEAM_ALPHABET[value % len(STEAM_ALPHABET)])
            value //= len(STEAM_ALPHABET)
        return "".join(chars)


class YandexGenerator(OtpGenerator):
    def generate(self, key, *, period, digits, counter, algorithm, now):
        step = int(_unix_time(now) // period)
        return _numeric_code(key, step, YANDEX_DIGITS, algorithm)


class MotpGenerator(OtpGenerator):
    """mOTP codes are not generated; entries show the placeholder."""

    def generate(self, key, *, period, digits, counter, algorithm, now):
        return PLACEHOLDER_CODE


GENERATORS: Dict[OtpType, OtpGenerator] = {
    OtpType.TOTP: TotpGenerator(),
    OtpType.HOTP: HotpGenerator(),
    OtpType.STEAM: SteamGenerator(),
    OtpType.YANDEX: YandexGenerator(),
    OtpType.MOTP: MotpGenerator(),
}


def generate_code(
    secret: str,
    period: int = DEFAULT_PERIOD,
    digits: int = DEFAULT_DIGITS,
    otp_type=OtpType.TOTP,
    counter: int = 0,
    algorithm: str = "SHA1",
    now: Optional[float] = None,
) -> str:
    """
    Generate the current code for a Base32 secret.

    Args:
        secret: Base32 secret (spaces, hyphens, lowercase tolerated)
        period: Time step in seconds for TOTP/YANDEX
        digits: Code length for TOTP/HOTP
        otp_type: OtpType or its string value
        counter: Moving factor for HOTP
        algorithm: SHA1, SHA256 or SHA512
        now: Unix time override (tests)

    Returns:
        The code, or "------" for an empty secret or an unsupported variant
    """
    if not secret:
        return PLACEHOLDER_CODE

    key = base32.decode(secret)
    if not key:
        logger.debug("OTP secret decoded to zero bytes")
        return PLACEHOLDER_CODE

    kind = OtpType.parse(otp_type)
    if period <= 0:
        period = DEFAULT_PERIOD
    return GENERATORS[kind].generate(
        key,
        period=period,
        digits=digits,
        counter=counter,
        algorithm=algorithm,
        now=now,
    )


def remaining_seconds(period: int = DEFAULT_PERIOD, now: Optional[float] = None) -> int:
    """Seconds until the current time step rolls over."""
    if period <= 0:
        period = DEFAULT_PERIOD
    return period - int(_unix_time(now)) % period


@dataclass(frozen=True)
class OtpSpec:
    """Parameters of one OTP entry.

    Raises:
        ValueError: digits outside [5, 8] or a non-positive period on a
            time-based type.
    """

    secret: str
    algorithm: str = "SHA1"
    digits: int = DEFAULT_DIGITS
    period: int = DEFAULT_PERIOD
    otp_type: OtpType = OtpType.TOTP
    counter: int = 0
    pin: str = ""

    def __post_init__(self):
        object.__setattr__(self, "otp_type", OtpType.parse(self.otp_type))
        if not MIN_DIGITS <= self.digits <= MAX_DIGITS:
            raise ValueError(f"digits must be between {MIN_DIGITS} and {MAX_DIGITS}")
        if self.otp_type.is_time_based and self.period <= 0:
            raise ValueError("period must be positive for time-based OTP")

    def code(self, now: Optional[float] = None) -> str:
        return generate_code(
            self.secret,
            period=self.period,
            digits=self.digits,
            otp_type=self.otp_type,
            counter=self.counter,
            algorithm=self.algorithm,
            now=now,
        )
