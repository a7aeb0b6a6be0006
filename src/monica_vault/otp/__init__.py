# OTP Module - One-Time Password Codes
#
# TOTP / HOTP / Steam / Yandex / mOTP generation from Base32 secrets.

from .engine import (
    OtpSpec,
    OtpType,
    PLACEHOLDER_CODE,
    generate_code,
    remaining_seconds,
)

__all__ = [
    "OtpSpec",
    "OtpType",
    "PLACEHOLDER_CODE",
    "generate_code",
    "remaining_seconds",
]
