"""Lenient RFC 4648 Base32 decoding for OTP secrets.

Authenticator apps hand out secrets in every shape imaginable
("JBSW Y3DP-EHPK 3PXP", lowercase, with or without padding). Unlike
``base64.b32decode`` this decoder never raises: characters outside the
alphabet are skipped and trailing bits that do not fill a byte are
dropped.
"""

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_VALUES = {ch: idx for idx, ch in enumerate(ALPHABET)}


def normalize(secret: str) -> str:
    """Uppercase and strip separators and padding."""
    return "".join(ch for ch in secret.upper() if ch not in " -=\t\r\n")


def decode(secret: str) -> bytes:
    out = bytearray()
    buffer = 0
    bits = 0
    for ch in normalize(secret):
        value = _VALUES.get(ch)
        if value is None:
            continue
        buffer = (buffer << 5) | value
        bits += 5
        if bits >= 8:
            bits -= 8
            out.append((buffer >> bits) & 0xFF)
    return bytes(out)
