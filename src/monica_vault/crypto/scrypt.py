"""Standalone scrypt key derivation (RFC 7914).

Used only to wrap/unwrap the random master key of Aegis-format exports,
so it has to be bit-exact with other scrypt implementations. Salsa20/8
operates on lists of 32-bit words and the ROMix table is stored as
packed ``array("I")`` rows; the parallelization parameter ``p``
is honoured but the ``p`` blocks are mixed one after another.

    key = derive_key("p@ss", salt, n=32768, r=8, p=1, dk_len=32)
"""

import hashlib
import struct
from array import array
from typing import List

_MASK = 0xFFFFFFFF


def derive_key(password: str, salt: bytes, n: int, r: int, p: int, dk_len: int) -> bytes:
    """Derive ``dk_len`` bytes from a text password (UTF-8 encoded)."""
    return scrypt(password.encode("utf-8"), salt, n, r, p, dk_len)


def scrypt(password: bytes, salt: bytes, n: int, r: int, p: int, dk_len: int) -> bytes:
    """RFC 7914 scrypt over raw bytes.

    Raises:
        ValueError: N is not a power of two greater than 1, or r/p/dk_len < 1.
    """
    if n < 2 or (n & (n - 1)) != 0:
        raise ValueError("N must be a power of 2 greater than 1")
    if r < 1 or p < 1:
        raise ValueError("r and p must be positive")
    if dk_len < 1:
        raise ValueError("dk_len must be positive")

    block_bytes = 128 * r
    block_words = 32 * r

    # B = PBKDF2-HMAC-SHA256(P, S, 1, p * 128 * r)
    stretched = hashlib.pbkdf2_hmac("sha256", password, salt, 1, p * block_bytes)
    words = list(struct.unpack(f"<{p * block_words}I", stretched))

    for i in range(p):
        start = i * block_words
        words[start:start + block_words] = _smix(words[start:start + block_words], r, n)

    mixed = struct.pack(f"<{p * block_words}I", *words)

    # DK = PBKDF2-HMAC-SHA256(P, B, 1, dkLen)
    return hashlib.pbkdf2_hmac("sha256", password, mixed, 1, dk_len)


def _smix(block: List[int], r: int, n: int) -> List[int]:
    """ROMix: fill table V with N BlockMix states, then N data-dependent lookups."""
    x = list(block)
    # V holds N * 128 * r bytes; packed rows keep it near that size.
    table: List[array] = []
    for _ in range(n):
        table.append(array("I", x))
        x = _block_mix(x, r)

    # Integerify(X) mod N: first word of the last 64-byte sub-block.
    last = (2 * r - 1) * 16
    mask = n - 1
    for _ in range(n):
        j = x[last] & mask
        vj = table[j]
        x = _block_mix([a ^ b for a, b in zip(x, vj)], r)
    return x


def _block_mix(block: List[int], r: int) -> List[int]:
    """scrypt BlockMix with Salsa20/8; even outputs first, then odd."""
    x = block[(2 * r - 1) * 16:2 * r * 16]
    out = [0] * (32 * r)
    for i in range(2 * r):
        offset = i * 16
        x = _salsa20_8([x[k] ^ block[offset + k] for k in range(16)])
        dest = (i // 2) if i % 2 == 0 else (r + i // 2)
        out[dest * 16:dest * 16 + 16] = x
    return out


def _salsa20_8(b: List[int]) -> List[int]:
    """Salsa20/8 core on 16 little-endian words; rotations are inlined."""
    x0, x1, x2, x3, x4, x5, x6, x7, x8, x9, x10, x11, x12, x13, x14, x15 = b
    M = _MASK
    for _ in range(4):
        # Column round
        t = (x0 + x12) & M
        x4 ^= ((t << 7) | (t >> 25)) & M
        t = (x4 + x0) & M
        x8 ^= ((t << 9) | (t >> 23)) & M
        t = (x8 + x4) & M
        x12 ^= ((t << 13) | (t >> 19)) & M
        t = (x12 + x8) & M
        x0 ^= ((t << 18) | (t >> 14)) & M
        t = (x5 + x1) & M
        x9 ^= ((t << 7) | (t >> 25)) & M
        t = (x9 + x5) & M
        x13 ^= ((t << 9) | (t >> 23)) & M
        t = (x13 + x9) & M
        x1 ^= ((t << 13) | (t >> 19)) & M
        t = (x1 + x13) & M
        x5 ^= ((t << 18) | (t >> 14)) & M
        t = (x10 + x6) & M
        x14 ^= ((t << 7) | (t >> 25)) & M
        t = (x14 + x10) & M
        x2 ^= ((t << 9) | (t >> 23)) & M
        t = (x2 + x14) & M
        x6 ^= ((t << 13) | (t >> 19)) & M
        t = (x6 + x2) & M
        x10 ^= ((t << 18) | (t >> 14)) & M
        t = (x15 + x11) & M
        x3 ^= ((t << 7) | (t >> 25)) & M
        t = (x3 + x15) & M
        x7 ^= ((t << 9) | (t >> 23)) & M
        t = (x7 + x3) & M
        x11 ^= ((t << 13) | (t >> 19)) & M
        t = (x11 + x7) & M
        x15 ^= ((t << 18) | (t >> 14)) & M
        # Row round
        t = (x0 + x3) & M
        x1 ^= ((t << 7) | (t >> 25)) & M
        t = (x1 + x0) & M
        x2 ^= ((t << 9) | (t >> 23)) & M
        t = (x2 + x1) & M
        x3 ^= ((t << 13) | (t >> 19)) & M
        t = (x3 + x2) & M
        x0 ^= ((t << 18) | (t >> 14)) & M
        t = (x5 + x4) & M
        x6 ^= ((t << 7) | (t >> 25)) & M
        t = (x6 + x5) & M
        x7 ^= ((t << 9) | (t >> 23)) & M
        t = (x7 + x6) & M
        x4 ^= ((t << 13) | (t >> 19)) & M
        t = (x4 + x7) & M
        x5 ^= ((t << 18) | (t >> 14)) & M
        t = (x10 + x9) & M
        x11 ^= ((t << 7) | (t >> 25)) & M
        t = (x11 + x10) & M
        x8 ^= ((t << 9) | (t >> 23)) & M
        t = (x8 + x11) & M
        x9 ^= ((t << 13) | (t >> 19)) & M
        t = (x9 + x8) & M
        x10 ^= ((t << 18) | (t >> 14)) & M
        t = (x15 + x14) & M
        x12 ^= ((t << 7) | (t >> 25)) & M
        t = (x12 + x15) & M
        x13 ^= ((t << 9) | (t >> 23)) & M
        t = (x13 + x12) & M
        x14 ^= ((t << 13) | (t >> 19)) & M
        t = (x14 + x13) & M
        x15 ^= ((t << 18) | (t >> 14)) & M

    mixed = (x0, x1, x2, x3, x4, x5, x6, x7, x8, x9, x10, x11, x12, x13, x14, x15)
    return [(a + c) & M for a, c in zip(b, mixed)]
