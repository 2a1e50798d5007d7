"""
Arbitrary-precision modular arithmetic for RSA blind signatures.

Shared by the authority (signing), the voter (blinding / unblinding) and the
urn (verification). All functions are pure.
"""

import re

from Crypto.Util.number import GCD, getRandomRange

from errors import MalformedInput, NotInvertible

_HEX_RE = re.compile(r"[0-9a-f]+")


def mod_pow(base: int, exponent: int, modulus: int) -> int:
    """(base ** exponent) % modulus by square-and-multiply."""
    if modulus == 1:
        return 0
    if exponent < 0:
        raise ValueError("negative exponent")

    result = 1
    base = base % modulus
    if base == 0:
        return 0

    while exponent > 0:
        if exponent & 1:
            result = (result * base) % modulus
        exponent >>= 1
        base = (base * base) % modulus
    return result


def mod_inverse(a: int, m: int) -> int:
    """
    Multiplicative inverse of `a` modulo `m` via the extended Euclidean
    algorithm. The result lies in [0, m).

    Raises NotInvertible when a ≡ 0 (mod m) or gcd(a, m) != 1.
    """
    if m <= 1:
        raise ValueError("modulus must be greater than 1")
    a = a % m
    if a == 0:
        raise NotInvertible("0 has no inverse")

    old_r, r = a, m
    old_x, x = 1, 0
    while r != 0:
        q = old_r // r
        old_r, r = r, old_r - q * r
        old_x, x = x, old_x - q * x

    if old_r != 1:
        raise NotInvertible(f"gcd(a, m) = {old_r}")

    if old_x < 0:
        old_x += m
    return old_x


def random_coprime(modulus: int) -> int:
    """Uniform r in [0, modulus) with r > 1 and gcd(r, modulus) == 1."""
    if modulus <= 2:
        raise ValueError("modulus too small")
    while True:
        r = getRandomRange(0, modulus)
        if r > 1 and GCD(r, modulus) == 1:
            return r


# ---------------------------------------------------------------------------
# Hex transport
# ---------------------------------------------------------------------------

def int_to_hex(n: int) -> str:
    """Big-endian unsigned hex, lowercase, no prefix."""
    if n < 0:
        raise ValueError("negative values have no wire encoding")
    return format(n, "x")


def hex_to_int(value, field: str = "value") -> int:
    if not isinstance(value, str) or not value.strip():
        raise MalformedInput(f"{field} must be a non-empty hex string")
    text = value.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    if not _HEX_RE.fullmatch(text):
        raise MalformedInput(f"{field} is not valid hex")
    return int(text, 16)
