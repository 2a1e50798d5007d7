"""
RSA Blind Signature Implementation for Anonymous Voting

Implements Chaum's blind signature protocol over raw RSA:
  1. Voter blinds a token m with a random factor r:   m' = m * r^e mod N
  2. Authority signs the blinded token:               s' = m'^d mod N
  3. Voter unblinds:                                   s  = s' * r^-1 mod N
  4. Anyone verifies with the public key only:         s^e mod N == m

The authority never sees m, so it cannot link the signed token to the voter
who requested it. Tokens are 256-bit values; a forged pair (s, s^e mod N)
lands below 2^256 with negligible probability, which is what makes a bare
RSA check usable as a credential.
"""

from Crypto.PublicKey import RSA
from Crypto.Random import get_random_bytes
from Crypto.Util.number import bytes_to_long

from canonical import sha256_hex
from errors import MalformedInput
from rsa_math import hex_to_int, int_to_hex, mod_inverse, mod_pow, random_coprime


KEY_SIZE = 2048  # bits
PUBLIC_EXPONENT = 65537
TOKEN_BITS = 256

ACTIVE = "ACTIVE"
REVOKED = "REVOKED"


class AuthorityConfig:
    """
    RSA key material of the eligibility authority.

    `d` is None for a public-only config (what the urn and voters hold).
    """

    def __init__(self, n: int, e: int, d: int = None, status: str = ACTIVE):
        if n <= 2 or e <= 1:
            raise ValueError("invalid RSA public key")
        if status not in (ACTIVE, REVOKED):
            raise ValueError(f"unknown key status: {status}")
        self.n = n
        self.e = e
        self.d = d
        self.status = status

    @property
    def key_id(self) -> str:
        """Short public fingerprint of (N, e)."""
        return sha256_hex(f"{int_to_hex(self.n)}:{int_to_hex(self.e)}")[:16]

    @property
    def has_private(self) -> bool:
        return self.d is not None

    @classmethod
    def generate(cls, bits: int = KEY_SIZE) -> "AuthorityConfig":
        key = RSA.generate(bits, e=PUBLIC_EXPONENT)
        return cls(key.n, key.e, key.d)

    @classmethod
    def from_pem(cls, pem: str) -> "AuthorityConfig":
        key = RSA.import_key(pem)
        return cls(key.n, key.e, key.d if key.has_private() else None)

    @classmethod
    def from_hex(cls, n_hex: str, e_hex: str, d_hex: str = None) -> "AuthorityConfig":
        n = hex_to_int(n_hex, "n")
        e = hex_to_int(e_hex, "e")
        d = hex_to_int(d_hex, "d") if d_hex else None
        return cls(n, e, d)

    def public(self) -> "AuthorityConfig":
        """Copy without the private exponent."""
        return AuthorityConfig(self.n, self.e, None, self.status)

    def public_key(self) -> dict:
        return {"n": int_to_hex(self.n), "e": int_to_hex(self.e)}

    def __repr__(self):
        return f"AuthorityConfig(key_id={self.key_id!r}, status={self.status!r})"


# ---------------------------------------------------------------------------
# Voter-side operations
# ---------------------------------------------------------------------------

def generate_token() -> int:
    """Random 256-bit ballot token."""
    return bytes_to_long(get_random_bytes(TOKEN_BITS // 8))


def is_valid_token(m: int) -> bool:
    return 0 < m < (1 << TOKEN_BITS)


def blind_token(token: int, n: int, e: int) -> tuple:
    """
    Blind a token with the authority's public key.

    Returns (blinded_token, blinding_factor). The blinding factor must stay on
    the voter's device and is needed exactly once, to unblind.
    """
    if not 0 < token < n:
        raise MalformedInput("token out of range for modulus")
    r = random_coprime(n)
    blinded = (token * mod_pow(r, e, n)) % n
    return blinded, r


def create_blinded_token(n: int, e: int) -> tuple:
    """Sample a fresh token and blind it. Returns (m, r, m')."""
    m = generate_token()
    blinded, r = blind_token(m, n, e)
    return m, r, blinded


def unblind(blind_sig: int, blinding_factor: int, n: int) -> int:
    """s = s' * r^-1 mod N. Raises NotInvertible if r shares a factor with N."""
    r_inv = mod_inverse(blinding_factor, n)
    return (blind_sig * r_inv) % n


def verify_signature(token: int, signature: int, n: int, e: int) -> bool:
    """Check s^e mod N == m."""
    if not 0 < signature < n:
        return False
    return mod_pow(signature, e, n) == token


# ---------------------------------------------------------------------------
# Authority-side operations
# ---------------------------------------------------------------------------

def blind_sign(blinded_token: int, config: AuthorityConfig) -> int:
    """
    Sign a blinded token: s' = m'^d mod N.
    The authority never sees the original token.
    """
    if config.d is None:
        raise ValueError("config holds no private exponent")
    if not 0 < blinded_token < config.n:
        raise MalformedInput("blinded token out of range for modulus")
    return mod_pow(blinded_token, config.d, config.n)


# ---------------------------------------------------------------------------
# Serialization helpers (for API transport)
# ---------------------------------------------------------------------------

def serialize_credential(token: int, signature: int) -> dict:
    """Serialize a (token, signature) credential for storage / transport."""
    return {
        "ballotTokenHex": int_to_hex(token),
        "censusSignatureHex": int_to_hex(signature),
    }


def deserialize_credential(data: dict) -> tuple:
    """Deserialize a credential dict back to (token, signature)."""
    token = hex_to_int(data.get("ballotTokenHex"), "ballotTokenHex")
    sig = hex_to_int(data.get("censusSignatureHex"), "censusSignatureHex")
    return token, sig

