"""
Unit tests for the RSA blind signature module.
"""

import pytest

from Crypto.PublicKey import RSA

from blind_signature import (
    ACTIVE,
    TOKEN_BITS,
    AuthorityConfig,
    blind_sign,
    blind_token,
    create_blinded_token,
    deserialize_credential,
    generate_token,
    is_valid_token,
    serialize_credential,
    unblind,
    verify_signature,
)
from errors import MalformedInput


@pytest.fixture(scope="module")
def token():
    return generate_token()


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------

class TestAuthorityConfig:
    def test_generated_key_has_private_exponent(self, authority_config):
        assert authority_config.has_private
        assert authority_config.e == 65537
        assert authority_config.status == ACTIVE

    def test_public_copy_drops_private_exponent(self, authority_config):
        pub = authority_config.public()
        assert pub.d is None
        assert pub.n == authority_config.n
        assert pub.key_id == authority_config.key_id

    def test_public_key_is_hex(self, authority_config):
        pk = authority_config.public_key()
        assert pk == {"n": format(authority_config.n, "x"), "e": "10001"}

    def test_key_id_differs_between_keys(self, authority_config, other_authority_config):
        assert len(authority_config.key_id) == 16
        assert authority_config.key_id != other_authority_config.key_id

    def test_from_pem(self):
        key = RSA.generate(1024)
        config = AuthorityConfig.from_pem(key.export_key().decode())
        assert (config.n, config.e, config.d) == (key.n, key.e, key.d)

        pub = AuthorityConfig.from_pem(key.publickey().export_key().decode())
        assert pub.d is None

    def test_from_hex(self, authority_config):
        config = AuthorityConfig.from_hex(
            format(authority_config.n, "x"), "10001", format(authority_config.d, "x")
        )
        assert config.n == authority_config.n
        assert config.d == authority_config.d

    def test_invalid_status_rejected(self, authority_config):
        with pytest.raises(ValueError):
            AuthorityConfig(authority_config.n, authority_config.e, status="MAYBE")


# ---------------------------------------------------------------------------
# Token generation
# ---------------------------------------------------------------------------

class TestTokenGeneration:
    def test_token_fits_token_space(self, token):
        assert is_valid_token(token)
        assert token < 2 ** TOKEN_BITS

    def test_tokens_are_unique(self):
        assert generate_token() != generate_token()

    def test_token_space_bounds(self):
        assert not is_valid_token(0)
        assert not is_valid_token(2 ** TOKEN_BITS)


# ---------------------------------------------------------------------------
# Full blind signature protocol
# ---------------------------------------------------------------------------

class TestBlindSignatureProtocol:
    def test_full_protocol(self, authority_config, token):
        n, e = authority_config.n, authority_config.e

        # Step 1: Voter blinds token
        blinded, r = blind_token(token, n, e)
        assert blinded != token

        # Step 2: Authority signs blind token (never sees original token)
        blind_sig = blind_sign(blinded, authority_config)

        # Step 3: Voter unblinds to get the actual signature
        signature = unblind(blind_sig, r, n)

        # Step 4: Unblinded signature is the plain RSA signature over m
        assert signature == pow(token, authority_config.d, n)
        assert verify_signature(token, signature, n, e)

    def test_create_blinded_token(self, authority_config):
        n, e = authority_config.n, authority_config.e
        m, r, blinded = create_blinded_token(n, e)
        assert blinded == (m * pow(r, e, n)) % n
        signature = unblind(blind_sign(blinded, authority_config), r, n)
        assert pow(signature, e, n) == m

    def test_wrong_token_fails_verification(self, authority_config, mint):
        token, signature = mint()
        assert not verify_signature(generate_token(), signature, authority_config.n, authority_config.e)

    def test_tampered_signature_fails_verification(self, authority_config, mint):
        token, signature = mint()
        tampered = signature ^ (1 << 10)  # flip a bit
        assert not verify_signature(token, tampered, authority_config.n, authority_config.e)

    def test_signature_from_wrong_key_fails(self, authority_config, other_authority_config, token):
        n, e = authority_config.n, authority_config.e
        blinded, r = blind_token(token, n, e)
        # Sign with a DIFFERENT private key over the same-size modulus
        blind_sig = blind_sign(blinded % other_authority_config.n, other_authority_config)
        signature = unblind(blind_sig, r, n)
        assert not verify_signature(token, signature, n, e)

    def test_blinding_unlinkability(self, authority_config, token):
        """
        Blinding the same token twice gives different blinded values and
        different blind signatures, yet both unblind to the same signature.
        """
        n = authority_config.n
        blinded1, r1 = blind_token(token, n, authority_config.e)
        blinded2, r2 = blind_token(token, n, authority_config.e)
        assert blinded1 != blinded2

        blind_sig1 = blind_sign(blinded1, authority_config)
        blind_sig2 = blind_sign(blinded2, authority_config)
        assert blind_sig1 != blind_sig2

        assert unblind(blind_sig1, r1, n) == unblind(blind_sig2, r2, n)

    def test_out_of_range_blinded_token_rejected(self, authority_config):
        with pytest.raises(MalformedInput):
            blind_sign(0, authority_config)
        with pytest.raises(MalformedInput):
            blind_sign(authority_config.n, authority_config)

    def test_public_config_cannot_sign(self, authority_config):
        with pytest.raises(ValueError):
            blind_sign(12345, authority_config.public())

    def test_signature_out_of_range_is_invalid(self, authority_config, mint):
        token, signature = mint()
        assert not verify_signature(token, signature + authority_config.n, authority_config.n, authority_config.e)


class TestSerialization:
    def test_credential_roundtrip(self, mint):
        token, signature = mint()
        cred = serialize_credential(token, signature)
        assert set(cred) == {"ballotTokenHex", "censusSignatureHex"}
        assert deserialize_credential(cred) == (token, signature)

    def test_deserialize_missing_field(self):
        with pytest.raises(MalformedInput):
            deserialize_credential({"ballotTokenHex": "ab"})
