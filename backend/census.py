"""
Census: Blind-Signature Eligibility Authority

Orchestrates ballot authorization:
  1. Refuse if the signing key has been revoked
  2. Optionally consult the eligibility roll and a client attestation signal
  3. Prevent duplicate issuance (atomic per voter)
  4. Blind-sign the voter's blinded token

The authority ONLY sees the blinded token. It never learns, stores, or logs
the unblinded token, and never needs the vote content.
"""

from blind_signature import ACTIVE, REVOKED, AuthorityConfig, blind_sign
from database import SQLiteEligibilityStore
from errors import AlreadyIssued, AttestationFailed, MalformedInput, NotEligible, SignerRevoked
from rsa_math import hex_to_int, int_to_hex


class BlindSignatureAuthority:
    def __init__(self, config: AuthorityConfig, store, enforce_roll: bool = False,
                 attestation_threshold: float = None, on_status_change=None):
        if not config.has_private:
            raise ValueError("the authority needs the private exponent")
        self.config = config
        self.store = store
        self.enforce_roll = enforce_roll
        self.attestation_threshold = attestation_threshold
        self._on_status_change = on_status_change

    def public_key(self) -> dict:
        """Return {n, e} as hex. No side effects."""
        return self.config.public_key()

    @property
    def status(self) -> str:
        return self.config.status

    def revoke(self):
        """Revoke the signing key. Every later authorization is rejected."""
        self.config.status = REVOKED
        if self._on_status_change:
            self._on_status_change(REVOKED)
        print(f"[census] Signing key {self.config.key_id} revoked.")

    def authorize_ballot(self, voter_id: str, blinded_token: int, attestation=None) -> int:
        """
        Issue a blind signature for a voter who has not been served yet.

        `attestation` is the boolean or score produced by an external client
        environment check; it is only consulted when a threshold is set.
        Raises SignerRevoked, NotEligible, AttestationFailed, AlreadyIssued.
        """
        if not voter_id or not isinstance(voter_id, str):
            raise MalformedInput("voterId is required")
        if not 0 < blinded_token < self.config.n:
            raise MalformedInput("blinded token out of range for modulus")

        if self.config.status != ACTIVE:
            raise SignerRevoked()

        if self.enforce_roll and not self.store.is_eligible(voter_id):
            raise NotEligible()

        if self.attestation_threshold is not None:
            score = float(attestation) if attestation is not None else 0.0
            if score < self.attestation_threshold:
                print(f"[census] Attestation rejected for {voter_id[:8]}...")
                raise AttestationFailed()

        try:
            with self.store.issuance(voter_id):
                blind_sig = blind_sign(blinded_token, self.config)
        except AlreadyIssued:
            print(f"[census] Second ballot request from {voter_id[:8]}... refused.")
            raise

        print(f"[census] Ballot authorized for {voter_id[:8]}... (blind signature issued)")
        return blind_sig

    def authorize_ballot_hex(self, voter_id: str, blinded_token_hex: str, attestation=None) -> str:
        blinded = hex_to_int(blinded_token_hex, "blindedTokenHex")
        return int_to_hex(self.authorize_ballot(voter_id, blinded, attestation))

    def voter_status(self, voter_id: str) -> dict:
        return self.store.get_voter_status(voter_id)

    def stats(self) -> dict:
        registered = self.store.roll_size()
        issued = self.store.issued_count()
        rate = f"{issued / registered * 100:.2f}%" if registered else "0%"
        return {
            "total_registered": registered,
            "total_ballots_issued": issued,
            "participation_rate": rate,
            "key_id": self.config.key_id,
            "status": self.config.status,
        }


def bootstrap(db, config: AuthorityConfig = None, demo_voter_ids: list = None) -> AuthorityConfig:
    """
    Initialize the database and the authority key, and optionally seed a list
    of eligible voter IDs. An explicit config replaces whatever is stored,
    except that a revoked key is never reactivated.
    """
    db.init_db()

    if config is not None:
        stored = db.get_authority_key()
        if stored is not None and (stored.n, stored.e) == (config.n, config.e) and stored.status == REVOKED:
            config.status = REVOKED
            print(f"[census] Configured RSA key {config.key_id} was revoked; it stays revoked.")
        db.store_authority_key(config)
        print(f"[census] Using configured RSA key {config.key_id}.")
    else:
        config = db.get_authority_key()
        if config is None:
            print("[census] Generating RSA keypair...")
            config = AuthorityConfig.generate()
            db.store_authority_key(config)
            print("[census] RSA keypair stored.")
        else:
            print("[census] Authority key already exists.")

    if demo_voter_ids:
        SQLiteEligibilityStore(db).seed_eligible_voters(demo_voter_ids)
        print(f"[census] Seeded {len(demo_voter_ids)} eligible voters.")

    return config
