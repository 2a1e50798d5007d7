"""
Voter-side blind signature client.

Runs on the voter's trusted device and drives the protocol as an explicit
state machine:

  NEW -> KEY_FETCHED -> TOKEN_BLINDED -> SIGNATURE_RECEIVED -> UNBLINDED -> DEPOSITED

Any failure moves to FAILED; reset() starts over with a fresh token and
blinding factor. The blinding factor is dropped the moment it has been used.

`census` and `urn` are anything exposing the authority / urn surface
(public_key, authorize_ballot, submit_vote, verify_receipt).
"""

from Crypto.Random import get_random_bytes

from blind_signature import create_blinded_token, serialize_credential, unblind, verify_signature
from errors import InvalidSignature, NoActiveToken, NotInvertible, ProtocolStateError
from rsa_math import hex_to_int

NEW = "NEW"
KEY_FETCHED = "KEY_FETCHED"
TOKEN_BLINDED = "TOKEN_BLINDED"
SIGNATURE_RECEIVED = "SIGNATURE_RECEIVED"
UNBLINDED = "UNBLINDED"
DEPOSITED = "DEPOSITED"
FAILED = "FAILED"


class BlindVoter:
    def __init__(self, add_nonce: bool = True):
        self.add_nonce = add_nonce
        self.n = None
        self.e = None
        self.state = NEW
        self.receipt = None
        self._token = None
        self._r = None
        self._blind_sig = None
        self._signature = None

    def _require(self, *states):
        if self.state not in states:
            raise ProtocolStateError(f"Not allowed in state {self.state}; expected {', '.join(states)}")

    def _fail(self):
        self._r = None
        self._blind_sig = None
        self.state = FAILED

    def reset(self):
        """Drop every per-ballot secret. Keeps the authority key if one was loaded."""
        self._token = None
        self._r = None
        self._blind_sig = None
        self._signature = None
        self.receipt = None
        self.state = KEY_FETCHED if self.n is not None else NEW

    # ------------------------------------------------------------------
    # Step 0: authority key
    # ------------------------------------------------------------------

    def load_public_key(self, public_key: dict):
        self._require(NEW, KEY_FETCHED)
        self.n = hex_to_int(public_key.get("n"), "n")
        self.e = hex_to_int(public_key.get("e"), "e")
        self.state = KEY_FETCHED

    def fetch_public_key(self, census):
        self.load_public_key(census.public_key())

    # ------------------------------------------------------------------
    # Step 1-2: blind and get signed
    # ------------------------------------------------------------------

    def create_blinded_token(self) -> int:
        """Sample token m and factor r; return m' = m * r^e mod N."""
        self._require(KEY_FETCHED)
        self._token, self._r, blinded = create_blinded_token(self.n, self.e)
        self.state = TOKEN_BLINDED
        return blinded

    def receive_blind_signature(self, blind_sig: int):
        self._require(TOKEN_BLINDED)
        if not 0 < blind_sig < self.n:
            self._fail()
            raise InvalidSignature("Blind signature out of range")
        self._blind_sig = blind_sig
        self.state = SIGNATURE_RECEIVED

    def request_blind_signature(self, census, voter_id: str, attestation=None) -> int:
        blinded = self.create_blinded_token()
        try:
            blind_sig = census.authorize_ballot(voter_id, blinded, attestation)
        except Exception:
            self._fail()
            raise
        self.receive_blind_signature(blind_sig)
        return blind_sig

    # ------------------------------------------------------------------
    # Step 3: unblind
    # ------------------------------------------------------------------

    def unblind(self) -> tuple:
        """
        s = s' * r^-1 mod N, then self-check s^e mod N == m.
        r is destroyed whatever the outcome; a second call raises NoActiveToken.
        """
        if self._r is None:
            raise NoActiveToken()
        self._require(SIGNATURE_RECEIVED)

        try:
            signature = unblind(self._blind_sig, self._r, self.n)
        except NotInvertible:
            self._fail()
            raise
        finally:
            self._r = None
            self._blind_sig = None

        if not verify_signature(self._token, signature, self.n, self.e):
            self._fail()
            raise InvalidSignature("Unblinded signature does not verify; restart the protocol")

        self._signature = signature
        self.state = UNBLINDED
        return self._token, signature

    def credential(self) -> dict:
        self._require(UNBLINDED)
        return serialize_credential(self._token, self._signature)

    # ------------------------------------------------------------------
    # Step 4-5: deposit and verify
    # ------------------------------------------------------------------

    def prepare_content(self, vote_content):
        """Attach a random nonce so equal choices produce distinct receipts."""
        if not self.add_nonce:
            return vote_content
        if isinstance(vote_content, str):
            vote_content = {"choice": vote_content}
        content = dict(vote_content)
        content.setdefault("nonce", get_random_bytes(16).hex())
        return content

    def deposit(self, urn, vote_content) -> str:
        self._require(UNBLINDED)
        content = self.prepare_content(vote_content)
        self.receipt = urn.submit_vote(content, self._token, self._signature)
        self._token = None
        self._signature = None
        self.state = DEPOSITED
        return self.receipt

    def cast_vote(self, census, urn, voter_id: str, vote_content, attestation=None) -> str:
        """Full flow: key, blind, authorize, unblind, deposit. Returns the receipt."""
        if self.state == NEW:
            self.fetch_public_key(census)
        self.request_blind_signature(census, voter_id, attestation)
        self.unblind()
        return self.deposit(urn, vote_content)

    def verify_receipt(self, urn, receipt: str = None) -> dict:
        return urn.verify_receipt(receipt or self.receipt)
