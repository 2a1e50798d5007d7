"""
Anonymous Urn: final depository of verified votes.

The urn has NO caller authentication. Its only rule is mathematical: a token
carrying a valid authority signature is accepted once, anything else is
rejected. It holds the authority's public key only (N, e).

Deposit order, each step short-circuiting:
  1. anti-replay       : burned token → TokenAlreadyUsed
  2. signature check   : s^e mod N != m → InvalidSignature
  3. burn + record     : atomic with step 1 for the same token
  4. receipt           : SHA-256 of the vote content
"""

import time

import scrutiny
from audit_chain import ELECTION_CLOSED, VOTE_CAST
from blind_signature import AuthorityConfig, is_valid_token, verify_signature
from canonical import sha256_hex
from errors import AlreadyClosed, InvalidSignature, MalformedInput, TokenAlreadyUsed, VotingError
from rsa_math import hex_to_int, int_to_hex


def vote_option(vote_content) -> str:
    """The option a vote counts for: the string itself, or the dict's `choice`."""
    if isinstance(vote_content, str) and vote_content.strip():
        return vote_content
    if isinstance(vote_content, dict):
        choice = vote_content.get("choice")
        if isinstance(choice, str) and choice.strip():
            return choice
    raise MalformedInput("voteContent must be a non-empty string or an object with a choice")


def receipt_hash(vote_content) -> str:
    return sha256_hex(vote_content)


class AnonymousUrn:
    def __init__(self, authority_public: AuthorityConfig, store, options: list = None,
                 election_id: str = scrutiny.DEFAULT_ELECTION_ID, audit_chain=None, audit_key_id: str = None):
        self.public_key = authority_public.public()
        self.store = store
        self.options = list(options) if options else None
        self.election_id = election_id
        if audit_chain is not None and not audit_key_id:
            raise ValueError("audit_key_id is required with an audit chain")
        if audit_chain is not None and not audit_chain.has_key(audit_key_id):
            raise ValueError(f"no signing key {audit_key_id} loaded in the audit chain")
        self.audit_chain = audit_chain
        self.audit_key_id = audit_key_id
        self.audit_failures = 0

    def _validate(self, vote_content, token: int, signature: int) -> str:
        option = vote_option(vote_content)
        if self.options is not None and option not in self.options:
            raise MalformedInput(f"Invalid option. Choose from: {self.options}")
        if not is_valid_token(token):
            raise InvalidSignature("Ballot token outside the token space")
        if not 0 < signature < self.public_key.n:
            raise InvalidSignature("Signature out of range for modulus")
        return option

    def _audit(self, action: str, payload: dict):
        """
        Record an action that has already been committed. A failure here is
        reported, never turned into a rejection of the committed action.
        """
        if self.audit_chain is None:
            return
        try:
            self.audit_chain.append_block(action, payload, self.audit_key_id)
        except VotingError as e:
            self.audit_failures += 1
            print(f"[urn] Audit block for {action} not recorded: {e.message}")

    def submit_vote(self, vote_content, token: int, signature: int) -> str:
        """Deposit a vote. Returns the receipt (64 hex chars)."""
        option = self._validate(vote_content, token, signature)
        token_key = int_to_hex(token)

        record = {
            "receipt_hash": receipt_hash(vote_content),
            "option": option,
            "timestamp": int(time.time() * 1000),
        }

        try:
            with self.store.spend(token_key, record):
                if not verify_signature(token, signature, self.public_key.n, self.public_key.e):
                    raise InvalidSignature("Fraudulent ballot or invalid signature")
        except InvalidSignature:
            print(f"[urn] Token not signed by the authority: {token_key[:16]}...")
            raise
        except TokenAlreadyUsed:
            print(f"[urn] Replay attempt with token {token_key[:16]}...")
            raise

        print(f"[urn] Vote deposited. Receipt: {record['receipt_hash'][:16]}...")
        self._audit(VOTE_CAST, {"receipt": record["receipt_hash"]})
        return record["receipt_hash"]

    def submit_vote_hex(self, vote_content, token_hex: str, signature_hex: str) -> str:
        token = hex_to_int(token_hex, "ballotTokenHex")
        signature = hex_to_int(signature_hex, "censusSignatureHex")
        return self.submit_vote(vote_content, token, signature)

    def verify_receipt(self, receipt: str) -> dict:
        """Look a receipt up among deposited votes. No mutation."""
        if not isinstance(receipt, str) or not receipt:
            raise MalformedInput("receiptHash is required")
        found = self.store.find_vote(receipt)
        if found is None:
            return {"verified": False}
        return {"verified": True, "timestamp": found["timestamp"]}

    def close_election(self, election_id: str = None) -> dict:
        """
        Run the scrutiny and publish the record. Callable once per election;
        a second call raises AlreadyClosed.
        """
        election_id = election_id or self.election_id
        if self.store.is_closed(election_id):
            raise AlreadyClosed(f"Election {election_id} already closed")

        record = scrutiny.close_election(self.store.all_votes(), election_id)
        self.store.save_public_record(election_id, record)

        print("[urn] ========================================")
        print(f"[urn] Scrutiny completed for {election_id}")
        print(f"[urn] Total votes: {record['totalVotes']}")
        print(f"[urn] Merkle root: {record['merkleRoot']}")
        print("[urn] ========================================")

        self._audit(ELECTION_CLOSED, {"electionId": election_id, "actaHash": record["actaHash"]})
        return record

    def public_record(self, election_id: str = None):
        return self.store.get_public_record(election_id or self.election_id)

    def merkle_proof(self, receipt: str, election_id: str = None) -> dict:
        record = self.public_record(election_id)
        if record is None:
            raise MalformedInput("Election is not closed yet")
        proof = scrutiny.get_merkle_proof(receipt, record["allReceipts"])
        return {"found": proof is not None, "proof": proof, "merkleRoot": record["merkleRoot"]}

    def stats(self) -> dict:
        return {
            "total_votes": self.store.vote_count(),
            "status": "CLOSED" if self.store.is_closed(self.election_id) else "OPEN",
            "timestamp": int(time.time() * 1000),
        }
