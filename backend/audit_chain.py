"""
Audit Chain

An append-only ledger of protocol actions. Each block:
  - links to its predecessor through previous_hash (genesis: 64 zeros)
  - commits to the action payload by hash only (payload_hash)
  - is signed with the actor's ECDSA P-256 key (replaces proof-of-work)
  - optionally carries an AES-GCM encrypted copy of the state it supersedes
    (evidence_vault), so deletions and alterations leave forensic evidence
    without exposing plaintext in the ledger

Two consumers:
  AuditChain: the local writer, e.g. the voter's device
  TransparencyServer: receives blocks from remote writers and re-verifies
  signatures against registered keys before storing
"""

import json
import threading
import time

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.PublicKey import ECC
from Crypto.Random import get_random_bytes
from Crypto.Signature import DSS

from blind_signature import ACTIVE, REVOKED
from canonical import canonical_json, sha256_hex
from errors import ChainBreak, HashMismatch, InvalidSignature, MalformedInput, VotingError

GENESIS_HASH = "0" * 64

VOTE_CAST = "VOTE_CAST"
VOTE_ALTERED_ATTEMPT = "VOTE_ALTERED_ATTEMPT"
RECORD_DELETED = "RECORD_DELETED"
ELECTION_CLOSED = "ELECTION_CLOSED"

CHAIN_BREAK = "CHAIN_BREAK"
HASH_MISMATCH = "HASH_MISMATCH"


def _now_ms() -> int:
    return int(time.time() * 1000)


class SignablePayload:
    """The exact fields covered by a block signature. Never holds signature or hash."""

    FIELDS = ("index", "timestamp", "action", "signer_key_id", "payload_hash",
              "previous_hash", "evidence_vault")

    def __init__(self, index: int, timestamp: int, action: str, signer_key_id: str,
                 payload_hash: str, previous_hash: str, evidence_vault: dict = None):
        self.index = index
        self.timestamp = timestamp
        self.action = action
        self.signer_key_id = signer_key_id
        self.payload_hash = payload_hash
        self.previous_hash = previous_hash
        self.evidence_vault = evidence_vault

    def to_dict(self) -> dict:
        return {field: getattr(self, field) for field in self.FIELDS}

    def to_bytes(self) -> bytes:
        return canonical_json(self.to_dict()).encode("utf-8")


class AuditBlock:
    def __init__(self, payload: SignablePayload, signature: str, hash: str = None):
        self.payload = payload
        self.signature = signature
        self.hash = hash if hash is not None else self.compute_hash()

    def compute_hash(self) -> str:
        content = self.payload.to_dict()
        content["signature"] = self.signature
        return sha256_hex(content)

    @property
    def index(self) -> int:
        return self.payload.index

    @property
    def timestamp(self) -> int:
        return self.payload.timestamp

    @property
    def action(self) -> str:
        return self.payload.action

    @property
    def signer_key_id(self) -> str:
        return self.payload.signer_key_id

    @property
    def previous_hash(self) -> str:
        return self.payload.previous_hash

    @property
    def evidence_vault(self):
        return self.payload.evidence_vault

    def to_dict(self) -> dict:
        data = self.payload.to_dict()
        data["signature"] = self.signature
        data["hash"] = self.hash
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AuditBlock":
        """Rebuild a block keeping the stored hash as-is (it is not recomputed)."""
        try:
            payload = SignablePayload(**{field: data[field] for field in SignablePayload.FIELDS})
            return cls(payload, data["signature"], data["hash"])
        except (KeyError, TypeError) as e:
            raise MalformedInput(f"Malformed audit block: missing {e}")


class SignerKey:
    """ECDSA P-256 key used to sign audit blocks."""

    def __init__(self, key_id: str, private_key):
        self.key_id = key_id
        self.private_key = private_key

    @classmethod
    def generate(cls, key_id: str = None) -> "SignerKey":
        key = ECC.generate(curve="P-256")
        if key_id is None:
            key_id = sha256_hex(key.public_key().export_key(format="PEM"))[:16]
        return cls(key_id, key)

    def public_pem(self) -> str:
        return self.private_key.public_key().export_key(format="PEM")

    def sign(self, data: bytes) -> str:
        signer = DSS.new(self.private_key, "fips-186-3")
        return signer.sign(SHA256.new(data)).hex()


def verify_block_signature(block: AuditBlock, public_key_pem: str) -> bool:
    """Check the block signature (IEEE P1363 r||s over SHA-256) against a PEM key."""
    try:
        key = ECC.import_key(public_key_pem)
        signature = bytes.fromhex(block.signature)
        DSS.new(key, "fips-186-3").verify(SHA256.new(block.payload.to_bytes()), signature)
        return True
    except (ValueError, TypeError):
        return False


class EvidenceVault:
    """AES-256-GCM sealing of superseded state."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("evidence key must be 32 bytes")
        self._key = key

    def encrypt(self, state) -> dict:
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=get_random_bytes(12))
        ciphertext, tag = cipher.encrypt_and_digest(canonical_json(state).encode("utf-8"))
        return {"ciphertext": ciphertext.hex(), "nonce": cipher.nonce.hex(), "tag": tag.hex()}

    def decrypt(self, sealed: dict):
        """Raises ValueError if the key is wrong or the ciphertext was altered."""
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=bytes.fromhex(sealed["nonce"]))
        plaintext = cipher.decrypt_and_verify(
            bytes.fromhex(sealed["ciphertext"]), bytes.fromhex(sealed["tag"])
        )
        return json.loads(plaintext.decode("utf-8"))


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def _as_block(block) -> AuditBlock:
    return block if isinstance(block, AuditBlock) else AuditBlock.from_dict(block)


def verify_chain(blocks: list) -> dict:
    """
    Check links and stored hashes of an ordered list of blocks (dicts or
    AuditBlock). Errors are reported, never repaired.
    """
    errors = []
    parsed = []
    for i, raw in enumerate(blocks):
        try:
            parsed.append(_as_block(raw))
        except MalformedInput as e:
            parsed.append(None)
            errors.append({"type": HASH_MISMATCH, "block_index": i, "message": e.message})

    for i, block in enumerate(parsed):
        if block is None:
            continue

        if i == 0:
            if block.index != 0 or block.previous_hash != GENESIS_HASH:
                errors.append({
                    "type": CHAIN_BREAK,
                    "block_index": 0,
                    "message": "Chain does not start with a genesis block linked to the zero hash",
                })
        elif parsed[i - 1] is not None and (
            block.previous_hash != parsed[i - 1].hash or block.index != parsed[i - 1].index + 1
        ):
            errors.append({
                "type": CHAIN_BREAK,
                "block_index": i,
                "message": f"Broken link between block {i - 1} and {i}",
            })

        if block.compute_hash() != block.hash:
            errors.append({
                "type": HASH_MISMATCH,
                "block_index": i,
                "message": f"Invalid hash in block {i}; stored data was modified",
            })

    return {"valid": not errors, "block_count": len(blocks), "errors": errors}


# ---------------------------------------------------------------------------
# Local writer
# ---------------------------------------------------------------------------

class AuditChain:
    def __init__(self, store, keys=None, evidence_key: bytes = None):
        self.store = store
        self._keys = {k.key_id: k for k in (keys or [])}
        self._vault = EvidenceVault(evidence_key or get_random_bytes(32))
        self._lock = threading.Lock()
        self._synced_index = -1

    def add_key(self, key: SignerKey):
        self._keys[key.key_id] = key

    def has_key(self, key_id: str) -> bool:
        return key_id in self._keys

    def append_block(self, action: str, payload, signing_key_id: str, previous_state=None) -> AuditBlock:
        """
        Append a signed block. Pass `previous_state` when the action alters or
        deletes a record; it is stored encrypted in the block.
        """
        key = self._keys.get(signing_key_id)
        if key is None:
            raise InvalidSignature(f"No private key loaded for {signing_key_id}")

        with self._lock:
            last = self.store.last_block()
            previous_hash = last["hash"] if last else GENESIS_HASH
            index = last["index"] + 1 if last else 0

            evidence = self._vault.encrypt(previous_state) if previous_state is not None else None

            signable = SignablePayload(
                index=index,
                timestamp=_now_ms(),
                action=action,
                signer_key_id=signing_key_id,
                payload_hash=sha256_hex(payload),
                previous_hash=previous_hash,
                evidence_vault=evidence,
            )
            block = AuditBlock(signable, key.sign(signable.to_bytes()))
            self.store.append_block(block.to_dict())
            return block

    def blocks(self) -> list:
        return [AuditBlock.from_dict(b) for b in self.store.all_blocks()]

    def verify(self) -> dict:
        return verify_chain(self.store.all_blocks())

    def decrypt_evidence(self, block):
        """Recover the superseded state sealed in a block, or None."""
        block = _as_block(block)
        if not block.evidence_vault:
            return None
        return self._vault.decrypt(block.evidence_vault)

    def synchronize(self, server) -> dict:
        """Send blocks not yet accepted by `server` (a TransparencyServer)."""
        pending = [b for b in self.store.all_blocks() if b["index"] > self._synced_index]
        if not pending:
            return {"success": True, "synced": 0, "pending": 0}

        result = server.sync(pending)
        for detail in result["details"]:
            if detail["status"] != "ACCEPTED":
                break
            self._synced_index = detail["index"]

        still_pending = sum(1 for b in pending if b["index"] > self._synced_index)
        return {
            "success": result["success"],
            "synced": len(pending) - still_pending,
            "pending": still_pending,
        }

    def stats(self) -> dict:
        blocks = self.store.all_blocks()
        counts = {VOTE_CAST: 0, VOTE_ALTERED_ATTEMPT: 0, RECORD_DELETED: 0}
        for block in blocks:
            if block["action"] in counts:
                counts[block["action"]] += 1
        synced = sum(1 for b in blocks if b["index"] <= self._synced_index)
        return {
            "total_blocks": len(blocks),
            "votes": counts[VOTE_CAST],
            "alterations": counts[VOTE_ALTERED_ATTEMPT],
            "deletions": counts[RECORD_DELETED],
            "last_block_time": blocks[-1]["timestamp"] if blocks else None,
            "synced_blocks": synced,
            "pending_sync": len(blocks) - synced,
        }


# ---------------------------------------------------------------------------
# Server-side receiver
# ---------------------------------------------------------------------------

class TransparencyServer:
    """
    Stores blocks submitted by remote writers. The network path transports
    blocks but does not vouch for them, so every block is re-verified against
    a registered ACTIVE key before it is stored.
    """

    def __init__(self, store):
        self.store = store
        self._lock = threading.Lock()

    def register_key(self, key_id: str, public_key_pem: str) -> dict:
        try:
            ECC.import_key(public_key_pem)
        except (ValueError, IndexError, TypeError):
            raise MalformedInput("publicKeyPem is not a valid EC public key")
        self.store.register_key(key_id, public_key_pem)
        print(f"[audit] Public key {key_id} registered.")
        return {"success": True, "key_id": key_id, "status": ACTIVE}

    def revoke_key(self, key_id: str) -> dict:
        if not self.store.set_key_status(key_id, REVOKED):
            raise MalformedInput(f"Unknown key {key_id}")
        print(f"[audit] Public key {key_id} revoked.")
        return {"success": True, "key_id": key_id, "status": REVOKED}

    def _accept(self, raw: dict) -> AuditBlock:
        block = AuditBlock.from_dict(raw)

        key = self.store.get_key(block.signer_key_id)
        if key is None:
            raise InvalidSignature(f"Unknown signer key {block.signer_key_id}")
        if key["status"] != ACTIVE:
            raise InvalidSignature(f"Signer key {block.signer_key_id} is revoked")
        if not verify_block_signature(block, key["public_key_pem"]):
            print(f"[audit] Invalid signature on block from {block.signer_key_id}")
            raise InvalidSignature("Invalid block signature; possible tampering")

        if block.compute_hash() != block.hash:
            raise HashMismatch(f"Hash mismatch in block {block.index}")

        last = self.store.last_block()
        if last is not None:
            if block.previous_hash != last["hash"] or block.index != last["index"] + 1:
                print(f"[audit] Broken chain between {last['index']} and {block.index}; block rejected")
                raise ChainBreak(f"Block {block.index} does not extend block {last['index']}")
        elif block.index != 0 or block.previous_hash != GENESIS_HASH:
            print(f"[audit] Block {block.index} received before the genesis block; block rejected")
            raise ChainBreak("The first stored block must be index 0 linked to the zero hash")

        self.store.append_block(block.to_dict())
        return block

    def sync(self, blocks: list) -> dict:
        """Accept or reject each block independently, in order."""
        if not isinstance(blocks, list):
            raise MalformedInput("Expected { blocks: [...] }")

        details = []
        with self._lock:
            for raw in blocks:
                index = raw.get("index") if isinstance(raw, dict) else None
                try:
                    if not isinstance(raw, dict):
                        raise MalformedInput("block must be an object")
                    self._accept(raw)
                    details.append({"index": index, "status": "ACCEPTED"})
                except VotingError as e:
                    details.append({"index": index, "status": "REJECTED", "code": e.code, "reason": e.message})

        success = all(d["status"] == "ACCEPTED" for d in details)
        return {"success": success, "details": details, "stored_blocks": self.store.block_count()}

    def chain(self) -> dict:
        blocks = self.store.all_blocks()
        return {"chain": blocks, "verification": verify_chain(blocks), "total_blocks": len(blocks)}
