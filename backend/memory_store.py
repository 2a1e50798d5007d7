"""
In-memory stores with the same method surface as the SQLite stores.

Used on the voter's device (local audit chain) and in tests. Check-and-set
operations hold a per-key lock, so requests for different voters or tokens
run in parallel while requests for the same key serialize.
"""

import copy
import threading
import time
from contextlib import contextmanager

from blind_signature import ACTIVE
from errors import AlreadyClosed, AlreadyIssued, ChainBreak, TokenAlreadyUsed


def _now_ms() -> int:
    return int(time.time() * 1000)


class KeyedLock:
    """A lock per key, created on demand and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class MemoryEligibilityStore:
    def __init__(self):
        self._eligible = set()
        self._issued = {}  # voter_id -> issued_at
        self._locks = KeyedLock()

    def seed_eligible_voters(self, voter_ids: list):
        self._eligible.update(voter_ids)

    def is_eligible(self, voter_id: str) -> bool:
        return voter_id in self._eligible

    def roll_size(self) -> int:
        return len(self._eligible)

    def has_token_issued(self, voter_id: str) -> bool:
        return voter_id in self._issued

    @contextmanager
    def issuance(self, voter_id: str):
        with self._locks.hold(voter_id):
            if voter_id in self._issued:
                raise AlreadyIssued()
            yield
            self._issued[voter_id] = _now_ms()

    def issued_count(self) -> int:
        return len(self._issued)

    def get_voter_status(self, voter_id: str) -> dict:
        return {
            "voter_id": voter_id,
            "eligible": self.is_eligible(voter_id),
            "token_issued": voter_id in self._issued,
            "token_issued_at": self._issued.get(voter_id),
        }


class MemoryBallotStore:
    def __init__(self):
        self._used = set()
        self._votes = []
        self._records = {}
        self._locks = KeyedLock()
        self._write_lock = threading.Lock()

    def is_token_used(self, token: str) -> bool:
        return token in self._used

    @contextmanager
    def spend(self, token: str, record: dict):
        with self._locks.hold(token):
            if token in self._used:
                raise TokenAlreadyUsed()
            yield
            with self._write_lock:
                self._used.add(token)
                self._votes.append(dict(record))

    def find_vote(self, receipt_hash: str):
        with self._write_lock:
            for vote in self._votes:
                if vote["receipt_hash"] == receipt_hash:
                    return dict(vote)
        return None

    def all_votes(self) -> list:
        with self._write_lock:
            return [dict(v) for v in self._votes]

    def vote_count(self) -> int:
        return len(self._votes)

    def save_public_record(self, election_id: str, record: dict):
        with self._write_lock:
            if election_id in self._records:
                raise AlreadyClosed(f"Election {election_id} already closed")
            self._records[election_id] = record

    def get_public_record(self, election_id: str):
        return self._records.get(election_id)

    def is_closed(self, election_id: str) -> bool:
        return election_id in self._records


class MemoryAuditStore:
    def __init__(self):
        self._blocks = []
        self._keys = {}
        self._lock = threading.Lock()

    def last_block(self):
        with self._lock:
            return copy.deepcopy(self._blocks[-1]) if self._blocks else None

    def append_block(self, block: dict):
        with self._lock:
            if self._blocks and block["index"] <= self._blocks[-1]["index"]:
                raise ChainBreak(f"Block index {block['index']} already exists")
            self._blocks.append(copy.deepcopy(block))

    def all_blocks(self) -> list:
        with self._lock:
            return copy.deepcopy(self._blocks)

    def block_count(self) -> int:
        return len(self._blocks)

    def register_key(self, key_id: str, public_key_pem: str):
        self._keys[key_id] = {
            "key_id": key_id,
            "public_key_pem": public_key_pem,
            "status": ACTIVE,
            "registered_at": _now_ms(),
        }

    def get_key(self, key_id: str):
        key = self._keys.get(key_id)
        return dict(key) if key else None

    def set_key_status(self, key_id: str, status: str) -> bool:
        if key_id not in self._keys:
            return False
        self._keys[key_id]["status"] = status
        return True
