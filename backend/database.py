"""
SQLite persistence for the voting core.

Three logically separate stores share one database file:

  SQLiteEligibilityStore: the identity layer. Knows WHO received a ballot,
                           never WHAT they voted.
  SQLiteBallotStore     : the urn. Burned tokens, anonymous vote records and
                           published records. Holds no voter identities.
  SQLiteAuditStore      : append-only audit blocks and registered signer keys.

Atomic check-and-set relies on primary keys: a second writer for the same
voter / token / block index fails the INSERT inside its own transaction, so at
most one succeeds and the loser leaves nothing behind.
"""

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from blind_signature import ACTIVE, AuthorityConfig
from errors import AlreadyClosed, AlreadyIssued, ChainBreak, TokenAlreadyUsed
from rsa_math import hex_to_int, int_to_hex

DB_PATH = Path(__file__).parent / "securevote.db"


def _now_ms() -> int:
    return int(time.time() * 1000)


class Database:
    """Thread-local SQLite connections over a single file."""

    def __init__(self, path=None):
        self.path = Path(path) if path else DB_PATH
        self._local = threading.local()

    def get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, "conn", None) is None:
            conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    @contextmanager
    def get_db(self):
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def init_db(self):
        """Create tables if they do not exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.get_db() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS eligible_voters (
                    voter_id    TEXT PRIMARY KEY
                );

                CREATE TABLE IF NOT EXISTS issuances (
                    voter_id    TEXT PRIMARY KEY,
                    issued_at   INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS authority_keys (
                    id          INTEGER PRIMARY KEY CHECK (id = 1),
                    n_hex       TEXT NOT NULL,
                    e_hex       TEXT NOT NULL,
                    d_hex       TEXT NOT NULL,
                    status      TEXT NOT NULL DEFAULT 'ACTIVE',
                    created_at  TEXT NOT NULL DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS used_tokens (
                    token       TEXT PRIMARY KEY,
                    burned_at   INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS votes (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    receipt_hash TEXT NOT NULL,
                    option       TEXT NOT NULL,
                    timestamp    INTEGER NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_votes_receipt ON votes (receipt_hash);

                CREATE TABLE IF NOT EXISTS public_records (
                    election_id  TEXT PRIMARY KEY,
                    record       TEXT NOT NULL,
                    closed_at    INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_blocks (
                    idx          INTEGER PRIMARY KEY,
                    block        TEXT NOT NULL,
                    received_at  INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS signer_keys (
                    key_id         TEXT PRIMARY KEY,
                    public_key_pem TEXT NOT NULL,
                    status         TEXT NOT NULL DEFAULT 'ACTIVE',
                    registered_at  INTEGER NOT NULL
                );
            """)

    # ------------------------------------------------------------------
    # Authority key operations
    # ------------------------------------------------------------------

    def store_authority_key(self, config: AuthorityConfig):
        """Persist the signing key. A revoked key stays revoked when the same (N, e) is stored again."""
        if config.d is None:
            raise ValueError("refusing to persist a public-only authority key")
        with self.get_db() as conn:
            conn.execute(
                """INSERT INTO authority_keys (id, n_hex, e_hex, d_hex, status)
                   VALUES (1, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE
                   SET n_hex=excluded.n_hex, e_hex=excluded.e_hex,
                       d_hex=excluded.d_hex,
                       status=CASE
                           WHEN authority_keys.n_hex=excluded.n_hex
                                AND authority_keys.e_hex=excluded.e_hex
                                AND authority_keys.status='REVOKED'
                           THEN 'REVOKED' ELSE excluded.status END,
                       created_at=datetime('now')""",
                (int_to_hex(config.n), int_to_hex(config.e), int_to_hex(config.d), config.status),
            )

    def get_authority_key(self):
        """Return the stored AuthorityConfig or None."""
        conn = self.get_connection()
        row = conn.execute("SELECT n_hex, e_hex, d_hex, status FROM authority_keys WHERE id=1").fetchone()
        if row is None:
            return None
        return AuthorityConfig(
            hex_to_int(row["n_hex"]), hex_to_int(row["e_hex"]), hex_to_int(row["d_hex"]), row["status"]
        )

    def set_authority_status(self, status: str):
        with self.get_db() as conn:
            conn.execute("UPDATE authority_keys SET status=? WHERE id=1", (status,))


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------

class SQLiteEligibilityStore:
    def __init__(self, db: Database):
        self.db = db

    def seed_eligible_voters(self, voter_ids: list):
        """Pre-populate the eligible voters list (admin operation)."""
        with self.db.get_db() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO eligible_voters (voter_id) VALUES (?)",
                [(vid,) for vid in voter_ids],
            )

    def is_eligible(self, voter_id: str) -> bool:
        row = self.db.get_connection().execute(
            "SELECT voter_id FROM eligible_voters WHERE voter_id = ?", (voter_id,)
        ).fetchone()
        return row is not None

    def roll_size(self) -> int:
        return self.db.get_connection().execute("SELECT COUNT(*) FROM eligible_voters").fetchone()[0]

    def has_token_issued(self, voter_id: str) -> bool:
        row = self.db.get_connection().execute(
            "SELECT 1 FROM issuances WHERE voter_id = ?", (voter_id,)
        ).fetchone()
        return row is not None

    @contextmanager
    def issuance(self, voter_id: str):
        """
        Reject a served voter up front, run the block with no write lock held,
        then record the issuance. A concurrent request for the same voter loses
        on the primary key and raises AlreadyIssued, discarding its result.
        """
        if self.has_token_issued(voter_id):
            raise AlreadyIssued()
        yield
        try:
            with self.db.get_db() as conn:
                conn.execute(
                    "INSERT INTO issuances (voter_id, issued_at) VALUES (?, ?)",
                    (voter_id, _now_ms()),
                )
        except sqlite3.IntegrityError:
            raise AlreadyIssued()

    def issued_count(self) -> int:
        return self.db.get_connection().execute("SELECT COUNT(*) FROM issuances").fetchone()[0]

    def get_voter_status(self, voter_id: str) -> dict:
        row = self.db.get_connection().execute(
            "SELECT issued_at FROM issuances WHERE voter_id = ?", (voter_id,)
        ).fetchone()
        return {
            "voter_id": voter_id,
            "eligible": self.is_eligible(voter_id),
            "token_issued": row is not None,
            "token_issued_at": row["issued_at"] if row else None,
        }


# ---------------------------------------------------------------------------
# Urn
# ---------------------------------------------------------------------------

class SQLiteBallotStore:
    def __init__(self, db: Database):
        self.db = db

    def is_token_used(self, token: str) -> bool:
        row = self.db.get_connection().execute(
            "SELECT 1 FROM used_tokens WHERE token = ?", (token,)
        ).fetchone()
        return row is not None

    @contextmanager
    def spend(self, token: str, record: dict):
        """
        Reject a burned token up front, run the block, then burn the token and
        append `record` in one transaction. A concurrent spend of the same
        token loses on the primary key and raises TokenAlreadyUsed.
        """
        if self.is_token_used(token):
            raise TokenAlreadyUsed()
        yield
        try:
            with self.db.get_db() as conn:
                conn.execute(
                    "INSERT INTO used_tokens (token, burned_at) VALUES (?, ?)",
                    (token, _now_ms()),
                )
                conn.execute(
                    "INSERT INTO votes (receipt_hash, option, timestamp) VALUES (?, ?, ?)",
                    (record["receipt_hash"], record["option"], record["timestamp"]),
                )
        except sqlite3.IntegrityError:
            raise TokenAlreadyUsed()

    def find_vote(self, receipt_hash: str):
        row = self.db.get_connection().execute(
            "SELECT receipt_hash, option, timestamp FROM votes WHERE receipt_hash = ? ORDER BY id LIMIT 1",
            (receipt_hash,),
        ).fetchone()
        return dict(row) if row else None

    def all_votes(self) -> list:
        rows = self.db.get_connection().execute(
            "SELECT receipt_hash, option, timestamp FROM votes ORDER BY id"
        ).fetchall()
        return [dict(r) for r in rows]

    def vote_count(self) -> int:
        return self.db.get_connection().execute("SELECT COUNT(*) FROM votes").fetchone()[0]

    def save_public_record(self, election_id: str, record: dict):
        try:
            with self.db.get_db() as conn:
                conn.execute(
                    "INSERT INTO public_records (election_id, record, closed_at) VALUES (?, ?, ?)",
                    (election_id, json.dumps(record), _now_ms()),
                )
        except sqlite3.IntegrityError:
            raise AlreadyClosed(f"Election {election_id} already closed")

    def get_public_record(self, election_id: str):
        row = self.db.get_connection().execute(
            "SELECT record FROM public_records WHERE election_id = ?", (election_id,)
        ).fetchone()
        return json.loads(row["record"]) if row else None

    def is_closed(self, election_id: str) -> bool:
        return self.get_public_record(election_id) is not None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class SQLiteAuditStore:
    def __init__(self, db: Database):
        self.db = db

    def last_block(self):
        row = self.db.get_connection().execute(
            "SELECT block FROM audit_blocks ORDER BY idx DESC LIMIT 1"
        ).fetchone()
        return json.loads(row["block"]) if row else None

    def append_block(self, block: dict):
        try:
            with self.db.get_db() as conn:
                conn.execute(
                    "INSERT INTO audit_blocks (idx, block, received_at) VALUES (?, ?, ?)",
                    (block["index"], json.dumps(block), _now_ms()),
                )
        except sqlite3.IntegrityError:
            raise ChainBreak(f"Block index {block['index']} already exists")

    def all_blocks(self) -> list:
        rows = self.db.get_connection().execute(
            "SELECT block FROM audit_blocks ORDER BY idx"
        ).fetchall()
        return [json.loads(r["block"]) for r in rows]

    def block_count(self) -> int:
        return self.db.get_connection().execute("SELECT COUNT(*) FROM audit_blocks").fetchone()[0]

    def register_key(self, key_id: str, public_key_pem: str):
        with self.db.get_db() as conn:
            conn.execute(
                """INSERT INTO signer_keys (key_id, public_key_pem, status, registered_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(key_id) DO UPDATE
                   SET public_key_pem=excluded.public_key_pem, status=excluded.status,
                       registered_at=excluded.registered_at""",
                (key_id, public_key_pem, ACTIVE, _now_ms()),
            )

    def get_key(self, key_id: str):
        row = self.db.get_connection().execute(
            "SELECT key_id, public_key_pem, status, registered_at FROM signer_keys WHERE key_id = ?",
            (key_id,),
        ).fetchone()
        return dict(row) if row else None

    def set_key_status(self, key_id: str, status: str) -> bool:
        with self.db.get_db() as conn:
            cur = conn.execute("UPDATE signer_keys SET status=? WHERE key_id=?", (status, key_id))
            return cur.rowcount > 0
