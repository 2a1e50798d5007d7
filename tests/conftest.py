"""
pytest configuration for SecureVote tests.
Adds the backend directory to sys.path and provides shared key material.
"""
import sys
import os

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(ROOT, 'backend'))

from blind_signature import AuthorityConfig, blind_sign, blind_token, generate_token, unblind
from database import Database, SQLiteAuditStore, SQLiteBallotStore, SQLiteEligibilityStore
from memory_store import MemoryAuditStore, MemoryBallotStore, MemoryEligibilityStore


@pytest.fixture(scope="session")
def authority_config():
    """One 1024-bit authority key for the whole run (2048-bit generation is slow)."""
    return AuthorityConfig.generate(bits=1024)


@pytest.fixture(scope="session")
def other_authority_config():
    return AuthorityConfig.generate(bits=1024)


@pytest.fixture
def mint(authority_config):
    """Produce a valid (token, signature) credential without going through a Census."""
    def _mint(config=None):
        config = config or authority_config
        token = generate_token()
        blinded, r = blind_token(token, config.n, config.e)
        return token, unblind(blind_sign(blinded, config), r, config.n)
    return _mint


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "test_securevote.db")
    database.init_db()
    yield database
    database.close()


@pytest.fixture(params=["memory", "sqlite"])
def stores(request, tmp_path):
    """(eligibility, ballots, audit) stores for each backend."""
    if request.param == "memory":
        yield MemoryEligibilityStore(), MemoryBallotStore(), MemoryAuditStore()
        return
    database = Database(tmp_path / "stores.db")
    database.init_db()
    yield SQLiteEligibilityStore(database), SQLiteBallotStore(database), SQLiteAuditStore(database)
    database.close()
