"""
Integration tests for the Flask API using a test client.
"""

import pytest

import api as api_module
from audit_chain import VOTE_CAST, AuditChain, SignerKey
from blind_signature import generate_token
from blind_voter import BlindVoter
from config import Settings
from memory_store import MemoryAuditStore
from rsa_math import hex_to_int, int_to_hex
from scrutiny import verify_merkle_proof


@pytest.fixture(scope="module")
def app_client(tmp_path_factory, authority_config):
    """Create a Flask test client over an isolated database."""
    tmp = tmp_path_factory.mktemp("securevote_api")
    settings = Settings({
        "SECUREVOTE_DB_PATH": str(tmp / "test_api.db"),
        "ENFORCE_ELIGIBILITY_ROLL": "true",
        "BALLOT_OPTIONS": "SI,NO",
    })
    api_module.initialize(settings, authority_config)

    api_module.app.config["TESTING"] = True
    with api_module.app.test_client() as client:
        yield client
    api_module.services["db"].close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _authorize(client, voter_id):
    """Full client flow: fetch key, blind, request, unblind. Returns (voter, response data)."""
    voter = BlindVoter()
    voter.load_public_key(client.get('/api/authority/public-key').get_json())
    blinded = voter.create_blinded_token()

    r = client.post('/api/authority/authorize-ballot', json={
        "voterId": voter_id,
        "blindedTokenHex": int_to_hex(blinded),
    })
    data = r.get_json()
    if not data.get("success"):
        return None, data

    voter.receive_blind_signature(hex_to_int(data["blindedSignatureHex"]))
    voter.unblind()
    return voter, data


def _vote(client, voter, choice="SI"):
    return client.post('/api/urn/submit-vote', json={
        "voteContent": voter.prepare_content(choice),
        **voter.credential(),
    })


# ---------------------------------------------------------------------------
# Health / setup
# ---------------------------------------------------------------------------

def test_health(app_client):
    r = app_client.get('/api/health')
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"


def test_public_key(app_client, authority_config):
    data = app_client.get('/api/authority/public-key').get_json()
    assert hex_to_int(data["n"]) == authority_config.n
    assert hex_to_int(data["e"]) == 65537
    assert data["status"] == "ACTIVE"
    assert "d" not in data


# ---------------------------------------------------------------------------
# Authority
# ---------------------------------------------------------------------------

class TestAuthorization:
    def test_authorize_eligible_voter(self, app_client):
        voter, data = _authorize(app_client, "VOTER_00001")
        assert data["success"]
        assert voter.credential()["ballotTokenHex"]

    def test_second_request_refused(self, app_client):
        _authorize(app_client, "VOTER_00002")
        voter, data = _authorize(app_client, "VOTER_00002")
        assert voter is None
        assert data["code"] == "ALREADY_ISSUED"

    def test_ineligible_voter(self, app_client):
        r = app_client.post('/api/authority/authorize-ballot', json={
            "voterId": "NOT_A_VOTER",
            "blindedTokenHex": "abcdef",
        })
        assert r.status_code == 403
        assert r.get_json()["code"] == "NOT_ELIGIBLE"

    def test_missing_fields(self, app_client):
        r = app_client.post('/api/authority/authorize-ballot', json={"voterId": "VOTER_00003"})
        assert r.status_code == 400
        assert r.get_json()["code"] == "MALFORMED_INPUT"

    def test_invalid_voter_id_format(self, app_client):
        r = app_client.post('/api/authority/authorize-ballot', json={
            "voterId": "VOTER; DROP TABLE voters;--",
            "blindedTokenHex": "01",
        })
        assert r.status_code == 400

    def test_non_hex_blinded_token(self, app_client):
        r = app_client.post('/api/authority/authorize-ballot', json={
            "voterId": "VOTER_00003",
            "blindedTokenHex": "not-hex",
        })
        assert r.status_code == 400

    def test_non_json_body(self, app_client):
        r = app_client.post('/api/authority/authorize-ballot', data="plain text")
        assert r.status_code == 400


class TestVoterStatus:
    def test_status_unserved_eligible(self, app_client):
        data = app_client.get('/api/authority/voter/VOTER_00004/status').get_json()
        assert data["eligible"]
        assert not data["token_issued"]

    def test_status_served(self, app_client):
        _authorize(app_client, "VOTER_00005")
        data = app_client.get('/api/authority/voter/VOTER_00005/status').get_json()
        assert data["token_issued"]
        assert data["token_issued_at"] is not None

    def test_status_unknown_voter(self, app_client):
        data = app_client.get('/api/authority/voter/UNKNOWN_VOTER/status').get_json()
        assert not data["eligible"]

    def test_authority_stats(self, app_client):
        data = app_client.get('/api/authority/stats').get_json()
        assert data["total_registered"] == len(api_module.DEMO_VOTERS)
        assert data["total_ballots_issued"] >= 1
        assert data["participation_rate"].endswith("%")


# ---------------------------------------------------------------------------
# Urn
# ---------------------------------------------------------------------------

class TestVoting:
    def test_cast_valid_vote(self, app_client):
        voter, _ = _authorize(app_client, "VOTER_00006")
        r = _vote(app_client, voter)
        data = r.get_json()
        assert r.status_code == 200
        assert data["success"]
        assert len(data["receipt"]) == 64
        assert data["vote_number"] >= 1

    def test_replay_rejected(self, app_client):
        voter, _ = _authorize(app_client, "VOTER_00007")
        assert _vote(app_client, voter, "SI").status_code == 200

        r = _vote(app_client, voter, "NO")
        assert r.status_code == 409
        assert r.get_json()["code"] == "TOKEN_ALREADY_USED"

    def test_invalid_signature(self, app_client):
        r = app_client.post('/api/urn/submit-vote', json={
            "voteContent": "SI",
            "ballotTokenHex": int_to_hex(generate_token()),
            "censusSignatureHex": "3039",
        })
        assert r.status_code == 403
        assert r.get_json()["code"] == "INVALID_SIGNATURE"

    def test_invalid_option(self, app_client):
        voter, _ = _authorize(app_client, "VOTER_00008")
        r = _vote(app_client, voter, "MAYBE")
        assert r.status_code == 400

    def test_missing_fields(self, app_client):
        r = app_client.post('/api/urn/submit-vote', json={"voteContent": "SI"})
        assert r.status_code == 400

    def test_verify_receipt(self, app_client):
        voter, _ = _authorize(app_client, "VOTER_00009")
        receipt = _vote(app_client, voter).get_json()["receipt"]

        data = app_client.post('/api/urn/verify-receipt', json={"receiptHash": receipt}).get_json()
        assert data["verified"]
        assert "timestamp" in data

        data = app_client.post('/api/urn/verify-receipt', json={"receiptHash": "0" * 64}).get_json()
        assert data == {"verified": False}

    def test_urn_stats_has_no_breakdown(self, app_client):
        data = app_client.get('/api/urn/stats').get_json()
        assert data["status"] == "OPEN"
        assert data["total_votes"] >= 1
        assert "results" not in data

    def test_merkle_proof_before_close(self, app_client):
        r = app_client.post('/api/urn/merkle-proof', json={"receiptHash": "0" * 64})
        assert r.status_code == 400


# ---------------------------------------------------------------------------
# Audit transparency server
# ---------------------------------------------------------------------------

class TestAudit:
    @pytest.fixture(scope="class")
    def device(self):
        key = SignerKey.generate("api-device")
        return key, AuditChain(MemoryAuditStore(), keys=[key])

    def test_register_key(self, app_client, device):
        key, _ = device
        r = app_client.post('/api/audit/register-key', json={
            "keyId": key.key_id,
            "publicKeyPem": key.public_pem(),
        })
        assert r.status_code == 200
        assert r.get_json()["status"] == "ACTIVE"

    def test_register_invalid_pem(self, app_client):
        r = app_client.post('/api/audit/register-key', json={"keyId": "x", "publicKeyPem": "garbage"})
        assert r.status_code == 400

    def test_sync_accepts_signed_blocks(self, app_client, device):
        key, chain = device
        for i in range(3):
            chain.append_block(VOTE_CAST, {"receipt": f"r{i}"}, key.key_id)

        r = app_client.post('/api/audit/sync', json={"blocks": chain.store.all_blocks()})
        data = r.get_json()
        assert r.status_code == 200
        assert data["success"]
        assert data["stored_blocks"] == 3

    def test_sync_rejects_tampered_block(self, app_client, device):
        key, chain = device
        block = chain.append_block(VOTE_CAST, {"receipt": "r3"}, key.key_id).to_dict()
        block["payload_hash"] = "f" * 64

        r = app_client.post('/api/audit/sync', json={"blocks": [block]})
        assert r.status_code == 422
        assert r.get_json()["details"][0]["code"] == "INVALID_SIGNATURE"

    def test_sync_requires_list(self, app_client):
        r = app_client.post('/api/audit/sync', json={"blocks": "nope"})
        assert r.status_code == 400

    def test_chain(self, app_client):
        data = app_client.get('/api/audit/chain').get_json()
        assert data["total_blocks"] == 3
        assert data["verification"]["valid"]
        assert data["chain"][0]["index"] == 0

    def test_revoked_key_blocks_rejected(self, app_client, device):
        key, chain = device
        app_client.post('/api/audit/revoke-key', json={"keyId": key.key_id})
        chain.append_block(VOTE_CAST, {"receipt": "r4"}, key.key_id)
        pending = [b for b in chain.store.all_blocks() if b["index"] == 3]

        r = app_client.post('/api/audit/sync', json={"blocks": pending})
        assert r.status_code == 422

    def test_revoke_unknown_key(self, app_client):
        r = app_client.post('/api/audit/revoke-key', json={"keyId": "ghost"})
        assert r.status_code == 400


# ---------------------------------------------------------------------------
# Closing (runs last: the election stays closed for the module)
# ---------------------------------------------------------------------------

class TestClosing:
    def test_close_election(self, app_client):
        voter, _ = _authorize(app_client, "VOTER_00010")
        receipt = _vote(app_client, voter, "NO").get_json()["receipt"]

        r = app_client.post('/api/urn/close-election', json={})
        data = r.get_json()
        assert r.status_code == 200
        record = data["public_record"]
        assert record["electionId"] == "PLEBISCITO_2026"
        assert sum(record["results"].values()) == record["totalVotes"]
        assert receipt in record["allReceipts"]
        assert data["verification"]["valid"]
        assert data["verification"]["actaHashValid"]

    def test_second_close_rejected(self, app_client):
        r = app_client.post('/api/urn/close-election', json={})
        assert r.status_code == 409
        assert r.get_json()["code"] == "ALREADY_CLOSED"

    def test_merkle_proof_after_close(self, app_client):
        record = app_client.post('/api/urn/close-election', json={"electionId": "OTHER"}).get_json()["public_record"]
        assert record["electionId"] == "OTHER"

        receipt = record["allReceipts"][0]
        data = app_client.post('/api/urn/merkle-proof', json={"receiptHash": receipt}).get_json()
        assert data["found"]
        assert verify_merkle_proof(receipt, data["proof"], data["merkleRoot"])

    def test_verify_results_endpoint(self, app_client):
        record = app_client.post('/api/urn/close-election', json={"electionId": "THIRD"}).get_json()["public_record"]
        data = app_client.post('/api/urn/verify-results', json={"record": record}).get_json()
        assert data["valid"]

        record["totalVotes"] += 1
        data = app_client.post('/api/urn/verify-results', json={"record": record}).get_json()
        assert not data["valid"]

    def test_stats_after_close(self, app_client):
        assert app_client.get('/api/urn/stats').get_json()["status"] == "CLOSED"
