"""
SecureVote REST API

Three logically separated services running on the same Flask app:

  Authority (census):
    GET  /api/authority/public-key          RSA public key {n, e} as hex
    POST /api/authority/authorize-ballot    Blind-sign a blinded token
    GET  /api/authority/voter/<id>/status   Issuance status for a voter
    GET  /api/authority/stats               Participation statistics

  Anonymous urn (no caller identity):
    POST /api/urn/submit-vote               Deposit a vote with token + signature
    POST /api/urn/verify-receipt            Check that a receipt was recorded
    POST /api/urn/close-election            Scrutiny and public record
    POST /api/urn/merkle-proof              Inclusion proof for a receipt
    POST /api/urn/verify-results            Re-validate a published record
    GET  /api/urn/stats                     Live totals (no breakdown)

  Audit transparency server:
    POST /api/audit/register-key            Register a signer public key
    POST /api/audit/revoke-key              Revoke a signer key
    POST /api/audit/sync                    Submit audit blocks
    GET  /api/audit/chain                   Full chain with verification
"""

import sys
from pathlib import Path

# Allow importing siblings
sys.path.insert(0, str(Path(__file__).parent))

from flask import Flask, request, jsonify
from flask_cors import CORS

from audit_chain import TransparencyServer
from census import BlindSignatureAuthority, bootstrap
from config import Settings
from database import Database, SQLiteAuditStore, SQLiteBallotStore, SQLiteEligibilityStore
from errors import MalformedInput, VotingError
from scrutiny import verify_election_results
from urn import AnonymousUrn

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = Flask(__name__)
CORS(app)

# Demo voters seeded on startup
DEMO_VOTERS = [f"VOTER_{i:05d}" for i in range(1, 51)]

services = {}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

def initialize(settings: Settings = None, authority_config=None):
    """Wire the authority, urn and transparency server to one SQLite file."""
    settings = settings or Settings()
    db = Database(settings.db_path)
    config = bootstrap(db, authority_config or settings.authority_config(), demo_voter_ids=DEMO_VOTERS)

    services["db"] = db
    services["settings"] = settings
    services["census"] = BlindSignatureAuthority(
        config,
        SQLiteEligibilityStore(db),
        enforce_roll=settings.enforce_roll,
        on_status_change=db.set_authority_status,
    )
    services["urn"] = AnonymousUrn(
        config.public(),
        SQLiteBallotStore(db),
        options=settings.ballot_options,
        election_id=settings.election_id,
    )
    services["audit"] = TransparencyServer(SQLiteAuditStore(db))
    print("[api] SecureVote initialized and ready.")


def _body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise MalformedInput("JSON object body required")
    return data


def _require(data: dict, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise MalformedInput(f"{', '.join(missing)} required")


@app.errorhandler(VotingError)
def handle_voting_error(error: VotingError):
    return jsonify(error.to_dict()), error.http_status


# ---------------------------------------------------------------------------
# Authority
# ---------------------------------------------------------------------------

@app.route("/api/authority/public-key", methods=["GET"])
def api_public_key():
    census = services["census"]
    return jsonify({**census.public_key(), "key_id": census.config.key_id, "status": census.status})


@app.route("/api/authority/authorize-ballot", methods=["POST"])
def api_authorize_ballot():
    """
    Request JSON:
      { "blindedTokenHex": str, "voterId": str, "attestation": float? }

    Response JSON (success):
      { "success": true, "blindedSignatureHex": str }
    """
    data = _body()
    _require(data, "blindedTokenHex", "voterId")
    voter_id = str(data["voterId"]).strip()

    # Sanitize voter_id: only alphanumeric, dashes and underscores
    if not all(c.isalnum() or c in "_-" for c in voter_id):
        raise MalformedInput("Invalid voterId format")

    sig_hex = services["census"].authorize_ballot_hex(voter_id, data["blindedTokenHex"], data.get("attestation"))
    return jsonify({
        "success": True,
        "blindedSignatureHex": sig_hex,
        "message": "Ballot authorized. The authority does not know the content of your vote.",
    })


@app.route("/api/authority/voter/<voter_id>/status", methods=["GET"])
def api_voter_status(voter_id: str):
    if not all(c.isalnum() or c in "_-" for c in voter_id):
        raise MalformedInput("Invalid voterId format")
    return jsonify(services["census"].voter_status(voter_id))


@app.route("/api/authority/stats", methods=["GET"])
def api_authority_stats():
    return jsonify(services["census"].stats())


# ---------------------------------------------------------------------------
# Urn
# ---------------------------------------------------------------------------

@app.route("/api/urn/submit-vote", methods=["POST"])
def api_submit_vote():
    """
    Request JSON:
      { "voteContent": str | {"choice": str, ...},
        "ballotTokenHex": str, "censusSignatureHex": str }

    Response JSON (success):
      { "success": true, "receipt": str, "vote_number": int }
    """
    data = _body()
    _require(data, "voteContent", "ballotTokenHex", "censusSignatureHex")
    urn = services["urn"]
    receipt = urn.submit_vote_hex(data["voteContent"], data["ballotTokenHex"], data["censusSignatureHex"])
    return jsonify({
        "success": True,
        "receipt": receipt,
        "vote_number": urn.store.vote_count(),
        "message": "Vote deposited in the urn.",
    })


@app.route("/api/urn/verify-receipt", methods=["POST"])
def api_verify_receipt():
    data = _body()
    _require(data, "receiptHash")
    return jsonify(services["urn"].verify_receipt(data["receiptHash"]))


@app.route("/api/urn/close-election", methods=["POST"])
def api_close_election():
    """Admission control for closing (multi-party authorization) sits in front of this route."""
    data = request.get_json(silent=True) or {}
    record = services["urn"].close_election(data.get("electionId"))
    verification = verify_election_results(record)
    return jsonify({"success": True, "public_record": record, "verification": verification})


@app.route("/api/urn/merkle-proof", methods=["POST"])
def api_merkle_proof():
    data = _body()
    _require(data, "receiptHash")
    return jsonify(services["urn"].merkle_proof(data["receiptHash"], data.get("electionId")))


@app.route("/api/urn/verify-results", methods=["POST"])
def api_verify_results():
    data = _body()
    _require(data, "record")
    if not isinstance(data["record"], dict):
        raise MalformedInput("record must be an object")
    return jsonify(verify_election_results(data["record"]))


@app.route("/api/urn/stats", methods=["GET"])
def api_urn_stats():
    return jsonify(services["urn"].stats())


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@app.route("/api/audit/register-key", methods=["POST"])
def api_register_key():
    data = _body()
    _require(data, "keyId", "publicKeyPem")
    return jsonify(services["audit"].register_key(data["keyId"], data["publicKeyPem"]))


@app.route("/api/audit/revoke-key", methods=["POST"])
def api_revoke_key():
    data = _body()
    _require(data, "keyId")
    return jsonify(services["audit"].revoke_key(data["keyId"]))


@app.route("/api/audit/sync", methods=["POST"])
def api_audit_sync():
    data = _body()
    result = services["audit"].sync(data.get("blocks"))
    # Any rejected block: 422 Unprocessable Entity
    return jsonify(result), 200 if result["success"] else 422


@app.route("/api/audit/chain", methods=["GET"])
def api_audit_chain():
    return jsonify(services["audit"].chain())


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.route("/api/health", methods=["GET"])
def api_health():
    return jsonify({"status": "ok", "service": "SecureVote"})


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    settings = Settings()
    initialize(settings)
    app.run(host="0.0.0.0", port=settings.port, debug=settings.debug)
