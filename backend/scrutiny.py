"""
Publicly Verifiable Scrutiny Engine

Condenses every vote receipt into a single Merkle root. Altering, removing
or adding one receipt changes the root, so anyone holding the published
record can recompute it without any secret material.

Leaves are sorted before hashing; the root does not depend on the order in
which votes reached the urn.
"""

from datetime import datetime, timezone

from canonical import sha256_hex
from errors import MalformedInput

DEFAULT_ELECTION_ID = "PLEBISCITO_2026"

LEFT = "left"
RIGHT = "right"


def _hash_pair(left: str, right: str) -> str:
    return sha256_hex(left + right)


def build_merkle_tree(leaves) -> dict:
    """
    Build a Merkle tree over receipt hashes.

    Returns {"root", "levels", "leaves"}; levels[0] are the sorted leaves and
    levels[-1] == [root]. An odd node at any level is paired with itself.
    An empty input yields root None and no levels.
    """
    sorted_leaves = sorted(leaves)
    if not sorted_leaves:
        return {"root": None, "levels": [], "leaves": []}

    current = sorted_leaves
    levels = [current]
    while len(current) > 1:
        nxt = []
        for i in range(0, len(current), 2):
            right = current[i + 1] if i + 1 < len(current) else current[i]
            nxt.append(_hash_pair(current[i], right))
        levels.append(nxt)
        current = nxt

    return {"root": current[0], "levels": levels, "leaves": list(sorted_leaves)}


def get_merkle_proof(leaf_hash: str, leaves):
    """
    Inclusion proof for one receipt: a list of {"hash", "position"} from the
    leaf level up to the level below the root. `position` is the side the
    sibling sits on. Returns None if the receipt is not among the leaves.
    """
    tree = build_merkle_tree(leaves)
    try:
        index = tree["leaves"].index(leaf_hash)
    except ValueError:
        return None

    proof = []
    for level in tree["levels"][:-1]:
        if index % 2 == 1:
            proof.append({"hash": level[index - 1], "position": LEFT})
        else:
            sibling = index + 1 if index + 1 < len(level) else index
            proof.append({"hash": level[sibling], "position": RIGHT})
        index //= 2
    return proof


def verify_merkle_proof(leaf_hash: str, proof: list, root: str) -> bool:
    """Fold a proof from get_merkle_proof back up to a root and compare."""
    if root is None:
        return False
    node = leaf_hash
    for step in proof:
        if step.get("position") == LEFT:
            node = _hash_pair(step["hash"], node)
        elif step.get("position") == RIGHT:
            node = _hash_pair(node, step["hash"])
        else:
            return False
    return node == root


def acta_hash(record: dict) -> str:
    """SHA-256 of the canonical JSON of {electionId, totalVotes, results, merkleRoot}."""
    return sha256_hex({
        "electionId": record["electionId"],
        "totalVotes": record["totalVotes"],
        "results": record["results"],
        "merkleRoot": record["merkleRoot"],
    })


def close_election(vote_records: list, election_id: str = DEFAULT_ELECTION_ID) -> dict:
    """
    Run the official count and produce the public record (acta).

    `vote_records` are dicts with "receipt_hash" and "option". The result is
    a pure function of the record set apart from `timestampClosed`, which is
    left out of the acta hash.
    """
    tally = {}
    receipts = []
    for vote in vote_records:
        option = vote["option"]
        tally[option] = tally.get(option, 0) + 1
        receipts.append(vote["receipt_hash"])

    tree = build_merkle_tree(receipts)

    record = {
        "electionId": election_id,
        "timestampClosed": datetime.now(timezone.utc).isoformat(),
        "totalVotes": len(vote_records),
        "results": tally,
        "merkleRoot": tree["root"],
        "allReceipts": tree["leaves"],
    }
    record["actaHash"] = acta_hash(record)
    return record


def verify_election_results(record: dict) -> dict:
    """
    Re-validate a published record using only its own contents.

    `valid` requires the recomputed Merkle root to match, the receipt count to
    equal totalVotes, and the tally to sum to totalVotes. The acta hash is
    checked and reported separately.
    """
    try:
        receipts = list(record["allReceipts"])
        total = record["totalVotes"]
        results = dict(record["results"])
        published_root = record["merkleRoot"]
    except (KeyError, TypeError) as e:
        raise MalformedInput(f"Malformed public record: {e}")

    try:
        recalculated = build_merkle_tree(receipts)["root"]
        tally_sum = sum(results.values())
    except TypeError as e:
        raise MalformedInput(f"Malformed public record: {e}")

    root_matches = recalculated == published_root
    total_matches = len(receipts) == total
    tally_matches = tally_sum == total

    published_acta = record.get("actaHash")
    try:
        acta_matches = published_acta is not None and acta_hash(record) == published_acta
    except KeyError as e:
        raise MalformedInput(f"Malformed public record: missing {e}")

    return {
        "valid": root_matches and total_matches and tally_matches,
        "merkleRootValid": root_matches,
        "totalVotesValid": total_matches,
        "tallyConsistent": tally_matches,
        "actaHashValid": acta_matches,
        "recalculatedRoot": recalculated,
        "publishedRoot": published_root,
    }
