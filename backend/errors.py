"""
Error taxonomy for the voting core.

Every failure the protocol can report is a VotingError carrying a stable
`code` (what the HTTP layer returns to callers) and an HTTP status hint.
"""


class VotingError(Exception):
    code = "VOTING_ERROR"
    http_status = 400

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class MalformedInput(VotingError):
    """Missing or invalid fields."""
    code = "MALFORMED_INPUT"
    http_status = 400


# ---------------------------------------------------------------------------
# Authority
# ---------------------------------------------------------------------------

class AlreadyIssued(VotingError):
    """A ballot was already issued to this voter."""
    code = "ALREADY_ISSUED"
    http_status = 403


class SignerRevoked(VotingError):
    """The signing key has been revoked."""
    code = "SIGNER_REVOKED"
    http_status = 403


class NotEligible(VotingError):
    """Voter ID not found in eligible voters list."""
    code = "NOT_ELIGIBLE"
    http_status = 403


class AttestationFailed(VotingError):
    """Client environment attestation rejected the request."""
    code = "ATTESTATION_FAILED"
    http_status = 403


# ---------------------------------------------------------------------------
# Urn
# ---------------------------------------------------------------------------

class TokenAlreadyUsed(VotingError):
    """Token already used; double voting prevented."""
    code = "TOKEN_ALREADY_USED"
    http_status = 409


class InvalidSignature(VotingError):
    """Invalid signature; credential rejected."""
    code = "INVALID_SIGNATURE"
    http_status = 403


class AlreadyClosed(VotingError):
    """The election has already been closed."""
    code = "ALREADY_CLOSED"
    http_status = 409


# ---------------------------------------------------------------------------
# Audit chain
# ---------------------------------------------------------------------------

class ChainBreak(VotingError):
    """Block does not link to the previous block."""
    code = "CHAIN_BREAK"
    http_status = 422


class HashMismatch(VotingError):
    """Stored block hash does not match its contents."""
    code = "HASH_MISMATCH"
    http_status = 422


# ---------------------------------------------------------------------------
# Client protocol
# ---------------------------------------------------------------------------

class NoActiveToken(VotingError):
    """No active token. Create one first."""
    code = "NO_ACTIVE_TOKEN"


class ProtocolStateError(VotingError):
    """Operation not allowed in the current protocol state."""
    code = "PROTOCOL_STATE"


class NotInvertible(ArithmeticError):
    """Raised when a modular inverse does not exist."""
