"""
Runtime settings read from the environment.
"""

import os
from pathlib import Path

from blind_signature import PUBLIC_EXPONENT, AuthorityConfig
from database import DB_PATH
from rsa_math import int_to_hex
from scrutiny import DEFAULT_ELECTION_ID


class Settings:
    def __init__(self, environ=None):
        env = os.environ if environ is None else environ
        self.db_path = Path(env.get("SECUREVOTE_DB_PATH", str(DB_PATH)))
        self.election_id = env.get("ELECTION_ID", DEFAULT_ELECTION_ID)
        options = env.get("BALLOT_OPTIONS", "")
        self.ballot_options = [o.strip() for o in options.split(",") if o.strip()] or None
        self.enforce_roll = env.get("ENFORCE_ELIGIBILITY_ROLL", "false").lower() == "true"
        self.rsa_modulus_hex = env.get("RSA_PUBLIC_MODULUS_HEX")
        self.rsa_exponent_hex = env.get("RSA_PUBLIC_EXPONENT_HEX") or int_to_hex(PUBLIC_EXPONENT)
        self.rsa_private_hex = env.get("RSA_PRIVATE_EXPONENT_HEX")
        self.port = int(env.get("PORT", 5000))
        self.debug = env.get("DEBUG", "false").lower() == "true"

    def authority_config(self):
        """AuthorityConfig from RSA_*_HEX variables, or None when not configured."""
        if not self.rsa_modulus_hex or not self.rsa_private_hex:
            return None
        return AuthorityConfig.from_hex(self.rsa_modulus_hex, self.rsa_exponent_hex, self.rsa_private_hex)
