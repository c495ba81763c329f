# deptxfer/server/credentials.py
# Credential checking: accept-any (default) or a PBKDF2-hashed password file.

import json         # credential file storage (small JSON file)
import logging
import os           # atomic replace and salt generation
import threading    # credential file locking
from cryptography.exceptions import InvalidKey                  # hash mismatch
from cryptography.hazmat.primitives import hashes               # SHA-256 for PBKDF2
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC  # password key derivation

from deptxfer.common.constants import ENC, MAX_CREDENTIAL_BYTES

logger = logging.getLogger(__name__)

#### Hashing parameters ####
SALT_BYTES = 16
HASH_BYTES = 32
PBKDF2_ITERATIONS = 150_000


class CredentialChecker:
    """Decides whether a credential is acceptable for a username."""

    verifies = True

    def check(self, username, credential):
        raise NotImplementedError


class AcceptAnyCredential(CredentialChecker):
    """
    The credential is read off the wire but never verified.

    Any password is accepted for a username the identity provider knows.
    This is the default. Start the server with a credential file to turn
    verification on.
    """

    verifies = False

    def check(self, username, credential):
        return True


def _kdf(salt, iterations):
    """Build a single-use PBKDF2-HMAC-SHA256 derivation object."""
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=HASH_BYTES,
        salt=salt,
        iterations=iterations,
    )


class CredentialStore(CredentialChecker):
    """
    Password verification against a JSON credential file.

    Layout:
        {
            "<username>": {"salt": "<hex>", "hash": "<hex>", "iterations": 150000},
            ...
        }

    Passwords are never stored; only salted PBKDF2 hashes are.
    """

    def __init__(self, path, iterations=PBKDF2_ITERATIONS):
        self.path = path
        self.iterations = iterations
        self._lock = threading.Lock()

    #### File helpers ####
    def _load(self):
        """
        Load the credential mapping.

        Returns:
            dict: username -> record. Empty when the file is missing or corrupt.
        """
        with self._lock:
            if not os.path.exists(self.path):
                return {}
            with open(self.path, "r", encoding=ENC) as f:
                try:
                    data = json.load(f)
                except json.JSONDecodeError:
                    logger.error("[credentials] Corrupt credential file %s; treating as empty", self.path)
                    return {}

        if not isinstance(data, dict):
            logger.error("[credentials] Credential file %s is not an object; treating as empty", self.path)
            return {}
        return data

    def _save(self, data):
        """Write the mapping to a temp file, then atomically replace the existing file."""
        parent = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(parent, exist_ok=True)
        with self._lock:
            tmp_path = self.path + ".tmp"
            with open(tmp_path, "w", encoding=ENC) as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)

    #### Management ####
    def set_password(self, username, password):
        """
        Add or replace the password for a user.

        Raises:
            ValueError: Empty username, or a password that is empty or longer
                than the protocol's credential field.
        """
        if not username:
            raise ValueError("Username must be a non-empty string")
        if not password:
            raise ValueError("Password must not be empty")
        if len(password.encode(ENC)) > MAX_CREDENTIAL_BYTES:
            raise ValueError(f"Password must be at most {MAX_CREDENTIAL_BYTES} bytes")

        salt = os.urandom(SALT_BYTES)
        derived = _kdf(salt, self.iterations).derive(password.encode(ENC))

        data = self._load()
        data[username] = {
            "salt": salt.hex(),
            "hash": derived.hex(),
            "iterations": self.iterations,
        }
        self._save(data)
        logger.info("[credentials] Password set for user '%s'", username)

    def has_user(self, username):
        return username in self._load()

    #### Verification ####
    def check(self, username, credential):
        record = self._load().get(username)
        if not isinstance(record, dict):
            logger.info("[credentials] No credential on file for '%s'", username)
            return False

        try:
            salt = bytes.fromhex(record["salt"])
            expected = bytes.fromhex(record["hash"])
            iterations = int(record.get("iterations", self.iterations))
        except (KeyError, TypeError, ValueError):
            logger.error("[credentials] Malformed credential record for '%s'", username)
            return False

        try:
            _kdf(salt, iterations).verify(credential.encode(ENC), expected)
        except InvalidKey:
            return False
        return True
