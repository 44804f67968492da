"""
Return URL verifiers.

Session-bound CSRF tokens can't protect login/logout return URLs: an
anonymous visitor has no session yet, and a logged in user whose session
expired would no longer match the token in their "log in again" link. So
return URLs carry a short keyed digest instead. It never expires, and the
secret is shared by all visitors, which keeps anonymous pages free of
per-visitor state.

The secret is created on first use and stored durably. Two processes can
race to create it; SecretStore.add() is create-if-absent, so the loser
adopts the winner's secret instead of overwriting it.
"""

import hashlib
import hmac
import logging
import os
import secrets
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)

VERIFIER_LENGTH = 10


# =============================================================================
# Secret Storage
# =============================================================================

class SecretStore(ABC):
    """Durable home of the verifier secret."""

    @abstractmethod
    def get(self) -> Optional[str]:
        """Return the stored secret, or None if none has been created."""

    @abstractmethod
    def add(self, value: str) -> str:
        """
        Store value unless a secret already exists.

        Returns:
            The secret that ended up stored (value, or the existing one)
        """


class MemorySecretStore(SecretStore):
    """Process-local store. Links stop verifying when the process restarts."""

    def __init__(self, value: Optional[str] = None):
        self._value = value
        self._lock = threading.Lock()

    def get(self) -> Optional[str]:
        return self._value

    def add(self, value: str) -> str:
        with self._lock:
            if self._value is None:
                self._value = value
            return self._value


class FileSecretStore(SecretStore):
    """
    Secret kept in a file shared by every worker process.

    The secret is written to a temp file and hard-linked into place.
    link() fails if the target exists, so exactly one writer wins and no
    reader ever sees a partially written secret.
    """

    def __init__(self, path: str):
        self.path = path

    def get(self) -> Optional[str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                value = f.read().strip()
        except FileNotFoundError:
            return None
        return value or None

    def add(self, value: str) -> str:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".verifier-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.chmod(tmp_path, 0o600)
            try:
                os.link(tmp_path, self.path)
            except FileExistsError:
                return self._existing()
            except OSError as e:
                logger.warning(f"Cannot hard-link {self.path} ({e}), creating it in place")
                return self._add_exclusive(value)
            logger.info(f"Created verifier secret in {self.path}")
            return value
        finally:
            os.unlink(tmp_path)

    def _add_exclusive(self, value: str) -> str:
        """Fallback for filesystems without hard links: O_EXCL create."""
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return self._existing()
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(value)
        logger.info(f"Created verifier secret in {self.path}")
        return value

    def _existing(self) -> str:
        existing = self.get()
        if existing is None:
            raise FileExistsError(f"Verifier secret file {self.path} exists but is empty")
        return existing


# =============================================================================
# Verifier
# =============================================================================

def compute_verifier(secret: str, data: str) -> str:
    """
    Compute the verifier for data under secret.

    Returns:
        10 hex characters taken from a fixed offset of the HMAC-SHA256 digest
    """
    digest = hmac.new(
        secret.encode("utf-8"),
        data.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return digest[-12:-2]


class Verifier:
    """Creates and checks verifiers using the secret in a SecretStore."""

    def __init__(self, store: SecretStore):
        self.store = store

    def _secret(self) -> str:
        secret = self.store.get()
        if secret is None:
            secret = self.store.add(secrets.token_urlsafe(32))
        return secret

    def create(self, data: str) -> str:
        return compute_verifier(self._secret(), data)

    def check(self, token: Optional[str], data: str) -> bool:
        """
        Check a verifier supplied in a return URL query string.

        Returns False (never raises) when no secret has been created yet:
        no link can have been issued, so nothing can verify.
        """
        secret = self.store.get()
        if secret is None or not isinstance(token, str):
            return False
        expected = compute_verifier(secret, data)
        return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))
