"""
Local account directory.

Holds the local users that OIDC identities can be linked to, and the
session tokens issued to them. Tokens are stored hashed, so a leaked
directory dump can't be replayed as credentials.
"""

import hashlib
import json
import logging
import secrets
import threading
import time
from typing import Dict, Iterable, Optional

from oidc_login.models import LocalUser

logger = logging.getLogger(__name__)


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionTokenManager:
    """Per-user session tokens with expirations."""

    def __init__(self):
        self._sessions: Dict[int, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def create(self, user_id: int, expiration: int) -> str:
        """
        Create a session token for a user.

        Args:
            user_id: Local user ID
            expiration: Unix time at which the token stops verifying

        Returns:
            The token (only its hash is kept)
        """
        token = secrets.token_urlsafe(32)
        with self._lock:
            self._sessions.setdefault(user_id, {})[_hash_token(token)] = expiration
        return token

    def verify(self, user_id: int, token: str) -> bool:
        with self._lock:
            sessions = self._sessions.get(user_id, {})
            now = int(time.time())
            for hashed in [h for h, exp in sessions.items() if exp <= now]:
                del sessions[hashed]
            return _hash_token(token) in sessions

    def destroy(self, user_id: int, token: str) -> None:
        with self._lock:
            self._sessions.get(user_id, {}).pop(_hash_token(token), None)

    def destroy_all(self, user_id: int) -> None:
        with self._lock:
            self._sessions.pop(user_id, None)

    def count(self, user_id: int) -> int:
        return len(self._sessions.get(user_id, {}))


class AccountDirectory:
    """In-memory local user directory."""

    def __init__(self, users: Iterable[LocalUser] = ()):
        self._by_username: Dict[str, LocalUser] = {}
        self._by_id: Dict[int, LocalUser] = {}
        self.tokens = SessionTokenManager()
        for user in users:
            self.add_user(user)

    @classmethod
    def from_file(cls, path: str) -> "AccountDirectory":
        """
        Load users from a JSON file containing a list of user objects.

        Raises:
            OSError: If the file can't be read
            ValueError: If the file is not a list of valid users
        """
        with open(path, "r", encoding="utf-8") as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(f"{path}: expected a JSON list of users")

        directory = cls(LocalUser(**record) for record in records)
        logger.info(f"Loaded {len(records)} local users from {path}")
        return directory

    def add_user(self, user: LocalUser) -> None:
        self._by_username[user.username] = user
        self._by_id[user.id] = user

    def get_user_by_username(self, username: str) -> Optional[LocalUser]:
        return self._by_username.get(username)

    def get_user(self, user_id: int) -> Optional[LocalUser]:
        return self._by_id.get(user_id)
