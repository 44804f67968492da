"""
Visitor session access for the login flow.

The flow only talks to SessionGateway. CookieSessionGateway adapts the
Starlette session (request.session, a signed cookie written by
SessionMiddleware) to it.
"""

import json
import logging
from abc import ABC, abstractmethod
from base64 import b64encode
from typing import Any, MutableMapping, Optional

logger = logging.getLogger(__name__)

# Browsers drop cookies larger than this without telling the server.
COOKIE_SIZE_LIMIT = 4096


class SessionGateway(ABC):
    """Key/value session scoped to one browser visitor."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None: ...

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any: ...

    @abstractmethod
    def clear(self, key: str) -> None: ...

    @abstractmethod
    def clear_all(self) -> None: ...

    @abstractmethod
    def close(self) -> None:
        """Persist pending writes before the request leaves this process."""


class CookieSessionGateway(SessionGateway):
    """
    SessionGateway over a Starlette session mapping.

    Writes go straight into the mapping. SessionMiddleware serializes it into
    the signed session cookie on whatever response is sent, so close() has
    no pending writes to flush; it only records that the session is final.
    """

    def __init__(self, store: MutableMapping[str, Any]):
        self._store = store
        self.closed = False

    def set(self, key: str, value: Any) -> None:
        self._store[key] = value
        self.closed = False

    def get(self, key: str, default: Any = None) -> Any:
        return self._store.get(key, default)

    def clear(self, key: str) -> None:
        self._store.pop(key, None)
        self.closed = False

    def clear_all(self) -> None:
        self._store.clear()
        self.closed = False

    def close(self) -> None:
        self.closed = True
        logger.debug(f"Session closed with keys {sorted(self._store.keys())}")
        size = self.encoded_size()
        if size > COOKIE_SIZE_LIMIT:
            logger.warning(
                f"Session cookie payload is {size} bytes, over the {COOKIE_SIZE_LIMIT} byte browser limit",
                extra={"session_keys": sorted(self._store.keys())},
            )

    def encoded_size(self) -> int:
        """Size of the session as SessionMiddleware encodes it, before signing."""
        return len(b64encode(json.dumps(dict(self._store), default=str).encode("utf-8")))
