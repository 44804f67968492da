"""
Extension points of the local account system.

- session_expiration filters adjust the session length of a linked login
- login listeners run after a local user has been logged in
- logout listeners run after a local user has been logged out
"""

from dataclasses import dataclass, field
from typing import Callable, List

from oidc_login.models import LocalUser


ExpirationFilter = Callable[[int, LocalUser], int]
AccountListener = Callable[[LocalUser], None]


@dataclass
class AccountHooks:
    session_expiration: List[ExpirationFilter] = field(default_factory=list)
    login: List[AccountListener] = field(default_factory=list)
    logout: List[AccountListener] = field(default_factory=list)

    def filter_session_length(self, length: int, user: LocalUser) -> int:
        """Run length (seconds) through every session_expiration filter in order."""
        for expiration_filter in self.session_expiration:
            length = expiration_filter(length, user)
        return length

    def notify_login(self, user: LocalUser) -> None:
        for listener in self.login:
            listener(user)

    def notify_logout(self, user: LocalUser) -> None:
        for listener in self.logout:
            listener(user)
