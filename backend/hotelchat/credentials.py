"""Client-side credential holder.

Instead of polling for login state, the auth layer calls ``login``/``logout``
and every subscriber (the chat client, UI code) is notified synchronously.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .models import UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    id: int
    display_name: str
    role: UserRole = UserRole.CUSTOMER


class CredentialStore:
    def __init__(self, token: Optional[str] = None, user: Optional[CurrentUser] = None) -> None:
        self.token = token
        self.user = user
        self._listeners: list[Callable[[str, "CredentialStore"], None]] = []

    @property
    def is_logged_in(self) -> bool:
        return bool(self.token)

    def subscribe(self, callback: Callable[[str, "CredentialStore"], None]) -> Callable[[], None]:
        """Register ``callback(event, store)``; returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def login(self, token: str, user: CurrentUser) -> None:
        self.token = token
        self.user = user
        self._notify("login")

    def logout(self) -> None:
        self.token = None
        self.user = None
        self._notify("logout")

    def _notify(self, event: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, self)
            except Exception:
                logger.exception("Credential listener failed on %s", event)
