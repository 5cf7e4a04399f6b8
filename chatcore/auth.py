"""Signed-in user provider consumed by the messaging core."""

import logging
from typing import Callable, List, Optional

from chatcore.exceptions import AuthenticationRequiredError

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[str]], None]


class AuthSession:
    """Tracks the current user id and notifies listeners when it changes.
    
    The core never sees session tokens; it only asks who the current user is
    and whether that changed.
    """
    
    def __init__(self, user_id: Optional[str] = None):
        self._user_id = user_id
        self._listeners: List[AuthListener] = []
    
    @property
    def current_user_id(self) -> Optional[str]:
        return self._user_id
    
    @property
    def is_authenticated(self) -> bool:
        return self._user_id is not None
    
    def require_user_id(self) -> str:
        if self._user_id is None:
            raise AuthenticationRequiredError()
        return self._user_id
    
    def sign_in(self, user_id: str) -> None:
        if user_id == self._user_id:
            return
        logger.info(f"User {user_id} signed in")
        self._user_id = user_id
        self._notify()
    
    def sign_out(self) -> None:
        if self._user_id is None:
            return
        logger.info(f"User {self._user_id} signed out")
        self._user_id = None
        self._notify()
    
    def add_listener(self, listener: AuthListener) -> Callable[[], None]:
        """Register for auth changes; returns a function that removes the listener."""
        self._listeners.append(listener)
        
        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        
        return remove
    
    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._user_id)
            except Exception:
                logger.exception(f"Auth listener {listener!r} failed")
