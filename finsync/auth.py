"""
Session State.

Provides an injectable ``SessionManager`` that holds the authenticated
user (``User`` model) for the lifetime of a session.  The facades read
the owner of every new record from it; the sync worker reads the owner
to reconcile.

Credential handling and token refresh belong to the host application;
this module only records who is signed in.

Usage::

    from finsync.auth import SessionManager
    from finsync.models.user import User

    session = SessionManager()
    session.set_current_user(User(id="abc-123", email="user@example.com"))
    owner_id = session.get_current_user().id
"""

from __future__ import annotations

import threading
from typing import Optional

from finsync.models.user import User


class SessionManager:
    """Injectable holder for the current authenticated user.

    Each instance maintains its own session state, eliminating the
    need for module-level globals.  Pass a single ``SessionManager``
    through your dependency-injection layer so every component shares
    the same session.
    """

    def __init__(self, user: Optional[User] = None) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._current_user: Optional[User] = user

    def set_current_user(self, user: User) -> None:
        """Record *user* as the authenticated session user."""
        with self._lock:
            self._current_user = user

    def get_current_user(self) -> User:
        """Return the authenticated user.

        Raises:
            RuntimeError: If no user is currently authenticated.
        """
        with self._lock:
            if self._current_user is None:
                raise RuntimeError(
                    "No user is currently authenticated. Login required."
                )
            return self._current_user

    def clear(self) -> None:
        """Remove the current user, ending the session."""
        with self._lock:
            self._current_user = None

    @property
    def is_authenticated(self) -> bool:
        """``True`` when a user is currently logged in."""
        with self._lock:
            return self._current_user is not None
