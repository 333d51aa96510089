"""Session Store: who is logged in and with what credential.

The store is a thin in-memory view over a durable key/value storage (the
signed session cookie in the web app, a plain dict in tests). Every write is
mirrored into the storage immediately; the storage is only read when the store
is constructed. Corrupt stored values degrade to "logged out" and never raise.
"""
import logging
from typing import Any, MutableMapping, Optional

from pydantic import ValidationError

from models import User

logger = logging.getLogger(__name__)

USER_KEY = "user"
TOKEN_KEY = "token"
SELECTED_PET_KEY = "selectedPetId_{user_id}"


def _read_user(storage: MutableMapping[str, Any]) -> Optional[User]:
    raw = storage.get(USER_KEY)
    if raw is None:
        return None
    if not isinstance(raw, (str, bytes)):
        logger.info("Ignoring stored user of type %s", type(raw).__name__)
        return None
    try:
        return User.model_validate_json(raw)
    except ValidationError:
        logger.info("Ignoring malformed stored user record")
        return None


def _read_token(storage: MutableMapping[str, Any]) -> Optional[str]:
    raw = storage.get(TOKEN_KEY)
    if isinstance(raw, str) and raw:
        return raw
    return None


class SessionStore:
    def __init__(self, durable: MutableMapping[str, Any]):
        self._durable = durable
        self._user = _read_user(durable)
        self._token = _read_token(durable)

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None and self._token is not None

    def set_user(self, user: Optional[User]) -> None:
        """Replace the current identity; None clears it."""
        self._user = user
        if user is not None:
            self._durable[USER_KEY] = user.model_dump_json(by_alias=True)
        else:
            self._durable.pop(USER_KEY, None)

    def set_token(self, token: Optional[str]) -> None:
        """Replace the current credential; None (or empty) clears it."""
        self._token = token or None
        if self._token is not None:
            self._durable[TOKEN_KEY] = self._token
        else:
            self._durable.pop(TOKEN_KEY, None)

    def logout(self) -> None:
        self._user = None
        self._token = None
        self._durable.pop(USER_KEY, None)
        self._durable.pop(TOKEN_KEY, None)

    def purge(self) -> None:
        """Drop the in-memory session and every durable key, not only ours."""
        self._user = None
        self._token = None
        self._durable.clear()


class PetSelection:
    """Per-user pointer to the pet in focus, kept in tab-scoped storage."""

    def __init__(self, storage: MutableMapping[str, Any]):
        self._storage = storage

    @staticmethod
    def key(user_id) -> str:
        return SELECTED_PET_KEY.format(user_id=user_id)

    def get(self, user_id) -> Optional[str]:
        if user_id is None:
            return None
        value = self._storage.get(self.key(user_id))
        return str(value) if value not in (None, "") else None

    def set(self, user_id, pet_id) -> None:
        if user_id is None or pet_id is None:
            return
        self._storage[self.key(user_id)] = str(pet_id)

    def clear(self) -> None:
        self._storage.clear()
