"""Role-switch workflow.

    IDLE -> CHECKING_ELIGIBILITY -> APPROVED | DENIED -> IDLE

Switching to Owner, or to the role already active, skips the eligibility
check. Any other role must have been approved by some pet owner before; the
latest pet joined under that role becomes the selected pet. Nothing is
committed until every backend call of the attempt has succeeded.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from backend_client import BackendError, MalformedResponse, PetrollClient, TimedOut
from models import Role
from session_store import PetSelection, SessionStore

logger = logging.getLogger(__name__)


class SwitchState(str, Enum):
    IDLE = "idle"
    CHECKING_ELIGIBILITY = "checking_eligibility"
    APPROVED = "approved"
    DENIED = "denied"


class SwitchError(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    BUSY = "busy"
    NOT_ELIGIBLE = "not_eligible"
    NETWORK_FAILURE = "network_failure"
    TIMED_OUT = "timed_out"
    MALFORMED_RESPONSE = "malformed_response"


@dataclass
class RoleSwitchResult:
    role: Optional[str]
    state: SwitchState
    error: Optional[SwitchError] = None
    message: Optional[str] = None
    selected_pet_id: Optional[str] = None
    close_menu: bool = False

    @property
    def ok(self) -> bool:
        return self.state is SwitchState.APPROVED


def denial_message(role: Role) -> str:
    return f'You haven\'t joined any pet with the role "{role.value}". Please join first.'


def _error_kind(exc: BackendError) -> SwitchError:
    if isinstance(exc, TimedOut):
        return SwitchError.TIMED_OUT
    if isinstance(exc, MalformedResponse):
        return SwitchError.MALFORMED_RESPONSE
    return SwitchError.NETWORK_FAILURE


class RoleSwitcher:
    """Runs role switches, at most one in flight per user."""

    def __init__(self, backend: PetrollClient):
        self.backend = backend
        self._lock = threading.Lock()
        # user_id -> state of the attempt currently running for that user
        self._in_flight: Dict[int, SwitchState] = {}

    def _acquire(self, user_id) -> bool:
        with self._lock:
            if user_id in self._in_flight:
                return False
            self._in_flight[user_id] = SwitchState.CHECKING_ELIGIBILITY
            return True

    def _set_state(self, user_id, state: SwitchState) -> None:
        with self._lock:
            if user_id in self._in_flight:
                self._in_flight[user_id] = state

    def _release(self, user_id) -> None:
        with self._lock:
            self._in_flight.pop(user_id, None)

    def state(self, user_id) -> SwitchState:
        with self._lock:
            return self._in_flight.get(user_id, SwitchState.IDLE)

    def switch(self, store: SessionStore, selection: PetSelection, target: Role) -> RoleSwitchResult:
        user = store.user
        if user is None or user.user_id is None:
            return RoleSwitchResult(role=None, state=SwitchState.IDLE, error=SwitchError.NOT_AUTHENTICATED)

        if not self._acquire(user.user_id):
            return RoleSwitchResult(
                role=user.user_type,
                state=SwitchState.IDLE,
                error=SwitchError.BUSY,
                message="A role switch is already in progress.",
            )
        try:
            if target is Role.OWNER or target is user.role:
                return self._fast_path(store, selection, target)
            return self._slow_path(store, selection, target)
        finally:
            self._release(user.user_id)

    def _fast_path(self, store: SessionStore, selection: PetSelection, target: Role) -> RoleSwitchResult:
        user = store.user
        pet_id = None
        # Re-selecting the active non-Owner role keeps the current pointer
        if target is Role.OWNER:
            try:
                pet = self.backend.latest_pet_by_user(user.user_id)
            except BackendError as e:
                logger.warning("Latest pet lookup failed for user %s: %s", user.user_id, e)
                pet = None
            if pet is not None and pet.pet_id is not None:
                pet_id = str(pet.pet_id)
        return self._commit(store, selection, target, pet_id)

    def _slow_path(self, store: SessionStore, selection: PetSelection, target: Role) -> RoleSwitchResult:
        user = store.user
        try:
            eligible = self.backend.check_user_join_pets(user.user_id, target)
            if not eligible:
                self._set_state(user.user_id, SwitchState.DENIED)
                return RoleSwitchResult(
                    role=user.user_type,
                    state=SwitchState.DENIED,
                    error=SwitchError.NOT_ELIGIBLE,
                    message=denial_message(target),
                )
            pet = self.backend.user_join_latest_pet(user.user_id, target)
            if pet is None or pet.pet_id is None:
                raise MalformedResponse("Latest joined pet has no petId")
        except BackendError as e:
            logger.warning("Role switch to %s aborted for user %s: %s", target.value, user.user_id, e)
            return RoleSwitchResult(
                role=user.user_type,
                state=SwitchState.IDLE,
                error=_error_kind(e),
                message="Could not switch role. Please try again.",
            )
        return self._commit(store, selection, target, str(pet.pet_id))

    def _commit(self, store: SessionStore, selection: PetSelection, target: Role, pet_id: Optional[str]) -> RoleSwitchResult:
        user = store.user
        if pet_id is not None:
            selection.set(user.user_id, pet_id)
        store.set_user(user.model_copy(update={"user_type": target.value}))
        self._set_state(user.user_id, SwitchState.APPROVED)
        logger.info("User %s switched role to %s", user.user_id, target.value)
        return RoleSwitchResult(
            role=target.value,
            state=SwitchState.APPROVED,
            selected_pet_id=pet_id,
            close_menu=True,
        )
