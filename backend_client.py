"""HTTP client for the Petroll backend REST API.

Every failure surfaces as a ``BackendError`` subclass so callers decide
whether to show it, retry or ignore it.
"""
import logging
from typing import Any, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

import config
from models import AuthResult, JoinApproval, Pet, Role

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


# --- Errors ---
class BackendError(Exception):
    kind = "backend_error"


class NetworkFailure(BackendError):
    kind = "network_failure"


class TimedOut(BackendError):
    kind = "timed_out"


class MalformedResponse(BackendError):
    kind = "malformed_response"


class RequestRejected(BackendError):
    kind = "request_rejected"

    def __init__(self, status_code: int, detail: str = ""):
        super().__init__(f"Backend answered {status_code}: {detail}".strip())
        self.status_code = status_code
        self.detail = detail


def _role_value(role) -> str:
    return role.value if isinstance(role, Role) else str(role)


class PetrollClient:
    def __init__(
        self,
        base_url: str = config.API_URL,
        timeout: float = config.API_TIMEOUT,
        http: Optional[httpx.Client] = None,
    ):
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self._http.close()

    # --- plumbing ---
    def _request(self, method: str, path: str, token: Optional[str] = None, **kwargs) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = self._http.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TimedOut(f"{method} {path} timed out") from e
        except httpx.RequestError as e:
            raise NetworkFailure(f"{method} {path} failed: {e}") from e

        logger.debug("%s %s -> %s", method, path, response.status_code)
        if response.is_error:
            raise RequestRejected(response.status_code, response.text)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(f"Expected JSON from {response.request.url}") from e

    @staticmethod
    def _model(model: Type[M], data: Any) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise MalformedResponse(f"Unexpected {model.__name__} payload: {e}") from e

    def _models(self, model: Type[M], data: Any) -> List[M]:
        if not isinstance(data, list):
            raise MalformedResponse(f"Expected a list of {model.__name__}")
        return [self._model(model, item) for item in data]

    def _bool(self, response: httpx.Response) -> bool:
        data = self._json(response)
        if not isinstance(data, bool):
            raise MalformedResponse(f"Expected a boolean, got {type(data).__name__}")
        return data

    def _optional_pet(self, response: httpx.Response) -> Optional[Pet]:
        if not response.content.strip():
            return None
        data = self._json(response)
        return None if data is None else self._model(Pet, data)

    # --- authentication ---
    def login(self, email: str, password: str) -> AuthResult:
        response = self._request("POST", "/login", json={"userEmail": email, "password": password})
        return self._model(AuthResult, self._json(response))

    def google_auth(self, credential: str, user_type) -> AuthResult:
        response = self._request(
            "POST", "/auth/google", json={"token": credential, "userType": _role_value(user_type)}
        )
        return self._model(AuthResult, self._json(response))

    def register(self, user_name: str, email: str, password: str, user_type) -> None:
        response = self._request(
            "POST",
            "/register",
            json={
                "userName": user_name,
                "userEmail": email,
                "password": password,
                "userType": _role_value(user_type),
            },
        )
        if response.text.strip() != "Success":
            raise RequestRejected(response.status_code, response.text or "Registration failed")

    def send_otp(self, email: str) -> None:
        self._request("POST", "/send-otp", json={"email": email})

    def verify_otp(self, email: str, otp: str) -> bool:
        try:
            response = self._request("POST", "/verify-otp", json={"email": email, "otp": otp})
        except RequestRejected as e:
            if e.status_code < 500:
                return False
            raise
        return response.text.strip() == "Verified"

    def reset_password(self, email: str, new_password: str) -> None:
        self._request("POST", "/forgot-password", json={"userEmail": email, "newPassword": new_password})

    # --- roles and pets ---
    def check_user_join_pets(self, user_id: int, role) -> bool:
        """Has the user ever been approved to act under ``role`` for any pet?"""
        response = self._request(
            "GET", f"/checkUserJoinPets/{user_id}", params={"userType": _role_value(role)}
        )
        return self._bool(response)

    def user_join_latest_pet(self, user_id: int, role) -> Optional[Pet]:
        response = self._request(
            "GET", f"/userJoinLatestPet/{user_id}", params={"userType": _role_value(role)}
        )
        return self._optional_pet(response)

    def latest_pet_by_user(self, user_id: int) -> Optional[Pet]:
        response = self._request("GET", "/getLatestPetByUserId", params={"userId": user_id})
        return self._optional_pet(response)

    def get_pet(self, pet_id) -> Optional[Pet]:
        response = self._request("GET", "/getPetById", params={"id": pet_id})
        return self._optional_pet(response)

    def owned_pets(self, user_id: int) -> List[Pet]:
        return self._models(Pet, self._json(self._request("GET", f"/pets/{user_id}")))

    def joined_pets(self, user_id: int, role) -> List[Pet]:
        response = self._request("GET", f"/userJoinPets/{user_id}", params={"userType": _role_value(role)})
        return self._models(Pet, self._json(response))

    def check_qr_pass(self, pet_id) -> bool:
        return self._bool(self._request("GET", f"/checkQrPass/{pet_id}"))

    # --- join requests ---
    def join_pet(self, token: str, joiner_id: int, pet_id, owner_id, role) -> None:
        self._request(
            "POST",
            "/joinPet",
            token=token,
            json={
                "joinerId": joiner_id,
                "petId": pet_id,
                "ownerId": owner_id,
                "userRoleInJoin": _role_value(role),
            },
        )

    def pending_approvals(self, token: str, owner_id: int) -> List[JoinApproval]:
        response = self._request("GET", "/pendingApprovals", token=token, params={"ownerId": owner_id})
        return self._models(JoinApproval, self._json(response))

    def approve(self, token: str, approval_id: int) -> None:
        self._request("PUT", f"/approve/{approval_id}", token=token)
