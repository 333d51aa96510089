from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    """Capacity under which a user acts for a given pet (backend `userType`)."""

    OWNER = "Owner"
    FAMILY = "Family"
    VET = "Vet"
    WALKER = "Walker"
    GROOMER = "Groomer"
    FRIEND = "Friend"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Role":
        """Case-insensitive lookup; raises ValueError for unknown roles."""
        if value:
            for role in cls:
                if role.value.lower() == value.strip().lower():
                    return role
        raise ValueError(f"Unknown role: {value!r}")


ROLES: List[Role] = list(Role)


class BackendModel(BaseModel):
    # Backend JSON is camelCase; unknown fields are kept so records round-trip intact
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


# --- User Schemas ---
class User(BackendModel):
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_type: Optional[str] = None  # the role currently active for the selected pet
    phone: Optional[str] = None
    address: Optional[str] = None
    is_premium: Optional[bool] = None
    valid_days: Optional[int] = None
    premium_start_date: Optional[str] = None  # ISO date
    premium_expiry_date: Optional[str] = None  # ISO date
    created_at: Optional[str] = None  # ISO timestamp

    @property
    def role(self) -> Optional[Role]:
        try:
            return Role.parse(self.user_type)
        except ValueError:
            return None


# --- Pet Schemas ---
class Pet(BackendModel):
    pet_id: Optional[int] = None
    pet_name: Optional[str] = None
    gender: Optional[str] = None
    color: Optional[str] = None
    breed: Optional[str] = None
    species: Optional[str] = None
    dob: Optional[str] = None
    lost: bool = False
    description: Optional[str] = None
    lost_message: Optional[str] = None
    secure_token: Optional[str] = None
    created_at: Optional[str] = None
    base64_image: Optional[str] = None
    owner: Optional[User] = None
    is_premium: bool = False
    valid_days: Optional[int] = None
    premium_start_date: Optional[str] = None
    premium_expiry_date: Optional[str] = None


class AuthResult(BackendModel):
    """Payload of `/login` and `/auth/google`."""

    user: User
    token: str


class JoinApproval(BackendModel):
    """A pending join request awaiting the owner's approval."""

    id: int
    pet_name: Optional[str] = None
    requested_by_name: Optional[str] = None
    join_type: Optional[str] = None
