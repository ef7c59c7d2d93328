import re
from enum import StrEnum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator

EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")
MIN_PASSWORD_LENGTH = 6


class Role(StrEnum):
    CUSTOMER = "customer"
    CPR = "cpr"
    SERVICE = "service"
    ADMIN = "admin"
    CHANNEL_PARTNER = "channel_partner"
    EPR = "epr"
    SYSTEM_INTEGRATOR = "system_integrator"


def _check_email(value: str) -> str:
    value = value.strip()
    if not EMAIL_PATTERN.fullmatch(value):
        raise ValueError("Please enter a valid email address")
    return value.lower()


def _check_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return value


EmailAddress = Annotated[str, AfterValidator(_check_email)]
Password = Annotated[str, AfterValidator(_check_password)]


class RegisterRequest(BaseModel):
    email: EmailAddress
    password: Password
    full_name: str = Field(..., max_length=255)
    # Staff accounts are provisioned by admins; anything else is rejected by the service.
    role: Role = Role.CUSTOMER

    @field_validator("full_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Full name is required")
        return value


class LoginRequest(BaseModel):
    email: EmailAddress
    password: str = Field(..., min_length=1)


class PasswordResetRequest(BaseModel):
    email: EmailAddress


class PasswordChangeRequest(BaseModel):
    new_password: Password


class ProfileUpdate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=255)


class UserOut(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: Role
    full_name: Optional[str] = None


class SessionOut(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    user: UserOut
