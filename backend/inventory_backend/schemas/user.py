"""User and authentication schemas"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from inventory_backend.models.user import Role

_PASSWORD_RULE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])")


def _check_password_strength(value: str) -> str:
    if not _PASSWORD_RULE.match(value):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character"
        )
    return value


class RegisterRequest(BaseModel):
    """User registration schema"""
    email: EmailStr = Field(..., max_length=255)
    password: str = Field(..., min_length=8, max_length=100)
    name: str = Field(..., min_length=2, max_length=255)
    role: Role = Role.STAFF
    phone: Optional[str] = Field(None, max_length=32)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()

    @field_validator("password")
    @classmethod
    def password_strength(cls, v):
        return _check_password_strength(v)


class LoginRequest(BaseModel):
    """User login schema"""
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=100)
    remember_me: bool = Field(False, alias="rememberMe")

    model_config = {"populate_by_name": True}

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()


class LogoutRequest(BaseModel):
    all_devices: bool = Field(False, alias="allDevices")

    model_config = {"populate_by_name": True}


class ForgotPasswordRequest(BaseModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=100, alias="newPassword")
    confirm_password: str = Field(..., min_length=1, alias="confirmPassword")

    model_config = {"populate_by_name": True}

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, v):
        return _check_password_strength(v)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, alias="currentPassword")
    new_password: str = Field(..., min_length=8, max_length=100, alias="newPassword")
    confirm_password: str = Field(..., min_length=1, alias="confirmPassword")

    model_config = {"populate_by_name": True}

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, v):
        return _check_password_strength(v)


class UserResponse(BaseModel):
    """Sanitized user; never carries the password hash"""
    id: str
    email: str
    name: str
    role: Role
    phone: Optional[str] = None
    is_active: bool
    is_verified: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SessionResponse(BaseModel):
    id: str
    last_active: datetime
    created_at: datetime
    ip_address: Optional[str] = None
    device_info: Optional[str] = None
    current: bool = False
