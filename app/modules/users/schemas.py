from pydantic import BaseModel, EmailStr, Field, validator
from datetime import datetime
from typing import Optional
import re


class UserRegistrationRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    username: str = Field(..., min_length=3, max_length=50)
    full_name: str = Field(..., min_length=1, max_length=200)
    avatar_url: Optional[str] = None

    @validator("username")
    def validate_username(cls, v: str) -> str:
        v = v.strip().lstrip("@")
        if not re.match(r"^[A-Za-z0-9_.-]+$", v):
            raise ValueError("Username may only contain letters, digits, '_', '.' and '-'")
        return v.lower()

    @validator("full_name")
    def validate_full_name(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("Full name is required")
        return v


class UserLoginRequest(BaseModel):
    email_or_username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class PaymentMethodsUpdate(BaseModel):
    """Payment handles shown to counterparties (all optional)"""
    venmo_username: Optional[str] = Field(None, max_length=100)
    cashapp_handle: Optional[str] = Field(None, max_length=100)
    paypal_email: Optional[str] = Field(None, max_length=255)
    zelle_email: Optional[str] = Field(None, max_length=255)


class PublicProfileResponse(BaseModel):
    id: int
    username: str
    full_name: str
    avatar_url: Optional[str] = None

    class Config:
        from_attributes = True


class UserProfileResponse(PublicProfileResponse):
    email: str
    venmo_username: Optional[str] = None
    cashapp_handle: Optional[str] = None
    paypal_email: Optional[str] = None
    zelle_email: Optional[str] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True
