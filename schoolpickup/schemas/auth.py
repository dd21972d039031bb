# schoolpickup/schemas/auth.py - Login schemas
from pydantic import BaseModel, validator
from typing import Optional
from uuid import UUID


class LoginIn(BaseModel):
    # Email or username; family accounts may have no email
    login: str
    password: str

    @validator("login")
    def validate_login(cls, v):
        if not v or not v.strip():
            raise ValueError("Login cannot be empty")
        return v.strip().lower()

    class Config:
        json_schema_extra = {
            "example": {
                "login": "parent@example.com",
                "password": "correct horse battery staple"
            }
        }


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    parent_id: UUID
    role: str
    name: Optional[str] = None
