import re
from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from typing import Optional

class RegisterIn(BaseModel):
    username: str = Field(min_length=3, max_length=20, pattern=r'^[a-zA-Z0-9_]+$')
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: str = Field(min_length=1, max_length=150)
    leetcode_username: Optional[str] = Field(default=None, max_length=100)

    @field_validator('password')
    @classmethod
    def password_strength(cls, v: str) -> str:
        if not re.search(r'[a-z]', v):
            raise ValueError('Password must contain at least one lowercase letter')
        if not re.search(r'[A-Z]', v):
            raise ValueError('Password must contain at least one uppercase letter')
        if not re.search(r'[0-9]', v):
            raise ValueError('Password must contain at least one number')
        return v

class TokenOut(BaseModel):
    access_token: str
    token_type: str = 'bearer'
    refresh_token: str | None = None

class RefreshIn(BaseModel):
    refresh_token: str

class LogoutIn(BaseModel):
    refresh_token: Optional[str] = None

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    name: str
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    location: Optional[str] = None
    leetcode_username: Optional[str] = None
    total_solved: int = 0
    easy_solved: int = 0
    medium_solved: int = 0
    hard_solved: int = 0
    contest_rating: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    stats_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

class MeOut(UserOut):
    email: EmailStr
    last_login_at: Optional[datetime] = None

class UserBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    name: str
    avatar_url: Optional[str] = None

# Profile Management Schemas
class ProfileUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=150)
    bio: Optional[str] = Field(default=None, max_length=1000)
    avatar_url: Optional[str] = Field(default=None, max_length=500)
    location: Optional[str] = Field(default=None, max_length=150)
    leetcode_username: Optional[str] = Field(default=None, max_length=100)

class StatsIn(BaseModel):
    total_solved: Optional[int] = Field(default=None, ge=0)
    easy_solved: Optional[int] = Field(default=None, ge=0)
    medium_solved: Optional[int] = Field(default=None, ge=0)
    hard_solved: Optional[int] = Field(default=None, ge=0)
    contest_rating: Optional[int] = Field(default=None, ge=0)
    current_streak: Optional[int] = Field(default=None, ge=0)
    longest_streak: Optional[int] = Field(default=None, ge=0)
