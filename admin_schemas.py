from datetime import datetime
from typing import List, Optional

from pydantic import EmailStr, Field

from models import UserRole
from schemas import RequestModel, ResponseModel


# User Management Schemas
class UserCreate(RequestModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=6)
    role: UserRole = UserRole.PATRON
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = Field(None, max_length=300)


class UserUpdate(RequestModel):
    email: Optional[EmailStr] = None
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    role: Optional[UserRole] = None
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = Field(None, max_length=300)
    is_active: Optional[bool] = None


class UserResponse(ResponseModel):
    id: int
    email: str
    name: str
    role: UserRole
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None


class UserCounts(ResponseModel):
    borrowings: int = 0
    fines: int = 0
    reservations: int = 0


class UserWithCounts(UserResponse):
    counts: UserCounts


# Response Models
class UserList(ResponseModel):
    users: List[UserWithCounts]


class UserEnvelope(ResponseModel):
    message: Optional[str] = None
    user: UserResponse
