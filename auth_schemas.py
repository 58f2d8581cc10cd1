from typing import Optional

from pydantic import EmailStr, Field

from admin_schemas import UserResponse
from schemas import RequestModel, ResponseModel


class UserLogin(RequestModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserRegister(RequestModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = Field(None, max_length=300)


class LoginResponse(ResponseModel):
    message: str
    token: str
    token_type: str = "bearer"
    user: UserResponse
