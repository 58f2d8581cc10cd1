import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

import models, auth_schemas, auth_utils, crud
from admin_schemas import UserCreate, UserEnvelope, UserResponse
from config import ACCESS_TOKEN_EXPIRE_MINUTES, TOKEN_COOKIE_NAME
from database import get_db
from schemas import MessageResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


@router.post("/register", response_model=UserEnvelope, status_code=status.HTTP_201_CREATED)
def register(user: auth_schemas.UserRegister, db: Session = Depends(get_db)):
    # self-registration always yields a patron; staff accounts come from an admin
    db_user = crud.add_user(
        UserCreate(
            email=user.email,
            name=user.name,
            password=user.password,
            role=models.UserRole.PATRON,
            phone=user.phone,
            address=user.address,
        ),
        db,
    )
    return {"message": "Registration successful", "user": db_user}


@router.post("/login", response_model=auth_schemas.LoginResponse)
def login(login_data: auth_schemas.UserLogin, response: Response, db: Session = Depends(get_db)):
    user = crud.get_user_by_email(login_data.email, db)
    if not user or not auth_utils.verify_password(login_data.password, user.hashed_password):
        logger.warning("Failed login attempt for %s", login_data.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")

    token = auth_utils.create_access_token(user)
    response.set_cookie(
        TOKEN_COOKIE_NAME,
        token,
        httponly=True,
        samesite="lax",
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )
    logger.info("User %s logged in as %s", user.email, user.role.value)
    return {"message": "Login successful", "token": token, "user": user}


@router.get("/me", response_model=UserResponse)
def read_users_me(current_user: models.User = Depends(auth_utils.get_current_user)):
    return current_user


@router.post("/logout", response_model=MessageResponse)
def logout(response: Response):
    # tokens are stateless; dropping the cookie is all the server can do
    response.delete_cookie(TOKEN_COOKIE_NAME)
    return {"message": "Successfully logged out"}
