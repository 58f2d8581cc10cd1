from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

import models, auth_utils, crud
import admin_schemas as schemas
from database import get_db
from schemas import MessageResponse

router = APIRouter(
    prefix="/api/users",
    tags=["Admin"],
    responses={404: {"description": "Not found"}},
)


# User Management Endpoints
@router.get("", response_model=schemas.UserList)
def read_users(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    users = []
    for u in crud.get_users(db, skip=skip, limit=limit):
        entry = schemas.UserResponse.model_validate(u).model_dump()
        entry["counts"] = crud.user_counts(u.id, db)
        users.append(entry)
    return {"users": users}


@router.post("", response_model=schemas.UserEnvelope, status_code=status.HTTP_201_CREATED)
def create_user(
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    db_user = crud.add_user(user, db)
    return {"message": "User created successfully", "user": db_user}


@router.get("/{user_id}", response_model=schemas.UserResponse)
def read_user(
    user_id: int,
    db: Session = Depends(get_db),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    return crud.get_user_or_404(user_id, db)


@router.put("/{user_id}", response_model=schemas.UserEnvelope)
def update_user(
    user_id: int,
    user: schemas.UserUpdate,
    db: Session = Depends(get_db),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    db_user = crud.update_user(user_id, user, db)
    return {"message": "User updated successfully", "user": db_user}


@router.delete("/{user_id}", response_model=MessageResponse)
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_admin_user),
):
    crud.delete_user(user_id, current_user, db)
    return {"message": "User deleted successfully"}
