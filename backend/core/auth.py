# backend/core/auth.py
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from common.errors import AuthError
from core.config import settings
from core.security import create_access_token, get_current_user, public_user
from modules.users.repo import UsersRepo

router = APIRouter()


def _repo() -> UsersRepo:
    return UsersRepo()


class RegisterIn(BaseModel):
    name: str = Field(min_length=2, max_length=50)
    phone: str = Field(min_length=8, max_length=20)
    teamId: Optional[str] = Field(default=None, min_length=1, max_length=50)


class LoginIn(BaseModel):
    phone: str = Field(min_length=8, max_length=20)


@router.post("/register", status_code=201)
def register(body: RegisterIn, repo: UsersRepo = Depends(_repo)):
    user = repo.create_user(name=body.name, phone=body.phone, team_id=body.teamId or settings.DEFAULT_TEAM_ID)
    token = create_access_token(sub=user["id"])
    return {"success": True, "token": token, "user": public_user(user)}


@router.post("/login")
def login(body: LoginIn, repo: UsersRepo = Depends(_repo)):
    user = repo.get_by_phone(body.phone)
    if not user:
        raise AuthError("No user found with this phone number. Please register first.")
    if not user.get("is_active", True):
        raise AuthError("Account is inactive. Please contact an administrator.")

    user["last_login"] = repo.touch_login(user["id"])
    token = create_access_token(sub=user["id"])
    return {"success": True, "token": token, "user": public_user(user)}


@router.get("/me")
def me(user=Depends(get_current_user)):
    return {"success": True, "user": user}
