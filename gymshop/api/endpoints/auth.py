from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gymshop.api.deps import current_user_id, get_db
from gymshop.core.auth.accounts import AccountService
from gymshop.core.storage import Database

router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    email: str
    password: str
    mobile_number: str
    first_name: str = ""
    last_name: str = ""


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


@router.post("/register", status_code=201)
def register(req: RegisterRequest, db: Database = Depends(get_db)) -> Dict[str, Any]:
    return AccountService(db).register(
        email=req.email,
        password=req.password,
        mobile_number=req.mobile_number,
        first_name=req.first_name,
        last_name=req.last_name,
    )


@router.post("/login")
def login(req: LoginRequest, db: Database = Depends(get_db)) -> Dict[str, Any]:
    return AccountService(db).login(email=req.email, password=req.password)


@router.post("/refresh")
def refresh(req: RefreshRequest, db: Database = Depends(get_db)) -> Dict[str, Any]:
    return AccountService(db).refresh(req.refresh_token)


@router.get("/me")
def me(user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"user": AccountService(db).get(user_id).public()}
