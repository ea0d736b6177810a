import logging
import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from backend.config import PASSWORD_MIN_LENGTH
from backend.security import require_session
from database.db import create_admin_user, delete_admin_user, get_admin_accounts

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_session)])


class AdminCreate(BaseModel):
    username: str
    password: str


@router.get("/admin/accounts")
def list_admin_accounts():
    return get_admin_accounts()


@router.post("/admin/accounts")
def create_admin_account(payload: AdminCreate, request: Request):
    username = payload.username.strip()
    password = payload.password.strip()

    if not username or not password:
        raise HTTPException(status_code=400, detail="Username and password are required.")
    if len(password) < PASSWORD_MIN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.",
        )

    try:
        admin_id = create_admin_user(username, password)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Username already exists.")

    logger.info("Admin account %r created", username)
    request.app.state.notifier.publish("admin_accounts", "insert", str(admin_id))
    return {"id": admin_id, "username": username}


@router.delete("/admin/accounts/{admin_id}")
def delete_admin_account(
    admin_id: int,
    request: Request,
    session: dict = Depends(require_session),
):
    if admin_id == session["admin_id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account.")

    if not delete_admin_user(admin_id):
        raise HTTPException(status_code=404, detail="Admin account not found.")

    logger.info("Admin account %d deleted by %s", admin_id, session["username"])
    request.app.state.notifier.publish("admin_accounts", "delete", str(admin_id))
    return {"ok": True, "message": "Admin account deleted"}
