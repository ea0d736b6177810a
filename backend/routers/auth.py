import logging
import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from backend.config import PASSWORD_MIN_LENGTH
from backend.security import NOT_INITIALIZED_DETAIL, require_session
from database.db import (
    change_admin_password,
    create_admin_session,
    create_tables,
    delete_admin_session,
    verify_admin_credentials,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class AdminLogin(BaseModel):
    username: str
    password: str


class PasswordChange(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str


def _issue_admin_session(payload: AdminLogin) -> dict:
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        admin = verify_admin_credentials(username, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            admin = verify_admin_credentials(username, password)
        except sqlite3.OperationalError:
            logger.error("Admin login attempted against an uninitialized database")
            raise HTTPException(status_code=503, detail=NOT_INITIALIZED_DETAIL)

    if not admin:
        logger.warning("Failed login attempt for username %r", username)
        raise HTTPException(status_code=401, detail="Invalid admin credentials.")

    session = create_admin_session(admin["id"])
    now = int(time.time())
    logger.info("Admin %s logged in", admin["username"])
    return {
        "access_token": session["token"],
        "token_type": "bearer",
        "admin_id": admin["id"],
        "username": admin["username"],
        "expires_at": session["expires_at"],
        "expires_in": max(0, session["expires_at"] - now),
    }


@router.post("/auth/login")
def admin_login(payload: AdminLogin, request: Request):
    result = _issue_admin_session(payload)
    request.app.state.notifier.publish("admin_accounts", "update", str(result["admin_id"]))
    return result


@router.post("/auth/logout")
def admin_logout(session: dict = Depends(require_session)):
    delete_admin_session(session["token"])
    logger.info("Admin %s logged out", session["username"])
    return {"ok": True}


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "admin_id": session["admin_id"],
        "username": session["username"],
        "expires_at": session["expires_at"],
    }


@router.post("/auth/password")
def change_password(
    payload: PasswordChange,
    request: Request,
    session: dict = Depends(require_session),
):
    if payload.new_password != payload.confirm_password:
        raise HTTPException(status_code=400, detail="New passwords do not match.")
    if len(payload.new_password.strip()) < PASSWORD_MIN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"New password must be at least {PASSWORD_MIN_LENGTH} characters long.",
        )

    if not change_admin_password(session["admin_id"], payload.current_password, payload.new_password):
        raise HTTPException(status_code=400, detail="Current password is incorrect.")

    logger.info("Admin %s changed their password", session["username"])
    request.app.state.notifier.publish("admin_accounts", "update", str(session["admin_id"]))
    return {"ok": True, "message": "Password changed successfully."}
