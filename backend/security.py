import sqlite3
from typing import Any

from fastapi import Header, HTTPException

from database.db import validate_admin_session

NOT_INITIALIZED_DETAIL = (
    "Database not initialized. Run `python -m database.db` to create the tables, then retry."
)


def bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")
    return token.strip()


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    token = bearer_token(authorization)

    try:
        session = validate_admin_session(token)
    except sqlite3.OperationalError:
        raise HTTPException(status_code=503, detail=NOT_INITIALIZED_DETAIL)

    if not session:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return session
