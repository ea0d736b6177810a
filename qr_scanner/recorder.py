import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import requests

from backend.config import DEFAULT_EVENT_NAME, SCANNER_API_URL, SCANNER_TOKEN_FILE
from database.db import record_attendance
from qr_scanner.payload import ScannedPayload

logger = logging.getLogger(__name__)


@dataclass
class ScanOutcome:
    ok: bool
    outcome: str  # recorded | not_registered | duplicate_today | failed
    message: str
    student_id: str
    entry: dict[str, Any] | None = field(default=None)

    @classmethod
    def from_result(cls, result: dict[str, Any]) -> "ScanOutcome":
        return cls(
            ok=bool(result.get("recorded")),
            outcome=str(result.get("outcome") or "failed"),
            message=str(result.get("message") or ""),
            student_id=str(result.get("student_id") or ""),
            entry=result.get("entry"),
        )


class SessionStore:
    """Keeps the admin session token for the scanner between runs."""

    def __init__(self, path: Path = SCANNER_TOKEN_FILE):
        self.path = Path(path)

    def get(self) -> str | None:
        try:
            token = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return token or None

    def set(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(token, encoding="utf-8")
        self.path.chmod(0o600)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class LocalAttendanceRecorder:
    """Records straight into the local database (scanner and API on one host)."""

    def __init__(self, event_name: str | None = None):
        self.event_name = event_name or DEFAULT_EVENT_NAME

    async def record(self, payload: ScannedPayload) -> ScanOutcome:
        result = await asyncio.to_thread(
            record_attendance,
            payload.student_id,
            event_name=self.event_name,
        )
        return ScanOutcome.from_result(result)


class ApiAttendanceRecorder:
    """Records through the HTTP API with the stored admin session token."""

    def __init__(
        self,
        session_store: SessionStore,
        *,
        base_url: str = SCANNER_API_URL,
        event_name: str | None = None,
        timeout: float = 10.0,
        http: requests.Session | None = None,
    ):
        self.session_store = session_store
        self.base_url = base_url.rstrip("/")
        self.event_name = event_name or DEFAULT_EVENT_NAME
        self.timeout = timeout
        self.http = http or requests.Session()

    def login(self, username: str, password: str) -> dict[str, Any]:
        res = self.http.post(
            f"{self.base_url}/auth/login",
            json={"username": username, "password": password},
            timeout=self.timeout,
        )
        if res.status_code != 200:
            raise PermissionError(_detail(res, "Login failed."))
        body = res.json()
        self.session_store.set(body["access_token"])
        return body

    def logout(self) -> None:
        token = self.session_store.get()
        try:
            if token:
                self.http.post(
                    f"{self.base_url}/auth/logout",
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self.timeout,
                )
        finally:
            self.session_store.clear()

    def _post_scan(self, payload: ScannedPayload) -> ScanOutcome:
        token = self.session_store.get()
        if not token:
            return ScanOutcome(
                ok=False,
                outcome="failed",
                message="Not logged in. Run the scanner login command first.",
                student_id=payload.student_id,
            )

        res = self.http.post(
            f"{self.base_url}/attendance/scan",
            json={"payload": payload.to_wire(), "event_name": self.event_name},
            headers={"Authorization": f"Bearer {token}"},
            timeout=self.timeout,
        )
        if res.status_code == 401:
            self.session_store.clear()
            return ScanOutcome(
                ok=False,
                outcome="failed",
                message="Session expired. Please log in again.",
                student_id=payload.student_id,
            )
        res.raise_for_status()
        return ScanOutcome.from_result(res.json())

    async def record(self, payload: ScannedPayload) -> ScanOutcome:
        return await asyncio.to_thread(self._post_scan, payload)


def _detail(res: requests.Response, fallback: str) -> str:
    try:
        return str(res.json().get("detail") or fallback)
    except ValueError:
        return fallback
