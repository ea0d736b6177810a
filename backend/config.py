import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("QRATTEND_DB_PATH", BASE_DIR / "database" / "qrattend.db"))
ADMIN_USERNAME = os.getenv("QRATTEND_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("QRATTEND_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SESSION_TTL_HOURS = int(os.getenv("QRATTEND_SESSION_TTL_HOURS", "8"))
PASSWORD_MIN_LENGTH = int(os.getenv("QRATTEND_PASSWORD_MIN_LENGTH", "6"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float, *, minimum: float = 0.0) -> float:
    if not value:
        return fallback
    try:
        return max(minimum, float(value))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("QRATTEND_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("QRATTEND_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("QRATTEND_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("QRATTEND_CORS_ALLOW_CREDENTIALS"), True)
LOG_LEVEL = os.getenv("QRATTEND_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Attendance
DEFAULT_EVENT_NAME = os.getenv("QRATTEND_DEFAULT_EVENT_NAME", "Live Event").strip() or "Live Event"

# Registration
SECTIONS = ("A", "B", "C", "D", "E", "F")
YEAR_LEVELS = ("1st Year", "2nd Year", "3rd Year", "4th Year")
MAJOR_REQUIRED_YEAR_LEVELS = ("2nd Year", "3rd Year", "4th Year")

# Email + QR image rendering
RESEND_API_KEY = os.getenv("RESEND_API_KEY", "").strip()
RESEND_API_URL = os.getenv("QRATTEND_RESEND_API_URL", "https://api.resend.com/emails").strip()
EMAIL_SENDER = os.getenv("QRATTEND_EMAIL_SENDER", "QR Attend <onboarding@resend.dev>").strip()
EMAIL_TIMEOUT_SECONDS = _parse_float(os.getenv("QRATTEND_EMAIL_TIMEOUT_SECONDS"), 10.0, minimum=1.0)
QR_IMAGE_BASE_URL = os.getenv(
    "QRATTEND_QR_IMAGE_BASE_URL",
    "https://api.qrserver.com/v1/create-qr-code/",
).strip()
QR_IMAGE_SIZE = os.getenv("QRATTEND_QR_IMAGE_SIZE", "300x300").strip() or "300x300"

# Scanner loop
SCAN_INTERVAL_SECONDS = _parse_float(os.getenv("QRATTEND_SCAN_INTERVAL_SECONDS"), 0.25, minimum=0.05)
SCAN_COOLDOWN_SECONDS = _parse_float(os.getenv("QRATTEND_SCAN_COOLDOWN_SECONDS"), 3.0)
CAMERA_READY_TIMEOUT_SECONDS = _parse_float(os.getenv("QRATTEND_CAMERA_READY_TIMEOUT_SECONDS"), 5.0, minimum=0.1)
CAMERA_LOST_AFTER_SECONDS = _parse_float(os.getenv("QRATTEND_CAMERA_LOST_AFTER_SECONDS"), 2.0, minimum=0.1)
CAMERA_DEVICE = int(os.getenv("QRATTEND_CAMERA_DEVICE", "0"))
CAMERA_FALLBACK_DEVICE = int(os.getenv("QRATTEND_CAMERA_FALLBACK_DEVICE", "1"))
SCANNER_API_URL = os.getenv("QRATTEND_SCANNER_API_URL", "http://127.0.0.1:8000").strip().rstrip("/")
SCANNER_TOKEN_FILE = Path(
    os.getenv("QRATTEND_SCANNER_TOKEN_FILE", Path.home() / ".qrattend" / "session_token")
)
