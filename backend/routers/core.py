from fastapi import APIRouter

from backend.config import (
    CAMERA_READY_TIMEOUT_SECONDS,
    DEFAULT_EVENT_NAME,
    SCAN_COOLDOWN_SECONDS,
    SCAN_INTERVAL_SECONDS,
    SECTIONS,
    YEAR_LEVELS,
)
from qr_scanner.camera import DEFAULT_PROFILES, MINIMAL_PROFILE

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/scanner")
def scanner_config():
    return {
        "scan_interval_seconds": SCAN_INTERVAL_SECONDS,
        "cooldown_seconds": SCAN_COOLDOWN_SECONDS,
        "camera_ready_timeout_seconds": CAMERA_READY_TIMEOUT_SECONDS,
        "camera_profiles": [p.as_dict() for p in DEFAULT_PROFILES],
        "minimal_profile": MINIMAL_PROFILE.as_dict(),
        "default_event_name": DEFAULT_EVENT_NAME,
    }


@router.get("/config/registration")
def registration_config():
    return {
        "sections": list(SECTIONS),
        "year_levels": list(YEAR_LEVELS),
    }
