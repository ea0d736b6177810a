"""
QR payload format shared by registration (producer) and the scanner (consumer).

A student's QR code holds a flat JSON object:

    {"studentId": ..., "name": ..., "email": ..., "section": ...,
     "yearLevel": ..., "major": ..., "course": ..., "id": <uuid>}

Codes already handed out depend on these field names and on the object
staying flat, so neither may change.
"""
import json
import logging
import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

PAYLOAD_FIELDS = ("studentId", "name", "email", "section", "yearLevel", "major", "course", "id")
REQUIRED_FIELDS = ("studentId", "name", "email")

# Per-field stand-ins for incomplete payloads.
PLACEHOLDERS = {
    "studentId": "Unknown",
    "name": "Unknown Student",
    "email": "unknown@email.com",
    "section": "Unknown",
    "yearLevel": "Unknown",
    "major": "Unknown",
    "course": "Unknown",
}
# Stand-ins when the code is not structured at all.
RAW_TEXT_NAME = "QR Code Student"
RAW_TEXT_EMAIL = "qr@student.com"


class ScannedPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(alias="studentId")
    name: str
    email: str
    section: str = PLACEHOLDERS["section"]
    year_level: str = Field(default=PLACEHOLDERS["yearLevel"], alias="yearLevel")
    major: str = PLACEHOLDERS["major"]
    course: str = PLACEHOLDERS["course"]
    scan_instance_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="id")

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def serialize_payload(student: Mapping[str, Any], instance_id: str | None = None) -> str:
    """Build the QR text for a roster record (snake_case keys, as stored)."""
    body = {
        "studentId": _text(student["student_id"]),
        "name": _text(student["full_name"]),
        "email": _text(student["email"]),
        "section": _text(student["section"]),
        "yearLevel": _text(student["year_level"]),
        "major": _text(student["major"]),
        "course": _text(student["course"]),
        "id": instance_id or str(uuid.uuid4()),
    }
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def interpret_payload(text: str) -> ScannedPayload:
    """
    Turn decoded QR text into a ScannedPayload. Never raises.

    - a JSON object with studentId, name and email is taken as-is;
    - a JSON object missing any of them gets placeholders per field;
    - anything else is treated as a bare student id.
    """
    raw = _text(text)
    try:
        data = json.loads(raw)
    except ValueError:
        data = None

    if not isinstance(data, dict):
        logger.warning("QR code is not a structured payload, treating it as a plain id")
        return ScannedPayload(
            student_id=raw.strip(),
            name=RAW_TEXT_NAME,
            email=RAW_TEXT_EMAIL,
        )

    values = {key: _text(data.get(key)) for key in PAYLOAD_FIELDS}
    if not all(values[key] for key in REQUIRED_FIELDS):
        logger.warning("QR payload is missing required fields, filling placeholders")

    for key, placeholder in PLACEHOLDERS.items():
        if not values[key]:
            values[key] = placeholder
    if not values["id"]:
        values["id"] = str(uuid.uuid4())

    return ScannedPayload.model_validate(values)
