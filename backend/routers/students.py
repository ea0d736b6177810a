import logging
import re
import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from backend.config import MAJOR_REQUIRED_YEAR_LEVELS, SECTIONS, YEAR_LEVELS
from backend.security import require_session
from backend.services.email import build_qr_image_url, send_qr_code_email
from database.db import (
    add_student,
    conflicting_field,
    delete_student,
    get_all_students,
    get_attendance_by_student,
    get_student,
)
from qr_scanner.payload import serialize_payload

logger = logging.getLogger(__name__)

router = APIRouter()

COURSE_PATTERN = re.compile(r"^[A-Z]+$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CONFLICT_MESSAGES = {
    "student_id": "Student ID already exists. Please use a different student ID.",
    "email": "Email already registered. Please use a different email address.",
}


class StudentRegistration(BaseModel):
    student_id: str
    full_name: str
    email: str
    section: str
    year_level: str
    course: str
    major: str = ""


def _clean_registration(payload: StudentRegistration) -> dict[str, str]:
    student_id = payload.student_id.strip()
    full_name = payload.full_name.strip()
    email = payload.email.strip().lower()
    section = payload.section.strip().upper()
    year_level = payload.year_level.strip()
    # the registration form upper-cases course as it is typed; do the same for API callers
    course = payload.course.strip().upper()
    major = payload.major.strip()

    if not student_id or not full_name or not email or not section or not year_level or not course:
        raise HTTPException(status_code=400, detail="All required fields must be filled in.")
    if not EMAIL_PATTERN.match(email):
        raise HTTPException(status_code=400, detail="Please enter a valid email address.")
    if section not in SECTIONS:
        raise HTTPException(status_code=400, detail=f"Section must be one of: {', '.join(SECTIONS)}.")
    if year_level not in YEAR_LEVELS:
        raise HTTPException(status_code=400, detail=f"Year level must be one of: {', '.join(YEAR_LEVELS)}.")
    if not COURSE_PATTERN.match(course):
        raise HTTPException(
            status_code=400,
            detail="Course should contain only uppercase letters (e.g., BSCS, BSIT, BSEE).",
        )

    if year_level in MAJOR_REQUIRED_YEAR_LEVELS:
        major = major or "Not specified"
    else:
        major = "Not applicable"

    return {
        "student_id": student_id,
        "full_name": full_name,
        "email": email,
        "section": section,
        "year_level": year_level,
        "major": major,
        "course": course,
    }


def _student_view(student: dict) -> dict:
    return {**student, "qr_code_url": build_qr_image_url(student["qr_code"])}


@router.post("/students/register")
def register_student(payload: StudentRegistration, request: Request):
    fields = _clean_registration(payload)
    qr_code = serialize_payload(fields)

    try:
        student = add_student(**fields, qr_code=qr_code)
    except sqlite3.IntegrityError as exc:
        field = conflicting_field(exc)
        logger.info("Registration conflict on %s for %s", field, fields["student_id"])
        raise HTTPException(
            status_code=409,
            detail=CONFLICT_MESSAGES.get(field or "", "Student already registered."),
        )

    logger.info("Registered student %s", student["student_id"])
    request.app.state.notifier.publish("students", "insert", student["student_id"])

    view = _student_view(student)
    email = send_qr_code_email(
        to=student["email"],
        student_name=student["full_name"],
        student_id=student["student_id"],
        qr_code_url=view["qr_code_url"],
    )
    return {
        **view,
        "email_sent": email["sent"],
        "email_error": email["error"],
    }


@router.get("/students")
def students(_session: dict = Depends(require_session)):
    return get_all_students()


@router.get("/students/{student_id}")
def student_detail(student_id: str):
    student = get_student(student_id.strip())
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return _student_view(student)


@router.get("/students/{student_id}/attendance")
def student_attendance(student_id: str):
    clean_id = student_id.strip()
    if not get_student(clean_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    return get_attendance_by_student(clean_id)


@router.delete("/students/{student_id}")
def remove_student(student_id: str, request: Request, _session: dict = Depends(require_session)):
    clean_id = student_id.strip()
    if not delete_student(clean_id):
        raise HTTPException(status_code=404, detail="Student not found.")

    logger.info("Deleted student %s", clean_id)
    request.app.state.notifier.publish("students", "delete", clean_id)
    return {"ok": True, "message": "Student deleted"}
