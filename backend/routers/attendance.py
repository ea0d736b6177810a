import json
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, Response, UploadFile
from pydantic import BaseModel

from backend.security import require_session
from backend.services.export import export_attendance_csv
from database.db import (
    AttendanceRecordResult,
    delete_attendance_record,
    get_attendance_records,
    group_attendance_by_student,
    record_attendance,
)
from qr_scanner.decoder import decode_image_bytes
from qr_scanner.payload import interpret_payload

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_session)])


class ScanRequest(BaseModel):
    payload: dict[str, Any] | str
    event_name: str | None = None


def _payload_text(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False)


def _record_scan(request: Request, text: str, event_name: str | None) -> dict:
    scanned = interpret_payload(text)
    result: AttendanceRecordResult = record_attendance(scanned.student_id, event_name=event_name)
    if result["recorded"]:
        request.app.state.notifier.publish("attendance_records", "insert", result["student_id"])
    return {
        **result,
        "scan_instance_id": scanned.scan_instance_id,
        "payload": scanned.to_wire(),
    }


@router.post("/attendance/scan")
def scan_attendance(body: ScanRequest, request: Request):
    return _record_scan(request, _payload_text(body.payload), body.event_name)


@router.post("/attendance/decode")
async def decode_attendance(
    request: Request,
    file: UploadFile = File(...),
    event_name: str | None = Form(default=None),
):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    data = await file.read()
    text, image_ok = decode_image_bytes(data)
    if not image_ok:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    if text is None:
        return {"decoded": False, "recorded": False, "reason": "no_qr_code"}

    return {"decoded": True, **_record_scan(request, text, event_name)}


@router.get("/attendance")
def attendance(
    date: str | None = None,
    start: str | None = None,
    end: str | None = None,
    student_id: str | None = None,
):
    return get_attendance_records(date, start=start, end=end, student_id=student_id)


@router.get("/attendance/grouped")
def attendance_grouped(
    date: str | None = None,
    start: str | None = None,
    end: str | None = None,
):
    records = get_attendance_records(date, start=start, end=end)
    return group_attendance_by_student(records)


@router.get("/attendance/export")
def attendance_export(
    date: str | None = None,
    start: str | None = None,
    end: str | None = None,
):
    grouped = group_attendance_by_student(get_attendance_records(date, start=start, end=end))
    csv_text, summary = export_attendance_csv(grouped)
    filename = f"attendance_by_year_{datetime.now().strftime('%Y-%m-%d')}.csv"
    logger.info("Exported attendance for %d students", summary["total_records"])
    return Response(
        content=csv_text,
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Total-Records": str(summary["total_records"]),
        },
    )


@router.delete("/attendance/{entry_id}")
def remove_attendance(entry_id: int, request: Request):
    if not delete_attendance_record(entry_id):
        raise HTTPException(status_code=404, detail="Attendance record not found.")

    request.app.state.notifier.publish("attendance_records", "delete", str(entry_id))
    return {"ok": True, "message": "Attendance record deleted"}
