import csv
import io
from datetime import datetime
from typing import Any

from backend.config import YEAR_LEVELS

HEADERS = [
    "Student Name",
    "Student ID",
    "Course",
    "Section",
    "Major",
    "Event",
    "Login Dates & Times",
    "Total Login Days",
]


def _format_login(entry: dict[str, Any]) -> str:
    try:
        day = datetime.strptime(entry["date"], "%Y-%m-%d")
        label = f"{day.strftime('%b')} {day.day}, {day.year}"
    except (TypeError, ValueError):
        label = str(entry["date"])
    return f"{label} at {entry['time']}"


def export_attendance_csv(grouped: list[dict[str, Any]]) -> tuple[str, dict[str, Any]]:
    """
    Render per-student attendance as CSV, one section per year level.
    Students with a year level outside YEAR_LEVELS are left out.

    Returns:
      (csv_text, {"total_records": int, "by_year": {year_level: count}})
    """
    by_year: dict[str, list[dict[str, Any]]] = {year: [] for year in YEAR_LEVELS}
    for record in grouped:
        if record["year_level"] in by_year:
            by_year[record["year_level"]].append(record)

    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    wrote_any = False

    for year, records in by_year.items():
        if not records:
            continue
        if wrote_any:
            out.write("\n\n")
        wrote_any = True

        writer.writerow([f"=== {year} Students ==="])
        writer.writerow([f"Total Students: {len(records)}"])
        out.write("\n")
        writer.writerow(HEADERS)
        for r in records:
            logins = r["login_timestamps"]
            writer.writerow([
                r["student_name"],
                r["student_id"],
                r["course"],
                r["section"],
                r["major"],
                r["event_name"],
                "; ".join(_format_login(e) for e in logins),
                str(len(logins)),
            ])

        out.write("\n")
        writer.writerow([f"Summary for {year}:"])
        writer.writerow([f"Total Students: {len(records)}"])
        writer.writerow([f"Total Login Sessions: {sum(len(r['login_timestamps']) for r in records)}"])

    if not wrote_any:
        writer.writerow(["No attendance records found for any year level"])

    summary = {
        "total_records": len(grouped),
        "by_year": {year: len(records) for year, records in by_year.items() if records},
    }
    return out.getvalue(), summary
