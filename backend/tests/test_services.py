import asyncio
import threading
from types import SimpleNamespace

import pytest
import requests

import backend.services.email as email_service
from backend.services.export import HEADERS, export_attendance_csv
from backend.routers.changes import _event_stream
from database.changes import ChangeNotifier
from qr_scanner.payload import interpret_payload
from qr_scanner.recorder import ApiAttendanceRecorder, ScanOutcome, SessionStore


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._body = body if body is not None else {}

    def json(self):
        return self._body

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.responses.pop(0)


# -----------------------------
# Email
# -----------------------------
def test_qr_image_url_encodes_payload():
    url = email_service.build_qr_image_url('{"studentId":"1","name":"A B"}')
    assert url.startswith("https://api.qrserver.com/v1/create-qr-code/?size=300x300&data=")
    assert "%7B%22studentId%22" in url
    assert " " not in url


def test_email_templates_escape_html():
    html, text = email_service.render_email(
        to="a@example.edu",
        student_name="<Ana>",
        student_id="1",
        qr_code_url="https://example.test/qr.png",
    )
    assert "&lt;Ana&gt;" in html
    assert "<Ana>" in text
    assert "https://example.test/qr.png" in text


def test_send_email_without_api_key_is_not_fatal(monkeypatch):
    monkeypatch.setattr(email_service, "RESEND_API_KEY", "")
    result = email_service.send_qr_code_email(
        to="a@example.edu", student_name="Ana", student_id="1", qr_code_url="u"
    )
    assert result["sent"] is False
    assert "not configured" in result["error"]


def test_send_email_posts_to_provider(monkeypatch):
    captured = {}

    def fake_post(url, headers, json, timeout):
        captured.update(url=url, headers=headers, json=json)
        return FakeResponse(200, {"id": "msg_123"})

    monkeypatch.setattr(email_service, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(email_service.requests, "post", fake_post)

    result = email_service.send_qr_code_email(
        to="a@example.edu", student_name="Ana", student_id="1", qr_code_url="u"
    )
    assert result == {"sent": True, "error": None, "message_id": "msg_123"}
    assert captured["headers"]["Authorization"] == "Bearer re_test"
    assert captured["json"]["to"] == ["a@example.edu"]
    assert captured["json"]["subject"] == email_service.SUBJECT


def test_send_email_reports_provider_errors(monkeypatch):
    monkeypatch.setattr(email_service, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(
        email_service.requests,
        "post",
        lambda *a, **kw: FakeResponse(422, {"message": "Invalid `to` field"}),
    )
    result = email_service.send_qr_code_email(
        to="bad", student_name="Ana", student_id="1", qr_code_url="u"
    )
    assert result["sent"] is False
    assert "Invalid `to` field" in result["error"]

    def unreachable(*a, **kw):
        raise requests.ConnectionError("no route")

    monkeypatch.setattr(email_service.requests, "post", unreachable)
    result = email_service.send_qr_code_email(
        to="a@example.edu", student_name="Ana", student_id="1", qr_code_url="u"
    )
    assert "unreachable" in result["error"]


@pytest.mark.parametrize("body", [["Bad Gateway"], "Bad Gateway", None])
def test_send_email_tolerates_non_object_bodies(monkeypatch, body):
    response = FakeResponse(502)
    response._body = body
    monkeypatch.setattr(email_service, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(email_service.requests, "post", lambda *a, **kw: response)

    result = email_service.send_qr_code_email(
        to="a@example.edu", student_name="Ana", student_id="1", qr_code_url="u"
    )
    assert result["sent"] is False
    assert "502" in result["error"]


# -----------------------------
# CSV export
# -----------------------------
def _grouped(student_id, year_level, logins):
    return {
        "student_id": student_id,
        "student_name": f"Student {student_id}",
        "email": f"{student_id}@example.edu",
        "section": "A",
        "year_level": year_level,
        "major": "Not applicable",
        "course": "BSCS",
        "event_name": "Live Event",
        "login_timestamps": [
            {"date": d, "time": t, "timestamp": f"{d}T{t}"} for d, t in logins
        ],
    }


def test_export_sections_by_year_level():
    csv_text, summary = export_attendance_csv([
        _grouped("3", "3rd Year", [("2026-03-02", "08:00:00")]),
        _grouped("1", "1st Year", [("2026-03-02", "08:05:00"), ("2026-03-03", "07:59:10")]),
        _grouped("9", "Graduate", [("2026-03-02", "08:00:00")]),
    ])
    assert summary == {"total_records": 3, "by_year": {"1st Year": 1, "3rd Year": 1}}
    assert csv_text.index("1st Year Students") < csv_text.index("3rd Year Students")
    assert ",".join(f'"{h}"' for h in HEADERS) in csv_text
    assert '"Mar 2, 2026 at 08:05:00; Mar 3, 2026 at 07:59:10","2"' in csv_text
    assert "Graduate" not in csv_text
    assert '"Total Login Sessions: 2"' in csv_text


def test_export_empty():
    csv_text, summary = export_attendance_csv([])
    assert csv_text.strip() == '"No attendance records found for any year level"'
    assert summary["by_year"] == {}


# -----------------------------
# Scanner recorders
# -----------------------------
def test_session_store_round_trip(tmp_path):
    store = SessionStore(tmp_path / "scanner" / "token")
    assert store.get() is None
    store.set("tok-1")
    assert store.get() == "tok-1"
    store.clear()
    store.clear()
    assert store.get() is None


def test_api_recorder_posts_wire_payload(tmp_path):
    store = SessionStore(tmp_path / "token")
    store.set("tok-1")
    http = FakeHttp(FakeResponse(200, {
        "recorded": True,
        "outcome": "recorded",
        "message": "Attendance recorded successfully",
        "student_id": "202210042",
        "entry": {"id": 1},
    }))
    recorder = ApiAttendanceRecorder(store, base_url="http://api.test/", event_name="Assembly", http=http)

    outcome = asyncio.run(recorder.record(interpret_payload("202210042")))
    assert outcome == ScanOutcome(
        ok=True,
        outcome="recorded",
        message="Attendance recorded successfully",
        student_id="202210042",
        entry={"id": 1},
    )
    url, kwargs = http.calls[0]
    assert url == "http://api.test/attendance/scan"
    assert kwargs["headers"]["Authorization"] == "Bearer tok-1"
    assert kwargs["json"]["payload"]["studentId"] == "202210042"
    assert kwargs["json"]["event_name"] == "Assembly"


def test_api_recorder_clears_expired_session(tmp_path):
    store = SessionStore(tmp_path / "token")
    store.set("stale")
    recorder = ApiAttendanceRecorder(store, http=FakeHttp(FakeResponse(401, {"detail": "expired"})))

    outcome = asyncio.run(recorder.record(interpret_payload("1")))
    assert outcome.ok is False
    assert "Session expired" in outcome.message
    assert store.get() is None


def test_api_recorder_without_login(tmp_path):
    http = FakeHttp()
    recorder = ApiAttendanceRecorder(SessionStore(tmp_path / "token"), http=http)
    outcome = asyncio.run(recorder.record(interpret_payload("1")))
    assert outcome.outcome == "failed"
    assert http.calls == []


def test_api_recorder_login(tmp_path):
    store = SessionStore(tmp_path / "token")
    recorder = ApiAttendanceRecorder(
        store,
        http=FakeHttp(
            FakeResponse(401, {"detail": "Invalid admin credentials."}),
            FakeResponse(200, {"access_token": "tok-2", "username": "admin"}),
        ),
    )
    with pytest.raises(PermissionError, match="Invalid admin credentials"):
        recorder.login("admin", "wrong")
    recorder.login("admin", "admin123")
    assert store.get() == "tok-2"


# -----------------------------
# Change notifications
# -----------------------------
def test_change_notifier_delivers_to_table_subscribers():
    async def scenario():
        notifier = ChangeNotifier()
        async with notifier.subscribe("students") as students, notifier.subscribe("attendance_records") as attendance:
            notifier.publish("students", "insert", "202210042")
            event = await asyncio.wait_for(students.get(), timeout=1)
            assert attendance._queue.empty()
            assert notifier.subscriber_count("students") == 1
        assert notifier.subscriber_count("students") == 0
        return event

    event = asyncio.run(scenario())
    assert event.as_dict()["key"] == "202210042"
    assert event.action == "insert"


def test_change_notifier_accepts_publish_from_worker_threads():
    async def scenario():
        notifier = ChangeNotifier()
        sub = notifier.subscribe("attendance_records")
        worker = threading.Thread(target=notifier.publish, args=("attendance_records", "insert", "7"))
        worker.start()
        await asyncio.to_thread(worker.join)
        event = await asyncio.wait_for(sub.get(), timeout=1)
        sub.close()
        return event

    assert asyncio.run(scenario()).key == "7"


def test_change_notifier_drops_oldest_for_slow_consumers():
    async def scenario():
        notifier = ChangeNotifier(max_queue_size=2)
        sub = notifier.subscribe("students")
        for key in ("a", "b", "c"):
            notifier.publish("students", "insert", key)
        await asyncio.sleep(0)
        keys = [(await sub.get()).key, (await sub.get()).key]
        sub.close()
        return keys

    assert asyncio.run(scenario()) == ["b", "c"]


def test_change_notifier_rejects_unknown_table():
    async def scenario():
        ChangeNotifier().subscribe("courses")

    with pytest.raises(ValueError):
        asyncio.run(scenario())


class FeedRequest:
    def __init__(self, notifier, connected_polls):
        self.app = SimpleNamespace(state=SimpleNamespace(notifier=notifier))
        self._polls = connected_polls

    async def is_disconnected(self):
        self._polls -= 1
        return self._polls < 0


def test_change_feed_subscribes_only_while_streaming():
    async def scenario():
        notifier = ChangeNotifier()
        stream = _event_stream(FeedRequest(notifier, connected_polls=1), "students")
        # a response body that is never consumed holds no subscription
        assert notifier.subscriber_count("students") == 0

        ready = await stream.__anext__()
        assert ready.startswith("event: ready")
        assert notifier.subscriber_count("students") == 1

        notifier.publish("students", "insert", "202210042")
        change = await stream.__anext__()
        assert '"key": "202210042"' in change

        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        return notifier

    notifier = asyncio.run(scenario())
    assert notifier.subscriber_count("students") == 0
