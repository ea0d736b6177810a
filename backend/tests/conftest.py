import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.services.email as email_service
import database.db as db


@pytest.fixture()
def test_db(tmp_path, monkeypatch):
    path = tmp_path / "qrattend_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", path)
    monkeypatch.setattr(db, "DB_PATH", path)

    db.create_tables()
    return path


@pytest.fixture()
def client(test_db, monkeypatch):
    # Never reach the real email provider from tests.
    monkeypatch.setattr(email_service, "RESEND_API_KEY", "")

    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def auth_headers(client):
    res = client.post(
        "/auth/login",
        json={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
        },
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, table, action, key=None):
        self.events.append((table, action, key))


@pytest.fixture()
def published(client, monkeypatch):
    notifier = RecordingNotifier()
    monkeypatch.setattr(main.app.state, "notifier", notifier)
    return notifier.events


def _student(**overrides):
    student = {
        "student_id": "202210042",
        "full_name": "Maria Santos",
        "email": "maria.santos@example.edu",
        "section": "B",
        "year_level": "2nd Year",
        "course": "bsit",
        "major": "Web Development",
    }
    student.update(overrides)
    return student


@pytest.fixture()
def make_student():
    return _student
