import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.routers import admin, attendance, auth, changes, core, students
from database.changes import ChangeNotifier
from database.db import create_tables, purge_expired_sessions

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    removed = purge_expired_sessions()
    if removed:
        logger.info("Purged %d expired admin sessions", removed)
    app.state.notifier = ChangeNotifier()
    yield


app = FastAPI(title="QR Attend API", lifespan=lifespan)
# Routes reached without the lifespan (e.g. bare TestClient) still need a notifier.
app.state.notifier = ChangeNotifier()

# -----------------------------
# CORS (web dashboard)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

app.include_router(core.router)
app.include_router(auth.router)
app.include_router(admin.router)
app.include_router(students.router)
app.include_router(attendance.router)
app.include_router(changes.router)
