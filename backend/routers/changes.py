import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from backend.security import require_session
from database.changes import WATCHED_TABLES

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_session)])

KEEPALIVE_SECONDS = 15.0


async def _event_stream(request: Request, table: str):
    # subscribed on first read; released in the finally below
    sub = request.app.state.notifier.subscribe(table)
    logger.info("Change feed opened for %s", table)
    try:
        yield f"event: ready\ndata: {json.dumps({'table': table})}\n\n"
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(sub.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"event: change\ndata: {json.dumps(event.as_dict())}\n\n"
    finally:
        sub.close()
        logger.info("Change feed closed for %s", table)


@router.get("/changes/{table}")
async def table_changes(table: str, request: Request):
    if table not in WATCHED_TABLES:
        raise HTTPException(status_code=404, detail="Unknown table.")

    return StreamingResponse(
        _event_stream(request, table),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
