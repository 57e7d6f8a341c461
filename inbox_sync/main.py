from __future__ import annotations

import json

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from inbox_sync.api.deps import get_event_intake
from inbox_sync.api.service import InvalidApiTokenError, router as service_router
from inbox_sync.core.config import settings
from inbox_sync.core.database import init_db
from inbox_sync.core.logging import setup_logging
from inbox_sync.utils.security import verify_signature

logger = structlog.get_logger(__name__)

app = FastAPI(title="Inbox Sync")


@app.exception_handler(InvalidApiTokenError)
async def invalid_api_token_handler(
    request: Request, exc: InvalidApiTokenError
) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "Invalid API token"})


@app.on_event("startup")
async def on_startup() -> None:
    setup_logging()
    await init_db()


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


async def _receive(
    request: Request, background_tasks: BackgroundTasks, instance: str | None
) -> dict:
    body = await request.body()

    if settings.WEBHOOK_SECRET:
        signature = request.headers.get("x-webhook-signature")
        if not verify_signature(settings.WEBHOOK_SECRET, body, signature):
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc

    intake = get_event_intake()
    background_tasks.add_task(intake.handle_webhook, payload, instance)
    return {"status": "accepted"}


@app.post("/webhook")
async def webhook(request: Request, background_tasks: BackgroundTasks) -> dict:
    return await _receive(request, background_tasks, None)


@app.post("/webhook/{instance}")
async def webhook_for_instance(
    instance: str, request: Request, background_tasks: BackgroundTasks
) -> dict:
    return await _receive(request, background_tasks, instance)


app.include_router(service_router)
