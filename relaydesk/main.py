from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from relaydesk.api.routers import auth as auth_router
from relaydesk.api.routers import backups as backups_router
from relaydesk.api.routers import mails as mails_router
from relaydesk.api.routers import notification_settings as notification_settings_router
from relaydesk.api.routers import notifications as notifications_router
from relaydesk.api.routers import settings as settings_router
from relaydesk.api.routers import tickets as tickets_router
from relaydesk.api.routers import users as users_router
from relaydesk.core.config import get_settings
from relaydesk.core.db import dispose_engine, get_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.getLogger("relaydesk").setLevel(get_settings().log_level.upper())
    await get_engine()
    logger.info("Database ready; serving %s.", app.title)
    yield
    await dispose_engine()


settings = get_settings()
app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.include_router(auth_router.router)
app.include_router(users_router.router)
app.include_router(tickets_router.router)
app.include_router(mails_router.router)
app.include_router(backups_router.router)
app.include_router(notification_settings_router.router)
app.include_router(notifications_router.router)
app.include_router(settings_router.router)


@app.get("/health", tags=["System"])
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
