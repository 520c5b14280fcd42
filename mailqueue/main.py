"""FastAPI application for the HR mail queue."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailqueue.config import settings
from mailqueue.database import init_db, close_db
from mailqueue.routes.cron import router as cron_router
from mailqueue.routes.mail_queue import router as mail_queue_router

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("mail-queue starting up")
    await init_db()
    yield
    logger.info("mail-queue shutting down")
    await close_db()


app = FastAPI(
    title="HR Mail Queue",
    description="Durable queue and worker for onboarding, probation and monthly HR emails",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(cron_router, prefix=settings.api_prefix)
app.include_router(mail_queue_router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "mail-queue"}
