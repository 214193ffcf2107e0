import logging
import os
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import AsyncMongoClient
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from mailbuddy.api.router import router as api_router
from mailbuddy.api.sync.service import MailSyncService
from mailbuddy.config import settings
from mailbuddy.database import ensure_indexes

if settings.ENVIRONMENT == "development":
    router_prefix = ""
else:
    router_prefix = "/api/v1"

# Configure logging
date_str = datetime.now().strftime("%Y-%m-%d")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s]: %(message)s",
)

os.makedirs("logs", exist_ok=True)
file_handler = logging.FileHandler(f"logs/app-err-{date_str}.log")
file_handler.setLevel(logging.ERROR)
logger = logging.getLogger("fastapi-errors")
logger.setLevel(logging.ERROR)
logger.addHandler(file_handler)

app = FastAPI(
    title="Mailbuddy Sync API",
    description="Keeps a local copy of linked Gmail mailboxes in sync",
    version="0.1.0",
)

app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

app.include_router(api_router, prefix=router_prefix)

origins = [
    "http://localhost:3000",
    "http://localhost:5173",
]

if settings.FRONTEND_URL:
    origins.extend([url.strip() for url in settings.FRONTEND_URL.split(",") if url.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"[{datetime.now()}] Unhandled error at {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal Server Error. Reason: {exc}"},
    )


@app.get("/")
async def root():
    return {"message": "Mailbuddy Sync API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


scheduler = AsyncIOScheduler(
    job_defaults={"max_instances": 1, "coalesce": True, "misfire_grace_time": 30}
)


async def run_mail_sync_job():
    """Periodic job that syncs linked mailboxes."""
    client = AsyncMongoClient(settings.DB_CONNECTION_STRING)
    try:
        db = client[settings.DB_NAME]
        await MailSyncService(db).sync_all_accounts()
    finally:
        await client.close()


@app.on_event("startup")
async def on_startup():
    client = AsyncMongoClient(settings.DB_CONNECTION_STRING)
    try:
        await ensure_indexes(client[settings.DB_NAME])
    finally:
        await client.close()

    scheduler.add_job(
        run_mail_sync_job,
        "interval",
        minutes=settings.MAIL_SYNC_INTERVAL_MINUTES,
        next_run_time=datetime.now(),
        id="mail_sync_job",
        replace_existing=True,
    )
    scheduler.start()
    logging.info(f"Scheduler configured: mail_sync_job every {settings.MAIL_SYNC_INTERVAL_MINUTES} minutes (max {settings.MAIL_SYNC_MAX_ACCOUNTS_PER_RUN} accounts per run)")


@app.on_event("shutdown")
async def on_shutdown():
    scheduler.shutdown(wait=False)
