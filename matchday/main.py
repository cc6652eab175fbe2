"""Matchday core: FastAPI app hosting the scheduler, poller and queue workers.

Run with:
    uvicorn matchday.main:app
or, without the HTTP surface:
    python -m matchday
"""

import asyncio
import logging
import signal
from contextlib import asynccontextmanager

from fastapi import FastAPI

from matchday.config import get_settings
from matchday.database import close_db, init_db
from matchday.routes.ops import ops_router, router
from matchday.service import build_service
from matchday.telemetry.sentry import init_sentry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking (before app creation)
# Only activates if SENTRY_DSN is set in environment
init_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    # Fail fast: never start half-configured
    settings.validate_required()

    logger.info(f"Starting matchday core (role={settings.SERVICE_ROLE})...")
    service = build_service(settings)
    await init_db()
    await service.start()
    app.state.service = service

    yield

    logger.info("Shutting down...")
    await service.stop()
    await close_db()


app = FastAPI(
    title="matchday-core ops",
    description="Internal operations surface for the fixture scheduler and scoring core",
    lifespan=lifespan,
)
app.include_router(router)
app.include_router(ops_router)


async def run_headless() -> None:
    """Run the service without HTTP until SIGINT/SIGTERM."""
    settings = get_settings()
    settings.validate_required()

    service = build_service(settings)
    await init_db()
    await service.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(f"Matchday core running headless (role={settings.SERVICE_ROLE})")
    await stop_event.wait()

    await service.stop()
    await close_db()
