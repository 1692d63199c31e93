"""Pillwatch application entrypoint."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import Session

import pillwatch.database as db
from pillwatch.adherence.monitor import AdherenceMonitor
from pillwatch.api.middleware import BasicAuthMiddleware, SecurityHeadersMiddleware
from pillwatch.config import Settings, load_config, settings
from pillwatch.notify.scheduler import NotificationScheduler
from pillwatch.scanner.base import BaseScanner
from pillwatch.scanner.discovery import DiscoveryService
from pillwatch.schedule.store import list_medications

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def _create_scanner(mode: str) -> BaseScanner | None:
    """Factory: instantiate the configured scanner backend."""
    if mode == "ble":
        from pillwatch.scanner.ble import BleScanner

        return BleScanner()
    if mode == "mock":
        from pillwatch.scanner.mock import MockScanner

        return MockScanner()
    return None


def _open_session() -> Session:
    return Session(db.engine)


async def start_tracking(app: FastAPI, cfg: Settings) -> None:
    """Build the tracking services and start scanning, dispatch and evaluation."""
    discovery = DiscoveryService(_create_scanner(cfg.scanner_mode), cfg.rssi_threshold)
    notifier = NotificationScheduler(
        webhook_url=cfg.webhook_url,
        daily_reminders=cfg.daily_reminders,
        wrong_box_delay_seconds=cfg.wrong_box_delay_seconds,
        dispatch_interval=cfg.dispatch_interval,
    )
    monitor = AdherenceMonitor(
        discovery,
        notifier,
        _open_session,
        sensor_open_threshold=cfg.sensor_open_threshold,
        due_window_seconds=cfg.due_window_seconds,
        evaluation_interval=cfg.evaluation_interval,
    )
    app.state.discovery = discovery
    app.state.notifier = notifier
    app.state.monitor = monitor

    # Pending reminders only live in memory; re-arm them from the schedule
    with _open_session() as session:
        entries = list_medications(session)
        for entry in entries:
            notifier.schedule_reminder(entry)
    logger.info("Re-armed %d reminder(s)", len(entries))

    await discovery.start_scanning()
    await notifier.start()
    await monitor.start()


async def stop_tracking(app: FastAPI) -> None:
    """Stop evaluation, dispatch and scanning."""
    if hasattr(app.state, "monitor"):
        await app.state.monitor.stop()
    if hasattr(app.state, "notifier"):
        await app.state.notifier.stop()
    if hasattr(app.state, "discovery"):
        await app.state.discovery.stop_scanning()
    logger.info("Tracking stopped")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    # Import models to register them with SQLModel before init_db()
    import pillwatch.adherence.models  # noqa: F401
    import pillwatch.boxes.models  # noqa: F401
    import pillwatch.schedule.models  # noqa: F401

    db.init_db()
    logger.info("Database initialized")

    await start_tracking(app, load_config())

    yield

    await stop_tracking(app)


app = FastAPI(
    title="Pillwatch",
    description="Pill box beacon tracking and medication reminders",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(SecurityHeadersMiddleware)

# Conditionally add BasicAuth if password is configured
if settings.auth_password:
    app.add_middleware(
        BasicAuthMiddleware, username=settings.auth_username, password=settings.auth_password
    )
    logger.info("HTTP Basic Auth enabled")


# Register routers
from pillwatch.api.routes import router as api_router  # noqa: E402

app.include_router(api_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    logger.info("Starting Pillwatch on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
