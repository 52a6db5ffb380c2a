from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import courier.models  # noqa: F401  (registers SQLModel tables)

from courier.config import get_settings
from courier.db import create_db_and_tables, engine
from courier.routers import admin, checkins, contacts, health, messages, verifications
from courier.services.clock import ClockDriver
from courier.services.contacts import ContactService
from courier.services.content_store import HttpContentStore, build_content_store
from courier.services.dispatch import VerificationDispatcher
from courier.services.ledger import VerificationLedger
from courier.services.messages import MessageService
from courier.services.monitor import DeadMansSwitchMonitor
from courier.services.notifier import build_notifier
from courier.services.scheduler import Scheduler
from courier.services.state_machine import DeliveryStateMachine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    create_db_and_tables()

    notifier = build_notifier(settings)
    content_store = build_content_store(settings)
    ledger = VerificationLedger()
    machine = DeliveryStateMachine(settings)
    dispatcher = VerificationDispatcher(settings, ledger, notifier)
    monitor = DeadMansSwitchMonitor(settings, ledger, notifier, dispatcher)
    scheduler = Scheduler(
        settings,
        engine,
        machine,
        ledger,
        monitor,
        dispatcher,
        content_store,
        notifier,
    )

    app.state.notifier = notifier
    app.state.content_store = content_store
    app.state.ledger = ledger
    app.state.monitor = monitor
    app.state.scheduler = scheduler
    app.state.message_service = MessageService(
        settings, machine, ledger, monitor, content_store
    )
    app.state.contact_service = ContactService(settings, notifier)

    # Start the periodic scheduler tick
    clock = ClockDriver(scheduler, settings.scheduler_tick_seconds)
    app.state.clock = clock
    if settings.scheduler_enabled:
        clock.start()
    else:
        logger.warning("Scheduler disabled (SCHEDULER_ENABLED=0); messages will not advance")

    yield

    # Shutdown: stop the clock, then release the content store client
    await clock.stop()
    if isinstance(content_store, HttpContentStore):
        await content_store.close()


app = FastAPI(
    title="Courier",
    description="Future message delivery with trusted-contact verification",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(messages.router)
app.include_router(checkins.router)
app.include_router(contacts.router)
app.include_router(verifications.router)
app.include_router(admin.router)
