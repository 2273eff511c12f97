import logging

from fastapi import FastAPI

from medibook.core.config import get_settings
from medibook.core.errors import register_exception_handlers
from medibook.core.logging_config import setup_logging
from medibook.database import create_db_and_tables
from medibook.routers import appointments, auth, hospitals, notifications, payments, users, wallets

settings = get_settings()
setup_logging(settings.LOG_LEVEL)

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME)
register_exception_handlers(app)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(hospitals.router)
app.include_router(appointments.router)
app.include_router(payments.router)
app.include_router(wallets.router)
app.include_router(notifications.router)


@app.on_event("startup")
def on_startup():
    create_db_and_tables()
    logger.info(f"{settings.PROJECT_NAME} started ({settings.ENVIRONMENT})")


@app.get("/")
def root():
    return {"message": f"{settings.PROJECT_NAME} is running"}


@app.get("/health")
def health():
    return {"status": "ok"}
