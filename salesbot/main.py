import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from salesbot.config import settings
from salesbot.database import get_db, init_db
from salesbot.logging_config import get_logger, setup_logging
from salesbot.models import Conversation, MemoryEntry, Message
from salesbot.routers import conversations, message, webhook
from salesbot.services.container import build_container

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="SalesBot API",
    description="WhatsApp sales assistant driving contacts through the sales funnel",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(message.router)
app.include_router(conversations.router)


@app.on_event("startup")
async def start_services() -> None:
    if settings.debug:
        init_db()
    if getattr(app.state, "container", None) is None:
        app.state.container = build_container(settings)
    logger.info(
        "SalesBot started",
        extra={"context": {"model": settings.openai_model, "debounce_seconds": settings.debounce_seconds}},
    )


@app.on_event("shutdown")
async def stop_services() -> None:
    container = getattr(app.state, "container", None)
    if container is None:
        return
    await container.aclose()
    app.state.container = None
    logger.info("SalesBot stopped")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "memory_entries": db.query(MemoryEntry).count(),
    }
