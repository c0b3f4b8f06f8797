import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cohost.config import settings
from cohost.database import init_db
from cohost.logging_config import get_logger, setup_logging
from cohost.routers import admin, conversations, webhook
from cohost.services.orchestrator_service import build_engine

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="Co-host API",
    description="Conversation orchestration engine for short-term rental guest messaging",
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
app.include_router(conversations.router)
app.include_router(admin.router)


@app.on_event("startup")
async def start_engine() -> None:
    # tests install their own engine before startup
    if getattr(app.state, "engine", None) is not None:
        return
    init_db()
    app.state.engine = build_engine(settings)
    logger.info("Engine started")


@app.on_event("shutdown")
async def stop_engine() -> None:
    engine = getattr(app.state, "engine", None)
    if engine is None:
        return
    await engine.aclose()
    app.state.engine = None
    logger.info("Engine stopped")


@app.get("/health")
async def health():
    engine = getattr(app.state, "engine", None)
    return {"status": "ok", "engine": engine is not None}
