import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from forgechat.api import auth, chat, tools
from forgechat.core.config import settings
from forgechat.core.database import init_models
from forgechat.core.errors import AppError, ErrorCode, register_exception_handlers, success_body
from forgechat.core.logging import setup_logging
from forgechat.integrations.model_driver import ModelDriver, get_model_driver

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await init_models()
    logger.info(
        "%s started: heartbeat=%ss history=%d turns provider=%s",
        settings.app_name, settings.sse_heartbeat_sec, settings.max_history_turns, settings.llm_provider,
    )
    yield


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Routers
app.include_router(auth.router)
app.include_router(chat.router)
app.include_router(tools.router)


@app.get("/api/health")
async def health_check():
    return {"status": "ok"}


@app.get("/api/health/llm")
async def llm_health_check(driver: ModelDriver = Depends(get_model_driver)):
    try:
        await driver.health_check()
    except Exception as e:
        logger.warning("Model driver health check failed: %s", e)
        raise AppError(500, ErrorCode.EXTERNAL_SERVICE, f"AI service unavailable: {e}")
    return success_body({"status": "ok", "provider": driver.provider, "model": driver.model})
