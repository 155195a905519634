import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes.chats import router as chats_router
from api.routes.messages import router as messages_router
from branchchat.config import Config, Settings
from branchchat.database import ChatStore, SqlChatStore, build_store
from branchchat.errors import ChatError
from branchchat.providers import LocalBlobStore, ProviderFactory, StaticCredentialProvider
from branchchat.scheduler import SchedulerService
from branchchat.service import ChatService

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # 第三方库太吵
    for noisy in ("httpx", "LiteLLM", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def create_app(
    settings: Settings = Config,
    store: Optional[ChatStore] = None,
    factory_builder: Optional[Callable[[str], ProviderFactory]] = None,
    scheduler: Optional[SchedulerService] = None,
) -> FastAPI:
    """
    Build the API app.

    Tests pass their own store / factory builder / scheduler; by default
    everything is built from settings when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        chat_store = store or build_store(settings.database_url)
        if isinstance(chat_store, SqlChatStore):
            await chat_store.create_tables()

        builder = factory_builder
        if builder is None:
            blob_store = LocalBlobStore(settings.blob_root)
            credentials = StaticCredentialProvider(settings)

            def builder(user_id: str) -> ProviderFactory:
                return ProviderFactory(settings, credentials, blob_store, user_id)

        jobs = scheduler or SchedulerService()
        jobs.start()
        app.state.chat_service = ChatService(chat_store, settings, builder, scheduler=jobs)
        logger.info("🚀 BranchChat API ready")
        try:
            yield
        finally:
            await app.state.chat_service.orchestrator.wait_all()
            jobs.shutdown()
            await chat_store.close()

    app = FastAPI(title="BranchChat API", lifespan=lifespan)

    # CORS 配置：开发环境允许所有来源，生产环境限制为指定来源
    is_dev = os.getenv("ENV", "development") == "development"
    cors_origins = (
        ["*"]
        if is_dev
        else [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=not is_dev,  # 使用 "*" 时不能设置 credentials=True
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        if exc.status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    app.include_router(chats_router)
    app.include_router(messages_router)

    @app.get("/api/health")
    async def health_check():
        return {"status": "ok"}

    return app


setup_logging(Config.log_level)
app = create_app()
