import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from moto_chat.config import get_settings
from moto_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from moto_chat.errors import AppError
from moto_chat.repositories.conversation_repository import ConversationRepository
from moto_chat.repositories.message_repository import MessageRepository
from moto_chat.routers.admin import router as admin_router
from moto_chat.routers.conversations import router as conversations_router
from moto_chat.routers.messages import router as messages_router
from moto_chat.routers.presence import router as presence_router
from moto_chat.routers.realtime import router as realtime_router
from moto_chat.services.retention import RetentionSweeper
from moto_chat.utils.realtime_bus import get_bus, reset_bus
from moto_chat.utils.websocket_manager import get_connection_manager


settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    db = get_database()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()

    manager = get_connection_manager()
    bus = await get_bus()
    manager.attach_bus(bus)
    tasks = []
    if bus.enabled:
        tasks.append(asyncio.create_task(bus.run(manager.deliver)))
    sweeper = RetentionSweeper(
        MessageRepository(db),
        retention_days=settings.deleted_message_retention_days,
        interval_seconds=settings.retention_sweep_interval_seconds,
    )
    tasks.append(asyncio.create_task(sweeper.run_forever()))
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await reset_bus()
        await close_mongo_connection()


async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.kind})


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": "server_error"})


async def health():

    db = get_database()
    await db.command("ping")
    return {"status": "ok", "online_users": len(get_connection_manager().online_user_ids())}


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(title=settings.app_name, lifespan=lifespan_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    app.include_router(conversations_router)
    app.include_router(messages_router)
    app.include_router(admin_router)
    app.include_router(presence_router)
    app.include_router(realtime_router)
    app.add_api_route("/health", health, methods=["GET"])
    return app


app = create_app()
