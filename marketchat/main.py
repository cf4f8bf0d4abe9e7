import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from marketchat.config import Settings, get_settings
from marketchat.database.connection import close_mongo_connection, connect_to_mongo
from marketchat.routers.conversations import router as conversations_router
from marketchat.routers.messages import router as messages_router
from marketchat.routers.presence import router as presence_router
from marketchat.routers.realtime import router as realtime_router
from marketchat.utils.errors import ChatError
from marketchat.utils.media_store import build_media_store
from marketchat.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)


def _setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def configure_state(app: FastAPI, settings: Settings) -> None:
    app.state.settings = settings
    app.state.connections = ConnectionManager()
    app.state.media_store = build_media_store(settings.cloudinary_url, settings.voice_folder)


@asynccontextmanager
async def lifespan(app: FastAPI):

    settings = get_settings()
    _setup_logging(settings)
    configure_state(app, settings)
    await connect_to_mongo()
    logger.info("Marketplace chat started (media store: %s)", type(app.state.media_store).__name__)
    try:
        yield
    finally:
        await close_mongo_connection()


app = FastAPI(title="Marketplace chat", lifespan=lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    body = {"success": False, "error": "validation_error", "message": first.get("msg", "Invalid request")}
    if field:
        body["field"] = field
    return JSONResponse(status_code=400, content=body)


app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(presence_router)
app.include_router(realtime_router)


@app.get("/")
async def root():

    return {"success": True, "message": "Marketplace chat is running"}
