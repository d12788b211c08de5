"""Entry point for the FastAPI-hosted Telegram clip bot."""

from __future__ import annotations

import logging
import secrets
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta

import httpx
from fastapi import FastAPI, HTTPException, Request
from telegram import Bot, Update
from telegram.ext import Application

from .config import Settings, settings
from .database import Database
from .handlers import BotServices, register_handlers
from .models import OperatorState
from .services.audit import AuditLog
from .services.catalog import CatalogRepository
from .services.delivery import DeliveryService
from .services.locks import DeliveryLocks
from .services.maintenance import Maintenance
from .services.monetization import (
    AccessGate,
    MembershipGate,
    SettingsStore,
    ShortlinkClient,
    TokenStore,
)
from .services.rooms import RoomPool
from .services.telegram import TelegramGateway
from .services.users import UserService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI

WEBHOOK_PATH = "/telegram/{secret}"


def build_services(
    config: Settings,
    database: Database,
    bot: Bot,
    http_client: httpx.AsyncClient,
    state: OperatorState | None = None,
) -> tuple[BotServices, Maintenance]:
    """Wire the persistence, transport and gating collaborators together."""

    state = state or OperatorState()
    session_factory = database.session_factory
    gateway = TelegramGateway(
        bot,
        log_channel_id=config.log_channel_id,
        pause_seconds=config.transport_pause_seconds,
    )
    audit = AuditLog(gateway)
    store = SettingsStore(session_factory)
    tokens = TokenStore(session_factory, ttl_seconds=config.token_ttl_seconds)
    shortlinks = ShortlinkClient(
        http_client,
        store,
        default_base_url=(
            str(config.shortlink_base_url) if config.shortlink_base_url is not None else None
        ),
        default_api_key=config.shortlink_api_key,
    )
    access = AccessGate(store, tokens, shortlinks, bot_username=config.bot_username)
    rooms = RoomPool(session_factory)
    users = UserService(session_factory)
    catalog = CatalogRepository(session_factory)
    delivery = DeliveryService(
        gateway=gateway,
        rooms=rooms,
        locks=DeliveryLocks(session_factory, ttl_seconds=config.delivery_lock_seconds),
        users=users,
        catalog=catalog,
        access=access,
        membership=MembershipGate(store, gateway),
        audit=audit,
        state=state,
        invite_ttl=timedelta(seconds=config.invite_ttl_seconds),
    )
    services = BotServices(
        settings=config,
        catalog=catalog,
        rooms=rooms,
        delivery=delivery,
        users=users,
        access=access,
        tokens=tokens,
        store=store,
        audit=audit,
        state=state,
    )
    maintenance = Maintenance(
        rooms,
        tokens,
        state,
        audit=audit,
        stale_after_seconds=config.room_stale_seconds,
        janitor_interval_seconds=config.janitor_interval_seconds,
    )
    return services, maintenance


def webhook_secret(config: Settings) -> str:
    return config.webhook_secret or secrets.token_urlsafe(24)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    if not settings.bot_token:
        raise RuntimeError("BOT_TOKEN must be configured")

    exit_stack = AsyncExitStack()
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
    )
    database = Database(settings.database_url)
    await database.create_all()

    use_webhook = settings.webhook_url is not None
    builder = Application.builder().token(settings.bot_token)
    if use_webhook:
        builder = builder.updater(None)
    application = builder.build()

    services, maintenance = build_services(settings, database, application.bot, http_client)
    register_handlers(application, services)

    await application.initialize()
    if not settings.bot_username:
        settings.bot_username = application.bot.username
        services.access.bot_username = application.bot.username

    secret = webhook_secret(settings)
    if use_webhook:
        url = str(settings.webhook_url).rstrip("/") + WEBHOOK_PATH.format(secret=secret)
        await application.bot.set_webhook(url=url, allowed_updates=Update.ALL_TYPES)
        logger.info("Webhook registered")
    await application.start()
    if not use_webhook and application.updater is not None:
        await application.updater.start_polling(allowed_updates=Update.ALL_TYPES)
        logger.info("Polling for updates")

    fastapi_app.state.application = application
    fastapi_app.state.webhook_secret = secret
    fastapi_app.state.database = database
    await maintenance.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await maintenance.stop()
        if application.updater is not None and application.updater.running:
            await application.updater.stop()
        await application.stop()
        await application.shutdown()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Telegram clip delivery bot",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_routes(fastapi_app)
    return fastapi_app


def get_application(fastapi_app: FastAPI) -> Application:
    application = getattr(fastapi_app.state, "application", None)
    if not isinstance(application, Application):
        raise HTTPException(status_code=503, detail="Bot not initialised")
    return application


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post(WEBHOOK_PATH)
    async def telegram_webhook(secret: str, request: Request) -> dict[str, bool]:
        expected = getattr(fastapi_app.state, "webhook_secret", None)
        if not expected or not secrets.compare_digest(secret, expected):
            raise HTTPException(status_code=404, detail="Not found")
        application = get_application(fastapi_app)
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid update payload") from exc
        update = Update.de_json(payload, application.bot)
        await application.process_update(update)
        return {"ok": True}


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
