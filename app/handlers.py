"""Telegram update handlers wiring chat events to the search and delivery core."""

from __future__ import annotations

import functools
import html
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Message, Update
from telegram.constants import ParseMode
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .config import Settings
from .models import CatalogEntry, MediaRef, OperatorState
from .services.audit import AuditLog, describe_user
from .services.catalog import CatalogRepository
from .services.delivery import (
    Blocked,
    BlockReason,
    Delivered,
    DeliveryResult,
    DeliveryService,
)
from .services.matching import SingleMatch, Suggestions, related, resolve
from .services.monetization import (
    FORCE_SUB_KEY,
    MODES,
    SHORTLINK_API_KEY,
    SHORTLINK_BASE_KEY,
    AccessGate,
    SettingsStore,
    TokenStore,
)
from .services.rooms import RoomPool
from .services.users import UserService
from .utils import clean_title, decode_start_payload, encode_start_payload, extract_categories

logger = logging.getLogger(__name__)

SERVICES_KEY = "services"
EXPLORER_KEYWORDS = frozenset({"filters", "filter", "list", "movies", "all", "explore"})
EXPLORER_PAGE_SIZE = 10

Handler = Callable[[Update, ContextTypes.DEFAULT_TYPE], Awaitable[None]]


@dataclass(slots=True)
class BotServices:
    """Everything the handlers need, stored in ``application.bot_data``."""

    settings: Settings
    catalog: CatalogRepository
    rooms: RoomPool
    delivery: DeliveryService
    users: UserService
    access: AccessGate
    tokens: TokenStore
    store: SettingsStore
    audit: AuditLog
    state: OperatorState


def get_services(context: ContextTypes.DEFAULT_TYPE) -> BotServices:
    services = context.application.bot_data.get(SERVICES_KEY)
    if not isinstance(services, BotServices):
        raise RuntimeError("Bot services not initialised")
    return services


def deep_link(bot_username: str | None, title: str) -> str:
    return f"https://t.me/{bot_username or ''}?start={encode_start_payload(title)}"


def render_delivery_result(
    result: DeliveryResult, title: str
) -> tuple[str, InlineKeyboardMarkup | None]:
    """Turn a delivery outcome into a short user-facing reply."""

    safe_title = html.escape(title)
    if isinstance(result, Delivered):
        text = (
            f"✅ <b>{safe_title}</b> is ready: {result.clip_count} clips.\n"
            "The link works once and expires in 2 hours."
        )
        if result.new_badge:
            text += f"\n\n🏅 New badge unlocked: {html.escape(result.new_badge)}"
        markup = InlineKeyboardMarkup(
            [[InlineKeyboardButton("📥 Open clips", url=result.invite_url)]]
        )
        return text, markup

    if isinstance(result, Blocked):
        if result.reason is BlockReason.BUSY:
            return "⏳ Your previous request is still being prepared. Please retry shortly.", None
        if result.reason is BlockReason.GATED:
            markup = (
                InlineKeyboardMarkup([[InlineKeyboardButton("🔓 Unlock", url=result.link)]])
                if result.link
                else None
            )
            return f"🔓 Unlock access to get <b>{safe_title}</b>, then try again.", markup
        if result.reason is BlockReason.NOT_MEMBER:
            markup = (
                InlineKeyboardMarkup([[InlineKeyboardButton("📢 Join channel", url=result.link)]])
                if result.link
                else None
            )
            return "📢 Join our channel first, then tap the link again.", markup
        if result.reason is BlockReason.UNAVAILABLE:
            return f"😕 No clips are stored for <b>{safe_title}</b> yet.", None
        if result.reason is BlockReason.NO_ROOMS:
            return "🚧 Delivery is unavailable right now. The admins have been notified.", None
        return "🚦 All delivery rooms are busy. Please retry in a minute.", None

    return "❌ Delivery failed. Please try again.", None


def related_keyboard(
    entry: CatalogEntry, catalog: list[CatalogEntry], bot_username: str | None
) -> InlineKeyboardMarkup:
    rows = [[InlineKeyboardButton("📥 Get clips", url=deep_link(bot_username, entry.title))]]
    for other in related(entry, catalog):
        rows.append([InlineKeyboardButton(f"🎬 {other.title}", callback_data=f"rel:{other.id}")])
    return InlineKeyboardMarkup(rows)


def suggestions_keyboard(entries: tuple[CatalogEntry, ...]) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(f"🎬 {entry.title}", callback_data=f"pick:{entry.id}")]
        for entry in entries
    ]
    rows.append([InlineKeyboardButton("❌ None of these", callback_data="pick:none")])
    return InlineKeyboardMarkup(rows)


def explorer_keyboard(
    entries: list[CatalogEntry], page: int, total: int
) -> InlineKeyboardMarkup:
    rows = [
        [
            InlineKeyboardButton(
                f"🎬 {entry.title} ({entry.clip_count})", callback_data=f"pick:{entry.id}"
            )
        ]
        for entry in entries
    ]
    nav: list[InlineKeyboardButton] = []
    if page > 0:
        nav.append(InlineKeyboardButton("⬅️ Prev", callback_data=f"page:{page - 1}"))
    if (page + 1) * EXPLORER_PAGE_SIZE < total:
        nav.append(InlineKeyboardButton("Next ➡️", callback_data=f"page:{page + 1}"))
    if nav:
        rows.append(nav)
    return InlineKeyboardMarkup(rows)


def media_from_message(message: Any) -> MediaRef | None:
    """Extract the stored file reference from an ingested channel post."""

    caption = message.caption or ""
    if message.video:
        return MediaRef(reference_id=message.video.file_id, kind="video", caption=caption)
    if message.photo:
        return MediaRef(reference_id=message.photo[-1].file_id, kind="photo", caption=caption)
    if message.animation:
        return MediaRef(
            reference_id=message.animation.file_id, kind="animation", caption=caption
        )
    if message.audio:
        return MediaRef(reference_id=message.audio.file_id, kind="audio", caption=caption)
    if message.document:
        return MediaRef(
            reference_id=message.document.file_id, kind="document", caption=caption
        )
    return None


def origin_title(message: Any) -> str | None:
    """Return the title of the channel or chat a post was forwarded from."""

    origin = getattr(message, "forward_origin", None)
    if origin is None:
        return None
    chat = getattr(origin, "chat", None) or getattr(origin, "sender_chat", None)
    if chat is None:
        return None
    return chat.title


def _user_label(update: Update) -> str:
    user = update.effective_user
    if user is None:
        return "unknown"
    return describe_user(user.id, user.username, user.full_name)


async def _maintenance_blocked(update: Update, services: BotServices) -> bool:
    user = update.effective_user
    if not services.state.maintenance or services.settings.is_admin(user.id if user else None):
        return False
    message = update.effective_message
    if message is not None:
        await message.reply_text("🛠 The bot is under maintenance. Please come back later.")
    return True


async def present_match(message: Message, services: BotServices, entry: CatalogEntry) -> None:
    """Reply with a resolved title, its deep link and related titles."""

    catalog = await services.catalog.load_entries()
    text = (
        f"🎬 <b>{html.escape(entry.title)}</b>\n"
        f"📦 {entry.clip_count} clips\n\nTap below to get them in private."
    )
    markup = related_keyboard(entry, catalog, services.settings.bot_username)
    if entry.thumbnail:
        await message.reply_photo(
            photo=entry.thumbnail, caption=text, parse_mode=ParseMode.HTML, reply_markup=markup
        )
    else:
        await message.reply_text(text, parse_mode=ParseMode.HTML, reply_markup=markup)


async def send_explorer(message: Message, services: BotServices, page: int, *, edit: bool) -> None:
    total = await services.catalog.count()
    entries = await services.catalog.page(page, EXPLORER_PAGE_SIZE)
    if not entries:
        await message.reply_text("📭 The catalog is empty.")
        return
    pages = max((total + EXPLORER_PAGE_SIZE - 1) // EXPLORER_PAGE_SIZE, 1)
    text = f"🎞 <b>Catalog</b> page {page + 1}/{pages}"
    markup = explorer_keyboard(entries, page, total)
    if edit:
        await message.edit_text(text, parse_mode=ParseMode.HTML, reply_markup=markup)
    else:
        await message.reply_text(text, parse_mode=ParseMode.HTML, reply_markup=markup)


async def on_group_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    message = update.effective_message
    user = update.effective_user
    if message is None or user is None or not message.text:
        return
    if await _maintenance_blocked(update, services):
        return

    text = message.text.strip()
    if text.lower() in EXPLORER_KEYWORDS:
        await send_explorer(message, services, 0, edit=False)
        return

    query = clean_title(text)
    if len(query) < 2:
        return

    services.state.record_search()
    new_badge = await services.users.record_search(user.id)
    outcome = resolve(query, await services.catalog.load_entries())

    if isinstance(outcome, SingleMatch):
        await present_match(message, services, outcome.entry)
    elif isinstance(outcome, Suggestions):
        await message.reply_text(
            "🤔 Did you mean one of these?", reply_markup=suggestions_keyboard(outcome.entries)
        )
    else:
        await message.reply_text(
            f"😕 Nothing found for <b>{html.escape(query)}</b>. Check the spelling.",
            parse_mode=ParseMode.HTML,
        )
        await services.audit.emit(
            f"🔍 <b>Not found</b>: <code>{html.escape(query)}</code> by {_user_label(update)}"
        )

    if new_badge:
        await message.reply_text(f"🏅 {user.first_name} unlocked {new_badge}")


async def on_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    query = update.callback_query
    if query is None or not query.data:
        return
    await query.answer()
    if await _maintenance_blocked(update, services):
        return

    action, _, value = query.data.partition(":")
    message = query.message
    if not isinstance(message, Message):
        return

    if action == "page" and value.isdigit():
        await send_explorer(message, services, int(value), edit=True)
        return
    if action == "pick" and value == "none":
        await message.edit_text("🔁 Try a different spelling of the title.")
        return
    if action in ("pick", "rel") and value.isdigit():
        entry = await services.catalog.get_by_id(int(value))
        if entry is None:
            await message.reply_text("😕 That title is no longer available.")
            return
        await present_match(message, services, entry)


async def deliver_title(
    message: Message,
    update: Update,
    services: BotServices,
    title: str,
    *,
    verified: bool = False,
) -> None:
    user = update.effective_user
    if user is None:
        return
    entry = await services.catalog.get_by_title(title)
    if entry is None:
        await message.reply_text("😕 That title could not be found.")
        return
    status = await message.reply_text(
        f"⏳ Preparing <b>{html.escape(entry.title)}</b>…", parse_mode=ParseMode.HTML
    )
    result = await services.delivery.deliver(
        user.id, entry, verified=verified, user_label=_user_label(update)
    )
    text, markup = render_delivery_result(result, entry.title)
    await status.edit_text(text, parse_mode=ParseMode.HTML, reply_markup=markup)


async def on_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    message = update.effective_message
    user = update.effective_user
    if message is None or user is None:
        return
    if await _maintenance_blocked(update, services):
        return

    payload = context.args[0] if context.args else ""
    if not payload:
        group = services.settings.group_link or "our group"
        await message.reply_text(
            f"👋 Hi {html.escape(user.first_name)}! Search for a movie in {html.escape(group)} "
            "and tap the link to receive its clips here.",
            parse_mode=ParseMode.HTML,
        )
        return

    if payload.startswith("token_"):
        if payload.removeprefix("token_") != str(user.id):
            await message.reply_text("⚠️ This access link belongs to someone else.")
            return
        expires_at = await services.tokens.grant(user.id)
        await message.reply_text(
            f"✅ Access granted until {expires_at:%Y-%m-%d %H:%M} UTC. Tap your movie link again."
        )
        await services.audit.emit(f"🎟 <b>Token</b> granted to {_user_label(update)}")
        return

    verified = payload.startswith("v_")
    title = decode_start_payload(payload.removeprefix("v_") if verified else payload)
    if not title:
        await message.reply_text("⚠️ This link is invalid or expired.")
        return
    await deliver_title(message, update, services, title, verified=verified)


async def on_channel_post(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Index media forwarded into the database channel."""

    services = get_services(context)
    message = update.channel_post
    if message is None:
        return
    media = media_from_message(message)
    if media is None:
        return
    source = origin_title(message)
    if not source:
        logger.info("Skipping channel post %s without a forward origin", message.message_id)
        return
    title = clean_title(source)
    if not title:
        return
    added = await services.catalog.upsert_media(title, media, extract_categories(message.caption))
    if added:
        await services.audit.emit(
            f"📥 <b>Indexed</b> {media.kind} for <b>{html.escape(title)}</b>"
        )


def admin_only(handler: Handler) -> Handler:
    @functools.wraps(handler)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        services = get_services(context)
        user = update.effective_user
        if not services.settings.is_admin(user.id if user else None):
            message = update.effective_message
            if message is not None:
                await message.reply_text("⛔ Admins only.")
            return
        await handler(update, context)

    return wrapper


async def _reply(update: Update, text: str) -> None:
    message = update.effective_message
    if message is not None:
        await message.reply_text(text, parse_mode=ParseMode.HTML)


@admin_only
async def cmd_addroom(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    if not context.args:
        await _reply(update, "Usage: /addroom &lt;chat_id&gt;")
        return
    room_id = context.args[0].strip()
    if await services.rooms.add_room(room_id):
        await _reply(update, f"✅ Room <code>{html.escape(room_id)}</code> added.")
    else:
        await _reply(update, f"ℹ️ Room <code>{html.escape(room_id)}</code> already exists.")


@admin_only
async def cmd_rooms(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    rooms = await services.rooms.list_rooms()
    if not rooms:
        await _reply(update, "📭 No rooms configured. Use /addroom.")
        return
    lines = ["🏠 <b>Rooms</b>"]
    for room in rooms:
        state = "🔴 busy" if room.busy else "🟢 free"
        used = f"{room.last_used_at:%Y-%m-%d %H:%M}" if room.last_used_at else "never"
        lines.append(
            f"<code>{html.escape(room.room_id)}</code> {state}, last used {used}, "
            f"{room.message_count} msgs"
        )
    await _reply(update, "\n".join(lines))


@admin_only
async def cmd_cleanroom(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    if not context.args:
        await _reply(update, "Usage: /cleanroom &lt;chat_id&gt;")
        return
    room_id = context.args[0].strip()
    if await services.delivery.clean_room(room_id):
        await _reply(update, f"🧹 Room <code>{html.escape(room_id)}</code> cleaned.")
    else:
        await _reply(update, f"😕 Unknown room <code>{html.escape(room_id)}</code>.")


@admin_only
async def cmd_restartrooms(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    freed = await services.rooms.force_release_all()
    await _reply(update, f"🔄 Freed {freed} busy room(s).")
    await services.audit.emit(f"🔄 <b>Rooms reset</b> by {_user_label(update)}: {freed} freed")


@admin_only
async def cmd_addcategory(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    raw = " ".join(context.args or [])
    title, _, categories = raw.partition("|")
    names = [name.strip() for name in categories.split(",") if name.strip()]
    if not title.strip() or not names:
        await _reply(update, "Usage: /addcategory &lt;title&gt; | tag1, tag2")
        return
    key = clean_title(title)
    if await services.catalog.add_categories(key, names):
        await _reply(update, f"🏷 Tagged <b>{html.escape(key)}</b> with {html.escape(', '.join(names))}.")
    else:
        await _reply(update, f"😕 Unknown title <b>{html.escape(key)}</b>.")


@admin_only
async def cmd_stats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    movies = await services.catalog.count()
    rooms = await services.rooms.count()
    users = await services.users.count()
    state = services.state
    await _reply(
        update,
        "📊 <b>Stats</b>\n"
        f"Movies: {movies}\nRooms: {rooms}\nUsers: {users}\n"
        f"Today ({state.day.isoformat()}): {state.searches} searches, "
        f"{state.deliveries} deliveries\n"
        f"Maintenance: {'on' if state.maintenance else 'off'}",
    )


@admin_only
async def cmd_maintenance(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    choice = (context.args[0].lower() if context.args else "")
    if choice not in ("on", "off"):
        await _reply(update, "Usage: /maintenance on|off")
        return
    services.state.maintenance = choice == "on"
    await _reply(update, f"🛠 Maintenance mode {choice}.")
    await services.audit.emit(f"🛠 <b>Maintenance {choice}</b> by {_user_label(update)}")


@admin_only
async def cmd_settings(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    mode = await services.access.mode()
    base = await services.store.get(SHORTLINK_BASE_KEY, None) or services.settings.shortlink_base_url
    api_key = await services.store.get(SHORTLINK_API_KEY, None) or services.settings.shortlink_api_key
    channel = await services.store.get(FORCE_SUB_KEY, None)
    masked = f"{api_key[:4]}…" if api_key else "not set"
    await _reply(
        update,
        "⚙️ <b>Settings</b>\n"
        f"Mode: {mode}\n"
        f"Shortlink: {html.escape(str(base)) if base else 'not set'}\n"
        f"API key: {html.escape(masked)}\n"
        f"Force subscribe: {html.escape(str(channel)) if channel else 'off'}",
    )


@admin_only
async def cmd_setmode(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    mode = context.args[0].lower() if context.args else ""
    if mode not in MODES:
        await _reply(update, f"Usage: /setmode {'|'.join(MODES)}")
        return
    await services.access.set_mode(mode)
    await _reply(update, f"✅ Mode set to {mode}.")


@admin_only
async def cmd_setshortlink(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    if not context.args or not context.args[0].startswith("http"):
        await _reply(update, "Usage: /setshortlink https://example.com/api")
        return
    await services.store.set(SHORTLINK_BASE_KEY, context.args[0])
    await _reply(update, "✅ Shortlink API URL saved.")


@admin_only
async def cmd_setapikey(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    if not context.args:
        await _reply(update, "Usage: /setapikey &lt;key&gt;")
        return
    await services.store.set(SHORTLINK_API_KEY, context.args[0])
    await _reply(update, "✅ Shortlink API key saved.")


@admin_only
async def cmd_setforcesub(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    if not context.args:
        await _reply(update, "Usage: /setforcesub @channel")
        return
    await services.store.set(FORCE_SUB_KEY, context.args[0])
    await _reply(update, f"✅ Force subscribe set to {html.escape(context.args[0])}.")


@admin_only
async def cmd_unsetforcesub(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    await services.store.delete(FORCE_SUB_KEY)
    await _reply(update, "✅ Force subscribe disabled.")


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _reply(
        update,
        "🎬 <b>How it works</b>\n"
        "1. Type a movie name in the group.\n"
        "2. Tap <i>Get clips</i> to open me in private.\n"
        "3. Join the one-time link I send you within 2 hours.\n\n"
        "Type <code>list</code> in the group to browse the catalog.\n"
        "/top shows trending titles, /myprofile shows your badges.",
    )


async def cmd_top(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    if await _maintenance_blocked(update, services):
        return
    entries = await services.catalog.trending(5)
    if not entries:
        await _reply(update, "📭 Nothing trending yet.")
        return
    lines = ["🔥 <b>Trending</b>"]
    for index, entry in enumerate(entries, start=1):
        lines.append(f"{index}. {html.escape(entry.title)} ({entry.popularity} deliveries)")
    await _reply(update, "\n".join(lines))


async def cmd_myprofile(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = get_services(context)
    user = update.effective_user
    if user is None:
        return
    profile = await services.users.profile(user.id)
    badges = ", ".join(profile.badges) if profile.badges else "none yet"
    await _reply(
        update,
        f"👤 <b>{html.escape(user.full_name)}</b> {profile.icon}\n"
        f"Searches: {profile.search_count}\nDownloads: {profile.download_count}\n"
        f"Badges: {html.escape(badges)}",
    )


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing %r", update, exc_info=context.error)


ADMIN_COMMANDS: dict[str, Handler] = {
    "addroom": cmd_addroom,
    "rooms": cmd_rooms,
    "cleanroom": cmd_cleanroom,
    "restartrooms": cmd_restartrooms,
    "addcategory": cmd_addcategory,
    "stats": cmd_stats,
    "maintenance": cmd_maintenance,
    "settings": cmd_settings,
    "setmode": cmd_setmode,
    "setshortlink": cmd_setshortlink,
    "setapikey": cmd_setapikey,
    "setforcesub": cmd_setforcesub,
    "unsetforcesub": cmd_unsetforcesub,
}


def register_handlers(application: Application, services: BotServices) -> None:
    """Attach every handler and the shared services to ``application``."""

    application.bot_data[SERVICES_KEY] = services
    settings = services.settings

    application.add_handler(CommandHandler("start", on_start, filters=filters.ChatType.PRIVATE))
    application.add_handler(CommandHandler("help", cmd_help))
    application.add_handler(CommandHandler("top", cmd_top))
    application.add_handler(CommandHandler("myprofile", cmd_myprofile))
    for name, handler in ADMIN_COMMANDS.items():
        application.add_handler(CommandHandler(name, handler))

    if settings.db_channel_id is not None:
        application.add_handler(
            MessageHandler(
                filters.UpdateType.CHANNEL_POST & filters.Chat(chat_id=settings.db_channel_id),
                on_channel_post,
            )
        )

    group_filter = filters.TEXT & ~filters.COMMAND & filters.ChatType.GROUPS
    if settings.group_id is not None:
        group_filter = group_filter & filters.Chat(chat_id=settings.group_id)
    application.add_handler(MessageHandler(group_filter, on_group_text))
    application.add_handler(CallbackQueryHandler(on_callback))
    application.add_error_handler(on_error)
