"""Handler helpers and chat flows driven with lightweight fake updates."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from types import SimpleNamespace

import httpx
import pytest
from telegram import Bot

from app.config import Settings
from app.handlers import (
    SERVICES_KEY,
    cmd_addroom,
    deep_link,
    explorer_keyboard,
    media_from_message,
    on_channel_post,
    on_group_text,
    on_start,
    origin_title,
    related_keyboard,
    render_delivery_result,
    suggestions_keyboard,
)
from app.main import build_services
from app.models import CatalogEntry, MediaRef
from app.services.delivery import Blocked, BlockReason, Delivered, Failed


class FakeMessage:
    def __init__(self, text: str | None = None, **attrs) -> None:
        self.text = text
        self.replies: list[tuple[str, dict]] = []
        self.edits: list[tuple[str, dict]] = []
        for name in ("video", "photo", "animation", "audio", "document", "caption"):
            setattr(self, name, None)
        self.forward_origin = None
        self.message_id = 1
        for name, value in attrs.items():
            setattr(self, name, value)

    async def reply_text(self, text: str, **kwargs) -> "FakeMessage":
        self.replies.append((text, kwargs))
        return self

    async def reply_photo(self, photo: str, caption: str, **kwargs) -> "FakeMessage":
        self.replies.append((caption, {"photo": photo, **kwargs}))
        return self

    async def edit_text(self, text: str, **kwargs) -> "FakeMessage":
        self.edits.append((text, kwargs))
        return self


def user(user_id: int = 42) -> SimpleNamespace:
    return SimpleNamespace(
        id=user_id, first_name="Asha", username="asha", full_name="Asha Raman"
    )


def make_update(message: FakeMessage, sender: SimpleNamespace | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        effective_message=message,
        effective_user=sender,
        channel_post=None,
        callback_query=None,
    )


def make_context(services, *args: str) -> SimpleNamespace:
    return SimpleNamespace(
        application=SimpleNamespace(bot_data={SERVICES_KEY: services}),
        args=list(args),
    )


@pytest.fixture
def bot_services(open_database):
    @asynccontextmanager
    async def _open():
        async with open_database() as database, httpx.AsyncClient() as client:
            config = Settings(_env_file=None, BOT_USERNAME="@clipbot", ADMIN_IDS="1")
            services, _ = build_services(config, database, Bot("123456:TEST-TOKEN"), client)
            yield services

    return _open


def entry(entry_id: int, title: str, clips: int = 1) -> CatalogEntry:
    return CatalogEntry(
        id=entry_id,
        title=title,
        media_items=[MediaRef(reference_id=f"{title}{i}", kind="video") for i in range(clips)],
    )


def test_render_delivered_result_links_the_invite() -> None:
    result = Delivered(
        invite_url="https://t.me/+abc",
        clip_count=4,
        room_id="-1001",
        expires_at=datetime(2026, 1, 1),
        new_badge="✂️ Pro Cutter",
    )

    text, markup = render_delivery_result(result, "leo <2>")

    assert "<b>leo &lt;2&gt;</b>" in text
    assert "4 clips" in text
    assert "Pro Cutter" in text
    assert markup is not None
    assert markup.inline_keyboard[0][0].url == "https://t.me/+abc"


@pytest.mark.parametrize(
    ("result", "fragment", "has_button"),
    [
        (Blocked(BlockReason.BUSY), "still being prepared", False),
        (Blocked(BlockReason.GATED, "https://sho.rt/x"), "Unlock access", True),
        (Blocked(BlockReason.NOT_MEMBER, "https://t.me/ch"), "Join our channel", True),
        (Blocked(BlockReason.UNAVAILABLE), "No clips", False),
        (Blocked(BlockReason.NO_ROOMS), "admins have been notified", False),
        (Blocked(BlockReason.ROOMS_EXHAUSTED), "rooms are busy", False),
        (Failed("boom"), "Delivery failed", False),
    ],
)
def test_render_blocked_and_failed(result, fragment: str, has_button: bool) -> None:
    text, markup = render_delivery_result(result, "leo")

    assert fragment in text
    assert (markup is not None) is has_button


def test_keyboards() -> None:
    picks = suggestions_keyboard((entry(3, "master"), entry(4, "vijai")))
    assert [row[0].callback_data for row in picks.inline_keyboard] == [
        "pick:3",
        "pick:4",
        "pick:none",
    ]

    page = [entry(index, f"title {index}") for index in range(10)]
    first = explorer_keyboard(page, 0, 25)
    assert [button.callback_data for button in first.inline_keyboard[-1]] == ["page:1"]
    last = explorer_keyboard(page[:5], 2, 25)
    assert [button.callback_data for button in last.inline_keyboard[-1]] == ["page:1"]
    assert last.inline_keyboard[-1][0].text == "⬅️ Prev"

    related = related_keyboard(entry(1, "leo"), [entry(1, "leo")], "clipbot")
    assert related.inline_keyboard[0][0].url == "https://t.me/clipbot?start=bGVv"
    assert deep_link("clipbot", "leo") == "https://t.me/clipbot?start=bGVv"


def test_media_extraction_prefers_video_and_largest_photo() -> None:
    both = FakeMessage(
        video=SimpleNamespace(file_id="vid"),
        photo=[SimpleNamespace(file_id="small"), SimpleNamespace(file_id="large")],
        caption="#action",
    )
    photo_only = FakeMessage(
        photo=[SimpleNamespace(file_id="small"), SimpleNamespace(file_id="large")]
    )

    assert media_from_message(both) == MediaRef(reference_id="vid", kind="video", caption="#action")
    assert media_from_message(photo_only) == MediaRef(reference_id="large", kind="photo")
    assert media_from_message(FakeMessage(text="hello")) is None


def test_origin_title_reads_forwarded_chat() -> None:
    forwarded = FakeMessage(
        forward_origin=SimpleNamespace(chat=SimpleNamespace(title="Leo 1080p"))
    )
    from_group = FakeMessage(
        forward_origin=SimpleNamespace(chat=None, sender_chat=SimpleNamespace(title="Jawan"))
    )
    from_user = FakeMessage(forward_origin=SimpleNamespace(sender_user=user()))

    assert origin_title(forwarded) == "Leo 1080p"
    assert origin_title(from_group) == "Jawan"
    assert origin_title(from_user) is None
    assert origin_title(FakeMessage()) is None


async def ingest(services, title: str, file_id: str, caption: str = "") -> None:
    post = FakeMessage(
        video=SimpleNamespace(file_id=file_id),
        caption=caption,
        forward_origin=SimpleNamespace(chat=SimpleNamespace(title=title)),
    )
    update = SimpleNamespace(channel_post=post)
    await on_channel_post(update, make_context(services))


@pytest.mark.anyio("asyncio")
async def test_channel_post_is_indexed_under_cleaned_title(bot_services) -> None:
    async with bot_services() as services:
        await ingest(services, "LEO 1080p", "vid-1", "#action hero: vijay")
        await ingest(services, "LEO 1080p", "vid-1")

        stored = await services.catalog.get_by_title("leo")
        assert stored is not None
        assert stored.clip_count == 1
        assert stored.categories == ["action", "vijay"]


@pytest.mark.anyio("asyncio")
async def test_group_search_presents_the_match(bot_services) -> None:
    async with bot_services() as services:
        await ingest(services, "Leo", "vid-1")
        message = FakeMessage(text="Leo")

        await on_group_text(make_update(message, user()), make_context(services))

        text, kwargs = message.replies[0]
        assert "<b>leo</b>" in text
        assert kwargs["reply_markup"].inline_keyboard[0][0].url.startswith(
            "https://t.me/clipbot?start="
        )
        assert "New Editor" in message.replies[1][0]
        assert (await services.catalog.get_by_title("leo")).popularity == 0
        assert services.state.searches == 1


@pytest.mark.anyio("asyncio")
async def test_group_search_reports_missing_titles(bot_services) -> None:
    async with bot_services() as services:
        await ingest(services, "Leo", "vid-1")
        message = FakeMessage(text="zzzz")

        await on_group_text(make_update(message, user()), make_context(services))

        assert message.replies[0][0].startswith("😕 Nothing found")


@pytest.mark.anyio("asyncio")
async def test_explorer_keyword_lists_the_catalog(bot_services) -> None:
    async with bot_services() as services:
        await ingest(services, "Leo", "vid-1")
        message = FakeMessage(text="List")

        await on_group_text(make_update(message, user()), make_context(services))

        (reply,) = message.replies
        assert "page 1/1" in reply[0]
        assert services.state.searches == 0


@pytest.mark.anyio("asyncio")
async def test_maintenance_mode_blocks_regular_users(bot_services) -> None:
    async with bot_services() as services:
        services.state.maintenance = True
        message = FakeMessage(text="leo")

        await on_group_text(make_update(message, user()), make_context(services))

        assert message.replies[0][0].startswith("🛠")
        assert services.state.searches == 0


@pytest.mark.anyio("asyncio")
async def test_admin_commands_require_admin(bot_services) -> None:
    async with bot_services() as services:
        rejected = FakeMessage(text="/addroom -1001")
        await cmd_addroom(make_update(rejected, user(42)), make_context(services, "-1001"))
        assert rejected.replies[0][0] == "⛔ Admins only."
        assert await services.rooms.count() == 0

        accepted = FakeMessage(text="/addroom -1001")
        await cmd_addroom(make_update(accepted, user(1)), make_context(services, "-1001"))
        assert accepted.replies[0][0].startswith("✅ Room")
        assert await services.rooms.count() == 1


@pytest.mark.anyio("asyncio")
async def test_start_token_payload_grants_access(bot_services) -> None:
    async with bot_services() as services:
        stolen = FakeMessage(text="/start token_7")
        await on_start(make_update(stolen, user(42)), make_context(services, "token_7"))
        assert "someone else" in stolen.replies[0][0]
        assert await services.tokens.has_valid(42) is False

        own = FakeMessage(text="/start token_42")
        await on_start(make_update(own, user(42)), make_context(services, "token_42"))
        assert own.replies[0][0].startswith("✅ Access granted")
        assert await services.tokens.has_valid(42) is True


@pytest.mark.anyio("asyncio")
async def test_start_with_title_reports_missing_rooms(bot_services) -> None:
    async with bot_services() as services:
        await ingest(services, "Leo", "vid-1")
        message = FakeMessage(text="/start bGVv")

        await on_start(make_update(message, user(42)), make_context(services, "bGVv"))

        assert message.replies[0][0].startswith("⏳ Preparing")
        assert "admins have been notified" in message.edits[0][0]


@pytest.mark.anyio("asyncio")
async def test_start_rejects_garbage_payload(bot_services) -> None:
    async with bot_services() as services:
        message = FakeMessage(text="/start _w")

        await on_start(make_update(message, user(42)), make_context(services, "_w"))

        assert "invalid" in message.replies[0][0]
