"""Thin wrapper around the python-telegram-bot ``Bot`` used by the core."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Sequence

from telegram import (
    Bot,
    InputMediaAudio,
    InputMediaDocument,
    InputMediaPhoto,
    InputMediaVideo,
    LinkPreviewOptions,
)
from telegram.constants import ChatMemberStatus, ParseMode
from telegram.error import TelegramError

from ..models import MediaRef

logger = logging.getLogger(__name__)

MEMBER_STATUSES = {
    ChatMemberStatus.MEMBER,
    ChatMemberStatus.ADMINISTRATOR,
    ChatMemberStatus.OWNER,
}


def chat_ref(value: int | str) -> int | str:
    """Return numeric chat ids as ``int`` and leave ``@usernames`` untouched."""

    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    return text


class TelegramGateway:
    """Messaging operations the delivery core relies on."""

    def __init__(
        self,
        bot: Bot,
        *,
        log_channel_id: int | None = None,
        pause_seconds: float = 0.5,
    ) -> None:
        self._bot = bot
        self._log_channel_id = log_channel_id
        self._pause_seconds = pause_seconds

    @property
    def bot(self) -> Bot:
        return self._bot

    async def pause(self, factor: float = 1.0) -> None:
        """Space out consecutive API calls to stay under flood limits."""

        delay = self._pause_seconds * factor
        if delay > 0:
            await asyncio.sleep(delay)

    async def evict(self, room_id: str, user_id: str | int) -> None:
        """Remove a member without leaving them banned."""

        chat_id = chat_ref(room_id)
        await self._bot.ban_chat_member(chat_id, int(user_id))
        await self.pause()
        await self._bot.unban_chat_member(chat_id, int(user_id), only_if_banned=True)

    async def delete_messages(self, room_id: str, message_ids: Sequence[int]) -> None:
        await self._bot.delete_messages(chat_ref(room_id), list(message_ids))

    async def send_album(self, room_id: str, items: Sequence[MediaRef]) -> list[int]:
        """Send ``items`` as one media group and return the new message ids."""

        media = [
            self._input_media(item, caption=item.caption if index == 0 else None)
            for index, item in enumerate(items)
        ]
        sent = await self._bot.send_media_group(chat_ref(room_id), media)
        return [message.message_id for message in sent]

    async def send_item(self, room_id: str, item: MediaRef) -> int:
        """Send a single media item with its own method."""

        chat_id = chat_ref(room_id)
        caption = item.caption or None
        if item.kind == "video":
            message = await self._bot.send_video(chat_id, item.reference_id, caption=caption)
        elif item.kind == "photo":
            message = await self._bot.send_photo(chat_id, item.reference_id, caption=caption)
        elif item.kind == "document":
            message = await self._bot.send_document(
                chat_id, item.reference_id, caption=caption
            )
        elif item.kind == "audio":
            message = await self._bot.send_audio(chat_id, item.reference_id, caption=caption)
        elif item.kind == "animation":
            message = await self._bot.send_animation(
                chat_id, item.reference_id, caption=caption
            )
        else:
            raise ValueError(f"Unsupported media kind: {item.kind}")
        return message.message_id

    async def create_invite(
        self,
        room_id: str,
        *,
        expire_at: datetime,
        member_limit: int,
        name: str,
    ) -> str:
        link = await self._bot.create_chat_invite_link(
            chat_ref(room_id),
            expire_date=expire_at,
            member_limit=member_limit,
            name=name[:32],
        )
        return link.invite_link

    async def is_member(self, channel: str | int, user_id: int) -> bool:
        member = await self._bot.get_chat_member(chat_ref(channel), user_id)
        if member.status in MEMBER_STATUSES:
            return True
        return member.status == ChatMemberStatus.RESTRICTED and bool(
            getattr(member, "is_member", False)
        )

    async def join_link(self, channel: str | int) -> str:
        """Return a URL that lets a user join ``channel``."""

        text = str(channel).strip()
        if text.startswith("http"):
            return text
        fallback = f"https://t.me/{text.lstrip('@')}"
        try:
            chat = await self._bot.get_chat(chat_ref(text))
        except TelegramError as exc:
            logger.warning("Could not look up join link for %s: %s", text, exc)
            return fallback
        return chat.invite_link or fallback

    async def send_log(self, text: str) -> None:
        """Post an operator audit entry; failures are only logged."""

        if self._log_channel_id is None:
            return
        try:
            await self._bot.send_message(
                self._log_channel_id,
                text,
                parse_mode=ParseMode.HTML,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except TelegramError as exc:
            logger.warning("Failed to send to log channel: %s", exc)

    @staticmethod
    def _input_media(item: MediaRef, *, caption: str | None):
        caption = caption or None
        if item.kind == "video":
            return InputMediaVideo(media=item.reference_id, caption=caption)
        if item.kind == "photo":
            return InputMediaPhoto(media=item.reference_id, caption=caption)
        if item.kind == "document":
            return InputMediaDocument(media=item.reference_id, caption=caption)
        if item.kind == "audio":
            return InputMediaAudio(media=item.reference_id, caption=caption)
        raise ValueError(f"Unsupported media kind: {item.kind}")
