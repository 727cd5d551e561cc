import asyncio

import discord

from conftest import FakeMessage, http_error
from dm_cleanup import DMCleanupService
from models import Outcome, RankTier
from notifications import (
    ERROR_TEXT,
    INVALID_FORMAT_TEXT,
    UNREADABLE_TEXT,
    DiscordNotifier,
    build_instructions_embed,
)

SILVER = RankTier("Silver", 30, 59, "300")
GOLD = RankTier("Gold", 60, 99, "400")


class FakeUser:
    def __init__(self, user_id: int, error: Exception | None = None) -> None:
        self.id = user_id
        self.error = error
        self.sent: list[dict] = []

    async def send(self, content=None, embed=None):
        if self.error is not None:
            raise self.error
        self.sent.append({"content": content, "embed": embed})
        return FakeMessage(1000 + len(self.sent), author_id=99)


class FakeClient:
    def __init__(self, *users: FakeUser) -> None:
        self.users = {u.id: u for u in users}

    def get_user(self, user_id: int):
        return self.users.get(user_id)

    async def fetch_user(self, user_id: int):
        raise http_error(discord.NotFound, 404, 10013, "Unknown User")


def _notifier(scheduler, *users):
    cleanup = DMCleanupService(ttl=1800, scheduler=scheduler)
    return DiscordNotifier(FakeClient(*users), cleanup), cleanup


def test_every_sent_dm_is_scheduled_for_deletion(scheduler) -> None:
    user = FakeUser(42)
    notifier, cleanup = _notifier(scheduler, user)

    message = asyncio.run(notifier.notify("42", Outcome.accept(SILVER, 42, 92.0)))

    assert cleanup.is_scheduled(message.id)
    embed = user.sent[0]["embed"]
    assert "Silver" in embed.description
    asyncio.run(scheduler.advance(1800))
    assert message.delete_calls == 1


def test_rejections_use_plain_text(scheduler) -> None:
    user = FakeUser(42)
    notifier, cleanup = _notifier(scheduler, user)

    asyncio.run(notifier.notify("42", Outcome.invalid()))
    asyncio.run(notifier.notify("42", Outcome.unreadable()))
    asyncio.run(notifier.notify("42", Outcome.no_upgrade(SILVER, 42, "Gold")))
    asyncio.run(notifier.notify_error("42"))

    texts = [s["content"] for s in user.sent]
    assert texts[:2] == [INVALID_FORMAT_TEXT, UNREADABLE_TEXT]
    assert "Gold" in texts[2] and "Silver" in texts[2]
    assert texts[3] == ERROR_TEXT
    assert len(cleanup) == 4


def test_closed_dms_are_not_an_error(scheduler) -> None:
    user = FakeUser(42, error=http_error(discord.Forbidden, 403, 50007, "Cannot send messages to this user"))
    notifier, cleanup = _notifier(scheduler, user)

    assert asyncio.run(notifier.notify_error("42")) is None
    assert len(cleanup) == 0


def test_unknown_user_is_not_an_error(scheduler) -> None:
    notifier, cleanup = _notifier(scheduler)
    assert asyncio.run(notifier.send_ephemeral("7", content="hi")) is None
    assert len(cleanup) == 0


def test_instructions_embed_shows_example_image_when_configured() -> None:
    assert build_instructions_embed().image.url is None
    assert build_instructions_embed("https://cdn/example.png").image.url == "https://cdn/example.png"
