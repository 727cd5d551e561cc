"""Auto-deletion of the bot's DMs after a fixed time-to-live.

Every DM the bot sends is registered here with its own timer. The registry
holds at most one timer per message: scheduling the same message again
replaces the old timer. When a timer fires the entry is removed first and
the delete is attempted once; failures are logged, never retried.

The registry lives in memory only, so DMs from earlier runs are found by
`bulk_cleanup()` instead, which walks the DM channels Discord lets us see.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

import discord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60

# Discord JSON error codes
UNKNOWN_MESSAGE = 10008
CANNOT_DM_USER = 50007


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class TimerScheduler(Protocol):
    """'Run this later, cancellable' plus the clock it runs on."""

    def now(self) -> float:
        ...

    def call_later(self, delay: float, callback: Callable[[], Awaitable[None]]) -> TimerHandle:
        ...


class AsyncioTimerScheduler:
    """Timers on the running event loop; callbacks are spawned as tasks."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], Awaitable[None]]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), self._spawn, callback)

    def _spawn(self, callback: Callable[[], Awaitable[None]]) -> None:
        task = asyncio.ensure_future(callback())
        # keep a reference until done, the loop only holds weak ones
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


@dataclass
class ScheduledDeletion:
    message_id: int
    channel_id: int | None
    expire_at: float
    message: Any = field(repr=False, compare=False)
    timer: TimerHandle | None = field(default=None, repr=False, compare=False)


class DMCleanupService:
    def __init__(self, ttl: float = DEFAULT_TTL_SECONDS, scheduler: TimerScheduler | None = None):
        self.ttl = ttl
        self._scheduler = scheduler or AsyncioTimerScheduler()
        self._pending: dict[int, ScheduledDeletion] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self) -> list[ScheduledDeletion]:
        return list(self._pending.values())

    def is_scheduled(self, message_id: int) -> bool:
        return message_id in self._pending

    def schedule(self, message, ttl: float | None = None) -> ScheduledDeletion:
        """Delete `message` after ttl seconds (default: service ttl). Replaces any existing timer."""
        delay = self.ttl if ttl is None else ttl
        self.cancel(message.id)

        channel = getattr(message, "channel", None)
        entry = ScheduledDeletion(
            message_id=message.id,
            channel_id=getattr(channel, "id", None),
            expire_at=self._scheduler.now() + delay,
            message=message,
        )
        entry.timer = self._scheduler.call_later(delay, lambda: self._fire(entry))
        self._pending[message.id] = entry

        logger.debug(
            "DM %s scheduled for deletion in %.0fs (channel %s)",
            entry.message_id, delay, entry.channel_id,
        )
        return entry

    def cancel(self, message_id: int) -> bool:
        entry = self._pending.pop(message_id, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        return True

    async def _fire(self, entry: ScheduledDeletion) -> None:
        # A replaced or cancelled entry may still fire if its callback was already queued.
        if self._pending.get(entry.message_id) is not entry:
            return
        del self._pending[entry.message_id]
        if await self._delete(entry.message):
            logger.info("Scheduled DM %s deleted", entry.message_id)

    async def _delete(self, message) -> bool:
        try:
            await message.delete()
            return True
        except discord.NotFound:
            logger.debug("DM %s already gone", message.id)
            return False
        except discord.HTTPException as e:
            logger.warning("Failed to delete scheduled DM %s: %s", message.id, e)
            return False

    async def drain(self, fire: bool = False) -> int:
        """Empty the registry. With fire=True, delete every pending DM now; otherwise just drop the timers."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
        if fire:
            for entry in entries:
                await self._delete(entry.message)
        logger.info("DM cleanup drained %d pending deletion(s) (fire=%s)", len(entries), fire)
        return len(entries)

    async def bulk_cleanup(self, client, per_channel_limit: int = 100, delay: float = 0.1) -> int:
        """
        Best-effort sweep of every bot-authored DM we can reach.
        Discord has no "list my DM channels" call, so this covers cached DM
        channels plus a DM channel for each cached (non-bot) user.
        Returns the number of messages deleted.
        """
        if client.user is None:
            logger.warning("Client not ready, skipping DM cleanup")
            return 0
        bot_id = client.user.id

        logger.info("Starting cleanup of all bot DM messages...")
        channels = list(client.private_channels)
        users = [u for u in client.users if not u.bot]
        for user in users:
            try:
                channels.append(await user.create_dm())
            except discord.HTTPException as e:
                if e.code != CANNOT_DM_USER:
                    logger.debug("Failed to open DM channel for user %s: %s", user.id, e)

        deleted = 0
        errors = 0
        seen = set()
        for channel in channels:
            if channel.id in seen:
                continue
            seen.add(channel.id)
            try:
                own = [m async for m in channel.history(limit=per_channel_limit) if m.author.id == bot_id]
            except discord.HTTPException as e:
                logger.debug("Failed to fetch DM history for channel %s: %s", channel.id, e)
                continue

            for msg in own:
                self.cancel(msg.id)
                try:
                    await msg.delete()
                    deleted += 1
                except discord.NotFound:
                    continue
                except discord.HTTPException as e:
                    if e.code != UNKNOWN_MESSAGE:
                        errors += 1
                        logger.debug("Failed to delete bot DM %s: %s", msg.id, e)
                    continue
                # stay under the DM delete rate limit
                await asyncio.sleep(delay)

        logger.info(
            "DM cleanup completed: deleted=%d errors=%d channels=%d users=%d",
            deleted, errors, len(seen), len(users),
        )
        return deleted
