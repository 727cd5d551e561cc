from types import SimpleNamespace

import discord
import pytest


class FakeTimer:
    def __init__(self, when: float, callback) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler:
    """Timers that only fire when the test advances the clock."""

    def __init__(self) -> None:
        self.clock = 1000.0
        self.timers: list[FakeTimer] = []

    def now(self) -> float:
        return self.clock

    def call_later(self, delay, callback) -> FakeTimer:
        timer = FakeTimer(self.clock + delay, callback)
        self.timers.append(timer)
        return timer

    def live(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    async def advance(self, seconds: float) -> None:
        self.clock += seconds
        due = [t for t in self.timers if not t.cancelled and t.when <= self.clock]
        self.timers = [t for t in self.timers if t not in due]
        for timer in due:
            await timer.callback()


class FakeMessage:
    def __init__(self, message_id: int, author_id: int = 1, channel_id: int = 500, error: Exception | None = None) -> None:
        self.id = message_id
        self.author = SimpleNamespace(id=author_id)
        self.channel = SimpleNamespace(id=channel_id)
        self.error = error
        self.delete_calls = 0

    async def delete(self) -> None:
        self.delete_calls += 1
        if self.error is not None:
            raise self.error


def http_error(cls, status: int, code: int, text: str = "error"):
    response = SimpleNamespace(status=status, reason=text)
    return cls(response, {"code": code, "message": text})


def not_found():
    return http_error(discord.NotFound, 404, 10008, "Unknown Message")


@pytest.fixture
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()
