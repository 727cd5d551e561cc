import asyncio

import pytest

from errors import DownloadFailed, OCRFailure, RoleAssignmentFailed, StoreUnavailable
from models import ExtractedText, OutcomeKind, RankTier, VerificationRecord
from ranks import RankTable
from verification import (
    ACTION_ERROR,
    ACTION_OVERRIDE,
    ACTION_REJECTED,
    ACTION_VERIFIED,
    AttachmentRef,
    RankVerifier,
    Submission,
)

TABLE = RankTable([
    RankTier("Bronze", 10, 29, "200"),
    RankTier("Silver", 30, 59, "300"),
    RankTier("Gold", 60, 99, "400"),
])

SILVER_42 = "Profile\nLevel Progress 42\nRank: Silver"
GOLD_75 = "Profile\nLevel Progress 75\nRank: Gold"
BRONZE_15 = "Profile\nLevel Progress 15\nRank: Bronze"
MAIN_MENU = "8 Ball Pool by Miniclip\nPlay Special\nLevel 90"


class FakeOCR:
    """Keyed by URL: the fake downloader hands the URL through as the image bytes."""

    def __init__(self, pages: dict) -> None:
        self.pages = pages

    async def extract_text(self, image_bytes: bytes) -> ExtractedText:
        page = self.pages[image_bytes.decode()]
        if isinstance(page, Exception):
            raise page
        # yield so concurrent submissions interleave
        await asyncio.sleep(0)
        return ExtractedText(page, 90.0)


def make_download(broken: set | None = None):
    broken = broken or set()

    async def download(url: str) -> bytes:
        if url in broken:
            raise DownloadFailed("Failed to download image: HTTP 404")
        return url.encode()

    return download


class FakeStore:
    def __init__(self, records: dict | None = None, fail_on: str | None = None) -> None:
        self.records = dict(records or {})
        self.actions: list[dict] = []
        self.fail_on = fail_on

    def _check(self, op: str) -> None:
        if self.fail_on == op:
            raise StoreUnavailable("database is locked")

    async def get_verification(self, discord_id):
        self._check("get")
        return self.records.get(discord_id)

    async def upsert_verification(self, record):
        self._check("upsert")
        self.records[record.user_id] = record
        return record

    async def log_action(self, action_type, **fields):
        self._check("log")
        self.actions.append({"action_type": action_type, **fields})


class FakeRoles:
    def __init__(self, fail: bool = False) -> None:
        self.assigned: list[tuple[str, str]] = []
        self.fail = fail

    async def assign(self, user_id, tier):
        if self.fail:
            raise RoleAssignmentFailed("Missing Permissions")
        self.assigned.append((user_id, tier.rank_name))


class FakeNotifier:
    def __init__(self) -> None:
        self.outcomes: list[tuple[str, object]] = []
        self.errors: list[str] = []

    async def notify(self, user_id, outcome):
        self.outcomes.append((user_id, outcome))

    async def notify_error(self, user_id):
        self.errors.append(user_id)


class Harness:
    def __init__(self, pages: dict, store: FakeStore | None = None, roles: FakeRoles | None = None, broken: set | None = None) -> None:
        self.store = store or FakeStore()
        self.roles = roles or FakeRoles()
        self.notifier = FakeNotifier()
        self.deleted_sources = 0
        self.verifier = RankVerifier(
            TABLE,
            ocr=FakeOCR(pages),
            store=self.store,
            roles=self.roles,
            notifier=self.notifier,
            download=make_download(broken),
        )

    def submission(self, *urls: str, user_id: str = "42", username: str = "player") -> Submission:
        async def delete_source() -> None:
            self.deleted_sources += 1

        return Submission(
            user_id=user_id,
            username=username,
            attachments=[AttachmentRef(url, filename=url.rsplit("/", 1)[-1]) for url in urls],
            delete_source=delete_source,
        )

    def run(self, *urls: str, **kwargs):
        return asyncio.run(self.verifier.process(self.submission(*urls, **kwargs)))


def test_first_silver_screenshot_is_verified() -> None:
    h = Harness({"https://cdn/a.png": SILVER_42})

    report = h.run("https://cdn/a.png")

    assert report.outcome.kind is OutcomeKind.ACCEPT
    assert report.outcome.level == 42
    assert h.roles.assigned == [("42", "Silver")]
    record = h.store.records["42"]
    assert (record.rank_name, record.level_detected, record.role_id_assigned) == ("Silver", 42, "300")
    assert h.store.actions[-1]["action_type"] == ACTION_VERIFIED
    assert h.notifier.outcomes[0][1].kind is OutcomeKind.ACCEPT
    assert h.deleted_sources == 1


def test_menu_screenshot_poisons_the_batch() -> None:
    h = Harness({"https://cdn/a.png": GOLD_75, "https://cdn/b.png": MAIN_MENU})

    report = h.run("https://cdn/a.png", "https://cdn/b.png")

    assert report.outcome.kind is OutcomeKind.REJECT_INVALID
    assert h.roles.assigned == []
    assert h.store.records == {}
    assert h.store.actions[-1]["action_type"] == ACTION_REJECTED
    assert h.store.actions[-1]["success"] is False
    assert h.deleted_sources == 1


def test_lower_rank_than_stored_is_rejected() -> None:
    prior = VerificationRecord(user_id="42", rank_name="Gold", level_detected=70, role_id_assigned="400")
    h = Harness({"https://cdn/a.png": BRONZE_15}, store=FakeStore({"42": prior}))

    report = h.run("https://cdn/a.png")

    assert report.outcome.kind is OutcomeKind.REJECT_NO_UPGRADE
    assert report.outcome.prior_rank_name == "Gold"
    assert h.store.records["42"] is prior
    assert h.roles.assigned == []


def test_best_screenshot_of_many_wins() -> None:
    h = Harness({"https://cdn/a.png": "Profile\nRank: Silvr", "https://cdn/b.png": GOLD_75})

    report = h.run("https://cdn/a.png", "https://cdn/b.png")

    assert report.outcome.rank.rank_name == "Gold"
    assert len(report.results) == 2


def test_message_without_images_is_ignored() -> None:
    h = Harness({})
    sub = Submission(
        user_id="42",
        username="player",
        attachments=[AttachmentRef("https://cdn/notes.txt", filename="notes.txt")],
    )

    assert asyncio.run(h.verifier.process(sub)) is None
    assert h.store.actions == []
    assert h.notifier.outcomes == []


def test_one_broken_attachment_does_not_sink_the_rest() -> None:
    h = Harness(
        {"https://cdn/a.png": SILVER_42, "https://cdn/c.png": OCRFailure("Bad image")},
        broken={"https://cdn/b.png"},
    )

    report = h.run("https://cdn/a.png", "https://cdn/b.png", "https://cdn/c.png")

    assert report.outcome.accepted
    assert report.failed_attachments == 2
    assert len(report.results) == 1


def test_all_attachments_failing_reports_an_error() -> None:
    h = Harness({}, broken={"https://cdn/a.png"})

    report = h.run("https://cdn/a.png")

    assert report.failed
    assert report.failed_attachments == 1
    assert h.notifier.errors == ["42"]
    assert h.notifier.outcomes == []
    assert h.store.actions[-1]["action_type"] == ACTION_ERROR
    # kept for a retry
    assert h.deleted_sources == 0


def test_role_failure_keeps_the_store_untouched() -> None:
    h = Harness({"https://cdn/a.png": SILVER_42}, roles=FakeRoles(fail=True))

    report = h.run("https://cdn/a.png")

    assert report.failed
    assert "Missing Permissions" in report.error
    assert h.store.records == {}
    assert h.notifier.errors == ["42"]
    assert h.deleted_sources == 0


def test_store_outage_is_reported_not_raised() -> None:
    h = Harness({"https://cdn/a.png": SILVER_42}, store=FakeStore(fail_on="get"))

    report = h.run("https://cdn/a.png")

    assert report.failed
    assert h.roles.assigned == []
    assert h.notifier.errors == ["42"]


def test_same_user_submissions_are_serialized() -> None:
    h = Harness({"https://cdn/gold.png": GOLD_75, "https://cdn/bronze.png": BRONZE_15})

    async def both():
        return await asyncio.gather(
            h.verifier.process(h.submission("https://cdn/gold.png")),
            h.verifier.process(h.submission("https://cdn/bronze.png")),
        )

    first, second = asyncio.run(both())

    assert first.outcome.kind is OutcomeKind.ACCEPT
    assert second.outcome.kind is OutcomeKind.REJECT_NO_UPGRADE
    assert h.store.records["42"].rank_name == "Gold"
    assert h.roles.assigned == [("42", "Gold")]


def test_different_users_do_not_block_each_other() -> None:
    h = Harness({"https://cdn/gold.png": GOLD_75, "https://cdn/bronze.png": BRONZE_15})

    async def both():
        return await asyncio.gather(
            h.verifier.process(h.submission("https://cdn/gold.png", user_id="1")),
            h.verifier.process(h.submission("https://cdn/bronze.png", user_id="2")),
        )

    first, second = asyncio.run(both())

    assert first.outcome.accepted and second.outcome.accepted
    assert h.store.records["2"].rank_name == "Bronze"


def test_override_can_lower_a_rank() -> None:
    prior = VerificationRecord(user_id="42", rank_name="Gold", level_detected=70, role_id_assigned="400")
    h = Harness({}, store=FakeStore({"42": prior}))

    record = asyncio.run(h.verifier.apply_override("42", "player", TABLE.by_name("Bronze")))

    assert record.rank_name == "Bronze"
    assert record.level_detected == 10
    assert h.roles.assigned == [("42", "Bronze")]
    assert h.store.actions[-1]["action_type"] == ACTION_OVERRIDE


def test_override_rejects_level_outside_tier() -> None:
    h = Harness({})
    with pytest.raises(ValueError):
        asyncio.run(h.verifier.apply_override("42", "player", TABLE.by_name("Silver"), level=75))
    assert h.roles.assigned == []


def test_attachment_image_detection() -> None:
    assert AttachmentRef("https://cdn/x/shot.PNG").is_image
    assert AttachmentRef("https://cdn/x/shot.jpeg?ex=1&is=2").is_image
    assert AttachmentRef("https://cdn/x/blob", content_type="image/webp").is_image
    assert not AttachmentRef("https://cdn/x/clip.mp4", filename="clip.mp4").is_image
    assert not AttachmentRef("https://cdn/x/readme.txt?x=.png").is_image


def test_history_outage_after_accept_still_answers_the_user() -> None:
    h = Harness({"https://cdn/a.png": SILVER_42}, store=FakeStore(fail_on="log"))

    report = h.run("https://cdn/a.png")

    assert not report.failed
    assert report.outcome.accepted
    assert h.store.records["42"].rank_name == "Silver"
    assert h.notifier.outcomes[0][1].kind is OutcomeKind.ACCEPT
    assert h.notifier.errors == []
    assert h.deleted_sources == 1


def test_blurry_resubmission_keeps_the_stored_level() -> None:
    prior = VerificationRecord(user_id="42", rank_name="Silver", level_detected=55, role_id_assigned="300")
    h = Harness({"https://cdn/a.png": "Profile\nRank: Silver"}, store=FakeStore({"42": prior}))

    report = h.run("https://cdn/a.png")

    assert report.outcome.accepted
    assert h.store.records["42"].level_detected == 55


def test_user_locks_are_released_after_processing() -> None:
    h = Harness({"https://cdn/gold.png": GOLD_75, "https://cdn/bronze.png": BRONZE_15})

    async def both():
        await asyncio.gather(
            h.verifier.process(h.submission("https://cdn/gold.png")),
            h.verifier.process(h.submission("https://cdn/bronze.png")),
            h.verifier.process(h.submission("https://cdn/bronze.png", user_id="7")),
        )

    asyncio.run(both())
    asyncio.run(h.verifier.apply_override("9", "other", TABLE.by_name("Gold")))

    assert h.verifier._user_locks == {}
    assert not h.verifier._lock_users
