"""Screenshot submission pipeline.

download -> OCR -> classify/match -> reconcile -> side effects

Collaborators (OCR, store, roles, DMs, download) are passed in; nothing here
reaches for a global client. Classification, matching and reconciliation are
pure functions from rank_matcher / reconcile.
"""
import asyncio
import logging
import os
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

import aiohttp

from errors import CollaboratorFailure, DownloadFailed
from models import ExtractedText, MatchResult, Outcome, OutcomeKind, RankTier, VerificationRecord
from rank_matcher import evaluate
from ranks import RankTable
from reconcile import reconcile

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")

# verification_history.action_type values
ACTION_VERIFIED = "verification_updated"
ACTION_REJECTED = "ocr_processed"
ACTION_OVERRIDE = "admin_override"
ACTION_ERROR = "error"


class OCRPort(Protocol):
    async def extract_text(self, image_bytes: bytes) -> ExtractedText:
        ...


class StorePort(Protocol):
    async def get_verification(self, discord_id: str) -> VerificationRecord | None:
        ...

    async def upsert_verification(self, record: VerificationRecord) -> VerificationRecord:
        ...

    async def log_action(self, action_type: str, **fields) -> None:
        ...


class RolePort(Protocol):
    async def assign(self, user_id: str, tier: RankTier) -> None:
        ...


class NotifierPort(Protocol):
    async def notify(self, user_id: str, outcome: Outcome):
        ...

    async def notify_error(self, user_id: str):
        ...


Downloader = Callable[[str], Awaitable[bytes]]


@dataclass(frozen=True)
class AttachmentRef:
    url: str
    filename: str = ""
    content_type: str | None = None

    @property
    def is_image(self) -> bool:
        path = self.url.split("?", 1)[0]
        ext = os.path.splitext(self.filename or path)[1].lower()
        return ext in ALLOWED_IMAGE_EXTENSIONS or (self.content_type or "").startswith("image/")


@dataclass
class Submission:
    user_id: str
    username: str
    attachments: list[AttachmentRef]
    # best-effort removal of the source message; must not raise
    delete_source: Callable[[], Awaitable[None]] | None = None

    @property
    def images(self) -> list[AttachmentRef]:
        return [a for a in self.attachments if a.is_image]


@dataclass(frozen=True)
class SubmissionReport:
    outcome: Outcome | None
    results: tuple[MatchResult, ...] = ()
    failed_attachments: int = 0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.outcome is None


async def download_image(url: str) -> bytes:
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15)) as s:
            async with s.get(url) as r:
                if r.status != 200:
                    raise DownloadFailed(f"Failed to download image: HTTP {r.status}")
                return await r.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise DownloadFailed(f"Failed to download image: {e}") from e


class RankVerifier:
    def __init__(
        self,
        table: RankTable,
        ocr: OCRPort,
        store: StorePort,
        roles: RolePort,
        notifier: NotifierPort,
        download: Downloader = download_image,
    ):
        self.table = table
        self._ocr = ocr
        self._store = store
        self._roles = roles
        self._notifier = notifier
        self._download = download
        # One submission at a time per user keeps read-decide-write in order.
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            # last holder or waiter out drops the lock
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._user_locks[user_id]

    async def _log_history(self, action_type: str, **fields) -> None:
        try:
            await self._store.log_action(action_type, **fields)
        except CollaboratorFailure as e:
            # history is an audit trail; losing one row must not change the user's answer
            logger.error("Failed to record %s for %s: %s", action_type, fields.get("discord_id"), e)

    async def process(self, submission: Submission) -> SubmissionReport | None:
        """Run one message's screenshots through the pipeline. None if it had no images."""
        images = submission.images
        if not images:
            logger.debug("No image attachments from %s, skipping message", submission.user_id)
            return None

        logger.info("Processing %d image(s) from %s (%s)", len(images), submission.username, submission.user_id)
        async with self._user_lock(submission.user_id):
            return await self._process_locked(submission, images)

    async def _process_attachment(self, attachment: AttachmentRef) -> MatchResult | None:
        try:
            image_bytes = await self._download(attachment.url)
            extracted = await self._ocr.extract_text(image_bytes)
        except CollaboratorFailure as e:
            logger.error("Attachment %s failed: %s", attachment.filename or attachment.url, e)
            return None
        return evaluate(extracted, self.table)

    async def _process_locked(self, submission: Submission, images: list[AttachmentRef]) -> SubmissionReport:
        per_attachment = await asyncio.gather(*(self._process_attachment(a) for a in images))
        results = tuple(r for r in per_attachment if r is not None)
        failed = len(per_attachment) - len(results)

        if not results:
            return await self._fail(submission, failed, "All attachments failed to process")

        try:
            prior = await self._store.get_verification(submission.user_id)
        except CollaboratorFailure as e:
            return await self._fail(submission, failed, str(e), results)

        outcome = reconcile(results, prior, self.table)
        logger.info("Submission from %s: %s", submission.user_id, outcome.kind.value)

        if outcome.kind is OutcomeKind.ACCEPT:
            try:
                await self._apply(submission, outcome)
            except CollaboratorFailure as e:
                return await self._fail(submission, failed, str(e), results)
        else:
            await self._record_rejection(submission, outcome)

        await self._notifier.notify(submission.user_id, outcome)
        await self._delete_source(submission)
        return SubmissionReport(outcome=outcome, results=results, failed_attachments=failed)

    async def _apply(self, submission: Submission, outcome: Outcome) -> None:
        rank = outcome.rank
        await self._roles.assign(submission.user_id, rank)
        await self._store.upsert_verification(VerificationRecord(
            user_id=submission.user_id,
            username=submission.username,
            rank_name=rank.rank_name,
            level_detected=outcome.level,
            role_id_assigned=rank.role_id,
        ))
        # role and record are committed; the history row is best effort from here
        await self._log_history(
            ACTION_VERIFIED,
            discord_id=submission.user_id,
            username=submission.username,
            success=True,
            rank_name=rank.rank_name,
            level_detected=outcome.level,
            role_id_assigned=rank.role_id,
        )

    async def _record_rejection(self, submission: Submission, outcome: Outcome) -> None:
        messages = {
            OutcomeKind.REJECT_INVALID: "Invalid image format - not a profile screenshot",
            OutcomeKind.REJECT_UNREADABLE: "OCR failed to extract rank information",
            OutcomeKind.REJECT_NO_UPGRADE: f"Already verified as {outcome.prior_rank_name}",
        }
        await self._log_history(
            ACTION_REJECTED,
            discord_id=submission.user_id,
            username=submission.username,
            success=False,
            rank_name=outcome.rank.rank_name if outcome.rank else None,
            level_detected=outcome.level,
            error_message=messages[outcome.kind],
        )

    async def _fail(
        self,
        submission: Submission,
        failed: int,
        error: str,
        results: tuple[MatchResult, ...] = (),
    ) -> SubmissionReport:
        logger.error("Verification failed for %s (%s): %s", submission.user_id, submission.username, error)
        await self._log_history(
            ACTION_ERROR,
            discord_id=submission.user_id,
            username=submission.username,
            success=False,
            error_message=error,
        )
        await self._notifier.notify_error(submission.user_id)
        # source message is kept so the user (or an admin) can retry
        return SubmissionReport(outcome=None, results=results, failed_attachments=failed, error=error)

    async def _delete_source(self, submission: Submission) -> None:
        if submission.delete_source is not None:
            await submission.delete_source()

    async def apply_override(self, user_id: str, username: str, tier: RankTier, level: int | None = None) -> VerificationRecord:
        """Admin /setrank: assign and store without the no-downgrade check."""
        level = tier.level_min if level is None else level
        if not tier.contains(level):
            raise ValueError(f"Level {level} is outside {tier.rank_name} [{tier.level_min}, {tier.level_max}]")
        async with self._user_lock(user_id):
            await self._roles.assign(user_id, tier)
            record = await self._store.upsert_verification(VerificationRecord(
                user_id=user_id,
                username=username,
                rank_name=tier.rank_name,
                level_detected=level,
                role_id_assigned=tier.role_id,
            ))
            await self._log_history(
                ACTION_OVERRIDE,
                discord_id=user_id,
                username=username,
                success=True,
                rank_name=tier.rank_name,
                level_detected=level,
                role_id_assigned=tier.role_id,
            )
        logger.info("Rank for %s set to %s by override", user_id, tier.rank_name)
        return record
