from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class RankTier:
    rank_name: str
    level_min: int
    level_max: int
    role_id: str

    def contains(self, level: int) -> bool:
        return self.level_min <= level <= self.level_max


@dataclass(frozen=True)
class ExtractedText:
    """What the OCR engine gave us for one image. confidence is 0-100."""
    raw_text: str
    confidence: float


@dataclass(frozen=True)
class MatchResult:
    """Classifier + matcher verdict for a single attachment."""
    rank: RankTier | None
    level_detected: int | None
    confidence: float
    is_profile_screen: bool
    method: str = "none"  # "level" | "name" | "none"

    @property
    def matched(self) -> bool:
        return self.is_profile_screen and self.rank is not None


@dataclass(frozen=True)
class VerificationRecord:
    user_id: str
    rank_name: str
    level_detected: int
    role_id_assigned: str
    username: str | None = None
    verified_at: int = 0
    updated_at: int = 0


class OutcomeKind(Enum):
    ACCEPT = "accept"
    REJECT_INVALID = "reject_invalid"
    REJECT_UNREADABLE = "reject_unreadable"
    REJECT_NO_UPGRADE = "reject_no_upgrade"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    rank: RankTier | None = None
    level: int | None = None
    confidence: float = 0.0
    # stored rank that blocked the submission (REJECT_NO_UPGRADE only)
    prior_rank_name: str | None = None

    @classmethod
    def accept(cls, rank: RankTier, level: int, confidence: float) -> "Outcome":
        return cls(OutcomeKind.ACCEPT, rank=rank, level=level, confidence=confidence)

    @classmethod
    def invalid(cls) -> "Outcome":
        return cls(OutcomeKind.REJECT_INVALID)

    @classmethod
    def unreadable(cls) -> "Outcome":
        return cls(OutcomeKind.REJECT_UNREADABLE)

    @classmethod
    def no_upgrade(cls, rank: RankTier, level: int, prior_rank_name: str) -> "Outcome":
        return cls(OutcomeKind.REJECT_NO_UPGRADE, rank=rank, level=level, prior_rank_name=prior_rank_name)

    @property
    def accepted(self) -> bool:
        return self.kind is OutcomeKind.ACCEPT
