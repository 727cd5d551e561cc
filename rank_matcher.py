"""Turn noisy OCR text into a rank tier + confidence.

Two ways in:

1. level path - a number next to a "Level" marker, looked up in the rank
   table by range. Structurally unambiguous, so it always takes precedence.
2. name path - fuzzy match of rank names against words in the text, only
   used when no level number resolves to a tier.

Confidence (0-100) mixes the OCR engine's own confidence with how strong the
textual match was.
"""
import logging
import re
from dataclasses import dataclass

from rapidfuzz import fuzz

from classifier import classify
from models import ExtractedText, MatchResult, RankTier
from ranks import RankTable

logger = logging.getLogger(__name__)

MIN_NAME_SIMILARITY = 80.0
# Rank-name hits that are not right after a "Rank" label are worth less.
UNANCHORED_WEIGHT = 0.9

OCR_WEIGHT = 0.4
MATCH_WEIGHT = 0.6

LEVEL_STRENGTH = 100.0

METHOD_LEVEL = "level"
METHOD_NAME = "name"

# "Level 42", "Level Progress 42", "evel: 42", "Lvl #42", "LV.42"
_LEVEL_RE = re.compile(
    r"\b(?:l?evel|lvl|lv)\.?\s*(?:progress)?\s*[:\-#]?\s*(\d[\dOoIl|]{0,3})(?![a-z0-9])",
    re.IGNORECASE,
)
_RANK_LABEL_RE = re.compile(r"\brank\s*[:\-]?\s*([a-z]+(?:\s+[a-z]+){0,2})", re.IGNORECASE)
_WORD_RE = re.compile(r"[a-z]+")

# digits OCR likes to read as letters
_DIGIT_FIXUPS = str.maketrans({"O": "0", "o": "0", "I": "1", "i": "1", "L": "1", "l": "1", "|": "1"})


@dataclass(frozen=True)
class RankMatch:
    rank: RankTier
    level: int | None
    confidence: float
    method: str


def combine_confidence(ocr_confidence: float, strength: float) -> float:
    ocr_confidence = min(max(float(ocr_confidence), 0.0), 100.0)
    value = OCR_WEIGHT * ocr_confidence + MATCH_WEIGHT * strength
    return round(min(max(value, 0.0), 100.0), 2)


def find_levels(raw_text: str) -> list[int]:
    """All level numbers next to a level marker, in reading order."""
    levels = []
    for m in _LEVEL_RE.finditer(raw_text or ""):
        token = m.group(1).translate(_DIGIT_FIXUPS)
        if token.isdigit():
            levels.append(int(token))
    return levels


def _match_by_level(raw_text: str, table: RankTable) -> tuple[RankTier, int] | None:
    for level in find_levels(raw_text):
        tier = table.for_level(level)
        if tier is not None:
            return tier, level
        logger.debug("Level %d is outside every rank range, ignoring", level)
    return None


def _best_name_score(words: list[str], name: str) -> float:
    target = name.lower()
    n = len(target.split())
    best = 0.0
    for i in range(len(words) - n + 1):
        window = " ".join(words[i:i + n])
        score = fuzz.ratio(window, target)
        if score > best:
            best = score
    return best


def _match_by_name(raw_text: str, table: RankTable) -> tuple[RankTier, float] | None:
    text = (raw_text or "").lower()
    words = _WORD_RE.findall(text)
    if not words:
        return None

    labelled = [_WORD_RE.findall(m.group(1).lower()) for m in _RANK_LABEL_RE.finditer(text)]

    best: tuple[float, int, RankTier] | None = None
    for tier in table:
        score = max(
            [_best_name_score(ws, tier.rank_name) for ws in labelled]
            + [_best_name_score(words, tier.rank_name) * UNANCHORED_WEIGHT]
        )
        # Equal scores go to the longer (more specific) name: "Grand Master" over "Master".
        key = (score, len(tier.rank_name))
        if best is None or key > best[:2]:
            best = (score, len(tier.rank_name), tier)

    if best is None or best[0] < MIN_NAME_SIMILARITY:
        return None
    return best[2], best[0]


def match_rank(raw_text: str, table: RankTable, ocr_confidence: float = 100.0) -> RankMatch | None:
    by_level = _match_by_level(raw_text, table)
    if by_level is not None:
        tier, level = by_level
        return RankMatch(tier, level, combine_confidence(ocr_confidence, LEVEL_STRENGTH), METHOD_LEVEL)

    by_name = _match_by_name(raw_text, table)
    if by_name is not None:
        tier, score = by_name
        return RankMatch(tier, None, combine_confidence(ocr_confidence, score), METHOD_NAME)

    return None


def evaluate(extracted: ExtractedText, table: RankTable) -> MatchResult:
    """Classify and match one attachment's OCR output."""
    if not classify(extracted.raw_text):
        return MatchResult(rank=None, level_detected=None, confidence=0.0, is_profile_screen=False)

    m = match_rank(extracted.raw_text, table, extracted.confidence)
    if m is None:
        logger.info("No rank matched from OCR text: %r", extracted.raw_text[:300])
        return MatchResult(rank=None, level_detected=None, confidence=0.0, is_profile_screen=True)

    logger.info(
        "Rank matched: %s (level=%s, confidence=%.1f, via %s)",
        m.rank.rank_name, m.level, m.confidence, m.method,
    )
    return MatchResult(
        rank=m.rank,
        level_detected=m.level,
        confidence=m.confidence,
        is_profile_screen=True,
        method=m.method,
    )
