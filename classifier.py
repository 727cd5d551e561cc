"""Profile-screen classifier.

Decides whether OCR text comes from the in-game *profile* screen (the one
showing level and rank) rather than the main menu or an event banner.

Rules are plain data. Disqualifying rules run first and win outright, so a
menu screenshot that happens to contain "Level 40" somewhere is still
rejected. After that, at least one qualifying rule must match: no evidence
means no profile.
"""
import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DISQUALIFYING = "disqualifying"
QUALIFYING = "qualifying"


@dataclass(frozen=True)
class ClassifierRule:
    name: str
    pattern: re.Pattern
    kind: str


def _rule(name: str, regex: str, kind: str) -> ClassifierRule:
    return ClassifierRule(name, re.compile(regex, re.IGNORECASE), kind)


PROFILE_RULES: tuple[ClassifierRule, ...] = (
    # Main menu / lobby
    _rule("menu_logo", r"8\s*ball\s*pool\s*by\s*miniclip", DISQUALIFYING),
    _rule("play_special", r"play\s*special", DISQUALIFYING),
    _rule("play_minigames", r"play\s*minigames", DISQUALIFYING),
    _rule("play_with_friends", r"play\s*with\s*friends", DISQUALIFYING),
    _rule("pool_pass", r"pool\s*pass", DISQUALIFYING),
    _rule("free_rewards", r"free\s*rewards", DISQUALIFYING),
    _rule("leaderboards", r"leaderboards", DISQUALIFYING),
    _rule("shop", r"shop", DISQUALIFYING),
    _rule("clubs", r"clubs", DISQUALIFYING),
    # Event banners
    _rule("one_and_done", r"one\s*&\s*done", DISQUALIFYING),
    _rule("event_hyperspace", r"event\s*hyperspace", DISQUALIFYING),
    _rule("brainrot_shop", r"brainrot\s*shop", DISQUALIFYING),

    # Profile screen
    _rule("profile", r"profile", QUALIFYING),
    _rule("rank_label", r"\brank\s*[:\-]?\s*[a-z]+", QUALIFYING),
    # OCR often drops the leading "L"
    _rule("level_progress", r"(?:level|evel|lvl)\s*progress", QUALIFYING),
    _rule("unique_id", r"unique\s*id", QUALIFYING),
    _rule("player_stats", r"player\s*stats", QUALIFYING),
)


def decisive_rule(raw_text: str, rules=PROFILE_RULES) -> ClassifierRule | None:
    """The rule that settles the verdict for raw_text, or None if no rule matched."""
    text = raw_text or ""
    for rule in rules:
        if rule.kind == DISQUALIFYING and rule.pattern.search(text):
            return rule
    for rule in rules:
        if rule.kind == QUALIFYING and rule.pattern.search(text):
            return rule
    return None


def classify(raw_text: str, rules=PROFILE_RULES) -> bool:
    """True if raw_text looks like a profile screen."""
    rule = decisive_rule(raw_text, rules)
    if rule is None:
        logger.debug("No profile indicators found in OCR text")
        return False
    if rule.kind == DISQUALIFYING:
        logger.debug("Menu indicator %r found, not a profile screenshot", rule.name)
        return False
    logger.debug("Profile indicator %r found", rule.name)
    return True
