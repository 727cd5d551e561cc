import re

from classifier import (
    DISQUALIFYING,
    PROFILE_RULES,
    QUALIFYING,
    ClassifierRule,
    classify,
    decisive_rule,
)

PROFILE_TEXT = "Profile\nPlayer Name\nLevel Progress 42\nRank: Silver\nWin Rate 52%"


def test_profile_screen_is_accepted() -> None:
    assert classify(PROFILE_TEXT) is True


def test_main_menu_is_rejected_even_with_level_text() -> None:
    text = "8 Ball Pool by Miniclip\nPlay Special\nLevel 42\nRank: Gold\nProfile"
    assert classify(text) is False
    assert decisive_rule(text).name == "menu_logo"


def test_event_banner_is_rejected() -> None:
    assert classify("EVENT HYPERSPACE\nPlayer Stats") is False


def test_no_evidence_means_no_profile() -> None:
    assert classify("") is False
    assert classify("Congratulations! You won 500 coins") is False
    assert decisive_rule("nothing to see here") is None


def test_ocr_dropped_first_letter_still_counts() -> None:
    assert classify("evel progress 12") is True
    assert classify("LVL PROGRESS 12") is True


def test_each_profile_indicator_alone_is_enough() -> None:
    for text in ("PROFILE", "Rank: Gold", "Level Progress", "Unique ID 123-456", "player stats"):
        assert classify(text) is True, text


def test_classification_is_deterministic() -> None:
    for text in (PROFILE_TEXT, "Pool Pass\nLevel 9", ""):
        assert classify(text) == classify(text)


def test_disqualifying_rules_are_checked_before_qualifying_ones() -> None:
    # qualifying rule listed first must still lose to a disqualifying match
    rules = (
        ClassifierRule("stats", re.compile("stats", re.I), QUALIFYING),
        ClassifierRule("menu", re.compile("menu", re.I), DISQUALIFYING),
    )
    assert classify("Stats Menu", rules) is False
    assert classify("Stats", rules) is True


def test_default_rule_table_has_both_kinds() -> None:
    kinds = {rule.kind for rule in PROFILE_RULES}
    assert kinds == {DISQUALIFYING, QUALIFYING}
