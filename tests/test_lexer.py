"""Tests for the line scanner."""

import pytest

from storyflow.errors import ParseError
from storyflow.lexer import LineKind, classify, tokenize


def test_indentation_levels():
    lines = tokenize("If a\n  Do: b\n    Do: c\n   Do: d")
    assert [l.level for l in lines] == [0, 1, 2, 1]
    assert lines[2].column == 5


def test_tab_counts_as_one_level():
    lines = tokenize("If a\n\tDo: b")
    assert lines[1].level == 1


@pytest.mark.parametrize("text,kind", [
    ("Flow: Demo", LineKind.FLOW),
    ("If system receives order_placed event", LineKind.EVENT),
    ("If {x} > 1", LineKind.IF),
    ("Otherwise", LineKind.OTHERWISE),
    ("otherwise:", LineKind.OTHERWISE),
    ("Ask bob for {a}", LineKind.ASK),
    ("Send email to bob", LineKind.SEND),
    ("Do: thing", LineKind.DO),
    ("Wait 3 days", LineKind.WAIT),
    ("Stop", LineKind.STOP),
    ("STOP: done", LineKind.STOP),
])
def test_classify(text, kind):
    assert classify(text)[0] == kind


def test_event_wins_over_generic_if():
    kind, groups = classify("If system receives sustained_latency_above_400ms_5min event")
    assert kind == LineKind.EVENT
    assert groups["event"] == "sustained_latency_above_400ms_5min"


def test_if_trailing_colon_is_dropped():
    _, groups = classify("If approved:")
    assert groups["condition"] == "approved"


def test_unclassified_line_raises_with_position():
    with pytest.raises(ParseError) as exc:
        tokenize("Do: a\n  Dance", path="p.story")
    assert exc.value.line == 2
    assert exc.value.column == 3
    assert exc.value.path == "p.story"


def test_comments_skipped():
    assert tokenize("-- a\n# b\n\n") == []
