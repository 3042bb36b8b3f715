import pytest

from scriptflow.errors import MatchError
from scriptflow.fuzzy import EditRequest, FuzzyMatcher, similarity


@pytest.mark.parametrize(
    "edits",
    [
        [EditRequest("bar", "BAR"), EditRequest("baz", "BAZ")],
        [EditRequest("baz", "BAZ"), EditRequest("bar", "BAR")],
    ],
)
def test_edits_apply_regardless_of_order(edits):
    matcher = FuzzyMatcher()
    content = "foo bar baz"

    matches = matcher.find_all_matches(content, edits)

    assert matcher.apply_edits(content, edits, matches) == "foo BAR BAZ"


def test_length_changing_edits_keep_resolved_offsets():
    matcher = FuzzyMatcher()
    content = "a = 1\nb = 2\nc = 3\n"
    edits = [EditRequest("a = 1", "alpha = 100"), EditRequest("c = 3", "c = 3000000")]

    matches = matcher.find_all_matches(content, edits)

    assert matcher.apply_edits(content, edits, matches) == "alpha = 100\nb = 2\nc = 3000000\n"


def test_overlapping_edits_are_rejected():
    matcher = FuzzyMatcher()
    with pytest.raises(MatchError) as exc_info:
        matcher.find_all_matches("foo bar baz", [EditRequest("bar baz", "X"), EditRequest("baz", "Y")])
    assert "overlap" in str(exc_info.value)


def test_unmatched_edit_is_rejected():
    matcher = FuzzyMatcher()
    with pytest.raises(MatchError):
        matcher.find_all_matches("foo bar baz", [EditRequest("completely different text", "X")])


def test_whitespace_differences_still_match():
    matcher = FuzzyMatcher()
    content = "var x = 1;\nfunction  hello( a,b ) {\n  return a;\n}\n"
    edits = [EditRequest("function hello( a, b ) {", "function hello(a, b) {")]

    matches = matcher.find_all_matches(content, edits)
    result = matcher.apply_edits(content, edits, matches)

    assert matches[0].similarity >= 0.8
    assert "function hello(a, b) {" in result
    assert "return a;" in result
    assert result.startswith("var x = 1;\n")


def test_exact_match_has_full_similarity():
    match = FuzzyMatcher().find_match("alpha beta", "beta")
    assert match is not None
    assert (match.start, match.end, match.similarity) == (6, 10, 1.0)


def test_similarity_ignores_whitespace_runs():
    assert similarity("a  b\n c", "a b c") == 1.0
