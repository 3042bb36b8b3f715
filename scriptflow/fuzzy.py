from __future__ import annotations

import re
from dataclasses import dataclass
from difflib import SequenceMatcher

from scriptflow.errors import MatchError


DEFAULT_THRESHOLD = 0.8
WINDOW_SLACK = 0.2
_WHITESPACE = re.compile(r"\s+")
_BOUNDARY = re.compile(r"(?:^|(?<=\s))\S", re.MULTILINE)


@dataclass(frozen=True, slots=True)
class EditRequest:
    search_text: str
    replace_text: str
    threshold: float = DEFAULT_THRESHOLD


@dataclass(frozen=True, slots=True)
class EditMatch:
    edit_index: int
    start: int
    end: int
    matched_text: str
    similarity: float

    def overlaps(self, other: EditMatch) -> bool:
        return self.start < other.end and other.start < self.end


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def similarity(a: str, b: str) -> float:
    left, right = _normalize(a), _normalize(b)
    if not left and not right:
        return 1.0
    return SequenceMatcher(None, left, right, autojunk=False).ratio()


class FuzzyMatcher:
    """Locates approximate occurrences of search text inside file content."""

    def __init__(self, default_threshold: float = DEFAULT_THRESHOLD) -> None:
        self.default_threshold = default_threshold

    def find_match(
        self,
        content: str,
        search_text: str,
        threshold: float | None = None,
        *,
        edit_index: int = 0,
    ) -> EditMatch | None:
        threshold = self.default_threshold if threshold is None else threshold
        position = content.find(search_text)
        if position >= 0:
            return EditMatch(edit_index, position, position + len(search_text), search_text, 1.0)

        best = self._best_window(content, search_text)
        if best is None or best.similarity < threshold:
            return None
        return EditMatch(edit_index, best.start, best.end, best.matched_text, best.similarity)

    def _best_window(self, content: str, search_text: str) -> EditMatch | None:
        target = _normalize(search_text)
        if not target or not content:
            return None
        length = len(search_text)
        shortest = max(1, int(length * (1 - WINDOW_SLACK)))
        longest = int(length * (1 + WINDOW_SLACK)) + 1
        best: EditMatch | None = None

        for boundary in _BOUNDARY.finditer(content):
            start = boundary.start()
            for end in range(start + shortest, min(len(content), start + longest) + 1):
                window = content[start:end]
                matcher = SequenceMatcher(None, target, _normalize(window), autojunk=False)
                floor = best.similarity if best is not None else 0.0
                if matcher.real_quick_ratio() <= floor or matcher.quick_ratio() <= floor:
                    continue
                score = matcher.ratio()
                if score > floor:
                    best = EditMatch(0, start, end, window, score)
        return best

    def find_all_matches(self, content: str, edits: list[EditRequest]) -> list[EditMatch]:
        """Resolve every edit against the original content, rejecting overlaps."""
        matches: list[EditMatch] = []
        for index, edit in enumerate(edits):
            match = self.find_match(content, edit.search_text, edit.threshold, edit_index=index)
            if match is None:
                raise MatchError(
                    f"Edit {index + 1}: no region matched above threshold {edit.threshold:.2f}",
                    details={"edit_index": index, "search_text": edit.search_text[:200]},
                )
            matches.append(match)

        ordered = sorted(matches, key=lambda m: m.start)
        for previous, current in zip(ordered, ordered[1:]):
            if previous.overlaps(current):
                raise MatchError(
                    f"Edits {previous.edit_index + 1} and {current.edit_index + 1} overlap",
                    details={
                        "edit_indexes": [previous.edit_index, current.edit_index],
                        "ranges": [[previous.start, previous.end], [current.start, current.end]],
                    },
                )
        return matches

    def apply_edits(self, content: str, edits: list[EditRequest], matches: list[EditMatch]) -> str:
        # Descending order keeps the offsets of earlier regions valid.
        result = content
        for match in sorted(matches, key=lambda m: m.start, reverse=True):
            replacement = edits[match.edit_index].replace_text
            result = result[: match.start] + replacement + result[match.end :]
        return result
