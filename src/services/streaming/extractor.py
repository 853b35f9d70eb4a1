"""Speculative field extraction from an in-progress model response.

The model is asked for a JSON document, which is not valid until the last
token arrives. `SpeculativeFieldExtractor` surfaces what can already be
determined from the prefix received so far:

1. scores (`realityScore`, `integrityScore`) by key pattern,
2. sections wrapped in explicit markers (`▸▸▸name▸▸▸...◂◂◂name◂◂◂`),
3. string or array values of a fixed allow-list of JSON keys.

Steps 1-3 run against the whole buffer after every chunk because a match may
span chunk boundaries. `finalize()` is the separate, authoritative phase: one
full JSON parse once the upstream stream has ended. Keeping the phases apart
lets a real incremental JSON parser replace steps 1-3 later without touching
the event contract.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from services.streaming.accumulator import ChunkAccumulator


logger = logging.getLogger(__name__)

SECTION_START = "▸▸▸"
SECTION_END = "◂◂◂"

# Score field name -> JSON key in the model response.
SCORE_KEYS: Mapping[str, str] = {
    "reality": "realityScore",
    "integrity": "integrityScore",
}

SPECULATIVE_SECTION_NAMES: tuple[str, ...] = (
    "underlyingReality",
    "underlyingTruth",
    "centralClaims",
    "evidenceSummary",
    "truthDistortionPatterns",
    "confidenceStatement",
    "headline",
)

# A number only counts once a delimiter follows it, so a value cut mid-digits
# by a chunk boundary is never captured.
_SCORE_PATTERN = r'"{key}"\s*:\s*(-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)(?=\s*[,}}\]\r\n])'
_FENCED_BLOCK_RE = re.compile(r"```(?:json)?[ \t]*\r?\n?([\s\S]*?)```", re.IGNORECASE)
_FENCE_MARKER_RE = re.compile(r"```(?:json)?[ \t]*\r?\n?", re.IGNORECASE)

_decoder = json.JSONDecoder()
_INCOMPLETE = object()


def _first_string_or_array(pattern: re.Pattern[str], text: str) -> Any:
    """Decode the first string or array value following `pattern`.

    Keys whose value is an object, number or literal are skipped. Returns
    `_INCOMPLETE` when no such value is available yet.
    """
    for match in pattern.finditer(text):
        if text[match.end()] not in '"[':
            continue
        try:
            content, _ = _decoder.raw_decode(text, match.end())
        except json.JSONDecodeError:
            # Cut off mid-value; retried on the next chunk.
            return _INCOMPLETE
        return content
    return _INCOMPLETE


@dataclass(frozen=True, slots=True)
class ScoreUpdate:
    reality: float | None
    integrity: float | None
    provisional: bool = True


@dataclass(frozen=True, slots=True)
class SectionUpdate:
    name: str
    content: Any
    final: bool


ExtractionUpdate = ScoreUpdate | SectionUpdate


class SpeculativeFieldExtractor:
    """Per-session extraction state. Not safe to share between sessions."""

    def __init__(
        self,
        section_names: Iterable[str] = SPECULATIVE_SECTION_NAMES,
        *,
        section_start: str = SECTION_START,
        section_end: str = SECTION_END,
    ) -> None:
        self._buffer = ChunkAccumulator()
        self._sections: dict[str, Any] = {}
        self._final_names: set[str] = set()
        self._scores: dict[str, float | None] = dict.fromkeys(SCORE_KEYS)
        self._document: dict[str, Any] | None = None
        self._finalized = False

        self._score_patterns = {
            field: re.compile(_SCORE_PATTERN.format(key=re.escape(key)))
            for field, key in SCORE_KEYS.items()
        }
        start, end = re.escape(section_start), re.escape(section_end)
        self._marked_pattern = re.compile(
            rf"{start}(\w+){start}([\s\S]*?){end}\1{end}"
        )
        self._section_patterns = {
            name: re.compile(rf'"{re.escape(name)}"\s*:\s*(?=\S)')
            for name in section_names
        }

    @property
    def buffer(self) -> str:
        return self._buffer.text

    @property
    def sections(self) -> dict[str, Any]:
        return dict(self._sections)

    @property
    def scores(self) -> dict[str, float | None]:
        return dict(self._scores)

    @property
    def final_section_names(self) -> frozenset[str]:
        return frozenset(self._final_names)

    def process(self, chunk: str) -> list[ExtractionUpdate]:
        """Append `chunk` and run the three speculative steps, in order."""
        self._buffer.append(chunk)
        updates: list[ExtractionUpdate] = []
        updates.extend(self.extract_scores())
        updates.extend(self.extract_marked_sections())
        updates.extend(self.extract_json_sections())
        return updates

    def extract_scores(self) -> list[ScoreUpdate]:
        """First match per score field wins; later text is never re-searched."""
        updates: list[ScoreUpdate] = []
        text = self._buffer.text
        for field, pattern in self._score_patterns.items():
            if self._scores[field] is not None:
                continue
            match = pattern.search(text)
            if match is None:
                continue
            self._scores[field] = float(match.group(1))
            updates.append(
                ScoreUpdate(
                    reality=self._scores["reality"],
                    integrity=self._scores["integrity"],
                    provisional=True,
                )
            )
        return updates

    def extract_marked_sections(self) -> list[SectionUpdate]:
        """Record complete marked regions and cut them out of the buffer.

        A region whose name is already final is still removed so it cannot
        be rematched.
        """
        updates: list[SectionUpdate] = []
        pos = 0
        while True:
            match = self._marked_pattern.search(self._buffer.text, pos)
            if match is None:
                break
            name, content = match.group(1), match.group(2).strip()
            if name not in self._final_names:
                self._sections[name] = content
                self._final_names.add(name)
                updates.append(SectionUpdate(name=name, content=content, final=True))
            self._buffer.remove(match.start(), match.end())
            pos = match.start()
        return updates

    def extract_json_sections(self) -> list[SectionUpdate]:
        """Decode allow-listed string/array values once they are complete."""
        updates: list[SectionUpdate] = []
        text = self._buffer.text
        for name, pattern in self._section_patterns.items():
            if name in self._sections:
                continue
            content = _first_string_or_array(pattern, text)
            if content is _INCOMPLETE:
                continue
            self._sections[name] = content
            updates.append(SectionUpdate(name=name, content=content, final=False))
        return updates

    def finalize(self) -> dict[str, Any] | None:
        """Parse the whole buffer once the stream has ended.

        Fenced code block markers are stripped (a fenced block's body is
        preferred). Returns the parsed object, or None when the buffer is not
        a complete JSON object. On success the parsed values supersede the
        speculative ones held by this extractor.
        """
        if self._finalized:
            return self._document
        self._finalized = True

        text = self._buffer.text
        fenced = _FENCED_BLOCK_RE.search(text)
        if fenced is not None:
            candidate = fenced.group(1)
        else:
            candidate = _FENCE_MARKER_RE.sub("", text)
        candidate = candidate.strip()

        try:
            document = json.loads(candidate)
        except json.JSONDecodeError as e:
            logger.info("Terminal parse failed at position %d: %s", e.pos, e.msg)
            return None
        if not isinstance(document, dict):
            logger.info(
                "Terminal parse produced %s, expected an object",
                type(document).__name__,
            )
            return None

        self._document = document
        for field, key in SCORE_KEYS.items():
            value = document.get(key)
            if isinstance(value, int | float) and not isinstance(value, bool):
                self._scores[field] = float(value)
        for name in list(self._sections):
            if name in document and name not in self._final_names:
                self._sections[name] = document[name]
        return document
