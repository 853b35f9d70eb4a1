"""Prompt construction for assessment streams.

The full scoring rubric is maintained outside this service; the builder only
frames the user's input, the output language, and the JSON key contract the
stream extractor relies on.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from schemas.streaming import AssessStreamRequest
from services.streaming.exceptions import MissingQueryError


LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "es": "Spanish (Español)",
    "fr": "French (Français)",
    "de": "German (Deutsch)",
    "it": "Italian (Italiano)",
    "pt": "Portuguese (Português)",
    "ru": "Russian (Русский)",
    "uk": "Ukrainian (Українська)",
    "el": "Greek (Ελληνικά)",
    "zh": "Chinese (中文)",
    "ja": "Japanese (日本語)",
    "ko": "Korean (한국어)",
    "ar": "Arabic (العربية)",
    "he": "Hebrew (עברית)",
}

RESPONSE_CONTRACT = """\
Respond with a single JSON object inside a ```json fenced block. Emit
"realityScore" and "integrityScore" first so they can be shown early.

```json
{
  "realityScore": <number from -10 to 10>,
  "integrityScore": <number from -1 to 1>,
  "exactClaimBeingScored": "<the claim, in its original language>",
  "questionType": "<Empirical Fact | Efficacy Claim | Rationale Validity | Compound Claim | Predictive | Historical | Definitional | Quantified>",
  "questionTypeRationale": "<1-2 sentences>",
  "headline": "<one sentence verdict>",
  "selectedFactors": [
    {"factor": "<label>", "score": <number>, "weight": <0-1>, "explanation": "<text>", "whySelected": "<text>"}
  ],
  "scoreCalculation": "<how the factors combine>",
  "integrity": {},
  "underlyingReality": {},
  "centralClaims": {},
  "frameworkAnalysis": {},
  "truthDistortionPatterns": [],
  "evidenceAnalysis": {},
  "whatWeCanBeConfidentAbout": [],
  "whatRemainsUncertain": [],
  "lessonsForAssessment": [],
  "methodologyNotes": {},
  "sources": [],
  "plainTruth": {}
}
```
"""


def build_language_instruction(language: str) -> str:
    """Instruction block for non-English output; empty for English."""
    code = language.split("-", 1)[0].lower()
    if code == "en":
        return ""
    language_name = LANGUAGE_NAMES.get(code, "English")
    return (
        f"The user's language preference is {language_name}.\n"
        f"Write ALL human-readable content in {language_name}.\n"
        "Keep JSON keys and technical identifiers in English.\n"
        "Keep exactClaimBeingScored in its original language (as submitted).\n"
        "Numbers, scores, and factor names remain in English for parsing.\n\n"
    )


class PromptBuilder:
    """Builds the opaque prompt for one assessment request."""

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or (lambda: datetime.now(UTC))

    def build_prompt(self, request: AssessStreamRequest) -> str:
        if not request.has_input:
            raise MissingQueryError()

        today = self._now()
        question = (request.query or "").strip()
        article = request.article_text.strip()

        parts = [
            build_language_instruction(request.language),
            "You are a truth-seeking assessment system. Assess the claim below "
            "rigorously and engage fully with every question type.\n\n",
            f"TODAY IS: {today:%A, %B %d, %Y} ({today:%Y-%m-%d})\n\n",
            f"Assessment type: {request.assessment_type}\n\n",
        ]
        if article:
            parts.append(f"Analyze this article:\n\n---\n{article}\n---\n\n")
            if question:
                parts.append(f"Question about the article: {question}\n\n")
        else:
            parts.append(f"Evaluate this claim/question: {question}\n\n")
        parts.append(RESPONSE_CONTRACT)
        return "".join(parts)
