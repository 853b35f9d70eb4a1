"""Typed result of a completed assessment stream."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


_FACTOR_KEY_RE = re.compile(r"[^a-z0-9]")


def factor_key(label: str) -> str:
    """Slug used as the `realityFactors` key for a selected factor label."""
    return _FACTOR_KEY_RE.sub("_", label.lower())


class RealityFactor(BaseModel):
    label: str
    score: Any = None
    weight: Any = None
    explanation: Any = None
    why_selected: Any = Field(default=None, alias="whySelected")

    model_config = ConfigDict(populate_by_name=True)


class AssessmentResult(BaseModel):
    """Authoritative structured result built from the terminal parse.

    Scores are kept exactly as the model produced them (no rounding). Missing
    or null fields fall back to empty values so consumers never branch on
    absence.
    """

    reality_score: float | None = Field(default=None, alias="realityScore")
    integrity_score: float | None = Field(default=None, alias="integrityScore")
    exact_claim_being_scored: str = Field(default="", alias="exactClaimBeingScored")
    question_type: str = Field(default="", alias="questionType")
    question_type_rationale: str = Field(default="", alias="questionTypeRationale")
    selected_factors: list[dict[str, Any]] = Field(
        default_factory=list, alias="selectedFactors"
    )
    score_calculation: Any = Field(default="", alias="scoreCalculation")
    reality_factors: dict[str, RealityFactor] = Field(
        default_factory=dict, alias="realityFactors"
    )
    integrity: dict[str, Any] = Field(default_factory=dict)
    underlying_reality: Any = Field(default_factory=dict, alias="underlyingReality")
    central_claims: Any = Field(default_factory=dict, alias="centralClaims")
    framework_analysis: Any = Field(default_factory=dict, alias="frameworkAnalysis")
    truth_distortion_patterns: list[Any] = Field(
        default_factory=list, alias="truthDistortionPatterns"
    )
    evidence_analysis: Any = Field(default_factory=dict, alias="evidenceAnalysis")
    what_we_can_be_confident_about: list[Any] = Field(
        default_factory=list, alias="whatWeCanBeConfidentAbout"
    )
    what_remains_uncertain: list[Any] = Field(
        default_factory=list, alias="whatRemainsUncertain"
    )
    lessons_for_assessment: list[Any] = Field(
        default_factory=list, alias="lessonsForAssessment"
    )
    methodology_notes: Any = Field(default_factory=dict, alias="methodologyNotes")
    sources: list[Any] = Field(default_factory=list)
    plain_truth: Any = Field(default_factory=dict, alias="plainTruth")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("reality_score", "integrity_score", mode="before")
    @classmethod
    def _coerce_score(cls, v: Any) -> float | None:
        if v is None or isinstance(v, bool):
            return None
        if isinstance(v, int | float):
            return float(v)
        if isinstance(v, str):
            try:
                return float(v.strip())
            except ValueError:
                return None
        return None

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> AssessmentResult:
        """Build a result from the parsed response object.

        Null values are dropped so field defaults apply, and `realityFactors`
        is derived from `selectedFactors` entries that carry a `factor` label.
        """
        data = {key: value for key, value in document.items() if value is not None}
        data.pop("realityFactors", None)

        factors = data.get("selectedFactors")
        if not isinstance(factors, list):
            data.pop("selectedFactors", None)
            factors = []
        factors = [f for f in factors if isinstance(f, dict)]
        data["selectedFactors"] = factors

        reality_factors: dict[str, dict[str, Any]] = {}
        for factor in factors:
            label = factor.get("factor")
            if not isinstance(label, str) or not label:
                continue
            reality_factors[factor_key(label)] = {
                "label": label,
                "score": factor.get("score"),
                "weight": factor.get("weight"),
                "explanation": factor.get("explanation"),
                "whySelected": factor.get("whySelected"),
            }
        data["realityFactors"] = reality_factors

        for list_field in (
            "truthDistortionPatterns",
            "whatWeCanBeConfidentAbout",
            "whatRemainsUncertain",
            "lessonsForAssessment",
            "sources",
        ):
            if list_field in data and not isinstance(data[list_field], list):
                data.pop(list_field)
        if "integrity" in data and not isinstance(data["integrity"], dict):
            data.pop("integrity")
        for text_field in (
            "exactClaimBeingScored",
            "questionType",
            "questionTypeRationale",
        ):
            if text_field in data and not isinstance(data[text_field], str):
                data[text_field] = str(data[text_field])

        return cls.model_validate(data)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AssessmentOutcome(BaseModel):
    """Return value of a session that reached `Completed`."""

    success: bool
    result: AssessmentResult | None = None
    total_tokens: int | None = None
    duration: float = 0.0
    search_count: int = 0
    raw_text: str = ""
