"""Typed result contracts for assessment output.

A schema is an ordered set of ``FieldSpec`` entries. Each field carries two
values:

* ``default``  – used when the model's object lacks the field or the value
  cannot be coerced to the field's kind.
* ``fallback`` – used for every field when no usable object exists at all
  (model call failed, or the output holds no JSON object).

String defaults and fallbacks may contain ``{subject}``; it is filled from the
validation context (company name, report title, client name).
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

SCORE = "score"
BOOL = "bool"
TEXT = "text"
TEXT_LIST = "text_list"
OBJECT = "object"

_KINDS = {SCORE, BOOL, TEXT, TEXT_LIST, OBJECT}

DEFAULT_SUBJECT = "the submission"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: str
    default: Any = None
    fallback: Any = None
    children: Tuple["FieldSpec", ...] = ()

    def __post_init__(self) -> None:
        if self.kind not in _KINDS:
            raise ValueError(f"unknown field kind: {self.kind}")
        if self.kind == OBJECT and not self.children:
            raise ValueError(f"object field {self.name} needs children")


@dataclass(frozen=True)
class ResultSchema:
    name: str
    fields: Tuple[FieldSpec, ...]

    def field_names(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.fields)

    def fallback(self, context: Optional[Mapping[str, Any]] = None) -> "ValidatedResult":
        subject = subject_from(context)
        values = {spec.name: fill_value(spec, use_fallback=True, subject=subject) for spec in self.fields}
        return ValidatedResult(schema_name=self.name, fields=values, is_fallback=True)


@dataclass(frozen=True)
class ValidatedResult:
    schema_name: str
    fields: Dict[str, Any] = field(default_factory=dict)
    is_fallback: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.fields)

    def __getitem__(self, name: str) -> Any:
        return self.fields[name]


def subject_from(context: Optional[Mapping[str, Any]]) -> str:
    raw = (context or {}).get("subject")
    text = str(raw or "").strip()
    return text or DEFAULT_SUBJECT


def fill_value(spec: FieldSpec, *, use_fallback: bool, subject: str) -> Any:
    if spec.kind == OBJECT:
        return {
            child.name: fill_value(child, use_fallback=use_fallback, subject=subject)
            for child in spec.children
        }
    value = spec.fallback if use_fallback and spec.fallback is not None else spec.default
    if spec.kind == TEXT:
        return str(value or "").replace("{subject}", subject)
    if spec.kind == TEXT_LIST:
        return [str(item).replace("{subject}", subject) for item in (value or [])]
    return copy.deepcopy(value)


def _section(name: str, label: str, strength: str) -> FieldSpec:
    return FieldSpec(
        name,
        OBJECT,
        children=(
            FieldSpec("score", SCORE, default=0, fallback=50),
            FieldSpec("strengths", TEXT_LIST, default=[], fallback=[strength]),
            FieldSpec("weaknesses", TEXT_LIST, default=[], fallback=[f"{label} could not be assessed automatically"]),
        ),
    )


_UNAVAILABLE = (
    "The request for {subject} was received, but the assessment could not be completed "
    "automatically. Please try again later or ask a specialist for a manual review."
)

GENERAL = ResultSchema(
    "general",
    (
        FieldSpec("score", SCORE, default=0, fallback=50),
        FieldSpec("eligible", BOOL, default=False, fallback=False),
        FieldSpec("rationale", TEXT, default="No rationale was provided.", fallback=_UNAVAILABLE),
        FieldSpec(
            "recommendations",
            TEXT_LIST,
            default=[],
            fallback=["Retry the assessment in a few minutes", "Consider a manual expert review"],
        ),
    ),
)

RD_ASSESSMENT = ResultSchema(
    "rd_assessment",
    (
        FieldSpec("eligibilityScore", SCORE, default=0, fallback=50),
        FieldSpec("eligible", BOOL, default=False, fallback=False),
        FieldSpec(
            "reasoning",
            TEXT,
            default="No reasoning was provided.",
            fallback=(
                "Unable to complete the automated assessment. The company description for {subject} "
                "was received, but the assessment could not be completed automatically. Please try "
                "again later or contact a qualified R&D tax advisor."
            ),
        ),
        FieldSpec(
            "recommendations",
            TEXT_LIST,
            default=[],
            fallback=[
                "Retry the assessment in a few minutes",
                "Describe the specific technical challenges and innovations in more detail",
            ],
        ),
        FieldSpec(
            "nextSteps",
            TEXT_LIST,
            default=[],
            fallback=[
                "Review HMRC guidance on R&D tax relief",
                "Document your technical processes and innovations",
                "Consult a specialist R&D tax advisor",
            ],
        ),
        FieldSpec("estimatedValue", TEXT, default="Contact advisor for estimate", fallback="Contact advisor for estimate"),
    ),
)

CHECKLIST_SECTIONS = (
    ("advance", "Advance in science or technology", "Report received"),
    ("uncertainty", "Scientific or technological uncertainty", "Document provided"),
    ("professionals", "Competent professionals", "Content processed"),
    ("process", "R&D process", "Report submitted"),
    ("aifAlignment", "AIF alignment", "Document accepted"),
    ("costs", "Qualifying costs", "Content received"),
    ("payeCap", "PAYE cap", "Report provided"),
    ("grants", "Grant treatment", "Document processed"),
    ("ct600", "CT600 consistency", "Content accepted"),
    ("evidence", "Supporting evidence", "Report received"),
    ("conduct", "Professional conduct", "Document provided"),
    ("fraudTribunal", "Fraud and tribunal risk", "Content processed"),
    ("esoteric", "Esoteric issues", "Document received"),
)

REPORT_REVIEW = ResultSchema(
    "report_review",
    (
        FieldSpec("overallScore", SCORE, default=0, fallback=50),
        FieldSpec("complianceScore", SCORE, default=0, fallback=40),
        FieldSpec(
            "checklistFeedback",
            OBJECT,
            children=tuple(_section(name, label, strength) for name, label, strength in CHECKLIST_SECTIONS),
        ),
        FieldSpec(
            "recommendations",
            TEXT_LIST,
            default=[],
            fallback=["Retry analysis later", "Consider manual expert review"],
        ),
        FieldSpec(
            "detailedFeedback",
            TEXT,
            default="No detailed feedback was provided.",
            fallback=(
                "Analysis of {subject} could not be completed automatically. Please try again later "
                "or consult an R&D tax specialist for a manual review."
            ),
        ),
    ),
)

TRANSCRIPT_ANALYSIS = ResultSchema(
    "transcript_analysis",
    (
        FieldSpec("rdActivitiesIdentified", TEXT_LIST, default=[], fallback=["Unable to analyze at this time"]),
        FieldSpec("technicalChallenges", TEXT_LIST, default=[], fallback=["Analysis unavailable"]),
        FieldSpec("innovationElements", TEXT_LIST, default=[], fallback=["Please try again later"]),
        FieldSpec("hmrcEligibilityScore", SCORE, default=0, fallback=0),
        FieldSpec(
            "eligibilityAssessment",
            TEXT,
            default="No eligibility assessment was provided.",
            fallback=(
                "Unable to complete the automated analysis. The call transcript for {subject} was "
                "received, but the analysis could not be completed automatically. Please try again "
                "later or perform a manual review."
            ),
        ),
        FieldSpec("keyFindings", TEXT_LIST, default=[], fallback=["Automated analysis unavailable"]),
        FieldSpec(
            "recommendedActions",
            TEXT_LIST,
            default=[],
            fallback=[
                "Retry the analysis in a few minutes",
                "Perform a manual transcript review",
            ],
        ),
        FieldSpec("documentationNeeds", TEXT_LIST, default=[], fallback=["Manual analysis required"]),
        FieldSpec("estimatedClaimValue", TEXT, default="Requires detailed analysis", fallback="Analysis required"),
        FieldSpec("followUpQuestions", TEXT_LIST, default=[], fallback=["Manual review needed"]),
    ),
)

SCHEMAS: Dict[str, ResultSchema] = {
    schema.name: schema for schema in (GENERAL, RD_ASSESSMENT, REPORT_REVIEW, TRANSCRIPT_ANALYSIS)
}


def get_schema(name: str) -> ResultSchema:
    try:
        return SCHEMAS[str(name or "").strip()]
    except KeyError:
        raise KeyError(f"unknown result schema: {name}") from None
