"""Result types shared by the rule engine, the extractor and the LLM fallback."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Optional


class ClassificationType(str, Enum):
    """Closed set of labels a message can carry."""

    JOB_APPLICATION = "job_application"
    JOB_RESPONSE = "job_response"
    INTERVIEW = "interview"
    REJECTION = "rejection"
    OFFER = "offer"
    FOLLOW_UP = "follow_up"
    OTHER = "other"

    @property
    def is_job_related(self) -> bool:
        return self is not ClassificationType.OTHER

    @classmethod
    def parse(cls, value: object) -> Optional["ClassificationType"]:
        """Return the matching member, or None for unknown labels."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


CLASSIFICATION_TYPES: tuple[str, ...] = tuple(t.value for t in ClassificationType)

# Human-readable labels and the tracker status a reviewer would usually pick
_LABELS: dict[ClassificationType, str] = {
    ClassificationType.JOB_APPLICATION: "Application Sent",
    ClassificationType.JOB_RESPONSE: "Application Confirmed",
    ClassificationType.INTERVIEW: "Interview",
    ClassificationType.REJECTION: "Rejection",
    ClassificationType.OFFER: "Offer",
    ClassificationType.FOLLOW_UP: "Follow Up",
    ClassificationType.OTHER: "Other",
}

_JOB_STATUS: dict[ClassificationType, str] = {
    ClassificationType.JOB_APPLICATION: "applied",
    ClassificationType.JOB_RESPONSE: "applied",
    ClassificationType.INTERVIEW: "interview",
    ClassificationType.REJECTION: "rejected",
    ClassificationType.OFFER: "offer",
    ClassificationType.FOLLOW_UP: "applied",
    ClassificationType.OTHER: "draft",
}


def label_for(kind: ClassificationType | str) -> str:
    parsed = ClassificationType.parse(kind)
    return _LABELS[parsed] if parsed else str(kind)


def job_status_for(kind: ClassificationType | str) -> str:
    parsed = ClassificationType.parse(kind)
    return _JOB_STATUS[parsed] if parsed else "draft"


# Wire names for ExtractedData fields (camelCase on the HTTP payloads)
_WIRE_NAMES: dict[str, str] = {
    "company": "company",
    "job_title": "jobTitle",
    "location": "location",
    "application_url": "applicationUrl",
    "source": "source",
    "job_type": "jobType",
    "recruiter_name": "recruiterName",
    "salary_range": "salaryRange",
}


@dataclass(frozen=True)
class ExtractedData:
    """Structured fields pulled out of a message. Every field is optional."""

    company: Optional[str] = None
    job_title: Optional[str] = None
    location: Optional[str] = None
    application_url: Optional[str] = None
    source: Optional[str] = None
    job_type: Optional[str] = None
    recruiter_name: Optional[str] = None
    salary_range: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.company and self.job_title)

    @property
    def is_empty(self) -> bool:
        return not any(getattr(self, f.name) for f in fields(self))

    def merge(self, other: Optional["ExtractedData"]) -> "ExtractedData":
        """Fill absent fields from *other*; present values are never replaced."""
        if other is None:
            return self
        updates = {
            f.name: getattr(other, f.name)
            for f in fields(self)
            if not getattr(self, f.name) and getattr(other, f.name)
        }
        return replace(self, **updates) if updates else self

    def to_dict(self) -> dict[str, Optional[str]]:
        """Serialise with camelCase keys, as stored and sent over HTTP."""
        return {wire: getattr(self, attr) for attr, wire in _WIRE_NAMES.items()}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ExtractedData":
        """Accept either camelCase or snake_case keys; blank values become None."""
        if not data:
            return cls()
        values: dict[str, Optional[str]] = {}
        for attr, wire in _WIRE_NAMES.items():
            raw = data.get(wire, data.get(attr))
            if raw is None or isinstance(raw, (dict, list)):
                continue
            text = str(raw).strip()
            if text and text.lower() not in {"null", "none", "n/a"}:
                values[attr] = text
        return cls(**values)


@dataclass(frozen=True)
class ClassificationResult:
    """A label for one message, from a rule, the model or a human."""

    type: ClassificationType
    confidence: float
    source: str = "rule"  # rule | llm | manual
    reason: str = ""
    extracted_data: ExtractedData = field(default_factory=ExtractedData)

    @property
    def is_job_related(self) -> bool:
        return self.type.is_job_related

    def passes_gate(self, threshold: float) -> bool:
        """True when the result should be staged for review."""
        return self.is_job_related and self.confidence >= threshold
