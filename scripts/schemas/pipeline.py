"""
Pipeline Schemas - Typed models for data flowing between pipeline stages.

These models replace dict[str, Any] at phase boundaries, enabling:
- Runtime validation of every record the LLM produces
- Clear documentation of stage inputs/outputs

Hierarchy:
    Severity            - closed severity scale, ordered critical -> low
    Finding             - one vulnerability record as emitted by the model
    PersistedFinding    - Finding plus sequence number and display id
    SourceFile          - one ingested file destined for the prompt
    IngestStats         - what the ingestion phase gathered
    Evaluation          - deterministic score + summary of a completed run
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from exceptions import InvalidResponseError

logger = logging.getLogger(__name__)

# Key holding the findings array in the model's JSON document
FINDINGS_KEY = "vulnerabilities"

# Maximum field lengths; longer values are clamped with an ellipsis
FIELD_LIMITS: Dict[str, int] = {
    "title": 200,
    "description": 2000,
    "impact": 1000,
    "fix": 2000,
    "file_path": 500,
    "category": 100,
}

_CODE_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?|\n?\s*```\s*$")


def clamp(value: Optional[str], max_length: int) -> Optional[str]:
    """Truncate *value* to *max_length* characters, ending with an ellipsis."""
    if value is None or len(value) <= max_length:
        return value
    return value[: max_length - 1] + "…"


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """Severity levels, declared from most to least severe."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def label(self) -> str:
        return self.value.capitalize()


# ---------------------------------------------------------------------------
# Finding
# ---------------------------------------------------------------------------


class Finding(BaseModel):
    """A single vulnerability record produced by the analysis phase.

    Immutable once created.  ``level`` is accepted as a legacy name for
    ``severity`` and ``filePath`` for ``file_path`` because that is the shape
    models were originally prompted with.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    category: str = "unknown"
    severity: Severity = Field(validation_alias=AliasChoices("severity", "level"))
    title: str
    description: str
    impact: Optional[str] = None
    file_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("file_path", "filePath"),
    )
    fix: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "unknown"
        return v

    @field_validator("title", "description")
    @classmethod
    def require_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("category", "title", "description", "impact", "file_path", "fix")
    @classmethod
    def clamp_length(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        return clamp(v, FIELD_LIMITS[info.field_name])


class PersistedFinding(Finding):
    """A finding after the orchestrator stored it for a run."""

    run_id: str
    seq_number: int = Field(ge=1)
    display_id: str


def validate_finding(raw: Any) -> Optional[Finding]:
    """Validate one decoded JSON element against the Finding shape.

    Returns ``None`` for anything that does not validate; callers drop it.
    """
    if not isinstance(raw, dict):
        return None
    try:
        return Finding.model_validate(raw)
    except ValidationError as exc:
        logger.debug("Dropping malformed finding: %s", exc.errors()[:1])
        return None


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if the model added one."""
    return _CODE_FENCE_RE.sub("", text.strip())


def parse_analysis_response(text: str) -> List[Finding]:
    """Strictly parse a complete analysis document.

    Malformed elements are dropped individually.  A document that is not
    JSON, or lacks the findings array, raises ``InvalidResponseError``.
    An empty array is a valid answer with zero findings.
    """
    if not text or not text.strip():
        raise InvalidResponseError("Empty response from model")

    try:
        document = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as exc:
        raise InvalidResponseError(f"Model response is not valid JSON: {exc}") from exc

    if not isinstance(document, dict) or not isinstance(document.get(FINDINGS_KEY), list):
        raise InvalidResponseError(
            f"Model response has no '{FINDINGS_KEY}' array"
        )

    findings = []
    for raw in document[FINDINGS_KEY]:
        finding = validate_finding(raw)
        if finding is None:
            logger.warning("Dropped malformed element from model response")
            continue
        findings.append(finding)
    return findings


# ---------------------------------------------------------------------------
# Ingestion & evaluation models
# ---------------------------------------------------------------------------


class SourceFile(BaseModel):
    """One ingested repository file, ready to go into the prompt."""

    path: str
    content: str
    tokens: int = 0


class IngestStats(BaseModel):
    """Counts recorded once the ingestion phase finishes."""

    total_files: int = 0
    included_files: int = 0
    skipped_files: int = 0
    included_tokens: int = 0


class Evaluation(BaseModel):
    """Deterministic verdict for a completed run.  Written exactly once."""

    model_config = ConfigDict(frozen=True)

    probability: int = Field(ge=0, le=100)
    executive_summary: str
    finding_count: int = Field(ge=0)


__all__ = [
    "FINDINGS_KEY",
    "FIELD_LIMITS",
    "Severity",
    "Finding",
    "PersistedFinding",
    "SourceFile",
    "IngestStats",
    "Evaluation",
    "clamp",
    "validate_finding",
    "strip_code_fences",
    "parse_analysis_response",
]
