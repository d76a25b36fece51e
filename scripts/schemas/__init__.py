"""
Pydantic schemas for the repository audit pipeline

This package contains the schemas for all data flowing through the audit
pipeline. Schemas enforce data consistency and drop malformed model output
at pipeline boundaries.
"""

from .pipeline import (
    FINDINGS_KEY,
    Evaluation,
    Finding,
    IngestStats,
    PersistedFinding,
    Severity,
    SourceFile,
    parse_analysis_response,
    validate_finding,
)

__all__ = [
    "FINDINGS_KEY",
    "Severity",
    "Finding",
    "PersistedFinding",
    "SourceFile",
    "IngestStats",
    "Evaluation",
    "validate_finding",
    "parse_analysis_response",
]
