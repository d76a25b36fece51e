#!/usr/bin/env python3
"""
Deterministic evaluator for audit findings.

Converts a finished list of findings into a deployment-safety probability
and an executive summary without calling a model.  Identical input always
yields identical output, and the score does not depend on finding order.

Functions:
    score            - 100 minus summed severity penalties, clamped to [0, 100]
    summarize        - severity counts, affected areas and a verdict
    evaluate         - both of the above as an ``Evaluation``
    display_id       - short human-facing label for a persisted finding
    analyst_message  - one-line feed message announcing a finding
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence

from schemas.pipeline import Evaluation, Finding, Severity

logger = logging.getLogger(__name__)

# Penalty per finding, strictly decreasing with severity
SEVERITY_PENALTIES: Dict[Severity, int] = {
    Severity.CRITICAL: 40,
    Severity.HIGH: 25,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
}

MAX_SUMMARY_CATEGORIES = 3

NO_FINDINGS_SUMMARY = (
    "No security vulnerabilities detected. This codebase appears safe for deployment."
)

VERDICTS: Dict[Severity, str] = {
    Severity.CRITICAL: "Deployment unsafe.",
    Severity.HIGH: "Deployment not recommended until issues are resolved.",
    Severity.MEDIUM: "Deployment acceptable with caution. Address issues soon.",
    Severity.LOW: "Deployment acceptable. Consider addressing minor issues.",
}


def score(findings: Iterable[Finding]) -> int:
    """Safety probability in [0, 100]."""
    total_penalty = sum(SEVERITY_PENALTIES[f.severity] for f in findings)
    return max(0, min(100, 100 - total_penalty))


def count_by_severity(findings: Iterable[Finding]) -> Dict[Severity, int]:
    """Counts for every severity, ordered critical -> low."""
    counts = {severity: 0 for severity in Severity}
    for f in findings:
        counts[f.severity] += 1
    return counts


def _severity_phrase(counts: Dict[Severity, int]) -> str:
    parts = [f"{n} {severity.label}" for severity, n in counts.items() if n > 0]
    return " and ".join(parts)


def _affected_areas(findings: Sequence[Finding]) -> List[str]:
    categories: List[str] = []
    for f in findings:
        if f.category not in categories:
            categories.append(f.category)
            if len(categories) == MAX_SUMMARY_CATEGORIES:
                break
    return categories


def summarize(findings: Sequence[Finding]) -> str:
    """Executive summary for *findings*.

    Categories are listed in first-seen order, so the areas portion depends
    on input order; the severity portion and verdict do not.
    """
    findings = list(findings)
    if not findings:
        return NO_FINDINGS_SUMMARY

    counts = count_by_severity(findings)
    worst = next(severity for severity, n in counts.items() if n > 0)

    return (
        f"Audit Complete. {_severity_phrase(counts)} severity vulnerabilities found. "
        f"Affected areas: {', '.join(_affected_areas(findings))}. {VERDICTS[worst]}"
    )


def evaluate(findings: Sequence[Finding]) -> Evaluation:
    findings = list(findings)
    evaluation = Evaluation(
        probability=score(findings),
        executive_summary=summarize(findings),
        finding_count=len(findings),
    )
    logger.debug(
        "Evaluated %d findings: probability=%d", evaluation.finding_count, evaluation.probability
    )
    return evaluation


def display_id(run_id: str, seq_number: int) -> str:
    """Human-facing label such as ``SEC-A-007``."""
    short_id = run_id[:1].upper()
    return f"SEC-{short_id}-{seq_number:03d}"


def analyst_message(finding: Finding, finding_display_id: str) -> str:
    """Feed message posted when a finding is surfaced."""
    file_ref = f" in {finding.file_path}" if finding.file_path else ""
    first_sentence = finding.description.split(".")[0]
    return (
        f"Found {finding.title}{file_ref}. {first_sentence}. "
        f"This is a {finding.severity.label} {finding.category} vulnerability "
        f"({finding_display_id})."
    )


__all__ = [
    "SEVERITY_PENALTIES",
    "NO_FINDINGS_SUMMARY",
    "VERDICTS",
    "score",
    "count_by_severity",
    "summarize",
    "evaluate",
    "display_id",
    "analyst_message",
]
