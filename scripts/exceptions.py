#!/usr/bin/env python3
"""
Repository Audit Exceptions Module

Custom exception classes for the repository audit pipeline.
Every exception carries an ``error_code`` so a failed run can record a
machine-readable cause next to the human-readable message.
"""

__all__ = [
    "AuditError",
    "UpstreamError",
    "RateLimitError",
    "GitHubError",
    "LLMError",
    "InvalidResponseError",
    "NoSourceFilesError",
    "IngestionError",
    "InvalidTransitionError",
]


class AuditError(Exception):
    """Base exception for all audit-related errors"""

    error_code = "AUDIT_ERROR"

    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class UpstreamError(AuditError):
    """Raised when an upstream collaborator (GitHub, LLM provider) fails"""

    error_code = "UPSTREAM_ERROR"


class RateLimitError(UpstreamError):
    """Raised when an upstream collaborator reports a rate limit.

    Always fatal to the run, never skipped per item.
    """

    error_code = "RATE_LIMIT"


class GitHubError(UpstreamError):
    """Raised by the GitHub client.

    ``error_code`` is one of NOT_FOUND, RATE_LIMIT, PRIVATE_REPO,
    GITHUB_ERROR or NETWORK_ERROR.
    """

    error_code = "GITHUB_ERROR"

    @property
    def is_rate_limit(self) -> bool:
        return self.error_code == "RATE_LIMIT"


class LLMError(UpstreamError):
    """Raised when the LLM provider call or stream fails"""

    error_code = "LLM_ERROR"


class InvalidResponseError(AuditError):
    """Raised when the LLM response is not valid JSON or fails the schema"""

    error_code = "INVALID_RESPONSE"


class NoSourceFilesError(AuditError):
    """Raised when no file in the repository tree qualifies for analysis"""

    error_code = "NO_SOURCE_FILES"


class IngestionError(AuditError):
    """Raised when ingestion gathered nothing usable or ran out of time"""

    error_code = "INGESTION_ERROR"


class InvalidTransitionError(AuditError):
    """Raised when a run status change is not in the transition table"""

    error_code = "INVALID_TRANSITION"
