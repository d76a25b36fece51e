#!/usr/bin/env python3
"""
Error Classification for the repository audit pipeline.

Classifies upstream (LLM provider / HTTP) errors into the codes the run
records when it fails:
- rate_limit -> RATE_LIMIT
- auth       -> LLM_ERROR (configuration problem, surfaced verbatim)
- transient  -> NETWORK_ERROR
- permanent  -> LLM_ERROR (fail-safe default)

The core never retries these; retry, if any, belongs to the caller.

Usage:
    from error_classifier import classify_llm_error, to_audit_error

    classified = classify_llm_error(some_exception, provider="anthropic")
    raise to_audit_error(some_exception, provider="anthropic")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from exceptions import LLMError, RateLimitError, UpstreamError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Error type constants
# ---------------------------------------------------------------------------

ERROR_TYPE_RATE_LIMIT = "rate_limit"
ERROR_TYPE_AUTH = "auth"
ERROR_TYPE_TRANSIENT = "transient"
ERROR_TYPE_PERMANENT = "permanent"

# Mapping from error type to the code recorded on a failed run
ERROR_CODES: dict[str, str] = {
    ERROR_TYPE_RATE_LIMIT: "RATE_LIMIT",
    ERROR_TYPE_AUTH: "LLM_ERROR",
    ERROR_TYPE_TRANSIENT: "NETWORK_ERROR",
    ERROR_TYPE_PERMANENT: "LLM_ERROR",
}

# ---------------------------------------------------------------------------
# Pattern registries for error classification
# ---------------------------------------------------------------------------

RATE_LIMIT_PATTERNS: list[str] = [
    "rate limit",
    "rate_limit_error",
    "ratelimiterror",
    "too many requests",
    "throttled",
    "requests per minute",
    "overloaded",
]

AUTH_PATTERNS: list[str] = [
    "invalid api key",
    "authentication",
    "unauthorized",
    "invalid_api_key",
    "permission denied",
    "invalid x-api-key",
]

TRANSIENT_PATTERNS: list[str] = [
    "network",
    "connection",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "temporarily unavailable",
]

# Ordered list for classification priority: more specific patterns first
_PATTERN_REGISTRY: list[tuple[str, list[str]]] = [
    (ERROR_TYPE_AUTH, AUTH_PATTERNS),
    (ERROR_TYPE_RATE_LIMIT, RATE_LIMIT_PATTERNS),
    (ERROR_TYPE_TRANSIENT, TRANSIENT_PATTERNS),
]

# Status codes that decide the type without looking at the message
_STATUS_CODE_TYPES: dict[int, str] = {
    401: ERROR_TYPE_AUTH,
    403: ERROR_TYPE_AUTH,
    429: ERROR_TYPE_RATE_LIMIT,
    529: ERROR_TYPE_RATE_LIMIT,
}


# ---------------------------------------------------------------------------
# ClassifiedError dataclass
# ---------------------------------------------------------------------------


@dataclass
class ClassifiedError:
    """A classified upstream error.

    Attributes:
        error_type: One of rate_limit, auth, transient, permanent.
        original:   The original exception instance.
        context:    Additional context about the error (e.g. HTTP status).
        provider:   The LLM provider that raised the error.
    """

    error_type: str
    original: Exception
    context: dict[str, Any] = field(default_factory=dict)
    provider: str = ""

    @property
    def error_code(self) -> str:
        return ERROR_CODES.get(self.error_type, "LLM_ERROR")

    def __str__(self) -> str:
        return (
            f"ClassifiedError(type={self.error_type}, code={self.error_code}, "
            f"provider={self.provider!r}, original={self.original!r})"
        )


# ---------------------------------------------------------------------------
# Classification function
# ---------------------------------------------------------------------------


def classify_llm_error(
    error: Exception,
    provider: str = "",
) -> ClassifiedError:
    """Classify an upstream error by status code, then by message pattern.

    Parameters
    ----------
    error:
        The exception to classify.
    provider:
        The LLM provider name (e.g. ``"anthropic"``, ``"openai"``).

    Returns
    -------
    ClassifiedError
        The classified error. Unknown errors are ``permanent``.
    """
    context: dict[str, Any] = {"error_class": type(error).__name__}

    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        context["status_code"] = status_code
        error_type = _STATUS_CODE_TYPES.get(status_code)
        if error_type:
            return ClassifiedError(error_type, error, context, provider)

    combined = f"{type(error).__name__} {error}".lower()
    for error_type, patterns in _PATTERN_REGISTRY:
        for pattern in patterns:
            if pattern in combined:
                return ClassifiedError(error_type, error, context, provider)

    if isinstance(error, (ConnectionError, TimeoutError)):
        return ClassifiedError(ERROR_TYPE_TRANSIENT, error, context, provider)

    return ClassifiedError(ERROR_TYPE_PERMANENT, error, context, provider)


def to_audit_error(error: Exception, provider: str = "") -> UpstreamError:
    """Wrap a provider exception in the matching audit exception.

    The original message is kept verbatim so the failed run records exactly
    what the provider said.
    """
    classified = classify_llm_error(error, provider)
    message = str(error) or type(error).__name__
    logger.debug("Classified upstream error: %s", classified)

    if classified.error_type == ERROR_TYPE_RATE_LIMIT:
        return RateLimitError(message)
    return LLMError(message, error_code=classified.error_code)


__all__ = [
    "ClassifiedError",
    "classify_llm_error",
    "to_audit_error",
    "ERROR_CODES",
    "ERROR_TYPE_RATE_LIMIT",
    "ERROR_TYPE_AUTH",
    "ERROR_TYPE_TRANSIENT",
    "ERROR_TYPE_PERMANENT",
    "RATE_LIMIT_PATTERNS",
    "AUTH_PATTERNS",
    "TRANSIENT_PATTERNS",
]
