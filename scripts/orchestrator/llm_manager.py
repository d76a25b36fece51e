#!/usr/bin/env python3
"""
LLM Provider Management Module
Centralized management for the security-analysis model call.

Supports multiple LLM providers:
- Anthropic (Claude)
- OpenAI (GPT-4)
- Ollama (local, self-hosted, OpenAI-compatible)

Features:
- Provider auto-detection
- Client initialization with error handling
- Streaming call exposing the raw server-sent-events text
- Per-provider interpretation of stream events into text / usage / done / error
- Non-streaming call for callers that do not need incremental results

Provider exceptions are classified by ``error_classifier`` and re-raised as
``RateLimitError`` or ``LLMError`` with the provider's message intact.
"""

import json
import logging
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Tuple

from error_classifier import to_audit_error
from exceptions import LLMError

# Configure logging
logger = logging.getLogger(__name__)

SECURITY_ANALYST_SYSTEM_PROMPT = """You are an expert security analyst reviewing codebases for vulnerabilities.

Your task is to identify security vulnerabilities in the provided code.

For each vulnerability found, provide:
- category: The type of vulnerability (e.g., "authentication", "authorization", "injection", "exposure", "cryptography", "configuration")
- severity: One of: "low", "medium", "high", "critical"
- title: A short, descriptive title
- description: A detailed explanation of the vulnerability
- impact: What an attacker gains by exploiting it
- filePath: The file path where the vulnerability exists (omit if architectural)
- fix: A recommended remediation (if applicable)

Severity guidelines:
- critical: Immediate exploitation possible, severe impact (data breach, financial loss, RCE)
- high: Exploitation likely, significant impact (privilege escalation, sensitive data exposure)
- medium: Exploitation possible with effort, moderate impact (information disclosure, DoS)
- low: Minor issues, limited impact (best practice violations, minor info leaks)

Respond with only a JSON object containing a "vulnerabilities" array. If no vulnerabilities are found, return an empty array.

Example response:
{
  "vulnerabilities": [
    {
      "category": "authentication",
      "severity": "critical",
      "title": "Unauthenticated Payment Session Creation",
      "description": "The endpoint accepts userId directly from the request body without verifying the caller's identity.",
      "impact": "Any visitor can create checkout sessions on behalf of other users.",
      "filePath": "/api/create-checkout-session.ts",
      "fix": "Replace client-provided userId with server-side session authentication."
    }
  ]
}"""

FILE_SEPARATOR = "\n\n---\n\n"

# Stream signal kinds
SIGNAL_TEXT = "text"
SIGNAL_USAGE = "usage"
SIGNAL_DONE = "done"
SIGNAL_ERROR = "error"
SIGNAL_IGNORE = "ignore"


def build_analysis_prompt(files) -> str:
    """Build the user prompt from ingested files (objects with .path / .content)"""
    file_contents = FILE_SEPARATOR.join(f"// File: {f.path}\n{f.content}" for f in files)
    return (
        "Analyze the following codebase for security vulnerabilities:\n\n"
        f"{file_contents}\n\n"
        "Identify all security vulnerabilities and respond with JSON."
    )


@dataclass
class StreamSignal:
    """Provider-neutral meaning of one stream event"""

    kind: str
    text: str = ""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    stop_reason: Optional[str] = None
    error: Optional[str] = None


_IGNORE = StreamSignal(SIGNAL_IGNORE)


def _load_json(data: str) -> Optional[dict]:
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Ignoring non-JSON stream payload: %.80r", data)
        return None
    return payload if isinstance(payload, dict) else None


def interpret_anthropic_event(name: str, data: str) -> StreamSignal:
    """Translate one Anthropic Messages API stream event"""
    if name == "message_stop":
        return StreamSignal(SIGNAL_DONE)

    payload = _load_json(data)
    if payload is None:
        return _IGNORE

    if name == "content_block_delta":
        delta = payload.get("delta") or {}
        if delta.get("type") == "text_delta":
            return StreamSignal(SIGNAL_TEXT, text=delta.get("text", ""))
        return _IGNORE

    if name == "message_start":
        usage = (payload.get("message") or {}).get("usage") or {}
        return StreamSignal(
            SIGNAL_USAGE,
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        )

    if name == "message_delta":
        usage = payload.get("usage") or {}
        return StreamSignal(
            SIGNAL_USAGE,
            output_tokens=usage.get("output_tokens"),
            stop_reason=(payload.get("delta") or {}).get("stop_reason"),
        )

    if name == "error":
        error = payload.get("error") or {}
        return StreamSignal(
            SIGNAL_ERROR,
            error=f"{error.get('type', 'error')}: {error.get('message', 'stream error')}",
        )

    return _IGNORE


def interpret_openai_event(name: str, data: str) -> StreamSignal:
    """Translate one OpenAI-compatible chat completion stream chunk"""
    if data.strip() == "[DONE]":
        return StreamSignal(SIGNAL_DONE)

    payload = _load_json(data)
    if payload is None:
        return _IGNORE

    if payload.get("error"):
        error = payload["error"]
        message = error.get("message", "stream error") if isinstance(error, dict) else str(error)
        return StreamSignal(SIGNAL_ERROR, error=message)

    usage = payload.get("usage")
    if usage:
        return StreamSignal(
            SIGNAL_USAGE,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
        )

    choices = payload.get("choices") or []
    if choices:
        choice = choices[0]
        text = (choice.get("delta") or {}).get("content") or ""
        if text:
            return StreamSignal(SIGNAL_TEXT, text=text)
        if choice.get("finish_reason"):
            return StreamSignal(SIGNAL_USAGE, stop_reason=choice["finish_reason"])
    return _IGNORE


class LLMManager:
    """Unified LLM provider management

    Handles all interactions with LLM providers including:
    - Provider detection and client initialization
    - Model selection
    - Streaming and non-streaming analysis calls
    - Stream event interpretation per provider
    """

    # Default models for each provider
    DEFAULT_MODELS = {
        "anthropic": "claude-sonnet-4-5-20250929",
        "openai": "gpt-4-turbo-preview",
        "ollama": "llama3.2:3b",
    }

    def __init__(self, config: dict = None):
        """Initialize LLM Manager

        Args:
            config: Configuration dictionary with API keys and settings
        """
        self.config = config or {}
        self.client = None
        self.provider = None
        self.model = None
        self.max_output_tokens = int(self.config.get("max_output_tokens", 8192))
        self.timeout = float(self.config.get("llm_timeout", 300.0))

    def detect_provider(self) -> str:
        """Auto-detect which AI provider to use based on available keys

        Returns:
            Provider name or None if no provider is configured
        """
        provider = self.config.get("ai_provider", "auto")

        # Explicit provider selection (overrides auto-detection)
        if provider != "auto":
            return provider

        # Priority: Anthropic > OpenAI > Ollama (local)
        if self.config.get("anthropic_api_key"):
            return "anthropic"
        elif self.config.get("openai_api_key"):
            return "openai"
        elif self.config.get("ollama_endpoint"):
            return "ollama"
        else:
            logger.warning("No AI provider configured")
            logger.info("Set one of: ANTHROPIC_API_KEY, OPENAI_API_KEY, or OLLAMA_ENDPOINT")
            return None

    def initialize(self, provider: str = None) -> bool:
        """Initialize LLM client for the specified provider

        Args:
            provider: Provider name (if None, will auto-detect)

        Returns:
            True if initialization successful, False otherwise
        """
        if provider is None:
            provider = self.detect_provider()

        if provider is None:
            logger.error("No provider detected or specified")
            return False

        try:
            self.client, self.provider = self._get_client(provider)
            self.model = self.get_model_name(provider)
            logger.info(f"Successfully initialized LLM Manager with {self.provider} / {self.model}")
            return True
        except (ImportError, ValueError) as e:
            logger.error(f"Failed to initialize LLM: {type(e).__name__}: {e}")
            return False

    def _get_client(self, provider: str):
        """Get AI client for the specified provider

        Returns:
            Tuple of (client, provider_name)

        Raises:
            ImportError: If required dependencies are not installed
            ValueError: If API key is not configured
        """
        if provider == "anthropic":
            from anthropic import Anthropic

            api_key = self.config.get("anthropic_api_key")
            if not api_key:
                raise ValueError("ANTHROPIC_API_KEY not set")

            logger.info("Using Anthropic API")
            return Anthropic(api_key=api_key, max_retries=0), "anthropic"

        elif provider == "openai":
            from openai import OpenAI

            api_key = self.config.get("openai_api_key")
            if not api_key:
                raise ValueError("OPENAI_API_KEY not set")

            logger.info("Using OpenAI API")
            return OpenAI(api_key=api_key, max_retries=0), "openai"

        elif provider == "ollama":
            from openai import OpenAI

            endpoint = self.config.get("ollama_endpoint") or "http://localhost:11434"
            # Sanitize endpoint URL for logging
            safe_endpoint = (
                str(endpoint).split("@")[-1] if "@" in str(endpoint) else str(endpoint).split("//")[-1].split("/")[0]
            )
            logger.info(f"Using Ollama endpoint: {safe_endpoint}")
            return OpenAI(base_url=f"{endpoint}/v1", api_key="ollama", max_retries=0), "ollama"

        else:
            safe_provider = str(provider).split("/")[-1] if provider else "unknown"
            logger.error(f"Unknown AI provider: {safe_provider}")
            raise ValueError(f"Unknown provider: {safe_provider}")

    def get_model_name(self, provider: str = None) -> str:
        """Get the appropriate model name for the provider"""
        if provider is None:
            provider = self.provider

        model = self.config.get("model", "auto")

        if model != "auto":
            return model

        return self.DEFAULT_MODELS.get(provider, self.DEFAULT_MODELS["anthropic"])

    def _require_client(self):
        if self.client is None or self.provider is None:
            raise LLMError("LLM Manager not initialized. Call initialize() first.")

    # -- Streaming ------------------------------------------------------------

    def _open_stream(self, system_prompt: str, user_prompt: str):
        """Start a streaming request and return the raw-response context manager"""
        if self.provider == "anthropic":
            return self.client.messages.with_streaming_response.create(
                model=self.model,
                max_tokens=self.max_output_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                stream=True,
                timeout=self.timeout,
            )

        kwargs = {}
        if self.provider == "openai":
            kwargs["stream_options"] = {"include_usage": True}
        return self.client.chat.completions.with_streaming_response.create(
            model=self.model,
            max_tokens=self.max_output_tokens,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            stream=True,
            timeout=self.timeout,
            **kwargs,
        )

    def _iter_chunks(self, response) -> Iterator[str]:
        try:
            for chunk in response.iter_text():
                if chunk:
                    yield chunk
        except Exception as e:
            logger.error("LLM stream broke off: %s: %s", type(e).__name__, e)
            raise to_audit_error(e, self.provider or "") from e

    @contextmanager
    def stream_analysis(self, system_prompt: str, user_prompt: str) -> Iterator[Iterable[str]]:
        """Open a streaming analysis call.

        Yields an iterator of raw server-sent-events text chunks.  Errors
        while connecting or reading are raised as ``RateLimitError`` /
        ``LLMError``; errors raised by the caller pass through untouched.
        """
        self._require_client()
        with ExitStack() as stack:
            try:
                response = stack.enter_context(self._open_stream(system_prompt, user_prompt))
            except Exception as e:
                logger.error("LLM streaming call failed: %s: %s", type(e).__name__, e)
                raise to_audit_error(e, self.provider or "") from e
            yield self._iter_chunks(response)

    def interpret_event(self, name: str, data: str) -> StreamSignal:
        """Translate a parsed SSE event for the active provider"""
        if self.provider == "anthropic":
            return interpret_anthropic_event(name, data)
        return interpret_openai_event(name, data)

    # -- Non-streaming --------------------------------------------------------

    def analyze(self, system_prompt: str, user_prompt: str) -> Tuple[str, int, int]:
        """Run the analysis in one request

        Returns:
            Tuple of (response_text, input_tokens, output_tokens)

        Raises:
            RateLimitError / LLMError: If the API call fails
        """
        self._require_client()

        try:
            if self.provider == "anthropic":
                message = self.client.messages.create(
                    model=self.model,
                    max_tokens=self.max_output_tokens,
                    system=system_prompt,
                    messages=[{"role": "user", "content": user_prompt}],
                    timeout=self.timeout,
                )
                response_text = "".join(
                    block.text for block in message.content if getattr(block, "type", "") == "text"
                )
                input_tokens = message.usage.input_tokens
                output_tokens = message.usage.output_tokens

            else:
                response = self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    max_tokens=self.max_output_tokens,
                    timeout=self.timeout,
                )
                response_text = response.choices[0].message.content or ""
                input_tokens = response.usage.prompt_tokens if response.usage else 0
                output_tokens = response.usage.completion_tokens if response.usage else 0

        except Exception as e:
            logger.error("LLM API call failed: %s: %s", type(e).__name__, e)
            raise to_audit_error(e, self.provider or "") from e

        return response_text, input_tokens, output_tokens


__all__ = [
    "SECURITY_ANALYST_SYSTEM_PROMPT",
    "SIGNAL_TEXT",
    "SIGNAL_USAGE",
    "SIGNAL_DONE",
    "SIGNAL_ERROR",
    "SIGNAL_IGNORE",
    "StreamSignal",
    "LLMManager",
    "build_analysis_prompt",
    "interpret_anthropic_event",
    "interpret_openai_event",
]
