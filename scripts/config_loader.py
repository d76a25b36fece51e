"""
Configuration Loader for the repository audit pipeline.

Implements a layered configuration system:
    hardcoded defaults < .repo-audit.yml (or --config) < env vars < CLI args

Usage:
    from config_loader import build_config, validate_config
    config = build_config(cli_args=args)
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".repo-audit.yml"

# ---------------------------------------------------------------------------
# Default configuration
# ---------------------------------------------------------------------------

def get_default_config() -> Dict[str, Any]:
    """Return all configuration parameters with their defaults.

    This is the lowest-priority layer.  Every configurable key must appear
    here so that downstream code never needs to guard against missing keys.
    """
    return {
        # -- AI --
        "ai_provider": "auto",
        "model": "auto",
        "anthropic_api_key": "",
        "openai_api_key": "",
        "ollama_endpoint": "",
        "max_output_tokens": 8192,
        "llm_timeout": 300.0,

        # -- Streaming --
        "streaming": True,
        "stream_update_interval_seconds": 1.0,
        "stream_update_min_chars": 200,

        # -- Ingestion budget --
        "max_duration_seconds": 540,
        "max_blob_fetches": 500,
        "token_limit": 200000,
        "chars_per_token": 4,

        # -- Analysis --
        "max_findings": 50,

        # -- GitHub --
        "github_token": "",
        "github_retry_attempts": 2,
        "request_timeout": 30,

        # -- Storage & output --
        "db_path": "audits.db",
        "log_level": "INFO",
    }

# ---------------------------------------------------------------------------
# YAML file
# ---------------------------------------------------------------------------

def flatten_config_file(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a config file into the flat key space.

    Top-level scalars are taken as-is; one level of section nesting
    (``limits:``, ``github:``...) is merged in by key::

        limits:
          max_blob_fetches: 200
        github:
          github_token: ghp_xxx
    """
    flat: Dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                flat[sub_key] = sub_value
        else:
            flat[key] = value
    return flat


def load_config_file(path: Optional[str] = None, search_dir: str = ".") -> Dict[str, Any]:
    """Load the YAML config file and return a flat config dict.

    An explicit *path* must exist.  Without one, ``.repo-audit.yml`` in
    *search_dir* is used if present; otherwise an empty dict is returned.

    Raises
    ------
    FileNotFoundError
        If an explicit *path* does not exist.
    ValueError
        If the file does not hold a YAML mapping.
    """
    if path:
        yml_path = Path(path)
        if not yml_path.is_file():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        yml_path = Path(search_dir) / CONFIG_FILENAME
        if not yml_path.is_file():
            return {}

    logger.info("Loading config from %s", yml_path)
    with open(yml_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {yml_path} must contain a mapping")
    return flatten_config_file(raw)

# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

# Each entry: (tuple of env names checked in order, config key, type tag)
_ENV_MAPPINGS = [
    # AI provider
    (("AI_PROVIDER", "INPUT_AI_PROVIDER"),           "ai_provider",          "str"),
    (("MODEL", "INPUT_MODEL"),                       "model",                "str"),
    (("ANTHROPIC_API_KEY",),                         "anthropic_api_key",    "str"),
    (("OPENAI_API_KEY",),                            "openai_api_key",       "str"),
    (("OLLAMA_ENDPOINT",),                           "ollama_endpoint",      "str"),
    (("MAX_OUTPUT_TOKENS",),                         "max_output_tokens",    "int"),

    # Streaming
    (("REPO_AUDIT_STREAMING",),                      "streaming",            "bool"),

    # Budget
    (("REPO_AUDIT_MAX_DURATION", "MAX_DURATION_SECONDS"), "max_duration_seconds", "float"),
    (("REPO_AUDIT_MAX_BLOB_FETCHES", "MAX_BLOB_FETCHES"), "max_blob_fetches", "int"),
    (("REPO_AUDIT_TOKEN_LIMIT", "TOKEN_LIMIT"),      "token_limit",          "int"),
    (("REPO_AUDIT_MAX_FINDINGS",),                   "max_findings",         "int"),

    # GitHub
    (("GITHUB_TOKEN", "GH_TOKEN"),                   "github_token",         "str"),
    (("GITHUB_RETRY_ATTEMPTS",),                     "github_retry_attempts", "int"),

    # Storage & output
    (("REPO_AUDIT_DB",),                             "db_path",              "str"),
    (("LOG_LEVEL",),                                 "log_level",            "str"),
]


def _coerce(raw: str, type_tag: str) -> Any:
    """Convert a raw env-var string to the appropriate Python type."""
    if type_tag == "bool":
        return raw.lower() in ("true", "1", "yes")
    if type_tag == "int":
        return int(raw)
    if type_tag == "float":
        return float(raw)
    return raw


def load_env_overrides() -> Dict[str, Any]:
    """Load configuration values from explicitly-set environment variables.

    Only variables that are **present** in ``os.environ`` are returned, so
    defaults and file values are not accidentally overwritten.  The first
    name found wins (left-to-right in the mapping tuple).
    """
    overrides: Dict[str, Any] = {}

    for env_names, config_key, type_tag in _ENV_MAPPINGS:
        for env_name in env_names:
            if env_name in os.environ:
                try:
                    overrides[config_key] = _coerce(os.environ[env_name], type_tag)
                except (ValueError, TypeError) as exc:
                    logger.warning(
                        "Ignoring env var %s: could not convert to %s (%s)",
                        env_name, type_tag, exc,
                    )
                break  # first match wins

    return overrides

# ---------------------------------------------------------------------------
# CLI argument extraction
# ---------------------------------------------------------------------------

# Mapping: argparse attribute -> config key
_CLI_ATTR_MAP: Dict[str, str] = {
    "provider": "ai_provider",
    "model": "model",
    "db": "db_path",
    "max_duration": "max_duration_seconds",
    "max_files": "max_blob_fetches",
}


def extract_cli_overrides(args: Any) -> Dict[str, Any]:
    """Extract explicitly-set CLI arguments into a flat config dict.

    Only attributes whose value is not ``None`` are included, so that
    argparse defaults do not shadow earlier layers.
    """
    if args is None:
        return {}

    overrides: Dict[str, Any] = {}
    for attr, config_key in _CLI_ATTR_MAP.items():
        value = getattr(args, attr, None)
        if value is not None:
            overrides[config_key] = value

    if getattr(args, "no_stream", False):
        overrides["streaming"] = False
    if getattr(args, "verbose", False):
        overrides["log_level"] = "DEBUG"

    return overrides

# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

def merge(base: dict, override: dict) -> dict:
    """Merge *override* into *base*.  Only non-None override values win."""
    merged = dict(base)
    for key, value in override.items():
        if value is not None:
            merged[key] = value
    return merged

# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def build_config(
    cli_args: Any = None,
    config_path: Optional[str] = None,
    search_dir: str = ".",
) -> Dict[str, Any]:
    """Build a fully-merged configuration dict.

    Layer precedence (last wins):
        1. Hard-coded defaults          (``get_default_config()``)
        2. YAML config file             (``load_config_file()``)
        3. Environment variables        (``load_env_overrides()``)
        4. CLI arguments                (``extract_cli_overrides()``)

    ``config_path`` falls back to ``cli_args.config`` when not given.
    """
    config = get_default_config()

    if config_path is None and cli_args is not None:
        config_path = getattr(cli_args, "config", None)

    file_values = load_config_file(config_path, search_dir)
    if file_values:
        unknown = sorted(set(file_values) - set(config))
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
            file_values = {k: v for k, v in file_values.items() if k not in unknown}
        config = merge(config, file_values)
        logger.info("Applied config file overrides (%d keys)", len(file_values))

    env_overrides = load_env_overrides()
    if env_overrides:
        config = merge(config, env_overrides)
        logger.debug("Applied %d env-var overrides", len(env_overrides))

    cli_overrides = extract_cli_overrides(cli_args)
    if cli_overrides:
        config = merge(config, cli_overrides)
        logger.debug("Applied %d CLI overrides", len(cli_overrides))

    return config

# ---------------------------------------------------------------------------
# Configuration validation
# ---------------------------------------------------------------------------

_VALID_AI_PROVIDERS = {"auto", "anthropic", "openai", "ollama"}
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_POSITIVE_KEYS = (
    "max_output_tokens",
    "max_duration_seconds",
    "max_blob_fetches",
    "token_limit",
    "chars_per_token",
    "max_findings",
    "github_retry_attempts",
    "request_timeout",
)


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Validate a configuration dict and return a list of warnings/errors.

    Messages starting with ``ERROR:`` make the config unusable; ``WARNING:``
    messages are informational.  An empty list means the config is valid.
    """
    issues: List[str] = []

    # -- API key requirements per provider --
    provider = config.get("ai_provider", "auto")
    if provider not in _VALID_AI_PROVIDERS:
        issues.append(
            f"ERROR: Invalid ai_provider '{provider}'. "
            f"Must be one of: {', '.join(sorted(_VALID_AI_PROVIDERS))}"
        )
    if provider == "anthropic" and not config.get("anthropic_api_key"):
        issues.append(
            "ERROR: ai_provider is 'anthropic' but ANTHROPIC_API_KEY is not set."
        )
    if provider == "openai" and not config.get("openai_api_key"):
        issues.append(
            "ERROR: ai_provider is 'openai' but OPENAI_API_KEY is not set."
        )
    if provider == "ollama" and not config.get("ollama_endpoint"):
        issues.append(
            "WARNING: ai_provider is 'ollama' but OLLAMA_ENDPOINT is not set. "
            "Defaulting to http://localhost:11434."
        )
    if provider == "auto":
        has_any = (
            config.get("anthropic_api_key")
            or config.get("openai_api_key")
            or config.get("ollama_endpoint")
        )
        if not has_any:
            issues.append(
                "ERROR: ai_provider is 'auto' but no API keys or endpoints are "
                "configured.  Set ANTHROPIC_API_KEY, OPENAI_API_KEY or OLLAMA_ENDPOINT."
            )

    if not config.get("github_token"):
        issues.append(
            "WARNING: GITHUB_TOKEN is not set; anonymous GitHub requests are "
            "limited to 60 per hour."
        )

    # -- Numeric range checks --
    for key in _POSITIVE_KEYS:
        value = config.get(key)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
            issues.append(f"ERROR: {key} must be a positive number (got {value!r}).")

    interval = config.get("stream_update_interval_seconds", 1.0)
    if not isinstance(interval, (int, float)) or interval < 0:
        issues.append("ERROR: stream_update_interval_seconds must be >= 0.")

    min_chars = config.get("stream_update_min_chars", 200)
    if not isinstance(min_chars, int) or min_chars < 0:
        issues.append("ERROR: stream_update_min_chars must be >= 0.")

    if str(config.get("log_level", "INFO")).upper() not in _VALID_LOG_LEVELS:
        issues.append(f"ERROR: Invalid log_level '{config.get('log_level')}'.")

    return issues


def has_errors(issues: List[str]) -> bool:
    return any(issue.startswith("ERROR:") for issue in issues)
