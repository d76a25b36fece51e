#!/usr/bin/env python3
"""
Repository Security Audit - command-line entry point.

Audits a public GitHub repository: ingests its source files, streams a
security analysis from the configured LLM provider and prints a
deterministic safety score.

Usage:
    python scripts/run_repo_audit.py https://github.com/owner/repo
    python scripts/run_repo_audit.py https://github.com/owner/repo --provider openai --json

Exit codes: 0 complete, 1 failed, 2 invalid input or configuration.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Ensure scripts dir is importable when run as a script
_SCRIPT_DIR = Path(__file__).resolve().parent
if str(_SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(_SCRIPT_DIR))

from audit_store import AuditStore  # noqa: E402
from config_loader import build_config, has_errors, validate_config  # noqa: E402
from github_client import GitHubClient, parse_github_url  # noqa: E402
from orchestrator.llm_manager import LLMManager  # noqa: E402
from pipeline import AuditRun, PipelineOrchestrator, RunStatus, build_default_stages  # noqa: E402

logger = logging.getLogger(__name__)

EXIT_COMPLETE = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Audit a GitHub repository for security vulnerabilities"
    )
    parser.add_argument("repo_url", help="https://github.com/<owner>/<repo>")
    parser.add_argument("--config", help="Path to a YAML config file (default: ./.repo-audit.yml)")
    parser.add_argument(
        "--provider",
        choices=["auto", "anthropic", "openai", "ollama"],
        help="AI provider (default: auto-detect from API keys)",
    )
    parser.add_argument("--model", help="Model name (default: provider default)")
    parser.add_argument("--db", help="SQLite database path (default: audits.db)")
    parser.add_argument("--max-files", type=int, help="Maximum files to ingest (default: 500)")
    parser.add_argument("--max-duration", type=float, help="Ingestion wall-clock ceiling in seconds")
    parser.add_argument("--no-stream", action="store_true", help="Use a single non-streaming model call")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def run_audit(
    owner: str,
    repo: str,
    config: Dict[str, Any],
    store: AuditStore,
    github: Optional[GitHubClient] = None,
    llm: Optional[LLMManager] = None,
) -> AuditRun:
    """Create a run for ``owner/repo`` and drive it to a terminal status."""
    run = AuditRun(owner=owner, repo=repo)
    store.create_run(run)

    pipeline = PipelineOrchestrator(build_default_stages(), config)
    ctx = pipeline.build_context(
        run,
        store,
        github=github or GitHubClient.from_config(config),
        llm=llm,
    )
    pipeline.run(ctx)
    return run


def format_result(run: AuditRun, store: AuditStore) -> Dict[str, Any]:
    findings = store.list_findings(run.run_id)
    evaluation = store.get_evaluation(run.run_id)
    return {
        "run_id": run.run_id,
        "repo_url": run.repo_url,
        "commit_hash": run.commit_hash,
        "status": run.status.value,
        "truncated": run.truncated,
        "stats": run.stats.model_dump() if run.stats else None,
        "error": run.error,
        "error_code": run.error_code,
        "findings": [f.model_dump(mode="json") for f in findings],
        "evaluation": evaluation.model_dump() if evaluation else None,
    }


def print_text_result(result: Dict[str, Any]) -> None:
    print(f"\nRepository: {result['repo_url']}")
    if result["commit_hash"]:
        print(f"Commit:     {result['commit_hash']}")
    print(f"Status:     {result['status']}")

    if result["status"] == RunStatus.FAILED.value:
        print(f"Error:      [{result['error_code']}] {result['error']}")
        return

    stats = result["stats"] or {}
    suffix = " (budget reached)" if result["truncated"] else ""
    print(
        f"Files:      {stats.get('included_files', 0)}/{stats.get('total_files', 0)} "
        f"analyzed{suffix}"
    )

    findings: List[Dict[str, Any]] = result["findings"]
    if findings:
        print(f"\nFindings ({len(findings)}):")
        for finding in findings:
            location = f" [{finding['file_path']}]" if finding.get("file_path") else ""
            print(
                f"  {finding['display_id']}  {finding['severity'].upper():8}  "
                f"{finding['title']}{location}"
            )

    evaluation = result["evaluation"]
    if evaluation:
        print(f"\nSafety probability: {evaluation['probability']}%")
        print(evaluation["executive_summary"])


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(cli_args=args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_INVALID

    logging.basicConfig(
        level=getattr(logging, str(config["log_level"]).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parsed = parse_github_url(args.repo_url)
    if parsed is None:
        print(f"Invalid GitHub URL: {args.repo_url}", file=sys.stderr)
        return EXIT_INVALID
    owner, repo = parsed

    issues = validate_config(config)
    for issue in issues:
        logger.warning(issue)
    if has_errors(issues):
        print("Configuration errors:\n  " + "\n  ".join(issues), file=sys.stderr)
        return EXIT_INVALID

    llm = LLMManager(config)
    if not llm.initialize():
        print("Could not initialize the AI provider; see log for details.", file=sys.stderr)
        return EXIT_INVALID

    store = AuditStore(config["db_path"])
    try:
        run = run_audit(owner, repo, config, store, llm=llm)
        result = format_result(run, store)
    finally:
        store.close()

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print_text_result(result)

    return EXIT_COMPLETE if run.status == RunStatus.COMPLETE else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
