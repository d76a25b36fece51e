#!/usr/bin/env python3
"""
End-to-end tests for the audit pipeline.

Runs the real stages, store, SSE parser and LLMManager event handling
against an in-memory SQLite database, a fake GitHub client and a mocked
provider SDK that streams Anthropic-style server-sent events.
"""

import base64
import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Ensure scripts directory is on the path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "scripts"))

from audit_store import AGENT_EVALUATOR, AGENT_INGESTION, AGENT_SECURITY_ANALYST, AuditStore
from evaluator import score
from exceptions import GitHubError
from github_client import Blob, RepoTree, TreeEntry
from incremental_parser import IncrementalRecordParser
from orchestrator.llm_manager import LLMManager
from pipeline import AuditRun, PipelineOrchestrator, RunStatus, build_default_stages
from run_repo_audit import EXIT_INVALID, main, run_audit

FINDINGS = [
    {
        "category": "injection",
        "severity": "critical",
        "title": "SQL Injection",
        "description": "User input is concatenated into a query. Attackers can read any table.",
        "filePath": "app/db.py",
        "fix": "Use parameterized queries",
    },
    {
        "category": "secrets",
        "level": "high",
        "title": "Hardcoded API key",
        "description": "A live key is committed to the repository.",
        "file_path": "config.py",
    },
    {
        "category": "xss",
        "severity": "medium",
        "title": "Reflected XSS",
        "description": "Query parameters are echoed without escaping.",
    },
]


class FakeClock:
    """Monotonic clock advancing by *step* seconds on every read."""

    def __init__(self, step=0.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


class FakeGitHub:
    def __init__(self, files, errors=None, commit="c0ffee"):
        self.files = files
        self.errors = errors or {}
        self.commit = commit
        self.blob_calls = []

    def fetch_tree(self, owner, repo):
        entries = [TreeEntry(path=path, type="blob", sha=f"sha-{path}") for path in self.files]
        entries.append(TreeEntry(path="src", type="tree", sha="sha-src"))
        return RepoTree(commit_hash=self.commit, entries=entries)

    def fetch_blob(self, owner, repo, sha):
        path = sha[len("sha-"):]
        self.blob_calls.append(path)
        if path in self.errors:
            raise self.errors[path]
        encoded = base64.b64encode(self.files[path].encode("utf-8")).decode("ascii")
        return Blob(content=encoded, encoding="base64", size=len(self.files[path]))


def sse(name, payload):
    return f"event: {name}\ndata: {json.dumps(payload)}\n\n"


def anthropic_stream(text, piece=17, chunk=23, stop=True, input_tokens=1500, output_tokens=420):
    """Encode *text* as an Anthropic event stream, re-split into arbitrary network chunks."""
    body = sse("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": input_tokens, "output_tokens": 1}}})
    for i in range(0, len(text), piece):
        body += sse(
            "content_block_delta",
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text[i:i + piece]}},
        )
    body += sse("message_delta", {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": output_tokens}})
    if stop:
        body += sse("message_stop", {"type": "message_stop"})
    return [body[i:i + chunk] for i in range(0, len(body), chunk)]


def streaming_llm(chunks):
    manager = LLMManager({"ai_provider": "anthropic"})
    manager.client = MagicMock()
    manager.provider = "anthropic"
    manager.model = "test-model"
    response = MagicMock()
    response.iter_text.return_value = chunks
    create = manager.client.messages.with_streaming_response.create
    create.return_value.__enter__.return_value = response
    create.return_value.__exit__.return_value = False
    return manager


def config(**overrides):
    values = {
        "streaming": True,
        "max_findings": 50,
        "max_blob_fetches": 500,
        "max_duration_seconds": 540,
        "token_limit": 200000,
        "chars_per_token": 4,
        "stream_update_interval_seconds": 0.0,
        "stream_update_min_chars": 1,
    }
    values.update(overrides)
    return values


REPO_FILES = {
    "README.md": "# hello",
    "logo.png": "binary",
    "app/db.py": "query = 'SELECT * FROM t WHERE id=' + user_id\n",
    "config.py": "API_KEY = 'sk-live-123'\n",
    "package.json": '{"name": "hello"}',
    "web/views.js": "res.send(req.query.q)\n",
}


@pytest.fixture
def store():
    s = AuditStore()
    yield s
    s.close()


def execute(store, github, llm, cfg=None, clock=None):
    cfg = cfg or config()
    run = AuditRun(owner="octo", repo="hello")
    store.create_run(run)
    pipeline = PipelineOrchestrator(build_default_stages(), cfg)
    ctx = pipeline.build_context(run, store, github=github, llm=llm, clock=clock or FakeClock())
    statuses = []
    real_update = store.update_status

    def record(run_id, status):
        statuses.append(status)
        return real_update(run_id, status)

    with patch.object(store, "update_status", side_effect=record):
        ctx, results = pipeline.run(ctx)
    return ctx, results, statuses


class TestSuccessfulAudit:
    def test_streamed_run_completes(self, store):
        text = json.dumps({"vulnerabilities": FINDINGS})
        github = FakeGitHub(REPO_FILES)
        llm = streaming_llm(anthropic_stream(text))

        ctx, _, statuses = execute(store, github, llm)
        run_id = ctx.run.run_id

        assert statuses == [
            RunStatus.FETCHING, RunStatus.ANALYZING, RunStatus.EVALUATING, RunStatus.COMPLETE,
        ]
        stored = store.get_run(run_id)
        assert stored.status is RunStatus.COMPLETE
        assert stored.commit_hash == "c0ffee"
        assert stored.truncated is False
        assert stored.stats.total_files == 4
        assert stored.stats.included_files == 4
        assert "README.md" not in github.blob_calls
        assert "logo.png" not in github.blob_calls
        # security-sensitive paths are fetched first
        assert github.blob_calls[0] == "config.py"

        findings = store.list_findings(run_id)
        assert [f.title for f in findings] == [f["title"] for f in FINDINGS]
        assert [f.seq_number for f in findings] == [1, 2, 3]
        prefix = run_id[0].upper()
        assert [f.display_id for f in findings] == [f"SEC-{prefix}-00{n}" for n in (1, 2, 3)]
        assert findings[0].file_path == "app/db.py"
        assert findings[1].severity.value == "high"

        events = store.list_events(run_id)
        agents = [e["agent"] for e in events]
        assert agents == [AGENT_INGESTION] * 3 + [AGENT_SECURITY_ANALYST] * 3 + [AGENT_EVALUATOR]
        assert events[3]["message"].startswith("Found SQL Injection in app/db.py.")
        assert [e["finding_id"] is not None for e in events[3:6]] == [True] * 3

        evaluation = store.get_evaluation(run_id)
        assert evaluation.finding_count == 3
        assert evaluation.probability == score(findings)
        assert events[-1]["message"] == evaluation.executive_summary

        [inference] = store.list_inferences(run_id)
        assert inference["status"] == "complete"
        assert inference["response"] == text
        assert (inference["input_tokens"], inference["output_tokens"]) == (1500, 420)
        assert inference["agent"] == AGENT_SECURITY_ANALYST

    def test_findings_persisted_while_stream_is_open(self, store):
        text = json.dumps({"vulnerabilities": FINDINGS})
        chunks = anthropic_stream(text)
        observed = []
        holder = {}

        def watching():
            for chunk in chunks:
                if "run_id" in holder:
                    observed.append(len(store.list_findings(holder["run_id"])))
                yield chunk

        llm = streaming_llm(watching())
        original_create_run = store.create_run

        def capture(run):
            holder["run_id"] = run.run_id
            return original_create_run(run)

        store.create_run = capture
        execute(store, FakeGitHub(REPO_FILES), llm)

        assert observed == sorted(observed)
        assert 0 in observed
        # some findings were visible before the final chunk was read
        assert observed[-1] >= 1

    def test_empty_findings_scores_100(self, store):
        llm = streaming_llm(anthropic_stream('{"vulnerabilities": []}'))
        ctx, _, _ = execute(store, FakeGitHub(REPO_FILES), llm)
        assert ctx.run.status is RunStatus.COMPLETE
        assert store.get_evaluation(ctx.run.run_id).probability == 100
        assert store.list_findings(ctx.run.run_id) == []

    def test_code_fenced_response(self, store):
        text = "```json\n" + json.dumps({"vulnerabilities": FINDINGS[:1]}) + "\n```"
        ctx, _, _ = execute(store, FakeGitHub(REPO_FILES), streaming_llm(anthropic_stream(text)))
        assert ctx.run.status is RunStatus.COMPLETE
        assert len(store.list_findings(ctx.run.run_id)) == 1

    def test_non_streaming_mode(self, store):
        llm = streaming_llm([])
        block = MagicMock(type="text", text=json.dumps({"vulnerabilities": FINDINGS}))
        message = MagicMock(content=[block])
        message.usage.input_tokens = 11
        message.usage.output_tokens = 22
        llm.client.messages.create.return_value = message

        ctx, _, _ = execute(store, FakeGitHub(REPO_FILES), llm, config(streaming=False))

        assert ctx.run.status is RunStatus.COMPLETE
        assert not llm.client.messages.with_streaming_response.create.called
        assert len(store.list_findings(ctx.run.run_id)) == 3
        [inference] = store.list_inferences(ctx.run.run_id)
        assert (inference["input_tokens"], inference["output_tokens"]) == (11, 22)

    def test_finding_cap(self, store):
        text = json.dumps({"vulnerabilities": FINDINGS})
        ctx, results, _ = execute(
            store, FakeGitHub(REPO_FILES), streaming_llm(anthropic_stream(text)), config(max_findings=2)
        )
        assert ctx.run.status is RunStatus.COMPLETE
        assert len(store.list_findings(ctx.run.run_id)) == 2
        assert results[1].metadata["dropped_findings"] == 1

    def test_strict_parse_recovers_missed_findings(self, store):
        class SilentParser(IncrementalRecordParser):
            def _commit(self, element):
                return None

        text = json.dumps({"vulnerabilities": FINDINGS})
        with patch("pipeline.stages.IncrementalRecordParser", SilentParser):
            ctx, _, _ = execute(store, FakeGitHub(REPO_FILES), streaming_llm(anthropic_stream(text)))

        assert ctx.run.status is RunStatus.COMPLETE
        assert [f.seq_number for f in store.list_findings(ctx.run.run_id)] == [1, 2, 3]

    def test_other_arrays_do_not_produce_findings(self, store):
        text = json.dumps({"reviewed": FINDINGS[:2], "vulnerabilities": FINDINGS[2:]})
        ctx, _, _ = execute(store, FakeGitHub(REPO_FILES), streaming_llm(anthropic_stream(text)))

        assert ctx.run.status is RunStatus.COMPLETE
        findings = store.list_findings(ctx.run.run_id)
        assert [f.title for f in findings] == ["Reflected XSS"]
        assert store.get_evaluation(ctx.run.run_id).finding_count == 1

    def test_streaming_text_written_during_stream(self, store):
        text = json.dumps({"vulnerabilities": FINDINGS})
        writes = []
        real_update = store.update_streaming_text

        def record(inference_id, partial):
            writes.append(partial)
            return real_update(inference_id, partial)

        store.update_streaming_text = record
        execute(store, FakeGitHub(REPO_FILES), streaming_llm(anthropic_stream(text)))

        assert writes
        assert all(text.startswith(w) for w in writes)
        assert [len(w) for w in writes] == sorted(len(w) for w in writes)


class TestIngestionFailures:
    def test_no_source_files(self, store):
        github = FakeGitHub({"README.md": "# hi", "docs/guide.md": "x", "logo.png": "y"})
        llm = streaming_llm([])

        ctx, _, statuses = execute(store, github, llm)

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error == "No source code files found in repository"
        assert stored.error_code == "NO_SOURCE_FILES"
        assert RunStatus.ANALYZING not in statuses
        assert store.list_inferences(ctx.run.run_id) == []
        assert github.blob_calls == []

    def test_blob_rate_limit_fails_immediately(self, store):
        limit = GitHubError("GitHub rate limit hit. Try again in 3 minutes.", error_code="RATE_LIMIT")
        github = FakeGitHub(REPO_FILES, errors={"app/db.py": limit})

        ctx, _, statuses = execute(store, github, streaming_llm([]))

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_code == "RATE_LIMIT"
        assert github.blob_calls[-1] == "app/db.py"
        assert RunStatus.ANALYZING not in statuses

    def test_other_blob_errors_are_skipped(self, store):
        missing = GitHubError("Repository not found", error_code="NOT_FOUND")
        github = FakeGitHub(REPO_FILES, errors={"config.py": missing})

        ctx, _, _ = execute(
            store, github, streaming_llm(anthropic_stream('{"vulnerabilities": []}'))
        )

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.COMPLETE
        assert stored.stats.skipped_files == 1
        assert stored.stats.included_files == 3
        assert "config.py" not in {f.path for f in ctx.files}

    def test_budget_exhausted_before_first_file(self, store):
        github = FakeGitHub(REPO_FILES)

        ctx, _, statuses = execute(
            store,
            github,
            streaming_llm([]),
            config(max_duration_seconds=1),
            clock=FakeClock(step=5.0),
        )

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_code == "NO_FILE_CONTENTS"
        assert stored.error == "Failed to fetch any file contents from repository"
        assert statuses == [RunStatus.FETCHING]
        assert github.blob_calls == []

    def test_every_blob_skipped(self, store):
        missing = GitHubError("Repository not found", error_code="NOT_FOUND")
        errors = {path: missing for path in REPO_FILES}
        github = FakeGitHub(REPO_FILES, errors=errors)

        ctx, _, statuses = execute(store, github, streaming_llm([]))

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_code == "NO_FILE_CONTENTS"
        assert statuses == [RunStatus.FETCHING]
        assert len(github.blob_calls) == 4
        assert store.list_inferences(ctx.run.run_id) == []

    def test_tree_error_fails_run(self, store):
        github = MagicMock()
        github.fetch_tree.side_effect = GitHubError("Repository not found", error_code="NOT_FOUND")

        ctx, _, _ = execute(store, github, streaming_llm([]))

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_code == "NOT_FOUND"

    def test_count_budget_truncates(self, store):
        text = '{"vulnerabilities": []}'
        ctx, _, _ = execute(
            store, FakeGitHub(REPO_FILES), streaming_llm(anthropic_stream(text)), config(max_blob_fetches=2)
        )

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.COMPLETE
        assert stored.truncated is True
        assert (stored.stats.included_files, stored.stats.total_files) == (2, 4)
        messages = [e["message"] for e in store.list_events(ctx.run.run_id)]
        assert "Ingestion complete. 2/4 files loaded (budget reached). Starting analysis..." in messages

    def test_token_budget_truncates(self, store):
        files = {"a.py": "x" * 400, "b.py": "y" * 400, "c.py": "z" * 400}
        ctx, _, _ = execute(
            store,
            FakeGitHub(files),
            streaming_llm(anthropic_stream('{"vulnerabilities": []}')),
            config(token_limit=250),
        )
        stored = store.get_run(ctx.run.run_id)
        assert stored.truncated is True
        assert stored.stats.included_files == 2
        assert stored.stats.included_tokens == 200

    def test_wall_clock_exhausted_fails_with_timeout(self, store):
        ctx, _, statuses = execute(
            store,
            FakeGitHub(REPO_FILES),
            streaming_llm([]),
            config(max_duration_seconds=10),
            clock=FakeClock(step=3.0),
        )

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_code == "TIMEOUT"
        assert stored.truncated is True
        assert store.list_inferences(ctx.run.run_id) == []

    def test_unexpected_error_is_internal(self, store):
        github = MagicMock()
        github.fetch_tree.side_effect = RuntimeError("socket exploded")

        ctx, _, _ = execute(store, github, streaming_llm([]))

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_code == "INTERNAL_ERROR"


class TestAnalysisFailures:
    def test_invalid_response(self, store):
        llm = streaming_llm(anthropic_stream("I'm sorry, I can't review this code."))

        ctx, _, _ = execute(store, FakeGitHub(REPO_FILES), llm)

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_code == "INVALID_RESPONSE"
        [inference] = store.list_inferences(ctx.run.run_id)
        assert inference["status"] == "failed"
        assert store.get_evaluation(ctx.run.run_id) is None

    def test_truncated_stream_keeps_surfaced_findings(self, store):
        full = json.dumps({"vulnerabilities": FINDINGS})
        cut = full[: full.index('"Hardcoded API key"')]
        llm = streaming_llm(anthropic_stream(cut, stop=False))

        ctx, _, _ = execute(store, FakeGitHub(REPO_FILES), llm)

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.COMPLETE
        assert [f.title for f in store.list_findings(ctx.run.run_id)] == ["SQL Injection"]
        assert store.get_evaluation(ctx.run.run_id).finding_count == 1

    def test_stream_error_event(self, store):
        chunks = anthropic_stream('{"vulnerabilities": [', stop=False)
        chunks.append(sse("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}))

        ctx, _, _ = execute(store, FakeGitHub(REPO_FILES), streaming_llm(chunks))

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_code == "RATE_LIMIT"
        [inference] = store.list_inferences(ctx.run.run_id)
        assert inference["status"] == "failed"

    def test_stream_connection_dropped(self, store):
        def dropping():
            yield from anthropic_stream('{"vulnerabilities": [', stop=False)[:3]
            raise ConnectionResetError("connection reset by peer")

        ctx, _, _ = execute(store, FakeGitHub(REPO_FILES), streaming_llm(dropping()))

        stored = store.get_run(ctx.run.run_id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_code == "NETWORK_ERROR"


class TestRunAuditEntryPoint:
    def test_run_audit_returns_terminal_run(self, store):
        run = run_audit(
            "octo",
            "hello",
            config(),
            store,
            github=FakeGitHub(REPO_FILES),
            llm=streaming_llm(anthropic_stream('{"vulnerabilities": []}')),
        )
        assert run.status is RunStatus.COMPLETE
        assert store.get_run(run.run_id).status is RunStatus.COMPLETE

    def test_main_rejects_invalid_url(self, capsys):
        assert main(["https://gitlab.com/octo/hello"]) == EXIT_INVALID
        assert "Invalid GitHub URL" in capsys.readouterr().err
