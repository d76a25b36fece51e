"""
Concrete Pipeline Stages - the three phases of an audit run.

    IngestionStage   (fetching)    tree + budgeted blob loop
    AnalysisStage    (analyzing)   streamed model call, findings surfaced live
    EvaluationStage  (evaluating)  deterministic score and summary

Stages raise ``AuditError`` subclasses for anything that should fail the run;
``BaseStage.execute`` turns those into a failed ``StageResult`` and the
orchestrator records the cause.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from error_classifier import to_audit_error
from evaluator import analyst_message, display_id, evaluate
from exceptions import (
    AuditError,
    GitHubError,
    IngestionError,
    InvalidResponseError,
    LLMError,
    NoSourceFilesError,
)
from file_filter import should_include_file
from incremental_parser import IncrementalRecordParser
from orchestrator.llm_manager import (
    SECURITY_ANALYST_SYSTEM_PROMPT,
    SIGNAL_DONE,
    SIGNAL_ERROR,
    SIGNAL_TEXT,
    SIGNAL_USAGE,
    build_analysis_prompt,
)
from resource_budget import LIMIT_TOKENS, BudgetState, file_priority
from schemas.pipeline import (
    Finding,
    IngestStats,
    PersistedFinding,
    SourceFile,
    parse_analysis_response,
)
from sse_parser import EventStreamParser

from .base_stage import BaseStage
from .protocol import PipelineContext
from .run_state import (
    AGENT_EVALUATOR,
    AGENT_INGESTION,
    AGENT_SECURITY_ANALYST,
    RunStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_FINDINGS = 50
DEFAULT_UPDATE_INTERVAL_SECONDS = 1.0
DEFAULT_UPDATE_MIN_CHARS = 200

NO_SOURCE_FILES_MESSAGE = "No source code files found in repository"
NO_FILE_CONTENTS_MESSAGE = "Failed to fetch any file contents from repository"
INGESTION_TIMEOUT_MESSAGE = "Audit timed out during ingestion. Try a smaller repository."


# ============================================================================
# Phase 1: Ingestion
# ============================================================================


class IngestionStage(BaseStage):
    """Phase 1: Fetch the repository tree and as many source files as the budget allows."""

    name = "ingestion"
    display_name = "Phase 1: Repository Ingestion"
    phase_number = 1.0
    status = RunStatus.FETCHING

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        run = ctx.run
        budget = ctx.budget
        state = BudgetState(start_time=ctx.clock())
        ctx.start_time = state.start_time

        ctx.add_event(AGENT_INGESTION, f"Fetching repository {run.owner}/{run.repo} from GitHub...")
        tree = ctx.github.fetch_tree(run.owner, run.repo)
        run.commit_hash = tree.commit_hash

        candidates = [
            entry for entry in tree.entries
            if entry.type == "blob" and should_include_file(entry.path)
        ]
        if not candidates:
            raise NoSourceFilesError(NO_SOURCE_FILES_MESSAGE)

        logger.info(
            "%d of %d tree entries qualify for analysis", len(candidates), len(tree.entries)
        )
        ctx.add_event(
            AGENT_INGESTION, f"Found {len(candidates)} source files. Fetching contents..."
        )
        candidates.sort(key=lambda entry: (file_priority(entry.path), entry.path))

        skipped = 0
        limit_hit: Optional[str] = None
        for entry in candidates:
            limit_hit = budget.exhausted_before_fetch(state, ctx.clock())
            if limit_hit:
                break

            try:
                blob = ctx.github.fetch_blob(run.owner, run.repo, entry.sha)
            except GitHubError as exc:
                if exc.is_rate_limit:
                    raise
                skipped += 1
                logger.warning("Skipping %s: [%s] %s", entry.path, exc.error_code, exc)
                continue

            content = blob.decode()
            tokens = budget.estimate_tokens(content)
            if budget.is_over_tokens(state.tokens_consumed, tokens):
                limit_hit = LIMIT_TOKENS
                break

            ctx.files.append(SourceFile(path=entry.path, content=content, tokens=tokens))
            state.record(tokens)

        if limit_hit:
            ctx.truncated = True
            logger.info(
                "Ingestion budget reached (%s) after %d files", limit_hit, len(ctx.files)
            )

        if not ctx.files:
            raise IngestionError(NO_FILE_CONTENTS_MESSAGE, error_code="NO_FILE_CONTENTS")

        ctx.stats = IngestStats(
            total_files=len(candidates),
            included_files=len(ctx.files),
            skipped_files=skipped,
            included_tokens=state.tokens_consumed,
        )
        run.truncated = ctx.truncated
        run.stats = ctx.stats
        ctx.store.update_ingest_stats(run.run_id, run.commit_hash, ctx.truncated, ctx.stats)

        if ctx.truncated:
            message = (
                f"Ingestion complete. {len(ctx.files)}/{len(candidates)} files loaded "
                "(budget reached). Starting analysis..."
            )
        else:
            message = f"Ingestion complete. {len(ctx.files)} files loaded. Starting analysis..."
        ctx.add_event(AGENT_INGESTION, message)

        return {
            "total_files": len(candidates),
            "included_files": len(ctx.files),
            "skipped_files": skipped,
            "included_tokens": state.tokens_consumed,
            "truncated": ctx.truncated,
            "limit": limit_hit,
        }


# ============================================================================
# Phase 2: Security analysis
# ============================================================================


class StreamingTextThrottle:
    """Write the raw streaming text at most once per interval, and only after
    enough new characters have arrived since the last write."""

    def __init__(
        self,
        write: Callable[[str], None],
        clock: Callable[[], float],
        interval_seconds: float = DEFAULT_UPDATE_INTERVAL_SECONDS,
        min_chars: int = DEFAULT_UPDATE_MIN_CHARS,
    ):
        self._write = write
        self._clock = clock
        self.interval_seconds = interval_seconds
        self.min_chars = min_chars
        self._last_time = clock()
        self._last_length = 0
        self.writes = 0

    def offer(self, text: str) -> bool:
        """Write *text* if both thresholds are met.  Returns whether it wrote."""
        now = self._clock()
        if len(text) - self._last_length < self.min_chars:
            return False
        if now - self._last_time < self.interval_seconds:
            return False
        self._write(text)
        self._last_time = now
        self._last_length = len(text)
        self.writes += 1
        return True


class AnalysisSession:
    """State for one streamed analysis call.

    Findings are persisted the moment the incremental parser surfaces them.
    ``finalize`` runs the end-of-stream handling and is safe to call more
    than once; only the first call does anything.
    """

    def __init__(self, ctx: PipelineContext, inference_id: int):
        self.ctx = ctx
        self.inference_id = inference_id
        self.records = IncrementalRecordParser()
        self.max_findings = int(ctx.config.get("max_findings", DEFAULT_MAX_FINDINGS))
        self.throttle = StreamingTextThrottle(
            write=lambda text: ctx.store.update_streaming_text(inference_id, text),
            clock=ctx.clock,
            interval_seconds=float(
                ctx.config.get("stream_update_interval_seconds", DEFAULT_UPDATE_INTERVAL_SECONDS)
            ),
            min_chars=int(ctx.config.get("stream_update_min_chars", DEFAULT_UPDATE_MIN_CHARS)),
        )
        self.input_tokens = 0
        self.output_tokens = 0
        self.stop_reason: Optional[str] = None
        self.dropped = 0
        self.finalized = False

    # -- Signals --------------------------------------------------------------

    def handle_signal(self, signal) -> None:
        if signal.kind == SIGNAL_TEXT:
            if self.finalized:
                logger.debug("Ignoring text after stream completion")
                return
            for finding in self.records.feed(signal.text):
                persist_finding(self.ctx, finding, self)
            self.throttle.offer(self.records.text)
        elif signal.kind == SIGNAL_USAGE:
            if signal.input_tokens is not None:
                self.input_tokens = signal.input_tokens
            if signal.output_tokens is not None:
                self.output_tokens = signal.output_tokens
            if signal.stop_reason:
                self.stop_reason = signal.stop_reason
        elif signal.kind == SIGNAL_ERROR:
            raise to_audit_error(LLMError(signal.error or "stream error"), self.ctx.llm.provider or "")
        elif signal.kind == SIGNAL_DONE:
            self.finalize()

    # -- Completion -----------------------------------------------------------

    def finalize(self) -> None:
        if self.finalized:
            return
        self.finalized = True

        text = self.records.text
        surfaced = self.records.parsed_count()
        if self.stop_reason in ("max_tokens", "length"):
            logger.warning("Model output hit the token ceiling (%s)", self.stop_reason)

        try:
            strict = parse_analysis_response(text)
        except InvalidResponseError as exc:
            if surfaced == 0:
                raise
            logger.warning(
                "Keeping %d streamed findings from a truncated response: %s", surfaced, exc
            )
        else:
            missed = strict[surfaced:]
            if missed:
                logger.info("Strict parse recovered %d findings the stream missed", len(missed))
            for finding in missed:
                persist_finding(self.ctx, finding, self)

        self.ctx.store.complete_inference(
            self.inference_id, text, self.input_tokens, self.output_tokens
        )
        logger.info(
            "Analysis finished: %d findings, %d input / %d output tokens",
            len(self.ctx.findings),
            self.input_tokens,
            self.output_tokens,
        )


def persist_finding(
    ctx: PipelineContext, finding: Finding, session: AnalysisSession
) -> Optional[PersistedFinding]:
    """Store *finding* with the next sequence number and post its feed message."""
    if len(ctx.findings) >= session.max_findings:
        session.dropped += 1
        logger.warning(
            "Finding cap of %d reached; dropping '%s'", session.max_findings, finding.title
        )
        return None

    run_id = ctx.run.run_id
    seq_number = len(ctx.findings) + 1
    persisted = PersistedFinding(
        **finding.model_dump(),
        run_id=run_id,
        seq_number=seq_number,
        display_id=display_id(run_id, seq_number),
    )
    finding_id = ctx.store.add_finding(persisted)
    ctx.findings.append(persisted)
    ctx.add_event(
        AGENT_SECURITY_ANALYST, analyst_message(persisted, persisted.display_id), finding_id
    )
    logger.debug("Persisted %s (%s)", persisted.display_id, persisted.severity.value)
    return persisted


class AnalysisStage(BaseStage):
    """Phase 2: Run the security analyst model over the ingested files."""

    name = "analysis"
    display_name = "Phase 2: Security Analysis"
    phase_number = 2.0
    status = RunStatus.ANALYZING

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        if ctx.start_time is not None and ctx.budget.is_over_wall_clock(ctx.start_time, ctx.clock()):
            raise IngestionError(INGESTION_TIMEOUT_MESSAGE, error_code="TIMEOUT")

        prompt = build_analysis_prompt(ctx.files)
        inference_id = ctx.store.create_inference(
            ctx.run.run_id, AGENT_SECURITY_ANALYST, ctx.llm.model or "", prompt
        )
        ctx.inference_id = inference_id

        streaming = bool(ctx.config.get("streaming", True))
        logger.info(
            "Analyzing %d files with %s/%s (%s)",
            len(ctx.files),
            ctx.llm.provider,
            ctx.llm.model,
            "streaming" if streaming else "single request",
        )

        try:
            if streaming:
                session = self._run_streaming(ctx, prompt, inference_id)
            else:
                session = self._run_single(ctx, prompt, inference_id)
        except AuditError as exc:
            ctx.store.fail_inference(inference_id, str(exc))
            raise

        return {
            "findings": len(ctx.findings),
            "input_tokens": session.input_tokens,
            "output_tokens": session.output_tokens,
            "dropped_findings": session.dropped,
            "skipped_elements": session.records.skipped_count,
        }

    def _run_streaming(self, ctx: PipelineContext, prompt: str, inference_id: int) -> AnalysisSession:
        session = AnalysisSession(ctx, inference_id)
        events = EventStreamParser()
        chunk_count = 0

        with ctx.llm.stream_analysis(SECURITY_ANALYST_SYSTEM_PROMPT, prompt) as chunks:
            for chunk in chunks:
                chunk_count += 1
                for event in events.feed(chunk):
                    session.handle_signal(ctx.llm.interpret_event(event.name, event.data))

        for event in events.flush():
            session.handle_signal(ctx.llm.interpret_event(event.name, event.data))

        logger.debug("Stream closed after %d chunks", chunk_count)
        session.finalize()
        return session

    def _run_single(self, ctx: PipelineContext, prompt: str, inference_id: int) -> AnalysisSession:
        session = AnalysisSession(ctx, inference_id)
        text, session.input_tokens, session.output_tokens = ctx.llm.analyze(
            SECURITY_ANALYST_SYSTEM_PROMPT, prompt
        )
        for finding in parse_analysis_response(text):
            persist_finding(ctx, finding, session)
        session.finalized = True
        ctx.store.complete_inference(inference_id, text, session.input_tokens, session.output_tokens)
        return session


# ============================================================================
# Phase 3: Evaluation
# ============================================================================


class EvaluationStage(BaseStage):
    """Phase 3: Score the findings and write the executive summary."""

    name = "evaluation"
    display_name = "Phase 3: Evaluation"
    phase_number = 3.0
    status = RunStatus.EVALUATING

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        evaluation = evaluate(ctx.findings)
        ctx.store.create_evaluation(ctx.run.run_id, evaluation)
        ctx.evaluation = evaluation
        ctx.add_event(AGENT_EVALUATOR, evaluation.executive_summary)
        logger.info(
            "Safety probability %d%% across %d findings",
            evaluation.probability,
            evaluation.finding_count,
        )
        return {"probability": evaluation.probability, "finding_count": evaluation.finding_count}


# ============================================================================
# Factory
# ============================================================================


def build_default_stages() -> List[BaseStage]:
    """Build the standard ingestion -> analysis -> evaluation pipeline."""
    return [IngestionStage(), AnalysisStage(), EvaluationStage()]
