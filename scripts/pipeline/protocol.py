"""
Pipeline Protocol - Defines the stage interface and shared context.

Every pipeline stage implements the ``PipelineStage`` protocol. Stages are
composed into an ordered pipeline by ``PipelineOrchestrator``.

The ``PipelineContext`` dataclass holds all mutable state that flows through
one audit run.  Stages read what they need and write their contributions.

The ``StageResult`` dataclass captures the outcome of a single stage
execution for logging and failure reporting.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from schemas.pipeline import IngestStats, PersistedFinding, SourceFile

from .run_state import AuditRun, RunStatus


@dataclass
class PipelineContext:
    """Shared mutable state flowing through the pipeline.

    Attributes
    ----------
    run : AuditRun
        The run being executed.  Its status is advanced by the orchestrator.
    store : Any
        ``AuditStore`` (or anything with the same methods) receiving every
        finding, progress event and inference update.
    github : Any
        ``GitHubClient`` used by ingestion.
    llm : Any
        Initialized ``LLMManager`` used by analysis.
    budget : Any
        ``ResourceBudget`` ceilings for ingestion.
    config : dict
        Flat configuration dict produced by ``config_loader.build_config``.
    files : list[SourceFile]
        Ingested source files in priority order.
    findings : list[PersistedFinding]
        Findings persisted so far, in sequence order.
    stats : IngestStats | None
        Counts recorded at the end of ingestion.
    truncated : bool
        Whether ingestion stopped on a resource ceiling.
    evaluation : Any
        ``Evaluation`` written by the final stage.
    clock : callable
        Monotonic clock; tests inject a fake.
    phase_timings : dict
        Wall-clock seconds per stage, keyed by ``stage.name``.
    errors : list
        Failure messages collected during the run.
    """

    run: AuditRun
    store: Any
    github: Any = None
    llm: Any = None
    budget: Any = None
    config: Dict[str, Any] = field(default_factory=dict)

    # -- Ingestion output --
    files: List[SourceFile] = field(default_factory=list)
    stats: Optional[IngestStats] = None
    truncated: bool = False
    start_time: Optional[float] = None

    # -- Analysis output --
    findings: List[PersistedFinding] = field(default_factory=list)
    inference_id: Optional[int] = None

    # -- Evaluation output --
    evaluation: Any = None

    clock: Callable[[], float] = time.monotonic

    phase_timings: Dict[str, float] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def advance(self, target: RunStatus) -> None:
        """Move the run to *target* and persist the new status."""
        self.run.advance(target)
        self.store.update_status(self.run.run_id, target)

    def add_event(self, agent: str, message: str, finding_id: Optional[int] = None) -> int:
        return self.store.add_event(self.run.run_id, agent, message, finding_id)


@dataclass
class StageResult:
    """Outcome returned by each pipeline stage.

    Attributes
    ----------
    success : bool
        Whether the stage completed without a fatal error.
    stage_name : str
        Identifier matching ``PipelineStage.name``.
    duration_seconds : float
        Wall-clock execution time.
    findings_before : int
        Number of findings in context before execution.
    findings_after : int
        Number of findings in context after execution.
    error : str | None
        Human-readable failure cause if the stage failed.
    error_code : str | None
        Machine-readable failure code (``RATE_LIMIT``, ``INVALID_RESPONSE``...).
    metadata : dict
        Stage-specific metadata (file counts, token usage).
    """

    success: bool
    stage_name: str
    duration_seconds: float = 0.0
    findings_before: int = 0
    findings_after: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PipelineStage(Protocol):
    """Protocol that every pipeline stage must implement.

    Stages declare the run status they execute under, do their work by
    mutating ``PipelineContext`` and return a ``StageResult``.  The use of
    ``Protocol`` means stages do not need to inherit from a common base
    class.

    Example
    -------
    ::

        class MyStage:
            name = "my_stage"
            display_name = "My Custom Stage"
            phase_number = 2.5
            status = RunStatus.ANALYZING

            def execute(self, ctx: PipelineContext) -> StageResult:
                return StageResult(success=True, stage_name=self.name)
    """

    @property
    def name(self) -> str:
        """Unique stage identifier, e.g. ``ingestion``."""
        ...

    @property
    def display_name(self) -> str:
        """Human-readable name, e.g. ``Phase 1: Repository Ingestion``."""
        ...

    @property
    def phase_number(self) -> float:
        """Numeric phase for ordering."""
        ...

    @property
    def status(self) -> RunStatus:
        """Run status entered before the stage executes."""
        ...

    def execute(self, ctx: PipelineContext) -> StageResult:
        """Execute the stage logic, mutating ``ctx``."""
        ...
