"""
Audit pipeline for repository security audits.

Key components:
- ``AuditRun`` / ``RunStatus`` -- the run and its status state machine
- ``PipelineStage`` -- Protocol every stage implements
- ``PipelineContext`` -- Shared mutable state flowing through stages
- ``StageResult`` -- Outcome returned by each stage
- ``PipelineOrchestrator`` -- Runs stages in order and records failures
- ``BaseStage`` -- Convenience ABC for implementing stages
- ``build_default_stages`` -- Factory for ingestion, analysis, evaluation
"""

from .run_state import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AuditRun,
    RunStatus,
    can_transition,
)
from .protocol import PipelineStage, PipelineContext, StageResult
from .orchestrator import PipelineOrchestrator
from .base_stage import BaseStage
from .stages import (
    AnalysisStage,
    EvaluationStage,
    IngestionStage,
    build_default_stages,
)

__all__ = [
    # Run state
    "AuditRun",
    "RunStatus",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "can_transition",
    # Core protocol
    "PipelineStage",
    "PipelineContext",
    "StageResult",
    # Orchestrator
    "PipelineOrchestrator",
    # Base class
    "BaseStage",
    # Concrete stages
    "IngestionStage",
    "AnalysisStage",
    "EvaluationStage",
    # Factory
    "build_default_stages",
]
