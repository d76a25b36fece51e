"""
Base Stage - Convenience base class for pipeline stages.

While the ``PipelineStage`` protocol allows any object with the right
interface, this ABC provides the timing and error-handling boilerplate.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict

from exceptions import AuditError

from .protocol import PipelineContext, StageResult
from .run_state import RunStatus

logger = logging.getLogger(__name__)


class BaseStage(ABC):
    """Abstract base class that satisfies the ``PipelineStage`` protocol.

    Subclasses must implement:
    - ``name``, ``display_name``, ``phase_number``, ``status`` (class attrs)
    - ``_execute(ctx)`` -- the core logic
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def phase_number(self) -> float:
        ...

    @property
    @abstractmethod
    def status(self) -> RunStatus:
        ...

    @abstractmethod
    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        """Core stage logic.

        Mutate ``ctx`` as needed and return a dict of stage-specific
        metadata.

        Raises
        ------
        AuditError
            Converted by ``execute()`` into a failed ``StageResult`` whose
            ``error`` is the exception message and ``error_code`` its code.
            Any other exception propagates to the orchestrator.
        """
        ...

    def execute(self, ctx: PipelineContext) -> StageResult:
        """Run the stage with timing and error handling."""
        findings_before = len(ctx.findings)
        start = time.time()

        try:
            metadata = self._execute(ctx) or {}
        except AuditError as exc:
            logger.error("%s failed: [%s] %s", self.display_name, exc.error_code, exc)
            return StageResult(
                success=False,
                stage_name=self.name,
                duration_seconds=time.time() - start,
                findings_before=findings_before,
                findings_after=len(ctx.findings),
                error=str(exc),
                error_code=exc.error_code,
            )

        return StageResult(
            success=True,
            stage_name=self.name,
            duration_seconds=time.time() - start,
            findings_before=findings_before,
            findings_after=len(ctx.findings),
            metadata=metadata,
        )
