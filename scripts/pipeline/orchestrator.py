"""
Pipeline Orchestrator - Composes and runs the audit stages.

Drives one ``AuditRun`` through its status state machine::

    pending -> fetching -> analyzing -> evaluating -> complete

Each stage declares the status it runs under; the orchestrator enters that
status, executes the stage and stops at the first failure, moving the run
to ``failed`` with the stage's cause.  Unexpected exceptions are caught here
too, so ``run()`` never returns with the run in a non-terminal status.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from exceptions import AuditError
from resource_budget import ResourceBudget

from .protocol import PipelineContext, PipelineStage, StageResult
from .run_state import AuditRun, RunStatus

logger = logging.getLogger(__name__)

INTERNAL_ERROR_CODE = "INTERNAL_ERROR"


class PipelineOrchestrator:
    """Compose and execute pipeline stages in phase order.

    Parameters
    ----------
    stages : list[PipelineStage]
        Stages to run.  Automatically sorted by ``phase_number``.
    config : dict
        Flat configuration dict (from ``config_loader.build_config``).

    Example
    -------
    ::

        pipeline = PipelineOrchestrator(build_default_stages(), config)
        ctx = pipeline.build_context(run, store, github=client, llm=llm)
        ctx, results = pipeline.run(ctx)
    """

    def __init__(self, stages: List[PipelineStage], config: Dict[str, Any]):
        self.stages = sorted(stages, key=lambda s: s.phase_number)
        self.config = config
        self._validate_statuses()

    def _validate_statuses(self) -> None:
        """Verify the stage statuses form a legal forward path from ``pending``.

        Raises
        ------
        ValueError
            If two stages would require a transition the state machine forbids.
        """
        probe = AuditRun(owner="-", repo="-")
        for stage in self.stages:
            try:
                probe.advance(stage.status)
            except AuditError as exc:
                raise ValueError(
                    f"Stage '{stage.name}' cannot run under status "
                    f"'{stage.status.value}': {exc}"
                ) from exc
        try:
            probe.advance(RunStatus.COMPLETE)
        except AuditError as exc:
            raise ValueError(f"Pipeline cannot finish in 'complete': {exc}") from exc

    def build_context(
        self,
        run: AuditRun,
        store: Any,
        github: Any = None,
        llm: Any = None,
        budget: Optional[ResourceBudget] = None,
        clock=None,
    ) -> PipelineContext:
        """Build the initial ``PipelineContext`` for *run*."""
        ctx = PipelineContext(
            run=run,
            store=store,
            github=github,
            llm=llm,
            budget=budget or ResourceBudget.from_config(self.config),
            config=self.config,
        )
        if clock is not None:
            ctx.clock = clock
        return ctx

    def run(self, ctx: PipelineContext) -> Tuple[PipelineContext, List[StageResult]]:
        """Execute the full pipeline.

        Returns
        -------
        tuple[PipelineContext, list[StageResult]]
            The final context and the result of every stage attempted.
            ``ctx.run.status`` is ``complete`` or ``failed``.
        """
        results: List[StageResult] = []
        pipeline_start = time.time()
        run = ctx.run

        logger.info(
            "Pipeline starting with %d stages for %s/%s (run %s)",
            len(self.stages),
            run.owner,
            run.repo,
            run.run_id,
        )

        for stage in self.stages:
            logger.info("Starting %s ...", stage.display_name)
            try:
                ctx.advance(stage.status)
                result = stage.execute(ctx)
            except AuditError as exc:
                result = StageResult(
                    success=False,
                    stage_name=stage.name,
                    error=str(exc),
                    error_code=exc.error_code,
                )
            except Exception as exc:
                logger.error(
                    "%s raised unexpectedly: %s", stage.display_name, exc, exc_info=True
                )
                result = StageResult(
                    success=False,
                    stage_name=stage.name,
                    error=f"Unexpected error: {exc}",
                    error_code=INTERNAL_ERROR_CODE,
                )

            ctx.phase_timings[stage.name] = result.duration_seconds
            results.append(result)

            if not result.success:
                ctx.errors.append(f"{stage.display_name}: {result.error}")
                self._fail(ctx, result.error or "Audit failed", result.error_code)
                break

            logger.info(
                "Completed %s in %.1fs (findings: %d -> %d)",
                stage.display_name,
                result.duration_seconds,
                result.findings_before,
                result.findings_after,
            )
        else:
            try:
                ctx.advance(RunStatus.COMPLETE)
            except Exception as exc:
                logger.error("Could not complete run %s: %s", run.run_id, exc, exc_info=True)
                self._fail(ctx, f"Unexpected error: {exc}", INTERNAL_ERROR_CODE)

        pipeline_duration = time.time() - pipeline_start
        ctx.phase_timings["_total"] = pipeline_duration

        logger.info(
            "Pipeline finished in %.1fs: status=%s, %d findings",
            pipeline_duration,
            run.status.value,
            len(ctx.findings),
        )
        return ctx, results

    def _fail(self, ctx: PipelineContext, error: str, error_code: Optional[str]) -> None:
        run = ctx.run
        if not run.status.is_terminal:
            run.fail(error, error_code)
        ctx.store.fail_run(run.run_id, error, error_code)
        logger.error("Run %s failed [%s]: %s", run.run_id, error_code, error)
