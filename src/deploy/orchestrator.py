"""Deployment Orchestrator: staged, fail-fast pipeline over the apply engine.

    PERSIST -> INIT -> VALIDATE -> PLAN -> GUARD -> APPLY -> VERIFY

The merged desired state is persisted first, since PLAN reads the artifact.
PLAN saves a plan file and records its digest; APPLY checks the digest and
applies exactly that file. Any failing stage ends the run as FAILED with no
retries. VERIFY mismatches are warnings only. A cancellation event is
honoured between stages until APPLY has been issued.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from common import StageResult
from deploy.persistence import DesiredStateStore, file_digest
from desired_state import CATEGORIES
from engine.snapshot import AppliedStateSnapshot, read_applied_snapshot
from errors import (
    ApplyEngineError,
    ConnectivityError,
    DriverError,
    GuardBlocked,
    PipelineCancelled,
    StateLockedError,
    StateQueryError,
    VerificationWarning,
)
from reconcile.guard import SafetyVerdict, evaluate, log_verdict
from reconcile.merge import MergedDesiredState
from reporting.report import DeploymentReport

logger = logging.getLogger(__name__)

PERSIST = 'PERSIST'
INIT = 'INIT'
VALIDATE = 'VALIDATE'
PLAN = 'PLAN'
GUARD = 'GUARD'
APPLY = 'APPLY'
VERIFY = 'VERIFY'

SUCCESS = 'SUCCESS'
FAILED = 'FAILED'

STAGE_DESCRIPTIONS = {
    PERSIST: 'Write desired state artifact',
    INIT: 'Initialize apply engine',
    VALIDATE: 'Validate engine configuration',
    PLAN: 'Plan changes against desired state',
    GUARD: 'Check for destructive changes',
    APPLY: 'Apply saved plan',
    VERIFY: 'Verify applied state',
}

# Cancellation is not honoured once APPLY has been issued
CANCELLABLE = (PERSIST, INIT, VALIDATE, PLAN, GUARD, APPLY)


@dataclass
class DeploymentOutcome:
    """Terminal result of a pipeline run."""
    state: str
    stage: str
    error: Optional[DriverError] = None
    verdict: Optional[SafetyVerdict] = None
    plan_outcome: str = ''
    artifact: Optional[Path] = None
    warnings: list = field(default_factory=list)
    verified: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.state == SUCCESS


@dataclass
class _RunContext:
    merged: MergedDesiredState
    applied: AppliedStateSnapshot
    allow_destroy: bool
    dry_run: bool
    artifact: Optional[Path] = None
    plan_outcome: str = ''
    plan_digest: Optional[str] = None
    verdict: Optional[SafetyVerdict] = None
    warnings: list = field(default_factory=list)
    verified: dict = field(default_factory=dict)


def engine_failure(stage: str, result) -> DriverError:
    """Translate a failed engine result into the matching error."""
    if result.locked:
        return StateLockedError(stage, result.rc, result.detail())
    if result.timed_out:
        return ConnectivityError(
            f"{stage} timed out: {result.detail()}",
            remedy="Check connectivity to the platform or raise the engine timeout in thinkdeploy.yaml",
        )
    return ApplyEngineError(
        stage, result.rc, result.detail(),
        remedy="The desired state artifact was kept; fix the error and run 'thinkdeploy deploy rerun'",
    )


class DeploymentOrchestrator:
    """Runs one deployment through the staged pipeline."""

    def __init__(self, engine, store: DesiredStateStore, report: Optional[DeploymentReport] = None,
                 cancel_event: Optional[threading.Event] = None, write_report: bool = True):
        self.engine = engine
        self.store = store
        self.report = report or DeploymentReport(target=str(store.root), report_dir=store.root / 'reports')
        self.cancel_event = cancel_event or threading.Event()
        self.write_report = write_report

    def _stages(self) -> list[tuple[str, Callable[[_RunContext], StageResult]]]:
        return [
            (PERSIST, self._persist),
            (INIT, self._init),
            (VALIDATE, self._validate),
            (PLAN, self._plan),
            (GUARD, self._guard),
            (APPLY, self._apply),
            (VERIFY, self._verify),
        ]

    def run(self, merged: MergedDesiredState, applied: AppliedStateSnapshot,
            allow_destroy: bool = False, dry_run: bool = False) -> DeploymentOutcome:
        """Drive the pipeline to SUCCESS or FAILED."""
        ctx = _RunContext(merged=merged, applied=applied, allow_destroy=allow_destroy, dry_run=dry_run)
        mode = " (dry-run)" if dry_run else ""
        logger.info(f"Starting deployment in {self.store.root}{mode}")
        self.report.start()
        start_time = time.time()

        stage = PERSIST
        error: Optional[DriverError] = None
        for stage, handler in self._stages():
            description = STAGE_DESCRIPTIONS[stage]
            if stage in CANCELLABLE and self.cancel_event.is_set():
                error = PipelineCancelled(f"Deployment cancelled before {stage}")
                logger.error(error.message)
                self.report.fail_stage(stage, error.message, 0)
                break

            logger.info(f"Running stage: {stage} - {description}")
            self.report.start_stage(stage, description)
            try:
                result = handler(ctx)
            except DriverError as e:
                error = e
                logger.error(f"Stage {stage} failed: {e}")
                self.report.fail_stage(stage, str(e))
                break

            if result.details.get('skipped'):
                logger.info(f"Skipping stage {stage}: {result.message}")
                self.report.skip_stage(stage, description, result.message)
            else:
                logger.info(f"Stage {stage} passed" + (f": {result.message}" if result.message else ""))
                self.report.pass_stage(stage, result.message, result.duration)

        for warning in ctx.warnings:
            self.report.add_warning(str(warning))

        state = FAILED if error else SUCCESS
        total_time = time.time() - start_time
        if error:
            logger.error(f"Deployment FAILED at {stage} after {total_time:.1f}s")
        else:
            logger.info(f"Deployment SUCCESS in {total_time:.1f}s"
                        + (f" with {len(ctx.warnings)} warning(s)" if ctx.warnings else ""))
        self.report.finish(state == SUCCESS, write=self.write_report)

        return DeploymentOutcome(
            state=state,
            stage=stage,
            error=error,
            verdict=ctx.verdict,
            plan_outcome=ctx.plan_outcome,
            artifact=ctx.artifact,
            warnings=list(ctx.warnings),
            verified=dict(ctx.verified),
        )

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _persist(self, ctx: _RunContext) -> StageResult:
        ctx.artifact = self.store.write(ctx.merged.document)
        return StageResult(success=True, message=str(ctx.artifact))

    def _init(self, ctx: _RunContext) -> StageResult:
        result = self.engine.init()
        if not result.ok:
            raise engine_failure(INIT, result)
        return StageResult(success=True, duration=result.duration)

    def _validate(self, ctx: _RunContext) -> StageResult:
        result = self.engine.validate()
        if not result.ok:
            raise engine_failure(VALIDATE, result)
        return StageResult(success=True, duration=result.duration)

    def _plan(self, ctx: _RunContext) -> StageResult:
        result = self.engine.plan(ctx.artifact, self.store.plan_path)
        if not result.ok:
            raise engine_failure(PLAN, result)
        ctx.plan_outcome = result.outcome
        if result.outcome == 'changes':
            ctx.plan_digest = file_digest(self.store.plan_path)
            logger.debug(f"Plan digest: {ctx.plan_digest}")
            return StageResult(success=True, message='changes pending', duration=result.duration)
        return StageResult(success=True, message='no changes', duration=result.duration)

    def _guard(self, ctx: _RunContext) -> StageResult:
        ctx.verdict = evaluate(ctx.merged, ctx.applied, ctx.allow_destroy)
        log_verdict(ctx.verdict, ctx.merged, ctx.applied)
        if not ctx.verdict.allowed:
            raise GuardBlocked(ctx.verdict)
        return StageResult(success=True, message=ctx.verdict.reason.split('\n')[0])

    def _apply(self, ctx: _RunContext) -> StageResult:
        if ctx.dry_run:
            return StageResult(success=True, message='dry-run', details={'skipped': True})
        if ctx.plan_outcome == 'noop':
            return StageResult(success=True, message='no changes to apply', details={'skipped': True})

        plan_file = self.store.plan_path
        if not plan_file.exists() or file_digest(plan_file) != ctx.plan_digest:
            raise ApplyEngineError(
                APPLY, -1, f"saved plan {plan_file} changed after PLAN",
                remedy="Another process touched the plan file; rerun the deployment",
            )
        result = self.engine.apply(plan_file)
        if not result.ok:
            raise engine_failure(APPLY, result)
        return StageResult(success=True, duration=result.duration)

    def _verify(self, ctx: _RunContext) -> StageResult:
        if ctx.dry_run:
            return StageResult(success=True, message='dry-run', details={'skipped': True})
        try:
            fresh = read_applied_snapshot(self.engine, with_attributes=False)
        except (StateQueryError, ConnectivityError) as e:
            warning = VerificationWarning('state', f"could not re-read applied state: {e}")
            logger.warning(f"*** VERIFY: {warning} ***")
            ctx.warnings.append(warning)
            return StageResult(success=True, message='state unavailable')

        doc = ctx.merged.document
        for category, spec in CATEGORIES.items():
            if spec.module is None:
                continue
            expected = sum(1 for r in doc.records(category).values() if r.enabled)
            if not expected:
                continue
            found = fresh.count(category)
            ctx.verified[category] = found
            if found == 0:
                warning = VerificationWarning(
                    category, f"expected {expected} resource(s), none found in applied state"
                )
                logger.warning(f"*** VERIFY: {warning} ***")
                ctx.warnings.append(warning)
            else:
                logger.info(f"VERIFY: {category}: {found} applied (desired {expected})")

        summary = ', '.join(f"{c}={n}" for c, n in ctx.verified.items()) or 'nothing to verify'
        return StageResult(success=True, message=summary)
