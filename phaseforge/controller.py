"""
PHASEFORGE Controller — The Execution Orchestrator

It is NOT smart. It is deterministic.

One run is one pass over the plan:
  - Skip phases already completed by an earlier run
  - Drive the code agent through each remaining phase, in order
  - Gate every phase behind the pre-commit checks, then commit
  - Persist the plan after every phase, success or failure
  - Review, verify, open the change request
  - Write the execution record and finish

It never writes code. It only coordinates, and reports everything it
does as events on the run's channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

from loguru import logger

from phaseforge.agents import Collaborator
from phaseforge.config_loader import ProjectConfig
from phaseforge.errors import PhaseforgeError, VersionControlError
from phaseforge.events import (
    NO_CHANGES,
    ChangeRequestCreated,
    CheckResult,
    Error,
    EventChannel,
    Finished,
    PhaseCommitted,
    PhaseStarted,
    ReviewCompleted,
    ReviewStarted,
    RunEvent,
    Started,
    VerificationCompleted,
    VerificationStarted,
)
from phaseforge.hooks import CheckCycle, HookRunner
from phaseforge.pipeline.finalizer import FinalizerOutcome, build_pr_context, create_change_request
from phaseforge.pipeline.review import ReviewCycle
from phaseforge.pipeline.verification import VerificationCycle
from phaseforge.plan_store import (
    ExecutionRecord,
    Phase,
    PhaseResult,
    Plan,
    PlanStore,
    ReviewResult,
    StepStatus,
    VerificationResult,
)


class _ReceiverClosed(Exception):
    """The consumer closed the stream; stop at the next event."""


class _RunAborted(Exception):
    """A fatal error has already been reported."""


@dataclass
class RunContext:
    """Everything one run needs, resolved before the background task starts."""
    repo_path: Path
    slug: str
    plan: Plan
    design_spec: str
    worktree: Path
    config: ProjectConfig
    store: PlanStore
    git: Any  # GitOps or anything with the same async surface
    collaborator: Collaborator


class Controller:
    def __init__(self, ctx: RunContext, channel: EventChannel):
        self.ctx = ctx
        self.channel = channel
        self.total_turns = 0
        self._current_phase: Phase | None = None

    @property
    def plan(self) -> Plan:
        return self.ctx.plan

    def base_context(self) -> dict[str, Any]:
        return {
            "repo_path": str(self.ctx.repo_path),
            "feature_slug": self.ctx.slug,
            "design_spec": self.ctx.design_spec,
        }

    # -----------------------------------------------------------------------
    # Entry point (the background task body)
    # -----------------------------------------------------------------------

    async def execute(self) -> None:
        """Run the pipeline. Always closes the channel, never raises."""
        try:
            await self._run()
        except _ReceiverClosed:
            logger.info(f"[RUN] Receiver closed, stopping run for {self.ctx.slug}")
        except _RunAborted:
            logger.info(f"[RUN] Run aborted for {self.ctx.slug}")
        except Exception as e:
            logger.exception(f"[RUN] Unexpected failure in run for {self.ctx.slug}")
            if self._current_phase is not None:
                self._persist_failed_phase(self._current_phase, turns=0)
            await self._report(Error(detail=str(e), error_kind="other", fatal=True))
        finally:
            await self.channel.close()

    async def _run(self) -> None:
        plan = self.plan
        logger.info(f"[RUN] Starting {self.ctx.slug}: {len(plan.phases)} phase(s)")
        await self._send(Started(feature=plan.feature, total_phases=len(plan.phases)))

        if not plan.phases:
            logger.info("[RUN] No phases defined, skipping to review")

        completed = plan.completed_phases()
        for index, phase in enumerate(plan.phases):
            if phase.is_completed:
                logger.debug(f"[RUN] Skipping completed phase {index + 1}: {phase.name}")
                continue
            await self._run_phase(index, phase, completed)

        review = await self._review_step()
        verification = await self._verification_step()
        finalizer = await self._finalize_step(review, verification)

        plan.execution = ExecutionRecord(
            status=StepStatus.COMPLETED,
            total_turns=self.total_turns,
            review=review,
            verification=verification,
            pr=finalizer.url if finalizer else None,
        )
        self.ctx.store.save(self.ctx.slug, plan)

        await self._send(Finished())
        logger.info(f"[RUN] Finished {self.ctx.slug}: {self.total_turns} turns")

    # -----------------------------------------------------------------------
    # Phases
    # -----------------------------------------------------------------------

    async def _run_phase(self, index: int, phase: Phase, completed: list[dict]) -> None:
        ctx = self.ctx
        self._current_phase = phase
        await self._send(PhaseStarted(index=index, name=phase.name))
        logger.info(f"[RUN] Phase {index + 1}/{len(self.plan.phases)}: {phase.name}")

        task_template = "code/resume" if completed else "code/task"
        context = {
            **self.base_context(),
            "phase": phase.model_dump(mode="json", by_alias=True, exclude_none=True),
            "phase_index": index + 1,
            "total_phases": len(self.plan.phases),
            "completed_phases": completed,
        }

        try:
            transcript = await ctx.collaborator.invoke("code", task_template, context, ctx.worktree)
        except PhaseforgeError as e:
            await self._fail_phase(phase, turns=0, error=e)
        if transcript.is_error:
            logger.warning(f"[RUN] Code agent reported failure on phase {index + 1}; running checks anyway")
        turns = transcript.turns

        checks = CheckCycle(
            HookRunner(ctx.config.hooks),
            ctx.collaborator,
            base_context={**self.base_context(), "design_spec": ""},
        )
        try:
            await checks.run(ctx.worktree, report=self._report_check)
        except PhaseforgeError as e:
            await self._fail_phase(phase, turns=turns + checks.turns, error=e)
        turns += checks.turns

        commit = None
        if ctx.config.git.auto_commit:
            message = f"feat({ctx.slug}): phase {index + 1} - {phase.name}"
            outcome = await ctx.git.commit(ctx.worktree, message)
            if outcome.status == "failed":
                await self._fail_phase(phase, turns=turns, error=VersionControlError(outcome.detail))
            elif outcome.status == "committed":
                commit = outcome.sha
                logger.info(f"[RUN] Committed phase {index + 1}: {commit}")
            else:
                logger.debug(f"[RUN] No changes to commit for phase {index + 1}")

        phase.result = PhaseResult(status=StepStatus.COMPLETED, turns=turns, commit=commit)
        ctx.store.save(ctx.slug, self.plan)
        self.total_turns += turns
        self._current_phase = None

        await self._send(PhaseCommitted(index=index, commit=commit or NO_CHANGES))

    async def _fail_phase(self, phase: Phase, turns: int, error: PhaseforgeError) -> NoReturn:
        """Persist the failed phase so the next run retries it, then abort."""
        self._persist_failed_phase(phase, turns)
        await self._abort(error)

    def _persist_failed_phase(self, phase: Phase, turns: int) -> None:
        self._current_phase = None
        phase.result = PhaseResult(status=StepStatus.FAILED, turns=turns)
        try:
            self.ctx.store.save(self.ctx.slug, self.plan)
        except OSError as save_err:
            logger.warning(f"[RUN] Failed to save plan after phase failure: {save_err}")

    # -----------------------------------------------------------------------
    # Post-phase steps
    # -----------------------------------------------------------------------

    async def _review_step(self) -> ReviewResult:
        ctx = self.ctx
        if not ctx.config.review.enabled:
            return ReviewResult()

        await self._send(ReviewStarted())
        cycle = ReviewCycle(
            ctx.collaborator,
            ctx.git,
            slug=ctx.slug,
            base_branch=ctx.config.git.base_branch,
            max_iterations=ctx.config.review.max_iterations,
            auto_commit=ctx.config.git.auto_commit,
            base_context=self.base_context(),
            criteria=self.plan.verification_plan.criteria,
        )
        try:
            result = await cycle.run(ctx.worktree)
        except PhaseforgeError as e:
            await self._abort(e)

        self.total_turns += result.turns
        logger.info(f"[REVIEW] {result.issues_found} issue(s) found, {result.issues_fixed} fixed")
        await self._send(ReviewCompleted(issue_count=result.issues_found, issues=cycle.issues))
        return result

    async def _verification_step(self) -> VerificationResult:
        ctx = self.ctx
        verification_plan = self.plan.verification_plan
        if verification_plan.is_empty:
            logger.debug("[VERIFY] No criteria or test commands, skipping verification")
            return VerificationResult()
        if not ctx.config.verification.enabled:
            return VerificationResult()

        await self._send(VerificationStarted())
        cycle = VerificationCycle(
            ctx.collaborator,
            ctx.git,
            slug=ctx.slug,
            plan=verification_plan,
            max_iterations=ctx.config.verification.max_iterations,
            auto_commit=ctx.config.git.auto_commit,
            base_context=self.base_context(),
        )
        try:
            result = await cycle.run(ctx.worktree)
            details = "all criteria passed" if result.passed else "some criteria failed"
        except PhaseforgeError as e:
            logger.warning(f"[VERIFY] Verification step failed: {e}")
            result = VerificationResult(turns=cycle.turns, passed=False)
            details = str(e)

        self.total_turns += result.turns
        await self._send(VerificationCompleted(passed=result.passed, details=details))
        return result

    async def _finalize_step(
        self, review: ReviewResult, verification: VerificationResult
    ) -> FinalizerOutcome | None:
        ctx = self.ctx
        context = {
            **self.base_context(),
            "design_spec": "",
            **build_pr_context(
                self.plan,
                branch=ctx.git.branch_name(ctx.slug),
                base_branch=ctx.config.git.base_branch,
                review=review,
                verification=verification,
            ),
        }
        try:
            outcome = await create_change_request(ctx.collaborator, ctx.worktree, context)
        except PhaseforgeError as e:
            logger.warning(f"[PR] Change request creation failed, continuing: {e}")
            await self._report(Error(
                detail=f"PR creation failed: {e}", error_kind=e.kind, fatal=False,
            ))
            return None

        if not outcome.created:
            await self._report(Error(
                detail=f"PR creation failed: {outcome.diagnostic}", error_kind="collaborator", fatal=False,
            ))
            return outcome

        await self._send(ChangeRequestCreated(url=outcome.url))
        return outcome

    # -----------------------------------------------------------------------
    # Event helpers
    # -----------------------------------------------------------------------

    async def _send(self, event: RunEvent) -> None:
        """Deliver a pipeline event; a closed receiver stops the run."""
        if not await self.channel.send(event):
            raise _ReceiverClosed()

    async def _report(self, event: RunEvent) -> None:
        """Deliver an event whose delivery failure changes nothing."""
        await self.channel.send(event)

    async def _report_check(self, name: str, passed: bool) -> None:
        await self._report(CheckResult(name=name, passed=passed))

    async def _abort(self, error: PhaseforgeError) -> NoReturn:
        logger.error(f"[RUN] {error}")
        await self._report(Error(detail=str(error), error_kind=error.kind, fatal=True))
        raise _RunAborted() from error
