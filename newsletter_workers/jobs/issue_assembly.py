"""
Issue Assembly Job
Turns candidates and content modules into a draft issue.

Step plan (persisted checkpoint = issues.workflow_state + workflow_module_id):

    deduplicating
    for each active module, in display order:
        selecting_modules
        generating_titles
        generating_bodies_batch1
        generating_bodies_batch2
        fact_checking
    finalizing
    -> draft | failed

Each step derives its remaining work from the database, so a step can be
re-run after a crash or a failed attempt without redoing finished rows.
A step is attempted up to 1 + STEP_MAX_RETRIES times, each attempt bounded by
STEP_TIMEOUT_SECONDS. InvariantViolation is never retried. When a step gives
up, the issue is marked failed with the error, operators are alerted once,
and the original error is re-raised.

Entry points (RQ jobs):
    assemble_issue(issue_id)   - start, or resume from the checkpoint
    reprocess_issue(issue_id)  - clean up everything, then replay from dedup
    assemble_pending_issues()  - scheduled sweep over not-started issues
    rescore_module_criteria()  - criteria backfill for one module

Returns:
    {issue_id, status, steps_run, phases: {cleanup, deduplication, modules, finalize}}
"""

import time
import logging
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Dict, Any, List, Optional, NamedTuple, Callable

from ..config.settings import (
    BODY_BATCH_LIMIT,
    FACT_CHECK_PASS_THRESHOLD,
    FACT_CHECK_POLICY,
    GENERATION_BATCH_SIZE,
    GENERATION_BATCH_DELAY_SECONDS,
    STEP_MAX_RETRIES,
    STEP_RETRY_DELAY_SECONDS,
    STEP_TIMEOUT_SECONDS,
    current_settings,
)
from ..utils.errors import (
    DuplicateIssueError,
    InvalidWorkflowStateError,
    InvariantViolation,
    IssueNotFoundError,
    StepTimeoutError,
)
from ..utils.execution_logger import ExecutionLogger
from ..utils.states import IssueStatus, MODULE_STATES, WorkflowState
from .content_generation import generate_bodies_batch1, generate_bodies_batch2, generate_titles
from .deduplication import deduplicate_issue
from .fact_check import fact_check_module
from .finalize import finalize_issue
from .module_selection import select_for_module
from .scoring import rescore_criteria

logger = logging.getLogger(__name__)


class Step(NamedTuple):
    state: WorkflowState
    module: Optional[Dict[str, Any]] = None

    @property
    def label(self) -> str:
        if self.module:
            return f"{self.state.value}[{self.module['name']}]"
        return self.state.value


def build_step_plan(modules: List[Dict[str, Any]]) -> List[Step]:
    """Ordered steps for an issue with the given active modules"""
    plan = [Step(WorkflowState.DEDUPLICATING)]
    for module in modules:
        plan.extend(Step(state, module) for state in MODULE_STATES)
    plan.append(Step(WorkflowState.FINALIZING))
    return plan


def resume_index(plan: List[Step], state: WorkflowState, module_id: Optional[str]) -> int:
    """
    Position in the plan to resume from.

    The checkpointed step itself is re-run. A checkpoint that no longer
    matches the plan (module deactivated since) restarts from the top, which
    is safe because every step skips finished work.
    """
    if state in (WorkflowState.NOT_STARTED, WorkflowState.CLEANING_UP):
        return 0

    for index, step in enumerate(plan):
        if step.state is not state:
            continue
        if step.module is None or str(step.module['id']) == str(module_id):
            return index

    logger.warning(f"[Assembly] Checkpoint {state.value}/{module_id} not in current plan, restarting from dedup")
    return 0


class IssueAssembler:
    """Runs the assembly state machine for one issue at a time"""

    def __init__(self, db, claude, alerter,
                 max_retries: int = STEP_MAX_RETRIES,
                 retry_delay: float = STEP_RETRY_DELAY_SECONDS,
                 step_timeout: Optional[float] = STEP_TIMEOUT_SECONDS,
                 batch_size: int = GENERATION_BATCH_SIZE,
                 batch_delay: float = GENERATION_BATCH_DELAY_SECONDS,
                 body_batch_limit: int = BODY_BATCH_LIMIT,
                 fact_check_policy: str = FACT_CHECK_POLICY,
                 fact_check_threshold: int = FACT_CHECK_PASS_THRESHOLD):
        self.db = db
        self.claude = claude
        self.alerter = alerter
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.step_timeout = step_timeout
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.body_batch_limit = body_batch_limit
        self.fact_check_policy = fact_check_policy
        self.fact_check_threshold = fact_check_threshold

        self.step_functions: Dict[WorkflowState, Callable[..., Dict[str, Any]]] = {
            WorkflowState.CLEANING_UP: self._cleanup,
            WorkflowState.DEDUPLICATING: self._deduplicate,
            WorkflowState.SELECTING_MODULES: self._select,
            WorkflowState.GENERATING_TITLES: self._titles,
            WorkflowState.GENERATING_BODIES_BATCH1: self._bodies_batch1,
            WorkflowState.GENERATING_BODIES_BATCH2: self._bodies_batch2,
            WorkflowState.FACT_CHECKING: self._fact_check,
            WorkflowState.FINALIZING: self._finalize,
        }

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def assemble(self, issue_id: str) -> Dict[str, Any]:
        """Start assembly, or resume it from the persisted checkpoint"""
        issue = self._load_issue(issue_id)
        state = WorkflowState(issue['workflow_state'])

        if state is WorkflowState.DRAFT:
            logger.info(f"[Assembly] Issue {issue_id} is already a draft, nothing to do")
            return {"issue_id": issue_id, "status": IssueStatus.DRAFT.value, "steps_run": 0, "phases": {}}

        if state is WorkflowState.FAILED or issue['status'] == IssueStatus.FAILED.value:
            raise InvalidWorkflowStateError(f"Issue {issue_id} failed assembly; reprocess it to start over")

        if issue['status'] != IssueStatus.PROCESSING.value:
            raise InvalidWorkflowStateError(f"Issue {issue_id} is {issue['status']}, not processing")

        return self._run(issue, job_type='assemble_issue', cleanup=False)

    def reprocess(self, issue_id: str) -> Dict[str, Any]:
        """Clean up all pipeline output for the issue and replay every step"""
        issue = self._load_issue(issue_id)
        if issue['status'] == IssueStatus.SENT.value:
            raise InvalidWorkflowStateError(f"Issue {issue_id} was already sent and cannot be reprocessed")
        return self._run(issue, job_type='reprocess_issue', cleanup=True)

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def _load_issue(self, issue_id: str) -> Dict[str, Any]:
        issue = self.db.get_issue(issue_id)
        if not issue:
            raise IssueNotFoundError(issue_id)
        return issue

    def _run(self, issue: Dict[str, Any], job_type: str, cleanup: bool) -> Dict[str, Any]:
        if self.db.count_open_issues(issue['publication_id'], issue['issue_date']) > 1:
            raise DuplicateIssueError(
                f"More than one open issue for publication {issue['publication_id']} on {issue['issue_date']}"
            )

        run_log = ExecutionLogger(job_type, issue_id=issue['id'], db=self.db)
        run_log.info(f"[Assembly] {job_type} for issue {issue['id']} ({issue['issue_date']})",
                     current_settings())

        results: Dict[str, Any] = {
            "issue_id": issue['id'],
            "status": IssueStatus.PROCESSING.value,
            "steps_run": 0,
            "phases": {"modules": {}},
        }

        try:
            if cleanup:
                self.run_step(issue, Step(WorkflowState.CLEANING_UP), run_log, results)

            modules = self.db.get_active_modules(issue['publication_id'])
            if not modules:
                run_log.warn("[Assembly] Publication has no active modules; the issue will be empty")

            plan = build_step_plan(modules)
            start = 0 if cleanup else resume_index(
                plan, WorkflowState(issue['workflow_state']), issue.get('workflow_module_id')
            )
            if start:
                run_log.info(f"[Assembly] Resuming at step {start + 1}/{len(plan)}: {plan[start].label}")

            for step in plan[start:]:
                self.run_step(issue, step, run_log, results)

            results["status"] = IssueStatus.DRAFT.value
            run_log.set_summary('steps_run', results["steps_run"])
            run_log.complete('success')
            return results

        except Exception as e:
            results["status"] = IssueStatus.FAILED.value
            run_log.error(f"[Assembly] {type(e).__name__}: {e}")
            run_log.complete('error', str(e), traceback.format_exc())
            raise

    def run_step(self, issue: Dict[str, Any], step: Step, run_log: ExecutionLogger,
                 results: Dict[str, Any]) -> Dict[str, Any]:
        """
        Checkpoint, then attempt the step until it succeeds or the retry
        budget is spent. A spent budget aborts the workflow.
        """
        self.db.update_workflow_state(issue['id'], step.state.value,
                                      step.module['id'] if step.module else None)

        step_fn = self.step_functions[step.state]
        attempts = self.max_retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            try:
                outcome = self._call_with_timeout(step_fn, issue, step)
            except InvariantViolation as e:
                run_log.error(f"[Assembly] {step.label} invariant violation, not retrying: {e}")
                self._abort(issue, step, e, run_log)
                raise
            except Exception as e:
                last_error = e
                if attempt < attempts:
                    run_log.warn(f"[Assembly] {step.label} failed (attempt {attempt}/{attempts}), "
                                 f"retrying in {self.retry_delay}s: {type(e).__name__}: {e}")
                    time.sleep(self.retry_delay)
                    continue
                run_log.error(f"[Assembly] {step.label} failed after {attempts} attempts: "
                              f"{type(e).__name__}: {e}")
                break
            else:
                elapsed = time.monotonic() - started
                run_log.info(f"[Assembly] {step.label} done in {elapsed:.1f}s", outcome)
                self._record(results, step, outcome, run_log)
                return outcome

        self._abort(issue, step, last_error, run_log)
        raise last_error

    def _call_with_timeout(self, step_fn, issue: Dict[str, Any], step: Step) -> Dict[str, Any]:
        """
        Run one attempt under the wall-clock budget.

        On timeout the attempt's cancel event is set and this waits for the
        attempt to stop at its next checkpoint (batch boundary, AI call,
        terminal write) before reporting the timeout. A retry never overlaps
        the attempt it replaces.
        """
        cancel = threading.Event()
        if not self.step_timeout:
            return step_fn(issue, step.module, cancel)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='assembly-step')
        future = executor.submit(step_fn, issue, step.module, cancel)
        try:
            return future.result(timeout=self.step_timeout)
        except FutureTimeoutError:
            cancel.set()
            logger.warning(f"[Assembly] {step.label} exceeded {self.step_timeout:g}s, "
                           f"waiting for the attempt to stop")
            stopped_with = future.exception()
            if stopped_with is not None:
                logger.info(f"[Assembly] Abandoned {step.label} attempt stopped: "
                            f"{type(stopped_with).__name__}: {stopped_with}")
            raise StepTimeoutError(f"{step.label} exceeded {self.step_timeout:g}s budget")
        finally:
            executor.shutdown(wait=True)

    def _abort(self, issue: Dict[str, Any], step: Step, error: BaseException, run_log: ExecutionLogger):
        """Mark the issue failed and alert operators. Neither may mask the original error."""
        try:
            self.db.fail_workflow(issue['id'], f"{step.label}: {error}")
        except Exception as e:
            run_log.error(f"[Assembly] Could not mark issue {issue['id']} failed: {e}")

        try:
            self.alerter.notify_workflow_failure(issue, error, step=step.label)
        except Exception as e:
            run_log.error(f"[Assembly] Operator alert failed: {e}")

    def _record(self, results: Dict[str, Any], step: Step, outcome: Dict[str, Any],
                run_log: ExecutionLogger):
        results["steps_run"] += 1
        phases = results["phases"]
        outcome = outcome or {}

        if step.state is WorkflowState.CLEANING_UP:
            phases["cleanup"] = outcome
        elif step.state is WorkflowState.DEDUPLICATING:
            phases["deduplication"] = outcome
            run_log.increment_summary('duplicates_suppressed', outcome.get('duplicates_suppressed', 0))
        elif step.state is WorkflowState.FINALIZING:
            phases["finalize"] = outcome
            run_log.set_summary('winners', outcome.get('winners', 0))
            run_log.set_summary('released', outcome.get('released', 0))
        else:
            module_phase = phases["modules"].setdefault(step.module['id'], {"name": step.module['name']})
            if step.state is WorkflowState.SELECTING_MODULES:
                module_phase["selected"] = outcome.get('selected', 0)
                module_phase["eligible"] = outcome.get('eligible', 0)
                run_log.increment_summary('candidates_selected', outcome.get('selected', 0))
            elif step.state is WorkflowState.GENERATING_TITLES:
                module_phase["titles"] = outcome.get('generated', 0)
                run_log.increment_summary('titles_generated', outcome.get('generated', 0))
            elif step.state is WorkflowState.FACT_CHECKING:
                module_phase["fact_checked"] = outcome.get('checked', 0)
                module_phase["fact_check_failed"] = outcome.get('failed', 0)
                run_log.increment_summary('fact_checks_failed', outcome.get('failed', 0))
            else:
                module_phase["bodies"] = module_phase.get("bodies", 0) + outcome.get('generated', 0)
                run_log.increment_summary('bodies_generated', outcome.get('generated', 0))

    # =========================================================================
    # STEP REGISTRY
    # =========================================================================

    def _cleanup(self, issue, module, cancel):
        return self.db.reset_issue_for_reprocess(issue['id'])

    def _deduplicate(self, issue, module, cancel):
        return deduplicate_issue(self.db, self.claude, issue, cancel=cancel)

    def _select(self, issue, module, cancel):
        return select_for_module(self.db, self.claude, issue, module,
                                 batch_size=self.batch_size, batch_delay=self.batch_delay, cancel=cancel)

    def _titles(self, issue, module, cancel):
        return generate_titles(self.db, self.claude, issue, module,
                               batch_size=self.batch_size, batch_delay=self.batch_delay, cancel=cancel)

    def _bodies_batch1(self, issue, module, cancel):
        return generate_bodies_batch1(self.db, self.claude, issue, module, limit=self.body_batch_limit,
                                      batch_size=self.batch_size, batch_delay=self.batch_delay,
                                      cancel=cancel)

    def _bodies_batch2(self, issue, module, cancel):
        return generate_bodies_batch2(self.db, self.claude, issue, module,
                                      batch_size=self.batch_size, batch_delay=self.batch_delay,
                                      cancel=cancel)

    def _fact_check(self, issue, module, cancel):
        return fact_check_module(self.db, self.claude, issue, module,
                                 threshold=self.fact_check_threshold, policy=self.fact_check_policy,
                                 batch_size=self.batch_size, batch_delay=self.batch_delay, cancel=cancel)

    def _finalize(self, issue, module, cancel):
        modules = self.db.get_active_modules(issue['publication_id'])
        return finalize_issue(self.db, self.claude, issue, modules, policy=self.fact_check_policy,
                              cancel=cancel)


# =========================================================================
# RQ JOB ENTRY POINTS
# =========================================================================

def _build_assembler() -> IssueAssembler:
    from ..utils.alerts import AlertClient
    from ..utils.claude import ClaudeClient
    from ..utils.db import get_db
    from ..utils.prompts import refresh_cache

    refresh_cache()
    return IssueAssembler(get_db(), ClaudeClient(), AlertClient())


def assemble_issue(issue_id: str) -> dict:
    """Issue assembly - start or resume"""
    logger.info(f"[Assembly] Job started for issue {issue_id}")
    return _build_assembler().assemble(issue_id)


def reprocess_issue(issue_id: str) -> dict:
    """Issue assembly - clean up and replay from scratch"""
    logger.info(f"[Assembly] Reprocess started for issue {issue_id}")
    return _build_assembler().reprocess(issue_id)


def assemble_pending_issues() -> dict:
    """
    Scheduled sweep: enqueue assembly for every issue still at not_started.

    Returns:
        {enqueued: int, job_ids: list, errors: list}
    """
    from ..utils.db import get_db
    from ..worker import enqueue_job

    results = {"enqueued": 0, "job_ids": [], "errors": []}

    for issue in get_db().get_pending_issues():
        try:
            job = enqueue_job(assemble_issue, queue_name='high', job_timeout='2h', issue_id=str(issue['id']))
            results["job_ids"].append(job.id)
            results["enqueued"] += 1
        except Exception as e:
            logger.error(f"[Assembly] Failed to enqueue issue {issue['id']}: {e}")
            results["errors"].append({"issue_id": str(issue['id']), "error": str(e)})

    logger.info(f"[Assembly] Sweep enqueued {results['enqueued']} issues")
    return results


def rescore_module_criteria(module_id: str, candidate_ids: List[str], criteria_numbers: List[int]) -> dict:
    """Criteria backfill job"""
    from ..utils.claude import ClaudeClient
    from ..utils.db import get_db

    db = get_db()
    run_log = ExecutionLogger('rescore_criteria', db=db)
    run_log.info(f"[Rescore] Module {module_id}: criteria {criteria_numbers} for {len(candidate_ids)} candidates")

    try:
        results = rescore_criteria(db, ClaudeClient(), module_id, candidate_ids, criteria_numbers)
    except Exception as e:
        run_log.complete('error', str(e), traceback.format_exc())
        raise

    run_log.set_summary('rescored', results['rescored'])
    run_log.set_summary('errors', len(results['errors']))
    run_log.complete('success' if not results['errors'] else 'partial')
    return results
