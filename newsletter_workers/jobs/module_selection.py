"""
Module Selection Step
Runs once per active content module, in display order.

Flow:
1. Reuse the module's existing selection for this issue when there is one
   (manual choices and earlier runs are never overwritten)
2. Manual modules with no selection get an empty row for the operator to fill
3. Otherwise load eligible candidates, score unrated ones (score_based),
   drop candidates under enforced criterion minimums, and select by mode
4. Write the ModuleSelection row, claim the candidates for the issue, and
   create one module_articles row per selected candidate for article modules

Selection modes:
    score_based - highest total score first, stable on ties
    priority    - highest operator priority first, stable on ties
    random      - uniform sample
    sequential  - circular rotation over a stable order, starting at the module cursor
    manual      - nothing; an operator supplies the list

The sequential cursor only moves when an issue is sent (record_usage), so
reprocessing a draft picks the same rotation slots again.

Returns:
    {module_id, module_name, mode, eligible, selected, scored, reused}
"""

import random
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Callable, Optional

from ..config.settings import (
    CURSOR_CAS_ATTEMPTS,
    DEFAULT_LOOKBACK_HOURS,
    GENERATION_BATCH_SIZE,
    GENERATION_BATCH_DELAY_SECONDS,
)
from ..utils.batching import raise_if_cancelled
from ..utils.errors import (
    ContentModuleNotFoundError,
    InvalidSelectionError,
    InvalidWorkflowStateError,
    IssueNotFoundError,
    TransientError,
)
from ..utils.states import (
    CONSUMABLE_MODULE_TYPES,
    GENERATED_MODULE_TYPES,
    IssueStatus,
    ModuleType,
    SelectionMode,
)
from .scoring import passes_minimums, score_unrated_candidates

logger = logging.getLogger(__name__)


# =========================================================================
# SELECTORS
# =========================================================================

def _score_key(candidate: Dict[str, Any]) -> float:
    score = candidate.get('total_score')
    return float(score) if score is not None else 0.0


def _priority_key(candidate: Dict[str, Any]) -> float:
    priority = candidate.get('priority')
    return float(priority) if priority is not None else 0.0


def _natural_key(candidate: Dict[str, Any]) -> str:
    return str(candidate.get('natural_key') or candidate['id'])


def select_score_based(eligible: List[Dict[str, Any]], count: int, module: Dict[str, Any],
                       rng: random.Random) -> List[str]:
    ranked = sorted(eligible, key=_score_key, reverse=True)
    return [c['id'] for c in ranked[:count]]


def select_priority(eligible: List[Dict[str, Any]], count: int, module: Dict[str, Any],
                    rng: random.Random) -> List[str]:
    ranked = sorted(eligible, key=_priority_key, reverse=True)
    return [c['id'] for c in ranked[:count]]


def select_random(eligible: List[Dict[str, Any]], count: int, module: Dict[str, Any],
                  rng: random.Random) -> List[str]:
    return [c['id'] for c in rng.sample(eligible, min(count, len(eligible)))]


def sequential_start_index(cursor: Optional[int], eligible_count: int) -> int:
    """0-based start for a 1-based cursor, wrapped to the current eligible size"""
    return ((cursor or 1) - 1) % eligible_count


def select_sequential(eligible: List[Dict[str, Any]], count: int, module: Dict[str, Any],
                      rng: random.Random) -> List[str]:
    ordered = sorted(eligible, key=_natural_key)
    total = len(ordered)
    start = sequential_start_index(module.get('next_position'), total)
    return [ordered[(start + offset) % total]['id'] for offset in range(min(count, total))]


def select_manual(eligible: List[Dict[str, Any]], count: int, module: Dict[str, Any],
                  rng: random.Random) -> List[str]:
    return []


SELECTORS: Dict[SelectionMode, Callable[..., List[str]]] = {
    SelectionMode.SCORE_BASED: select_score_based,
    SelectionMode.PRIORITY: select_priority,
    SelectionMode.RANDOM: select_random,
    SelectionMode.SEQUENTIAL: select_sequential,
    SelectionMode.MANUAL: select_manual,
}

_unhandled_modes = set(SelectionMode) - set(SELECTORS)
if _unhandled_modes:
    raise RuntimeError(f"No selector registered for modes: {sorted(m.value for m in _unhandled_modes)}")


def select(module: Dict[str, Any], eligible: List[Dict[str, Any]],
           rng: Optional[random.Random] = None) -> List[str]:
    """
    Ordered candidate ids for a module.

    Pure: no datastore access and no cursor movement. An empty eligible set
    or a zero target count gives an empty list.
    """
    mode = SelectionMode.parse(module['selection_mode'])
    count = int(module.get('target_count') or 0)
    if not eligible or count <= 0:
        return []
    return SELECTORS[mode](list(eligible), count, module, rng or random.Random())


# =========================================================================
# ROTATION CURSOR
# =========================================================================

def next_cursor(cursor: Optional[int], used: int, eligible_count: int) -> int:
    """1-based cursor after consuming `used` items from a rotation of `eligible_count`"""
    if eligible_count <= 0:
        return cursor or 1
    return ((sequential_start_index(cursor, eligible_count) + used) % eligible_count) + 1


def advance_cursor(db, issue_id: str, module_id: str, used: int, eligible_count: int,
                   attempts: int = CURSOR_CAS_ATTEMPTS) -> Optional[int]:
    """
    Move a sequential module's cursor forward by the count an issue used.

    Compare-and-swap on cursor_version, committed together with the
    selection's cursor_advanced_at stamp so a selection is counted once.
    Re-reads and retries when another writer got there first.

    Returns:
        The new cursor, or None when nothing was used or the selection was
        already counted
    """
    if used <= 0 or eligible_count <= 0:
        return None

    for attempt in range(attempts):
        selection = db.get_module_selection(issue_id, module_id)
        if not selection or selection.get('cursor_advanced_at'):
            logger.info(f"[Selector] Cursor for {module_id} already advanced for issue {issue_id}")
            return None

        module = db.get_module(module_id)
        if not module:
            raise ContentModuleNotFoundError(module_id)

        new_position = next_cursor(module.get('next_position'), used, eligible_count)
        if db.advance_cursor_for_selection(issue_id, module_id, module['cursor_version'], new_position):
            logger.info(f"[Selector] Cursor for {module['name']}: "
                        f"{module.get('next_position')} -> {new_position} (used {used} of {eligible_count})")
            return new_position

        logger.warning(f"[Selector] Cursor update for {module_id} lost a race "
                       f"(attempt {attempt + 1}/{attempts}), retrying")

    raise TransientError(f"Could not advance cursor for module {module_id} after {attempts} attempts")


def record_usage(db, issue_id: str, attempts: int = CURSOR_CAS_ATTEMPTS) -> Dict[str, int]:
    """
    Consume an issue's selections once it has been sent.

    Sequential rotations move forward by the number of candidates the issue
    carried, then every selection gets used_at. Safe to repeat.

    Returns:
        {cursors_advanced, stamped}
    """
    results = {"cursors_advanced": 0, "stamped": 0}

    for selection in db.get_module_selections(issue_id):
        if SelectionMode.parse(selection['selection_mode']) is not SelectionMode.SEQUENTIAL:
            continue
        used = len(selection.get('candidate_ids') or [])
        advanced = advance_cursor(db, issue_id, selection['module_id'], used,
                                  int(selection.get('eligible_count') or 0), attempts)
        if advanced is not None:
            results["cursors_advanced"] += 1

    results["stamped"] = db.mark_selections_used(issue_id)
    logger.info(f"[Selector] Issue {issue_id}: {results['stamped']} selections marked used, "
                f"{results['cursors_advanced']} cursors advanced")
    return results


def mark_issue_sent(db, issue_id: str) -> Dict[str, Any]:
    """
    Send hook: a draft issue went out. Records usage, then flips the issue
    to sent. Repeating it for an already-sent issue only re-runs the
    (idempotent) usage bookkeeping.
    """
    issue = db.get_issue(issue_id)
    if not issue:
        raise IssueNotFoundError(issue_id)
    if issue['status'] not in (IssueStatus.DRAFT.value, IssueStatus.SENT.value):
        raise InvalidWorkflowStateError(
            f"Issue {issue_id} is {issue['status']}; only draft issues can be marked sent"
        )

    usage = record_usage(db, issue_id)
    if issue['status'] != IssueStatus.SENT.value:
        db.update_issue(issue_id, {'status': IssueStatus.SENT.value})
        logger.info(f"[Selector] Issue {issue_id} marked sent")

    return dict(usage, issue_id=issue_id, status=IssueStatus.SENT.value)


# =========================================================================
# SELECTION STEP
# =========================================================================

def _lookback_since(module: Dict[str, Any]) -> Optional[datetime]:
    """Only consumable (article) candidates are limited to a time window"""
    if module['module_type'] not in CONSUMABLE_MODULE_TYPES:
        return None
    hours = module.get('lookback_hours') or DEFAULT_LOOKBACK_HOURS
    return datetime.now(timezone.utc) - timedelta(hours=hours)


def _claim(db, issue_id: str, module: Dict[str, Any], candidate_ids: List[str]):
    """Assign candidates to the module and create article rows. Safe to repeat."""
    if not candidate_ids:
        return
    db.assign_candidates(issue_id, module['id'], candidate_ids)
    if module['module_type'] in GENERATED_MODULE_TYPES:
        db.create_module_articles(issue_id, module['id'], candidate_ids)


def select_for_module(db, claude, issue: Dict[str, Any], module: Dict[str, Any],
                      rng: Optional[random.Random] = None,
                      batch_size: int = GENERATION_BATCH_SIZE,
                      batch_delay: float = GENERATION_BATCH_DELAY_SECONDS,
                      cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    """Selection step for one module of one issue"""
    issue_id = issue['id']
    mode = SelectionMode.parse(module['selection_mode'])
    results = {
        "module_id": module['id'],
        "module_name": module['name'],
        "mode": mode.value,
        "eligible": 0,
        "selected": 0,
        "scored": 0,
        "reused": False,
    }

    existing = db.get_module_selection(issue_id, module['id'])

    if existing is None and mode is SelectionMode.MANUAL:
        db.insert_module_selection_if_absent(issue_id, module['id'], mode.value)
        existing = db.get_module_selection(issue_id, module['id'])

    if existing is not None:
        candidate_ids = list(existing.get('candidate_ids') or [])
        _claim(db, issue_id, module, candidate_ids)
        results.update({
            "eligible": existing.get('eligible_count') or 0,
            "selected": len(candidate_ids),
            "reused": True,
        })
        logger.info(f"[Selector] {module['name']}: keeping existing {existing['selection_mode']} "
                    f"selection ({len(candidate_ids)} candidates)")
        return results

    eligible = db.get_eligible_candidates(issue_id, module, _lookback_since(module))
    results["eligible"] = len(eligible)

    if mode is SelectionMode.SCORE_BASED and eligible:
        results["scored"] = score_unrated_candidates(
            db, claude, module, eligible, batch_size=batch_size, batch_delay=batch_delay, cancel=cancel
        )
        criteria = db.get_criteria(module['id'])
        if any(c.get('enforce_minimum') for c in criteria):
            before = len(eligible)
            eligible = [c for c in eligible if passes_minimums(c, criteria)]
            logger.info(f"[Selector] {module['name']}: {before - len(eligible)} candidates below criterion minimums")

    candidate_ids = select(module, eligible, rng)
    raise_if_cancelled(cancel, 'Selector')

    db.upsert_module_selection(issue_id, module['id'], candidate_ids, mode.value, len(eligible))
    _claim(db, issue_id, module, candidate_ids)

    results["selected"] = len(candidate_ids)
    if not eligible:
        logger.info(f"[Selector] {module['name']}: no eligible candidates, module will be empty")
    else:
        logger.info(f"[Selector] {module['name']} ({mode.value}): selected {len(candidate_ids)} "
                    f"of {len(eligible)} eligible")
    return results


# =========================================================================
# MANUAL OVERRIDE
# =========================================================================

def _validate_id_list(candidate_ids) -> List[str]:
    if not isinstance(candidate_ids, list):
        raise InvalidSelectionError("candidate_ids must be a list")
    if any(not isinstance(cid, str) or not cid.strip() for cid in candidate_ids):
        raise InvalidSelectionError("candidate_ids must be non-empty strings")
    if len(set(candidate_ids)) != len(candidate_ids):
        raise InvalidSelectionError("candidate_ids contains duplicates")
    return list(candidate_ids)


def manually_select(db, issue_id: str, module_id: str, candidate_ids) -> Dict[str, Any]:
    """
    Operator override of a module's selection for an issue.

    The row is written with selection_mode 'manual' so later selection runs
    and reprocessing keep it. Concurrent overrides are last-writer-wins.

    Returns:
        {issue_id, module_id, candidate_ids, selection_mode}
    """
    ids = _validate_id_list(candidate_ids)

    issue = db.get_issue(issue_id)
    if not issue:
        raise IssueNotFoundError(issue_id)
    if issue['status'] in (IssueStatus.SENT.value, IssueStatus.FAILED.value):
        raise InvalidWorkflowStateError(
            f"Issue {issue_id} is {issue['status']}; selections can no longer be changed"
        )

    module = db.get_module(module_id)
    if not module or str(module['publication_id']) != str(issue['publication_id']):
        raise ContentModuleNotFoundError(module_id)

    target = int(module.get('target_count') or 0)
    if len(ids) > target > 0:
        raise InvalidSelectionError(f"Module {module['name']} takes at most {target} candidates, got {len(ids)}")

    found = {c['id']: c for c in db.get_candidates_by_ids(ids)}
    invalid = []
    for cid in ids:
        candidate = found.get(cid)
        if (
            not candidate
            or str(candidate['publication_id']) != str(issue['publication_id'])
            or candidate['family'] != module['module_type']
            or not candidate['is_active']
            or candidate['excluded']
            or (module['module_type'] == ModuleType.PARTNER_REC.value and not candidate['module_eligible'])
        ):
            invalid.append(cid)
    if invalid:
        raise InvalidSelectionError(f"Candidates not selectable for module {module['name']}: {invalid}")

    claimed_elsewhere = [
        a['candidate_id'] for a in db.get_assignments(issue_id)
        if a['candidate_id'] in ids and str(a['module_id']) != str(module_id)
    ]
    if claimed_elsewhere:
        raise InvalidSelectionError(f"Candidates already used by another module in this issue: {claimed_elsewhere}")

    db.upsert_module_selection(issue_id, module_id, ids, SelectionMode.MANUAL.value, len(ids))
    logger.info(f"[Selector] Manual selection for issue {issue_id}, module {module['name']}: {len(ids)} candidates")

    return {
        "issue_id": issue_id,
        "module_id": module_id,
        "candidate_ids": ids,
        "selection_mode": SelectionMode.MANUAL.value,
    }
