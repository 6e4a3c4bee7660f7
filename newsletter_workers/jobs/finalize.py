"""
Finalize Step
Last step of issue assembly. Turns module selections into a draft issue.

Flow:
1. For each active module in display order:
   a. Article modules: rank generated articles by candidate total score
      (selection order on ties, operator order for manual selections),
      apply the fact-check policy, keep the top target_count, mark them
      is_active with a 1-based rank, and write the winners to the selection
      (manual selections too, so dropped candidates leave the row)
   b. Other modules: the selection is already final
2. Release every candidate claimed for the issue that did not make it in
3. Subject line from the first article module's top-ranked headlines
4. Welcome intro / tagline / summary from all active articles
5. status = draft, workflow_state = draft, written only while the issue is
   still at finalizing

Sequential cursors are not touched here; they move when the issue is sent.
Subject line and welcome text already on the issue are kept, so a retried
finalize does not pay for them twice.

Returns:
    {modules: {module_id: winners}, winners, released, subject_line}
"""

import logging
import threading
from typing import Dict, Any, List, Optional

from ..config.settings import FACT_CHECK_POLICY
from ..utils.batching import raise_if_cancelled
from ..utils.errors import InvalidWorkflowStateError, IssueNotFoundError
from ..utils.states import GENERATED_MODULE_TYPES, IssueStatus, SelectionMode, WorkflowState
from .fact_check import is_eligible_for_issue

logger = logging.getLogger(__name__)

# Headlines handed to the subject line prompt
SUBJECT_LINE_HEADLINES = 3


def rank_module_articles(articles: List[Dict[str, Any]], selection_mode: str,
                         policy: str = FACT_CHECK_POLICY) -> List[Dict[str, Any]]:
    """
    Eligible articles in final order.

    articles must arrive in selection order; the score sort is stable so
    ties keep it. Manual selections keep the operator's order.
    """
    eligible = [a for a in articles if is_eligible_for_issue(a, policy)]
    if SelectionMode.parse(selection_mode) is SelectionMode.MANUAL:
        return eligible
    return sorted(eligible, key=lambda a: a.get('total_score') or 0.0, reverse=True)


def _finalize_article_module(db, issue_id: str, module: Dict[str, Any],
                             selection: Dict[str, Any], policy: str) -> List[Dict[str, Any]]:
    """Pick and rank winners. Returns the winning article rows in rank order."""
    articles = db.get_module_articles(issue_id, module['id'])
    ranked = rank_module_articles(articles, selection['selection_mode'], policy)

    is_manual = SelectionMode.parse(selection['selection_mode']) is SelectionMode.MANUAL
    limit = len(selection.get('candidate_ids') or []) if is_manual else int(module.get('target_count') or 0)
    winners = ranked[:limit]

    dropped = len(articles) - len(winners)
    if dropped:
        logger.info(f"[Finalize] {module['name']}: {len(winners)} winners, {dropped} articles not used")

    db.set_article_ranks(issue_id, module['id'], [a['id'] for a in winners])

    db.set_selection_winners(issue_id, module['id'], [a['candidate_id'] for a in winners])
    return winners


def finalize_issue(db, claude, issue: Dict[str, Any], modules: List[Dict[str, Any]],
                   policy: str = FACT_CHECK_POLICY,
                   cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    """Finalize step for one issue"""
    issue_id = issue['id']
    current = db.get_issue(issue_id)
    if not current:
        raise IssueNotFoundError(issue_id)

    results = {
        "modules": {},
        "winners": 0,
        "released": 0,
        "subject_line": current.get('subject_line') or '',
    }

    keep_ids: List[str] = []
    lead_headlines: Optional[List[str]] = None
    active_articles: List[Dict[str, Any]] = []

    for module in modules:
        raise_if_cancelled(cancel, 'Finalize')

        selection = db.get_module_selection(issue_id, module['id'])
        if selection is None:
            logger.warning(f"[Finalize] {module['name']} has no selection for issue {issue_id}, skipping")
            continue

        if module['module_type'] in GENERATED_MODULE_TYPES:
            winners = _finalize_article_module(db, issue_id, module, selection, policy)
            winner_ids = [a['candidate_id'] for a in winners]
            active_articles.extend(winners)
            if lead_headlines is None and winners:
                lead_headlines = [a['headline'] for a in winners[:SUBJECT_LINE_HEADLINES]]
        else:
            winner_ids = list(selection.get('candidate_ids') or [])

        keep_ids.extend(winner_ids)
        results["modules"][module['id']] = len(winner_ids)
        results["winners"] += len(winner_ids)

    raise_if_cancelled(cancel, 'Finalize')
    results["released"] = db.release_unused_candidates(issue_id, keep_ids)
    logger.info(f"[Finalize] {results['winners']} candidates used, {results['released']} released")

    updates: Dict[str, Any] = {}

    if lead_headlines and not current.get('subject_line'):
        raise_if_cancelled(cancel, 'Finalize')
        updates['subject_line'] = claude.generate_subject_line(lead_headlines)
        results["subject_line"] = updates['subject_line']
        logger.info(f"[Finalize] Subject line: {updates['subject_line']}")

    if active_articles and not current.get('welcome_summary'):
        raise_if_cancelled(cancel, 'Finalize')
        welcome = claude.generate_welcome(active_articles)
        updates['welcome_intro'] = welcome['intro']
        updates['welcome_tagline'] = welcome['tagline']
        updates['welcome_summary'] = welcome['summary']

    raise_if_cancelled(cancel, 'Finalize')
    updates.update({
        'status': IssueStatus.DRAFT.value,
        'workflow_state': WorkflowState.DRAFT.value,
        'workflow_module_id': None,
        'workflow_error': None,
    })
    if not db.update_issue(issue_id, updates, expected_state=WorkflowState.FINALIZING.value):
        raise InvalidWorkflowStateError(f"Issue {issue_id} left finalizing before finalize completed")
    logger.info(f"[Finalize] Issue {issue_id} is now a draft")

    return results
