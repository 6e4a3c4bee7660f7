"""
Fact Check Step
Compares each generated article with its source candidate.

Claude returns accuracy, compliance and quality sub-scores (0-10 each).
score = accuracy + compliance + quality, passed = score >= FACT_CHECK_PASS_THRESHOLD.

Under the default 'advisory' policy a failing article is recorded and logged
but stays eligible for the issue. Under 'exclude' the finalizer drops it
(see is_eligible_for_issue).

Returns:
    {module_id, checked, passed, failed}
"""

import logging
import threading
from typing import Dict, Any, Optional

from ..config.settings import (
    FACT_CHECK_PASS_THRESHOLD,
    FACT_CHECK_POLICY,
    FACT_CHECK_POLICY_EXCLUDE,
    GENERATION_BATCH_SIZE,
    GENERATION_BATCH_DELAY_SECONDS,
)
from ..utils.batching import process_in_batches
from ..utils.states import GENERATED_MODULE_TYPES

logger = logging.getLogger(__name__)


def evaluate_fact_check(result: Dict[str, Any], threshold: int = FACT_CHECK_PASS_THRESHOLD) -> Dict[str, Any]:
    """Column values for a fact-check result"""
    score = float(result['accuracy']) + float(result['compliance']) + float(result['quality'])
    return {
        'fact_check_accuracy': float(result['accuracy']),
        'fact_check_compliance': float(result['compliance']),
        'fact_check_quality': float(result['quality']),
        'fact_check_score': score,
        'fact_check_passed': score >= threshold,
        'fact_check_details': result.get('details') or '',
    }


def is_eligible_for_issue(article: Dict[str, Any], policy: str = FACT_CHECK_POLICY) -> bool:
    """Whether an article may be picked by the finalizer under the fact-check policy"""
    if not article.get('content'):
        return False
    if policy == FACT_CHECK_POLICY_EXCLUDE:
        return bool(article.get('fact_check_passed'))
    return True


def fact_check_module(db, claude, issue: Dict[str, Any], module: Dict[str, Any],
                      threshold: int = FACT_CHECK_PASS_THRESHOLD,
                      policy: str = FACT_CHECK_POLICY,
                      batch_size: int = GENERATION_BATCH_SIZE,
                      batch_delay: float = GENERATION_BATCH_DELAY_SECONDS,
                      cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    """Fact-check every generated article of the module that has no score yet"""
    results = {"module_id": module['id'], "checked": 0, "passed": 0, "failed": 0}
    if module['module_type'] not in GENERATED_MODULE_TYPES:
        return results

    pending = db.get_articles_needing_fact_check(issue['id'], module['id'])
    if not pending:
        logger.info(f"[Fact Check] {module['name']}: nothing to check")
        return results

    logger.info(f"[Fact Check] {module['name']}: checking {len(pending)} articles")

    def check_one(article: Dict[str, Any]) -> bool:
        fields = evaluate_fact_check(claude.fact_check(article), threshold)
        db.update_module_article(article['id'], fields)
        if not fields['fact_check_passed']:
            action = 'kept (advisory)' if policy != FACT_CHECK_POLICY_EXCLUDE else 'will be excluded'
            logger.warning(
                f"[Fact Check] FAILED {fields['fact_check_score']:.0f}/30 for "
                f"\"{(article.get('headline') or '')[:50]}\", {action}: {fields['fact_check_details'][:200]}"
            )
        return fields['fact_check_passed']

    outcomes = process_in_batches(pending, check_one, batch_size, batch_delay, label='Fact Check', cancel=cancel)

    results["checked"] = len(outcomes)
    results["passed"] = sum(1 for passed in outcomes if passed)
    results["failed"] = results["checked"] - results["passed"]
    return results

