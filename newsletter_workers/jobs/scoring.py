"""
Scoring Engine
Weighted multi-criteria scoring of candidates, per content module.

Each module owns its criteria table {criteria_number, name, weight, ai_prompt}.
Claude rates a candidate 0-10 on every active criterion; the stored rating
keeps the per-criterion scores and the weighted total:

    total_score = sum(score_i * weight_i)

A criterion with no score contributes 0. A criterion with no weight counts
with weight 1.0.

Entry points:
    score_unrated_candidates() - initial scoring during module selection
    rescore_criteria()         - backfill: recompute some criteria, keep the rest
"""

import logging
import threading
from typing import Dict, Any, List, Optional, Iterable

from ..config.settings import GENERATION_BATCH_SIZE, GENERATION_BATCH_DELAY_SECONDS
from ..utils.batching import process_in_batches
from ..utils.errors import ContentModuleNotFoundError, InvalidSelectionError

logger = logging.getLogger(__name__)

DEFAULT_WEIGHT = 1.0


def _criterion_key(key) -> int:
    return int(key)


def scores_from_rating(criteria_scores: Optional[Dict[Any, Any]]) -> Dict[int, Optional[float]]:
    """
    Flatten stored criteria_scores to {criteria_number: score}.

    Accepts the stored shape {"1": {"score": 8, "reason": ...}} as well as
    bare numbers {"1": 8}.
    """
    flattened: Dict[int, Optional[float]] = {}
    for key, value in (criteria_scores or {}).items():
        score = value.get('score') if isinstance(value, dict) else value
        flattened[_criterion_key(key)] = float(score) if score is not None else None
    return flattened


def weights_from_criteria(criteria: Iterable[Dict[str, Any]]) -> Dict[int, Optional[float]]:
    return {
        _criterion_key(c['criteria_number']): (float(c['weight']) if c.get('weight') is not None else None)
        for c in criteria
    }


def calculate_total_score(criteria_scores: Dict[Any, Optional[float]],
                          weights: Dict[Any, Optional[float]]) -> float:
    """
    Weighted sum over the union of criterion numbers.

    Args:
        criteria_scores: {criteria_number: score 0-10 or None}
        weights: {criteria_number: weight or None}

    Returns:
        sum(score * weight), missing score -> 0, missing weight -> 1.0
    """
    scores = {_criterion_key(k): v for k, v in criteria_scores.items()}
    weight_table = {_criterion_key(k): v for k, v in weights.items()}

    total = 0.0
    for number in sorted(set(scores) | set(weight_table)):
        score = scores.get(number)
        if score is None:
            continue
        weight = weight_table.get(number)
        total += float(score) * (DEFAULT_WEIGHT if weight is None else float(weight))
    return total


def evaluate_candidate(claude, candidate: Dict[str, Any], criteria: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Score one candidate on every given criterion

    Returns:
        {criteria_scores: {"n": {score, weight, reason}}, total_score: float}
    """
    criteria_scores: Dict[str, Dict[str, Any]] = {}
    for criterion in criteria:
        result = claude.score_criterion(candidate, criterion)
        criteria_scores[str(criterion['criteria_number'])] = {
            'score': result['score'],
            'weight': criterion.get('weight'),
            'reason': result.get('reason', ''),
        }

    total = calculate_total_score(scores_from_rating(criteria_scores), weights_from_criteria(criteria))
    return {'criteria_scores': criteria_scores, 'total_score': total}


def passes_minimums(candidate: Dict[str, Any], criteria: List[Dict[str, Any]]) -> bool:
    """
    False when a rated candidate scores below an enforced criterion minimum.
    Unrated candidates are not filtered.
    """
    if not candidate.get('criteria_scores'):
        return True

    scores = scores_from_rating(candidate['criteria_scores'])
    for criterion in criteria:
        if not criterion.get('enforce_minimum') or criterion.get('minimum_score') is None:
            continue
        score = scores.get(_criterion_key(criterion['criteria_number']))
        if score is None or score < float(criterion['minimum_score']):
            return False
    return True


def score_unrated_candidates(db, claude, module: Dict[str, Any], candidates: List[Dict[str, Any]],
                             batch_size: int = GENERATION_BATCH_SIZE,
                             batch_delay: float = GENERATION_BATCH_DELAY_SECONDS,
                             cancel: Optional[threading.Event] = None) -> int:
    """
    Rate every candidate that has no rating for this module yet.

    Ratings are persisted as each one completes and written back onto the
    candidate dicts (total_score, criteria_scores).

    Returns:
        Number of candidates scored
    """
    unrated = [c for c in candidates if c.get('total_score') is None]
    if not unrated:
        return 0

    criteria = db.get_criteria(module['id'])
    if not criteria:
        logger.info(f"[Scoring] Module {module['name']} has no active criteria, leaving {len(unrated)} unrated")
        return 0

    logger.info(f"[Scoring] Scoring {len(unrated)} candidates on {len(criteria)} criteria for {module['name']}")

    def score_one(candidate: Dict[str, Any]) -> float:
        rating = evaluate_candidate(claude, candidate, criteria)
        db.upsert_rating(candidate['id'], module['id'], rating['criteria_scores'], rating['total_score'])
        candidate['criteria_scores'] = rating['criteria_scores']
        candidate['total_score'] = rating['total_score']
        return rating['total_score']

    process_in_batches(unrated, score_one, batch_size, batch_delay, label='Scoring', cancel=cancel)
    return len(unrated)


def rescore_criteria(db, claude, module_id: str, candidate_ids: List[str],
                     criteria_numbers: List[int]) -> Dict[str, Any]:
    """
    Backfill: recompute only the listed criteria for the given candidates.

    Stored scores of every other criterion are kept, and the total is
    recombined from the merged scores with weights looked up from the
    module's current criteria table (1.0 where unset).

    Returns:
        {rescored: int, skipped: int, errors: list}
    """
    module = db.get_module(module_id)
    if not module:
        raise ContentModuleNotFoundError(module_id)

    all_criteria = db.get_criteria(module_id, active_only=False)
    by_number = {_criterion_key(c['criteria_number']): c for c in all_criteria}

    wanted = [int(n) for n in criteria_numbers]
    unknown = [n for n in wanted if n not in by_number]
    if not wanted or unknown:
        raise InvalidSelectionError(f"Unknown criteria numbers for module {module_id}: {unknown or wanted}")

    targets = [by_number[n] for n in wanted]
    weights = weights_from_criteria(all_criteria)

    results = {"rescored": 0, "skipped": 0, "errors": []}
    candidates = {c['id']: c for c in db.get_candidates_by_ids(candidate_ids)}

    for candidate_id in candidate_ids:
        candidate = candidates.get(candidate_id)
        if not candidate:
            results["skipped"] += 1
            results["errors"].append({"candidate_id": candidate_id, "error": "Candidate not found"})
            continue

        try:
            rating = db.get_rating(candidate_id, module_id)
            merged: Dict[str, Any] = dict((rating or {}).get('criteria_scores') or {})

            fresh = evaluate_candidate(claude, candidate, targets)
            merged.update(fresh['criteria_scores'])

            total = calculate_total_score(scores_from_rating(merged), weights)
            db.upsert_rating(candidate_id, module_id, merged, total)
            results["rescored"] += 1
            logger.info(f"[Rescore] {candidate_id}: criteria {wanted} rescored, total={total:.2f}")

        except Exception as e:
            logger.error(f"[Rescore] Failed for {candidate_id}: {e}")
            results["errors"].append({"candidate_id": candidate_id, "error": str(e)})

    return results
