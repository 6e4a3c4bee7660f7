"""
Deduplication Step
Runs once per issue, before any module selection.

Flow:
1. Load unassigned, unsuppressed article candidates inside the lookback window
2. Stage 1 - exact content hash (MD5 of normalized text)
3. Stage 2 - title similarity (word Jaccard >= strictness threshold)
4. Stage 3 - Claude groups the remaining candidates by underlying news event
5. Persist multi-member groups; every member except the representative is suppressed

The groups form a partition of the pool: every candidate belongs to exactly
one group (singletons are implicit). The representative of a group is its
best-scored member, ties broken by pool order.

Errors from Claude or the database fail the step so the orchestrator retries;
deduplication is never skipped silently.

Returns:
    {pool_size, groups_found, duplicates_suppressed, skipped}
"""

import re
import hashlib
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Set

from ..config.settings import DEFAULT_LOOKBACK_HOURS, DEDUP_STRICTNESS_THRESHOLD
from ..utils.batching import raise_if_cancelled
from ..utils.errors import MalformedResponseError

logger = logging.getLogger(__name__)

METHOD_CONTENT_HASH = 'content_hash'
METHOD_TITLE_SIMILARITY = 'title_similarity'
METHOD_AI_SEMANTIC = 'ai_semantic'


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip punctuation, collapse whitespace"""
    if not text:
        return ''
    text = re.sub(r'[^\w\s]', ' ', text.lower())
    return re.sub(r'\s+', ' ', text).strip()


def content_hash(candidate: Dict[str, Any]) -> Optional[str]:
    """MD5 of the first non-empty of content, description, title"""
    for field in ('content', 'description', 'title'):
        normalized = normalize_text(candidate.get(field))
        if normalized:
            return hashlib.md5(normalized.encode('utf-8')).hexdigest()
    return None


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Jaccard similarity of the word sets of two titles"""
    words_a = set(normalize_text(a).split())
    words_b = set(normalize_text(b).split())
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def _rank_pool(pool: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Best score first, unscored last, pool order within ties"""
    return sorted(
        pool,
        key=lambda c: -(c['best_score']) if c.get('best_score') is not None else float('inf')
    )


def find_duplicate_groups(pool: List[Dict[str, Any]], claude,
                          threshold: float = DEDUP_STRICTNESS_THRESHOLD) -> List[Dict[str, Any]]:
    """
    Partition the pool into duplicate groups.

    Returns only multi-member groups:
        [{representative_id, member_ids, detection_method, topic_signature, similarity_score}]
    member_ids are in rank order, representative first.
    """
    ranked = _rank_pool(pool)
    grouped: Set[str] = set()
    groups: List[Dict[str, Any]] = []

    # Stage 1: exact content hash
    buckets: Dict[str, List[Dict[str, Any]]] = {}
    for candidate in ranked:
        digest = content_hash(candidate)
        if digest:
            buckets.setdefault(digest, []).append(candidate)

    for members in buckets.values():
        if len(members) < 2:
            continue
        groups.append({
            'representative_id': members[0]['id'],
            'member_ids': [m['id'] for m in members],
            'detection_method': METHOD_CONTENT_HASH,
            'topic_signature': members[0].get('title'),
            'similarity_score': 1.0,
        })
        grouped.update(m['id'] for m in members)

    # Stage 2: title similarity, greedy in rank order
    remaining = [c for c in ranked if c['id'] not in grouped]
    for i, candidate in enumerate(remaining):
        if candidate['id'] in grouped:
            continue
        members = [candidate]
        best_similarity = 0.0
        for other in remaining[i + 1:]:
            if other['id'] in grouped:
                continue
            similarity = title_similarity(candidate.get('title'), other.get('title'))
            if similarity >= threshold:
                members.append(other)
                best_similarity = max(best_similarity, similarity)
        if len(members) > 1:
            groups.append({
                'representative_id': candidate['id'],
                'member_ids': [m['id'] for m in members],
                'detection_method': METHOD_TITLE_SIMILARITY,
                'topic_signature': candidate.get('title'),
                'similarity_score': round(best_similarity, 4),
            })
            grouped.update(m['id'] for m in members)

    # Stage 3: semantic grouping by Claude
    remaining = [c for c in ranked if c['id'] not in grouped]
    if len(remaining) >= 2:
        for ai_group in claude.find_topic_groups(remaining):
            indices = [ai_group['primary_article_index']] + list(ai_group['duplicate_indices'])
            for index in indices:
                if index < 0 or index >= len(remaining):
                    raise MalformedResponseError(
                        f"Topic group index {index} out of range (0-{len(remaining) - 1})"
                    )

            # An index Claude placed in two groups stays with the first
            members = sorted(
                {index for index in indices if remaining[index]['id'] not in grouped}
            )
            if len(members) < 2:
                continue

            member_rows = [remaining[index] for index in members]
            groups.append({
                'representative_id': member_rows[0]['id'],
                'member_ids': [m['id'] for m in member_rows],
                'detection_method': METHOD_AI_SEMANTIC,
                'topic_signature': ai_group.get('topic_signature'),
                'similarity_score': None,
            })
            grouped.update(m['id'] for m in member_rows)

    return groups


def deduplicate_issue(db, claude, issue: Dict[str, Any],
                      lookback_hours: int = DEFAULT_LOOKBACK_HOURS,
                      threshold: float = DEDUP_STRICTNESS_THRESHOLD,
                      cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    """
    Dedup step for one issue. A no-op when groups already exist for the issue.
    """
    results = {"pool_size": 0, "groups_found": 0, "duplicates_suppressed": 0, "skipped": False}

    if db.has_duplicate_groups(issue['id']):
        logger.info(f"[Dedup] Issue {issue['id']} already deduplicated, skipping")
        results["skipped"] = True
        return results

    since = datetime.now(timezone.utc) - timedelta(hours=lookback_hours)
    pool = db.get_dedup_pool(issue['publication_id'], since)
    results["pool_size"] = len(pool)
    logger.info(f"[Dedup] {len(pool)} candidates in the {lookback_hours}h window")

    if len(pool) < 2:
        return results

    groups = find_duplicate_groups(pool, claude, threshold)
    raise_if_cancelled(cancel, 'Dedup')
    if groups:
        results["duplicates_suppressed"] = db.save_duplicate_groups(issue['id'], groups)
    results["groups_found"] = len(groups)

    by_method: Dict[str, int] = {}
    for group in groups:
        by_method[group['detection_method']] = by_method.get(group['detection_method'], 0) + 1
    logger.info(f"[Dedup] {len(groups)} duplicate groups {by_method}, "
                f"{results['duplicates_suppressed']} candidates suppressed")

    return results
