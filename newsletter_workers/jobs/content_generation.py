"""
Content Generation Steps
Headlines and bodies for the selected candidates of an article module.

Flow (per module, each a separate workflow step):
    generating_titles        - every article row whose headline is still NULL
    generating_bodies_batch1 - the first BODY_BATCH_LIMIT rows whose content is NULL
    generating_bodies_batch2 - every remaining row whose content is NULL

Claude is called GENERATION_BATCH_SIZE rows at a time with a pause between
batches. Each result is written to its row as soon as it arrives, so a retried
step only regenerates what is still missing. Any failure in a batch fails the
step after the batch settles; the orchestrator retries the whole step.

Modules that do not get generated content (prompts, ads, apps, partner recs)
have nothing to do here.

Returns:
    {module_id, generated, pending}
"""

import logging
import threading
from typing import Dict, Any, List, Optional

from ..config.settings import BODY_BATCH_LIMIT, GENERATION_BATCH_SIZE, GENERATION_BATCH_DELAY_SECONDS
from ..utils.batching import process_in_batches
from ..utils.states import GENERATED_MODULE_TYPES

logger = logging.getLogger(__name__)


def _skip(module: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if module['module_type'] in GENERATED_MODULE_TYPES:
        return None
    return {"module_id": module['id'], "generated": 0, "pending": 0}


def generate_titles(db, claude, issue: Dict[str, Any], module: Dict[str, Any],
                    batch_size: int = GENERATION_BATCH_SIZE,
                    batch_delay: float = GENERATION_BATCH_DELAY_SECONDS,
                    cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    """Headline for every selected article that does not have one yet"""
    skipped = _skip(module)
    if skipped:
        return skipped

    pending = db.get_articles_needing_titles(issue['id'], module['id'])
    if not pending:
        logger.info(f"[Titles] {module['name']}: all headlines already generated")
        return {"module_id": module['id'], "generated": 0, "pending": 0}

    logger.info(f"[Titles] {module['name']}: generating {len(pending)} headlines")

    def write_title(article: Dict[str, Any]) -> str:
        headline = claude.generate_title(article)
        db.update_module_article(article['id'], {'headline': headline})
        logger.info(f"[Titles] Generated: \"{headline[:50]}\"")
        return headline

    process_in_batches(pending, write_title, batch_size, batch_delay, label='Titles', cancel=cancel)
    return {"module_id": module['id'], "generated": len(pending), "pending": 0}


def _generate_bodies(db, claude, issue: Dict[str, Any], module: Dict[str, Any],
                     limit: Optional[int], label: str,
                     batch_size: int, batch_delay: float,
                     cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    skipped = _skip(module)
    if skipped:
        return skipped

    pending = db.get_articles_needing_bodies(issue['id'], module['id'], limit=limit)
    if not pending:
        logger.info(f"[{label}] {module['name']}: no bodies left to generate")
        return {"module_id": module['id'], "generated": 0, "pending": 0}

    logger.info(f"[{label}] {module['name']}: generating {len(pending)} bodies")

    def write_body(article: Dict[str, Any]) -> int:
        body = claude.generate_body(article)
        db.update_module_article(article['id'], {
            'content': body['content'],
            'word_count': body['word_count'],
        })
        logger.info(f"[{label}] Generated {body['word_count']} words for \"{(article.get('headline') or '')[:50]}\"")
        return body['word_count']

    process_in_batches(pending, write_body, batch_size, batch_delay, label=label, cancel=cancel)

    remaining: List[Dict[str, Any]] = db.get_articles_needing_bodies(issue['id'], module['id'])
    return {"module_id": module['id'], "generated": len(pending), "pending": len(remaining)}


def generate_bodies_batch1(db, claude, issue: Dict[str, Any], module: Dict[str, Any],
                           limit: int = BODY_BATCH_LIMIT,
                           batch_size: int = GENERATION_BATCH_SIZE,
                           batch_delay: float = GENERATION_BATCH_DELAY_SECONDS,
                           cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    """Bodies for the first `limit` articles still missing content"""
    return _generate_bodies(db, claude, issue, module, limit, 'Bodies 1', batch_size, batch_delay, cancel)


def generate_bodies_batch2(db, claude, issue: Dict[str, Any], module: Dict[str, Any],
                           batch_size: int = GENERATION_BATCH_SIZE,
                           batch_delay: float = GENERATION_BATCH_DELAY_SECONDS,
                           cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    """Bodies for every article still missing content"""
    return _generate_bodies(db, claude, issue, module, None, 'Bodies 2', batch_size, batch_delay, cancel)
