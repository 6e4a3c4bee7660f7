"""
Batched fan-out for blocking AI calls.

Items are processed `batch_size` at a time on a shared thread pool; each batch
is awaited in full before the next starts, with a fixed pause in between to
stay under upstream rate limits.

A step attempt that the orchestrator has abandoned (timed out) has its cancel
event set. The event is checked before every batch, so an abandoned attempt
stops at the next batch boundary instead of racing its retry.
"""

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Sequence

from .errors import StepCancelledError

logger = logging.getLogger(__name__)

# Shared pool for blocking SDK calls (anthropic, psycopg2)
_ai_executor = ThreadPoolExecutor(max_workers=10)


def raise_if_cancelled(cancel: Optional[threading.Event], label: str):
    """Stop an abandoned attempt before it starts more work"""
    if cancel is not None and cancel.is_set():
        logger.warning(f"[{label}] Attempt was abandoned, stopping before further work")
        raise StepCancelledError(f"{label} cancelled")


async def _run_batches(items: Sequence[Any], worker: Callable[[Any], Any],
                       batch_size: int, delay_seconds: float, label: str,
                       cancel: Optional[threading.Event]) -> List[Any]:
    loop = asyncio.get_running_loop()
    results: List[Any] = []
    total_batches = (len(items) + batch_size - 1) // batch_size

    for batch_start in range(0, len(items), batch_size):
        raise_if_cancelled(cancel, label)

        batch = items[batch_start:batch_start + batch_size]
        batch_num = (batch_start // batch_size) + 1
        logger.info(f"[{label}] Processing batch {batch_num}/{total_batches} ({len(batch)} items)")

        tasks = [
            loop.run_in_executor(_ai_executor, worker, item)
            for item in batch
        ]
        batch_results = await asyncio.gather(*tasks, return_exceptions=True)

        failures = [r for r in batch_results if isinstance(r, BaseException)]
        for failure in failures:
            logger.error(f"[{label}] Item failed: {type(failure).__name__}: {failure}")
        if failures:
            # Completed items are already persisted by the worker; the step retries the rest
            raise failures[0]

        results.extend(batch_results)

        if batch_start + batch_size < len(items) and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

    return results


def process_in_batches(items: Sequence[Any], worker: Callable[[Any], Any],
                       batch_size: int, delay_seconds: float, label: str = 'Batch',
                       cancel: Optional[threading.Event] = None) -> List[Any]:
    """
    Run worker(item) for every item in small concurrent batches.

    Returns the results in item order. The first failure of a batch is raised
    after the whole batch has settled; later batches are not started. When
    `cancel` is set, StepCancelledError is raised before the next batch.
    """
    if not items:
        return []
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return asyncio.run(_run_batches(list(items), worker, batch_size, delay_seconds, label, cancel))
