"""
Issue Assembly - Redis Queue Worker
Main entry point for background job processing

Usage:
    # Run worker only
    python -m newsletter_workers.worker

    # Run scheduler (separate process, for the assembly sweep)
    python -m newsletter_workers.worker --with-scheduler

Schedule (UTC):
    Assembly sweep - every 15 minutes, enqueues every issue at not_started
"""

import os
import sys
import logging
from datetime import datetime
from dotenv import load_dotenv
from redis import Redis
from rq import Worker, Queue
from rq_scheduler import Scheduler

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Redis connection
REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379')

ASSEMBLY_SWEEP_CRON = os.environ.get('ASSEMBLY_SWEEP_CRON', '*/15 * * * *')

QUEUE_NAMES = ['high', 'default', 'low']


def get_redis_connection():
    """Get Redis connection from URL"""
    return Redis.from_url(REDIS_URL)


def setup_scheduled_jobs(scheduler: Scheduler):
    """Configure scheduled jobs for the issue assembly pipeline (times in UTC)"""
    from newsletter_workers.jobs.issue_assembly import assemble_pending_issues

    # Clear existing scheduled jobs
    for job in scheduler.get_jobs():
        scheduler.cancel(job)

    logger.info("[Scheduler] Setting up scheduled jobs...")

    scheduler.cron(
        ASSEMBLY_SWEEP_CRON,
        func=assemble_pending_issues,
        queue_name='default',
        id='issue_assembly_sweep',
        description='Enqueue assembly for issues at not_started'
    )
    logger.info(f"[Scheduler] Assembly sweep scheduled: {ASSEMBLY_SWEEP_CRON}")


def run_scheduler():
    """Run the RQ scheduler for cron jobs"""
    conn = get_redis_connection()
    scheduler = Scheduler(connection=conn)

    setup_scheduled_jobs(scheduler)

    logger.info(f"[Scheduler] Starting scheduler at {datetime.utcnow().isoformat()}")
    scheduler.run()


def warmup_database():
    """
    Warm up database connection on startup so a cold database is ready
    before the first job.
    """
    try:
        from newsletter_workers.utils.db import get_db
        from newsletter_workers.utils.prompts import preload_all_prompts

        db = get_db()
        with db.get_cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        logger.info("[Worker] Database connection warm-up successful")
        preload_all_prompts()
        return True
    except Exception as e:
        logger.warning(f"[Worker] Database warm-up failed (will retry on first job): {e}")
        return False


def run_worker():
    """Run the RQ worker"""
    conn = get_redis_connection()

    # 2 hour default: one assembly runs many 10 minute steps back to back
    queues = [Queue(name, connection=conn, default_timeout=7200) for name in QUEUE_NAMES]

    logger.info(f"[Worker] Starting worker at {datetime.utcnow().isoformat()}")
    logger.info(f"[Worker] Listening on queues: {', '.join(QUEUE_NAMES)}")

    warmup_database()

    worker = Worker(queues, connection=conn)
    worker.work()


def enqueue_job(job_func, queue_name: str = 'default', **kwargs):
    """
    Manually enqueue a job.

    Args:
        job_func: The function to run
        queue_name: Queue to add job to ('high', 'default', 'low')
        **kwargs: Arguments to pass to the job function (job_timeout is passed to RQ)

    Returns:
        RQ Job object
    """
    conn = get_redis_connection()
    queue = Queue(queue_name, connection=conn)
    return queue.enqueue(job_func, **kwargs)


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    if '--with-scheduler' in sys.argv or '--scheduler' in sys.argv:
        run_scheduler()
    else:
        run_worker()


if __name__ == '__main__':
    main()
