"""
Issue Assembly Pipeline Configuration

Tunables for the assembly workflow. Every value can be overridden from the
environment (loaded with python-dotenv by the worker and trigger entry points).
"""

import os
from typing import TypedDict


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, '') else default


# =========================================================================
# STEP HARNESS
# =========================================================================

# 1 original attempt + 2 retries = 3 total tries per step
STEP_MAX_RETRIES = _env_int('STEP_MAX_RETRIES', 2)
STEP_RETRY_DELAY_SECONDS = _env_float('STEP_RETRY_DELAY_SECONDS', 2.0)

# Wall-clock budget for one attempt of one step (10 minutes)
STEP_TIMEOUT_SECONDS = _env_float('STEP_TIMEOUT_SECONDS', 600.0)

# =========================================================================
# CONTENT GENERATION
# =========================================================================

# Concurrent AI calls per batch, and pause between batches (rate limits)
GENERATION_BATCH_SIZE = _env_int('GENERATION_BATCH_SIZE', 3)
GENERATION_BATCH_DELAY_SECONDS = _env_float('GENERATION_BATCH_DELAY_SECONDS', 2.0)

# Body batch 1 handles this many rows, batch 2 handles the rest
BODY_BATCH_LIMIT = _env_int('BODY_BATCH_LIMIT', 3)

# =========================================================================
# FACT CHECK
# =========================================================================

# accuracy + compliance + quality, each 0-10
FACT_CHECK_MAX_SCORE = 30
FACT_CHECK_PASS_THRESHOLD = _env_int('FACT_CHECK_PASS_THRESHOLD', 20)

# 'advisory': failures are recorded but the article stays eligible
# 'exclude': failing articles are dropped at finalize
FACT_CHECK_POLICY_ADVISORY = 'advisory'
FACT_CHECK_POLICY_EXCLUDE = 'exclude'
FACT_CHECK_POLICY = os.environ.get('FACT_CHECK_POLICY', FACT_CHECK_POLICY_ADVISORY).lower()

# =========================================================================
# CANDIDATE POOL
# =========================================================================

DEFAULT_LOOKBACK_HOURS = _env_int('DEFAULT_LOOKBACK_HOURS', 72)

# Title Jaccard similarity at or above this is a duplicate
DEDUP_STRICTNESS_THRESHOLD = _env_float('DEDUP_STRICTNESS_THRESHOLD', 0.80)

# Rows per page for any query that can exceed the store's page size
QUERY_PAGE_SIZE = _env_int('QUERY_PAGE_SIZE', 1000)

# =========================================================================
# ROTATION CURSOR
# =========================================================================

CURSOR_CAS_ATTEMPTS = _env_int('CURSOR_CAS_ATTEMPTS', 3)

# =========================================================================
# ALERTING
# =========================================================================

ALERT_WEBHOOK_URL = os.environ.get('ALERT_WEBHOOK_URL', '')
ALERT_TIMEOUT_SECONDS = _env_float('ALERT_TIMEOUT_SECONDS', 10.0)

# Timezone used to stamp issue dates for the scheduled sweep
PUBLICATION_TIMEZONE = os.environ.get('PUBLICATION_TIMEZONE', 'America/New_York')


class PipelineSettings(TypedDict):
    """Snapshot of the tunables one assembly run was started with."""
    step_max_retries: int
    step_retry_delay_seconds: float
    step_timeout_seconds: float
    generation_batch_size: int
    generation_batch_delay_seconds: float
    body_batch_limit: int
    fact_check_pass_threshold: int
    fact_check_policy: str


def current_settings() -> PipelineSettings:
    """Return the active tunables (written into each run's execution log)"""
    return {
        'step_max_retries': STEP_MAX_RETRIES,
        'step_retry_delay_seconds': STEP_RETRY_DELAY_SECONDS,
        'step_timeout_seconds': STEP_TIMEOUT_SECONDS,
        'generation_batch_size': GENERATION_BATCH_SIZE,
        'generation_batch_delay_seconds': GENERATION_BATCH_DELAY_SECONDS,
        'body_batch_limit': BODY_BATCH_LIMIT,
        'fact_check_pass_threshold': FACT_CHECK_PASS_THRESHOLD,
        'fact_check_policy': FACT_CHECK_POLICY,
    }
