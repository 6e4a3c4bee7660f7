"""
PostgreSQL Database Client for the Issue Assembly Workers
Typed reads and writes for issues, content modules, candidates, selections
and generated module articles.

Connections are opened fresh per cursor and retried on SSL / connection drops.
Any query that can return more than one page of rows goes through
_fetch_paginated().
"""

import os
import json
import logging
import time
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable
from contextlib import contextmanager
import psycopg2
from psycopg2.extras import RealDictCursor

from ..config.settings import QUERY_PAGE_SIZE
from .states import CONSUMABLE_MODULE_TYPES, OPEN_ISSUE_STATUSES, ModuleType, SelectionMode

logger = logging.getLogger(__name__)

# Retry configuration for SSL connection failures
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1

# Columns update_issue() is allowed to write
ISSUE_UPDATABLE_FIELDS = (
    'status', 'workflow_state', 'workflow_module_id', 'workflow_error',
    'subject_line', 'welcome_intro', 'welcome_tagline', 'welcome_summary',
    'poll_snapshot',
)

# Columns update_module_article() is allowed to write
ARTICLE_UPDATABLE_FIELDS = (
    'headline', 'content', 'word_count',
    'fact_check_accuracy', 'fact_check_compliance', 'fact_check_quality',
    'fact_check_score', 'fact_check_passed', 'fact_check_details',
    'rank', 'is_active',
)

WORKFLOW_ERROR_MAX_LENGTH = 500


class DatabaseClient:
    """PostgreSQL database client for the issue assembly workers"""

    def __init__(self):
        self.database_url = os.environ.get('DATABASE_URL')
        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

    def _create_connection(self):
        """Create a new database connection with proper SSL settings"""
        sslmode = 'require' if os.environ.get('APP_ENV') == 'production' else 'prefer'

        return psycopg2.connect(
            self.database_url,
            cursor_factory=RealDictCursor,
            sslmode=sslmode,
            connect_timeout=10,
            options='-c statement_timeout=30000'
        )

    def _connect_with_retry(self):
        """Open a connection, retrying SSL drops and connection failures"""
        last_error = None

        for attempt in range(MAX_RETRIES):
            try:
                return self._create_connection()
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                last_error = e
                logger.warning(f"Database connection error (attempt {attempt + 1}/{MAX_RETRIES}): {e}")

                if attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_DELAY_SECONDS * (attempt + 1))

        logger.error(f"Database connection failed after {MAX_RETRIES} retries: {last_error}")
        raise last_error

    @contextmanager
    def get_cursor(self):
        """Context manager for a database cursor; commits on success, rolls back on error"""
        conn = self._connect_with_retry()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            cursor.close()
            conn.close()

    def _fetch_paginated(self, sql: str, params: Dict[str, Any],
                         page_size: int = QUERY_PAGE_SIZE) -> List[Dict[str, Any]]:
        """
        Run a SELECT page by page. The statement must have a deterministic
        ORDER BY and no LIMIT/OFFSET of its own.
        """
        rows: List[Dict[str, Any]] = []
        offset = 0
        paged_sql = f"{sql}\nLIMIT %(_limit)s OFFSET %(_offset)s"

        while True:
            page_params = dict(params, _limit=page_size, _offset=offset)
            with self.get_cursor() as cursor:
                cursor.execute(paged_sql, page_params)
                page = [dict(row) for row in cursor.fetchall()]
            rows.extend(page)
            if len(page) < page_size:
                return rows
            offset += page_size

    # =========================================================================
    # PROMPT QUERIES
    # =========================================================================

    def get_prompt_by_key(self, prompt_key: str) -> Optional[Dict[str, Any]]:
        """
        Get a prompt by its key with current content

        Returns:
            {id, prompt_key, name, model, temperature, max_tokens, content, current_version}
        """
        sql = """
            SELECT
                sp.id,
                sp.prompt_key,
                sp.name,
                sp.model,
                sp.temperature,
                sp.max_tokens,
                spv.content,
                spv.version as current_version
            FROM system_prompts sp
            LEFT JOIN system_prompt_versions spv ON sp.id = spv.prompt_id AND spv.is_current = true
            WHERE sp.prompt_key = %s AND sp.is_active = true
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (prompt_key,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_all_prompts(self) -> List[Dict[str, Any]]:
        """Get all active prompts with their current content"""
        sql = """
            SELECT sp.prompt_key, sp.model, sp.temperature, sp.max_tokens, spv.content
            FROM system_prompts sp
            LEFT JOIN system_prompt_versions spv ON sp.id = spv.prompt_id AND spv.is_current = true
            WHERE sp.is_active = true
            ORDER BY sp.prompt_key
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql)
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # ISSUE QUERIES
    # =========================================================================

    def get_issue(self, issue_id: str) -> Optional[Dict[str, Any]]:
        sql = """
            SELECT id, publication_id, issue_date, status, workflow_state,
                   workflow_module_id, workflow_error, subject_line,
                   welcome_intro, welcome_tagline, welcome_summary, poll_snapshot
            FROM issues
            WHERE id = %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def count_open_issues(self, publication_id: str, issue_date) -> int:
        """Number of non-terminal issues for a publication on a date"""
        sql = """
            SELECT COUNT(*) AS open_count
            FROM issues
            WHERE publication_id = %s AND issue_date = %s AND status = ANY(%s)
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (publication_id, issue_date, list(OPEN_ISSUE_STATUSES)))
            return int(cursor.fetchone()['open_count'])

    def get_pending_issues(self) -> List[Dict[str, Any]]:
        """Issues created by the scheduler that have not started assembly"""
        sql = """
            SELECT id, publication_id, issue_date
            FROM issues
            WHERE status = 'processing' AND workflow_state = 'not_started'
            ORDER BY issue_date, id
        """
        return self._fetch_paginated(sql, {})

    def update_issue(self, issue_id: str, fields: Dict[str, Any],
                     expected_state: Optional[str] = None) -> bool:
        """
        Update whitelisted issue columns.

        With expected_state the write only lands while the issue is still at
        that workflow_state. Returns whether a row was updated.
        """
        unknown = set(fields) - set(ISSUE_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update issue fields: {sorted(unknown)}")
        if not fields:
            return False

        values = dict(fields)
        if 'poll_snapshot' in values and values['poll_snapshot'] is not None:
            values['poll_snapshot'] = json.dumps(values['poll_snapshot'])

        assignments = ', '.join(f"{name} = %({name})s" for name in values)
        sql = f"UPDATE issues SET {assignments}, updated_at = NOW() WHERE id = %(issue_id)s"
        if expected_state is not None:
            sql += " AND workflow_state = %(expected_state)s"
        with self.get_cursor() as cursor:
            cursor.execute(sql, dict(values, issue_id=issue_id, expected_state=expected_state))
            return cursor.rowcount == 1

    def update_workflow_state(self, issue_id: str, state: str, module_id: Optional[str] = None):
        """Persist the workflow checkpoint (state + module being processed)"""
        self.update_issue(issue_id, {
            'workflow_state': state,
            'workflow_module_id': module_id,
        })

    def fail_workflow(self, issue_id: str, error_message: str):
        """Mark the issue failed, keeping the checkpoint module for diagnosis"""
        self.update_issue(issue_id, {
            'status': 'failed',
            'workflow_state': 'failed',
            'workflow_error': (error_message or 'Unknown error')[:WORKFLOW_ERROR_MAX_LENGTH],
        })

    def reset_issue_for_reprocess(self, issue_id: str) -> Dict[str, int]:
        """
        Clear everything the pipeline produced for an issue so it can be
        replayed from deduplication.

        Manual selections are operator input and survive the reset; every
        other selection, generated article, assignment, duplicate group and
        suppression is removed.
        """
        counts = {}
        with self.get_cursor() as cursor:
            cursor.execute("DELETE FROM module_articles WHERE issue_id = %s", (issue_id,))
            counts['articles_deleted'] = cursor.rowcount

            cursor.execute("DELETE FROM candidate_assignments WHERE issue_id = %s", (issue_id,))
            counts['candidates_released'] = cursor.rowcount

            cursor.execute(
                "DELETE FROM module_selections WHERE issue_id = %s AND selection_mode <> %s",
                (issue_id, SelectionMode.MANUAL.value)
            )
            counts['selections_deleted'] = cursor.rowcount

            cursor.execute(
                "UPDATE candidates SET suppressed_by_issue_id = NULL WHERE suppressed_by_issue_id = %s",
                (issue_id,)
            )
            counts['suppressions_cleared'] = cursor.rowcount

            cursor.execute("DELETE FROM duplicate_groups WHERE issue_id = %s", (issue_id,))

            cursor.execute("""
                UPDATE issues SET
                    status = 'processing',
                    workflow_error = NULL,
                    subject_line = NULL,
                    welcome_intro = NULL,
                    welcome_tagline = NULL,
                    welcome_summary = NULL,
                    updated_at = NOW()
                WHERE id = %s
            """, (issue_id,))
        return counts

    # =========================================================================
    # MODULE QUERIES
    # =========================================================================

    def get_active_modules(self, publication_id: str) -> List[Dict[str, Any]]:
        """Active content modules in publication display order"""
        sql = """
            SELECT id, publication_id, module_type, name, display_order, is_active,
                   selection_mode, target_count, next_position, cursor_version,
                   lookback_hours, block_order
            FROM content_modules
            WHERE publication_id = %s AND is_active = true
            ORDER BY display_order, id
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (publication_id,))
            return [dict(row) for row in cursor.fetchall()]

    def get_module(self, module_id: str) -> Optional[Dict[str, Any]]:
        sql = """
            SELECT id, publication_id, module_type, name, display_order, is_active,
                   selection_mode, target_count, next_position, cursor_version,
                   lookback_hours, block_order
            FROM content_modules
            WHERE id = %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (module_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_criteria(self, module_id: str, active_only: bool = True) -> List[Dict[str, Any]]:
        """Scoring criteria for a module ordered by criteria_number"""
        sql = """
            SELECT criteria_number, name, weight, ai_prompt,
                   minimum_score, enforce_minimum, is_active
            FROM module_criteria
            WHERE module_id = %s
        """
        if active_only:
            sql += " AND is_active = true"
        sql += " ORDER BY criteria_number"
        with self.get_cursor() as cursor:
            cursor.execute(sql, (module_id,))
            rows = [dict(row) for row in cursor.fetchall()]
        for row in rows:
            if row.get('weight') is not None:
                row['weight'] = float(row['weight'])
            if row.get('minimum_score') is not None:
                row['minimum_score'] = float(row['minimum_score'])
        return rows

    def advance_cursor_for_selection(self, issue_id: str, module_id: str,
                                     expected_version: int, next_position: int) -> bool:
        """
        Compare-and-swap the rotation cursor and stamp the selection that
        consumed it, in one transaction.

        Returns False when another writer moved the cursor first or the
        selection was already counted; the caller re-reads and decides.
        """
        cas_sql = """
            UPDATE content_modules
            SET next_position = %s, cursor_version = cursor_version + 1, updated_at = NOW()
            WHERE id = %s AND cursor_version = %s
              AND EXISTS (
                  SELECT 1 FROM module_selections
                  WHERE issue_id = %s AND module_id = %s AND cursor_advanced_at IS NULL
              )
        """
        stamp_sql = """
            UPDATE module_selections SET cursor_advanced_at = NOW()
            WHERE issue_id = %s AND module_id = %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(cas_sql, (next_position, module_id, expected_version, issue_id, module_id))
            if cursor.rowcount != 1:
                return False
            cursor.execute(stamp_sql, (issue_id, module_id))
            return True

    # =========================================================================
    # CANDIDATE QUERIES
    # =========================================================================

    def get_dedup_pool(self, publication_id: str, since: datetime) -> List[Dict[str, Any]]:
        """
        Unassigned, unsuppressed article candidates inside the lookback window.
        best_score is the highest rating across modules (NULL when unrated).
        """
        sql = """
            SELECT c.id, c.title, c.description, c.content, c.source_url, c.processed_at,
                   r.best_score
            FROM candidates c
            LEFT JOIN (
                SELECT candidate_id, MAX(total_score) AS best_score
                FROM candidate_ratings
                GROUP BY candidate_id
            ) r ON r.candidate_id = c.id
            WHERE c.publication_id = %(publication_id)s
              AND c.family = %(family)s
              AND c.is_active = true
              AND c.excluded = false
              AND c.suppressed_by_issue_id IS NULL
              AND c.processed_at >= %(since)s
              AND NOT EXISTS (
                  SELECT 1 FROM candidate_assignments a WHERE a.candidate_id = c.id
              )
            ORDER BY c.processed_at, c.id
        """
        rows = self._fetch_paginated(sql, {
            'publication_id': publication_id,
            'family': ModuleType.ARTICLE.value,
            'since': since,
        })
        for row in rows:
            if row.get('best_score') is not None:
                row['best_score'] = float(row['best_score'])
        return rows

    def get_eligible_candidates(self, issue_id: str, module: Dict[str, Any],
                                since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Candidates a module may select for an issue.

        Excludes anything claimed elsewhere in this issue, anything inactive,
        excluded or suppressed, and (for partner recommendations) anything not
        flagged module-eligible. Consumable families also exclude candidates
        claimed by any other issue.
        """
        family = module['module_type']
        sql = """
            SELECT c.id, c.natural_key, c.title, c.description, c.content,
                   c.source_url, c.priority, c.processed_at,
                   r.total_score, r.criteria_scores
            FROM candidates c
            LEFT JOIN candidate_ratings r
                ON r.candidate_id = c.id AND r.module_id = %(module_id)s
            WHERE c.publication_id = %(publication_id)s
              AND c.family = %(family)s
              AND c.is_active = true
              AND c.excluded = false
              AND c.suppressed_by_issue_id IS NULL
              AND (%(require_module_eligible)s = false OR c.module_eligible = true)
              AND (%(since)s::timestamptz IS NULL OR c.processed_at >= %(since)s::timestamptz)
              AND NOT EXISTS (
                  SELECT 1 FROM candidate_assignments a
                  WHERE a.candidate_id = c.id
                    AND (a.issue_id = %(issue_id)s OR %(consumable)s)
              )
            ORDER BY c.id
        """
        rows = self._fetch_paginated(sql, {
            'module_id': module['id'],
            'publication_id': module['publication_id'],
            'family': family,
            'require_module_eligible': family == ModuleType.PARTNER_REC.value,
            'since': since,
            'issue_id': issue_id,
            'consumable': family in CONSUMABLE_MODULE_TYPES,
        })
        for row in rows:
            if row.get('total_score') is not None:
                row['total_score'] = float(row['total_score'])
        return rows

    def get_candidates_by_ids(self, candidate_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(candidate_ids)
        if not ids:
            return []
        sql = """
            SELECT id, publication_id, family, natural_key, title, description,
                   content, source_url, priority, is_active, excluded, module_eligible
            FROM candidates
            WHERE id = ANY(%s::uuid[])
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (ids,))
            return [dict(row) for row in cursor.fetchall()]

    def get_rating(self, candidate_id: str, module_id: str) -> Optional[Dict[str, Any]]:
        sql = """
            SELECT candidate_id, module_id, criteria_scores, total_score
            FROM candidate_ratings
            WHERE candidate_id = %s AND module_id = %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (candidate_id, module_id))
            row = cursor.fetchone()
        if not row:
            return None
        rating = dict(row)
        rating['total_score'] = float(rating['total_score'])
        return rating

    def upsert_rating(self, candidate_id: str, module_id: str,
                      criteria_scores: Dict[str, Any], total_score: float):
        sql = """
            INSERT INTO candidate_ratings (candidate_id, module_id, criteria_scores, total_score)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (candidate_id, module_id) DO UPDATE SET
                criteria_scores = EXCLUDED.criteria_scores,
                total_score = EXCLUDED.total_score,
                updated_at = NOW()
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (candidate_id, module_id, json.dumps(criteria_scores), total_score))

    # =========================================================================
    # DEDUPLICATION
    # =========================================================================

    def has_duplicate_groups(self, issue_id: str) -> bool:
        with self.get_cursor() as cursor:
            cursor.execute("SELECT 1 FROM duplicate_groups WHERE issue_id = %s LIMIT 1", (issue_id,))
            return cursor.fetchone() is not None

    def save_duplicate_groups(self, issue_id: str, groups: List[Dict[str, Any]]) -> int:
        """
        Store multi-member groups and suppress every non-representative member,
        all in one transaction.

        Each group: {representative_id, member_ids, detection_method,
                     topic_signature, similarity_score}

        Returns:
            Number of candidates suppressed
        """
        suppressed_total = 0
        with self.get_cursor() as cursor:
            for group in groups:
                cursor.execute("""
                    INSERT INTO duplicate_groups
                        (issue_id, representative_id, topic_signature, detection_method, similarity_score)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id
                """, (issue_id, group['representative_id'], group.get('topic_signature'),
                      group['detection_method'], group.get('similarity_score')))
                group_id = str(cursor.fetchone()['id'])

                for candidate_id in group['member_ids']:
                    cursor.execute(
                        "INSERT INTO duplicate_group_members (group_id, candidate_id) VALUES (%s, %s)",
                        (group_id, candidate_id)
                    )

                suppressed = [cid for cid in group['member_ids'] if cid != group['representative_id']]
                if suppressed:
                    cursor.execute(
                        "UPDATE candidates SET suppressed_by_issue_id = %s WHERE id = ANY(%s::uuid[])",
                        (issue_id, suppressed)
                    )
                    suppressed_total += cursor.rowcount
        return suppressed_total

    # =========================================================================
    # ASSIGNMENTS
    # =========================================================================

    def assign_candidates(self, issue_id: str, module_id: str, candidate_ids: List[str]) -> int:
        """Claim candidates for a module. Already-claimed candidates are skipped."""
        if not candidate_ids:
            return 0
        claimed = 0
        with self.get_cursor() as cursor:
            for candidate_id in candidate_ids:
                cursor.execute("""
                    INSERT INTO candidate_assignments (issue_id, candidate_id, module_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (issue_id, candidate_id) DO NOTHING
                """, (issue_id, candidate_id, module_id))
                claimed += cursor.rowcount
        return claimed

    def get_assignments(self, issue_id: str) -> List[Dict[str, Any]]:
        sql = """
            SELECT issue_id, candidate_id, module_id
            FROM candidate_assignments
            WHERE issue_id = %(issue_id)s
            ORDER BY candidate_id
        """
        return self._fetch_paginated(sql, {'issue_id': issue_id})

    def release_unused_candidates(self, issue_id: str, keep_ids: Iterable[str]) -> int:
        """Delete every assignment of the issue whose candidate is not kept"""
        keep = list(keep_ids)
        with self.get_cursor() as cursor:
            cursor.execute("""
                DELETE FROM candidate_assignments
                WHERE issue_id = %s AND NOT (candidate_id = ANY(%s::uuid[]))
            """, (issue_id, keep))
            return cursor.rowcount

    # =========================================================================
    # MODULE SELECTIONS
    # =========================================================================

    def get_module_selection(self, issue_id: str, module_id: str) -> Optional[Dict[str, Any]]:
        sql = """
            SELECT issue_id, module_id, candidate_ids, selection_mode, eligible_count,
                   selected_at, used_at, cursor_advanced_at
            FROM module_selections
            WHERE issue_id = %s AND module_id = %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id, module_id))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_module_selections(self, issue_id: str) -> List[Dict[str, Any]]:
        sql = """
            SELECT issue_id, module_id, candidate_ids, selection_mode, eligible_count,
                   selected_at, used_at, cursor_advanced_at
            FROM module_selections
            WHERE issue_id = %s
            ORDER BY selected_at, module_id
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id,))
            return [dict(row) for row in cursor.fetchall()]

    def upsert_module_selection(self, issue_id: str, module_id: str, candidate_ids: List[str],
                                selection_mode: str, eligible_count: int):
        """Write (or replace) a module's selection for an issue. Last writer wins."""
        sql = """
            INSERT INTO module_selections
                (issue_id, module_id, candidate_ids, selection_mode, eligible_count, selected_at)
            VALUES (%s, %s, %s, %s, %s, NOW())
            ON CONFLICT (issue_id, module_id) DO UPDATE SET
                candidate_ids = EXCLUDED.candidate_ids,
                selection_mode = EXCLUDED.selection_mode,
                eligible_count = EXCLUDED.eligible_count,
                selected_at = NOW()
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id, module_id, json.dumps(list(candidate_ids)),
                                 selection_mode, eligible_count))

    def insert_module_selection_if_absent(self, issue_id: str, module_id: str,
                                          selection_mode: str) -> bool:
        """Create an empty selection row unless one exists. Never overwrites."""
        sql = """
            INSERT INTO module_selections
                (issue_id, module_id, candidate_ids, selection_mode, eligible_count)
            VALUES (%s, %s, '[]'::jsonb, %s, 0)
            ON CONFLICT (issue_id, module_id) DO NOTHING
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id, module_id, selection_mode))
            return cursor.rowcount == 1

    def set_selection_winners(self, issue_id: str, module_id: str, candidate_ids: List[str]):
        sql = """
            UPDATE module_selections SET candidate_ids = %s
            WHERE issue_id = %s AND module_id = %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (json.dumps(list(candidate_ids)), issue_id, module_id))

    def mark_selections_used(self, issue_id: str) -> int:
        sql = """
            UPDATE module_selections SET used_at = NOW()
            WHERE issue_id = %s AND used_at IS NULL
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (issue_id,))
            return cursor.rowcount

    # =========================================================================
    # MODULE ARTICLES
    # =========================================================================

    _ARTICLE_COLUMNS = """
        ma.id, ma.issue_id, ma.module_id, ma.candidate_id, ma.selection_order,
        ma.headline, ma.content, ma.word_count,
        ma.fact_check_accuracy, ma.fact_check_compliance, ma.fact_check_quality,
        ma.fact_check_score, ma.fact_check_passed, ma.fact_check_details,
        ma.rank, ma.is_active,
        c.title AS source_title, c.description AS source_description,
        c.content AS source_content, c.source_url,
        r.total_score
    """

    def _select_articles(self, issue_id: str, module_id: Optional[str], condition: str = '',
                         limit: Optional[int] = None) -> List[Dict[str, Any]]:
        sql = f"""
            SELECT {self._ARTICLE_COLUMNS}
            FROM module_articles ma
            JOIN candidates c ON c.id = ma.candidate_id
            LEFT JOIN candidate_ratings r
                ON r.candidate_id = ma.candidate_id AND r.module_id = ma.module_id
            WHERE ma.issue_id = %(issue_id)s
        """
        params: Dict[str, Any] = {'issue_id': issue_id}
        if module_id:
            sql += " AND ma.module_id = %(module_id)s"
            params['module_id'] = module_id
        if condition:
            sql += f" AND {condition}"
        sql += " ORDER BY ma.selection_order, ma.id"

        if limit is not None:
            sql += " LIMIT %(limit)s"
            params['limit'] = limit
            with self.get_cursor() as cursor:
                cursor.execute(sql, params)
                rows = [dict(row) for row in cursor.fetchall()]
        else:
            rows = self._fetch_paginated(sql, params)

        for row in rows:
            for key in ('total_score', 'fact_check_score', 'fact_check_accuracy',
                        'fact_check_compliance', 'fact_check_quality'):
                if row.get(key) is not None:
                    row[key] = float(row[key])
        return rows

    def create_module_articles(self, issue_id: str, module_id: str, candidate_ids: List[str]) -> int:
        """One article row per selected candidate, in selection order"""
        created = 0
        with self.get_cursor() as cursor:
            for order, candidate_id in enumerate(candidate_ids):
                cursor.execute("""
                    INSERT INTO module_articles (issue_id, module_id, candidate_id, selection_order)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (issue_id, module_id, candidate_id) DO NOTHING
                """, (issue_id, module_id, candidate_id, order))
                created += cursor.rowcount
        return created

    def get_module_articles(self, issue_id: str, module_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._select_articles(issue_id, module_id)

    def get_articles_needing_titles(self, issue_id: str, module_id: str) -> List[Dict[str, Any]]:
        return self._select_articles(issue_id, module_id, "ma.headline IS NULL")

    def get_articles_needing_bodies(self, issue_id: str, module_id: str,
                                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._select_articles(
            issue_id, module_id, "ma.headline IS NOT NULL AND ma.content IS NULL", limit=limit
        )

    def get_articles_needing_fact_check(self, issue_id: str, module_id: str) -> List[Dict[str, Any]]:
        return self._select_articles(
            issue_id, module_id, "ma.content IS NOT NULL AND ma.fact_check_score IS NULL"
        )

    def update_module_article(self, article_id: str, fields: Dict[str, Any]):
        unknown = set(fields) - set(ARTICLE_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update module article fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ', '.join(f"{name} = %({name})s" for name in fields)
        sql = f"UPDATE module_articles SET {assignments} WHERE id = %(article_id)s"
        with self.get_cursor() as cursor:
            cursor.execute(sql, dict(fields, article_id=article_id))

    def set_article_ranks(self, issue_id: str, module_id: str, ranked_article_ids: List[str]):
        """Deactivate every article of the module, then activate winners with 1-based ranks"""
        with self.get_cursor() as cursor:
            cursor.execute("""
                UPDATE module_articles SET is_active = false, rank = NULL
                WHERE issue_id = %s AND module_id = %s
            """, (issue_id, module_id))
            for rank, article_id in enumerate(ranked_article_ids, start=1):
                cursor.execute(
                    "UPDATE module_articles SET is_active = true, rank = %s WHERE id = %s",
                    (rank, article_id)
                )

    # =========================================================================
    # EXECUTION LOGS
    # =========================================================================

    def create_execution_log(self, run_id: str, job_type: str, issue_id: Optional[str],
                             started_at: datetime) -> Optional[str]:
        sql = """
            INSERT INTO execution_logs (run_id, job_type, issue_id, started_at, status, summary, log_entries)
            VALUES (%s, %s, %s, %s, 'running', %s, %s)
            RETURNING id
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (run_id, job_type, issue_id, started_at.isoformat(),
                                 json.dumps({}), json.dumps([])))
            row = cursor.fetchone()
            return str(row['id']) if row else None

    def complete_execution_log(self, log_id: str, completed_at: datetime, duration_ms: int,
                               status: str, summary: Dict[str, Any], entries: List[Dict[str, Any]],
                               error_message: Optional[str] = None, error_stack: Optional[str] = None):
        sql = """
            UPDATE execution_logs SET
                completed_at = %s,
                duration_ms = %s,
                status = %s,
                summary = %s,
                log_entries = %s,
                error_message = %s,
                error_stack = %s
            WHERE id = %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (
                completed_at.isoformat(), duration_ms, status,
                json.dumps(summary, default=str), json.dumps(entries, default=str),
                error_message, error_stack, log_id
            ))


# Singleton instance
_db_client: Optional[DatabaseClient] = None


def get_db() -> DatabaseClient:
    """Get or create the database client singleton"""
    global _db_client
    if _db_client is None:
        _db_client = DatabaseClient()
    return _db_client
