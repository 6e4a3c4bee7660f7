"""
Execution Logger for the Issue Assembly Workers

Logs execution details to the execution_logs table for dashboard display.
Each assembly run creates a single log record with:
- Summary metrics (duplicates_suppressed, titles_generated, etc.)
- Detailed log entries (timestamp, level, message)
- Status tracking (running, success, error)

Usage:
    run_log = ExecutionLogger(job_type='assemble_issue', issue_id=issue_id)
    run_log.info("Starting assembly")
    run_log.increment_summary('titles_generated', 3)
    run_log.complete('success')
"""

import json
import uuid
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from .db import get_db

# Standard Python logger for stdout
py_logger = logging.getLogger(__name__)


class ExecutionLogger:
    """
    Execution logger that writes to both stdout and the execution_logs database table.

    The log is persisted to the database when complete() is called. Database
    failures are logged and never interrupt the pipeline.
    """

    def __init__(self, job_type: str, issue_id: Optional[str] = None, db=None):
        """
        Args:
            job_type: 'assemble_issue', 'reprocess_issue', 'rescore_criteria'
            issue_id: Issue being processed, when there is one
            db: DatabaseClient (defaults to the shared singleton)
        """
        self.run_id = str(uuid.uuid4())
        self.job_type = job_type
        self.issue_id = issue_id
        self.db = db
        self.entries: List[Dict[str, Any]] = []
        self.summary: Dict[str, Any] = {}
        self.started_at = datetime.utcnow()
        self._db_record_id: Optional[str] = None

        self._create_initial_record()

    def _create_initial_record(self):
        """Create the initial execution_logs record with running status"""
        try:
            db = self.db or get_db()
            self._db_record_id = db.create_execution_log(
                self.run_id, self.job_type, self.issue_id, self.started_at
            )
            if self._db_record_id:
                py_logger.info(f"Created execution log record: {self._db_record_id}")
        except Exception as e:
            py_logger.error(f"Failed to create execution log record: {e}")

    def log(self, level: str, message: str, metadata: Optional[Dict] = None):
        """Log to stdout and keep the entry for persistence"""
        entry = {
            'timestamp': datetime.utcnow().isoformat(),
            'level': level,
            'message': message
        }
        if metadata:
            entry['metadata'] = metadata
        self.entries.append(entry)

        log_msg = message
        if metadata:
            log_msg += f" {json.dumps(metadata, default=str)}"

        if level == 'error':
            py_logger.error(log_msg)
        elif level == 'warn':
            py_logger.warning(log_msg)
        elif level == 'debug':
            py_logger.debug(log_msg)
        else:
            py_logger.info(log_msg)

    def info(self, message: str, metadata: Optional[Dict] = None):
        self.log('info', message, metadata)

    def warn(self, message: str, metadata: Optional[Dict] = None):
        self.log('warn', message, metadata)

    def error(self, message: str, metadata: Optional[Dict] = None):
        self.log('error', message, metadata)

    def debug(self, message: str, metadata: Optional[Dict] = None):
        self.log('debug', message, metadata)

    def set_summary(self, key: str, value: Any):
        self.summary[key] = value

    def increment_summary(self, key: str, amount: int = 1):
        self.summary[key] = self.summary.get(key, 0) + amount

    def complete(self, status: str = 'success', error_message: Optional[str] = None,
                 error_stack: Optional[str] = None):
        """
        Mark the execution as complete and persist to database.

        Args:
            status: 'success' or 'error'
            error_message: Error message if status is 'error'
            error_stack: Stack trace if available
        """
        completed_at = datetime.utcnow()
        duration_ms = int((completed_at - self.started_at).total_seconds() * 1000)
        py_logger.info(f"Execution complete: status={status}, duration={duration_ms}ms")

        if not self._db_record_id:
            return

        try:
            db = self.db or get_db()
            db.complete_execution_log(
                self._db_record_id, completed_at, duration_ms, status,
                self.summary, self.entries, error_message, error_stack
            )
        except Exception as e:
            py_logger.error(f"Failed to update execution log: {e}")
