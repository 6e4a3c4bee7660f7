"""
Issue Assembly - HTTP Trigger Service
Flask app the web/API layer calls to start, reprocess and steer issue assembly

Endpoints:
    POST /issues/<issue_id>/assemble                     - Start or resume assembly
    POST /issues/<issue_id>/reprocess                    - Clean up and replay from scratch
    PUT  /issues/<issue_id>/modules/<module_id>/selection - Manual selection override
    POST /issues/<issue_id>/sent                         - Issue went out: consume rotations
    POST /modules/<module_id>/rescore                    - Criteria backfill
    GET  /jobs/status/<job_id>                           - Get job status
    GET  /health                                         - Health check

Request body for assemble/reprocess (optional):
    {"inline": true}  - run synchronously and return per-phase counts

Environment:
    REDIS_URL: Redis connection string
    TRIGGER_SECRET: Shared secret for authentication (optional)
"""

import os
import logging
from datetime import datetime
from flask import Flask, request, jsonify
from redis import Redis
from rq import Queue
from rq.job import Job
from dotenv import load_dotenv

from newsletter_workers.utils.db import get_db
from newsletter_workers.utils.errors import InvariantViolation
from newsletter_workers.utils.states import IssueStatus, WorkflowState

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Redis connection
REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379')
TRIGGER_SECRET = os.environ.get('TRIGGER_SECRET', '')

# Assembly runs many steps of up to 10 minutes each
ASSEMBLY_JOB_TIMEOUT = '2h'
RESCORE_JOB_TIMEOUT = '30m'


def get_redis_connection():
    """Get Redis connection from URL"""
    return Redis.from_url(REDIS_URL)


def verify_auth():
    """Verify request authentication if TRIGGER_SECRET is set"""
    if not TRIGGER_SECRET:
        return True

    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        token = auth_header[7:]
        return token == TRIGGER_SECRET
    return False


def unauthorized():
    return jsonify({
        'success': False,
        'error': 'Unauthorized'
    }), 401


def error_response(error: Exception):
    """4xx for invariant violations, 500 with the causal message otherwise"""
    if isinstance(error, InvariantViolation):
        return jsonify({
            'success': False,
            'error': str(error),
            'error_type': type(error).__name__
        }), error.http_status

    return jsonify({
        'success': False,
        'error': str(error),
        'error_type': type(error).__name__
    }), 500


# Job function mapping
JOB_FUNCTIONS = {}


def get_job_function(job_name: str):
    """
    Lazy load job functions to avoid import errors at startup.
    """
    if job_name in JOB_FUNCTIONS:
        return JOB_FUNCTIONS[job_name]

    if job_name == 'assemble':
        from newsletter_workers.jobs.issue_assembly import assemble_issue
        JOB_FUNCTIONS[job_name] = assemble_issue
    elif job_name == 'reprocess':
        from newsletter_workers.jobs.issue_assembly import reprocess_issue
        JOB_FUNCTIONS[job_name] = reprocess_issue
    elif job_name == 'rescore':
        from newsletter_workers.jobs.issue_assembly import rescore_module_criteria
        JOB_FUNCTIONS[job_name] = rescore_module_criteria
    else:
        return None

    return JOB_FUNCTIONS[job_name]


# Queue name mapping (matches worker.py priority)
QUEUE_MAPPING = {
    'assemble': 'high',
    'reprocess': 'high',
    'rescore': 'low',
}


def enqueue(job_name: str, job_timeout: str, **kwargs):
    """Enqueue a job and return the RQ job"""
    conn = get_redis_connection()
    queue = Queue(QUEUE_MAPPING[job_name], connection=conn)
    job = queue.enqueue(get_job_function(job_name), job_timeout=job_timeout, **kwargs)
    logger.info(f"Triggered job {job_name} with ID {job.id}")
    return job


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    try:
        conn = get_redis_connection()
        conn.ping()
        redis_status = 'connected'
    except Exception as e:
        redis_status = f'error: {str(e)}'

    return jsonify({
        'status': 'ok',
        'timestamp': datetime.utcnow().isoformat(),
        'redis': redis_status,
        'available_jobs': list(QUEUE_MAPPING.keys())
    })


def _run_or_enqueue(job_name: str, issue_id: str):
    params = request.get_json(silent=True) or {}

    if params.get('inline'):
        result = get_job_function(job_name)(issue_id)
        return jsonify({
            'success': True,
            'issue_id': issue_id,
            'result': result
        })

    job = enqueue(job_name, ASSEMBLY_JOB_TIMEOUT, issue_id=issue_id)
    return jsonify({
        'success': True,
        'job_id': job.id,
        'issue_id': issue_id,
        'queue': QUEUE_MAPPING[job_name],
        'enqueued_at': datetime.utcnow().isoformat()
    }), 202


@app.route('/issues/<issue_id>/assemble', methods=['POST'])
def assemble(issue_id: str):
    """
    Start or resume assembly of an issue.

    Returns:
        202 {"success": true, "job_id": "...", "queue": "high"}
        200 {"success": true, "result": {"status": "draft", "phases": {...}}}  (inline)
        404 issue not found, 409 issue failed or not processing, 500 assembly error
    """
    if not verify_auth():
        return unauthorized()

    try:
        issue = get_db().get_issue(issue_id)
        if not issue:
            return jsonify({'success': False, 'error': f'Issue not found: {issue_id}'}), 404

        if issue['status'] == IssueStatus.FAILED.value or issue['workflow_state'] == WorkflowState.FAILED.value:
            return jsonify({
                'success': False,
                'error': f'Issue {issue_id} failed assembly; use /issues/{issue_id}/reprocess',
                'workflow_error': issue.get('workflow_error')
            }), 409

        return _run_or_enqueue('assemble', issue_id)

    except Exception as e:
        logger.error(f"Assembly trigger failed for {issue_id}: {e}")
        return error_response(e)


@app.route('/issues/<issue_id>/reprocess', methods=['POST'])
def reprocess(issue_id: str):
    """
    Clear all pipeline output for an issue and replay assembly.
    Safe on failed and draft issues.
    """
    if not verify_auth():
        return unauthorized()

    try:
        issue = get_db().get_issue(issue_id)
        if not issue:
            return jsonify({'success': False, 'error': f'Issue not found: {issue_id}'}), 404

        return _run_or_enqueue('reprocess', issue_id)

    except Exception as e:
        logger.error(f"Reprocess trigger failed for {issue_id}: {e}")
        return error_response(e)


@app.route('/issues/<issue_id>/modules/<module_id>/selection', methods=['PUT'])
def override_selection(issue_id: str, module_id: str):
    """
    Manually set a module's candidate list for an issue.

    Request Body:
        {"candidate_ids": ["...", "..."]}
    """
    if not verify_auth():
        return unauthorized()

    body = request.get_json(silent=True)
    if not isinstance(body, dict) or 'candidate_ids' not in body:
        return jsonify({'success': False, 'error': 'Body must be {"candidate_ids": [...]}'}), 400

    try:
        from newsletter_workers.jobs.module_selection import manually_select

        selection = manually_select(get_db(), issue_id, module_id, body['candidate_ids'])
        return jsonify({'success': True, 'selection': selection})

    except Exception as e:
        logger.error(f"Manual selection failed for {issue_id}/{module_id}: {e}")
        return error_response(e)


@app.route('/issues/<issue_id>/sent', methods=['POST'])
def issue_sent(issue_id: str):
    """
    Send hook: the delivery layer calls this once a draft issue went out.
    Advances sequential rotations and stamps the selections used.

    Returns:
        200 {"success": true, "usage": {"cursors_advanced": 1, "stamped": 4, ...}}
        404 issue not found, 409 issue is not a draft
    """
    if not verify_auth():
        return unauthorized()

    try:
        from newsletter_workers.jobs.module_selection import mark_issue_sent

        usage = mark_issue_sent(get_db(), issue_id)
        return jsonify({'success': True, 'usage': usage})

    except Exception as e:
        logger.error(f"Send hook failed for {issue_id}: {e}")
        return error_response(e)


@app.route('/modules/<module_id>/rescore', methods=['POST'])
def rescore(module_id: str):
    """
    Recompute some criteria for some candidates of a module, keeping the rest.

    Request Body:
        {"candidate_ids": [...], "criteria_numbers": [1, 2], "inline": false}
    """
    if not verify_auth():
        return unauthorized()

    body = request.get_json(silent=True) or {}
    candidate_ids = body.get('candidate_ids')
    criteria_numbers = body.get('criteria_numbers')

    if not isinstance(candidate_ids, list) or not candidate_ids:
        return jsonify({'success': False, 'error': 'candidate_ids must be a non-empty list'}), 400
    if (
        not isinstance(criteria_numbers, list) or not criteria_numbers
        or not all(isinstance(n, int) and not isinstance(n, bool) for n in criteria_numbers)
    ):
        return jsonify({'success': False, 'error': 'criteria_numbers must be a non-empty list of integers'}), 400

    try:
        if not get_db().get_module(module_id):
            return jsonify({'success': False, 'error': f'Content module not found: {module_id}'}), 404

        if body.get('inline'):
            result = get_job_function('rescore')(module_id, candidate_ids, criteria_numbers)
            return jsonify({'success': True, 'result': result})

        job = enqueue('rescore', RESCORE_JOB_TIMEOUT, module_id=module_id,
                      candidate_ids=candidate_ids, criteria_numbers=criteria_numbers)
        return jsonify({
            'success': True,
            'job_id': job.id,
            'queue': QUEUE_MAPPING['rescore'],
            'enqueued_at': datetime.utcnow().isoformat()
        }), 202

    except Exception as e:
        logger.error(f"Rescore trigger failed for module {module_id}: {e}")
        return error_response(e)


@app.route('/jobs/status/<job_id>', methods=['GET'])
def get_job_status(job_id: str):
    """
    Get status of a job by ID.

    Returns:
        {
            "job_id": "abc123",
            "status": "finished",  // queued, started, finished, failed
            "result": {...},       // Job result if finished
            "error": "...",        // Error message if failed
        }
    """
    try:
        conn = get_redis_connection()
        job = Job.fetch(job_id, connection=conn)

        response = {
            'job_id': job_id,
            'status': job.get_status(),
            'created_at': job.created_at.isoformat() if job.created_at else None,
            'started_at': job.started_at.isoformat() if job.started_at else None,
            'ended_at': job.ended_at.isoformat() if job.ended_at else None,
        }

        if job.is_finished:
            response['result'] = job.result
        elif job.is_failed:
            response['error'] = str(job.exc_info) if job.exc_info else 'Unknown error'

        return jsonify(response)

    except Exception as e:
        return jsonify({
            'job_id': job_id,
            'status': 'not_found',
            'error': str(e)
        }), 404


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    port = int(os.environ.get('TRIGGER_PORT', 5001))
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'

    logger.info(f"Starting HTTP Trigger Service on port {port}")
    app.run(host='0.0.0.0', port=port, debug=debug)


if __name__ == '__main__':
    main()
